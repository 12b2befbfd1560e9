import logging
import math
from typing import Awaitable, Callable, List, Optional, Union

from govsync.common.models import Snapshot

logger = logging.getLogger(__name__)

PublishHook = Callable[[Snapshot], Union[None, Awaitable[None]]]


def has_governance_data(snapshot: Optional[Snapshot]) -> bool:
    if snapshot is None:
        return False
    return bool(snapshot.proposal_info) and bool(snapshot.dreps or snapshot.committee_members)


def total_drep_power(snapshot: Snapshot) -> float:
    return sum(drep.voting_power_ada or 0 for drep in snapshot.dreps)


def is_complete(snapshot: Optional[Snapshot], min_detail_coverage: float = 0.5) -> bool:
    """Whether a snapshot is good enough to replace a complete one."""
    if snapshot is None or not snapshot.proposal_info:
        return False
    if not (snapshot.dreps or snapshot.committee_members):
        return False
    if total_drep_power(snapshot) <= 0:
        return False
    if snapshot.partial or snapshot.skipped_proposal_count > 0 or snapshot.vote_fetch_error_count > 0:
        return False
    return len(snapshot.proposal_info) >= math.floor(snapshot.proposal_count * min_detail_coverage)


def pick_best(primary: Optional[Snapshot], history: Optional[Snapshot]) -> Optional[Snapshot]:
    """Choose the snapshot to serve at startup.

    The live snapshot wins when it has governance data and DRep power, keeps
    at least 90% of the history cut's DRep rows, and has active committee
    members whenever the history cut does.
    """
    if history is None:
        return primary
    if primary is None:
        return history
    if not has_governance_data(primary) or total_drep_power(primary) <= 0:
        return history
    if len(primary.dreps) < 0.9 * len(history.dreps):
        return history
    history_active_cc = any(member.status == "active" for member in history.committee_members)
    primary_active_cc = any(member.status == "active" for member in primary.committee_members)
    if history_active_cc and not primary_active_cc:
        return history
    return primary


class PromotionGate:
    """Owns the served snapshot; the only place it is swapped.

    A complete candidate always replaces the served snapshot. An incomplete
    one does so only when the served snapshot is itself incomplete,
    otherwise it is held as pending until an operator promotes it. A
    candidate without governance data never replaces one that has it.
    """

    def __init__(self, served: Optional[Snapshot] = None, min_detail_coverage: float = 0.5):
        self.served = served
        self.pending: Optional[Snapshot] = None
        self.min_detail_coverage = min_detail_coverage
        self.hooks: List[PublishHook] = []

    def add_hook(self, hook: PublishHook):
        self.hooks.append(hook)

    def is_complete(self, snapshot: Optional[Snapshot]) -> bool:
        return is_complete(snapshot, self.min_detail_coverage)

    async def offer(self, candidate: Snapshot) -> bool:
        """Publish or hold a freshly built candidate. Returns True if published."""
        if not has_governance_data(candidate) and has_governance_data(self.served):
            logger.warning(
                f"Refusing {candidate.build_mode.value} snapshot generated at {candidate.generated_at}: "
                f"no governance data ({len(candidate.proposal_info)} proposals, {len(candidate.dreps)} DReps); "
                f"keeping the current snapshot"
            )
            return False
        if self.is_complete(candidate) or not self.is_complete(self.served):
            await self.publish(candidate)
            return True
        self.pending = candidate
        logger.warning(
            f"Holding incomplete {candidate.build_mode.value} snapshot as pending "
            f"(skipped={candidate.skipped_proposal_count}, vote errors={candidate.vote_fetch_error_count}, "
            f"partial={candidate.partial}); keeping the current snapshot"
        )
        return False

    async def promote_pending(self) -> bool:
        """Publish the pending candidate if it carries governance data."""
        candidate = self.pending
        if candidate is None:
            logger.info("No pending snapshot to promote")
            return False
        if not has_governance_data(candidate):
            logger.warning("Pending snapshot has no governance data, not promoting")
            return False
        logger.info(f"Promoting pending snapshot generated at {candidate.generated_at}")
        await self.publish(candidate)
        return True

    async def publish(self, snapshot: Snapshot):
        self.served = snapshot
        self.pending = None
        logger.info(
            f"Published {snapshot.build_mode.value} snapshot generated at {snapshot.generated_at} "
            f"({len(snapshot.proposal_info)} proposals)"
        )
        for hook in self.hooks:
            try:
                result = hook(snapshot)
                if result is not None:
                    await result
            except Exception as e:
                logger.error(f"Publish hook {getattr(hook, '__name__', hook)} failed: {e}")
