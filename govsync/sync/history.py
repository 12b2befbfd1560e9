import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from govsync.common.errors import UpstreamError
from govsync.common.models import ActorRole, DRep, Outcome, ProposalInfo, Snapshot
from govsync.sync.builder import utc_now_iso
from govsync.sync.merge import ActorBook
from govsync.sync.persistence import SnapshotStore
from govsync.sync.profiles import is_special_drep

logger = logging.getLogger(__name__)


@dataclass
class HistoryReport:
    latest_epoch: int = 0
    written: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    deleted: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


def outcome_as_of(info: ProposalInfo, epoch: int) -> Outcome:
    """Outcome of a proposal as it stood at the end of `epoch`."""
    def reached(value: Optional[int]) -> bool:
        return value is not None and value <= epoch

    if reached(info.enacted_epoch) or reached(info.ratified_epoch):
        return Outcome.YES
    if reached(info.dropped_epoch) or reached(info.expired_epoch):
        return Outcome.NO
    return Outcome.PENDING


def latest_history_epoch(snapshot: Snapshot) -> int:
    submitted = [info.submitted_epoch for info in snapshot.proposal_info.values() if info.submitted_epoch is not None]
    return max([snapshot.latest_epoch] + submitted)


def build_epoch_cut(
    snapshot: Snapshot,
    epoch: int,
    end_time: int,
    power_map: Optional[Dict[str, float]] = None,
) -> Snapshot:
    """Snapshot restricted to what was known at the end of `epoch`.

    Proposals with an unknown submission epoch and votes with an unknown
    time are kept. Committee and pool rows left without votes are dropped.
    DRep power comes from `power_map` when given, else from the snapshot.
    """
    proposals = {
        pid: info.model_copy(deep=True)
        for pid, info in snapshot.proposal_info.items()
        if info.submitted_epoch is None or info.submitted_epoch <= epoch
    }
    for info in proposals.values():
        info.outcome = outcome_as_of(info, epoch)

    book = ActorBook(proposals)
    for role in ActorRole:
        for actor in snapshot.actors(role):
            votes = [
                vote.model_copy(deep=True)
                for vote in actor.votes
                if vote.proposal_id in proposals and (vote.voted_at_unix is None or vote.voted_at_unix <= end_time)
            ]
            if role != ActorRole.DREP and not votes:
                continue
            book.add_actor(role, actor.model_copy(deep=True, update={"votes": []}))
            for vote in votes:
                book.merge(role, actor.id, vote)

    if power_map is not None:
        for drep_id in power_map:
            if not is_special_drep(drep_id) and book.get(ActorRole.DREP, drep_id) is None:
                book.add_actor(ActorRole.DREP, DRep(id=drep_id))
        for drep in book.actors[ActorRole.DREP].values():
            drep.voting_power_ada = power_map.get(drep.id, 0.0)

    special_dreps = {}
    for key, special in snapshot.special_dreps.items():
        copy = special.model_copy()
        if power_map is not None and special.id in power_map:
            copy.voting_power_ada = power_map[special.id]
        special_dreps[key] = copy

    book.finalize()
    cut = Snapshot(
        schema_version=snapshot.schema_version,
        generated_at=utc_now_iso(),
        build_mode=snapshot.build_mode,
        latest_epoch=epoch,
        proposal_count=len(proposals),
        scanned_proposal_count=len(proposals),
        processed_proposal_count=len(proposals),
        threshold_context=snapshot.threshold_context,
        special_dreps=special_dreps,
        historical=True,
        historical_kind="epoch_cut",
        historical_cutoff_epoch=epoch,
    )
    book.apply_to(cut)
    return cut


class EpochHistoryBuilder:
    """Writes one immutable snapshot per ended epoch."""

    def __init__(
        self,
        blockfrost,
        koios,
        store: SnapshotStore,
        start_epoch: int = 507,
        clock: Callable[[], float] = time.time,
    ):
        self.blockfrost = blockfrost
        self.koios = koios
        self.store = store
        self.start_epoch = start_epoch
        self.clock = clock
        self._end_times: Dict[int, int] = {}
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def epoch_end_time(self, epoch: int) -> Optional[int]:
        """End time of an epoch; memoised once the epoch is over."""
        if epoch in self._end_times:
            return self._end_times[epoch]
        try:
            end_time = await self.blockfrost.get_epoch_end_time(epoch)
        except UpstreamError as e:
            logger.warning(f"End time of epoch {epoch} unavailable: {e}")
            return None
        if end_time and end_time <= self.clock():
            self._end_times[epoch] = end_time
        return end_time or None

    async def _power_map(self, epoch: int) -> Optional[Dict[str, float]]:
        try:
            return await self.koios.get_drep_power_for_epoch(epoch)
        except UpstreamError as e:
            logger.warning(f"DRep power for epoch {epoch} unavailable, using snapshot power: {e}")
            return None

    async def backfill(self, snapshot: Snapshot, force: bool = False) -> Optional[HistoryReport]:
        """Write missing cuts up to the latest epoch.

        Returns None when a backfill is already running.
        """
        if self._lock.locked():
            logger.info("History backfill already running, skipping")
            return None
        async with self._lock:
            report = HistoryReport(latest_epoch=latest_history_epoch(snapshot))
            now = self.clock()
            for epoch in range(self.start_epoch, report.latest_epoch + 1):
                end_time = await self.epoch_end_time(epoch)
                if end_time is None:
                    continue
                if end_time > now:
                    if self.store.has_cut(epoch) and self.store.delete_cut(epoch):
                        report.deleted.append(epoch)
                    continue
                if self.store.has_cut(epoch) and not force:
                    report.skipped.append(epoch)
                    continue
                cut = build_epoch_cut(snapshot, epoch, end_time, await self._power_map(epoch))
                if self.store.write_cut(epoch, cut):
                    report.written.append(epoch)
                else:
                    report.failed.append(epoch)
            logger.info(
                f"History backfill to epoch {report.latest_epoch}: {len(report.written)} written, "
                f"{len(report.skipped)} kept, {len(report.deleted)} deleted, {len(report.failed)} failed"
            )
            return report
