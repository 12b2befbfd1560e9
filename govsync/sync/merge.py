import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from govsync.cache.store import TxTimeCache
from govsync.common.models import (
    ACTOR_MODELS,
    Actor,
    ActorRole,
    Outcome,
    ProposalInfo,
    Snapshot,
    Vote,
    VoteTally,
    VoteValue,
)

logger = logging.getLogger(__name__)


def iso_from_unix(ts: Optional[int]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")


def response_hours(voted_at_unix: Optional[int], submitted_at_unix: Optional[int]) -> Optional[float]:
    """Hours between submission and vote; None when unknown or negative."""
    if not voted_at_unix or not submitted_at_unix:
        return None
    delta = int(voted_at_unix) - int(submitted_at_unix)
    if delta < 0:
        return None
    return round(delta / 3600, 2)


def _precedence(vote: Vote) -> Tuple[int, bool, str]:
    tx_hash = (vote.vote_tx_hash or "").lower()
    return (int(vote.voted_at_unix or 0), bool(tx_hash), tx_hash)


def merge_vote(existing: Optional[Vote], incoming: Vote) -> Vote:
    """Pick the record to keep for one (proposal, actor) key.

    The later vote time wins, unknown times counting as 0. On a tie a record
    with a tx hash beats one without, then the larger hash wins, so the
    result does not depend on merge order.
    """
    if existing is None:
        return incoming
    winner = incoming if _precedence(incoming) > _precedence(existing) else existing
    if winner is incoming and incoming.vote != existing.vote:
        logger.warning(
            f"Vote on {incoming.proposal_id} changed from {existing.vote.value} to {incoming.vote.value} "
            f"(tx {existing.vote_tx_hash or '-'} -> {incoming.vote_tx_hash or '-'})"
        )
    return winner


class ActorBook:
    """Mutable actor/vote index used while a candidate snapshot is built.

    Votes are kept per actor keyed by proposal id, so merging is the only
    way a vote enters the book. `finalize` writes derived fields back onto
    the actor models.
    """

    def __init__(self, proposal_info: Dict[str, ProposalInfo]):
        self.proposal_info = proposal_info
        self.actors: Dict[ActorRole, Dict[str, Actor]] = {role: {} for role in ActorRole}
        self._votes: Dict[Tuple[ActorRole, str], Dict[str, Vote]] = {}
        self.touched: Dict[ActorRole, set] = {role: set() for role in ActorRole}

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "ActorBook":
        """Deep-copied book over a snapshot's proposals and actors."""
        proposal_info = {pid: info.model_copy(deep=True) for pid, info in snapshot.proposal_info.items()}
        book = cls(proposal_info)
        for role in ActorRole:
            for actor in snapshot.actors(role):
                copy = actor.model_copy(deep=True)
                book.actors[role][copy.id] = copy
                book._votes[(role, copy.id)] = {vote.proposal_id: vote for vote in copy.votes}
        return book

    def get(self, role: ActorRole, actor_id: str) -> Optional[Actor]:
        return self.actors[role].get(actor_id)

    def get_or_create(self, role: ActorRole, actor_id: str) -> Actor:
        actor = self.actors[role].get(actor_id)
        if actor is None:
            actor = ACTOR_MODELS[role](id=actor_id)
            self.actors[role][actor_id] = actor
            self._votes[(role, actor_id)] = {}
        return actor

    def votes_of(self, role: ActorRole, actor_id: str) -> Dict[str, Vote]:
        return self._votes.get((role, actor_id), {})

    def known_tx_hashes(self, proposal_id: str) -> set:
        """Vote tx hashes already merged for a proposal."""
        hashes = set()
        for votes in self._votes.values():
            vote = votes.get(proposal_id)
            if vote is not None and vote.vote_tx_hash:
                hashes.add(vote.vote_tx_hash.lower())
        return hashes

    def merge(self, role: ActorRole, actor_id: str, vote: Vote) -> bool:
        """Merge a vote into the actor's record.

        Returns True when the stored record changed.

        Raises:
            ValueError: if the vote's proposal is not known to the book.
        """
        if vote.proposal_id not in self.proposal_info:
            raise ValueError(f"Vote for unknown proposal {vote.proposal_id}")
        self.get_or_create(role, actor_id)
        votes = self._votes[(role, actor_id)]
        existing = votes.get(vote.proposal_id)
        winner = merge_vote(existing, vote)
        if winner is existing:
            return False
        votes[vote.proposal_id] = winner
        self.touched[role].add(actor_id)
        return True

    def add_actor(self, role: ActorRole, actor: Actor):
        """Register an actor row without votes (no-op if already present)."""
        if actor.id not in self.actors[role]:
            self.actors[role][actor.id] = actor
            self._votes[(role, actor.id)] = {vote.proposal_id: vote for vote in actor.votes}

    def set_outcome(self, proposal_id: str, outcome: Outcome):
        """Record a proposal outcome and copy it onto every merged vote."""
        info = self.proposal_info.get(proposal_id)
        if info is not None:
            info.outcome = outcome
        for votes in self._votes.values():
            vote = votes.get(proposal_id)
            if vote is not None:
                vote.outcome = outcome

    def all_votes(self) -> Iterable[Tuple[ActorRole, str, Vote]]:
        for (role, actor_id), votes in self._votes.items():
            for vote in votes.values():
                yield role, actor_id, vote

    def finalize(self, tx_times: Optional[TxTimeCache] = None):
        """Recompute every derived field from the merged votes."""
        for info in self.proposal_info.values():
            info.vote_stats = {role.value: VoteTally() for role in ActorRole}

        for role, _, vote in self.all_votes():
            info = self.proposal_info.get(vote.proposal_id)
            vote.outcome = info.outcome if info else Outcome.UNKNOWN
            if tx_times is not None and vote.vote_tx_hash:
                cached = tx_times.get_time(vote.vote_tx_hash)
                if cached:
                    vote.voted_at_unix = cached
            vote.voted_at = iso_from_unix(vote.voted_at_unix)
            vote.response_hours = response_hours(vote.voted_at_unix, info.submitted_at_unix if info else None)
            if info is not None:
                info.vote_stats[role.value].add(vote.vote)

        for role in ActorRole:
            for actor_id, actor in self.actors[role].items():
                votes = list(self.votes_of(role, actor_id).values())
                votes.sort(key=lambda v: (-(v.voted_at_unix or 0), v.proposal_id))
                actor.votes = votes
                self._derive_stats(role, actor)

    def _derive_stats(self, role: ActorRole, actor: Actor):
        comparable = [v for v in actor.votes if v.outcome in (Outcome.YES, Outcome.NO)]
        matches = [v for v in comparable if v.vote.value == v.outcome.value]
        actor.consistency = round(len(matches) / len(comparable) * 100, 2) if comparable else 0

        submitted = [
            self.proposal_info[v.proposal_id].submitted_at_unix
            for v in actor.votes
            if v.proposal_id in self.proposal_info and self.proposal_info[v.proposal_id].submitted_at_unix
        ]
        actor.first_vote_block_time = min(submitted) if submitted else None

        eligible = 0
        for info in self.proposal_info.values():
            if info.vote_stats.get(role.value, VoteTally()).total <= 0:
                continue
            if actor.first_vote_block_time is None or (info.submitted_at_unix or 0) >= actor.first_vote_block_time:
                eligible += 1
        actor.total_eligible_votes = max(eligible, len(actor.votes), 1)

    def sorted_actors(self, role: ActorRole) -> List[Actor]:
        actors = list(self.actors[role].values())
        if role == ActorRole.DREP:
            actors.sort(key=lambda a: (-a.voting_power_ada, a.id))
        elif role == ActorRole.COMMITTEE:
            actors.sort(key=lambda a: (-len(a.votes), a.id))
        else:
            actors.sort(key=lambda a: (-len(a.votes), -a.voting_power_ada, a.id))
        return actors

    def apply_to(self, snapshot: Snapshot):
        """Write proposals and sorted actor lists onto a candidate snapshot."""
        snapshot.proposal_info = self.proposal_info
        snapshot.dreps = self.sorted_actors(ActorRole.DREP)
        snapshot.committee_members = self.sorted_actors(ActorRole.COMMITTEE)
        snapshot.spos = self.sorted_actors(ActorRole.STAKE_POOL)


def build_vote(
    proposal_id: str,
    role: ActorRole,
    value: VoteValue,
    tx_hash: str = "",
    voted_at_unix: Optional[int] = None,
) -> Vote:
    return Vote(
        proposal_id=proposal_id,
        vote=value,
        voter_role=role,
        vote_tx_hash=(tx_hash or "").strip().lower(),
        voted_at_unix=voted_at_unix or None,
    )
