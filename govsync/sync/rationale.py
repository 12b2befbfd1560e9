"""Vote rationale resolution.

A vote's rationale is looked up through an ordered list of strategies.
Each strategy answers with NotFound, Found(hit) or SourceUnavailable and
the first Found wins. When nothing is found the result is `None` if any
strategy could not reach its source, and `False` only when every source
answered.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from govsync.cache.store import RationaleCache
from govsync.common.errors import UpstreamError
from govsync.common.models import ActorRole, Snapshot
from govsync.common.text import clean_plain_text, committee_rationale_signals, looks_like_url, pick_rationale_text
from govsync.integrations.koios.client import VoteLookup

logger = logging.getLogger(__name__)

INLINE_SIGNAL_FIELDS = ("anchor_url", "anchor_hash", "metadata_url", "meta_url", "url")
INLINE_URL_FIELDS = ("anchor_url", "metadata_url", "meta_url", "url")
TX_TEXT_HINTS = ("rationale", "motivation", "reason", "comment", "summary", "abstract")
TX_TEXT_MIN_LENGTH = 24
CGOV_VOTER_TYPES = {
    ActorRole.DREP: {"drep"},
    ActorRole.STAKE_POOL: {"spo"},
    ActorRole.COMMITTEE: {"cc", "committee", "constitutional_committee"},
}


@dataclass(frozen=True)
class RationaleHit:
    url: str = ""
    text: str = ""
    body_length: int = 0
    section_count: int = 0


@dataclass(frozen=True)
class NotFound:
    pass


@dataclass(frozen=True)
class Found:
    hit: RationaleHit


@dataclass(frozen=True)
class SourceUnavailable:
    reason: str = ""


LookupResult = Union[NotFound, Found, SourceUnavailable]
NOT_FOUND = NotFound()


@dataclass(frozen=True)
class VoteContext:
    """Everything a strategy may need to know about one vote."""
    proposal_id: str
    role: ActorRole
    voter_id: str
    tx_hash: str = ""
    row: Optional[Dict] = None
    proposal_tx_hash: Optional[str] = None
    proposal_cert_index: Optional[int] = None

    @property
    def memo_key(self) -> Tuple[str, str, str, str]:
        return (self.proposal_id, self.role.value, self.voter_id.lower(), self.tx_hash.lower())


@dataclass
class RationaleResult:
    has_rationale: Optional[bool]
    url: str = ""
    text: str = ""
    body_length: int = 0
    section_count: int = 0
    source: str = ""
    koios_voter_id: str = ""


def inline_rationale_url(row: Optional[Dict]) -> str:
    if not isinstance(row, dict):
        return ""
    for field in INLINE_URL_FIELDS:
        value = row.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def has_inline_rationale(row: Optional[Dict]) -> bool:
    if not isinstance(row, dict):
        return False
    return any(isinstance(row.get(field), str) and row.get(field).strip() for field in INLINE_SIGNAL_FIELDS)


def parse_tx_rationale(rows: List[Dict]) -> Tuple[bool, str]:
    """Scan transaction metadata for a rationale URL or substantial text."""
    urls: List[str] = []
    text_signal = False

    def walk(node: Any, key_hint: str = ""):
        nonlocal text_signal
        if node is None:
            return
        if isinstance(node, str):
            text = node.strip()
            if looks_like_url(text) and text not in urls:
                urls.append(text)
            lowered = key_hint.lower()
            if len(text) >= TX_TEXT_MIN_LENGTH and any(hint in lowered for hint in TX_TEXT_HINTS):
                text_signal = True
            return
        if isinstance(node, list):
            for item in node:
                walk(item, key_hint)
            return
        if isinstance(node, dict):
            for key, value in node.items():
                walk(value, str(key))

    for row in rows or []:
        if isinstance(row, dict):
            walk(row.get("json_metadata"))
    url = urls[0] if urls else ""
    return bool(url or text_signal), url


class RationaleStrategy:
    """One step of the resolution chain."""
    name = "strategy"

    def applies(self, ctx: VoteContext) -> bool:
        return True

    async def lookup(self, ctx: VoteContext) -> LookupResult:
        raise NotImplementedError


class CachedRationaleStrategy(RationaleStrategy):
    name = "cache"

    def __init__(self, cache: RationaleCache):
        self.cache = cache

    def applies(self, ctx: VoteContext) -> bool:
        return bool(ctx.tx_hash)

    async def lookup(self, ctx: VoteContext) -> LookupResult:
        entry = self.cache.get_entry(ctx.tx_hash)
        if entry and entry.get("hasRationale"):
            return Found(RationaleHit(url=entry.get("rationaleUrl", ""), text=entry.get("rationaleText", "")))
        return NOT_FOUND


class InlineAnchorStrategy(RationaleStrategy):
    name = "inline"

    async def lookup(self, ctx: VoteContext) -> LookupResult:
        if has_inline_rationale(ctx.row):
            return Found(RationaleHit(url=inline_rationale_url(ctx.row)))
        return NOT_FOUND


class SecondaryVoteListStrategy(RationaleStrategy):
    """vote_list rows from the secondary indexer, prefetched per proposal batch."""
    name = "vote_list"

    def __init__(self, koios):
        self.koios = koios
        self.lookups: Dict[str, VoteLookup] = {}

    def reset(self):
        self.lookups = {}

    async def prefetch(self, proposal_ids: List[str]):
        ids = [pid for pid in proposal_ids if pid and pid not in self.lookups]
        if not ids:
            return
        general = await self.koios.get_vote_lookups(ids)
        pools = await self.koios.get_vote_lookups(ids, voter_role="SPO", max_rows=50_000)
        for pid in ids:
            lookup = general.get(pid) or VoteLookup(unresolved=True)
            lookup.merge(pools.get(pid) or VoteLookup(unresolved=True))
            self.lookups[pid] = lookup

    async def lookup(self, ctx: VoteContext) -> LookupResult:
        if ctx.proposal_id not in self.lookups:
            await self.prefetch([ctx.proposal_id])
        lookup = self.lookups[ctx.proposal_id]
        entry = lookup.find(ctx.tx_hash, ctx.role.value, ctx.voter_id)
        if entry and entry.has_rationale:
            return Found(RationaleHit(url=entry.rationale_url))
        if lookup.unresolved:
            return SourceUnavailable("vote_list unresolved")
        return NOT_FOUND

    def voter_id_for(self, ctx: VoteContext) -> str:
        lookup = self.lookups.get(ctx.proposal_id)
        if lookup is None:
            return ""
        entry = lookup.find(ctx.tx_hash, ctx.role.value, ctx.voter_id)
        return entry.voter_id if entry else ""


class MetadataServiceStrategy(RationaleStrategy):
    """Per-proposal vote list from the third-party metadata service."""
    name = "metadata_service"

    def __init__(self, cgov):
        self.cgov = cgov
        self._lookups: Dict[Tuple[str, ActorRole], Dict[str, RationaleHit]] = {}
        self._failed: Dict[str, str] = {}

    def reset(self):
        self._lookups = {}
        self._failed = {}
        self.cgov.clear()

    def applies(self, ctx: VoteContext) -> bool:
        return self.cgov.proposal_key(ctx.proposal_tx_hash, ctx.proposal_cert_index) is not None

    @staticmethod
    def _entry(vote: Dict, role: ActorRole) -> RationaleHit:
        url = str(vote.get("anchorUrl") or "").strip()
        raw = vote.get("rationale")
        raw_text = raw.strip() if isinstance(raw, str) else ""
        text = ""
        signals = {"body_length": 0, "section_count": 0}
        if role == ActorRole.COMMITTEE:
            signals = committee_rationale_signals(raw)
        if raw_text:
            text = clean_plain_text(raw_text)
            if raw_text.startswith("{") or raw_text.startswith("["):
                try:
                    parsed = pick_rationale_text(json.loads(raw_text))
                except ValueError:
                    parsed = ""
                text = parsed or text
        elif isinstance(raw, dict):
            text = pick_rationale_text(raw)
        return RationaleHit(
            url=url,
            text=text,
            body_length=signals["body_length"],
            section_count=signals["section_count"],
        )

    def _index(self, payload: Optional[Dict], role: ActorRole) -> Dict[str, RationaleHit]:
        lookup: Dict[str, RationaleHit] = {}
        votes = list((payload or {}).get("votes") or [])
        if role == ActorRole.COMMITTEE:
            votes = list((payload or {}).get("ccVotes") or []) + votes
        for vote in votes:
            if not isinstance(vote, dict):
                continue
            voter_type = str(vote.get("voterType") or "").strip().lower()
            if voter_type not in CGOV_VOTER_TYPES[role]:
                continue
            voter_id = str(vote.get("voterId") or "").strip().lower()
            tx_hash = str(vote.get("txHash") or "").strip().lower()
            entry = self._entry(vote, role)
            if voter_id and tx_hash:
                lookup[f"voter:{voter_id}:tx:{tx_hash}"] = entry
            if voter_id and role != ActorRole.STAKE_POOL:
                lookup.setdefault(f"voter:{voter_id}", entry)
            if tx_hash:
                lookup.setdefault(f"tx:{tx_hash}", entry)
        return lookup

    async def _lookup_table(self, ctx: VoteContext) -> Union[Dict[str, RationaleHit], SourceUnavailable]:
        key = self.cgov.proposal_key(ctx.proposal_tx_hash, ctx.proposal_cert_index)
        if key in self._failed:
            return SourceUnavailable(self._failed[key])
        memo_key = (key, ctx.role)
        if memo_key not in self._lookups:
            try:
                payload = await self.cgov.get_proposal(ctx.proposal_tx_hash, ctx.proposal_cert_index)
            except UpstreamError as e:
                self._failed[key] = str(e)
                return SourceUnavailable(str(e))
            self._lookups[memo_key] = self._index(payload, ctx.role)
        return self._lookups[memo_key]

    async def find(self, ctx: VoteContext) -> Union[RationaleHit, None, SourceUnavailable]:
        table = await self._lookup_table(ctx)
        if isinstance(table, SourceUnavailable):
            return table
        voter = ctx.voter_id.strip().lower()
        tx_hash = ctx.tx_hash.strip().lower()
        keys = []
        if voter and tx_hash:
            keys.append(f"voter:{voter}:tx:{tx_hash}")
        if voter and ctx.role != ActorRole.STAKE_POOL:
            keys.append(f"voter:{voter}")
        if tx_hash:
            keys.append(f"tx:{tx_hash}")
        for key in keys:
            if key in table:
                return table[key]
        return None

    async def lookup(self, ctx: VoteContext) -> LookupResult:
        entry = await self.find(ctx)
        if isinstance(entry, SourceUnavailable):
            return entry
        if entry is not None and (entry.url or entry.text):
            return Found(entry)
        return NOT_FOUND


class TxMetadataStrategy(RationaleStrategy):
    """Stake-pool votes: look for a rationale in the vote transaction's metadata.

    Bounded per build by a lookup count and a wall-clock budget; once either
    is spent the strategy stops being tried.
    """
    name = "tx_metadata"

    def __init__(self, blockfrost, cache: RationaleCache, max_lookups: int, max_duration: float):
        self.blockfrost = blockfrost
        self.cache = cache
        self.max_lookups = max_lookups
        self.max_duration = max_duration
        self.lookups = 0
        self.started_at: Optional[float] = None

    def reset(self):
        self.lookups = 0
        self.started_at = None

    def _budget_left(self) -> bool:
        if self.lookups >= self.max_lookups:
            return False
        if self.started_at is not None and time.monotonic() - self.started_at >= self.max_duration:
            return False
        return True

    def applies(self, ctx: VoteContext) -> bool:
        if ctx.role != ActorRole.STAKE_POOL or not ctx.tx_hash:
            return False
        return self.cache.get_entry(ctx.tx_hash) is not None or self._budget_left()

    async def lookup(self, ctx: VoteContext) -> LookupResult:
        cached = self.cache.get_entry(ctx.tx_hash)
        if cached is not None:
            if cached.get("hasRationale"):
                return Found(RationaleHit(url=cached.get("rationaleUrl", ""), text=cached.get("rationaleText", "")))
            return NOT_FOUND
        if self.started_at is None:
            self.started_at = time.monotonic()
        self.lookups += 1
        try:
            rows = await self.blockfrost.get_tx_metadata(ctx.tx_hash)
        except UpstreamError as e:
            return SourceUnavailable(str(e))
        has_rationale, url = parse_tx_rationale(rows)
        self.cache.record(ctx.tx_hash, has_rationale, url)
        if has_rationale:
            return Found(RationaleHit(url=url))
        return NOT_FOUND


class RationaleResolver:
    """Answers "did this vote carry a rationale, and what does it say"."""

    def __init__(self, koios, cgov, anchors, blockfrost, cache: RationaleCache, config):
        self.anchors = anchors
        self.cache = cache
        self.resolve_text = config.RATIONALE_RESOLVE_TEXT
        self.vote_list = SecondaryVoteListStrategy(koios)
        self.metadata_service = MetadataServiceStrategy(cgov) if config.RATIONALE_USE_CGOV_FALLBACK else None
        self.tx_metadata = TxMetadataStrategy(
            blockfrost,
            cache,
            config.VOTE_TX_RATIONALE_MAX_LOOKUPS,
            config.VOTE_TX_RATIONALE_MAX_DURATION,
        )
        self.strategies: List[RationaleStrategy] = [
            CachedRationaleStrategy(cache),
            InlineAnchorStrategy(),
            self.vote_list,
        ]
        if self.metadata_service:
            self.strategies.append(self.metadata_service)
        self.strategies.append(self.tx_metadata)
        self._memo: Dict[Tuple[str, str, str, str], RationaleResult] = {}

    def begin_build(self):
        """Forget per-build memos and budgets."""
        self._memo = {}
        self.vote_list.reset()
        self.tx_metadata.reset()
        if self.metadata_service:
            self.metadata_service.reset()

    async def prefetch(self, proposal_ids: List[str]):
        await self.vote_list.prefetch(proposal_ids)

    def koios_voter_id(self, ctx: VoteContext) -> str:
        return self.vote_list.voter_id_for(ctx)

    async def resolve(self, ctx: VoteContext, with_text: Optional[bool] = None) -> RationaleResult:
        if ctx.memo_key in self._memo:
            return self._memo[ctx.memo_key]
        with_text = self.resolve_text if with_text is None else with_text

        hit: Optional[RationaleHit] = None
        source = ""
        unavailable: List[str] = []
        for strategy in self.strategies:
            if not strategy.applies(ctx):
                continue
            outcome = await strategy.lookup(ctx)
            if isinstance(outcome, Found):
                hit, source = outcome.hit, strategy.name
                break
            if isinstance(outcome, SourceUnavailable):
                unavailable.append(f"{strategy.name}: {outcome.reason}")

        if hit is None:
            has_rationale = None if unavailable else False
            if unavailable:
                logger.debug(f"Rationale unresolved for {ctx.memo_key}: {'; '.join(unavailable)}")
            result = RationaleResult(has_rationale=has_rationale)
        else:
            result = RationaleResult(
                has_rationale=True,
                url=hit.url,
                text=hit.text,
                body_length=hit.body_length,
                section_count=hit.section_count,
                source=source,
            )
            if with_text and result.url and not result.text:
                fetched = await self.anchors.fetch_rationale(result.url)
                result.text = fetched.get("text", "")
            if ctx.tx_hash and (result.text or source == "metadata_service"):
                self.cache.record(ctx.tx_hash, True, result.url, result.text)

        if ctx.role == ActorRole.COMMITTEE and self.metadata_service and not result.body_length:
            await self._apply_committee_signals(ctx, result)

        result.koios_voter_id = self.koios_voter_id(ctx)
        self._memo[ctx.memo_key] = result
        return result

    async def _apply_committee_signals(self, ctx: VoteContext, result: RationaleResult):
        if not self.metadata_service.applies(ctx):
            return
        entry = await self.metadata_service.find(ctx)
        if isinstance(entry, RationaleHit):
            result.body_length = entry.body_length
            result.section_count = entry.section_count

    async def warm_from_snapshot(self, snapshot: Snapshot) -> int:
        """Record DRep rationale text from the metadata service in the cache.

        Runs beside the next build, so it keeps its own lookup tables instead
        of sharing the ones `begin_build` resets. Returns the number of votes
        updated.
        """
        if self.metadata_service is None:
            return 0
        lookups = MetadataServiceStrategy(self.metadata_service.cgov)
        updated = 0
        for drep in snapshot.dreps:
            for vote in drep.votes:
                info = snapshot.proposal_info.get(vote.proposal_id)
                if info is None or not vote.vote_tx_hash:
                    continue
                entry = self.cache.get_entry(vote.vote_tx_hash)
                if entry and entry.get("rationaleText"):
                    continue
                ctx = VoteContext(
                    proposal_id=vote.proposal_id,
                    role=ActorRole.DREP,
                    voter_id=drep.id,
                    tx_hash=vote.vote_tx_hash,
                    proposal_tx_hash=info.tx_hash,
                    proposal_cert_index=info.cert_index,
                )
                if not lookups.applies(ctx):
                    continue
                hit = await lookups.find(ctx)
                if isinstance(hit, RationaleHit) and (hit.url or hit.text):
                    self.cache.record(vote.vote_tx_hash, True, hit.url, hit.text)
                    updated += 1
        if updated:
            self.cache.flush()
        logger.info(f"Warmed rationale cache with {updated} DRep votes")
        return updated
