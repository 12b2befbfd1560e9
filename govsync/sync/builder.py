import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from govsync.cache.pool_profiles import PoolProfileCache
from govsync.cache.store import TxTimeCache
from govsync.common.config import Settings
from govsync.common.errors import UpstreamError
from govsync.common.models import (
    ActorRole,
    BuildMode,
    CommitteeMember,
    DRep,
    Outcome,
    ProposalInfo,
    Snapshot,
    SpecialDRep,
    StakePool,
    VoteValue,
)
from govsync.common.pool import chunks, map_limit
from govsync.common.text import clean_plain_text, metadata_body, normalize_vote_role, parse_json_object, title_case
from govsync.sync.merge import ActorBook, build_vote, iso_from_unix
from govsync.sync.profiles import (
    apply_committee_roster,
    apply_pool_profile,
    apply_pool_roster,
    committee_roster,
    committee_status_from_votes,
    enrich_drep,
    is_special_drep,
    resolve_committee_name,
)
from govsync.sync.rationale import RationaleResolver, VoteContext
from govsync.sync.thresholds import resolve_threshold_info

logger = logging.getLogger(__name__)

NO_RATIONALE_TEXT = "No rationale metadata available for this governance action."
ACTION_NAME_FIELDS = ("title", "name", "displayName", "display_name", "label")

ProgressCallback = Callable[[int, int], None]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def partial_notice(scanned: int, total: int, skipped: int, vote_errors: int) -> str:
    parts = []
    if scanned < total:
        parts.append(f"scanned {scanned} of {total} proposals")
    if skipped:
        parts.append(f"{skipped} proposals skipped after detail fetch failures")
    if vote_errors:
        parts.append(f"{vote_errors} vote fetch errors")
    if not parts:
        return ""
    return "Partial snapshot: " + "; ".join(parts) + "."


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def build_proposal_info(
    proposal_id: str,
    detail: Dict,
    metadata: Optional[Dict],
    tx: Optional[Dict],
    block_epoch: Optional[int],
    summary: Optional[Dict],
    threshold_context: Optional[Dict],
) -> ProposalInfo:
    """Combine primary detail, anchor metadata, tx timing and the secondary summary."""
    body = metadata_body(parse_json_object((metadata or {}).get("json_metadata"))) or {}
    raw_name = ""
    for name_field in ACTION_NAME_FIELDS:
        if isinstance(body.get(name_field), str) and body[name_field].strip():
            raw_name = body[name_field]
            break
    governance_type = title_case(detail.get("governance_type"), "Governance action")
    action_name = clean_plain_text(raw_name) or f"{governance_type} ({proposal_id[:16]}...)"
    raw_rationale = body.get("rationale") or body.get("motivation") or body.get("abstract") or ""
    rationale = clean_plain_text(raw_rationale) if isinstance(raw_rationale, str) else ""

    submitted_at_unix = _int_or_none((tx or {}).get("block_time")) or None
    submitted_epoch = block_epoch
    if submitted_epoch is None and summary:
        submitted_epoch = _int_or_none(summary.get("epoch_no"))

    return ProposalInfo(
        action_name=action_name,
        rationale=rationale or NO_RATIONALE_TEXT,
        governance_type=governance_type,
        governance_description=detail.get("governance_description"),
        outcome=Outcome.from_detail(detail),
        submitted_epoch=submitted_epoch,
        submitted_at=iso_from_unix(submitted_at_unix),
        submitted_at_unix=submitted_at_unix,
        tx_hash=detail.get("tx_hash"),
        cert_index=_int_or_none(detail.get("cert_index")),
        deposit_ada=int(int(detail.get("deposit") or 0) // 1_000_000),
        return_address=str(detail.get("return_address") or ""),
        metadata_url=(metadata or {}).get("url"),
        metadata_hash=(metadata or {}).get("hash"),
        expiration_epoch=_int_or_none(detail.get("expiration")),
        ratified_epoch=_int_or_none(detail.get("ratified_epoch")),
        enacted_epoch=_int_or_none(detail.get("enacted_epoch")),
        dropped_epoch=_int_or_none(detail.get("dropped_epoch")),
        expired_epoch=_int_or_none(detail.get("expired_epoch")),
        threshold_info=resolve_threshold_info(detail.get("governance_type"), detail.get("governance_description"), threshold_context),
        voting_summary=summary,
    )


def apply_detail(info: ProposalInfo, detail: Dict):
    """Refresh finalisation epochs and outcome from a newer detail fetch."""
    info.expiration_epoch = _int_or_none(detail.get("expiration"))
    info.ratified_epoch = _int_or_none(detail.get("ratified_epoch"))
    info.enacted_epoch = _int_or_none(detail.get("enacted_epoch"))
    info.dropped_epoch = _int_or_none(detail.get("dropped_epoch"))
    info.expired_epoch = _int_or_none(detail.get("expired_epoch"))
    info.outcome = Outcome.from_detail(detail)


@dataclass
class FetchedProposal:
    proposal_id: str
    info: ProposalInfo
    vote_rows: List[Dict] = field(default_factory=list)


class SnapshotBuilder:
    """Shared machinery of the full and delta builders.

    Holds the per-build counters and knows how to fetch one proposal, turn
    vote rows into merged votes, resolve vote times and enrich actors.
    """

    def __init__(
        self,
        blockfrost,
        koios,
        anchors,
        resolver: RationaleResolver,
        tx_times: TxTimeCache,
        pool_profiles: PoolProfileCache,
        config: Settings,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.blockfrost = blockfrost
        self.koios = koios
        self.anchors = anchors
        self.resolver = resolver
        self.tx_times = tx_times
        self.pool_profiles = pool_profiles
        self.config = config
        self.on_progress = on_progress
        self.begin()

    def begin(self):
        """Reset per-build counters."""
        self.skipped = 0
        self.vote_fetch_errors = 0
        self.processed = 0
        self.total = 0
        self.tx_time_lookups = 0
        self.resolver.begin_build()

    def report_progress(self):
        if self.on_progress:
            self.on_progress(self.processed, self.total)

    # Proposals

    async def fetch_proposal(
        self,
        row: Dict,
        summaries: Dict[str, Dict],
        threshold_context: Optional[Dict],
    ) -> Optional[FetchedProposal]:
        """Detail, metadata, origin tx and votes of one proposal.

        Returns None (and counts a skip) when the detail fetch fails.
        """
        proposal_id = str(row.get("id") or "").strip()
        if not proposal_id:
            return None
        try:
            detail = await self.blockfrost.get_proposal(proposal_id)
        except UpstreamError as e:
            logger.warning(f"Skipping proposal {proposal_id}: {e}")
            self.skipped += 1
            return None

        metadata = await self.blockfrost.get_proposal_metadata(proposal_id)
        tx = None
        block_epoch = None
        tx_hash = detail.get("tx_hash") or row.get("tx_hash")
        if tx_hash:
            try:
                tx = await self.blockfrost.get_tx(tx_hash)
                block_epoch = await self.blockfrost.get_block_epoch(tx.get("block"))
            except UpstreamError as e:
                logger.warning(f"Could not fetch origin tx of proposal {proposal_id}: {e}")

        info = build_proposal_info(
            proposal_id, detail, metadata, tx, block_epoch, summaries.get(proposal_id), threshold_context
        )
        vote_rows = await self.fetch_votes(proposal_id)
        return FetchedProposal(proposal_id, info, vote_rows)

    async def fetch_votes(self, proposal_id: str) -> List[Dict]:
        """All vote rows, newest first. A paging failure keeps what was read."""
        rows: List[Dict] = []
        try:
            async for page in self.blockfrost.iter_proposal_vote_pages(proposal_id):
                rows.extend(page)
        except UpstreamError as e:
            logger.warning(f"Vote fetch failed for {proposal_id} after {len(rows)} rows: {e}")
            self.vote_fetch_errors += 1
        return rows

    async def process_batches(self, rows: List[Dict], book: ActorBook, threshold_context: Optional[Dict]):
        """Fetch and ingest proposals in batches of SYNC_BATCH_SIZE."""
        for batch in chunks(rows, self.config.SYNC_BATCH_SIZE):
            ids = [str(row.get("id") or "").strip() for row in batch]
            summaries = await self.koios.get_voting_summaries(ids)
            await self.resolver.prefetch(ids)
            fetched = await map_limit(
                batch,
                self.config.SYNC_CONCURRENCY,
                lambda row: self.fetch_proposal(row, summaries, threshold_context),
            )
            for item in fetched:
                if item is None:
                    continue
                book.proposal_info[item.proposal_id] = item.info
                await self.ingest_votes(item.proposal_id, item.vote_rows, book)
                self.processed += 1
            self.report_progress()
            logger.info(f"Processed {self.processed}/{self.total} proposals")

    # Votes

    @staticmethod
    def classify_row(row: Dict) -> Optional[Tuple[ActorRole, str, VoteValue, str]]:
        """(role, voter id, vote value, tx hash) of a vote row, or None if unusable."""
        try:
            role = ActorRole(normalize_vote_role(row.get("voter_role")))
        except ValueError:
            return None
        voter_id = str(row.get("voter") or row.get("voter_id") or "").strip()
        value = VoteValue.parse(row.get("vote"))
        if not voter_id or value is None:
            return None
        return role, voter_id, value, str(row.get("tx_hash") or "").strip().lower()

    async def ingest_votes(
        self,
        proposal_id: str,
        rows: Iterable[Dict],
        book: ActorBook,
        skip_hashes: Optional[Set[str]] = None,
    ) -> int:
        """Merge newest-first vote rows; the first row per actor wins.

        Returns the number of votes that changed the book.
        """
        info = book.proposal_info[proposal_id]
        seen: Set[Tuple[ActorRole, str]] = set()
        changed = 0
        for row in rows:
            classified = self.classify_row(row)
            if classified is None:
                continue
            role, voter_id, value, tx_hash = classified
            if (role, voter_id) in seen:
                continue
            seen.add((role, voter_id))
            if skip_hashes and tx_hash in skip_hashes:
                continue

            ctx = VoteContext(
                proposal_id=proposal_id,
                role=role,
                voter_id=voter_id,
                tx_hash=tx_hash,
                row=row,
                proposal_tx_hash=info.tx_hash,
                proposal_cert_index=info.cert_index,
            )
            rationale = await self.resolver.resolve(ctx)
            vote = build_vote(proposal_id, role, value, tx_hash, self.tx_times.get_time(tx_hash))
            vote.outcome = info.outcome
            vote.has_rationale = rationale.has_rationale
            vote.rationale_url = rationale.url
            vote.rationale_body_length = rationale.body_length
            vote.rationale_section_count = rationale.section_count
            if book.merge(role, voter_id, vote):
                changed += 1
            if role == ActorRole.COMMITTEE and rationale.koios_voter_id:
                book.get(role, voter_id).koios_voter_id = rationale.koios_voter_id
        return changed

    async def resolve_tx_times(self, tx_hashes: Iterable[str]) -> int:
        """Fill the tx-time cache for uncached hashes, within the per-build budget."""
        budget = max(0, self.config.VOTE_TX_TIME_MAX_LOOKUPS - self.tx_time_lookups)
        missing = self.tx_times.missing(tx_hashes)
        if len(missing) > budget:
            logger.warning(f"{len(missing)} vote tx times missing, resolving only {budget} this build")
            missing = missing[:budget]
        if not missing:
            return 0
        self.tx_time_lookups += len(missing)

        async def lookup(tx_hash: str) -> bool:
            try:
                tx = await self.blockfrost.get_tx(tx_hash)
            except UpstreamError as e:
                logger.debug(f"Vote tx {tx_hash} time unavailable: {e}")
                self.tx_times.record(tx_hash, 0)
                return False
            self.tx_times.record(tx_hash, int(tx.get("block_time") or 0))
            return True

        results = await map_limit(missing, self.config.ENRICH_CONCURRENCY, lookup)
        self.tx_times.flush()
        resolved = sum(1 for ok in results if ok)
        logger.info(f"Resolved {resolved}/{len(missing)} vote tx times")
        return resolved

    # Enrichment

    async def enrich_dreps(self, book: ActorBook, drep_ids: Iterable[str], power_map: Dict[str, float]):
        dreps = [book.get_or_create(ActorRole.DREP, drep_id) for drep_id in drep_ids]
        await map_limit(
            dreps,
            self.config.ENRICH_CONCURRENCY,
            lambda drep: enrich_drep(self.blockfrost, self.anchors, drep, power_map),
        )
        logger.info(f"Enriched {len(dreps)} DReps")

    async def enrich_committee(
        self,
        book: ActorBook,
        member_ids: Iterable[str],
        committee_info: Optional[Dict],
        latest_epoch: int,
    ):
        roster = committee_roster(committee_info)
        members: List[CommitteeMember] = [book.get_or_create(ActorRole.COMMITTEE, mid) for mid in member_ids]

        async def enrich(member: CommitteeMember):
            listed = apply_committee_roster(member, roster.get(member.id.lower()), latest_epoch)
            if not listed:
                votes = book.votes_of(ActorRole.COMMITTEE, member.id).values()
                member.status = committee_status_from_votes(votes, book.proposal_info, latest_epoch)
            if not member.name:
                member.name = await resolve_committee_name(self.koios, self.anchors, member.hot_credential or member.id)

        await map_limit(members, self.config.ENRICH_CONCURRENCY, enrich)
        logger.info(f"Enriched {len(members)} committee members")

    async def enrich_pools(
        self,
        book: ActorBook,
        pool_ids: Iterable[str],
        roster_rows: Optional[Dict[str, Dict]] = None,
        refresh_inline: bool = False,
    ):
        """Roster fields and delegation for pools.

        Stale delegation profiles are queued for background refresh, or
        refreshed immediately when `refresh_inline` is set.
        """
        pools: List[StakePool] = [book.get_or_create(ActorRole.STAKE_POOL, pid) for pid in pool_ids]
        stale = [pool.id for pool in pools if not self.pool_profiles.is_fresh(pool.id)]
        if refresh_inline:
            await map_limit(stale, self.config.ENRICH_CONCURRENCY, self.pool_profiles.refresh_one)
            self.pool_profiles.flush()
        elif stale:
            queued = self.pool_profiles.queue_refresh(stale)
            logger.info(f"Queued {queued} stale pool profiles for refresh")
        for pool in pools:
            apply_pool_roster(pool, (roster_rows or {}).get(pool.id))
            apply_pool_profile(pool, self.pool_profiles)
        logger.info(f"Enriched {len(pools)} stake pools")

    @staticmethod
    def add_zero_vote_dreps(book: ActorBook, drep_ids: Iterable[str]) -> List[str]:
        """Register DReps that hold power but never voted. Returns the new ids."""
        added = []
        for drep_id in drep_ids:
            if drep_id and not is_special_drep(drep_id) and book.get(ActorRole.DREP, drep_id) is None:
                book.add_actor(ActorRole.DREP, DRep(id=drep_id))
                added.append(drep_id)
        return added

    def assemble(
        self,
        book: ActorBook,
        mode: BuildMode,
        latest_epoch: int,
        proposal_count: int,
        scanned_count: int,
        threshold_context: Dict,
        special_dreps: Optional[Dict[str, SpecialDRep]] = None,
    ) -> Snapshot:
        """Finished candidate snapshot from the book and this build's counters."""
        partial = scanned_count < proposal_count or self.skipped > 0 or self.vote_fetch_errors > 0
        snapshot = Snapshot(
            schema_version=self.config.SNAPSHOT_SCHEMA_VERSION,
            generated_at=utc_now_iso(),
            build_mode=mode,
            latest_epoch=latest_epoch,
            proposal_count=proposal_count,
            scanned_proposal_count=scanned_count,
            processed_proposal_count=len(book.proposal_info),
            skipped_proposal_count=self.skipped,
            vote_fetch_error_count=self.vote_fetch_errors,
            partial=partial,
            notice=partial_notice(scanned_count, proposal_count, self.skipped, self.vote_fetch_errors),
            threshold_context=threshold_context,
            special_dreps=special_dreps or {},
        )
        book.apply_to(snapshot)
        logger.info(
            f"{mode.value.capitalize()} build done: {len(snapshot.proposal_info)} proposals, "
            f"{len(snapshot.dreps)} DReps, {len(snapshot.committee_members)} committee members, "
            f"{len(snapshot.spos)} pools, {snapshot.vote_count()} votes"
        )
        return snapshot
