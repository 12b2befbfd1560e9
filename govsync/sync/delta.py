import logging
from contextlib import aclosing
from typing import Dict, List, Set

from govsync.common.errors import UpstreamError
from govsync.common.models import ActorRole, BuildMode, Snapshot
from govsync.sync.builder import SnapshotBuilder, apply_detail
from govsync.sync.merge import ActorBook

logger = logging.getLogger(__name__)


class DeltaSnapshotBuilder(SnapshotBuilder):
    """Brings a complete base snapshot up to date within the same epoch.

    New proposals are fetched in full. Known proposals that are still open
    get their detail refreshed and their votes paged newest first until a
    page holds nothing but already known vote hashes.
    """

    async def fetch_new_votes(self, proposal_id: str, watermark: Set[str]) -> List[Dict]:
        """Vote rows not covered by the watermark.

        Paging stops at the first page made only of known hashes, or at the
        end of the data.
        """
        rows: List[Dict] = []
        pages = self.blockfrost.iter_proposal_vote_pages(proposal_id)
        try:
            async with aclosing(pages):
                async for page in pages:
                    fresh = [
                        row for row in page
                        if str(row.get("tx_hash") or "").strip().lower() not in watermark
                    ]
                    if not fresh:
                        break
                    rows.extend(fresh)
        except UpstreamError as e:
            logger.warning(f"Vote fetch failed for {proposal_id} after {len(rows)} new rows: {e}")
            self.vote_fetch_errors += 1
        return rows

    async def refresh_open_proposal(self, proposal_id: str, book: ActorBook):
        """Detail refresh plus new votes for one known open proposal."""
        try:
            detail = await self.blockfrost.get_proposal(proposal_id)
        except UpstreamError as e:
            logger.warning(f"Could not refresh detail of {proposal_id}: {e}")
        else:
            info = book.proposal_info[proposal_id]
            previous = info.outcome
            apply_detail(info, detail)
            if info.outcome != previous:
                logger.info(f"Proposal {proposal_id} outcome {previous.value} -> {info.outcome.value}")
            book.set_outcome(proposal_id, info.outcome)

        watermark = book.known_tx_hashes(proposal_id)
        rows = await self.fetch_new_votes(proposal_id, watermark)
        if not rows:
            return
        await self.resolve_tx_times(row.get("tx_hash") for row in rows)
        added = await self.ingest_votes(proposal_id, rows, book, skip_hashes=watermark)
        logger.info(f"Proposal {proposal_id}: {len(rows)} new vote rows, {added} merged")

    async def build(self, base: Snapshot) -> Snapshot:
        """Apply upstream changes since `base` to a deep copy of it.

        The caller checks that `base` is complete and that the chain epoch
        has not moved since it was built.

        Raises:
            MissingCredentialError: without a primary indexer key.
            UpstreamError: when the proposal list is unavailable.
        """
        self.begin()
        self.blockfrost.ensure_credentials()
        rows: List[Dict] = await self.blockfrost.list_proposals()

        book = ActorBook.from_snapshot(base)
        known = set(book.proposal_info)
        new_rows = [row for row in rows if str(row.get("id") or "").strip() not in known]
        open_ids = [pid for pid, info in book.proposal_info.items() if info.outcome.is_open]
        self.total = len(new_rows) + len(open_ids)
        logger.info(f"Delta build: {len(new_rows)} new proposals, {len(open_ids)} open proposals to refresh")

        await self.process_batches(new_rows, book, base.threshold_context)

        if open_ids:
            summaries = await self.koios.get_voting_summaries(open_ids)
            for pid, summary in summaries.items():
                if pid in book.proposal_info:
                    book.proposal_info[pid].voting_summary = summary
        for proposal_id in open_ids:
            await self.refresh_open_proposal(proposal_id, book)
            self.processed += 1
            self.report_progress()

        await self.resolve_tx_times(vote.vote_tx_hash for _, _, vote in book.all_votes())
        await self.reenrich_touched(book, base)
        book.finalize(self.tx_times)
        return self.assemble(
            book,
            BuildMode.DELTA,
            base.latest_epoch,
            proposal_count=len(rows),
            scanned_count=len(rows),
            threshold_context=base.threshold_context,
            special_dreps=base.special_dreps,
        )

    async def reenrich_touched(self, book: ActorBook, base: Snapshot):
        """Re-enrich only actors that received a new vote in this build."""
        touched = {role: sorted(ids) for role, ids in book.touched.items()}
        logger.info(
            f"Re-enriching {len(touched[ActorRole.DREP])} DReps, "
            f"{len(touched[ActorRole.COMMITTEE])} committee members, "
            f"{len(touched[ActorRole.STAKE_POOL])} pools"
        )
        if touched[ActorRole.DREP]:
            # Same epoch as the base, so its powers still hold.
            power_map = {drep.id: drep.voting_power_ada for drep in base.dreps if drep.voting_power_ada}
            await self.enrich_dreps(book, touched[ActorRole.DREP], power_map)
        if touched[ActorRole.COMMITTEE]:
            try:
                committee_info = await self.koios.get_committee_info()
            except UpstreamError as e:
                logger.warning(f"Committee roster unavailable: {e}")
                committee_info = None
            await self.enrich_committee(book, touched[ActorRole.COMMITTEE], committee_info, base.latest_epoch)
        if touched[ActorRole.STAKE_POOL]:
            await self.enrich_pools(book, touched[ActorRole.STAKE_POOL], refresh_inline=True)
