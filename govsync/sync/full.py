import logging
from typing import Dict, List

from govsync.common.errors import UpstreamError
from govsync.common.models import ActorRole, BuildMode, Snapshot
from govsync.sync.builder import SnapshotBuilder
from govsync.sync.merge import ActorBook
from govsync.sync.profiles import fetch_special_dreps
from govsync.sync.thresholds import build_threshold_context

logger = logging.getLogger(__name__)


class FullSnapshotBuilder(SnapshotBuilder):
    """Rebuilds the whole snapshot from upstream data."""

    async def _load_context(self):
        latest_epoch = await self.blockfrost.get_latest_epoch()

        try:
            threshold_context = build_threshold_context(await self.blockfrost.get_latest_parameters())
        except UpstreamError as e:
            logger.warning(f"Epoch parameters unavailable, thresholds left empty: {e}")
            threshold_context = build_threshold_context(None)

        try:
            power_map = await self.koios.get_drep_power_for_epoch(latest_epoch)
        except UpstreamError as e:
            logger.warning(f"DRep power for epoch {latest_epoch} unavailable: {e}")
            power_map = {}

        try:
            drep_ids = await self.blockfrost.list_drep_ids()
        except UpstreamError as e:
            logger.warning(f"DRep registry unavailable: {e}")
            drep_ids = []

        try:
            committee_info = await self.koios.get_committee_info()
        except UpstreamError as e:
            logger.warning(f"Committee roster unavailable: {e}")
            committee_info = None

        return latest_epoch, threshold_context, power_map, drep_ids, committee_info

    async def _load_pool_roster(self) -> Dict[str, Dict]:
        try:
            rows = await self.blockfrost.list_pools_extended(self.config.SPO_ROSTER_LIMIT)
        except UpstreamError as e:
            logger.warning(f"Pool roster unavailable: {e}")
            return {}
        return {str(row.get("pool_id") or "").strip(): row for row in rows if row.get("pool_id")}

    async def build(self) -> Snapshot:
        """Build a snapshot from scratch.

        Raises:
            MissingCredentialError: without a primary indexer key.
            UpstreamError: when the proposal list or latest epoch is unavailable.
        """
        self.begin()
        self.blockfrost.ensure_credentials()
        rows: List[Dict] = await self.blockfrost.list_proposals()
        latest_epoch, threshold_context, power_map, drep_ids, committee_info = await self._load_context()

        scanned = rows
        if self.config.PROPOSAL_SCAN_LIMIT > 0:
            scanned = rows[:self.config.PROPOSAL_SCAN_LIMIT]
        self.total = len(scanned)
        logger.info(f"Full build: {len(scanned)}/{len(rows)} proposals, epoch {latest_epoch}")

        book = ActorBook({})
        await self.process_batches(scanned, book, threshold_context)
        await self.resolve_tx_times(vote.vote_tx_hash for _, _, vote in book.all_votes())

        self.add_zero_vote_dreps(book, list(power_map.keys()) + list(drep_ids))
        await self.enrich_dreps(book, list(book.actors[ActorRole.DREP].keys()), power_map)
        await self.enrich_committee(book, list(book.actors[ActorRole.COMMITTEE].keys()), committee_info, latest_epoch)

        pool_roster = await self._load_pool_roster()
        for pool_id in pool_roster:
            book.get_or_create(ActorRole.STAKE_POOL, pool_id)
        await self.enrich_pools(book, list(book.actors[ActorRole.STAKE_POOL].keys()), pool_roster)
        special_dreps = await fetch_special_dreps(self.blockfrost)

        book.finalize(self.tx_times)
        return self.assemble(
            book,
            BuildMode.FULL,
            latest_epoch,
            proposal_count=len(rows),
            scanned_count=len(scanned),
            threshold_context=threshold_context,
            special_dreps=special_dreps,
        )
