import asyncio
import logging
from typing import Any, Dict, Optional

from govsync.cache.pool_profiles import PoolProfileCache, fetch_pool_delegation
from govsync.cache.store import RationaleCache, TxTimeCache
from govsync.common.config import Settings, settings as default_settings
from govsync.common.errors import SyncError, UpstreamError
from govsync.common.models import BuildMode, Snapshot, SyncStatus
from govsync.integrations.anchors.client import AnchorClient
from govsync.integrations.blockfrost.client import BlockfrostClient
from govsync.integrations.cgov.client import CgovClient
from govsync.integrations.koios.client import KoiosClient
from govsync.sync.builder import utc_now_iso
from govsync.sync.delta import DeltaSnapshotBuilder
from govsync.sync.full import FullSnapshotBuilder
from govsync.sync.gate import PromotionGate, has_governance_data, is_complete, pick_best
from govsync.sync.history import EpochHistoryBuilder
from govsync.sync.merge import ActorBook
from govsync.sync.persistence import SnapshotStore
from govsync.sync.rationale import RationaleResolver
from govsync.sync.thresholds import refresh_all_threshold_info

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Runs full or delta builds and hands candidates to the promotion gate.

    At most one sync is in flight. After every publish the snapshot is
    persisted, caches are flushed, and rationale warming plus history
    backfill run in a background task.
    """

    def __init__(
        self,
        blockfrost,
        koios,
        cgov,
        anchors,
        store: SnapshotStore,
        tx_times: TxTimeCache,
        rationale_cache: RationaleCache,
        pool_profiles: PoolProfileCache,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.blockfrost = blockfrost
        self.koios = koios
        self.cgov = cgov
        self.anchors = anchors
        self.store = store
        self.tx_times = tx_times
        self.rationale_cache = rationale_cache
        self.pool_profiles = pool_profiles
        if self.pool_profiles.refresher is None:
            self.pool_profiles.refresher = lambda pool_id: fetch_pool_delegation(self.blockfrost, pool_id)

        self.resolver = RationaleResolver(koios, cgov, anchors, blockfrost, rationale_cache, self.config)
        builder_args = (blockfrost, koios, anchors, self.resolver, tx_times, pool_profiles, self.config)
        self.full_builder = FullSnapshotBuilder(*builder_args, on_progress=self._on_progress)
        self.delta_builder = DeltaSnapshotBuilder(*builder_args, on_progress=self._on_progress)
        self.history = EpochHistoryBuilder(
            blockfrost,
            koios,
            store,
            start_epoch=self.config.EPOCH_SNAPSHOT_START_EPOCH,
        )
        self.gate = PromotionGate(min_detail_coverage=self.config.MIN_PROPOSAL_DETAIL_COVERAGE)
        self.gate.add_hook(self._persist)
        self.gate.add_hook(self._flush_caches)
        self.gate.add_hook(self._start_background)
        self.status = SyncStatus()
        self._background: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "SyncOrchestrator":
        """Wire real provider clients, caches and the snapshot store."""
        config = config or default_settings
        flush_every = config.CACHE_FLUSH_EVERY
        version = config.SNAPSHOT_SCHEMA_VERSION
        return cls(
            blockfrost=BlockfrostClient(config),
            koios=KoiosClient(config),
            cgov=CgovClient(config),
            anchors=AnchorClient(config),
            store=SnapshotStore.from_settings(config),
            tx_times=TxTimeCache(config.DATA_DIR / config.VOTE_TX_TIME_CACHE_FILENAME, flush_every, version),
            rationale_cache=RationaleCache(config.DATA_DIR / config.VOTE_TX_RATIONALE_CACHE_FILENAME, flush_every, version),
            pool_profiles=PoolProfileCache(
                config.DATA_DIR / config.SPO_PROFILE_CACHE_FILENAME,
                fresh_seconds=config.SPO_PROFILE_FRESH_HOURS * 3600,
                per_tick=config.SPO_PROFILE_REFRESH_PER_TICK,
                queue_max=config.SPO_PROFILE_QUEUE_MAX,
                reschedule_delay=config.SPO_PROFILE_REFRESH_DELAY,
                flush_every=flush_every,
                schema_version=version,
            ),
            config=config,
        )

    async def __aenter__(self):
        await self.blockfrost.__aenter__()
        await self.koios.__aenter__()
        await self.cgov.__aenter__()
        await self.anchors.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.wait_background()
        await self.pool_profiles.wait_idle()
        self._flush_caches(self.snapshot)
        await self.anchors.__aexit__(exc_type, exc_val, exc_tb)
        await self.cgov.__aexit__(exc_type, exc_val, exc_tb)
        await self.koios.__aexit__(exc_type, exc_val, exc_tb)
        await self.blockfrost.__aexit__(exc_type, exc_val, exc_tb)

    # Served state

    @property
    def snapshot(self) -> Optional[Snapshot]:
        return self.gate.served

    @property
    def pending_snapshot(self) -> Optional[Snapshot]:
        return self.gate.pending

    def status_dict(self) -> Dict[str, Any]:
        return self.status.to_json_dict()

    def _on_progress(self, processed: int, total: int):
        self.status.processed_proposals = processed
        self.status.total_proposals = total

    def refresh_derived(self, snapshot: Snapshot) -> Snapshot:
        """Vote times from the tx-time cache and current threshold rules."""
        refresh_all_threshold_info(snapshot)
        book = ActorBook.from_snapshot(snapshot)
        book.finalize(self.tx_times)
        refreshed = snapshot.model_copy()
        book.apply_to(refreshed)
        return refreshed

    def load_initial_snapshot(self) -> Snapshot:
        """Pick the snapshot to serve before the first sync completes.

        The saved snapshot or the latest epoch cut, whichever looks better;
        the seed file when that is incomplete; an empty snapshot otherwise.
        """
        chosen = pick_best(self.store.load(), self.store.latest_cut())
        if not is_complete(chosen, self.config.MIN_PROPOSAL_DETAIL_COVERAGE):
            seed = self.store.load_seed()
            if seed is not None and (chosen is None or has_governance_data(seed)):
                logger.info("Loaded snapshot is incomplete, serving the seed snapshot")
                chosen = seed
        if chosen is None:
            logger.warning("No saved snapshot found, starting empty")
            chosen = Snapshot(schema_version=self.config.SNAPSHOT_SCHEMA_VERSION)
        else:
            chosen = self.refresh_derived(chosen)
            logger.info(
                f"Serving snapshot generated at {chosen.generated_at} "
                f"({len(chosen.proposal_info)} proposals, epoch {chosen.latest_epoch})"
            )
        self.gate.served = chosen
        return chosen

    # Sync

    async def choose_mode(self, force_full: bool = False) -> BuildMode:
        """Delta only when the served snapshot is complete and the epoch is unchanged."""
        base = self.gate.served
        if force_full:
            return BuildMode.FULL
        if base is None or base.historical or base.latest_epoch <= 0 or not self.gate.is_complete(base):
            return BuildMode.FULL
        try:
            epoch = await self.blockfrost.get_latest_epoch()
        except UpstreamError as e:
            logger.warning(f"Could not read the current epoch, running a full build: {e}")
            return BuildMode.FULL
        if epoch != base.latest_epoch:
            logger.info(f"Epoch moved from {base.latest_epoch} to {epoch}, running a full build")
            return BuildMode.FULL
        return BuildMode.DELTA

    async def run_sync(self, force_full: bool = False) -> bool:
        """Build and offer one candidate snapshot.

        Returns False when a sync is already running, the build failed, or
        the build carried no governance data while the served snapshot
        does; the served snapshot is untouched in each case.
        """
        if self.status.syncing:
            logger.info("Sync already in progress, ignoring request")
            return False
        self.status.syncing = True
        self.status.last_started_at = utc_now_iso()
        self.status.processed_proposals = 0
        self.status.total_proposals = 0
        try:
            mode = await self.choose_mode(force_full)
            logger.info(f"Starting {mode.value} sync")
            if mode == BuildMode.DELTA:
                fresh = await self.delta_builder.build(self.gate.served)
            else:
                fresh = await self.full_builder.build()
            candidate = self.best_candidate(fresh)
            published = await self.gate.offer(candidate)
            if not published and self.gate.pending is not candidate:
                raise SyncError(
                    f"{mode.value} build produced no governance data, keeping the current snapshot"
                )
        except Exception as e:
            self.status.last_error = str(e) or e.__class__.__name__
            logger.error(f"Sync failed: {self.status.last_error}")
            return False
        finally:
            self.status.syncing = False
            self._flush_caches(None)

        self.status.last_error = None
        self.status.last_completed_at = utc_now_iso()
        self.status.last_sync_mode = mode
        self.status.last_epoch_at_sync = fresh.latest_epoch
        self.status.pending_snapshot_generated_at = self.gate.pending.generated_at if self.gate.pending else None
        return True

    def best_candidate(self, fresh: Snapshot) -> Snapshot:
        """The fresh build, or the latest epoch cut when the build looks degraded next to it."""
        cut = self.store.latest_cut()
        best = pick_best(fresh, cut)
        if best is not fresh:
            logger.warning(
                f"Fresh {fresh.build_mode.value} build ({len(fresh.proposal_info)} proposals, "
                f"{len(fresh.dreps)} DReps) is weaker than the epoch {cut.historical_cutoff_epoch} cut, "
                f"offering the cut instead"
            )
        return best

    async def promote_pending_snapshot(self) -> bool:
        """Operator override: serve the pending candidate."""
        promoted = await self.gate.promote_pending()
        self.status.pending_snapshot_generated_at = self.gate.pending.generated_at if self.gate.pending else None
        return promoted

    # Publish hooks

    def _persist(self, snapshot: Snapshot):
        if not self.store.save(snapshot):
            logger.error(f"Snapshot persisted only in memory: {self.store.last_error}")

    def _flush_caches(self, snapshot: Optional[Snapshot]):
        for cache in (self.tx_times, self.rationale_cache, self.pool_profiles):
            if not cache.flush():
                logger.error(f"Cache flush failed: {cache.last_error}")

    def _start_background(self, snapshot: Snapshot):
        if self._background is not None and not self._background.done():
            logger.info("Post-publish work still running, skipping for this snapshot")
            return
        self._background = asyncio.create_task(self._after_publish(snapshot))

    async def _after_publish(self, snapshot: Snapshot):
        try:
            await self.resolver.warm_from_snapshot(snapshot)
        except UpstreamError as e:
            logger.warning(f"Rationale cache warming stopped: {e}")
        if snapshot.historical:
            return
        await self.history.backfill(snapshot)

    async def wait_background(self):
        """Wait for post-publish work (rationale warming, history backfill)."""
        if self._background is not None:
            await self._background
