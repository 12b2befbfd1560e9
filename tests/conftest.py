"""
Pytest configuration and shared fixtures.

Provides a test Settings instance rooted in a temp directory, the fake
upstream world, and builders/orchestrators wired to them.
"""

import pytest

from govsync.cache.pool_profiles import PoolProfileCache
from govsync.cache.store import RationaleCache, TxTimeCache
from govsync.common.config import Settings
from govsync.sync.delta import DeltaSnapshotBuilder
from govsync.sync.full import FullSnapshotBuilder
from govsync.sync.orchestrator import SyncOrchestrator
from govsync.sync.persistence import SnapshotStore
from govsync.sync.rationale import RationaleResolver

from tests.fakes import make_world

# ==============================================================================
# Settings and Upstream Fixtures
# ==============================================================================


@pytest.fixture
def config(tmp_path):
    """Settings rooted in tmp_path with small batches and no delays."""
    return Settings(
        DATA_DIR=tmp_path,
        BLOCKFROST_API_KEY="test",
        SYNC_BATCH_SIZE=1,
        SYNC_CONCURRENCY=1,
        ENRICH_CONCURRENCY=2,
        CACHE_FLUSH_EVERY=1000,
        EPOCH_SNAPSHOT_START_EPOCH=509,
        SYNC_STARTUP_DELAY=0,
        STARTUP_RETRY_DELAY=0,
        SPO_PROFILE_REFRESH_DELAY=0,
    )


@pytest.fixture
def world():
    """Fake providers holding two proposals and their voters."""
    return make_world()


@pytest.fixture
def tx_times(tmp_path):
    return TxTimeCache(tmp_path / "cache.voteTxTimes.json")


@pytest.fixture
def rationale_cache(tmp_path):
    return RationaleCache(tmp_path / "cache.voteTxRationales.json")


@pytest.fixture
def pool_profiles(tmp_path):
    """Pool profile cache without a refresher, so nothing runs in the background."""
    return PoolProfileCache(tmp_path / "cache.spoProfiles.json")


@pytest.fixture
def store(config):
    return SnapshotStore.from_settings(config)


# ==============================================================================
# Builder Fixtures
# ==============================================================================


@pytest.fixture
def resolver(world, rationale_cache, config):
    return RationaleResolver(world.koios, world.cgov, world.anchors, world.blockfrost, rationale_cache, config)


@pytest.fixture
def full_builder(world, resolver, tx_times, pool_profiles, config):
    return FullSnapshotBuilder(
        world.blockfrost, world.koios, world.anchors, resolver, tx_times, pool_profiles, config
    )


@pytest.fixture
def delta_builder(world, resolver, tx_times, pool_profiles, config):
    return DeltaSnapshotBuilder(
        world.blockfrost, world.koios, world.anchors, resolver, tx_times, pool_profiles, config
    )


@pytest.fixture
async def orchestrator(world, store, tx_times, rationale_cache, tmp_path, config):
    """Orchestrator over the fake world; waits for background work on teardown."""
    orchestrator = SyncOrchestrator(
        blockfrost=world.blockfrost,
        koios=world.koios,
        cgov=world.cgov,
        anchors=world.anchors,
        store=store,
        tx_times=tx_times,
        rationale_cache=rationale_cache,
        pool_profiles=PoolProfileCache(tmp_path / "cache.spoProfiles.json", reschedule_delay=0),
        config=config,
    )
    yield orchestrator
    await orchestrator.wait_background()
    await orchestrator.pool_profiles.wait_idle()
