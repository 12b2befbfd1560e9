"""Tests for SyncOrchestrator."""

import asyncio
import json

import pytest

from govsync.common.models import BuildMode, Snapshot

from tests.fakes import P1, P2


class TestRunSync:
    """Tests for run_sync and mode selection."""

    @pytest.mark.asyncio
    async def test_first_sync_is_full_and_published(self, orchestrator, store) -> None:
        """Test that the first sync builds fully, publishes and persists."""
        assert await orchestrator.run_sync() is True

        assert orchestrator.snapshot.build_mode == BuildMode.FULL
        status = orchestrator.status_dict()
        assert status["syncing"] is False
        assert status["lastError"] is None
        assert status["lastCompletedAt"]
        assert status["lastSyncMode"] == "full"
        assert status["processedProposals"] == 2
        assert store.load().proposal_count == 2

    @pytest.mark.asyncio
    async def test_second_sync_is_delta(self, orchestrator) -> None:
        """Test that an unchanged epoch with a complete snapshot runs a delta."""
        await orchestrator.run_sync()
        assert await orchestrator.choose_mode() == BuildMode.DELTA
        assert await orchestrator.run_sync() is True
        assert orchestrator.snapshot.build_mode == BuildMode.DELTA
        assert orchestrator.status.last_sync_mode == BuildMode.DELTA

    @pytest.mark.asyncio
    async def test_full_when_forced_or_epoch_moved(self, orchestrator, world) -> None:
        """Test the conditions that force a full build."""
        await orchestrator.run_sync()
        assert await orchestrator.choose_mode(force_full=True) == BuildMode.FULL

        world.blockfrost.latest_epoch = 513
        assert await orchestrator.choose_mode() == BuildMode.FULL

        world.blockfrost.latest_epoch = 512
        world.blockfrost.failures.add(("get_latest_epoch", ""))
        assert await orchestrator.choose_mode() == BuildMode.FULL

    @pytest.mark.asyncio
    async def test_concurrent_sync_is_rejected(self, orchestrator, world) -> None:
        """Test that a second run_sync while one is in flight returns False."""
        world.blockfrost.list_gate = asyncio.Event()
        running = asyncio.create_task(orchestrator.run_sync())
        await asyncio.sleep(0)

        assert orchestrator.status.syncing is True
        assert await orchestrator.run_sync() is False

        world.blockfrost.list_gate.set()
        assert await running is True
        assert orchestrator.status.syncing is False

    @pytest.mark.asyncio
    async def test_failure_keeps_served_snapshot(self, orchestrator, world) -> None:
        """Test that a failed build records the error and serves the old snapshot."""
        await orchestrator.run_sync()
        served = orchestrator.snapshot
        world.blockfrost.failures.add(("list_proposals", ""))

        assert await orchestrator.run_sync() is False
        assert orchestrator.snapshot is served
        assert "list_proposals" in orchestrator.status.last_error
        assert orchestrator.status.syncing is False


class TestPendingSnapshot:
    """Tests for holding and promoting incomplete candidates."""

    @pytest.mark.asyncio
    async def test_incomplete_candidate_held_then_promoted(self, orchestrator, world, store) -> None:
        """Test that a partial build is held until promote_pending_snapshot."""
        await orchestrator.run_sync()
        served = orchestrator.snapshot
        world.blockfrost.failures.add(("get_proposal", P2))

        assert await orchestrator.run_sync(force_full=True) is True
        assert orchestrator.snapshot is served
        assert orchestrator.pending_snapshot is not None
        assert orchestrator.status.pending_snapshot_generated_at == orchestrator.pending_snapshot.generated_at

        assert await orchestrator.promote_pending_snapshot() is True
        assert orchestrator.snapshot.skipped_proposal_count == 1
        assert orchestrator.pending_snapshot is None
        assert orchestrator.status.pending_snapshot_generated_at is None
        await orchestrator.wait_background()
        assert P2 not in store.load().proposal_info

    @pytest.mark.asyncio
    async def test_promote_without_pending(self, orchestrator) -> None:
        """Test that promoting with nothing pending is a no-op."""
        assert await orchestrator.promote_pending_snapshot() is False


class TestStartup:
    """Tests for load_initial_snapshot and post-publish work."""

    @pytest.mark.asyncio
    async def test_empty_start(self, orchestrator) -> None:
        """Test that no files means an empty snapshot."""
        snapshot = orchestrator.load_initial_snapshot()
        assert snapshot.proposal_info == {}
        assert orchestrator.snapshot is snapshot

    @pytest.mark.asyncio
    async def test_saved_snapshot_is_served(self, orchestrator, store) -> None:
        """Test that a saved complete snapshot is loaded."""
        await orchestrator.run_sync()
        await orchestrator.wait_background()
        orchestrator.gate.served = None

        snapshot = orchestrator.load_initial_snapshot()
        assert set(snapshot.proposal_info) == {P1, P2}

    @pytest.mark.asyncio
    async def test_seed_used_when_saved_is_incomplete(self, orchestrator, store, config) -> None:
        """Test the seed fallback when the saved snapshot is incomplete."""
        await orchestrator.run_sync()
        await orchestrator.wait_background()
        good = orchestrator.snapshot
        config.seed_path.write_text(json.dumps(good.to_json_dict()))
        store.save(Snapshot(partial=True))
        for epoch in store.list_cut_epochs():
            store.delete_cut(epoch)

        snapshot = orchestrator.load_initial_snapshot()
        assert set(snapshot.proposal_info) == {P1, P2}

    @pytest.mark.asyncio
    async def test_publish_triggers_history_backfill(self, orchestrator, store) -> None:
        """Test that publishing writes epoch cuts in the background."""
        await orchestrator.run_sync()
        await orchestrator.wait_background()
        assert store.list_cut_epochs() == [509, 510, 511, 512]


class TestDegradedBuilds:
    """Tests for builds that come back with less data than is being served."""

    @pytest.mark.asyncio
    async def test_empty_build_falls_back_to_epoch_cut(self, orchestrator, world, store) -> None:
        """Test that an empty build over a partial snapshot serves the latest epoch cut."""
        world.blockfrost.failures.add(("votes", P2))
        await orchestrator.run_sync()
        await orchestrator.wait_background()
        assert orchestrator.snapshot.partial is True
        assert store.list_cut_epochs() == [509, 510, 511, 512]

        world.blockfrost.failures.clear()
        world.blockfrost.proposals = []
        assert await orchestrator.run_sync(force_full=True) is True
        await orchestrator.wait_background()

        served = orchestrator.snapshot
        assert served.historical is True
        assert served.historical_cutoff_epoch == 512
        assert set(served.proposal_info) == {P1, P2}
        assert set(store.load().proposal_info) == {P1, P2}
        assert store.list_cut_epochs() == [509, 510, 511, 512]

    @pytest.mark.asyncio
    async def test_empty_build_refused_without_cuts(self, orchestrator, world, store) -> None:
        """Test that an empty build is refused and never written over the saved snapshot."""
        await orchestrator.run_sync()
        await orchestrator.wait_background()
        served = orchestrator.snapshot
        for epoch in store.list_cut_epochs():
            store.delete_cut(epoch)

        world.blockfrost.proposals = []
        assert await orchestrator.run_sync(force_full=True) is False

        assert orchestrator.snapshot is served
        assert orchestrator.pending_snapshot is None
        assert "no governance data" in orchestrator.status.last_error
        assert set(store.load().proposal_info) == {P1, P2}
