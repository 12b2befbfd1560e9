"""Tests for the entry point helpers."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from govsync.main import initial_sync


class TestInitialSync:
    """Tests for the startup sync retries."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        """Test that a failed startup sync is retried."""
        orchestrator = MagicMock()
        orchestrator.run_sync = AsyncMock(side_effect=[False, True])
        with patch("govsync.main.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await initial_sync(orchestrator, force_full=True) is True
        assert orchestrator.run_sync.await_count == 2
        orchestrator.run_sync.assert_awaited_with(force_full=True)
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self) -> None:
        """Test that startup stops after STARTUP_MAX_RETRIES failures."""
        orchestrator = MagicMock()
        orchestrator.run_sync = AsyncMock(return_value=False)
        orchestrator.status.last_error = "blockfrost down"
        with patch("govsync.main.settings") as settings, patch("govsync.main.asyncio.sleep", new=AsyncMock()):
            settings.SYNC_STARTUP_DELAY = 0
            settings.STARTUP_MAX_RETRIES = 2
            settings.STARTUP_RETRY_DELAY = 0
            assert await initial_sync(orchestrator) is False
        assert orchestrator.run_sync.await_count == 3
