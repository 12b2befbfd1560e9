"""Tests for batching and bounded fan-out helpers."""

import asyncio

import pytest

from govsync.common.errors import TransientUpstreamError
from govsync.common.pool import chunks, map_limit


class TestChunks:
    """Tests for chunks."""

    def test_splits_into_batches(self) -> None:
        """Test consecutive batches with a short tail."""
        assert list(chunks([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
        assert list(chunks([1, 2], 0)) == [[1], [2]]


class TestMapLimit:
    """Tests for map_limit."""

    @pytest.mark.asyncio
    async def test_results_keep_input_order(self) -> None:
        """Test that results line up with items whatever order calls finish in."""
        async def slow_for_small(n: int) -> int:
            await asyncio.sleep(0.01 * (5 - n))
            return n * 10

        assert await map_limit([1, 2, 3, 4], 4, slow_for_small) == [10, 20, 30, 40]

    @pytest.mark.asyncio
    async def test_limit_caps_calls_in_flight(self) -> None:
        """Test that no more than `limit` mappers run at once."""
        in_flight = 0
        peak = 0

        async def track(n: int) -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return n

        await map_limit(list(range(8)), 2, track)
        assert peak == 2

    @pytest.mark.asyncio
    async def test_failure_cancels_remaining_calls(self) -> None:
        """Test that one escaping error stops the others and is raised unwrapped."""
        finished = []

        async def mapper(n: int) -> int:
            if n == 0:
                raise TransientUpstreamError("blockfrost", "/dreps/drep0", 503, "unavailable")
            await asyncio.sleep(0.2)
            finished.append(n)
            return n

        with pytest.raises(TransientUpstreamError):
            await map_limit([0, 1, 2], 3, mapper)
        await asyncio.sleep(0.3)
        assert finished == []
