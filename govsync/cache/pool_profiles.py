import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, Optional

from govsync.cache.store import JsonCacheStore
from govsync.common.errors import UpstreamError
from govsync.common.text import normalize_literal

logger = logging.getLogger(__name__)

PoolRefresher = Callable[[str], Awaitable[Dict]]


def classify_delegation(drep_id: str) -> str:
    literal = normalize_literal(drep_id)
    if not literal:
        return "Not delegated"
    if "always_abstain" in literal:
        return "Always abstain"
    if "no_confidence" in literal:
        return "Always no confidence"
    return "Delegated to DRep"


async def fetch_pool_delegation(client, pool_id: str) -> Dict:
    """Reward account and delegated DRep of a pool operator.

    `client` is a BlockfrostClient; UpstreamError propagates.
    """
    pool = await client.get_pool(pool_id)
    reward_account = str(pool.get("reward_account") or "").strip()
    drep_id = ""
    if reward_account:
        account = await client.get_account(reward_account)
        drep_id = str(account.get("drep_id") or "").strip()
    return {
        "rewardAccount": reward_account,
        "drepId": drep_id,
        "delegationStatus": classify_delegation(drep_id),
    }


class PoolProfileCache(JsonCacheStore):
    """Pool id -> delegation profile, refreshed in the background.

    Entries older than `fresh_seconds` are queued for refresh. The queue is
    bounded; a single drain task processes at most `per_tick` pools, flushes,
    waits `reschedule_delay` and repeats until the queue is empty.
    """

    def __init__(
        self,
        path: Path,
        refresher: Optional[PoolRefresher] = None,
        fresh_seconds: float = 24 * 3600,
        per_tick: int = 120,
        queue_max: int = 5000,
        reschedule_delay: float = 0.5,
        flush_every: int = 200,
        schema_version: int = 1,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(path, "pool profile", flush_every, schema_version)
        self.refresher = refresher
        self.fresh_seconds = fresh_seconds
        self.per_tick = max(1, per_tick)
        self.queue_max = max(1, queue_max)
        self.reschedule_delay = reschedule_delay
        self.clock = clock
        self._queue: Dict[str, None] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def refreshing(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_profile(self, pool_id: str) -> Optional[Dict]:
        entry = self.get(pool_id)
        return entry if isinstance(entry, dict) else None

    def is_fresh(self, pool_id: str) -> bool:
        entry = self.get_profile(pool_id)
        if not entry:
            return False
        fetched_at = float(entry.get("fetchedAt") or 0)
        return fetched_at > 0 and self.clock() - fetched_at < self.fresh_seconds

    def queue_refresh(self, pool_ids: Iterable[str]) -> int:
        """Queue stale pools and make sure a drain task is running.

        Returns the number of newly queued pools.
        """
        added = 0
        for raw in pool_ids:
            pool_id = str(raw or "").strip()
            if not pool_id or pool_id in self._queue or self.is_fresh(pool_id):
                continue
            if len(self._queue) >= self.queue_max:
                logger.warning(f"Pool profile refresh queue full ({self.queue_max}), dropping remaining pools")
                break
            self._queue[pool_id] = None
            added += 1
        if self._queue and self.refresher and not self.refreshing:
            self._task = asyncio.create_task(self._drain())
        return added

    async def refresh_one(self, pool_id: str) -> bool:
        if self.refresher is None:
            return False
        try:
            profile = await self.refresher(pool_id)
        except UpstreamError as e:
            logger.warning(f"Could not refresh pool profile {pool_id}: {e}")
            return False
        previous = self.get_profile(pool_id) or {}
        self.set(pool_id, {**previous, **profile, "fetchedAt": self.clock()})
        return True

    async def _drain(self):
        while self._queue:
            done = 0
            while self._queue and done < self.per_tick:
                pool_id = next(iter(self._queue))
                del self._queue[pool_id]
                await self.refresh_one(pool_id)
                done += 1
            self.flush()
            if self._queue:
                logger.debug(f"{len(self._queue)} pool profiles still queued, rescheduling")
                await asyncio.sleep(self.reschedule_delay)
        logger.info("Pool profile refresh queue drained")

    async def wait_idle(self):
        """Wait for the current drain task, if any."""
        if self._task is not None:
            await self._task
