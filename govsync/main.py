import argparse
import asyncio
import logging
import time

from govsync.common.config import settings
from govsync.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


async def initial_sync(orchestrator: SyncOrchestrator, force_full: bool = False) -> bool:
    """First sync after startup, retried while it fails."""
    await asyncio.sleep(settings.SYNC_STARTUP_DELAY)
    attempts = 1 + max(0, settings.STARTUP_MAX_RETRIES)
    for attempt in range(attempts):
        if await orchestrator.run_sync(force_full=force_full):
            return True
        if attempt + 1 < attempts:
            logger.warning(
                f"Startup sync attempt {attempt + 1}/{attempts} failed, "
                f"retrying in {settings.STARTUP_RETRY_DELAY}s"
            )
            await asyncio.sleep(settings.STARTUP_RETRY_DELAY)
    logger.error(f"Startup sync failed after {attempts} attempts: {orchestrator.status.last_error}")
    return False


async def run_forever(orchestrator: SyncOrchestrator):
    """Delta-eligible syncs every poll interval, a forced full rebuild once a day."""
    last_full = time.monotonic()
    while True:
        await asyncio.sleep(settings.DELTA_POLL_INTERVAL)
        force_full = time.monotonic() - last_full >= settings.FULL_REBUILD_INTERVAL
        try:
            ok = await orchestrator.run_sync(force_full=force_full)
        except Exception as e:
            logger.error(f"Error in sync loop: {e}")
            continue
        if ok and force_full:
            last_full = time.monotonic()


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Cardano governance snapshot sync")
    parser.add_argument("--once", action="store_true", help="Run a single sync and exit")
    parser.add_argument("--force-full", action="store_true", help="Force a full rebuild on the first sync")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    configure_logging(args.verbose)
    logger.info(f"Using data directory {settings.DATA_DIR}")

    async with SyncOrchestrator.from_settings(settings) as orchestrator:
        orchestrator.load_initial_snapshot()
        ok = await initial_sync(orchestrator, force_full=args.force_full)
        if args.once:
            await orchestrator.wait_background()
            logger.info(f"Sync status: {orchestrator.status_dict()}")
            return 0 if ok else 1
        try:
            await run_forever(orchestrator)
        except asyncio.CancelledError:
            logger.info("Sync loop stopped")
    return 0


def run():
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
