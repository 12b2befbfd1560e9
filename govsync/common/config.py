import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings."""
    # Base paths
    BASE_DIR: Path = Path(__file__).parent.parent.parent
    DATA_DIR: Path = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))

    # Primary indexer (Blockfrost)
    BLOCKFROST_API_KEY: str = os.getenv("BLOCKFROST_API_KEY", "")
    BLOCKFROST_BASE_URL: str = "https://cardano-mainnet.blockfrost.io/api/v0"
    BLOCKFROST_MAX_RETRIES: int = 3
    BLOCKFROST_REQUEST_TIMEOUT: float = 10.0
    BLOCKFROST_REQUEST_DELAY: float = 0.18
    BLOCKFROST_BACKOFF_STEP: float = 0.8
    BLOCKFROST_BACKOFF_CAP: float = 5.0
    BLOCKFROST_MAX_CONCURRENCY: int = 4

    # Secondary indexer (Koios)
    KOIOS_API_KEY: str = os.getenv("KOIOS_API_KEY", "")
    KOIOS_BASE_URL: str = "https://api.koios.rest/api/v1"
    KOIOS_MAX_RETRIES: int = 4
    KOIOS_REQUEST_TIMEOUT: float = 15.0
    KOIOS_REQUEST_DELAY: float = 0.12
    KOIOS_BACKOFF_STEP: float = 1.2
    KOIOS_BACKOFF_CAP: float = 10.0
    KOIOS_MAX_CONCURRENCY: int = 2

    # Metadata service and anchors
    CGOV_PROPOSAL_API_BASE: str = "https://app.cgov.io/api/proposal"
    CGOV_MAX_RETRIES: int = 2
    CGOV_REQUEST_TIMEOUT: float = 12.0
    CGOV_REQUEST_DELAY: float = 0.1
    CGOV_BACKOFF_STEP: float = 1.0
    CGOV_BACKOFF_CAP: float = 5.0
    CGOV_MAX_CONCURRENCY: int = 2
    ANCHOR_MAX_RETRIES: int = 1
    ANCHOR_REQUEST_TIMEOUT: float = 8.0
    ANCHOR_REQUEST_DELAY: float = 0.05
    ANCHOR_BACKOFF_STEP: float = 0.5
    ANCHOR_BACKOFF_CAP: float = 2.0
    ANCHOR_MAX_CONCURRENCY: int = 4
    IPFS_GATEWAYS: List[str] = [
        "https://ipfs.blockfrost.dev/ipfs/",
        "https://ipfs.filebase.io/ipfs/",
        "https://ipfs.io/ipfs/",
        "https://gateway.pinata.cloud/ipfs/",
    ]

    # Rationale resolution
    RATIONALE_USE_CGOV_FALLBACK: bool = True
    RATIONALE_RESOLVE_TEXT: bool = False
    VOTE_TX_RATIONALE_MAX_LOOKUPS: int = 2000
    VOTE_TX_RATIONALE_MAX_DURATION: float = 360.0  # 6 minutes

    # Paging and batching
    PROPOSAL_PAGE_SIZE: int = 100
    PROPOSAL_MAX_PAGES: int = 1000
    PROPOSAL_VOTES_PAGE_SIZE: int = 100
    PROPOSAL_VOTES_MAX_PAGES: int = 200
    PROPOSAL_SCAN_LIMIT: int = 0
    SPO_ROSTER_LIMIT: int = 0
    SYNC_BATCH_SIZE: int = 5
    SYNC_CONCURRENCY: int = 1
    ENRICH_CONCURRENCY: int = 3
    VOTE_TX_TIME_MAX_LOOKUPS: int = 40000

    # Persisted files
    SNAPSHOT_FILENAME: str = "snapshot.accountability.json"
    SNAPSHOT_SEED_FILENAME: str = "snapshot.seed.json"
    SNAPSHOT_HISTORY_DIRNAME: str = "snapshot_history"
    VOTE_TX_TIME_CACHE_FILENAME: str = "cache.voteTxTimes.json"
    VOTE_TX_RATIONALE_CACHE_FILENAME: str = "cache.voteTxRationales.json"
    SPO_PROFILE_CACHE_FILENAME: str = "cache.spoProfiles.json"
    SNAPSHOT_SCHEMA_VERSION: int = 1

    # Cache tuning
    CACHE_FLUSH_EVERY: int = 200
    SPO_PROFILE_FRESH_HOURS: float = 24.0
    SPO_PROFILE_REFRESH_PER_TICK: int = 120
    SPO_PROFILE_QUEUE_MAX: int = 5000
    SPO_PROFILE_REFRESH_DELAY: float = 0.5

    # History and promotion
    EPOCH_SNAPSHOT_START_EPOCH: int = 507
    MIN_PROPOSAL_DETAIL_COVERAGE: float = 0.5

    # Scheduling
    DELTA_POLL_INTERVAL: int = int(os.getenv("DELTA_POLL_INTERVAL", "180"))  # 3 minutes default
    FULL_REBUILD_INTERVAL: int = int(os.getenv("FULL_REBUILD_INTERVAL", "86400"))  # daily default
    SYNC_STARTUP_DELAY: float = 3.0
    STARTUP_MAX_RETRIES: int = 3
    STARTUP_RETRY_DELAY: float = 30.0

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore"
    }

    @property
    def snapshot_path(self) -> Path:
        return self.DATA_DIR / self.SNAPSHOT_FILENAME

    @property
    def seed_path(self) -> Path:
        return self.DATA_DIR / self.SNAPSHOT_SEED_FILENAME

    @property
    def history_dir(self) -> Path:
        return self.DATA_DIR / self.SNAPSHOT_HISTORY_DIRNAME


# Create settings instance
settings = Settings()

# Ensure data directory exists
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
