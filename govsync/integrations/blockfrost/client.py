import logging
from typing import AsyncIterator, Dict, List, Optional
from urllib.parse import quote

from govsync.common.config import Settings, settings as default_settings
from govsync.common.errors import MissingCredentialError, UpstreamError
from govsync.common.http import RequestClient

logger = logging.getLogger(__name__)


class BlockfrostClient:
    """Client for the primary Cardano indexer (Blockfrost API)."""

    def __init__(self, config: Optional[Settings] = None, session=None):
        self.config = config or default_settings
        self.http = RequestClient(
            "blockfrost",
            self.config.BLOCKFROST_BASE_URL,
            headers={"project_id": self.config.BLOCKFROST_API_KEY},
            max_retries=self.config.BLOCKFROST_MAX_RETRIES,
            timeout=self.config.BLOCKFROST_REQUEST_TIMEOUT,
            min_interval=self.config.BLOCKFROST_REQUEST_DELAY,
            backoff_step=self.config.BLOCKFROST_BACKOFF_STEP,
            backoff_cap=self.config.BLOCKFROST_BACKOFF_CAP,
            max_concurrency=self.config.BLOCKFROST_MAX_CONCURRENCY,
            session=session,
        )
        self._block_epochs: Dict[str, Optional[int]] = {}

    async def __aenter__(self):
        await self.http.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.http.close()

    def ensure_credentials(self):
        if not self.config.BLOCKFROST_API_KEY:
            raise MissingCredentialError("Missing BLOCKFROST_API_KEY")

    # Proposals and votes

    async def list_proposals(self) -> List[Dict]:
        return await self.http.paginate(
            "/governance/proposals",
            self.config.PROPOSAL_PAGE_SIZE,
            self.config.PROPOSAL_MAX_PAGES
        )

    async def get_proposal(self, proposal_id: str) -> Dict:
        return await self.http.get(f"/governance/proposals/{quote(proposal_id, safe='')}")

    async def get_proposal_metadata(self, proposal_id: str) -> Optional[Dict]:
        """Proposal anchor metadata, or None when the provider has none."""
        try:
            return await self.http.get(f"/governance/proposals/{quote(proposal_id, safe='')}/metadata")
        except UpstreamError as e:
            logger.debug(f"No metadata for proposal {proposal_id}: {e}")
            return None

    def iter_proposal_vote_pages(self, proposal_id: str) -> AsyncIterator[List[Dict]]:
        """Vote pages for a proposal, newest first."""
        return self.http.iter_pages(
            f"/governance/proposals/{quote(proposal_id, safe='')}/votes",
            self.config.PROPOSAL_VOTES_PAGE_SIZE,
            self.config.PROPOSAL_VOTES_MAX_PAGES
        )

    # Transactions and blocks

    async def get_tx(self, tx_hash: str) -> Dict:
        return await self.http.get(f"/txs/{tx_hash}")

    async def get_tx_metadata(self, tx_hash: str) -> List[Dict]:
        rows = await self.http.get(f"/txs/{tx_hash}/metadata")
        return rows if isinstance(rows, list) else []

    async def get_block_epoch(self, block_hash: Optional[str]) -> Optional[int]:
        """Epoch of a block, memoised per block hash."""
        if not block_hash:
            return None
        if block_hash in self._block_epochs:
            return self._block_epochs[block_hash]
        try:
            block = await self.http.get(f"/blocks/{block_hash}")
            epoch = int(block.get("epoch") or 0) or None
        except UpstreamError as e:
            logger.warning(f"Could not resolve epoch for block {block_hash}: {e}")
            return None
        self._block_epochs[block_hash] = epoch
        return epoch

    # Epochs

    async def get_latest_epoch(self) -> int:
        row = await self.http.get("/epochs/latest")
        return int(row.get("epoch") or 0)

    async def get_epoch_end_time(self, epoch: int) -> int:
        row = await self.http.get(f"/epochs/{int(epoch)}")
        return int(row.get("end_time") or 0)

    async def get_latest_parameters(self) -> Dict:
        return await self.http.get("/epochs/latest/parameters")

    # DReps

    async def list_drep_ids(self) -> List[str]:
        rows = await self.http.paginate("/governance/dreps", 100, 100)
        ids = []
        for row in rows:
            drep_id = str(row.get("drep_id") or "").strip()
            if drep_id and drep_id not in ids:
                ids.append(drep_id)
        return ids

    async def get_drep(self, drep_id: str) -> Dict:
        return await self.http.get(f"/governance/dreps/{quote(drep_id, safe='')}")

    async def get_drep_metadata(self, drep_id: str) -> Dict:
        return await self.http.get(f"/governance/dreps/{quote(drep_id, safe='')}/metadata")

    # Pools and accounts

    async def get_pool(self, pool_id: str) -> Dict:
        return await self.http.get(f"/pools/{pool_id}")

    async def get_account(self, stake_address: str) -> Dict:
        return await self.http.get(f"/accounts/{stake_address}")

    async def list_pools_extended(self, limit: int = 0) -> List[Dict]:
        """Registered pools with stake and metadata; `limit=0` means all."""
        rows: List[Dict] = []
        async for page in self.http.iter_pages("/pools/extended", 100, 10_000):
            rows.extend(page)
            if 0 < limit <= len(rows):
                return rows[:limit]
        return rows
