import logging
from typing import Dict, Optional
from urllib.parse import quote

import aiohttp

from govsync.common.config import Settings, settings as default_settings
from govsync.common.errors import TransientUpstreamError
from govsync.common.http import RequestClient

logger = logging.getLogger(__name__)


class CgovClient:
    """Client for the third-party governance metadata service.

    Proposal payloads list every vote with its anchor and rationale body.
    Successful responses are memoised per `{txHash}:{certIndex}` until
    `clear()` is called.
    """

    def __init__(self, config: Optional[Settings] = None, session: Optional[aiohttp.ClientSession] = None):
        self.config = config or default_settings
        self.http = RequestClient(
            "cgov",
            self.config.CGOV_PROPOSAL_API_BASE,
            max_retries=self.config.CGOV_MAX_RETRIES,
            timeout=self.config.CGOV_REQUEST_TIMEOUT,
            min_interval=self.config.CGOV_REQUEST_DELAY,
            backoff_step=self.config.CGOV_BACKOFF_STEP,
            backoff_cap=self.config.CGOV_BACKOFF_CAP,
            max_concurrency=self.config.CGOV_MAX_CONCURRENCY,
            session=session,
        )
        self._proposals: Dict[str, Dict] = {}

    async def __aenter__(self):
        await self.http.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.http.close()

    def clear(self):
        """Drop memoised payloads so the next build sees new votes."""
        self._proposals = {}

    @staticmethod
    def proposal_key(tx_hash: Optional[str], cert_index: Optional[int]) -> Optional[str]:
        tx = str(tx_hash or "").strip().lower()
        if not tx or cert_index is None or int(cert_index) < 0:
            return None
        return f"{tx}:{int(cert_index)}"

    async def get_proposal(self, tx_hash: Optional[str], cert_index: Optional[int]) -> Optional[Dict]:
        """Proposal payload, or None when the proposal cannot be addressed.

        Raises:
            UpstreamError: when the service could not be reached, refused the
                request, or returned something other than a JSON object.
        """
        key = self.proposal_key(tx_hash, cert_index)
        if key is None:
            return None
        if key in self._proposals:
            return self._proposals[key]

        payload = await self.http.get(f"/{quote(key, safe='')}")
        if not isinstance(payload, dict):
            logger.warning(f"Metadata service returned an unexpected payload for {key}")
            raise TransientUpstreamError("cgov", f"/{key}", None, "unexpected payload")
        self._proposals[key] = payload
        return payload
