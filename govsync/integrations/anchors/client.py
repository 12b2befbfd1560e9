import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from govsync.common.config import Settings, settings as default_settings
from govsync.common.errors import UpstreamError
from govsync.common.http import RequestClient
from govsync.common.text import clean_plain_text, extract_rationale_sections, ipfs_candidates, pick_rationale_text

logger = logging.getLogger(__name__)


class AnchorClient:
    """Dereferences off-chain metadata anchors (HTTP or IPFS).

    Every mirror attempt goes through one rate-limited, retrying request
    client, so a burst of anchor lookups shares a single concurrency cap.
    """

    def __init__(self, config: Optional[Settings] = None, session: Optional[aiohttp.ClientSession] = None):
        self.config = config or default_settings
        self.gateways = list(self.config.IPFS_GATEWAYS)
        self.http = RequestClient(
            "anchors",
            "",
            max_retries=self.config.ANCHOR_MAX_RETRIES,
            timeout=self.config.ANCHOR_REQUEST_TIMEOUT,
            min_interval=self.config.ANCHOR_REQUEST_DELAY,
            backoff_step=self.config.ANCHOR_BACKOFF_STEP,
            backoff_cap=self.config.ANCHOR_BACKOFF_CAP,
            max_concurrency=self.config.ANCHOR_MAX_CONCURRENCY,
            session=session,
        )
        self._payloads: Dict[str, Any] = {}
        self._rationales: Dict[str, Dict] = {}

    async def __aenter__(self):
        await self.http.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.http.close()

    async def _fetch_text(self, url: str) -> Optional[str]:
        try:
            return await self.http.get_text(url)
        except UpstreamError as e:
            logger.debug(f"Anchor {url} unavailable: {e}")
            return None

    async def fetch_payload(self, url: str) -> Optional[Any]:
        """Parsed JSON (or raw text) from the first mirror that answers.

        Mirrors are tried in order. Returns None when no candidate URL
        produced a body.
        """
        url = (url or "").strip()
        if url in self._payloads:
            return self._payloads[url]

        payload = None
        for candidate in ipfs_candidates(url, self.gateways):
            raw = await self._fetch_text(candidate)
            if not raw:
                continue
            try:
                payload = json.loads(raw)
            except ValueError:
                payload = raw
            break

        if payload is not None:
            self._payloads[url] = payload
        return payload

    async def fetch_rationale(self, url: str) -> Dict:
        """`{"text": ..., "sections": [...]}` for a vote rationale anchor."""
        url = (url or "").strip()
        if url in self._rationales:
            return self._rationales[url]
        payload = await self.fetch_payload(url)
        if isinstance(payload, dict):
            text = pick_rationale_text(payload)
            result = {"text": text, "sections": extract_rationale_sections(payload)}
        else:
            text = clean_plain_text(payload) if isinstance(payload, str) else ""
            result = {"text": text, "sections": [{"title": "Rationale", "text": text}] if text else []}
        if payload is not None:
            self._rationales[url] = result
        return result
