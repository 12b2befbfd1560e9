import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from govsync.common.config import Settings, settings as default_settings
from govsync.common.errors import UpstreamError
from govsync.common.http import RequestClient
from govsync.common.text import normalize_vote_role

logger = logging.getLogger(__name__)

VOTE_LIST_LIMIT = 1000


@dataclass
class KoiosVoteEntry:
    """Rationale signal for one vote as reported by the vote_list endpoint."""
    has_rationale: bool
    rationale_url: str = ""
    voter_id: str = ""
    role: str = ""


@dataclass
class VoteLookup:
    """Per-proposal vote_list index keyed by `tx:{hash}` and `{role}:{voter}`.

    `unresolved` is set when the provider failed before returning any row
    for the proposal, so an absent entry means "could not check".
    """
    entries: Dict[str, KoiosVoteEntry] = field(default_factory=dict)
    unresolved: bool = False

    def add_row(self, row: Dict):
        role = normalize_vote_role(row.get("voter_role"))
        voter_id = str(row.get("voter_id") or "").strip()
        tx_hash = str(row.get("vote_tx_hash") or "").strip().lower()
        entry = KoiosVoteEntry(
            has_rationale=has_koios_rationale(row),
            rationale_url=str(row.get("meta_url") or row.get("anchor_url") or "").strip(),
            voter_id=voter_id,
            role=role,
        )
        if tx_hash:
            self.entries.setdefault(f"tx:{tx_hash}", entry)
        if role and voter_id:
            self.entries.setdefault(f"{role}:{voter_id}".lower(), entry)

    def merge(self, other: "VoteLookup"):
        """Add entries from `other` without overwriting existing ones.

        An unresolved `other` taints the merged lookup: a miss may be one of
        the rows that query failed to return.
        """
        for key, entry in other.entries.items():
            self.entries.setdefault(key, entry)
        if other.unresolved:
            self.unresolved = True

    def find(self, tx_hash: str = "", role: str = "", voter_id: str = "") -> Optional[KoiosVoteEntry]:
        tx_key = (tx_hash or "").strip().lower()
        if tx_key and f"tx:{tx_key}" in self.entries:
            return self.entries[f"tx:{tx_key}"]
        if role and voter_id:
            return self.entries.get(f"{role}:{voter_id.strip()}".lower())
        return None


def has_koios_rationale(row: Dict) -> bool:
    for key in ("meta_url", "meta_hash", "anchor_url", "anchor_hash"):
        value = row.get(key)
        if isinstance(value, str) and value.strip():
            return True
    return isinstance(row.get("meta_json"), dict)


def in_filter(values: Iterable[str]) -> str:
    """PostgREST `in.(...)` filter with quoted values."""
    clean = []
    for value in values:
        text = str(value or "").strip()
        if text and text not in clean:
            clean.append(text)
    if not clean:
        return ""
    joined = ",".join('"' + text.replace('"', '""') + '"' for text in clean)
    return f"in.({joined})"


class KoiosClient:
    """Client for the secondary Cardano indexer (Koios API)."""

    def __init__(self, config: Optional[Settings] = None, session=None):
        self.config = config or default_settings
        headers = {"accept": "application/json"}
        if self.config.KOIOS_API_KEY:
            headers["authorization"] = f"Bearer {self.config.KOIOS_API_KEY}"
        self.http = RequestClient(
            "koios",
            self.config.KOIOS_BASE_URL,
            headers=headers,
            max_retries=self.config.KOIOS_MAX_RETRIES,
            timeout=self.config.KOIOS_REQUEST_TIMEOUT,
            min_interval=self.config.KOIOS_REQUEST_DELAY,
            backoff_step=self.config.KOIOS_BACKOFF_STEP,
            backoff_cap=self.config.KOIOS_BACKOFF_CAP,
            max_concurrency=self.config.KOIOS_MAX_CONCURRENCY,
            session=session,
        )

    async def __aenter__(self):
        await self.http.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.http.close()

    async def get_voting_summaries(self, proposal_ids: List[str]) -> Dict[str, Dict]:
        """Voting power summaries keyed by proposal id. Empty on failure."""
        ids_filter = in_filter(proposal_ids)
        if not ids_filter:
            return {}
        try:
            rows = await self.http.get("/proposal_voting_summary", params={"_proposal_id": ids_filter})
        except UpstreamError as e:
            logger.warning(f"Voting summaries unavailable for {len(proposal_ids)} proposals: {e}")
            return {}
        summaries: Dict[str, Dict] = {}
        for row in rows if isinstance(rows, list) else []:
            proposal_id = str(row.get("_proposal_id") or row.get("proposal_id") or "").strip()
            if proposal_id:
                summaries.setdefault(proposal_id, row)
        return summaries

    async def get_vote_lookups(
        self,
        proposal_ids: List[str],
        voter_role: Optional[str] = None,
        max_rows: int = 10_000,
    ) -> Dict[str, VoteLookup]:
        """vote_list rows for a batch of proposals, indexed per proposal.

        Proposals for which nothing was read before a provider failure are
        marked unresolved.
        """
        ids = [pid for pid in dict.fromkeys(str(p or "").strip() for p in proposal_ids) if pid]
        lookups = {pid: VoteLookup() for pid in ids}
        ids_filter = in_filter(ids)
        if not ids_filter:
            return lookups

        params = {"proposal_id": ids_filter, "order": "block_time.desc"}
        if voter_role:
            params["voter_role"] = f"eq.{voter_role}"
        failed = False
        offset = 0
        while offset < max_rows:
            try:
                rows = await self.http.get("/vote_list", params={**params, "limit": VOTE_LIST_LIMIT, "offset": offset})
            except UpstreamError as e:
                logger.warning(f"vote_list lookup failed at offset {offset}: {e}")
                failed = True
                break
            if not isinstance(rows, list) or not rows:
                break
            for row in rows:
                proposal_id = str(row.get("proposal_id") or row.get("_proposal_id") or "").strip()
                if proposal_id in lookups:
                    lookups[proposal_id].add_row(row)
            if len(rows) < VOTE_LIST_LIMIT:
                break
            offset += len(rows)

        if failed:
            for lookup in lookups.values():
                if not lookup.entries:
                    lookup.unresolved = True
        return lookups

    async def get_drep_power_for_epoch(self, epoch: int) -> Dict[str, float]:
        """DRep voting power in ADA as of `epoch`."""
        rows = await self.http.paginate_offset(
            "/drep_history",
            VOTE_LIST_LIMIT,
            20_000,
            params={"epoch_no": f"eq.{int(epoch)}"}
        )
        power: Dict[str, float] = {}
        for row in rows:
            drep_id = str(row.get("drep_id") or "").strip()
            if not drep_id:
                continue
            try:
                power[drep_id] = max(0.0, int(row.get("amount") or 0) / 1_000_000)
            except (TypeError, ValueError):
                power[drep_id] = 0.0
        return power

    async def get_committee_info(self) -> Optional[Dict]:
        rows = await self.http.get("/committee_info")
        if isinstance(rows, list) and rows:
            return rows[0]
        return None

    async def get_committee_vote_meta_urls(self, cc_hot_id: str, limit: int = 50) -> List[str]:
        """Anchor URLs of a committee member's most recent votes."""
        rows = await self.http.get(
            "/vote_list",
            params={
                "voter_id": f"eq.{cc_hot_id}",
                "order": "block_time.desc",
                "limit": limit,
            }
        )
        urls = []
        for row in rows if isinstance(rows, list) else []:
            url = str(row.get("meta_url") or "").strip()
            if url and url not in urls:
                urls.append(url)
        return urls
