import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class JsonCacheStore:
    """Disk-backed key/value map with lazy load and batched write-back.

    The file holds `{"schemaVersion": N, "entries": {...}}`. A missing,
    unreadable or version-mismatched file yields an empty cache. Writes
    rewrite the whole file once `flush_every` keys have changed, or on an
    explicit `flush()`.
    """

    def __init__(self, path: Path, name: str, flush_every: int = 200, schema_version: int = 1):
        self.path = Path(path)
        self.name = name
        self.flush_every = max(1, flush_every)
        self.schema_version = schema_version
        self.last_error: Optional[str] = None
        self._entries: Optional[Dict[str, Any]] = None
        self._pending = 0

    @property
    def entries(self) -> Dict[str, Any]:
        if self._entries is None:
            self._entries = self._load_state()
            logger.info(f"Loaded {self.name} cache from {self.path}: {len(self._entries)} entries")
        return self._entries

    def _load_state(self) -> Dict[str, Any]:
        """Load cache entries from file."""
        try:
            if not self.path.exists():
                return {}
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Error loading {self.name} cache, starting empty: {e}")
            return {}
        if not isinstance(data, dict) or not isinstance(data.get("entries"), dict):
            logger.warning(f"Ignoring {self.name} cache with unexpected shape")
            return {}
        if data.get("schemaVersion") != self.schema_version:
            logger.warning(
                f"Ignoring {self.name} cache with schema version {data.get('schemaVersion')} "
                f"(expected {self.schema_version})"
            )
            return {}
        return data["entries"]

    def _save_state(self) -> bool:
        """Rewrite the cache file from memory."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(f"{self.path.name}.tmp")
            with open(tmp_path, "w") as f:
                json.dump({"schemaVersion": self.schema_version, "entries": self.entries}, f)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            self.last_error = f"{self.name} cache write failed: {e}"
            logger.error(f"Error saving {self.name} cache: {e}")
            return False
        self._pending = 0
        self.last_error = None
        logger.debug(f"Saved {self.name} cache to {self.path}")
        return True

    @property
    def dirty(self) -> bool:
        return self._pending > 0

    def get(self, key: str, default: Any = None) -> Any:
        return self.entries.get(key, default)

    def set(self, key: str, value: Any):
        self.entries[key] = value
        self._pending += 1
        if self._pending >= self.flush_every:
            self._save_state()

    def flush(self) -> bool:
        """Write pending changes, if any."""
        if not self.dirty:
            return True
        return self._save_state()

    def __contains__(self, key: str) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)


class TxTimeCache(JsonCacheStore):
    """Vote tx hash -> block time (unix seconds). 0 marks a failed lookup."""

    def __init__(self, path: Path, flush_every: int = 200, schema_version: int = 1):
        super().__init__(path, "vote tx time", flush_every, schema_version)

    def get_time(self, tx_hash: str) -> Optional[int]:
        value = self.get((tx_hash or "").strip().lower())
        try:
            value = int(value or 0)
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None

    def record(self, tx_hash: str, block_time: int):
        key = (tx_hash or "").strip().lower()
        if key:
            self.set(key, int(block_time or 0))

    def missing(self, tx_hashes: Iterable[str]) -> List[str]:
        """Hashes without a usable time, de-duplicated, in input order."""
        out = []
        seen = set()
        for tx_hash in tx_hashes:
            key = (tx_hash or "").strip().lower()
            if key and key not in seen and self.get_time(key) is None:
                seen.add(key)
                out.append(key)
        return out


class RationaleCache(JsonCacheStore):
    """Vote tx hash -> `{hasRationale, rationaleUrl, rationaleText, fetchedAt}`."""

    def __init__(self, path: Path, flush_every: int = 200, schema_version: int = 1):
        super().__init__(path, "vote rationale", flush_every, schema_version)

    def get_entry(self, tx_hash: str) -> Optional[Dict]:
        entry = self.get((tx_hash or "").strip().lower())
        return entry if isinstance(entry, dict) else None

    def record(self, tx_hash: str, has_rationale: bool, url: str = "", text: str = ""):
        """Store a result, keeping previously known URL/text when the new one lacks them."""
        key = (tx_hash or "").strip().lower()
        if not key:
            return
        previous = self.get_entry(key) or {}
        self.set(key, {
            "hasRationale": bool(has_rationale or previous.get("hasRationale")),
            "rationaleUrl": url or previous.get("rationaleUrl", ""),
            "rationaleText": text or previous.get("rationaleText", ""),
            "fetchedAt": int(time.time()),
        })
