import json
import logging
import os
import re
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from govsync.common.models import Snapshot

logger = logging.getLogger(__name__)

HISTORY_FILE = re.compile(r"^epoch-(\d+)\.json$")


class SnapshotStore:
    """Snapshot files on disk: the live snapshot, the seed and epoch cuts.

    Reads return None on any problem. Write failures are logged and kept on
    `last_error`; they never propagate into a sync.
    """

    def __init__(self, snapshot_path: Path, seed_path: Path, history_dir: Path):
        self.snapshot_path = Path(snapshot_path)
        self.seed_path = Path(seed_path)
        self.history_dir = Path(history_dir)
        self.last_error: Optional[str] = None

    @classmethod
    def from_settings(cls, config) -> "SnapshotStore":
        return cls(config.snapshot_path, config.seed_path, config.history_dir)

    def _read(self, path: Path) -> Optional[Snapshot]:
        try:
            if not path.exists():
                return None
            with open(path, "r") as f:
                data = json.load(f)
            return Snapshot.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Error loading snapshot from {path}: {e}")
            return None

    def _write(self, path: Path, snapshot: Snapshot) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(f"{path.name}.tmp")
            with open(tmp_path, "w") as f:
                json.dump(snapshot.to_json_dict(), f)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            self.last_error = f"Snapshot write to {path} failed: {e}"
            logger.error(self.last_error)
            return False
        self.last_error = None
        logger.info(f"Saved snapshot to {path}")
        return True

    # Live snapshot and seed

    def load(self) -> Optional[Snapshot]:
        return self._read(self.snapshot_path)

    def save(self, snapshot: Snapshot) -> bool:
        return self._write(self.snapshot_path, snapshot)

    def load_seed(self) -> Optional[Snapshot]:
        return self._read(self.seed_path)

    # Epoch cuts

    def history_path(self, epoch: int) -> Path:
        return self.history_dir / f"epoch-{int(epoch)}.json"

    def has_cut(self, epoch: int) -> bool:
        return self.history_path(epoch).exists()

    def list_cut_epochs(self) -> List[int]:
        if not self.history_dir.exists():
            return []
        epochs = []
        for path in self.history_dir.iterdir():
            match = HISTORY_FILE.match(path.name)
            if match:
                epochs.append(int(match.group(1)))
        return sorted(epochs)

    def read_cut(self, epoch: int) -> Optional[Snapshot]:
        return self._read(self.history_path(epoch))

    def write_cut(self, epoch: int, snapshot: Snapshot) -> bool:
        return self._write(self.history_path(epoch), snapshot)

    def delete_cut(self, epoch: int) -> bool:
        path = self.history_path(epoch)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            self.last_error = f"Could not delete {path}: {e}"
            logger.error(self.last_error)
            return False
        logger.info(f"Deleted epoch cut {path}")
        return True

    def latest_cut(self) -> Optional[Snapshot]:
        epochs = self.list_cut_epochs()
        return self.read_cut(epochs[-1]) if epochs else None
