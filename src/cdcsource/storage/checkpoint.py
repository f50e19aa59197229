from __future__ import annotations

import glob
import logging
import os
from pathlib import Path

from cdcsource.core.models import Checkpoint
from cdcsource.core.state import dump_checkpoint, load_checkpoint

logger = logging.getLogger(__name__)


class FileCheckpointStore:
    """Numbered JSON checkpoints in one directory.

    Each save writes `checkpoint_<id>.json` atomically (tmp + fsync + replace)
    and prunes all but the newest `retain` files.
    """

    def __init__(self, directory: str | Path, *, retain: int = 3) -> None:
        if retain < 1:
            raise ValueError("retain must be >= 1")
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.retain = retain

    def checkpoint_path(self, checkpoint_id: int) -> Path:
        return self.directory / f"checkpoint_{checkpoint_id:05d}.json"

    def list_checkpoints(self) -> list[str]:
        paths = glob.glob((self.directory / "checkpoint_*.json").as_posix())
        return sorted(paths, key=lambda p: int(os.path.basename(p).split("_")[1].split(".")[0]))

    def save(self, checkpoint: Checkpoint) -> None:
        out_path = self.checkpoint_path(checkpoint.checkpoint_id)
        self._atomic_write(out_path, dump_checkpoint(checkpoint))
        logger.info("checkpoint %d written to %s", checkpoint.checkpoint_id, out_path)
        for stale in self.list_checkpoints()[: -self.retain]:
            os.remove(stale)

    def load_latest(self) -> Checkpoint | None:
        existing = self.list_checkpoints()
        if not existing:
            return None
        with open(existing[-1], encoding="utf-8") as f:
            return load_checkpoint(f.read())

    @staticmethod
    def _atomic_write(out_path: Path, text: str) -> None:
        tmp = out_path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, out_path)
