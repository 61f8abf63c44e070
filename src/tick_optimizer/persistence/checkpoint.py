"""
OptimizationCheckpoint — resume an interrupted grid search.

Each evaluated combination is appended to a JSONL file named after the
search fingerprint. Re-running the same search loads the file and skips
combinations whose results are already known.
"""

import hashlib
import json
import os
from pathlib import Path
from typing import Any

from tick_optimizer.logging import get_logger

logger = get_logger(__name__)


class OptimizationCheckpoint:
    """
    Manages checkpoint files for incremental resume.

    Keys are fingerprints of the whole search definition (ranges, baseline,
    metric, sessions, simulator settings), so a changed search never reuses
    results of a different one.
    """

    def __init__(self, checkpoint_dir: str = "data/checkpoints") -> None:
        self.checkpoint_dir = Path(checkpoint_dir)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)

    def get_checkpoint_path(self, fingerprint: str) -> Path:
        return self.checkpoint_dir / f"{fingerprint}.jsonl"

    def save_trial(
        self,
        fingerprint: str,
        index: int,
        params_hash: str,
        result: dict[str, Any],
    ) -> None:
        """Append one evaluated combination."""
        entry = {
            "index": index,
            "params_hash": params_hash,
            "result": result,
        }
        with open(self.get_checkpoint_path(fingerprint), "a", encoding="utf-8") as f:
            f.write(json.dumps(entry) + "\n")

        logger.debug("Trial checkpointed", fingerprint=fingerprint, index=index)

    def load_completed(self, fingerprint: str) -> dict[str, dict[str, Any]]:
        """Return params_hash -> result for every checkpointed combination."""
        path = self.get_checkpoint_path(fingerprint)
        if not path.exists():
            return {}

        completed: dict[str, dict[str, Any]] = {}
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                    completed[entry["params_hash"]] = entry["result"]
                except (json.JSONDecodeError, KeyError):
                    # Partial line from an interrupted write
                    continue

        logger.info("Checkpoint loaded", fingerprint=fingerprint, completed_trials=len(completed))
        return completed

    def cleanup(self, fingerprint: str) -> None:
        """Remove the checkpoint after a search completed."""
        path = self.get_checkpoint_path(fingerprint)
        if path.exists():
            os.remove(path)
            logger.info("Checkpoint cleaned up", fingerprint=fingerprint)

    def list_checkpoints(self) -> list[str]:
        return sorted(p.stem for p in self.checkpoint_dir.glob("*.jsonl"))

    @staticmethod
    def fingerprint(definition: dict[str, Any]) -> str:
        """Stable hash of a search definition."""
        serialized = json.dumps(definition, sort_keys=True, default=str)
        return hashlib.sha256(serialized.encode()).hexdigest()[:16]

    @staticmethod
    def params_hash(params: dict[str, float]) -> str:
        serialized = json.dumps(params, sort_keys=True)
        return hashlib.sha256(serialized.encode()).hexdigest()[:16]
