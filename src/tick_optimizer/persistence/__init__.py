"""Persistence — SQLite run store and grid search checkpoints."""

from tick_optimizer.persistence.checkpoint import OptimizationCheckpoint
from tick_optimizer.persistence.run_store import OptimizationRunStore, RunMetadata, RunStore

__all__ = ["OptimizationCheckpoint", "OptimizationRunStore", "RunMetadata", "RunStore"]
