"""Progress reporting — event shapes, the bounded channel and cancellation."""

from tick_optimizer.progress.events import (
    CurrentBest,
    OptimizationProgress,
    ProgressEventType,
    RefinementStage,
    RunStatus,
)
from tick_optimizer.progress.channel import CancellationToken, ProgressChannel
from tick_optimizer.progress.reporter import ProgressReporter

__all__ = [
    "CurrentBest",
    "OptimizationProgress",
    "ProgressEventType",
    "RefinementStage",
    "RunStatus",
    "CancellationToken",
    "ProgressChannel",
    "ProgressReporter",
]
