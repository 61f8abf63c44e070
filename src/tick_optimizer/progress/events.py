"""
Progress events emitted by a run.

Every run produces ``started``, then any number of ``progress`` / ``stage`` /
``phase_complete`` events, then exactly one terminal event (``completed``,
``cancelled`` or ``error``).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ProgressEventType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    STAGE = "stage"
    PHASE_COMPLETE = "phase_complete"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EVENTS


TERMINAL_EVENTS = frozenset(
    {ProgressEventType.COMPLETED, ProgressEventType.CANCELLED, ProgressEventType.ERROR}
)


class RunStatus(str, Enum):
    RUNNING = "running"
    PHASE_COMPLETE = "phase_complete"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class RefinementStage(str, Enum):
    """Stages of the phase 9 refinement, in execution order."""

    BASELINE = "baseline"
    SENSITIVITY = "sensitivity"
    PAIRS = "pairs"
    RANDOM = "random"


OPTIONAL_FIELDS = (
    "current_phase",
    "total_phases",
    "phase_name",
    "phase_percent",
    "overall_percent",
    "estimated_time_remaining",
    "stage_progress",
    "stage_description",
    "result",
    "error_message",
    "message",
)

_STATUS_BY_TYPE = {
    ProgressEventType.PHASE_COMPLETE: RunStatus.PHASE_COMPLETE,
    ProgressEventType.COMPLETED: RunStatus.COMPLETED,
    ProgressEventType.CANCELLED: RunStatus.CANCELLED,
    ProgressEventType.ERROR: RunStatus.ERROR,
}


@dataclass(frozen=True)
class CurrentBest:
    params: dict[str, float]
    metric: float
    metric_name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "params": dict(self.params),
            "metric": round(self.metric, 6),
            "metric_name": self.metric_name,
        }


@dataclass(frozen=True)
class OptimizationProgress:
    """One progress event. ``sequence`` is assigned by the channel."""

    run_id: str
    type: ProgressEventType
    sequence: int = 0
    current: int = 0
    total: int = 0
    percent_complete: float = 0.0
    current_phase: int | None = None
    total_phases: int | None = None
    phase_name: str | None = None
    phase_percent: float | None = None
    overall_percent: float | None = None
    current_best: CurrentBest | None = None
    estimated_time_remaining: float | None = None
    stage: RefinementStage | None = None
    stage_progress: float | None = None
    stage_description: str | None = None
    completed_phases: tuple[int, ...] | None = None
    result: dict[str, Any] | None = None
    error_message: str | None = None
    message: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type.is_terminal

    @property
    def status(self) -> RunStatus:
        return _STATUS_BY_TYPE.get(self.type, RunStatus.RUNNING)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready dict; unset optional fields are omitted."""
        d: dict[str, Any] = {
            "run_id": self.run_id,
            "type": self.type.value,
            "status": self.status.value,
            "sequence": self.sequence,
            "current": self.current,
            "total": self.total,
            "percent_complete": round(self.percent_complete, 2),
        }
        optional = {f: getattr(self, f) for f in OPTIONAL_FIELDS}
        for key, value in optional.items():
            if value is not None:
                d[key] = value
        if self.stage is not None:
            d["stage"] = self.stage.value
        if self.current_best is not None:
            d["current_best"] = self.current_best.to_dict()
        if self.completed_phases is not None:
            d["completed_phases"] = list(self.completed_phases)
        if self.extra:
            d.update(self.extra)
        return d


def percent(done: int | float, total: int | float) -> float:
    if total <= 0:
        return 100.0
    return min(100.0, done / total * 100)
