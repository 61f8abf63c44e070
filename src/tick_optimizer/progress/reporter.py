"""
ProgressReporter — builds events for one run and pushes them into its channel.

Holds the phase/stage context so the engine only reports counters. Also the
single place the engine checks for cancellation.
"""

import time
from typing import Any, Callable, TypeVar

from tick_optimizer.exceptions import RunCancelledError
from tick_optimizer.progress.channel import CancellationToken, ProgressChannel
from tick_optimizer.progress.events import (
    CurrentBest,
    OptimizationProgress,
    ProgressEventType,
    RefinementStage,
    percent,
)

T = TypeVar("T")


class ProgressReporter:
    """Event factory bound to one run id."""

    def __init__(
        self,
        run_id: str,
        channel: ProgressChannel | None = None,
        cancel: CancellationToken | None = None,
        total_phases: int | None = None,
    ) -> None:
        self.run_id = run_id
        self.channel = channel
        self.cancel = cancel
        self.total_phases = total_phases
        self.completed_phases: list[int] = []
        self._phase: int | None = None
        self._phase_name: str | None = None
        self._phase_index = 0
        self._stage: RefinementStage | None = None
        self._stage_description: str | None = None
        self._stage_progress: float | None = None
        self._started_at = time.perf_counter()

    # =========================================================================
    # Cancellation
    # =========================================================================

    def check_cancelled(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.cancelled

    # =========================================================================
    # Context
    # =========================================================================

    def enter_phase(self, phase: int, name: str, index: int) -> None:
        self._phase = phase
        self._phase_name = name
        self._phase_index = index
        self._stage = None
        self._stage_description = None
        self._stage_progress = None

    def _overall_percent(self, phase_fraction: float) -> float | None:
        if not self.total_phases:
            return None
        return percent(self._phase_index + phase_fraction, self.total_phases)

    def _context(self) -> dict[str, Any]:
        ctx: dict[str, Any] = {}
        if self._phase is not None:
            ctx["current_phase"] = self._phase
            ctx["phase_name"] = self._phase_name
            ctx["total_phases"] = self.total_phases
            ctx["completed_phases"] = tuple(self.completed_phases)
        if self._stage is not None:
            ctx["stage"] = self._stage
            ctx["stage_description"] = self._stage_description
            ctx["stage_progress"] = self._stage_progress
        return ctx

    def publish(self, event_type: ProgressEventType, **fields: Any) -> bool:
        if self.channel is None:
            return False
        merged = self._context()
        merged.update(fields)
        return self.channel.publish(OptimizationProgress(run_id=self.run_id, type=event_type, **merged))

    # =========================================================================
    # Events
    # =========================================================================

    def started(self, total: int, message: str | None = None) -> None:
        self._started_at = time.perf_counter()
        self.publish(
            ProgressEventType.STARTED,
            total=total,
            total_phases=self.total_phases,
            message=message,
            overall_percent=0.0 if self.total_phases else None,
        )

    def combination(
        self,
        current: int,
        total: int,
        best: CurrentBest | None,
        phase_started_at: float,
        stage_done: int | None = None,
        stage_total: int | None = None,
    ) -> None:
        """Per-evaluation event with running best and ETA for the current search."""
        elapsed = time.perf_counter() - phase_started_at
        remaining = max(0, total - current)
        eta = elapsed / current * remaining if current > 0 else None
        phase_pct = percent(current, total)

        if stage_done is not None and stage_total is not None:
            self._stage_progress = percent(stage_done, stage_total)

        self.publish(
            ProgressEventType.PROGRESS,
            current=current,
            total=total,
            percent_complete=phase_pct,
            phase_percent=phase_pct if self._phase is not None else None,
            overall_percent=self._overall_percent(phase_pct / 100),
            current_best=best,
            estimated_time_remaining=round(eta, 3) if eta is not None else None,
        )

    def stage(self, stage: RefinementStage, description: str, total: int, best: CurrentBest | None) -> None:
        """Phase 9 stage boundary."""
        self._stage = stage
        self._stage_description = description
        self._stage_progress = 0.0
        self.publish(ProgressEventType.STAGE, total=total, current_best=best, message=description)

    def phase_complete(self, phase: int, summary: dict[str, Any], best: CurrentBest | None) -> None:
        self.completed_phases.append(phase)
        self._stage = None
        self.publish(
            ProgressEventType.PHASE_COMPLETE,
            percent_complete=100.0,
            phase_percent=100.0,
            overall_percent=self._overall_percent(1.0),
            current_best=best,
            result=summary,
            completed_phases=tuple(self.completed_phases),
        )

    def completed(self, result: dict[str, Any], best: CurrentBest | None = None) -> None:
        self._phase = None
        self._stage = None
        self.publish(
            ProgressEventType.COMPLETED,
            percent_complete=100.0,
            overall_percent=100.0 if self.total_phases else None,
            current_best=best,
            result=result,
            completed_phases=tuple(self.completed_phases) if self.total_phases else None,
        )

    def run(self, body: Callable[[], T], describe: Callable[[T], dict[str, Any]]) -> T:
        """Run ``body`` and close the stream with exactly one terminal event."""
        try:
            result = body()
        except RunCancelledError as e:
            self.cancelled_event(e.reason)
            raise
        except Exception as e:
            self.error(str(e) or type(e).__name__)
            raise
        self.completed(describe(result))
        return result

    def cancelled_event(self, reason: str) -> None:
        self.publish(ProgressEventType.CANCELLED, message=reason, error_message=reason)

    def error(self, message: str) -> None:
        self.publish(ProgressEventType.ERROR, error_message=message)
