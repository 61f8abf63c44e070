"""Tests for progress event shapes and the ProgressReporter."""

import pytest

from tick_optimizer.exceptions import EvaluationError, RunCancelledError
from tick_optimizer.progress.channel import ProgressChannel
from tick_optimizer.progress.events import (
    CurrentBest,
    OptimizationProgress,
    ProgressEventType,
    RefinementStage,
    RunStatus,
    percent,
)
from tick_optimizer.progress.reporter import ProgressReporter


class TestOptimizationProgress:

    def test_to_dict_omits_unset_fields(self):
        event = OptimizationProgress(run_id="r1", type=ProgressEventType.PROGRESS, current=2, total=4,
                                     percent_complete=50.0)
        d = event.to_dict()

        assert d == {
            "run_id": "r1",
            "type": "progress",
            "status": "running",
            "sequence": 0,
            "current": 2,
            "total": 4,
            "percent_complete": 50.0,
        }

    def test_to_dict_includes_set_fields(self):
        event = OptimizationProgress(
            run_id="r1",
            type=ProgressEventType.STAGE,
            current_phase=9,
            stage=RefinementStage.PAIRS,
            current_best=CurrentBest(params={"a": 1.0}, metric=0.1234567, metric_name="composite"),
            completed_phases=(1, 2),
        )
        d = event.to_dict()

        assert d["stage"] == "pairs"
        assert d["current_phase"] == 9
        assert d["completed_phases"] == [1, 2]
        assert d["current_best"] == {"params": {"a": 1.0}, "metric": 0.123457, "metric_name": "composite"}

    @pytest.mark.parametrize(
        "event_type,status",
        [
            (ProgressEventType.STARTED, RunStatus.RUNNING),
            (ProgressEventType.PROGRESS, RunStatus.RUNNING),
            (ProgressEventType.PHASE_COMPLETE, RunStatus.PHASE_COMPLETE),
            (ProgressEventType.COMPLETED, RunStatus.COMPLETED),
            (ProgressEventType.CANCELLED, RunStatus.CANCELLED),
            (ProgressEventType.ERROR, RunStatus.ERROR),
        ],
    )
    def test_status(self, event_type, status):
        assert OptimizationProgress(run_id="r1", type=event_type).status is status

    def test_terminal_types(self):
        terminal = {t for t in ProgressEventType if t.is_terminal}
        assert terminal == {ProgressEventType.COMPLETED, ProgressEventType.CANCELLED, ProgressEventType.ERROR}

    def test_percent(self):
        assert percent(1, 4) == 25.0
        assert percent(0, 0) == 100.0
        assert percent(5, 4) == 100.0


class TestProgressReporter:

    def test_run_emits_completed(self):
        channel = ProgressChannel()
        reporter = ProgressReporter("r1", channel=channel)

        assert reporter.run(lambda: 42, lambda r: {"value": r}) == 42

        events = channel.drain()
        assert events[-1].type is ProgressEventType.COMPLETED
        assert events[-1].result == {"value": 42}

    def test_run_emits_error_and_reraises(self):
        channel = ProgressChannel()
        reporter = ProgressReporter("r1", channel=channel)

        def body():
            raise EvaluationError("strategy exploded")

        with pytest.raises(EvaluationError):
            reporter.run(body, lambda r: {})

        events = channel.drain()
        assert len(events) == 1
        assert events[0].type is ProgressEventType.ERROR
        assert events[0].error_message == "strategy exploded"

    def test_run_emits_cancelled_and_reraises(self):
        channel = ProgressChannel()
        reporter = ProgressReporter("r1", channel=channel)

        def body():
            raise RunCancelledError("consumer disconnected")

        with pytest.raises(RunCancelledError):
            reporter.run(body, lambda r: {})

        events = channel.drain()
        assert [e.type for e in events] == [ProgressEventType.CANCELLED]
        assert events[0].message == "consumer disconnected"

    def test_combination_estimates_remaining_time(self):
        channel = ProgressChannel()
        reporter = ProgressReporter("r1", channel=channel)

        reporter.combination(2, 4, None, phase_started_at=0.0)

        event = channel.drain()[0]
        assert event.percent_complete == 50.0
        assert event.estimated_time_remaining is not None
        assert event.estimated_time_remaining > 0

    def test_phase_context_in_events(self):
        channel = ProgressChannel()
        reporter = ProgressReporter("r1", channel=channel, total_phases=2)

        reporter.enter_phase(3, "Sizing", index=1)
        reporter.combination(1, 2, None, phase_started_at=0.0)

        event = channel.drain()[0]
        assert event.current_phase == 3
        assert event.phase_name == "Sizing"
        assert event.total_phases == 2
        assert event.phase_percent == 50.0
        assert event.overall_percent == 75.0

    def test_without_channel(self):
        reporter = ProgressReporter("r1")
        assert not reporter.publish(ProgressEventType.PROGRESS)
        assert reporter.run(lambda: 1, lambda r: {}) == 1
