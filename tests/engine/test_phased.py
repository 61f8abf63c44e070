"""Tests for PhasedOptimizer — ordered phases and the refinement phase."""

import pytest

from tick_optimizer.engine.models import (
    OptimizationMetric,
    ParameterRange,
    PhaseConfig,
    PhasedRunConfig,
    RefinementSettings,
)
from tick_optimizer.engine.optimizer import GridSearchOptimizer
from tick_optimizer.engine.phased import (
    SKIP_NO_CANDIDATES,
    SKIP_NO_COMBINATIONS,
    SKIP_NO_RANGES,
    PhasedOptimizer,
)
from tick_optimizer.engine.simulator import BacktestSimulator
from tick_optimizer.exceptions import (
    CombinationLimitError,
    ConfigValidationError,
    RangeValidationError,
    RunCancelledError,
)
from tick_optimizer.progress.channel import CancellationToken, ProgressChannel
from tick_optimizer.progress.events import ProgressEventType, RefinementStage
from tests.conftest import THRESHOLD_BASE, make_session, threshold_decide

SMALL_REFINEMENT = RefinementSettings(
    pair_top_k=2,
    pair_grid_points=3,
    max_pair_combinations=10,
    random_samples=5,
    random_seed=7,
)

BUY_PHASE = PhaseConfig(
    phase=1,
    name="Entry",
    parameter_ranges=(ParameterRange("buy_below", 0.30, 0.50, 0.05),),
    optimize_metric=OptimizationMetric.TOTAL_PNL,
)
SELL_PHASE = PhaseConfig(
    phase=2,
    name="Exit",
    parameter_ranges=(ParameterRange("sell_above", 0.50, 0.70, 0.05),),
    optimize_metric=OptimizationMetric.SHARPE_RATIO,
)


class SpyGridOptimizer(GridSearchOptimizer):
    """Records the base parameters each grid phase starts from."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.bases = []

    def search(self, config, reporter, run_id):
        self.bases.append(dict(config.base_params))
        return super().search(config, reporter, run_id)


class RecordingDecide:
    """Threshold strategy that records the parameters of every call."""

    def __init__(self):
        self.calls = []

    def __call__(self, params, position, price, timestamp):
        self.calls.append(dict(params))
        return threshold_decide(params, position, price, timestamp)

    def evaluations(self, ticks_per_evaluation):
        return self.calls[::ticks_per_evaluation]


class PhaseCancellingChannel(ProgressChannel):
    """Cancels its run when the first phase completes."""

    def publish(self, event):
        accepted = super().publish(event)
        if event.type is ProgressEventType.PHASE_COMPLETE:
            self.cancel_token.cancel("stop after first phase")
        return accepted


def _optimizer(sessions, spy: bool = False) -> PhasedOptimizer:
    cls = SpyGridOptimizer if spy else GridSearchOptimizer
    return PhasedOptimizer(cls(BacktestSimulator(threshold_decide), sessions))


def _config(*phases, **kwargs) -> PhasedRunConfig:
    kwargs.setdefault("refinement", SMALL_REFINEMENT)
    return PhasedRunConfig(phases=tuple(phases), base_params=dict(THRESHOLD_BASE), **kwargs)


class TestPhasedOptimizer:

    def test_best_params_carry_forward(self, two_sessions):
        optimizer = _optimizer(two_sessions, spy=True)
        result = optimizer.run(_config(SELL_PHASE, BUY_PHASE))

        first, second = result.phase_summaries
        assert [s.phase for s in result.phase_summaries] == [1, 2]
        assert optimizer.grid.bases[0] == THRESHOLD_BASE
        assert optimizer.grid.bases[1]["buy_below"] == first.best_params["buy_below"]
        assert result.final_params == second.best_params
        assert result.final_metrics == second.best_result.metrics
        assert result.total_combinations_tested == 5 + 5

    def test_each_phase_starts_from_previous_best(self):
        decide = RecordingDecide()
        session = make_session("s1", n=100)
        optimizer = PhasedOptimizer(GridSearchOptimizer(BacktestSimulator(decide), [session]))
        refine = PhaseConfig(
            phase=9,
            name="Cross-Validation",
            parameter_ranges=(ParameterRange("qty", 5.0, 10.0, 5.0),),
        )

        result = optimizer.run(_config(BUY_PHASE, SELL_PHASE, refine))

        evaluations = decide.evaluations(ticks_per_evaluation=100)
        first, second, _ = result.phase_summaries
        assert evaluations[0] == THRESHOLD_BASE | {"buy_below": 0.30}
        assert evaluations[first.combinations_tested] == first.best_params | {"sell_above": 0.50}
        refinement_start = first.combinations_tested + second.combinations_tested
        assert evaluations[refinement_start] == result.phase_summaries[-2].best_params
        assert len(evaluations) == result.total_combinations_tested

    def test_all_phases_skipped(self, two_sessions):
        optimizer = _optimizer(two_sessions)
        result = optimizer.run(
            _config(PhaseConfig(phase=1, name="Empty"), PhaseConfig(phase=2, name="Also empty"))
        )

        assert result.final_params == THRESHOLD_BASE
        assert result.total_combinations_tested == 0
        assert all(s.skipped and s.skip_reason == SKIP_NO_RANGES for s in result.phase_summaries)
        expected = BacktestSimulator(threshold_decide).run(two_sessions, THRESHOLD_BASE)
        assert result.final_metrics == expected.metrics

    def test_infeasible_phase_is_skipped(self, two_sessions):
        phase = PhaseConfig(
            phase=1,
            name="Impossible",
            parameter_ranges=(ParameterRange("buy_below", 0.3, 0.5, 0.1),),
            constraints=(lambda c: c["buy_below"] > 1.0,),
        )
        result = _optimizer(two_sessions).run(_config(phase, SELL_PHASE))

        skipped, ran = result.phase_summaries
        assert skipped.skipped and skipped.skip_reason == SKIP_NO_COMBINATIONS
        assert skipped.best_params == THRESHOLD_BASE
        assert not ran.skipped
        assert result.final_params == ran.best_params

    def test_refinement_phase_with_ranges(self, two_sessions):
        refine = PhaseConfig(
            phase=9,
            name="Cross-Validation",
            parameter_ranges=(
                ParameterRange("qty", 1.0, 10.0, 1.0),
                ParameterRange("buy_below", 0.3, 0.5, 0.1),
            ),
            optimize_metric=OptimizationMetric.COMPOSITE,
        )
        channel = ProgressChannel(maxsize=1000)

        result = _optimizer(two_sessions).run(_config(BUY_PHASE, SELL_PHASE, refine), channel=channel)
        events = channel.drain()

        assert [s.phase for s in result.phase_summaries] == [1, 2, 9]
        stages = [e.stage for e in events if e.type is ProgressEventType.STAGE]
        assert stages == [
            RefinementStage.BASELINE,
            RefinementStage.SENSITIVITY,
            RefinementStage.PAIRS,
            RefinementStage.RANDOM,
        ]
        assert result.final_params == result.phase_summaries[-1].best_params
        assert result.phase_summaries[-1].combinations_tested > 0

    def test_refinement_derives_candidates_from_prior_phases(self, two_sessions):
        refine = PhaseConfig(phase=9, name="Cross-Validation", optimize_metric=OptimizationMetric.COMPOSITE)
        result = _optimizer(two_sessions).run(_config(BUY_PHASE, SELL_PHASE, refine))

        summary = result.phase_summaries[-1]
        assert not summary.skipped
        assert summary.combinations_tested > 0

    def test_refinement_without_candidates_is_skipped(self, two_sessions):
        refine = PhaseConfig(phase=9, name="Cross-Validation")
        result = _optimizer(two_sessions).run(_config(refine))

        assert result.phase_summaries[0].skipped
        assert result.phase_summaries[0].skip_reason == SKIP_NO_CANDIDATES
        assert result.final_params == THRESHOLD_BASE


class TestPhasedProgress:

    def test_phase_events(self, two_sessions):
        channel = ProgressChannel(maxsize=1000)
        _optimizer(two_sessions).run(_config(BUY_PHASE, SELL_PHASE), channel=channel)
        events = channel.drain()

        assert events[0].type is ProgressEventType.STARTED
        assert events[0].total_phases == 2
        completes = [e for e in events if e.type is ProgressEventType.PHASE_COMPLETE]
        assert [e.current_phase for e in completes] == [1, 2]
        assert [e.completed_phases for e in completes] == [(1,), (1, 2)]
        assert completes[0].overall_percent == pytest.approx(50.0)
        progress = [e for e in events if e.type is ProgressEventType.PROGRESS]
        assert all(e.phase_name in ("Entry", "Exit") for e in progress)
        assert events[-1].type is ProgressEventType.COMPLETED
        assert events[-1].result["final_params"]

    def test_cancel_between_phases(self, two_sessions):
        cancel = CancellationToken()
        channel = PhaseCancellingChannel(maxsize=1000, cancel_token=cancel)

        with pytest.raises(RunCancelledError):
            _optimizer(two_sessions).run(_config(BUY_PHASE, SELL_PHASE), channel=channel, cancel=cancel)

        events = channel.drain()
        assert sum(1 for e in events if e.type is ProgressEventType.PHASE_COMPLETE) == 1
        assert events[-1].type is ProgressEventType.CANCELLED


class TestPhasedValidation:

    def test_requires_phases(self, two_sessions):
        with pytest.raises(ConfigValidationError):
            _optimizer(two_sessions).validate(_config())

    def test_duplicate_phase_numbers(self, two_sessions):
        with pytest.raises(ConfigValidationError):
            _optimizer(two_sessions).validate(_config(BUY_PHASE, BUY_PHASE))

    def test_phase_number_out_of_range(self, two_sessions):
        with pytest.raises(ConfigValidationError):
            _optimizer(two_sessions).validate(_config(PhaseConfig(phase=10, name="Too far")))

    def test_invalid_range_rejected_before_start(self, two_sessions):
        bad = PhaseConfig(phase=2, name="Bad", parameter_ranges=(ParameterRange("x", 1, 0, 1),))
        channel = ProgressChannel()

        with pytest.raises(RangeValidationError) as exc_info:
            _optimizer(two_sessions).run(_config(BUY_PHASE, bad), channel=channel)

        assert exc_info.value.phase == 2
        assert channel.drain() == []

    def test_phase_over_cap(self, two_sessions):
        big = PhaseConfig(
            phase=3,
            name="Big",
            parameter_ranges=(ParameterRange("x", 0, 14, 1), ParameterRange("y", 0, 9, 1)),
            max_combinations=100,
        )
        with pytest.raises(CombinationLimitError) as exc_info:
            _optimizer(two_sessions).validate(_config(BUY_PHASE, big))
        assert exc_info.value.phase == 3

    def test_refinement_estimate_over_cap(self, two_sessions):
        refine = PhaseConfig(
            phase=9,
            name="Cross-Validation",
            parameter_ranges=(ParameterRange("qty", 1.0, 10.0, 1.0),),
            max_combinations=5,
        )
        with pytest.raises(CombinationLimitError):
            _optimizer(two_sessions).validate(_config(refine))

    def test_planned_counts(self, two_sessions):
        planned = _optimizer(two_sessions).validate(_config(BUY_PHASE, SELL_PHASE))
        assert planned == {1: 5, 2: 5}
