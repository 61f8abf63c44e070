"""
PhasedOptimizer — ordered phases, each tuning a parameter subset.

Phase i starts from the best parameters of phase i-1 (the caller's base
parameters for the first phase) and runs a grid search over its own ranges.
Phase 9 runs the multi-stage refinement instead of a plain grid.
"""

import time

from tick_optimizer.engine.models import (
    MAX_PHASE,
    MIN_PHASE,
    BacktestMetrics,
    CompositeWeights,
    GridSearchConfig,
    ParameterCombination,
    PhaseConfig,
    PhasedOptimizationResult,
    PhasedRunConfig,
    PhaseSummary,
)
from tick_optimizer.engine.optimizer import GridSearchOptimizer, new_run_id
from tick_optimizer.engine.parameter_space import (
    check_combination_limit,
    count_feasible,
    ensure_valid,
)
from tick_optimizer.engine.refinement import CandidateSpace, MultiStageRefiner
from tick_optimizer.exceptions import CombinationLimitError, ConfigValidationError
from tick_optimizer.logging import get_logger, log_context
from tick_optimizer.progress.channel import CancellationToken, ProgressChannel
from tick_optimizer.progress.events import CurrentBest
from tick_optimizer.progress.reporter import ProgressReporter

logger = get_logger(__name__)

SKIP_NO_RANGES = "No parameter ranges configured"
SKIP_NO_COMBINATIONS = "No parameter combinations satisfy the phase constraints"
SKIP_NO_CANDIDATES = "No candidate parameters to refine"


class PhasedOptimizer:
    """Runs phases strictly in ascending order, carrying the best parameters forward."""

    def __init__(self, grid: GridSearchOptimizer) -> None:
        self.grid = grid

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, config: PhasedRunConfig) -> dict[int, int]:
        """Check every phase up front; return planned evaluations per phase."""
        if not config.phases:
            raise ConfigValidationError("At least one phase is required")
        if not self.grid.sessions:
            raise ConfigValidationError("At least one session is required")

        numbers = [p.phase for p in config.phases]
        if len(set(numbers)) != len(numbers):
            raise ConfigValidationError(f"Duplicate phase numbers: {sorted(numbers)}")

        planned: dict[int, int] = {}
        for phase in sorted(config.phases, key=lambda p: p.phase):
            if not MIN_PHASE <= phase.phase <= MAX_PHASE:
                raise ConfigValidationError(
                    f"Phase number must be between {MIN_PHASE} and {MAX_PHASE}, got {phase.phase}"
                )
            ensure_valid(phase.parameter_ranges, phase=phase.phase)
            cap = phase.max_combinations or config.max_combinations

            if phase.is_refinement and phase.parameter_ranges:
                estimate = MultiStageRefiner.estimate_evaluations(
                    CandidateSpace.from_ranges(phase.parameter_ranges), config.refinement
                )
                if estimate > cap:
                    raise CombinationLimitError(estimate, cap, phase=phase.phase)
                planned[phase.phase] = estimate
            elif phase.is_refinement:
                # Candidates come from earlier phases; only the fixed stages are known.
                refinement = config.refinement
                planned[phase.phase] = 1 + refinement.max_pair_combinations + refinement.random_samples
            elif phase.parameter_ranges:
                planned[phase.phase] = check_combination_limit(
                    phase.parameter_ranges, cap, phase=phase.phase
                )
            else:
                planned[phase.phase] = 0
        return planned

    # =========================================================================
    # Run
    # =========================================================================

    def run(
        self,
        config: PhasedRunConfig,
        channel: ProgressChannel | None = None,
        cancel: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> PhasedOptimizationResult:
        """
        Validate all phases, then run them in order.

        Emits ``started``, per-evaluation ``progress``, phase 9 ``stage``
        boundaries, ``phase_complete`` after each phase and exactly one
        terminal event.
        """
        planned = self.validate(config)
        run_id = run_id or new_run_id()
        phases = sorted(config.phases, key=lambda p: p.phase)
        reporter = ProgressReporter(run_id, channel=channel, cancel=cancel, total_phases=len(phases))

        with log_context(run_id=run_id):
            logger.info(
                "Starting phased optimization",
                phases=[p.phase for p in phases],
                planned=sum(planned.values()),
                sessions=len(self.grid.sessions),
            )
            reporter.started(sum(planned.values()), message="Phased optimization started")
            result = reporter.run(
                lambda: self._run_phases(config, phases, reporter, run_id),
                lambda r: r.to_dict(),
            )
            logger.info(
                "Phased optimization complete",
                total_combinations=result.total_combinations_tested,
                duration_s=round(result.total_duration_seconds, 2),
                final_params=result.final_params,
            )
            return result

    def _run_phases(
        self,
        config: PhasedRunConfig,
        phases: list[PhaseConfig],
        reporter: ProgressReporter,
        run_id: str,
    ) -> PhasedOptimizationResult:
        baseline: ParameterCombination = dict(config.base_params)
        summaries: list[PhaseSummary] = []
        tuned: dict[int, list[str]] = {}

        for index, phase in enumerate(phases):
            reporter.check_cancelled()
            reporter.enter_phase(phase.phase, phase.name, index)

            with log_context(phase=phase.phase):
                if phase.is_refinement:
                    summary = self._run_refinement(phase, baseline, summaries, tuned, config, reporter)
                else:
                    summary = self._run_grid_phase(phase, baseline, config, reporter, run_id)

            summaries.append(summary)
            tuned[phase.phase] = phase.parameter_names
            baseline = dict(summary.best_params)

            logger.info(
                "Phase complete",
                phase=phase.phase,
                name=phase.name,
                skipped=summary.skipped,
                combinations=summary.combinations_tested,
                best_params=summary.best_params,
            )
            reporter.phase_complete(
                phase.phase, summary.to_dict(), self._best_of(summary, config.composite_weights)
            )

        return self._assemble(run_id, config, summaries)

    def _run_grid_phase(
        self,
        phase: PhaseConfig,
        baseline: ParameterCombination,
        config: PhasedRunConfig,
        reporter: ProgressReporter,
        run_id: str,
    ) -> PhaseSummary:
        if not phase.parameter_ranges:
            return self._skipped(phase, baseline, SKIP_NO_RANGES)
        if count_feasible(phase.parameter_ranges, baseline, phase.constraints) == 0:
            return self._skipped(phase, baseline, SKIP_NO_COMBINATIONS)

        grid_config = GridSearchConfig(
            parameter_ranges=phase.parameter_ranges,
            base_params=baseline,
            optimize_metric=phase.optimize_metric,
            max_combinations=phase.max_combinations or config.max_combinations,
            constraints=phase.constraints,
            composite_weights=config.composite_weights,
        )
        search = self.grid.search(grid_config, reporter, run_id)

        return PhaseSummary(
            phase=phase.phase,
            name=phase.name,
            combinations_tested=search.combinations_tested,
            duration_seconds=search.duration_seconds,
            best_params=dict(search.best.parameters) if search.best else dict(baseline),
            top_results=search.top_n(phase.top_n),
            optimize_metric=phase.optimize_metric,
        )

    def _run_refinement(
        self,
        phase: PhaseConfig,
        baseline: ParameterCombination,
        summaries: list[PhaseSummary],
        tuned: dict[int, list[str]],
        config: PhasedRunConfig,
        reporter: ProgressReporter,
    ) -> PhaseSummary:
        if phase.parameter_ranges:
            space = CandidateSpace.from_ranges(phase.parameter_ranges)
        else:
            space = CandidateSpace.from_phase_results(
                summaries, tuned, baseline, top_results=config.refinement.derived_top_results
            )
        if space.is_empty:
            return self._skipped(phase, baseline, SKIP_NO_CANDIDATES)

        start_time = time.perf_counter()
        refiner = MultiStageRefiner(
            evaluate=self.grid.evaluate,
            settings=config.refinement,
            metric=phase.optimize_metric,
            weights=config.composite_weights,
            constraints=phase.constraints,
        )
        outcome = refiner.run(baseline, space, reporter)

        return PhaseSummary(
            phase=phase.phase,
            name=phase.name,
            combinations_tested=outcome.combinations_tested,
            duration_seconds=time.perf_counter() - start_time,
            best_params=dict(outcome.best.parameters),
            top_results=outcome.results[: phase.top_n],
            optimize_metric=phase.optimize_metric,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _skipped(phase: PhaseConfig, baseline: ParameterCombination, reason: str) -> PhaseSummary:
        logger.info("Phase skipped", phase=phase.phase, reason=reason)
        return PhaseSummary(
            phase=phase.phase,
            name=phase.name,
            best_params=dict(baseline),
            skipped=True,
            skip_reason=reason,
            optimize_metric=phase.optimize_metric,
        )

    @staticmethod
    def _best_of(summary: PhaseSummary, weights: CompositeWeights) -> CurrentBest | None:
        best = summary.best_result
        if best is None:
            return None
        return CurrentBest(
            params=dict(best.parameters),
            metric=best.metrics.metric_value(summary.optimize_metric, weights),
            metric_name=summary.optimize_metric.value,
        )

    def _assemble(
        self,
        run_id: str,
        config: PhasedRunConfig,
        summaries: list[PhaseSummary],
    ) -> PhasedOptimizationResult:
        ran = [s for s in summaries if not s.skipped and s.best_result is not None]
        if ran:
            final = ran[-1].best_result
            final_params = dict(final.parameters)
            final_metrics = final.metrics
        else:
            # Every phase skipped: report the base parameters' own metrics.
            final_params = dict(config.base_params)
            final_metrics = self._baseline_metrics(final_params)

        return PhasedOptimizationResult(
            run_id=run_id,
            final_params=final_params,
            final_metrics=final_metrics,
            total_combinations_tested=sum(s.combinations_tested for s in summaries),
            total_duration_seconds=sum(s.duration_seconds for s in summaries),
            phase_summaries=summaries,
        )

    def _baseline_metrics(self, params: ParameterCombination) -> BacktestMetrics:
        return self.grid.evaluate(params).metrics
