"""
GridSearchOptimizer — exhaustive search over a parameter space.

Every combination is replayed through the BacktestSimulator and ranked by the
chosen metric (best first, earlier-enumerated combination wins ties).

Uses ProcessPoolExecutor for parallel simulation when max_workers > 1 and an
OptimizationCheckpoint to resume interrupted searches.
"""

import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, wait
from typing import Any, Callable, Sequence

from tick_optimizer.data.models import Session
from tick_optimizer.engine.models import (
    BacktestResult,
    GridSearchConfig,
    GridSearchResult,
    ParameterCombination,
)
from tick_optimizer.engine.parameter_space import (
    check_combination_limit,
    enumerate_combinations,
    ensure_valid,
)
from tick_optimizer.engine.simulator import BacktestSimulator
from tick_optimizer.exceptions import (
    ConfigValidationError,
    EvaluationError,
    OptimizerError,
)
from tick_optimizer.logging import get_logger, log_context
from tick_optimizer.persistence.checkpoint import OptimizationCheckpoint
from tick_optimizer.progress.channel import CancellationToken, ProgressChannel
from tick_optimizer.progress.events import CurrentBest
from tick_optimizer.progress.reporter import ProgressReporter

logger = get_logger(__name__)


# =============================================================================
# Standalone trial runner (picklable for ProcessPoolExecutor)
# =============================================================================


def _run_single_trial(
    simulator: BacktestSimulator,
    sessions: tuple[Session, ...],
    params: ParameterCombination,
) -> BacktestResult:
    """Run one backtest in a worker process."""
    return simulator.run(sessions, params)


def new_run_id() -> str:
    return str(uuid.uuid4())


def callable_name(fn: Callable[..., Any]) -> str:
    return f"{getattr(fn, '__module__', '?')}.{getattr(fn, '__qualname__', repr(fn))}"


class _RunningBest:
    """Tracks the best result seen so far; ties keep the earlier index."""

    def __init__(self, config: GridSearchConfig) -> None:
        self.config = config
        self.index: int | None = None
        self.score = float("-inf")
        self.result: BacktestResult | None = None

    def offer(self, index: int, result: BacktestResult) -> None:
        score = result.metrics.score(self.config.optimize_metric, self.config.composite_weights)
        if (
            self.result is None
            or score > self.score
            or (score == self.score and index < self.index)
        ):
            self.index = index
            self.score = score
            self.result = result

    def snapshot(self) -> CurrentBest | None:
        if self.result is None:
            return None
        metric = self.config.optimize_metric
        return CurrentBest(
            params=dict(self.result.parameters),
            metric=self.result.metrics.metric_value(metric, self.config.composite_weights),
            metric_name=metric.value,
        )


# =============================================================================
# Optimizer
# =============================================================================


class GridSearchOptimizer:
    """Exhaustive parameter search over a fixed set of sessions."""

    def __init__(
        self,
        simulator: BacktestSimulator,
        sessions: Sequence[Session],
        max_workers: int | None = None,
        checkpoint: OptimizationCheckpoint | None = None,
    ) -> None:
        self.simulator = simulator
        self.sessions = tuple(sessions)
        self.max_workers = max_workers
        self.checkpoint = checkpoint

    # =========================================================================
    # Public API
    # =========================================================================

    def validate(self, config: GridSearchConfig) -> int:
        """Raise a ValidationError for unusable input; return the combination count."""
        if not self.sessions:
            raise ConfigValidationError("At least one session is required")
        ensure_valid(config.parameter_ranges)
        return check_combination_limit(config.parameter_ranges, config.max_combinations)

    def run_optimization(
        self,
        config: GridSearchConfig,
        channel: ProgressChannel | None = None,
        cancel: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> GridSearchResult:
        """
        Validate, then evaluate every combination of ``config``.

        Emits ``started``, one ``progress`` event per evaluation and exactly
        one terminal event; ``completed`` carries the best
        ``config.completed_top_n`` results while the returned result holds
        all of them. Raises RunCancelledError when cancelled and
        EvaluationError when a combination cannot be evaluated.
        """
        total = self.validate(config)
        run_id = run_id or new_run_id()
        reporter = ProgressReporter(run_id, channel=channel, cancel=cancel)

        with log_context(run_id=run_id):
            logger.info(
                "Starting grid search",
                combos=total,
                metric=config.optimize_metric.value,
                sessions=len(self.sessions),
                max_workers=self.max_workers,
            )
            reporter.started(total, message="Grid search started")
            result = reporter.run(
                lambda: self.search(config, reporter, run_id),
                lambda r: r.to_dict(top_n=config.completed_top_n),
            )
            logger.info(
                "Grid search complete",
                tested=result.combinations_tested,
                best=result.best.metrics.metric_value(config.optimize_metric, config.composite_weights)
                if result.best
                else None,
                duration_s=round(result.duration_seconds, 2),
            )
            return result

    def evaluate(self, params: ParameterCombination) -> BacktestResult:
        """Backtest one combination; any failure becomes EvaluationError."""
        try:
            return self.simulator.run(self.sessions, params)
        except OptimizerError:
            raise
        except Exception as e:
            raise EvaluationError(f"Evaluation failed: {e}", parameters=dict(params)) from e

    def search(
        self,
        config: GridSearchConfig,
        reporter: ProgressReporter,
        run_id: str,
    ) -> GridSearchResult:
        """Evaluate and rank without validation or terminal events (used by phases)."""
        start_time = time.perf_counter()
        combos = list(
            enumerate_combinations(config.parameter_ranges, config.base_params, config.constraints)
        )

        fingerprint = None
        completed: dict[str, dict[str, Any]] = {}
        if self.checkpoint is not None:
            fingerprint = self.checkpoint.fingerprint(self._definition(config))
            completed = self.checkpoint.load_completed(fingerprint)

        workers = self.max_workers
        if workers and workers > 1 and len(combos) > 1:
            results = self._run_parallel(config, combos, reporter, fingerprint, completed, workers, start_time)
        else:
            results = self._run_sequential(config, combos, reporter, fingerprint, completed, start_time)

        ranked = sorted(
            results.items(),
            key=lambda item: (
                -item[1].metrics.score(config.optimize_metric, config.composite_weights),
                item[0],
            ),
        )

        if self.checkpoint is not None and fingerprint is not None:
            self.checkpoint.cleanup(fingerprint)

        return GridSearchResult(
            run_id=run_id,
            optimize_metric=config.optimize_metric,
            results=[r for _, r in ranked],
            combinations_tested=len(results),
            duration_seconds=time.perf_counter() - start_time,
            composite_weights=config.composite_weights,
        )

    # =========================================================================
    # Trial Execution
    # =========================================================================

    def _run_sequential(
        self,
        config: GridSearchConfig,
        combos: list[ParameterCombination],
        reporter: ProgressReporter,
        fingerprint: str | None,
        completed: dict[str, dict[str, Any]],
        start_time: float,
    ) -> dict[int, BacktestResult]:
        results: dict[int, BacktestResult] = {}
        best = _RunningBest(config)

        for idx, params in enumerate(combos):
            reporter.check_cancelled()

            result = self._from_checkpoint(params, completed)
            if result is None:
                result = self.evaluate(params)
                self._save(fingerprint, idx, params, result)

            results[idx] = result
            best.offer(idx, result)
            reporter.combination(len(results), len(combos), best.snapshot(), start_time)

        return results

    def _run_parallel(
        self,
        config: GridSearchConfig,
        combos: list[ParameterCombination],
        reporter: ProgressReporter,
        fingerprint: str | None,
        completed: dict[str, dict[str, Any]],
        workers: int,
        start_time: float,
    ) -> dict[int, BacktestResult]:
        """Bounded submission window so cancellation stops new work quickly."""
        results: dict[int, BacktestResult] = {}
        best = _RunningBest(config)
        total = len(combos)

        new_indices: list[int] = []
        for idx, params in enumerate(combos):
            cached = self._from_checkpoint(params, completed)
            if cached is None:
                new_indices.append(idx)
                continue
            results[idx] = cached
            best.offer(idx, cached)
            reporter.combination(len(results), total, best.snapshot(), start_time)

        logger.info(
            "Running parallel trials",
            total=total,
            cached=len(results),
            new=len(new_indices),
            workers=workers,
        )

        window = workers * 2
        queue = iter(new_indices)
        pending: dict[Future, int] = {}

        with ProcessPoolExecutor(max_workers=workers) as executor:
            try:
                while True:
                    reporter.check_cancelled()
                    while len(pending) < window:
                        idx = next(queue, None)
                        if idx is None:
                            break
                        future = executor.submit(_run_single_trial, self.simulator, self.sessions, combos[idx])
                        pending[future] = idx
                    if not pending:
                        break

                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    for future in done:
                        idx = pending.pop(future)
                        try:
                            result = future.result()
                        except OptimizerError:
                            raise
                        except Exception as e:
                            raise EvaluationError(
                                f"Evaluation failed: {e}", parameters=dict(combos[idx])
                            ) from e
                        results[idx] = result
                        best.offer(idx, result)
                        self._save(fingerprint, idx, combos[idx], result)
                        reporter.combination(len(results), total, best.snapshot(), start_time)
            except BaseException:
                executor.shutdown(wait=False, cancel_futures=True)
                raise

        return results

    # =========================================================================
    # Helpers
    # =========================================================================

    def _from_checkpoint(
        self,
        params: ParameterCombination,
        completed: dict[str, dict[str, Any]],
    ) -> BacktestResult | None:
        if not completed:
            return None
        cached = completed.get(OptimizationCheckpoint.params_hash(params))
        return BacktestResult.from_dict(cached) if cached is not None else None

    def _save(
        self,
        fingerprint: str | None,
        idx: int,
        params: ParameterCombination,
        result: BacktestResult,
    ) -> None:
        if self.checkpoint is None or fingerprint is None:
            return
        self.checkpoint.save_trial(
            fingerprint,
            idx,
            OptimizationCheckpoint.params_hash(params),
            result.to_dict(rounded=False),
        )

    def _definition(self, config: GridSearchConfig) -> dict[str, Any]:
        """Everything that determines the outcome of a search."""
        return {
            "ranges": [r.to_dict() for r in config.parameter_ranges],
            "base_params": dict(config.base_params),
            "metric": config.optimize_metric.value,
            "weights": config.composite_weights.to_dict(),
            "constraints": [callable_name(c) for c in config.constraints],
            "sessions": [s.session_id for s in self.sessions],
            "ticks": [len(s.ticks) for s in self.sessions],
            "strategy": callable_name(self.simulator.decide),
            "initial_capital": self.simulator.initial_capital,
            "aggregation": self.simulator.aggregation.value,
            "outcome": self.simulator.outcome,
        }
