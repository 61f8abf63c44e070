"""
Multi-stage refinement for the terminal phase.

Stages run in order, each after the previous one finished:

1. baseline     one evaluation of the incoming best parameters
2. sensitivity  vary one parameter at a time across its candidates
3. pairs        jointly vary the most sensitive parameters pairwise on a
                reduced grid
4. random       uniform random draws across the full candidate space

The best result over all stages wins; ties go to the earlier evaluation.
"""

import itertools
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import numpy as np

from tick_optimizer.engine.models import (
    BacktestResult,
    CompositeWeights,
    Constraint,
    OptimizationMetric,
    ParameterCombination,
    ParameterRange,
    PhaseSummary,
    RefinementSettings,
)
from tick_optimizer.engine.parameter_space import merge_params, satisfies
from tick_optimizer.logging import get_logger
from tick_optimizer.progress.events import CurrentBest, RefinementStage
from tick_optimizer.progress.reporter import ProgressReporter

logger = get_logger(__name__)

STAGE_DESCRIPTIONS = {
    RefinementStage.BASELINE: "Evaluating baseline parameters",
    RefinementStage.SENSITIVITY: "Testing each parameter independently",
    RefinementStage.PAIRS: "Testing interactions between sensitive parameter pairs",
    RefinementStage.RANDOM: "Validating with random samples across the full space",
}

# Digits kept for continuous random draws.
RANDOM_PRECISION = 6


# =============================================================================
# Data Models
# =============================================================================


@dataclass(frozen=True)
class CandidateSpace:
    """Candidate values per parameter, in evaluation order.

    ``bounds`` holds ``(min, max)`` for parameters defined by a range; random
    draws for those are continuous, the others pick from their candidates.
    """

    candidates: dict[str, tuple[float, ...]]
    bounds: dict[str, tuple[float, float]] = field(default_factory=dict)

    @classmethod
    def from_ranges(cls, ranges: Sequence[ParameterRange]) -> "CandidateSpace":
        return cls(
            candidates={r.name: r.values() for r in ranges},
            bounds={r.name: (r.min, r.max) for r in ranges},
        )

    @classmethod
    def from_phase_results(
        cls,
        summaries: Sequence[PhaseSummary],
        tuned: dict[int, list[str]],
        baseline: ParameterCombination,
        top_results: int = 3,
    ) -> "CandidateSpace":
        """Values the top results of earlier phases chose for the parameters they tuned."""
        collected: dict[str, set[float]] = {}
        for summary in summaries:
            if summary.skipped:
                continue
            for name in tuned.get(summary.phase, []):
                values = collected.setdefault(name, set())
                for result in summary.top_results[:top_results]:
                    if name in result.parameters:
                        values.add(result.parameters[name])
                if name in baseline:
                    values.add(baseline[name])

        return cls(
            candidates={
                name: tuple(sorted(values))
                for name, values in collected.items()
                if len(values) > 1
            }
        )

    @property
    def parameter_names(self) -> list[str]:
        return list(self.candidates)

    @property
    def is_empty(self) -> bool:
        return not self.candidates


@dataclass
class SensitivityResult:
    """How much the metric moves when one parameter changes alone."""

    param: str
    baseline_value: float | None
    alternatives: list[tuple[float, float]] = field(default_factory=list)  # (value, delta)
    sensitivity: float = 0.0
    has_improvement: bool = False

    @property
    def best_value(self) -> float | None:
        if not self.alternatives:
            return None
        return max(self.alternatives, key=lambda a: a[1])[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "param": self.param,
            "baseline_value": self.baseline_value,
            "sensitivity": round(self.sensitivity, 6),
            "has_improvement": self.has_improvement,
            "best_value": self.best_value,
            "alternatives": [
                {"value": v, "delta": round(d, 6)} for v, d in self.alternatives
            ],
        }


@dataclass
class StageSummary:
    stage: RefinementStage
    evaluations: int = 0
    duration_seconds: float = 0.0
    best_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "evaluations": self.evaluations,
            "duration_seconds": round(self.duration_seconds, 3),
            "best_score": round(self.best_score, 6) if self.best_score is not None else None,
        }


@dataclass
class RefinementOutcome:
    """All evaluations of the refinement, ranked best first."""

    results: list[BacktestResult] = field(default_factory=list)
    sensitivity: list[SensitivityResult] = field(default_factory=list)
    stages: list[StageSummary] = field(default_factory=list)

    @property
    def combinations_tested(self) -> int:
        return len(self.results)

    @property
    def best(self) -> BacktestResult | None:
        return self.results[0] if self.results else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "combinations_tested": self.combinations_tested,
            "stages": [s.to_dict() for s in self.stages],
            "sensitivity": [s.to_dict() for s in self.sensitivity],
        }


# =============================================================================
# Helpers
# =============================================================================


def reduce_grid(values: Sequence[float], points: int) -> tuple[float, ...]:
    """At most ``points`` evenly spread values, both endpoints kept."""
    if len(values) <= points:
        return tuple(values)
    if points < 2:
        return (values[0],)
    idx = np.linspace(0, len(values) - 1, points).round().astype(int)
    return tuple(values[i] for i in sorted(set(idx.tolist())))


def _key(params: ParameterCombination) -> tuple[tuple[str, float], ...]:
    return tuple(sorted(params.items()))


# =============================================================================
# Refiner
# =============================================================================


class MultiStageRefiner:
    """Runs the four refinement stages against one baseline."""

    def __init__(
        self,
        evaluate: Callable[[ParameterCombination], BacktestResult],
        settings: RefinementSettings,
        metric: OptimizationMetric = OptimizationMetric.COMPOSITE,
        weights: CompositeWeights | None = None,
        constraints: Sequence[Constraint] = (),
    ) -> None:
        self.evaluate = evaluate
        self.settings = settings
        self.metric = metric
        self.weights = weights or CompositeWeights()
        self.constraints = tuple(constraints)
        self._evaluated: list[BacktestResult] = []
        self._seen: set[tuple[tuple[str, float], ...]] = set()
        self._best_idx: int | None = None
        self._phase_started = 0.0
        self._planned = 0

    @staticmethod
    def estimate_evaluations(space: CandidateSpace, settings: RefinementSettings) -> int:
        """Upper bound of evaluations, used for cost validation."""
        sensitivity = sum(max(0, len(v) - 1) for v in space.candidates.values())
        pairs = settings.max_pair_combinations if len(space.candidates) >= 2 else 0
        return 1 + sensitivity + pairs + settings.random_samples

    def _score(self, result: BacktestResult) -> float:
        return result.metrics.score(self.metric, self.weights)

    def run(
        self,
        baseline: ParameterCombination,
        space: CandidateSpace,
        reporter: ProgressReporter,
    ) -> RefinementOutcome:
        """Run baseline, sensitivity, pairs and random stages in order."""
        self._evaluated = []
        self._seen = set()
        self._best_idx = None
        self._phase_started = time.perf_counter()
        self._planned = self.estimate_evaluations(space, self.settings)
        outcome = RefinementOutcome()

        # Stage 1: baseline
        baseline_result = self._stage(RefinementStage.BASELINE, [dict(baseline)], reporter, outcome)[0]
        self._seen.add(_key(baseline))
        baseline_score = self._score(baseline_result)

        # Stage 2: sensitivity
        sens_plan: list[tuple[str, float, ParameterCombination]] = []
        for name, values in space.candidates.items():
            for value in values:
                if name in baseline and abs(value - baseline[name]) < 1e-12:
                    continue
                params = merge_params(baseline, {name: value})
                if self._admissible(params):
                    sens_plan.append((name, value, params))
                    self._seen.add(_key(params))
        self._replan(1 + len(sens_plan), space)

        sens_results = self._stage(
            RefinementStage.SENSITIVITY, [p for _, _, p in sens_plan], reporter, outcome
        )
        outcome.sensitivity = self._rank_sensitivity(
            space, baseline, baseline_score, sens_plan, sens_results
        )

        # Stage 3: pairs
        pair_plan = self._plan_pairs(space, baseline, outcome.sensitivity)
        self._replan(1 + len(sens_plan) + len(pair_plan), space, pairs_known=True)
        self._stage(RefinementStage.PAIRS, pair_plan, reporter, outcome)

        # Stage 4: random
        random_plan = self._plan_random(space, baseline)
        self._planned = len(self._evaluated) + len(random_plan)
        self._stage(RefinementStage.RANDOM, random_plan, reporter, outcome)

        order = sorted(
            range(len(self._evaluated)),
            key=lambda i: (-self._score(self._evaluated[i]), i),
        )
        outcome.results = [self._evaluated[i] for i in order]

        logger.info(
            "Refinement complete",
            evaluations=len(self._evaluated),
            top_sensitive=[s.param for s in outcome.sensitivity[: self.settings.pair_top_k]],
            best_score=round(self._score(outcome.results[0]), 6),
        )
        return outcome

    # =========================================================================
    # Stage execution
    # =========================================================================

    def _stage(
        self,
        stage: RefinementStage,
        plan: list[ParameterCombination],
        reporter: ProgressReporter,
        outcome: RefinementOutcome,
    ) -> list[BacktestResult]:
        reporter.check_cancelled()
        started = time.perf_counter()
        reporter.stage(stage, STAGE_DESCRIPTIONS[stage], total=len(plan), best=self._snapshot())
        logger.info("Refinement stage", stage=stage.value, evaluations=len(plan))

        results: list[BacktestResult] = []
        summary = StageSummary(stage=stage)
        for i, params in enumerate(plan):
            reporter.check_cancelled()
            result = self.evaluate(params)
            results.append(result)
            self._record(result)
            score = self._score(result)
            if summary.best_score is None or score > summary.best_score:
                summary.best_score = score
            reporter.combination(
                len(self._evaluated),
                max(self._planned, len(self._evaluated)),
                self._snapshot(),
                self._phase_started,
                stage_done=i + 1,
                stage_total=len(plan),
            )

        summary.evaluations = len(plan)
        summary.duration_seconds = time.perf_counter() - started
        outcome.stages.append(summary)
        return results

    def _record(self, result: BacktestResult) -> None:
        self._evaluated.append(result)
        idx = len(self._evaluated) - 1
        if self._best_idx is None or self._score(result) > self._score(self._evaluated[self._best_idx]):
            self._best_idx = idx

    def _snapshot(self) -> CurrentBest | None:
        if self._best_idx is None:
            return None
        best = self._evaluated[self._best_idx]
        return CurrentBest(
            params=dict(best.parameters),
            metric=best.metrics.metric_value(self.metric, self.weights),
            metric_name=self.metric.value,
        )

    def _replan(self, known: int, space: CandidateSpace, pairs_known: bool = False) -> None:
        pairs = 0 if pairs_known else (self.settings.max_pair_combinations if len(space.candidates) >= 2 else 0)
        self._planned = known + pairs + self.settings.random_samples

    def _admissible(self, params: ParameterCombination) -> bool:
        return not self.constraints or satisfies(params, self.constraints)

    # =========================================================================
    # Planning
    # =========================================================================

    def _rank_sensitivity(
        self,
        space: CandidateSpace,
        baseline: ParameterCombination,
        baseline_score: float,
        plan: list[tuple[str, float, ParameterCombination]],
        results: list[BacktestResult],
    ) -> list[SensitivityResult]:
        by_param: dict[str, SensitivityResult] = {
            name: SensitivityResult(param=name, baseline_value=baseline.get(name))
            for name in space.candidates
        }
        for (name, value, _), result in zip(plan, results):
            delta = self._score(result) - baseline_score
            entry = by_param[name]
            entry.alternatives.append((value, delta))
            entry.sensitivity = max(entry.sensitivity, abs(delta))
            entry.has_improvement = entry.has_improvement or delta > 0

        order = {name: i for i, name in enumerate(space.candidates)}
        return sorted(by_param.values(), key=lambda s: (-s.sensitivity, order[s.param]))

    def _plan_pairs(
        self,
        space: CandidateSpace,
        baseline: ParameterCombination,
        ranking: list[SensitivityResult],
    ) -> list[ParameterCombination]:
        top = ranking[: self.settings.pair_top_k]
        if len(top) < 2:
            return []

        pairs = sorted(
            itertools.combinations(top, 2),
            key=lambda pair: -(pair[0].sensitivity + pair[1].sensitivity),
        )
        plan: list[ParameterCombination] = []
        for a, b in pairs:
            grid_a = reduce_grid(space.candidates[a.param], self.settings.pair_grid_points)
            grid_b = reduce_grid(space.candidates[b.param], self.settings.pair_grid_points)
            for va, vb in itertools.product(grid_a, grid_b):
                if len(plan) >= self.settings.max_pair_combinations:
                    return plan
                params = merge_params(baseline, {a.param: va, b.param: vb})
                key = _key(params)
                if key in self._seen or params == baseline or not self._admissible(params):
                    continue
                self._seen.add(key)
                plan.append(params)
        return plan

    def _plan_random(
        self,
        space: CandidateSpace,
        baseline: ParameterCombination,
    ) -> list[ParameterCombination]:
        target = self.settings.random_samples
        if target <= 0 or space.is_empty:
            return []

        rng = random.Random(self.settings.random_seed)
        plan: list[ParameterCombination] = []
        attempts = 0
        while len(plan) < target and attempts < target * 10:
            attempts += 1
            draw: dict[str, float] = {}
            for name, values in space.candidates.items():
                bounds = space.bounds.get(name)
                if bounds is not None:
                    draw[name] = round(rng.uniform(bounds[0], bounds[1]), RANDOM_PRECISION)
                else:
                    draw[name] = rng.choice(values)
            params = merge_params(baseline, draw)
            key = _key(params)
            if key in self._seen or params == baseline or not self._admissible(params):
                continue
            self._seen.add(key)
            plan.append(params)
        return plan
