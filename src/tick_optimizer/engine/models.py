"""
Data models for tick-replay backtests and parameter optimization.

Includes:
- ParameterRange: named inclusive numeric range with a fixed step
- BacktestMetrics / BacktestResult: the ranked unit of every search
- PhaseConfig / PhaseSummary / PhasedOptimizationResult: phased search records
- GridSearchConfig / PhasedRunConfig: run configuration resolved once at start
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

MAX_COMBINATIONS_DEFAULT = 10000
REFINEMENT_PHASE = 9
MIN_PHASE = 1
MAX_PHASE = 9
PROFIT_FACTOR_CAP = 100.0

# Relative tolerance when deciding whether step divides (max - min) exactly.
STEP_TOLERANCE = 1e-9

ParameterCombination = dict[str, float]
Constraint = Callable[[ParameterCombination], bool]


# =============================================================================
# Enums
# =============================================================================


class OptimizationMetric(str, Enum):
    """Metric a search maximizes."""

    SHARPE_RATIO = "sharpe_ratio"
    TOTAL_PNL = "total_pnl"
    TOTAL_RETURN = "total_return"
    WIN_RATE = "win_rate"
    MAX_DRAWDOWN = "max_drawdown"
    PROFIT_FACTOR = "profit_factor"
    COMPOSITE = "composite"

    @property
    def lower_is_better(self) -> bool:
        return self is OptimizationMetric.MAX_DRAWDOWN


class SessionAggregation(str, Enum):
    """How per-session metrics combine when several sessions are replayed."""

    MEAN = "mean"  # independent sessions, simple average of metrics
    COMPOUNDED = "compounded"  # capital carries over, metrics from joined equity


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


# =============================================================================
# Strategy I/O
# =============================================================================


@dataclass(frozen=True)
class Signal:
    """Order instruction returned by a decision function."""

    side: Side
    quantity: float
    reason: str = ""

    @classmethod
    def buy(cls, quantity: float, reason: str = "") -> "Signal":
        return cls(side=Side.BUY, quantity=quantity, reason=reason)

    @classmethod
    def sell(cls, quantity: float, reason: str = "") -> "Signal":
        return cls(side=Side.SELL, quantity=quantity, reason=reason)


@dataclass(frozen=True)
class Position:
    """Read-only view of the simulated account handed to the strategy."""

    quantity: float = 0.0
    avg_entry_price: float = 0.0
    cash: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.quantity > 0


# =============================================================================
# Parameter space
# =============================================================================


@dataclass(frozen=True)
class ParameterRange:
    """Inclusive numeric range sampled at ``min + i * step``.

    When ``step`` does not divide ``max - min`` exactly, ``max`` itself is
    kept as the last sample, so the top remainder is never lost.
    """

    name: str
    min: float
    max: float
    step: float

    def step_count(self) -> int:
        """Number of steps between the first and the last sample."""
        span = self.max - self.min
        if span <= 0:
            return 0
        n = span / self.step
        k = round(n)
        if abs(n - k) <= STEP_TOLERANCE * max(1.0, abs(n)):
            return int(k)
        return math.ceil(n)

    def sample_count(self) -> int:
        return self.step_count() + 1

    def values(self) -> tuple[float, ...]:
        """Ascending sample values, both endpoints included."""
        k = self.step_count()
        samples = [round(self.min + i * self.step, 10) for i in range(k)]
        samples.append(float(self.max))
        return tuple(samples)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "min": self.min, "max": self.max, "step": self.step}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ParameterRange":
        return cls(
            name=d["name"],
            min=float(d["min"]),
            max=float(d["max"]),
            step=float(d["step"]),
        )


# =============================================================================
# Metrics & Results
# =============================================================================


@dataclass(frozen=True)
class CompositeWeights:
    """Weights of the composite score (sharpe, win rate, profit factor)."""

    sharpe: float = 0.6
    win_rate: float = 0.3
    profit_factor: float = 0.1

    def to_dict(self) -> dict[str, float]:
        return {
            "sharpe": self.sharpe,
            "win_rate": self.win_rate,
            "profit_factor": self.profit_factor,
        }


@dataclass(frozen=True)
class BacktestMetrics:
    """Summary metrics of one backtest.

    ``win_rate``, ``total_return`` and ``max_drawdown`` are percentages.
    ``profit_factor`` is capped at PROFIT_FACTOR_CAP when nothing lost.
    """

    sharpe_ratio: float = 0.0
    total_pnl: float = 0.0
    total_return: float = 0.0
    win_rate: float = 0.0
    max_drawdown: float = 0.0
    profit_factor: float = 0.0

    def composite_score(self, weights: CompositeWeights | None = None) -> float:
        """Blend of normalized sharpe, win rate and profit factor in [0, 1]."""
        w = weights or CompositeWeights()
        sharpe_part = max(0.0, self.sharpe_ratio) / 3.0
        win_part = self.win_rate / 100.0
        pf_part = min(self.profit_factor, 5.0) / 5.0
        return w.sharpe * sharpe_part + w.win_rate * win_part + w.profit_factor * pf_part

    def metric_value(
        self,
        metric: OptimizationMetric,
        weights: CompositeWeights | None = None,
    ) -> float:
        """Raw value of ``metric`` as reported to users."""
        if metric is OptimizationMetric.COMPOSITE:
            return self.composite_score(weights)
        return float(getattr(self, metric.value))

    def score(
        self,
        metric: OptimizationMetric,
        weights: CompositeWeights | None = None,
    ) -> float:
        """Ranking key: higher is always better."""
        value = self.metric_value(metric, weights)
        return -value if metric.lower_is_better else value

    def to_dict(self, rounded: bool = True) -> dict[str, float]:
        d = {
            "sharpe_ratio": self.sharpe_ratio,
            "total_pnl": self.total_pnl,
            "total_return": self.total_return,
            "win_rate": self.win_rate,
            "max_drawdown": self.max_drawdown,
            "profit_factor": self.profit_factor,
        }
        if rounded:
            d = {k: round(v, 6) for k, v in d.items()}
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "BacktestMetrics":
        return cls(
            sharpe_ratio=float(d.get("sharpe_ratio", 0.0)),
            total_pnl=float(d.get("total_pnl", 0.0)),
            total_return=float(d.get("total_return", 0.0)),
            win_rate=float(d.get("win_rate", 0.0)),
            max_drawdown=float(d.get("max_drawdown", 0.0)),
            profit_factor=float(d.get("profit_factor", 0.0)),
        )


@dataclass(frozen=True)
class Trade:
    """Ledger entry for one filled signal."""

    session_id: str
    timestamp: float
    side: Side
    price: float
    quantity: float
    pnl: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "side": self.side.value,
            "price": self.price,
            "quantity": self.quantity,
            "pnl": round(self.pnl, 6),
        }


@dataclass(frozen=True)
class SessionBreakdown:
    """Per-session contribution to a multi-session backtest."""

    session_id: str
    pnl: float
    trade_count: int
    win_rate: float
    ticks: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "pnl": round(self.pnl, 6),
            "trade_count": self.trade_count,
            "win_rate": round(self.win_rate, 4),
            "ticks": self.ticks,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SessionBreakdown":
        return cls(
            session_id=d["session_id"],
            pnl=float(d["pnl"]),
            trade_count=int(d["trade_count"]),
            win_rate=float(d["win_rate"]),
            ticks=int(d["ticks"]),
        )


@dataclass(frozen=True)
class BacktestResult:
    """Outcome of replaying all sessions under one parameter set."""

    parameters: ParameterCombination
    metrics: BacktestMetrics
    trade_count: int
    ticks_processed: int = 0
    sessions: tuple[SessionBreakdown, ...] = ()

    def to_dict(self, rounded: bool = True) -> dict[str, Any]:
        return {
            "parameters": dict(self.parameters),
            "metrics": self.metrics.to_dict(rounded=rounded),
            "trade_count": self.trade_count,
            "ticks_processed": self.ticks_processed,
            "sessions": [s.to_dict() for s in self.sessions],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "BacktestResult":
        return cls(
            parameters={k: float(v) for k, v in d["parameters"].items()},
            metrics=BacktestMetrics.from_dict(d["metrics"]),
            trade_count=int(d.get("trade_count", 0)),
            ticks_processed=int(d.get("ticks_processed", 0)),
            sessions=tuple(SessionBreakdown.from_dict(s) for s in d.get("sessions", [])),
        )


# =============================================================================
# Run configuration
# =============================================================================


@dataclass(frozen=True)
class GridSearchConfig:
    """Exhaustive search over one parameter space."""

    parameter_ranges: tuple[ParameterRange, ...]
    base_params: ParameterCombination = field(default_factory=dict)
    optimize_metric: OptimizationMetric = OptimizationMetric.SHARPE_RATIO
    max_combinations: int = MAX_COMBINATIONS_DEFAULT
    constraints: tuple[Constraint, ...] = ()
    composite_weights: CompositeWeights = field(default_factory=CompositeWeights)
    completed_top_n: int = 10


@dataclass(frozen=True)
class PhaseConfig:
    """One ordered unit of a phased search."""

    phase: int
    name: str
    parameter_ranges: tuple[ParameterRange, ...] = ()
    optimize_metric: OptimizationMetric = OptimizationMetric.SHARPE_RATIO
    description: str = ""
    top_n: int = 5
    constraints: tuple[Constraint, ...] = ()
    max_combinations: int | None = None

    @property
    def is_refinement(self) -> bool:
        return self.phase == REFINEMENT_PHASE

    @property
    def parameter_names(self) -> list[str]:
        return [r.name for r in self.parameter_ranges]

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "name": self.name,
            "description": self.description,
            "optimize_metric": self.optimize_metric.value,
            "parameter_ranges": [r.to_dict() for r in self.parameter_ranges],
            "top_n": self.top_n,
        }


@dataclass(frozen=True)
class RefinementSettings:
    """Budget of the phase 9 multi-stage refinement."""

    pair_top_k: int = 3
    pair_grid_points: int = 5
    max_pair_combinations: int = 100
    random_samples: int = 50
    random_seed: int = 42
    derived_top_results: int = 3


@dataclass(frozen=True)
class PhasedRunConfig:
    """Ordered phases plus the base parameters they start from."""

    phases: tuple[PhaseConfig, ...]
    base_params: ParameterCombination = field(default_factory=dict)
    max_combinations: int = MAX_COMBINATIONS_DEFAULT
    composite_weights: CompositeWeights = field(default_factory=CompositeWeights)
    refinement: RefinementSettings = field(default_factory=RefinementSettings)


# =============================================================================
# Search results
# =============================================================================


@dataclass
class GridSearchResult:
    """Ranked output of one grid search (best first)."""

    run_id: str
    optimize_metric: OptimizationMetric
    results: list[BacktestResult] = field(default_factory=list)
    combinations_tested: int = 0
    duration_seconds: float = 0.0
    composite_weights: CompositeWeights = field(default_factory=CompositeWeights)

    @property
    def best(self) -> BacktestResult | None:
        return self.results[0] if self.results else None

    def top_n(self, n: int = 5) -> list[BacktestResult]:
        return self.results[:n]

    def to_dict(self, top_n: int | None = None) -> dict[str, Any]:
        results = self.results if top_n is None else self.results[:top_n]
        return {
            "run_id": self.run_id,
            "optimize_metric": self.optimize_metric.value,
            "combinations_tested": self.combinations_tested,
            "duration_seconds": round(self.duration_seconds, 3),
            "results": [r.to_dict() for r in results],
        }


@dataclass
class PhaseSummary:
    """Durable record of one phase. Skipped phases carry the baseline through."""

    phase: int
    name: str
    combinations_tested: int = 0
    duration_seconds: float = 0.0
    best_params: ParameterCombination = field(default_factory=dict)
    top_results: list[BacktestResult] = field(default_factory=list)
    skipped: bool = False
    skip_reason: str | None = None
    optimize_metric: OptimizationMetric = OptimizationMetric.SHARPE_RATIO

    @property
    def best_result(self) -> BacktestResult | None:
        return self.top_results[0] if self.top_results else None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "phase": self.phase,
            "name": self.name,
            "optimize_metric": self.optimize_metric.value,
            "combinations_tested": self.combinations_tested,
            "duration_seconds": round(self.duration_seconds, 3),
            "best_params": dict(self.best_params),
            "top_results": [r.to_dict() for r in self.top_results],
            "skipped": self.skipped,
        }
        if self.skip_reason:
            d["skip_reason"] = self.skip_reason
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "PhaseSummary":
        return cls(
            phase=int(d["phase"]),
            name=d["name"],
            combinations_tested=int(d.get("combinations_tested", 0)),
            duration_seconds=float(d.get("duration_seconds", 0.0)),
            best_params={k: float(v) for k, v in d.get("best_params", {}).items()},
            top_results=[BacktestResult.from_dict(r) for r in d.get("top_results", [])],
            skipped=bool(d.get("skipped", False)),
            skip_reason=d.get("skip_reason"),
            optimize_metric=OptimizationMetric(
                d.get("optimize_metric", OptimizationMetric.SHARPE_RATIO.value)
            ),
        )


@dataclass
class PhasedOptimizationResult:
    """Final result of a phased run."""

    run_id: str
    final_params: ParameterCombination
    final_metrics: BacktestMetrics
    total_combinations_tested: int = 0
    total_duration_seconds: float = 0.0
    phase_summaries: list[PhaseSummary] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "final_params": dict(self.final_params),
            "final_metrics": self.final_metrics.to_dict(),
            "total_combinations_tested": self.total_combinations_tested,
            "total_duration_seconds": round(self.total_duration_seconds, 3),
            "phase_summaries": [s.to_dict() for s in self.phase_summaries],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "PhasedOptimizationResult":
        return cls(
            run_id=d["run_id"],
            final_params={k: float(v) for k, v in d["final_params"].items()},
            final_metrics=BacktestMetrics.from_dict(d["final_metrics"]),
            total_combinations_tested=int(d.get("total_combinations_tested", 0)),
            total_duration_seconds=float(d.get("total_duration_seconds", 0.0)),
            phase_summaries=[PhaseSummary.from_dict(s) for s in d.get("phase_summaries", [])],
        )
