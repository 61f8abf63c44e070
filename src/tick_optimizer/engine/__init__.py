"""Backtesting engine — models, parameter space and the tick-replay simulator.

Search drivers live in ``engine.optimizer`` (grid), ``engine.phased`` and
``engine.refinement``; reports in ``engine.reporter``.
"""

from tick_optimizer.engine.models import (
    MAX_COMBINATIONS_DEFAULT,
    BacktestMetrics,
    BacktestResult,
    CompositeWeights,
    GridSearchConfig,
    GridSearchResult,
    OptimizationMetric,
    ParameterRange,
    PhaseConfig,
    PhasedOptimizationResult,
    PhasedRunConfig,
    PhaseSummary,
    Position,
    RefinementSettings,
    SessionAggregation,
    Side,
    Signal,
)
from tick_optimizer.engine.parameter_space import (
    check_combination_limit,
    count_combinations,
    enumerate_combinations,
    validate_ranges,
)
from tick_optimizer.engine.simulator import BacktestSimulator

__all__ = [
    "MAX_COMBINATIONS_DEFAULT",
    "BacktestMetrics",
    "BacktestResult",
    "CompositeWeights",
    "GridSearchConfig",
    "GridSearchResult",
    "OptimizationMetric",
    "ParameterRange",
    "PhaseConfig",
    "PhasedOptimizationResult",
    "PhasedRunConfig",
    "PhaseSummary",
    "Position",
    "RefinementSettings",
    "SessionAggregation",
    "Side",
    "Signal",
    "check_combination_limit",
    "count_combinations",
    "enumerate_combinations",
    "validate_ranges",
    "BacktestSimulator",
]
