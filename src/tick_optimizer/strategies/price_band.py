"""
Price band strategy — buy below an entry threshold, sell above an exit.

Built for binary-outcome prices in (0, 1): accumulates ``order_size`` shares
while the price is at or under ``entry_threshold`` (up to ``max_position``)
and closes everything at ``exit_threshold`` or when the price falls
``stop_loss_pct`` below the average entry.
"""

from tick_optimizer.engine.models import (
    OptimizationMetric,
    ParameterCombination,
    ParameterRange,
    PhaseConfig,
)
from tick_optimizer.strategies.base import Position, Signal, StrategySpec

SLUG = "price-band"

DEFAULT_PARAMS: ParameterCombination = {
    "entry_threshold": 0.45,
    "exit_threshold": 0.55,
    "order_size": 10.0,
    "max_position": 50.0,
    "stop_loss_pct": 0.10,
}


def decide(
    params: ParameterCombination,
    position: Position,
    price: float,
    timestamp: float,
) -> Signal | None:
    """Pure decision function (module level so worker processes can pickle it)."""
    if position.is_open:
        stop_loss = params.get("stop_loss_pct", 0.0)
        if stop_loss > 0 and price <= position.avg_entry_price * (1 - stop_loss):
            return Signal.sell(position.quantity, "stop_loss")
        if price >= params["exit_threshold"]:
            return Signal.sell(position.quantity, "take_profit")

    if price <= params["entry_threshold"]:
        room = params["max_position"] - position.quantity
        size = min(params["order_size"], room)
        if size > 0:
            return Signal.buy(size, "entry")

    return None


def _exit_above_entry(combo: ParameterCombination) -> bool:
    return combo["exit_threshold"] > combo["entry_threshold"]


def _order_fits_position(combo: ParameterCombination) -> bool:
    return combo["order_size"] <= combo["max_position"]


PHASE_PRESETS: tuple[PhaseConfig, ...] = (
    PhaseConfig(
        phase=1,
        name="Entry Threshold",
        description="Find the price level worth buying at",
        parameter_ranges=(ParameterRange("entry_threshold", 0.30, 0.50, 0.05),),
        optimize_metric=OptimizationMetric.SHARPE_RATIO,
        constraints=(_exit_above_entry,),
    ),
    PhaseConfig(
        phase=2,
        name="Exit Threshold",
        description="Find the take-profit level for the chosen entry",
        parameter_ranges=(ParameterRange("exit_threshold", 0.50, 0.80, 0.05),),
        optimize_metric=OptimizationMetric.SHARPE_RATIO,
        constraints=(_exit_above_entry,),
    ),
    PhaseConfig(
        phase=3,
        name="Position Sizing",
        description="Order size and position cap",
        parameter_ranges=(
            ParameterRange("order_size", 5.0, 25.0, 5.0),
            ParameterRange("max_position", 25.0, 100.0, 25.0),
        ),
        optimize_metric=OptimizationMetric.TOTAL_PNL,
        constraints=(_order_fits_position,),
    ),
    PhaseConfig(
        phase=4,
        name="Risk Controls",
        description="Stop loss distance below the average entry",
        parameter_ranges=(ParameterRange("stop_loss_pct", 0.0, 0.30, 0.05),),
        optimize_metric=OptimizationMetric.MAX_DRAWDOWN,
    ),
    PhaseConfig(
        phase=9,
        name="Cross-Validation",
        description="Sensitivity, pair interactions and random validation around prior winners",
        optimize_metric=OptimizationMetric.COMPOSITE,
        constraints=(_exit_above_entry, _order_fits_position),
        max_combinations=250,
    ),
)

STRATEGY = StrategySpec(
    slug=SLUG,
    name="Price Band",
    decide=decide,
    default_params=DEFAULT_PARAMS,
    phase_presets=PHASE_PRESETS,
    constraints=(_exit_above_entry, _order_fits_position),
    description="Buy under an entry threshold, sell at an exit threshold or stop loss",
)
