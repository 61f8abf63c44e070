"""Strategy decision functions and the registry the service resolves them from."""

from tick_optimizer.strategies.base import DecisionFunction, Position, Signal, StrategySpec
from tick_optimizer.strategies.registry import StrategyRegistry, build_default_registry

__all__ = [
    "DecisionFunction",
    "Position",
    "Signal",
    "StrategySpec",
    "StrategyRegistry",
    "build_default_registry",
]
