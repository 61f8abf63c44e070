"""
Strategy decision contract.

A strategy is a pure function ``(params, position, price, timestamp)`` that
returns a Signal or None. It is invoked once per tick per evaluation and must
not keep state between calls; everything it needs is in its arguments.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

from tick_optimizer.engine.models import (
    Constraint,
    ParameterCombination,
    PhaseConfig,
    Position,
    Side,
    Signal,
)

__all__ = ["DecisionFunction", "Position", "Side", "Signal", "StrategySpec"]


@runtime_checkable
class DecisionFunction(Protocol):
    def __call__(
        self,
        params: ParameterCombination,
        position: Position,
        price: float,
        timestamp: float,
    ) -> Signal | None:
        ...


# =============================================================================
# Strategy description
# =============================================================================


@dataclass(frozen=True)
class StrategySpec:
    """Everything the optimizer needs to know about one strategy."""

    slug: str
    name: str
    decide: Callable[[ParameterCombination, Position, float, float], Signal | None]
    default_params: ParameterCombination = field(default_factory=dict)
    phase_presets: tuple[PhaseConfig, ...] = ()
    constraints: tuple[Constraint, ...] = ()
    description: str = ""

    def phases(self, numbers: list[int] | None = None) -> tuple[PhaseConfig, ...]:
        """Phase presets, optionally restricted to the given phase numbers."""
        if numbers is None:
            return self.phase_presets
        wanted = set(numbers)
        return tuple(p for p in self.phase_presets if p.phase in wanted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "default_params": dict(self.default_params),
            "phases": [p.to_dict() for p in self.phase_presets],
        }
