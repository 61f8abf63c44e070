"""Tick and session records replayed by the simulator."""

import math
from dataclasses import dataclass
from typing import Any, Iterable

from tick_optimizer.exceptions import SessionDataError


@dataclass(frozen=True)
class Tick:
    """One timestamped price observation (epoch seconds)."""

    timestamp: float
    price: float
    outcome: str = "YES"


@dataclass(frozen=True)
class Session:
    """Immutable, time-ordered tick sequence of one recording session."""

    session_id: str
    ticks: tuple[Tick, ...]

    @classmethod
    def from_ticks(cls, session_id: str, ticks: Iterable[Tick]) -> "Session":
        return cls(session_id=session_id, ticks=tuple(ticks))

    @property
    def start_time(self) -> float | None:
        return self.ticks[0].timestamp if self.ticks else None

    @property
    def end_time(self) -> float | None:
        return self.ticks[-1].timestamp if self.ticks else None

    @property
    def outcomes(self) -> tuple[str, ...]:
        """Distinct outcomes in first-seen order."""
        return tuple(dict.fromkeys(t.outcome for t in self.ticks))

    def for_outcome(self, outcome: str) -> "Session":
        return Session(
            session_id=self.session_id,
            ticks=tuple(t for t in self.ticks if t.outcome == outcome),
        )

    def validate(self) -> None:
        """Raise SessionDataError on unordered timestamps or unusable prices."""
        previous = -math.inf
        for i, tick in enumerate(self.ticks):
            if not math.isfinite(tick.price) or tick.price <= 0:
                raise SessionDataError(
                    f"Session {self.session_id}: invalid price {tick.price} at tick {i}"
                )
            if not math.isfinite(tick.timestamp) or tick.timestamp < previous:
                raise SessionDataError(
                    f"Session {self.session_id}: timestamps not ascending at tick {i}"
                )
            previous = tick.timestamp

    def summary(self) -> dict[str, Any]:
        prices = [t.price for t in self.ticks]
        return {
            "session_id": self.session_id,
            "ticks": len(self.ticks),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "min_price": min(prices) if prices else None,
            "max_price": max(prices) if prices else None,
        }
