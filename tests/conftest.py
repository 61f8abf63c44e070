"""Shared test fixtures and helpers for tick optimizer tests."""

import numpy as np
import pytest

from tick_optimizer.data.models import Session, Tick
from tick_optimizer.data.source import InMemoryTickSource
from tick_optimizer.engine.models import Position, Signal
from tick_optimizer.engine.simulator import BacktestSimulator

START_TIME = 1_700_000_000.0


def make_ticks(
    n: int = 200,
    start_price: float = 0.5,
    volatility: float = 0.03,
    seed: int = 42,
    start_time: float = START_TIME,
) -> list[Tick]:
    """Generate mean-reverting binary-outcome prices kept inside (0.01, 0.99)."""
    rng = np.random.RandomState(seed)
    ticks = []
    price = start_price
    for i in range(n):
        price += rng.normal(0, volatility) + (0.5 - price) * 0.05
        price = min(0.99, max(0.01, price))
        ticks.append(Tick(timestamp=start_time + i, price=round(price, 4)))
    return ticks


def make_session(session_id: str = "s1", n: int = 200, seed: int = 42, **kwargs) -> Session:
    return Session.from_ticks(session_id, make_ticks(n=n, seed=seed, **kwargs))


def make_price_session(session_id: str, prices: list[float]) -> Session:
    """Session with exactly the given prices, one second apart."""
    return Session.from_ticks(
        session_id,
        (Tick(timestamp=START_TIME + i, price=p) for i, p in enumerate(prices)),
    )


def make_flat_session(session_id: str = "flat", n: int = 50, price: float = 0.5) -> Session:
    return make_price_session(session_id, [price] * n)


def threshold_decide(params, position: Position, price: float, timestamp: float) -> Signal | None:
    """Buy ``qty`` at or below ``buy_below``; close the position at or above ``sell_above``."""
    if position.is_open:
        if price >= params["sell_above"]:
            return Signal.sell(position.quantity)
        return None
    if price <= params["buy_below"]:
        return Signal.buy(params["qty"])
    return None


def idle_decide(params, position: Position, price: float, timestamp: float) -> Signal | None:
    return None


THRESHOLD_BASE = {"buy_below": 0.45, "sell_above": 0.55, "qty": 10.0}


@pytest.fixture
def session_200():
    return make_session("s1", n=200)


@pytest.fixture
def two_sessions():
    return (make_session("s1", n=200, seed=42), make_session("s2", n=150, seed=7))


@pytest.fixture
def threshold_simulator():
    return BacktestSimulator(threshold_decide, initial_capital=1000.0)


@pytest.fixture
def tick_source(two_sessions):
    return InMemoryTickSource(two_sessions)
