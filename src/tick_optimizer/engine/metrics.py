"""
Performance metrics over an equity curve and a list of closing trades.

Sharpe convention: per-tick simple returns of the equity curve, mean divided
by population standard deviation, no annualization. A series with fewer than
two returns or zero variance scores 0.0.
"""

from typing import Sequence

import numpy as np

from tick_optimizer.engine.models import PROFIT_FACTOR_CAP


def equity_returns(equity: Sequence[float]) -> np.ndarray:
    """Simple returns between consecutive equity points."""
    arr = np.asarray(equity, dtype=float)
    if arr.size < 2:
        return np.zeros(0)
    prev = arr[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.where(prev > 0, np.diff(arr) / prev, 0.0)
    return returns


def sharpe_ratio(returns: np.ndarray) -> float:
    if returns.size < 2:
        return 0.0
    std = float(np.std(returns))
    if std == 0.0 or not np.isfinite(std):
        return 0.0
    return float(np.mean(returns)) / std


def max_drawdown_pct(equity: Sequence[float]) -> float:
    """Largest peak-to-trough decline as a non-negative percentage."""
    arr = np.asarray(equity, dtype=float)
    if arr.size == 0:
        return 0.0
    peaks = np.maximum.accumulate(arr)
    with np.errstate(divide="ignore", invalid="ignore"):
        drawdowns = np.where(peaks > 0, (peaks - arr) / peaks, 0.0)
    return float(max(0.0, drawdowns.max()) * 100)


def win_rate_pct(closing_pnls: Sequence[float]) -> float:
    if not closing_pnls:
        return 0.0
    wins = sum(1 for pnl in closing_pnls if pnl > 0)
    return wins / len(closing_pnls) * 100


def profit_factor(closing_pnls: Sequence[float]) -> float:
    """Gross profit over gross loss, capped when there are no losses."""
    gross_profit = sum(p for p in closing_pnls if p > 0)
    gross_loss = -sum(p for p in closing_pnls if p < 0)
    if gross_loss == 0:
        return PROFIT_FACTOR_CAP if gross_profit > 0 else 0.0
    return min(gross_profit / gross_loss, PROFIT_FACTOR_CAP)
