"""
BacktestSimulator — replay recorded tick sessions through a decision function.

Per tick: ask the strategy for a signal, apply it to a cash/position ledger,
record equity. At the end any open position is marked to the last price.
"""

from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np

from tick_optimizer.data.models import Session
from tick_optimizer.engine import metrics as m
from tick_optimizer.engine.models import (
    BacktestMetrics,
    BacktestResult,
    ParameterCombination,
    Position,
    SessionAggregation,
    SessionBreakdown,
    Side,
    Signal,
    Trade,
)
from tick_optimizer.exceptions import ConfigValidationError, EvaluationError, SessionDataError

DecideFn = Callable[[ParameterCombination, Position, float, float], Signal | None]

# Quantities below this are treated as flat.
QTY_EPSILON = 1e-12


@dataclass
class SessionRun:
    """Ledger state and equity curve after replaying one session."""

    session_id: str
    starting_capital: float
    equity_curve: list[float] = field(default_factory=list)
    trades: list[Trade] = field(default_factory=list)
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    ticks: int = 0

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    @property
    def ending_equity(self) -> float:
        return self.equity_curve[-1] if self.equity_curve else self.starting_capital

    @property
    def closing_pnls(self) -> list[float]:
        return [t.pnl for t in self.trades if t.side is Side.SELL]

    def breakdown(self) -> SessionBreakdown:
        return SessionBreakdown(
            session_id=self.session_id,
            pnl=self.total_pnl,
            trade_count=len(self.trades),
            win_rate=m.win_rate_pct(self.closing_pnls),
            ticks=self.ticks,
        )


class BacktestSimulator:
    """Deterministic tick-replay simulator for one decision function.

    ``outcome`` selects which outcome's price series is traded. Without it a
    session must carry a single outcome.
    """

    def __init__(
        self,
        decide: DecideFn,
        initial_capital: float = 1000.0,
        aggregation: SessionAggregation = SessionAggregation.MEAN,
        outcome: str | None = None,
    ) -> None:
        if initial_capital <= 0:
            raise ConfigValidationError("initial_capital must be positive")
        self.decide = decide
        self.initial_capital = float(initial_capital)
        self.aggregation = SessionAggregation(aggregation)
        self.outcome = outcome

    def run(
        self,
        sessions: Sequence[Session],
        parameters: ParameterCombination,
    ) -> BacktestResult:
        """Replay every session under ``parameters`` and aggregate the metrics."""
        if not sessions:
            raise ConfigValidationError("At least one session is required")

        params = dict(parameters)
        if self.aggregation is SessionAggregation.COMPOUNDED:
            runs = self._run_compounded(sessions, params)
            metrics = self._compounded_metrics(runs)
        else:
            runs = [self.run_session(s, params, self.initial_capital) for s in sessions]
            metrics = self._mean_metrics(runs)

        return BacktestResult(
            parameters=params,
            metrics=metrics,
            trade_count=sum(len(r.trades) for r in runs),
            ticks_processed=sum(r.ticks for r in runs),
            sessions=tuple(r.breakdown() for r in runs),
        )

    def run_session(
        self,
        session: Session,
        parameters: ParameterCombination,
        capital: float,
    ) -> SessionRun:
        """Replay one session from ``capital``. The tick sequence is read, never modified."""
        if self.outcome is not None:
            session = session.for_outcome(self.outcome)
        session.validate()
        if len(session.outcomes) > 1:
            raise SessionDataError(
                f"Session {session.session_id} mixes outcomes {list(session.outcomes)}; "
                "choose one to replay"
            )

        run = SessionRun(session_id=session.session_id, starting_capital=capital)
        run.equity_curve.append(capital)
        cash = capital
        quantity = 0.0
        avg_entry = 0.0
        last_price = 0.0

        for i, tick in enumerate(session.ticks):
            price = tick.price
            last_price = price
            position = Position(quantity=quantity, avg_entry_price=avg_entry, cash=cash)

            try:
                signal = self.decide(parameters, position, price, tick.timestamp)
            except Exception as e:
                raise EvaluationError(
                    f"Strategy failed on session {session.session_id} tick {i}: {e}",
                    parameters=dict(parameters),
                ) from e

            if signal is not None and signal.quantity > 0:
                if signal.side is Side.BUY:
                    fill = min(signal.quantity, cash / price)
                    if fill > QTY_EPSILON:
                        avg_entry = (avg_entry * quantity + price * fill) / (quantity + fill)
                        quantity += fill
                        cash -= price * fill
                        run.trades.append(
                            Trade(session.session_id, tick.timestamp, Side.BUY, price, fill)
                        )
                elif signal.side is Side.SELL:
                    fill = min(signal.quantity, quantity)
                    if fill > QTY_EPSILON:
                        pnl = (price - avg_entry) * fill
                        cash += price * fill
                        quantity -= fill
                        run.realized_pnl += pnl
                        run.trades.append(
                            Trade(session.session_id, tick.timestamp, Side.SELL, price, fill, pnl)
                        )
                        if quantity <= QTY_EPSILON:
                            quantity = 0.0
                            avg_entry = 0.0
                else:
                    raise SessionDataError(f"Unknown signal side: {signal.side!r}")

            run.equity_curve.append(cash + quantity * price)

        if quantity > 0:
            run.unrealized_pnl = (last_price - avg_entry) * quantity
        run.ticks = len(session.ticks)
        return run

    # =========================================================================
    # Aggregation
    # =========================================================================

    def _run_compounded(
        self,
        sessions: Sequence[Session],
        params: ParameterCombination,
    ) -> list[SessionRun]:
        runs: list[SessionRun] = []
        capital = self.initial_capital
        # Capital carries forward in time, whatever order the caller listed.
        chronological = sorted(
            sessions, key=lambda s: (s.start_time is None, s.start_time or 0.0, s.session_id)
        )
        for session in chronological:
            run = self.run_session(session, params, capital)
            runs.append(run)
            capital = run.ending_equity
        return runs

    @staticmethod
    def _session_metrics(run: SessionRun) -> BacktestMetrics:
        closing = run.closing_pnls
        return BacktestMetrics(
            sharpe_ratio=m.sharpe_ratio(m.equity_returns(run.equity_curve)),
            total_pnl=run.total_pnl,
            total_return=run.total_pnl / run.starting_capital * 100,
            win_rate=m.win_rate_pct(closing),
            max_drawdown=m.max_drawdown_pct(run.equity_curve),
            profit_factor=m.profit_factor(closing),
        )

    def _mean_metrics(self, runs: list[SessionRun]) -> BacktestMetrics:
        per_session = [self._session_metrics(r) for r in runs]
        if len(per_session) == 1:
            return per_session[0]
        return BacktestMetrics(
            sharpe_ratio=float(np.mean([x.sharpe_ratio for x in per_session])),
            total_pnl=float(np.mean([x.total_pnl for x in per_session])),
            total_return=float(np.mean([x.total_return for x in per_session])),
            win_rate=float(np.mean([x.win_rate for x in per_session])),
            max_drawdown=float(np.mean([x.max_drawdown for x in per_session])),
            profit_factor=float(np.mean([x.profit_factor for x in per_session])),
        )

    def _compounded_metrics(self, runs: list[SessionRun]) -> BacktestMetrics:
        equity: list[float] = []
        for run in runs:
            # Each session starts where the previous one ended.
            equity.extend(run.equity_curve if not equity else run.equity_curve[1:])
        closing = [pnl for run in runs for pnl in run.closing_pnls]
        total_pnl = equity[-1] - self.initial_capital
        return BacktestMetrics(
            sharpe_ratio=m.sharpe_ratio(m.equity_returns(equity)),
            total_pnl=total_pnl,
            total_return=total_pnl / self.initial_capital * 100,
            win_rate=m.win_rate_pct(closing),
            max_drawdown=m.max_drawdown_pct(equity),
            profit_factor=m.profit_factor(closing),
        )
