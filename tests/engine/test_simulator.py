"""Tests for BacktestSimulator — tick replay, ledger and aggregation."""

import pytest

from tick_optimizer.data.models import Session, Tick
from tick_optimizer.engine.models import SessionAggregation, Side, Signal
from tick_optimizer.engine.simulator import BacktestSimulator
from tick_optimizer.exceptions import ConfigValidationError, EvaluationError, SessionDataError
from tests.conftest import (
    START_TIME,
    THRESHOLD_BASE,
    idle_decide,
    make_flat_session,
    make_price_session,
    make_session,
    threshold_decide,
)


def _oversell_decide(params, position, price, timestamp):
    if position.is_open:
        return Signal.sell(100.0)
    return Signal.buy(5.0)


def _broken_decide(params, position, price, timestamp):
    raise RuntimeError("boom")


class TestBacktestSimulator:

    def test_round_trip_trade(self):
        sim = BacktestSimulator(threshold_decide, initial_capital=1000.0)
        session = make_price_session("s1", [0.4, 0.5, 0.6])

        result = sim.run([session], THRESHOLD_BASE)

        assert result.trade_count == 2
        assert result.ticks_processed == 3
        assert result.metrics.total_pnl == pytest.approx(2.0)
        assert result.metrics.total_return == pytest.approx(0.2)
        assert result.metrics.win_rate == 100.0
        assert result.metrics.max_drawdown == 0.0
        assert result.metrics.sharpe_ratio > 0

    def test_equity_curve_per_tick(self):
        sim = BacktestSimulator(threshold_decide, initial_capital=1000.0)
        run = sim.run_session(make_price_session("s1", [0.4, 0.5, 0.6]), THRESHOLD_BASE, 1000.0)
        assert run.equity_curve == pytest.approx([1000.0, 1000.0, 1001.0, 1002.0])
        assert [t.side for t in run.trades] == [Side.BUY, Side.SELL]

    def test_open_position_marked_to_market(self):
        sim = BacktestSimulator(threshold_decide, initial_capital=1000.0)
        result = sim.run([make_price_session("s1", [0.4, 0.5])], THRESHOLD_BASE)

        assert result.trade_count == 1
        assert result.metrics.total_pnl == pytest.approx(1.0)
        assert result.metrics.win_rate == 0.0

    def test_buy_capped_by_cash(self):
        sim = BacktestSimulator(threshold_decide, initial_capital=1.0)
        run = sim.run_session(make_price_session("s1", [0.4]), THRESHOLD_BASE, 1.0)
        assert run.trades[0].quantity == pytest.approx(2.5)

    def test_sell_capped_by_position(self):
        sim = BacktestSimulator(_oversell_decide, initial_capital=1000.0)
        run = sim.run_session(make_price_session("s1", [0.4, 0.5]), {}, 1000.0)
        assert run.trades[1].side is Side.SELL
        assert run.trades[1].quantity == pytest.approx(5.0)
        assert run.trades[1].pnl == pytest.approx(0.5)

    def test_no_trades(self, session_200):
        sim = BacktestSimulator(idle_decide)
        result = sim.run([session_200], {})

        assert result.trade_count == 0
        assert result.metrics.total_pnl == 0.0
        assert result.metrics.sharpe_ratio == 0.0
        assert result.metrics.win_rate == 0.0
        assert result.metrics.profit_factor == 0.0

    def test_trading_on_flat_prices_has_zero_sharpe(self):
        params = {"buy_below": 0.5, "sell_above": 0.6, "qty": 10.0}
        result = BacktestSimulator(threshold_decide).run([make_flat_session(n=50)], params)

        assert result.trade_count == 1
        assert result.metrics.sharpe_ratio == 0.0
        assert result.metrics.total_pnl == 0.0
        assert result.metrics.max_drawdown == 0.0

    def test_deterministic(self, session_200):
        sim = BacktestSimulator(threshold_decide)
        assert sim.run([session_200], THRESHOLD_BASE) == sim.run([session_200], THRESHOLD_BASE)

    def test_strategy_failure_becomes_evaluation_error(self, session_200):
        sim = BacktestSimulator(_broken_decide)
        with pytest.raises(EvaluationError) as exc_info:
            sim.run([session_200], {"x": 1.0})
        assert exc_info.value.parameters == {"x": 1.0}
        assert "boom" in str(exc_info.value)

    def test_invalid_price_rejected(self):
        session = Session.from_ticks("bad", [Tick(1.0, 0.5), Tick(2.0, -1.0)])
        with pytest.raises(SessionDataError):
            BacktestSimulator(idle_decide).run([session], {})

    def test_unordered_timestamps_rejected(self):
        session = Session.from_ticks("bad", [Tick(2.0, 0.5), Tick(1.0, 0.5)])
        with pytest.raises(SessionDataError):
            BacktestSimulator(idle_decide).run([session], {})

    def test_requires_sessions(self):
        with pytest.raises(ConfigValidationError):
            BacktestSimulator(idle_decide).run([], {})

    def test_requires_positive_capital(self):
        with pytest.raises(ConfigValidationError):
            BacktestSimulator(idle_decide, initial_capital=0)


class TestSessionAggregation:

    def test_mean_aggregation(self):
        sim = BacktestSimulator(threshold_decide, aggregation=SessionAggregation.MEAN)
        sessions = [make_price_session("s1", [0.4, 0.6]), make_flat_session("s2", n=5)]

        result = sim.run(sessions, THRESHOLD_BASE)

        assert result.metrics.total_pnl == pytest.approx(1.0)
        assert result.trade_count == 2
        assert [s.session_id for s in result.sessions] == ["s1", "s2"]
        assert result.sessions[0].pnl == pytest.approx(2.0)

    def test_compounded_aggregation(self):
        sim = BacktestSimulator(threshold_decide, aggregation=SessionAggregation.COMPOUNDED)
        session = make_price_session("s1", [0.4, 0.6])

        result = sim.run([session, session], THRESHOLD_BASE)

        assert result.metrics.total_pnl == pytest.approx(4.0)
        assert result.metrics.total_return == pytest.approx(0.4)
        assert result.trade_count == 4

    def test_single_session_same_for_both(self):
        session = make_session("s1")
        mean = BacktestSimulator(threshold_decide, aggregation="mean").run([session], THRESHOLD_BASE)
        compounded = BacktestSimulator(threshold_decide, aggregation="compounded").run(
            [session], THRESHOLD_BASE
        )
        assert mean.metrics.total_pnl == pytest.approx(compounded.metrics.total_pnl)
        assert mean.metrics.sharpe_ratio == pytest.approx(compounded.metrics.sharpe_ratio)

    def test_compounded_ignores_caller_session_order(self):
        sim = BacktestSimulator(threshold_decide, aggregation=SessionAggregation.COMPOUNDED)
        early = make_session("early", n=80, seed=1)
        late = make_session("late", n=80, seed=3, start_time=START_TIME + 1000)

        forward = sim.run([early, late], THRESHOLD_BASE)
        backward = sim.run([late, early], THRESHOLD_BASE)

        assert forward.metrics == backward.metrics
        assert [s.session_id for s in backward.sessions] == ["early", "late"]


def _two_outcome_session(n: int = 10) -> Session:
    ticks = []
    for i in range(n):
        ticks.append(Tick(timestamp=START_TIME + i, price=0.40, outcome="YES"))
        ticks.append(Tick(timestamp=START_TIME + i, price=0.60, outcome="NO"))
    return Session.from_ticks("market", ticks)


class TestOutcomeSelection:

    def test_mixed_outcomes_rejected(self):
        with pytest.raises(SessionDataError):
            BacktestSimulator(threshold_decide).run([_two_outcome_session()], THRESHOLD_BASE)

    def test_replays_only_selected_outcome(self):
        result = BacktestSimulator(threshold_decide, outcome="YES").run(
            [_two_outcome_session()], THRESHOLD_BASE
        )

        assert result.trade_count == 1
        assert result.metrics.total_pnl == pytest.approx(0.0)
        assert result.ticks_processed == 10

    def test_other_outcome_series(self):
        result = BacktestSimulator(threshold_decide, outcome="NO").run(
            [_two_outcome_session()], THRESHOLD_BASE
        )
        assert result.trade_count == 0
