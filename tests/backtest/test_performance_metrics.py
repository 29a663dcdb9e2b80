from __future__ import annotations

import math

import pandas as pd
import pytest

from stratlab.backtest import metrics
from stratlab.backtest.model import PROFIT_FACTOR_INFINITE, BacktestEquityPoint
from stratlab.core.timeframe import Timeframe


def _curve(values, start="2024-01-01", freq="h"):
    idx = pd.date_range(start, periods=len(values), freq=freq)
    return [
        BacktestEquityPoint(timestamp=ts, equity=float(v), cash=float(v), open_positions=0)
        for ts, v in zip(idx, values)
    ]


def test_profit_factor_sentinels():
    assert metrics.profit_factor(300.0, -100.0) == pytest.approx(3.0)
    assert metrics.profit_factor(300.0, 0.0) == PROFIT_FACTOR_INFINITE
    assert math.isinf(PROFIT_FACTOR_INFINITE)
    assert metrics.profit_factor(0.0, 0.0) == 0.0
    assert metrics.profit_factor(0.0, -50.0) == 0.0


def test_streaks_follow_exit_order(trade_factory):
    trades = [
        trade_factory(1, 10.0, entry="2024-01-01 00:00"),
        trade_factory(2, 12.0, entry="2024-01-01 05:00"),
        trade_factory(3, -5.0, entry="2024-01-01 10:00"),
        trade_factory(4, -6.0, entry="2024-01-01 15:00"),
        trade_factory(5, -7.0, entry="2024-01-01 20:00"),
        trade_factory(6, 3.0, entry="2024-01-02 01:00"),
    ]

    assert metrics.streaks(list(reversed(trades))) == (2, 3)


def test_no_trades_gives_zeroed_metrics():
    perf, stats, drawdowns, months = metrics.analyze([], _curve([10_000.0] * 50), 10_000.0)

    assert perf.total_trades == 0
    assert perf.win_rate == 0.0
    assert perf.sharpe_ratio == 0.0
    assert perf.profit_factor == 0.0
    assert perf.max_drawdown == 0.0
    assert stats.max_consecutive_losses == 0
    assert len(drawdowns) == 50
    assert months == []


def test_win_rate_and_counts(trade_factory):
    trades = [
        trade_factory(1, 100.0),
        trade_factory(2, -50.0, entry="2024-01-02"),
        trade_factory(3, 0.0, entry="2024-01-03"),
        trade_factory(4, 25.0, entry="2024-01-04"),
    ]
    curve = _curve([10_000, 10_100, 10_050, 10_050, 10_075], freq="D")

    perf, stats, _, _ = metrics.analyze(trades, curve, 10_000.0, Timeframe.D1)

    assert perf.total_trades == 4
    assert perf.winning_trades == 2
    # zero-PnL trades count as losers
    assert perf.losing_trades == 2
    assert perf.win_rate == pytest.approx(0.5)
    assert perf.gross_profit == pytest.approx(125.0)
    assert perf.gross_loss == pytest.approx(-50.0)
    assert perf.profit_factor == pytest.approx(2.5)
    assert perf.total_pnl == pytest.approx(75.0)
    assert perf.total_return_pct == pytest.approx(0.75)
    assert stats.largest_win == pytest.approx(100.0)
    assert stats.largest_loss == pytest.approx(-50.0)
    assert stats.average_holding_hours == pytest.approx(4.0)


def test_only_winners_reports_infinite_profit_factor(trade_factory):
    trades = [trade_factory(1, 10.0), trade_factory(2, 20.0, entry="2024-01-02")]
    perf, _, _, _ = metrics.analyze(trades, _curve([10_000, 10_010, 10_030], freq="D"), 10_000.0)

    assert perf.profit_factor == PROFIT_FACTOR_INFINITE


def test_max_drawdown_is_a_fraction(trade_factory):
    curve = _curve([10_000, 12_000, 6_000, 9_000])
    perf, stats, drawdowns, _ = metrics.analyze(
        [trade_factory(1, -1_000.0)], curve, 10_000.0
    )

    assert perf.max_drawdown == pytest.approx(0.5)
    assert all(0.0 <= d.drawdown <= 1.0 for d in drawdowns)
    assert stats.calmar_ratio <= 100.0


def test_drawdown_measured_from_initial_capital_when_curve_starts_lower(trade_factory):
    curve = _curve([9_000, 9_500, 9_800])
    perf, _, _, _ = metrics.analyze([trade_factory(1, -200.0)], curve, 10_000.0)

    assert perf.max_drawdown == pytest.approx(0.1)


def test_sharpe_uses_timeframe_annualization(trade_factory):
    values = [10_000.0]
    for i in range(199):
        values.append(values[-1] * (1.002 if i % 2 else 0.999))
    trades = [trade_factory(1, 5.0)]

    hourly, _, _, _ = metrics.analyze(trades, _curve(values), 10_000.0, Timeframe.H1)
    daily, _, _, _ = metrics.analyze(trades, _curve(values), 10_000.0, Timeframe.D1)

    ratio = hourly.sharpe_ratio / daily.sharpe_ratio
    expected = math.sqrt(Timeframe.H1.periods_per_year / Timeframe.D1.periods_per_year)
    assert ratio == pytest.approx(expected)


def test_flat_equity_has_zero_volatility(trade_factory):
    perf, _, _, _ = metrics.analyze(
        [trade_factory(1, 0.0)], _curve([10_000.0] * 30), 10_000.0
    )

    assert perf.volatility == pytest.approx(0.0)
    assert perf.sharpe_ratio == 0.0
    assert perf.sortino_ratio == 0.0


def test_monthly_returns_compound_from_month_start(trade_factory):
    trades = [
        trade_factory(1, 1_000.0, entry="2024-01-10"),
        trade_factory(2, -550.0, entry="2024-02-10"),
    ]

    months = metrics.monthly_returns(trades, 10_000.0)

    assert [m.label for m in months] == ["2024-01", "2024-02"]
    assert months[0].return_pct == pytest.approx(10.0)
    assert months[1].return_pct == pytest.approx(-5.0)
