from __future__ import annotations

import pandas as pd
import pytest

from stratlab.backtest.model import Costs, ExitReason
from stratlab.backtest.signals import OpenPosition, PositionBook, SignalGenerator
from stratlab.backtest.simulator import TradeSimulator
from stratlab.core.cancellation import CancellationToken
from stratlab.core.exceptions import CancellationRequestedError
from stratlab.strats.conditions import Compare, Comparator, ConditionGroup, IndicatorRef
from stratlab.strats.strategy import DirectionMode, RiskRules, TradeDirection, TradingStrategy
from stratlab.strats.templates import ema_crossover

FREE = Costs(commission_bps=0.0, spread_bps=0.0, slippage_bps=0.0)


def _bars(rows, start="2024-01-01", freq="h"):
    idx = pd.date_range(start, periods=len(rows), freq=freq)
    return pd.DataFrame(rows, columns=["open", "high", "low", "close"], index=idx).assign(
        volume=1_000.0
    )


def _always_enter(direction=DirectionMode.LONG_ONLY, **risk):
    params = dict(stop_loss_pct=1.0, take_profit_pct=2.0, max_open_trades=1)
    params.update(risk)
    return TradingStrategy(
        name="always",
        entry=(
            ConditionGroup(
                conditions=(Compare(left=IndicatorRef(kind="close"), op=Comparator.GT, right=0.0),)
            ),
        ),
        direction=direction,
        risk=RiskRules(**params),
    )


def _simulate(strategy, bars, capital=10_000.0, costs=FREE):
    return TradeSimulator(strategy, bars, "EURUSD", capital, costs).run()


def test_stop_wins_when_both_levels_touch_on_one_bar():
    bars = _bars(
        [
            (100, 100, 100, 100),
            (100, 100, 100, 100),
            (100, 103, 98, 100),
            (100, 100, 100, 100),
            (100, 100, 100, 100),
        ]
    )

    out = _simulate(_always_enter(), bars)

    first = out.trades[0]
    assert first.exit_reason is ExitReason.STOP_LOSS
    assert first.exit_price == pytest.approx(99.0)
    # 1% of 10k risked over a 1-point stop
    assert first.units == pytest.approx(100.0)
    assert first.pnl == pytest.approx(-100.0)


def test_gap_through_stop_fills_at_open():
    bars = _bars(
        [
            (100, 100, 100, 100),
            (100, 100, 100, 100),
            (100, 100.5, 99.5, 100),
            (97, 97.5, 96.5, 97),
            (97, 97, 97, 97),
        ]
    )

    out = _simulate(_always_enter(), bars)

    first = out.trades[0]
    assert first.exit_reason is ExitReason.STOP_LOSS
    assert first.exit_price == pytest.approx(97.0)
    assert first.pnl == pytest.approx(-300.0)


def test_take_profit_for_short_position():
    bars = _bars(
        [
            (100, 100, 100, 100),
            (100, 100, 100, 100),
            (100, 100.5, 99.5, 99.8),
            (99.5, 99.6, 97.5, 98),
            (98, 98, 98, 98),
        ]
    )

    out = _simulate(_always_enter(DirectionMode.SHORT_ONLY), bars)

    first = out.trades[0]
    assert first.direction is TradeDirection.SHORT
    assert first.exit_reason is ExitReason.TAKE_PROFIT
    assert first.exit_price == pytest.approx(98.0)
    assert first.pnl == pytest.approx(200.0)


def test_open_position_is_force_closed_at_last_close():
    bars = _bars(
        [
            (100, 100, 100, 100),
            (100, 100, 100, 100),
            (100, 100.5, 99.5, 100.2),
            (100.2, 100.6, 99.9, 100.4),
            (100.4, 100.8, 100.1, 100.5),
        ]
    )

    out = _simulate(_always_enter(), bars)

    assert len(out.trades) == 1
    trade = out.trades[0]
    assert trade.exit_reason is ExitReason.END_OF_DATA
    assert trade.forced_close
    assert trade.exit_price == pytest.approx(100.5)
    assert len(out.equity_curve) == len(bars)
    last = out.equity_curve[-1]
    assert last.open_positions == 0
    assert last.equity == pytest.approx(10_000.0 + trade.pnl)


def test_spread_and_slippage_move_fills_against_the_trader():
    bars = _bars([(100, 100, 100, 100)] + [(100, 100.2, 99.8, 100)] * 3)
    costs = Costs(commission_bps=0.0, spread_bps=2.0, slippage_bps=1.0)

    out = _simulate(_always_enter(), bars, costs=costs)

    trade = out.trades[0]
    assert trade.entry_price == pytest.approx(100.0 * (1 + 2e-4))
    assert trade.exit_price == pytest.approx(100.0 * (1 - 2e-4))
    assert trade.pnl < 0


def test_drawdown_limit_blocks_further_entries():
    rows = [(100, 100, 100, 100)]
    # each bar opens a fresh long that immediately stops out
    rows += [(100, 100.5, 98.5, 100)] * 10
    bars = _bars(rows)

    out = _simulate(_always_enter(max_drawdown_pct=2.5), bars)

    assert 0 < len(out.trades) < 10
    assert out.rejected_entries > 0


@pytest.mark.parametrize(
    "limits",
    [
        {"max_drawdown_pct": 1.0},
        {"max_daily_loss_pct": 1.0, "max_drawdown_pct": 50.0},
    ],
)
def test_entry_queued_on_limit_bar_is_not_filled(limits):
    bars = _bars(
        [
            (100, 100, 100, 100),
            (100, 100, 100, 100),
            # 100 units lose 150 on the close, the stop at 98 is untouched
            (100, 100, 98.5, 98.5),
            (98.5, 98.5, 98.5, 98.5),
            (98.5, 98.5, 98.5, 98.5),
        ]
    )
    strategy = _always_enter(
        stop_loss_pct=2.0, take_profit_pct=10.0, position_size_pct=2.0, max_open_trades=2, **limits
    )

    out = _simulate(strategy, bars)

    assert [t.entry_time for t in out.trades] == [bars.index[2]]
    assert out.trades[0].exit_reason is ExitReason.END_OF_DATA
    assert out.rejected_entries >= 1


def test_daily_loss_limit_resets_next_day():
    day_one = [(100, 100, 100, 100)] + [(100, 100.5, 98.5, 100)] * 5
    day_two = [(100, 100.5, 98.5, 100)] * 5
    bars = pd.concat(
        [
            _bars(day_one, start="2024-01-01 00:00"),
            _bars(day_two, start="2024-01-02 00:00"),
        ]
    )

    out = _simulate(_always_enter(max_daily_loss_pct=1.5, max_drawdown_pct=50.0), bars)

    exit_days = {t.exit_time.date() for t in out.trades}
    assert len(exit_days) == 2
    assert out.rejected_entries > 0


def test_cancellation_stops_the_loop(ohlcv):
    token = CancellationToken()
    token.cancel()

    sim = TradeSimulator(_always_enter(), ohlcv, "EURUSD", 10_000.0, FREE)

    with pytest.raises(CancellationRequestedError):
        sim.run(cancel=token)


def test_initial_capital_must_be_positive(ohlcv):
    with pytest.raises(ValueError):
        TradeSimulator(_always_enter(), ohlcv, "EURUSD", 0.0, FREE)


def test_entry_is_not_emitted_on_last_bar():
    bars = _bars([(100, 100, 100, 100)] * 3)
    gen = SignalGenerator(_always_enter(), bars, "EURUSD")

    assert gen.evaluate(2, PositionBook()).entry is None
    assert gen.evaluate(1, PositionBook()).entry is not None


def test_trailing_stop_follows_best_price():
    pos = OpenPosition(
        position_id=1,
        symbol="EURUSD",
        direction=TradeDirection.LONG,
        entry_index=0,
        entry_time=pd.Timestamp("2024-01-01"),
        entry_price=100.0,
        units=1.0,
        notional=100.0,
        commission_open=0.0,
        stop_price=99.0,
        target_price=110.0,
        best_price=100.0,
    )

    pos.update_excursions(high=104.0, low=99.5)
    pos.trail(1.0)

    assert pos.stop_price == pytest.approx(104.0 * 0.99)
    assert pos.trailing_active
    assert pos.mfe == pytest.approx(4.0)


def _two_sided():
    close = IndicatorRef(kind="close")

    def above(level):
        return (ConditionGroup(conditions=(Compare(left=close, op=Comparator.GT, right=level),)),)

    def below(level):
        return (ConditionGroup(conditions=(Compare(left=close, op=Comparator.LT, right=level),)),)

    return TradingStrategy(
        name="two-sided",
        entry=above(100.0),
        exit=below(90.0),
        short_entry=below(100.0),
        short_exit=above(110.0),
        direction=DirectionMode.BOTH,
        risk=RiskRules(stop_loss_pct=50.0, take_profit_pct=50.0, max_open_trades=3),
    )


def test_both_directions_pick_side_per_bar():
    bars = _bars(
        [
            (100, 100, 100, 100),
            (101, 101, 101, 101),
            (99, 99, 99, 99),
            (100, 100, 100, 100),
        ]
    )
    gen = SignalGenerator(_two_sided(), bars, "EURUSD")

    assert gen.evaluate(1, PositionBook()).entry.direction is TradeDirection.LONG
    assert gen.evaluate(2, PositionBook()).entry.direction is TradeDirection.SHORT
    assert gen.evaluate(3, PositionBook()).entry is None


def test_short_positions_use_short_exit_conditions():
    bars = _bars([(100, 100, 100, 100), (85, 85, 85, 85), (115, 115, 115, 115)])
    gen = SignalGenerator(_two_sided(), bars, "EURUSD")
    book = PositionBook()
    for pid, direction in ((1, TradeDirection.LONG), (2, TradeDirection.SHORT)):
        sign = direction.sign
        book.add(
            OpenPosition(
                position_id=pid,
                symbol="EURUSD",
                direction=direction,
                entry_index=0,
                entry_time=bars.index[0],
                entry_price=100.0,
                units=1.0,
                notional=100.0,
                commission_open=0.0,
                stop_price=100.0 * (1 - sign * 0.5),
                target_price=100.0 * (1 + sign * 0.5),
                best_price=100.0,
            )
        )

    assert [s.position_id for s in gen.evaluate(1, book).exits] == [1]
    assert [s.position_id for s in gen.evaluate(2, book).exits] == [2]


def test_both_directions_trade_each_side(ohlcv):
    strategy = ema_crossover(direction=DirectionMode.BOTH)

    out = TradeSimulator(strategy, ohlcv, "EURUSD", 10_000.0, FREE).run()

    assert {t.direction for t in out.trades} == {TradeDirection.LONG, TradeDirection.SHORT}
