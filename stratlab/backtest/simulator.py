"""
Bar-by-bar trade simulation.

Fill model:
  * entries fill at the next bar's open, worsened by half the spread plus
    slippage;
  * rule-based exits fill at the next bar's open;
  * stop/target exits fill at the touched level, or at the open when the bar
    gaps through it;
  * positions still open at the end of data close at the last close and are
    flagged `forced_close`.

Sizing risks `position_size_pct` of realized equity at the stop distance.
Units are not rounded, so results scale linearly with initial capital.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import pandas as pd
from loguru import logger

from stratlab.backtest.model import BacktestEquityPoint, BacktestTrade, Costs, ExitReason
from stratlab.backtest.signals import (
    OpenPosition,
    PositionBook,
    Signal,
    SignalGenerator,
)
from stratlab.core.cancellation import CancellationToken, check_cancelled
from stratlab.strats.strategy import TradeDirection, TradingStrategy

ProgressFn = Callable[[float], None]

_CANCEL_CHECK_EVERY = 64
_PROGRESS_EVERY = 250


@dataclass
class SimulationOutcome:
    trades: List[BacktestTrade] = field(default_factory=list)
    equity_curve: List[BacktestEquityPoint] = field(default_factory=list)
    max_leverage: float = 0.0
    bars_in_market: int = 0
    rejected_entries: int = 0


class TradeSimulator:
    """Consumes a `SignalGenerator` pass and produces trades plus an equity curve."""

    def __init__(
        self,
        strategy: TradingStrategy,
        bars: pd.DataFrame,
        symbol: str,
        initial_capital: float,
        costs: Costs,
        generator: SignalGenerator | None = None,
    ) -> None:
        if initial_capital <= 0:
            raise ValueError("initial_capital must be positive")
        self.strategy = strategy
        self.symbol = symbol
        self.bars = bars
        self.initial_capital = float(initial_capital)
        self.costs = costs
        self.generator = generator or SignalGenerator(strategy, bars, symbol)

    # -------- Fills --------
    def _adjusted(self, price: float, direction: TradeDirection, opening: bool) -> float:
        adj = self.costs.fill_adjustment
        # buying pays up, selling gives up
        buying = (direction is TradeDirection.LONG) == opening
        return price * (1.0 + adj) if buying else price * (1.0 - adj)

    def _open_position(
        self, signal: Signal, i: int, balance: float, next_id: int
    ) -> Optional[OpenPosition]:
        risk = self.strategy.risk
        ts = self.bars.index[i]
        fill = self._adjusted(float(self.bars["open"].iat[i]), signal.direction, opening=True)
        stop_dist = fill * risk.stop_loss_pct / 100.0
        risk_amount = balance * risk.position_size_pct / 100.0
        if stop_dist <= 0 or risk_amount <= 0:
            return None
        units = risk_amount / stop_dist
        notional = units * fill
        sign = signal.direction.sign
        return OpenPosition(
            position_id=next_id,
            symbol=self.symbol,
            direction=signal.direction,
            entry_index=i,
            entry_time=ts,
            entry_price=fill,
            units=units,
            notional=notional,
            commission_open=notional * self.costs.commission_rate,
            stop_price=fill * (1.0 - sign * risk.stop_loss_pct / 100.0),
            target_price=fill * (1.0 + sign * risk.take_profit_pct / 100.0),
            best_price=fill,
        )

    def _close_position(
        self,
        pos: OpenPosition,
        raw_price: float,
        ts: pd.Timestamp,
        reason: ExitReason,
        forced: bool = False,
    ) -> BacktestTrade:
        exit_price = self._adjusted(raw_price, pos.direction, opening=False)
        commission = pos.commission_open + exit_price * pos.units * self.costs.commission_rate
        gross = pos.direction.sign * (exit_price - pos.entry_price) * pos.units
        pnl = gross - commission
        return BacktestTrade(
            trade_id=pos.position_id,
            symbol=pos.symbol,
            direction=pos.direction,
            entry_time=pos.entry_time,
            exit_time=ts,
            entry_price=pos.entry_price,
            exit_price=exit_price,
            units=pos.units,
            volume=pos.units / self.costs.lot_size,
            notional=pos.notional,
            commission=commission,
            pnl=pnl,
            pnl_pct=pnl / pos.notional * 100.0 if pos.notional else 0.0,
            exit_reason=reason,
            forced_close=forced,
            mae=pos.mae,
            mfe=pos.mfe,
        )

    # -------- Main loop --------
    def run(
        self,
        progress: ProgressFn | None = None,
        cancel: CancellationToken | None = None,
    ) -> SimulationOutcome:
        bars = self.bars
        n = len(bars)
        risk = self.strategy.risk
        opens = bars["open"].to_numpy(dtype=float)
        highs = bars["high"].to_numpy(dtype=float)
        lows = bars["low"].to_numpy(dtype=float)
        closes = bars["close"].to_numpy(dtype=float)
        index = bars.index

        out = SimulationOutcome()
        book = PositionBook()
        by_id: Dict[int, OpenPosition] = {}
        balance = self.initial_capital
        peak = self.initial_capital
        day = None
        day_start_equity = self.initial_capital
        halted_day = None
        halted_run = False
        next_id = 1

        pending_entries: List[Signal] = []
        pending_exits: List[Tuple[int, ExitReason]] = []
        passes = self.generator.signals(book)

        for i in range(n):
            if i % _CANCEL_CHECK_EVERY == 0:
                check_cancelled(cancel)
            ts = index[i]
            bar_day = ts.date()
            if bar_day != day:
                day = bar_day
                day_start_equity = balance + sum(p.unrealized(opens[i]) for p in book.all())

            # queued rule exits, then queued entries, at this bar's open
            for pid, reason in pending_exits:
                pos = by_id.pop(pid, None)
                if pos is None:
                    continue
                trade = self._close_position(pos, opens[i], ts, reason)
                book.remove(pos)
                balance += trade.pnl
                out.trades.append(trade)
            pending_exits = []

            for sig in pending_entries:
                # a limit may have tripped on the bar that queued this entry
                if halted_run or halted_day == day:
                    out.rejected_entries += 1
                    continue
                pos = self._open_position(sig, i, balance, next_id)
                if pos is None:
                    out.rejected_entries += 1
                    continue
                next_id += 1
                book.add(pos)
                by_id[pos.position_id] = pos
            pending_entries = []

            if i >= self.generator.warmup:
                step = next(passes)
                for sig in step.exits:
                    pos = by_id.get(sig.position_id)
                    if pos is None:
                        continue
                    if sig.price is None:
                        if i + 1 < n:
                            pending_exits.append((pos.position_id, sig.reason))
                        continue
                    by_id.pop(pos.position_id)
                    trade = self._close_position(pos, sig.price, ts, sig.reason)
                    book.remove(pos)
                    balance += trade.pnl
                    out.trades.append(trade)
                if step.entry is not None:
                    if halted_run or halted_day == day:
                        out.rejected_entries += 1
                    else:
                        pending_entries.append(step.entry)

            for pos in book.all():
                pos.update_excursions(highs[i], lows[i])
                if risk.use_trailing_stop:
                    pos.trail(risk.trailing_stop_pct)

            open_positions = book.all()
            unrealized = sum(p.unrealized(closes[i]) for p in open_positions)
            equity = balance + unrealized
            if open_positions:
                out.bars_in_market += 1
                if equity > 0:
                    exposure = sum(p.units * closes[i] for p in open_positions)
                    out.max_leverage = max(out.max_leverage, exposure / equity)
            out.equity_curve.append(
                BacktestEquityPoint(
                    timestamp=ts,
                    equity=equity,
                    cash=balance,
                    open_positions=len(open_positions),
                )
            )

            peak = max(peak, equity)
            if not halted_run and peak > 0 and (peak - equity) / peak * 100.0 >= risk.max_drawdown_pct:
                halted_run = True
                logger.info(
                    "[sim] {} drawdown limit hit at {}; no new entries for the rest of the run",
                    self.strategy.name,
                    ts,
                )
            if (
                halted_day != day
                and day_start_equity > 0
                and (day_start_equity - equity) / day_start_equity * 100.0 >= risk.max_daily_loss_pct
            ):
                halted_day = day
                logger.info("[sim] {} daily loss limit hit on {}", self.strategy.name, day)

            if progress is not None and (i % _PROGRESS_EVERY == 0 or i == n - 1):
                progress((i + 1) / n)

        if n and book.total():
            last_ts = index[n - 1]
            for pos in sorted(book.all(), key=lambda p: p.position_id):
                trade = self._close_position(
                    pos, closes[n - 1], last_ts, ExitReason.END_OF_DATA, forced=True
                )
                book.remove(pos)
                balance += trade.pnl
                out.trades.append(trade)
            last = out.equity_curve[-1]
            out.equity_curve[-1] = BacktestEquityPoint(
                timestamp=last.timestamp, equity=balance, cash=balance, open_positions=0
            )

        out.trades.sort(key=lambda t: (t.exit_time, t.trade_id))
        logger.debug(
            "[sim] {} bars={} trades={} rejected={} final={:.2f}",
            self.strategy.name,
            n,
            len(out.trades),
            out.rejected_entries,
            balance,
        )
        return out


__all__ = ["SimulationOutcome", "TradeSimulator", "ProgressFn"]
