"""
Per-bar signal generation.

`SignalGenerator.signals(book)` is a lazy, finite pass over the bars: each
`next()` evaluates one bar against the current state of the position book,
so the simulator can fill orders between bars. Every call starts a fresh
pass; nothing is carried between passes.

Exit order per open position: stop-loss, take-profit, trailing stop, then
rule-based exit. When the stop and the target both fall inside one bar's
range the stop wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd
from loguru import logger

from stratlab.backtest.model import ExitReason
from stratlab.strats.conditions import IndicatorCache, iter_refs
from stratlab.strats.strategy import (
    DirectionMode,
    TradeDirection,
    TradingStrategy,
    compile_short_signals,
    compile_signals,
)


@dataclass
class OpenPosition:
    """Simulator-owned state of one open position."""

    position_id: int
    symbol: str
    direction: TradeDirection
    entry_index: int
    entry_time: pd.Timestamp
    entry_price: float
    units: float
    notional: float
    commission_open: float
    stop_price: float
    target_price: float
    best_price: float
    trailing_active: bool = False
    mae: float = 0.0
    mfe: float = 0.0

    def unrealized(self, price: float) -> float:
        return self.direction.sign * (price - self.entry_price) * self.units

    def update_excursions(self, high: float, low: float) -> None:
        if self.direction is TradeDirection.LONG:
            self.mae = min(self.mae, (low - self.entry_price) * self.units)
            self.mfe = max(self.mfe, (high - self.entry_price) * self.units)
            self.best_price = max(self.best_price, high)
        else:
            self.mae = min(self.mae, (self.entry_price - high) * self.units)
            self.mfe = max(self.mfe, (self.entry_price - low) * self.units)
            self.best_price = min(self.best_price, low)

    def trail(self, distance_pct: float) -> None:
        """Move the stop toward the best price seen; never loosen it."""
        frac = distance_pct / 100.0
        if self.direction is TradeDirection.LONG:
            level = self.best_price * (1.0 - frac)
            if level > self.stop_price:
                self.stop_price = level
                self.trailing_active = True
        else:
            level = self.best_price * (1.0 + frac)
            if level < self.stop_price:
                self.stop_price = level
                self.trailing_active = True


@dataclass
class PositionBook:
    """Open positions keyed by symbol."""

    positions: Dict[str, List[OpenPosition]] = field(default_factory=dict)

    def open_for(self, symbol: str) -> List[OpenPosition]:
        return self.positions.get(symbol, [])

    def count(self, symbol: str) -> int:
        return len(self.positions.get(symbol, []))

    def total(self) -> int:
        return sum(len(v) for v in self.positions.values())

    def add(self, position: OpenPosition) -> None:
        self.positions.setdefault(position.symbol, []).append(position)

    def remove(self, position: OpenPosition) -> None:
        self.positions[position.symbol].remove(position)

    def all(self) -> List[OpenPosition]:
        return [p for plist in self.positions.values() for p in plist]


class SignalKind(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"


@dataclass(frozen=True)
class Signal:
    """
    An entry or exit decision on one bar.

    `price` is set for level exits (stop/target touch); `None` means fill at
    the next bar's open.
    """

    kind: SignalKind
    bar_index: int
    timestamp: pd.Timestamp
    symbol: str
    direction: TradeDirection
    position_id: Optional[int] = None
    reason: Optional[ExitReason] = None
    price: Optional[float] = None


@dataclass(frozen=True)
class BarSignals:
    index: int
    timestamp: pd.Timestamp
    exits: Tuple[Signal, ...] = ()
    entry: Optional[Signal] = None


class SignalGenerator:
    """Evaluates a strategy's compiled conditions bar by bar for one symbol."""

    def __init__(
        self,
        strategy: TradingStrategy,
        bars: pd.DataFrame,
        symbol: str,
        cache: IndicatorCache | None = None,
    ) -> None:
        self.strategy = strategy
        self.symbol = symbol
        self.cache = cache or IndicatorCache(bars, strategy.parameters)
        self.cache.prime(iter_refs(strategy.condition_groups))
        self.entry_mask, self.exit_mask = compile_signals(strategy, self.cache)
        self.short_entry_mask: Optional[np.ndarray] = None
        self.short_exit_mask: Optional[np.ndarray] = None
        if strategy.direction is DirectionMode.BOTH:
            self.short_entry_mask, self.short_exit_mask = compile_short_signals(strategy, self.cache)
        self._index = bars.index
        self._open = bars["open"].to_numpy(dtype=float)
        self._high = bars["high"].to_numpy(dtype=float)
        self._low = bars["low"].to_numpy(dtype=float)
        self.warmup = min(strategy.warmup(), len(bars))
        logger.debug(
            "[signals] {} warmup={} entries={} exits={}",
            strategy.name,
            self.warmup,
            int(np.count_nonzero(self.entry_mask)),
            int(np.count_nonzero(self.exit_mask)),
        )

    def __len__(self) -> int:
        return len(self._index)

    def signals(self, book: PositionBook) -> Iterator[BarSignals]:
        for i in range(self.warmup, len(self._index)):
            yield self.evaluate(i, book)

    def evaluate(self, i: int, book: PositionBook) -> BarSignals:
        ts = self._index[i]
        exits: List[Signal] = []
        for pos in book.open_for(self.symbol):
            hit = self._level_exit(pos, i)
            if hit is None and self._exit_mask_for(pos)[i]:
                hit = (ExitReason.SIGNAL, None)
            if hit is not None:
                reason, price = hit
                exits.append(
                    Signal(
                        kind=SignalKind.EXIT,
                        bar_index=i,
                        timestamp=ts,
                        symbol=self.symbol,
                        direction=pos.direction,
                        position_id=pos.position_id,
                        reason=reason,
                        price=price,
                    )
                )

        entry = None
        still_open = book.count(self.symbol) - sum(1 for s in exits if s.price is not None)
        direction = self._entry_direction(i)
        if (
            direction is not None
            and i + 1 < len(self._index)
            and still_open < self.strategy.risk.max_open_trades
        ):
            entry = Signal(
                kind=SignalKind.ENTRY,
                bar_index=i,
                timestamp=ts,
                symbol=self.symbol,
                direction=direction,
            )
        return BarSignals(index=i, timestamp=ts, exits=tuple(exits), entry=entry)

    def _entry_direction(self, i: int) -> Optional[TradeDirection]:
        # long conditions take precedence when both sides fire on one bar
        if self.entry_mask[i]:
            return self.strategy.trade_direction
        if self.short_entry_mask is not None and self.short_entry_mask[i]:
            return TradeDirection.SHORT
        return None

    def _exit_mask_for(self, pos: OpenPosition) -> np.ndarray:
        if self.short_exit_mask is not None and pos.direction is TradeDirection.SHORT:
            return self.short_exit_mask
        return self.exit_mask

    def _level_exit(
        self, pos: OpenPosition, i: int
    ) -> Optional[Tuple[ExitReason, float]]:
        o, h, low = self._open[i], self._high[i], self._low[i]
        stop_reason = ExitReason.TRAILING_STOP if pos.trailing_active else ExitReason.STOP_LOSS
        if pos.direction is TradeDirection.LONG:
            if o <= pos.stop_price:
                return stop_reason, o
            if low <= pos.stop_price:
                return stop_reason, pos.stop_price
            if o >= pos.target_price:
                return ExitReason.TAKE_PROFIT, o
            if h >= pos.target_price:
                return ExitReason.TAKE_PROFIT, pos.target_price
        else:
            if o >= pos.stop_price:
                return stop_reason, o
            if h >= pos.stop_price:
                return stop_reason, pos.stop_price
            if o <= pos.target_price:
                return ExitReason.TAKE_PROFIT, o
            if low <= pos.target_price:
                return ExitReason.TAKE_PROFIT, pos.target_price
        return None


__all__ = [
    "OpenPosition",
    "PositionBook",
    "SignalKind",
    "Signal",
    "BarSignals",
    "SignalGenerator",
]
