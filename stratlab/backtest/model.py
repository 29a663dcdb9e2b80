"""Value objects produced and consumed by the backtesting engine."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Tuple

import pandas as pd

from stratlab.settings import EngineSettings, get_settings
from stratlab.strats.strategy import TradeDirection, TradingStrategy

# Profit factor reported when there are winners but no losers.
PROFIT_FACTOR_INFINITE = math.inf


@dataclass(frozen=True)
class Costs:
    """
    Per-fill cost assumptions.

    Attributes:
        commission_bps (float): Commission per side in basis points of notional.
        spread_bps (float): Full bid/ask spread in basis points; half is paid per fill.
        slippage_bps (float): Adverse slippage per fill in basis points.
        lot_size (float): Units per lot, used to report volume.
    """

    commission_bps: float = 1.0
    spread_bps: float = 1.0
    slippage_bps: float = 0.5
    lot_size: float = 100_000.0

    @classmethod
    def from_settings(cls, settings: EngineSettings | None = None) -> "Costs":
        s = settings or get_settings()
        return cls(
            commission_bps=s.commission_bps,
            spread_bps=s.spread_bps,
            slippage_bps=s.slippage_bps,
            lot_size=s.lot_size,
        )

    @property
    def fill_adjustment(self) -> float:
        """Fractional price penalty applied on every fill."""
        return (self.spread_bps / 2.0 + self.slippage_bps) / 1e4

    @property
    def commission_rate(self) -> float:
        return self.commission_bps / 1e4


@dataclass(frozen=True)
class BacktestRequest:
    strategy: TradingStrategy
    symbol: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    initial_capital: float = 10_000.0
    costs: Costs = field(default_factory=Costs)

    @property
    def resolved_symbol(self) -> str:
        return (self.symbol or self.strategy.symbols[0]).upper()

    def with_strategy(self, strategy: TradingStrategy) -> "BacktestRequest":
        return BacktestRequest(
            strategy=strategy,
            symbol=self.symbol,
            start=self.start,
            end=self.end,
            initial_capital=self.initial_capital,
            costs=self.costs,
        )


class ExitReason(str, Enum):
    SIGNAL = "signal"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    END_OF_DATA = "end_of_data"


@dataclass(frozen=True)
class BacktestTrade:
    trade_id: int
    symbol: str
    direction: TradeDirection
    entry_time: pd.Timestamp
    exit_time: pd.Timestamp
    entry_price: float
    exit_price: float
    units: float
    volume: float
    notional: float
    commission: float
    pnl: float
    pnl_pct: float
    exit_reason: ExitReason
    forced_close: bool = False
    mae: float = 0.0
    mfe: float = 0.0

    @property
    def duration(self) -> timedelta:
        return (self.exit_time - self.entry_time).to_pytimedelta()

    @property
    def is_win(self) -> bool:
        return self.pnl > 0


@dataclass(frozen=True)
class BacktestEquityPoint:
    timestamp: pd.Timestamp
    equity: float
    cash: float
    open_positions: int


@dataclass(frozen=True)
class DrawdownPoint:
    timestamp: pd.Timestamp
    drawdown: float


@dataclass(frozen=True)
class MonthlyReturn:
    year: int
    month: int
    pnl: float
    return_pct: float

    @property
    def label(self) -> str:
        return f"{self.year}-{self.month:02d}"


@dataclass(frozen=True)
class BacktestPerformanceMetrics:
    total_return_pct: float = 0.0
    annualized_return_pct: float = 0.0
    total_pnl: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    profit_factor: float = 0.0
    expectancy: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    volatility: float = 0.0
    max_drawdown: float = 0.0
    trades_per_month: float = 0.0


@dataclass(frozen=True)
class BacktestStatistics:
    calmar_ratio: float = 0.0
    recovery_factor: float = 0.0
    payoff_ratio: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    average_holding_hours: float = 0.0
    exposure: float = 0.0
    market_correlation: float = 0.0
    max_leverage: float = 0.0
    forced_closes: int = 0


@dataclass(frozen=True)
class BacktestResult:
    strategy: TradingStrategy
    symbol: str
    initial_capital: float
    bars_processed: int
    performance: BacktestPerformanceMetrics
    statistics: BacktestStatistics
    trades: Tuple[BacktestTrade, ...]
    equity_curve: Tuple[BacktestEquityPoint, ...]
    drawdown_curve: Tuple[DrawdownPoint, ...]
    monthly_returns: Tuple[MonthlyReturn, ...]

    @property
    def final_equity(self) -> float:
        return self.equity_curve[-1].equity if self.equity_curve else self.initial_capital

    def equity_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "equity": [p.equity for p in self.equity_curve],
                "drawdown": [d.drawdown for d in self.drawdown_curve],
            },
            index=pd.DatetimeIndex([p.timestamp for p in self.equity_curve], name="timestamp"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data view suitable for JSON export."""
        return {
            "strategy": self.strategy.to_dict(),
            "symbol": self.symbol,
            "initial_capital": self.initial_capital,
            "bars_processed": self.bars_processed,
            "performance": _jsonable(asdict(self.performance)),
            "statistics": _jsonable(asdict(self.statistics)),
            "trades": [_jsonable(asdict(t)) for t in self.trades],
            "equity_curve": [_jsonable(asdict(p)) for p in self.equity_curve],
            "drawdown_curve": [_jsonable(asdict(d)) for d in self.drawdown_curve],
            "monthly_returns": [asdict(m) for m in self.monthly_returns],
        }


def _jsonable(payload: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in payload.items():
        if isinstance(v, pd.Timestamp):
            out[k] = v.isoformat()
        elif isinstance(v, Enum):
            out[k] = v.value
        elif isinstance(v, float) and not math.isfinite(v):
            out[k] = "inf" if v > 0 else "-inf"
        else:
            out[k] = v
    return out


__all__ = [
    "PROFIT_FACTOR_INFINITE",
    "Costs",
    "BacktestRequest",
    "ExitReason",
    "BacktestTrade",
    "BacktestEquityPoint",
    "DrawdownPoint",
    "MonthlyReturn",
    "BacktestPerformanceMetrics",
    "BacktestStatistics",
    "BacktestResult",
]
