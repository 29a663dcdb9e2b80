from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict

from stratlab.strats.strategy import TradingStrategy


class ABArm(str, Enum):
    A = "a"
    B = "b"


class ABTestStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"


class ABTestWinner(str, Enum):
    STRATEGY_A = "strategy_a"
    STRATEGY_B = "strategy_b"
    NO_SIGNIFICANT_DIFFERENCE = "no_significant_difference"


@dataclass(frozen=True)
class ABTestConfiguration:
    """
    Attributes:
        test_name (str): Label; also salts the split allocator.
        strategy_a (TradingStrategy): Incumbent arm.
        strategy_b (TradingStrategy): Challenger arm.
        duration (timedelta): Wall-clock (or data-clock) length of the test.
        split_ratio (float): Share of signals routed to arm A.
        minimum_trades (int): Trades each arm needs before significance is computed.
        confidence_level (float): Significance required to declare a winner.
        initial_capital (float): Capital base for per-arm drawdown.
    """

    test_name: str
    strategy_a: TradingStrategy
    strategy_b: TradingStrategy
    duration: timedelta = timedelta(days=30)
    split_ratio: float = 0.5
    minimum_trades: int = 30
    confidence_level: float = 0.95
    initial_capital: float = 10_000.0

    def __post_init__(self) -> None:
        if not 0.0 < self.split_ratio < 1.0:
            raise ValueError("split_ratio must be in (0, 1)")
        if not 0.0 < self.confidence_level < 1.0:
            raise ValueError("confidence_level must be in (0, 1)")
        if self.minimum_trades < 2:
            raise ValueError("minimum_trades must be >= 2")
        if self.duration <= timedelta(0):
            raise ValueError("duration must be positive")


@dataclass(frozen=True)
class ABTestPerformance:
    trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    mean_return_pct: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    average_hold_hours: float = 0.0


@dataclass(frozen=True)
class ABTestResult:
    test_id: str
    configuration: ABTestConfiguration
    status: ABTestStatus
    start_date: datetime | None
    end_date: datetime | None
    performance_a: ABTestPerformance
    performance_b: ABTestPerformance
    winner: ABTestWinner
    statistical_significance: float
    p_value: float | None

    @property
    def winning_strategy(self) -> TradingStrategy | None:
        if self.winner is ABTestWinner.STRATEGY_A:
            return self.configuration.strategy_a
        if self.winner is ABTestWinner.STRATEGY_B:
            return self.configuration.strategy_b
        return None

    def to_dict(self) -> Dict[str, Any]:
        cfg = self.configuration
        return {
            "test_id": self.test_id,
            "test_name": cfg.test_name,
            "strategy_a": cfg.strategy_a.id,
            "strategy_b": cfg.strategy_b.id,
            "split_ratio": cfg.split_ratio,
            "minimum_trades": cfg.minimum_trades,
            "confidence_level": cfg.confidence_level,
            "status": self.status.value,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "performance_a": asdict(self.performance_a),
            "performance_b": asdict(self.performance_b),
            "winner": self.winner.value,
            "statistical_significance": self.statistical_significance,
            "p_value": self.p_value,
        }


__all__ = [
    "ABArm",
    "ABTestStatus",
    "ABTestWinner",
    "ABTestConfiguration",
    "ABTestPerformance",
    "ABTestResult",
]
