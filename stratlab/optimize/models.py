from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Tuple

from stratlab.backtest.model import BacktestPerformanceMetrics, BacktestResult, Costs
from stratlab.strats.strategy import TradingStrategy


class OptimizationGoal(str, Enum):
    MAXIMIZE_PROFIT = "maximize_profit"
    MINIMIZE_DRAWDOWN = "minimize_drawdown"
    MAXIMIZE_SHARPE_RATIO = "maximize_sharpe_ratio"
    BALANCED_RISK_REWARD = "balanced_risk_reward"
    MINIMIZE_VOLATILITY = "minimize_volatility"

    @property
    def description(self) -> str:
        return self.value.replace("_", " ").title()


@dataclass(frozen=True)
class OptimizationConstraints:
    """
    Hard limits a candidate must satisfy to be considered.

    Attributes:
        max_drawdown (float): Largest allowed max drawdown, as a fraction.
        min_win_rate (float): Lowest allowed win rate, as a fraction.
        max_leverage (float): Largest allowed open notional / equity.
        min_trades_per_month (float): Lowest allowed trading frequency.
        max_consecutive_losses (int): Longest allowed losing streak.
    """

    max_drawdown: float = 0.2
    min_win_rate: float = 0.4
    max_leverage: float = 10.0
    min_trades_per_month: float = 10.0
    max_consecutive_losses: int = 5

    def violations(self, result: BacktestResult) -> Tuple[str, ...]:
        p, s = result.performance, result.statistics
        out = []
        if p.max_drawdown > self.max_drawdown:
            out.append(f"max_drawdown {p.max_drawdown:.3f} > {self.max_drawdown}")
        if p.win_rate < self.min_win_rate:
            out.append(f"win_rate {p.win_rate:.3f} < {self.min_win_rate}")
        if s.max_leverage > self.max_leverage:
            out.append(f"leverage {s.max_leverage:.2f} > {self.max_leverage}")
        if p.trades_per_month < self.min_trades_per_month:
            out.append(f"trades/month {p.trades_per_month:.2f} < {self.min_trades_per_month}")
        if s.max_consecutive_losses > self.max_consecutive_losses:
            out.append(
                f"consecutive losses {s.max_consecutive_losses} > {self.max_consecutive_losses}"
            )
        return tuple(out)


@dataclass(frozen=True)
class OptimizationRequest:
    strategy: TradingStrategy
    goal: OptimizationGoal = OptimizationGoal.BALANCED_RISK_REWARD
    constraints: OptimizationConstraints = field(default_factory=OptimizationConstraints)
    symbol: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    initial_capital: float | None = None
    costs: Costs | None = None
    rounds: int | None = None
    grid_points: int = 5

    @property
    def timeframe(self):
        return self.strategy.timeframe


@dataclass(frozen=True)
class OptimizationRecommendation:
    parameter: str
    original_value: float
    recommended_value: float
    impact: str
    confidence: float

    @property
    def relative_change(self) -> float:
        base = abs(self.original_value) or 1.0
        return abs(self.recommended_value - self.original_value) / base


@dataclass(frozen=True)
class StrategyImprovements:
    profit_improvement: float = 0.0
    drawdown_reduction: float = 0.0
    sharpe_ratio_improvement: float = 0.0
    win_rate_improvement: float = 0.0
    consistency_score: float = 0.0


@dataclass(frozen=True)
class BacktestComparison:
    original_metrics: BacktestPerformanceMetrics
    optimized_metrics: BacktestPerformanceMetrics
    improvement_percentage: float


@dataclass(frozen=True)
class OptimizationResult:
    original_strategy: TradingStrategy
    optimized_strategy: TradingStrategy
    goal: OptimizationGoal
    recommendations: Tuple[OptimizationRecommendation, ...]
    improvements: StrategyImprovements
    comparison: BacktestComparison
    confidence: float
    candidates_evaluated: int
    candidates_rejected: int
    candidates_failed: int
    explanation: str

    @property
    def improved(self) -> bool:
        return self.optimized_strategy is not self.original_strategy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_strategy": self.original_strategy.to_dict(),
            "optimized_strategy": self.optimized_strategy.to_dict(),
            "goal": self.goal.value,
            "recommendations": [asdict(r) for r in self.recommendations],
            "improvements": asdict(self.improvements),
            "comparison": {
                "original_metrics": asdict(self.comparison.original_metrics),
                "optimized_metrics": asdict(self.comparison.optimized_metrics),
                "improvement_percentage": self.comparison.improvement_percentage,
            },
            "confidence": self.confidence,
            "candidates_evaluated": self.candidates_evaluated,
            "candidates_rejected": self.candidates_rejected,
            "candidates_failed": self.candidates_failed,
            "explanation": self.explanation,
        }


__all__ = [
    "OptimizationGoal",
    "OptimizationConstraints",
    "OptimizationRequest",
    "OptimizationRecommendation",
    "StrategyImprovements",
    "BacktestComparison",
    "OptimizationResult",
]
