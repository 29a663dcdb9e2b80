"""
Heuristic performance projection for a strategy under current market conditions.

The projection is a closed-form function of the strategy's risk rules, an
optional baseline backtest, and a market-regime label; identical inputs
always give identical output. Expectancy is computed in R (multiples of the
amount risked per trade) from a break-even win probability nudged by how
well the strategy's style fits the regime.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Tuple

from loguru import logger

from stratlab.backtest.model import BacktestPerformanceMetrics
from stratlab.core.timeframe import Timeframe
from stratlab.strats.conditions import Cross, iter_refs
from stratlab.strats.strategy import DirectionMode, TradingStrategy

CONFIDENCE_FLOOR = 0.05
CONFIDENCE_CEILING = 0.95


class TimeHorizon(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"

    @property
    def years(self) -> float:
        return {"daily": 1 / 252, "weekly": 1 / 52, "monthly": 1 / 12, "quarterly": 1 / 4}[self.value]


_HORIZON_FOR = {
    Timeframe.M1: TimeHorizon.DAILY,
    Timeframe.M5: TimeHorizon.DAILY,
    Timeframe.M15: TimeHorizon.DAILY,
    Timeframe.M30: TimeHorizon.DAILY,
    Timeframe.H1: TimeHorizon.DAILY,
    Timeframe.H4: TimeHorizon.WEEKLY,
    Timeframe.D1: TimeHorizon.MONTHLY,
    Timeframe.W1: TimeHorizon.QUARTERLY,
    Timeframe.MN1: TimeHorizon.QUARTERLY,
}

# rough trade counts per horizon when no baseline is given
_TRADES_PER_HORIZON = {
    TimeHorizon.DAILY: 3.0,
    TimeHorizon.WEEKLY: 6.0,
    TimeHorizon.MONTHLY: 10.0,
    TimeHorizon.QUARTERLY: 12.0,
}


class MarketRegime(str, Enum):
    TREND_UP = "trend_up"
    TREND_DOWN = "trend_down"
    CALM = "calm"
    SIDEWAYS = "sideways"
    HIGH_VOLATILITY = "high_volatility"
    UNCERTAIN = "uncertain"


class IndicatorImpact(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def weight(self) -> float:
        return {"low": 0.25, "medium": 0.5, "high": 1.0}[self.value]


@dataclass(frozen=True)
class EconomicIndicator:
    name: str
    value: float
    expected: float
    impact: IndicatorImpact = IndicatorImpact.MEDIUM

    @property
    def surprise(self) -> float:
        return abs(self.value - self.expected) / max(abs(self.expected), 1.0)


@dataclass(frozen=True)
class MarketConditions:
    """
    Attributes:
        volatility_index (float): VIX-style level (roughly 10 calm, 30+ stressed).
        trend_strength (float): Signed trend strength in [-1, 1].
        correlations (Mapping[str, float]): Pairwise correlations with related markets.
        economic_indicators (Tuple[EconomicIndicator, ...]): Recent releases.
    """

    volatility_index: float
    trend_strength: float = 0.0
    correlations: Mapping[str, float] = field(default_factory=dict)
    economic_indicators: Tuple[EconomicIndicator, ...] = ()


@dataclass(frozen=True)
class PerformancePrediction:
    expected_return: float
    expected_drawdown: float
    expected_sharpe_ratio: float
    confidence: float
    time_horizon: TimeHorizon
    regime: MarketRegime


class RegimeClassifier:
    """Label market conditions with a regime using fixed thresholds."""

    def __init__(
        self,
        *,
        high_vol_threshold: float = 30.0,
        low_vol_threshold: float = 15.0,
        trend_threshold: float = 0.3,
        surprise_threshold: float = 0.5,
    ) -> None:
        if low_vol_threshold >= high_vol_threshold:
            raise ValueError("low_vol_threshold must be below high_vol_threshold")
        self.high_vol_threshold = high_vol_threshold
        self.low_vol_threshold = low_vol_threshold
        self.trend_threshold = trend_threshold
        self.surprise_threshold = surprise_threshold

    @staticmethod
    def surprise(conditions: MarketConditions) -> float:
        inds = conditions.economic_indicators
        if not inds:
            return 0.0
        total_w = sum(i.impact.weight for i in inds)
        return sum(i.surprise * i.impact.weight for i in inds) / total_w

    def classify(self, conditions: MarketConditions) -> MarketRegime:
        vol = conditions.volatility_index
        trend = conditions.trend_strength
        if self.surprise(conditions) > self.surprise_threshold:
            return MarketRegime.UNCERTAIN
        if vol >= self.high_vol_threshold:
            return MarketRegime.HIGH_VOLATILITY
        if trend >= self.trend_threshold:
            return MarketRegime.TREND_UP
        if trend <= -self.trend_threshold:
            return MarketRegime.TREND_DOWN
        if vol <= self.low_vol_threshold:
            return MarketRegime.CALM
        return MarketRegime.SIDEWAYS


def is_trend_following(strategy: TradingStrategy) -> bool:
    """Crossovers or moving-average comparisons mark a trend-following strategy."""
    for group in strategy.entry:
        for cond in group.conditions:
            if isinstance(cond, Cross):
                return True
    kinds = {r.kind for r in iter_refs(strategy.entry)}
    return bool(kinds & {"ema", "sma", "macd", "macd_signal", "macd_hist"}) and "rsi" not in kinds


def _regime_fit(strategy: TradingStrategy, regime: MarketRegime) -> float:
    """Win-probability adjustment in [-0.05, 0.05]."""
    trend = is_trend_following(strategy)
    long_side = strategy.trade_direction.sign > 0
    if regime in (MarketRegime.TREND_UP, MarketRegime.TREND_DOWN):
        if not trend:
            return -0.03
        # a two-sided strategy can always trade with the trend
        with_trend = (
            strategy.direction is DirectionMode.BOTH
            or (regime is MarketRegime.TREND_UP) == long_side
        )
        return 0.05 if with_trend else -0.05
    if regime in (MarketRegime.CALM, MarketRegime.SIDEWAYS):
        return -0.02 if trend else 0.04
    if regime is MarketRegime.HIGH_VOLATILITY:
        return -0.02
    return -0.04


class PerformancePredictor:
    """Deterministic projection of return, drawdown and Sharpe over a horizon."""

    def __init__(self, classifier: RegimeClassifier | None = None) -> None:
        self.classifier = classifier or RegimeClassifier()

    def predict(
        self,
        strategy: TradingStrategy,
        conditions: MarketConditions,
        baseline: Optional[BacktestPerformanceMetrics] = None,
    ) -> PerformancePrediction:
        risk = strategy.risk
        horizon = _HORIZON_FOR[strategy.timeframe]
        regime = self.classifier.classify(conditions)

        reward_risk = risk.take_profit_pct / risk.stop_loss_pct
        p_win = 1.0 / (1.0 + reward_risk) + _regime_fit(strategy, regime)
        if baseline is not None and baseline.total_trades > 0:
            p_win = 0.5 * p_win + 0.5 * baseline.win_rate
        p_win = min(max(p_win, 0.01), 0.99)

        edge_r = p_win * reward_risk - (1.0 - p_win)
        var_r = p_win * reward_risk**2 + (1.0 - p_win) - edge_r**2
        trades = _TRADES_PER_HORIZON[horizon]
        if baseline is not None and baseline.trades_per_month > 0:
            trades = baseline.trades_per_month * horizon.years * 12.0

        # volatility scales outcomes around the edge
        vol_mult = max(0.5, conditions.volatility_index / 20.0)
        expected_return = edge_r * risk.position_size_pct * trades
        if baseline is not None and baseline.total_trades > 0:
            expected_return = 0.5 * expected_return + 0.5 * baseline.annualized_return_pct * horizon.years

        trades_per_year = trades / horizon.years
        streak = 1.0
        if 0.0 < p_win < 1.0 and trades_per_year > 1:
            streak = max(1.0, math.log(trades_per_year) / -math.log(1.0 - p_win))
        expected_drawdown = min(1.0, streak * risk.position_size_pct / 100.0 * vol_mult)
        if baseline is not None and baseline.total_trades > 0:
            expected_drawdown = min(1.0, 0.5 * expected_drawdown + 0.5 * baseline.max_drawdown)

        sharpe = 0.0
        if var_r > 0:
            sharpe = edge_r / math.sqrt(var_r) * math.sqrt(trades_per_year) / vol_mult

        confidence = self._confidence(conditions, regime, baseline)
        prediction = PerformancePrediction(
            expected_return=round(expected_return, 6),
            expected_drawdown=round(expected_drawdown, 6),
            expected_sharpe_ratio=round(sharpe, 6),
            confidence=confidence,
            time_horizon=horizon,
            regime=regime,
        )
        logger.debug(
            "[predict] {} regime={} horizon={} ret={:.3f} dd={:.3f} conf={:.2f}",
            strategy.name,
            regime.value,
            horizon.value,
            prediction.expected_return,
            prediction.expected_drawdown,
            confidence,
        )
        return prediction

    def _confidence(
        self,
        conditions: MarketConditions,
        regime: MarketRegime,
        baseline: Optional[BacktestPerformanceMetrics],
    ) -> float:
        conf = 0.5
        if baseline is not None:
            conf += min(baseline.total_trades, 100) / 100.0 * 0.3
        if regime is MarketRegime.UNCERTAIN:
            conf -= 0.2
        elif regime is MarketRegime.HIGH_VOLATILITY:
            conf -= 0.1
        conf -= min(RegimeClassifier.surprise(conditions), 1.0) * 0.1
        if conditions.correlations:
            mean_abs = sum(abs(v) for v in conditions.correlations.values()) / len(
                conditions.correlations
            )
            if mean_abs > 0.7:
                conf -= 0.1
        return round(min(max(conf, CONFIDENCE_FLOOR), CONFIDENCE_CEILING), 6)


__all__ = [
    "CONFIDENCE_FLOOR",
    "CONFIDENCE_CEILING",
    "TimeHorizon",
    "MarketRegime",
    "IndicatorImpact",
    "EconomicIndicator",
    "MarketConditions",
    "PerformancePrediction",
    "RegimeClassifier",
    "PerformancePredictor",
    "is_trend_following",
]
