"""Performance projection from market-regime features."""

from .predictor import (
    EconomicIndicator,
    IndicatorImpact,
    MarketConditions,
    MarketRegime,
    PerformancePrediction,
    PerformancePredictor,
    RegimeClassifier,
    TimeHorizon,
)

__all__ = [
    "EconomicIndicator",
    "IndicatorImpact",
    "MarketConditions",
    "MarketRegime",
    "PerformancePrediction",
    "PerformancePredictor",
    "RegimeClassifier",
    "TimeHorizon",
]
