from __future__ import annotations

# Public API for strategy definitions

from .conditions import (
    Compare,
    CompareIndicators,
    Comparator,
    ConditionGroup,
    Cross,
    GroupOperator,
    IndicatorCache,
    IndicatorRef,
    ParamRef,
)
from .parameters import ParameterSet, ParameterSpec
from .strategy import (
    DirectionMode,
    RiskRules,
    TradeDirection,
    TradingStrategy,
    validate_strategy,
)
from .templates import ema_crossover, rsi_mean_reversion

__all__ = [
    "Compare",
    "CompareIndicators",
    "Comparator",
    "ConditionGroup",
    "Cross",
    "GroupOperator",
    "IndicatorCache",
    "IndicatorRef",
    "ParamRef",
    "ParameterSet",
    "ParameterSpec",
    "DirectionMode",
    "RiskRules",
    "TradeDirection",
    "TradingStrategy",
    "validate_strategy",
    "ema_crossover",
    "rsi_mean_reversion",
]
