from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, Mapping, Tuple

from pydantic import BaseModel, Field, ValidationError

from stratlab.core.exceptions import InvalidStrategyError
from stratlab.core.timeframe import Timeframe
from stratlab.strats.conditions import (
    ConditionGroup,
    GroupOperator,
    IndicatorCache,
    compile_groups,
    iter_param_refs,
    iter_refs,
    warmup_bars,
)
from stratlab.strats.parameters import ParameterSet


class TradeDirection(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is TradeDirection.LONG else -1


class DirectionMode(str, Enum):
    LONG_ONLY = "long"
    SHORT_ONLY = "short"
    BOTH = "both"


class RiskRules(BaseModel):
    """
    Risk management settings, percentages expressed in percent (1.0 == 1%).

    Attributes:
        stop_loss_pct (float): Stop distance from entry price.
        take_profit_pct (float): Target distance from entry price.
        position_size_pct (float): Equity risked per trade at the stop.
        max_open_trades (int): Concurrent positions allowed per symbol.
        max_daily_loss_pct (float): Daily loss that halts new entries for the day.
        max_drawdown_pct (float): Drawdown that halts new entries for the run.
        use_trailing_stop (bool): Whether the stop trails the best price.
        trailing_stop_pct (float): Trailing distance from the best price.
    """

    stop_loss_pct: float = 1.0
    take_profit_pct: float = 2.0
    position_size_pct: float = 1.0
    max_open_trades: int = 3
    max_daily_loss_pct: float = 5.0
    max_drawdown_pct: float = 20.0
    use_trailing_stop: bool = False
    trailing_stop_pct: float = 1.0

    model_config = {"frozen": True}

    def as_dict(self) -> Dict[str, float]:
        return {
            "stop_loss_pct": self.stop_loss_pct,
            "take_profit_pct": self.take_profit_pct,
            "position_size_pct": self.position_size_pct,
            "max_open_trades": float(self.max_open_trades),
            "max_daily_loss_pct": self.max_daily_loss_pct,
            "max_drawdown_pct": self.max_drawdown_pct,
            "trailing_stop_pct": self.trailing_stop_pct,
        }


# (min, max) accepted for each percentage rule
RISK_BOUNDS: Dict[str, Tuple[float, float]] = {
    "stop_loss_pct": (0.001, 50.0),
    "take_profit_pct": (0.001, 500.0),
    "position_size_pct": (0.001, 100.0),
    "max_daily_loss_pct": (0.01, 100.0),
    "max_drawdown_pct": (0.01, 100.0),
    "trailing_stop_pct": (0.001, 50.0),
}


class TradingStrategy(BaseModel):
    """
    Declarative strategy: entry/exit condition groups plus risk rules.

    Instances are immutable; use `with_parameters` / `with_risk` to derive
    variants.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str = ""
    entry: Tuple[ConditionGroup, ...] = Field(default_factory=tuple)
    exit: Tuple[ConditionGroup, ...] = Field(default_factory=tuple)
    # short side conditions, only used with DirectionMode.BOTH
    short_entry: Tuple[ConditionGroup, ...] = Field(default_factory=tuple)
    short_exit: Tuple[ConditionGroup, ...] = Field(default_factory=tuple)
    group_operator: GroupOperator = GroupOperator.OR
    direction: DirectionMode = DirectionMode.LONG_ONLY
    risk: RiskRules = Field(default_factory=RiskRules)
    timeframe: Timeframe = Timeframe.H1
    symbols: Tuple[str, ...] = ("EURUSD",)
    parameters: ParameterSet = Field(default_factory=ParameterSet)

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "TradingStrategy":
        """Build from a plain mapping, raising `InvalidStrategyError` on bad input."""
        try:
            strategy = cls.model_validate(dict(data))
        except ValidationError as exc:
            raise InvalidStrategyError(str(exc)) from exc
        validate_strategy(strategy)
        return strategy

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @property
    def trade_direction(self) -> TradeDirection:
        """Direction of trades opened by `entry`; `short_entry` always opens shorts."""
        return (
            TradeDirection.SHORT
            if self.direction is DirectionMode.SHORT_ONLY
            else TradeDirection.LONG
        )

    def with_parameters(self, values: Mapping[str, float]) -> "TradingStrategy":
        return self.model_copy(update={"parameters": self.parameters.with_values(values)})

    def with_risk(self, **changes: Any) -> "TradingStrategy":
        return self.model_copy(update={"risk": self.risk.model_copy(update=changes)})

    def tunable_values(self) -> Dict[str, float]:
        """Flat map of every numeric knob: parameters plus risk percentages."""
        values = {f"risk.{k}": v for k, v in self.risk.as_dict().items()}
        values.update(self.parameters.as_dict())
        return values

    @property
    def condition_groups(self) -> Tuple[ConditionGroup, ...]:
        return self.entry + self.exit + self.short_entry + self.short_exit

    def warmup(self) -> int:
        refs = list(iter_refs(self.condition_groups))
        if not refs:
            return 1
        return max(1, max(warmup_bars(r, self.parameters) for r in refs))


def validate_strategy(strategy: TradingStrategy) -> None:
    """Fail fast on unknown parameter references or out-of-range risk rules."""
    if not any(g.conditions for g in strategy.entry):
        raise InvalidStrategyError(f"strategy '{strategy.name}' has no entry conditions")
    has_short = any(g.conditions for g in strategy.short_entry)
    if strategy.direction is DirectionMode.BOTH and not has_short:
        raise InvalidStrategyError(
            f"strategy '{strategy.name}' trades both directions but has no short entry conditions"
        )
    if strategy.direction is not DirectionMode.BOTH and (has_short or strategy.short_exit):
        raise InvalidStrategyError(
            f"short_entry/short_exit require direction 'both', got '{strategy.direction.value}'"
        )
    for name in iter_param_refs(strategy.condition_groups):
        if not strategy.parameters.has(name):
            raise InvalidStrategyError(f"unknown parameter reference '{name}'")
    risk = strategy.risk
    for field, (lo, hi) in RISK_BOUNDS.items():
        value = getattr(risk, field)
        if not (lo <= value <= hi):
            raise InvalidStrategyError(f"{field}={value} outside [{lo}, {hi}]")
    if risk.max_open_trades < 1:
        raise InvalidStrategyError("max_open_trades must be >= 1")
    if not strategy.symbols:
        raise InvalidStrategyError("strategy must list at least one symbol")
    # period resolution raises for invalid periods
    strategy.warmup()


def compile_signals(strategy: TradingStrategy, cache: IndicatorCache):
    """Entry and exit boolean arrays for every bar in the cache."""
    entry = compile_groups(strategy.entry, strategy.group_operator, cache)
    exit_ = compile_groups(strategy.exit, strategy.group_operator, cache)
    return entry, exit_


def compile_short_signals(strategy: TradingStrategy, cache: IndicatorCache):
    """Short-side entry and exit arrays; short exits fall back to `exit` when unset."""
    entry = compile_groups(strategy.short_entry, strategy.group_operator, cache)
    exit_groups = strategy.short_exit if any(g.conditions for g in strategy.short_exit) else strategy.exit
    exit_ = compile_groups(exit_groups, strategy.group_operator, cache)
    return entry, exit_


__all__ = [
    "TradeDirection",
    "DirectionMode",
    "RiskRules",
    "RISK_BOUNDS",
    "TradingStrategy",
    "validate_strategy",
    "compile_signals",
    "compile_short_signals",
]
