"""Ready-made strategy definitions used by the CLI and as optimization seeds."""

from __future__ import annotations

from dataclasses import dataclass

from stratlab.core.timeframe import Timeframe
from stratlab.strats.conditions import (
    Compare,
    CompareIndicators,
    Comparator,
    ConditionGroup,
    Cross,
    IndicatorRef,
    ParamRef,
)
from stratlab.strats.parameters import ParameterSet, ParameterSpec
from stratlab.strats.strategy import DirectionMode, RiskRules, TradingStrategy


@dataclass(frozen=True)
class MeanReversionParams:
    rsi_period: int = 14
    rsi_entry: float = 30.0
    rsi_exit: float = 55.0
    bb_period: int = 20


@dataclass(frozen=True)
class MomentumParams:
    ema_fast: int = 20
    ema_slow: int = 50
    roc_lookback: int = 10
    min_roc: float = 0.0


def rsi_mean_reversion(
    p: MeanReversionParams = MeanReversionParams(),
    *,
    risk: RiskRules | None = None,
    timeframe: Timeframe = Timeframe.H1,
    symbols: tuple[str, ...] = ("EURUSD",),
    name: str = "RSI Mean Reversion",
) -> TradingStrategy:
    """
    Long when RSI is oversold, or when price closes below the lower
    Bollinger band; exit when RSI recovers past `rsi_exit`.
    """
    rsi = IndicatorRef(kind="rsi", period=ParamRef(param="rsi_period"))
    entry = (
        ConditionGroup(
            conditions=(Compare(left=rsi, op=Comparator.LT, right=ParamRef(param="rsi_entry")),)
        ),
        ConditionGroup(
            conditions=(
                CompareIndicators(
                    left=IndicatorRef(kind="close"),
                    op=Comparator.LT,
                    right=IndicatorRef(kind="bb_lower", period=ParamRef(param="bb_period")),
                ),
                Compare(left=rsi, op=Comparator.LT, right=40.0),
            )
        ),
    )
    exit_ = (
        ConditionGroup(
            conditions=(Compare(left=rsi, op=Comparator.GT, right=ParamRef(param="rsi_exit")),)
        ),
    )
    params = ParameterSet(
        specs=(
            ParameterSpec(name="rsi_period", value=p.rsi_period, minimum=5, maximum=30, step=1, integer=True),
            ParameterSpec(name="rsi_entry", value=p.rsi_entry, minimum=10, maximum=45, step=1),
            ParameterSpec(name="rsi_exit", value=p.rsi_exit, minimum=45, maximum=80, step=1),
            ParameterSpec(name="bb_period", value=p.bb_period, minimum=10, maximum=40, step=1, integer=True),
        )
    )
    return TradingStrategy(
        name=name,
        description="RSI oversold / lower band reversion",
        entry=entry,
        exit=exit_,
        direction=DirectionMode.LONG_ONLY,
        risk=risk or RiskRules(stop_loss_pct=0.5, take_profit_pct=1.0),
        timeframe=timeframe,
        symbols=symbols,
        parameters=params,
    )


def ema_crossover(
    p: MomentumParams = MomentumParams(),
    *,
    risk: RiskRules | None = None,
    timeframe: Timeframe = Timeframe.H1,
    symbols: tuple[str, ...] = ("EURUSD",),
    direction: DirectionMode = DirectionMode.LONG_ONLY,
    name: str = "EMA Crossover",
) -> TradingStrategy:
    """Trend-following: fast EMA crosses the slow EMA with positive ROC."""
    fast = IndicatorRef(kind="ema", period=ParamRef(param="ema_fast"))
    slow = IndicatorRef(kind="ema", period=ParamRef(param="ema_slow"))
    roc = IndicatorRef(kind="roc", period=ParamRef(param="roc_lookback"))

    def side(bullish: bool):
        entry = (
            ConditionGroup(
                conditions=(
                    Cross(left=fast, direction="above" if bullish else "below", right=slow),
                    Compare(
                        left=roc,
                        op=Comparator.GE if bullish else Comparator.LE,
                        right=ParamRef(param="min_roc"),
                    ),
                )
            ),
        )
        exit_ = (
            ConditionGroup(
                conditions=(Cross(left=fast, direction="below" if bullish else "above", right=slow),)
            ),
        )
        return entry, exit_

    entry, exit_ = side(direction is not DirectionMode.SHORT_ONLY)
    short_entry, short_exit = side(False) if direction is DirectionMode.BOTH else ((), ())
    params = ParameterSet(
        specs=(
            ParameterSpec(name="ema_fast", value=p.ema_fast, minimum=5, maximum=50, step=1, integer=True),
            ParameterSpec(name="ema_slow", value=p.ema_slow, minimum=20, maximum=200, step=5, integer=True),
            ParameterSpec(name="roc_lookback", value=p.roc_lookback, minimum=3, maximum=40, step=1, integer=True),
            ParameterSpec(name="min_roc", value=p.min_roc, minimum=-1.0, maximum=1.0, step=0.05),
        )
    )
    return TradingStrategy(
        name=name,
        description="EMA crossover with ROC confirmation",
        entry=entry,
        exit=exit_,
        short_entry=short_entry,
        short_exit=short_exit,
        direction=direction,
        risk=risk or RiskRules(stop_loss_pct=1.0, take_profit_pct=2.0),
        timeframe=timeframe,
        symbols=symbols,
        parameters=params,
    )


TEMPLATES = {
    "rsi_mean_reversion": rsi_mean_reversion,
    "ema_crossover": ema_crossover,
}

__all__ = [
    "MeanReversionParams",
    "MomentumParams",
    "rsi_mean_reversion",
    "ema_crossover",
    "TEMPLATES",
]
