from __future__ import annotations

import numpy as np
import pytest
from pydantic import ValidationError

from stratlab.core.exceptions import InvalidStrategyError
from stratlab.core.timeframe import Timeframe
from stratlab.strats.conditions import (
    Compare,
    CompareIndicators,
    Comparator,
    ConditionGroup,
    Cross,
    GroupOperator,
    IndicatorCache,
    IndicatorRef,
    ParamRef,
    compile_groups,
    warmup_bars,
)
from stratlab.strats.parameters import ParameterSet, ParameterSpec
from stratlab.strats.strategy import DirectionMode, TradeDirection, TradingStrategy, validate_strategy
from stratlab.strats.templates import TEMPLATES, MeanReversionParams, ema_crossover, rsi_mean_reversion


def test_parameter_clamp_snaps_to_step_and_bounds():
    spec = ParameterSpec(name="p", value=10, minimum=5, maximum=30, step=2, integer=True)

    assert spec.clamp(100) == 29.0
    assert spec.clamp(-3) == 5.0
    assert spec.clamp(10.2) == 11.0
    assert spec.with_value(12).value == 13.0


def test_parameter_bounds_must_be_ordered():
    with pytest.raises(ValidationError):
        ParameterSpec(name="p", value=1, minimum=5, maximum=1)


def test_parameter_set_rejects_duplicates_and_unknown_updates():
    spec = ParameterSpec(name="p", value=1, minimum=0, maximum=2)
    with pytest.raises(ValidationError):
        ParameterSet(specs=(spec, spec))

    params = ParameterSet(specs=(spec,))
    with pytest.raises(KeyError):
        params.with_values({"q": 1.0})
    assert params.with_values({"p": 5.0}).value("p") == 2.0
    assert params.value("p") == 1.0


def test_templates_validate_and_expose_tunables():
    for factory in TEMPLATES.values():
        strategy = factory()
        validate_strategy(strategy)
        values = strategy.tunable_values()
        assert "risk.stop_loss_pct" in values
        assert set(strategy.parameters.names()) <= set(values)


def test_strategy_is_immutable_and_variants_are_new_objects():
    base = rsi_mean_reversion()
    variant = base.with_parameters({"rsi_entry": 25}).with_risk(stop_loss_pct=0.8)

    assert base.parameters.value("rsi_entry") == 30.0
    assert variant.parameters.value("rsi_entry") == 25.0
    assert variant.risk.stop_loss_pct == 0.8
    assert variant.id == base.id
    with pytest.raises(ValidationError):
        base.name = "renamed"


def test_parse_round_trips_through_plain_data():
    original = ema_crossover(direction=DirectionMode.SHORT_ONLY, timeframe=Timeframe.H4)

    parsed = TradingStrategy.parse(original.to_dict())

    assert parsed == original
    assert parsed.trade_direction is TradeDirection.SHORT


def test_parse_accepts_both_directions():
    data = ema_crossover(direction=DirectionMode.BOTH).to_dict()

    parsed = TradingStrategy.parse(data)

    assert parsed.direction is DirectionMode.BOTH
    assert parsed.short_entry and parsed.short_exit
    assert data["direction"] == "both"


def test_both_directions_requires_short_entry():
    data = ema_crossover().to_dict()
    data["direction"] = "both"

    with pytest.raises(InvalidStrategyError, match="no short entry"):
        TradingStrategy.parse(data)


def test_short_conditions_require_both_directions():
    data = ema_crossover(direction=DirectionMode.BOTH).to_dict()
    data["direction"] = "long"

    with pytest.raises(InvalidStrategyError, match="require direction 'both'"):
        TradingStrategy.parse(data)


def test_parse_wraps_validation_errors():
    with pytest.raises(InvalidStrategyError):
        TradingStrategy.parse({"name": "x", "entry": [{"conditions": [{"type": "bogus"}]}]})


def test_strategy_without_entry_conditions_is_invalid():
    with pytest.raises(InvalidStrategyError, match="no entry"):
        validate_strategy(TradingStrategy(name="empty"))


def test_out_of_range_risk_is_invalid():
    strategy = rsi_mean_reversion().with_risk(stop_loss_pct=0.0)

    with pytest.raises(InvalidStrategyError, match="stop_loss_pct"):
        validate_strategy(strategy)


def test_unknown_parameter_reference_is_invalid():
    strategy = TradingStrategy(
        name="bad",
        entry=(
            ConditionGroup(
                conditions=(
                    Compare(left=IndicatorRef(kind="close"), op=Comparator.GT, right=ParamRef(param="nope")),
                )
            ),
        ),
    )

    with pytest.raises(InvalidStrategyError, match="nope"):
        validate_strategy(strategy)


def test_warmup_covers_slowest_indicator():
    strategy = rsi_mean_reversion(MeanReversionParams(rsi_period=14, bb_period=30))

    assert strategy.warmup() == 30
    assert warmup_bars(IndicatorRef(kind="rsi", period=14), strategy.parameters) == 15
    assert warmup_bars(IndicatorRef(kind="close"), strategy.parameters) == 0


def test_compile_groups_combines_with_operator(ohlcv):
    cache = IndicatorCache(ohlcv, ParameterSet())
    above = ConditionGroup(
        conditions=(Compare(left=IndicatorRef(kind="close"), op=Comparator.GT, right=1.1),)
    )
    below = ConditionGroup(
        conditions=(Compare(left=IndicatorRef(kind="close"), op=Comparator.LE, right=1.1),)
    )

    either = compile_groups((above, below), GroupOperator.OR, cache)
    both = compile_groups((above, below), GroupOperator.AND, cache)

    assert either.all()
    assert not both.any()
    assert not compile_groups((), GroupOperator.OR, cache).any()


def test_warmup_nan_never_triggers(ohlcv):
    cache = IndicatorCache(ohlcv, ParameterSet())
    group = ConditionGroup(
        conditions=(
            CompareIndicators(
                left=IndicatorRef(kind="close"),
                op=Comparator.GT,
                right=IndicatorRef(kind="sma", period=50),
            ),
        )
    )

    mask = compile_groups((group,), GroupOperator.OR, cache)

    assert not mask[:49].any()


def test_cross_fires_only_on_the_crossing_bar(ohlcv):
    cache = IndicatorCache(ohlcv, ParameterSet())
    fast = IndicatorRef(kind="ema", period=5)
    slow = IndicatorRef(kind="ema", period=30)
    group = ConditionGroup(conditions=(Cross(left=fast, direction="above", right=slow),))

    mask = compile_groups((group,), GroupOperator.OR, cache)
    f, s = cache.get(fast), cache.get(slow)

    hits = np.flatnonzero(mask)
    assert len(hits) > 0
    for i in hits:
        assert f[i - 1] <= s[i - 1]
        assert f[i] > s[i]
