"""
Condition AST for strategy entry/exit rules.

Conditions are a closed set of tagged variants (`Compare`,
`CompareIndicators`, `Cross`) over `IndicatorRef` operands. Before a run
they are compiled once against an `IndicatorCache` into per-bar boolean
arrays, so the bar loop only indexes numpy arrays.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Dict, Iterable, List, Literal, Tuple, Union

import numpy as np
import pandas as pd
from loguru import logger
from pydantic import BaseModel, Field

from stratlab.core.exceptions import InvalidStrategyError
from stratlab.features import indicators as ind
from stratlab.strats.parameters import ParameterSet

IndicatorKind = Literal[
    "open",
    "high",
    "low",
    "close",
    "volume",
    "sma",
    "ema",
    "rsi",
    "atr",
    "roc",
    "bb_upper",
    "bb_middle",
    "bb_lower",
    "macd",
    "macd_signal",
    "macd_hist",
]

_PRICE_KINDS = frozenset({"open", "high", "low", "close", "volume"})
_DEFAULT_PERIODS: Dict[str, int] = {
    "sma": 20,
    "ema": 20,
    "rsi": 14,
    "atr": 14,
    "roc": 10,
    "bb_upper": 20,
    "bb_middle": 20,
    "bb_lower": 20,
    "macd": 26,
    "macd_signal": 26,
    "macd_hist": 26,
}


class Comparator(str, Enum):
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="


class GroupOperator(str, Enum):
    AND = "and"
    OR = "or"


class ParamRef(BaseModel):
    """Refers to a named value in the strategy's `ParameterSet`."""

    param: str

    model_config = {"frozen": True}


Number = Union[float, ParamRef]


class IndicatorRef(BaseModel):
    """
    An indicator series.

    `period` may be a literal or a `ParamRef`; price kinds ignore it.
    `num_std` applies to Bollinger kinds only.
    """

    kind: IndicatorKind
    period: int | ParamRef | None = None
    num_std: float = 2.0

    model_config = {"frozen": True}


class Compare(BaseModel):
    type: Literal["compare"] = "compare"
    left: IndicatorRef
    op: Comparator
    right: Number

    model_config = {"frozen": True}


class CompareIndicators(BaseModel):
    type: Literal["compare_indicators"] = "compare_indicators"
    left: IndicatorRef
    op: Comparator
    right: IndicatorRef

    model_config = {"frozen": True}


class Cross(BaseModel):
    """`left` crosses above/below `right` between the previous bar and this one."""

    type: Literal["cross"] = "cross"
    left: IndicatorRef
    direction: Literal["above", "below"]
    right: Union[IndicatorRef, Number]

    model_config = {"frozen": True}


Condition = Annotated[
    Union[Compare, CompareIndicators, Cross], Field(discriminator="type")
]


class ConditionGroup(BaseModel):
    """Conditions that must all hold (AND) on the same bar."""

    conditions: Tuple[Condition, ...] = Field(default_factory=tuple)

    model_config = {"frozen": True}


# -------- Resolution --------
def _resolve_number(value: Number, params: ParameterSet) -> float:
    if isinstance(value, ParamRef):
        if not params.has(value.param):
            raise InvalidStrategyError(f"unknown parameter reference '{value.param}'")
        return float(params.value(value.param))
    return float(value)


def resolve_period(ref: IndicatorRef, params: ParameterSet) -> int:
    if ref.kind in _PRICE_KINDS:
        return 0
    raw = ref.period if ref.period is not None else _DEFAULT_PERIODS[ref.kind]
    period = int(round(_resolve_number(raw, params)))
    if period < 1:
        raise InvalidStrategyError(f"{ref.kind} period must be >= 1 (got {period})")
    return period


def _cache_key(ref: IndicatorRef, params: ParameterSet) -> Tuple[str, int, float]:
    return (ref.kind, resolve_period(ref, params), float(ref.num_std))


def warmup_bars(ref: IndicatorRef, params: ParameterSet) -> int:
    """Bars needed before the indicator produces a value."""
    period = resolve_period(ref, params)
    if ref.kind in _PRICE_KINDS:
        return 0
    if ref.kind in ("rsi", "roc"):
        return period + 1
    if ref.kind.startswith("macd"):
        return period + 9
    return period


def iter_refs(groups: Iterable[ConditionGroup]) -> Iterable[IndicatorRef]:
    for group in groups:
        for cond in group.conditions:
            yield cond.left
            right = getattr(cond, "right", None)
            if isinstance(right, IndicatorRef):
                yield right


def iter_param_refs(groups: Iterable[ConditionGroup]) -> Iterable[str]:
    for group in groups:
        for cond in group.conditions:
            for operand in (cond.left, getattr(cond, "right", None)):
                if isinstance(operand, ParamRef):
                    yield operand.param
                elif isinstance(operand, IndicatorRef) and isinstance(
                    operand.period, ParamRef
                ):
                    yield operand.period.param


# -------- Indicator cache --------
class IndicatorCache:
    """
    Per-run precomputed indicator arrays keyed by resolved (kind, period).

    Built once from the bar frame; read-only afterwards.
    """

    def __init__(self, bars: pd.DataFrame, params: ParameterSet) -> None:
        self._bars = bars
        self._params = params
        self._arrays: Dict[Tuple[str, int, float], np.ndarray] = {}
        self._n = len(bars)

    def __len__(self) -> int:
        return self._n

    def prime(self, refs: Iterable[IndicatorRef]) -> "IndicatorCache":
        for ref in refs:
            self.get(ref)
        return self

    def get(self, ref: IndicatorRef) -> np.ndarray:
        key = _cache_key(ref, self._params)
        arr = self._arrays.get(key)
        if arr is None:
            arr = self._compute(ref.kind, key[1], key[2])
            self._arrays[key] = arr
        return arr

    def _compute(self, kind: str, period: int, num_std: float) -> np.ndarray:
        bars = self._bars
        close = bars["close"]
        if kind in _PRICE_KINDS:
            series = bars[kind]
        elif kind == "sma":
            series = ind.sma(close, period)
        elif kind == "ema":
            series = ind.ema(close, period)
        elif kind == "rsi":
            series = ind.rsi(close, period)
        elif kind == "atr":
            series = ind.atr(bars, period)
        elif kind == "roc":
            series = ind.roc(close, period)
        elif kind.startswith("bb_"):
            series = ind.bollinger(close, period, num_std)[kind[3:]]
        else:
            fast = max(2, int(round(period * 12 / 26)))
            frame = ind.macd(close, fast=fast, slow=period, signal=9)
            series = frame[{"macd": "line", "macd_signal": "signal", "macd_hist": "histogram"}[kind]]
        logger.debug("[cache] computed {} period={} bars={}", kind, period, self._n)
        return series.to_numpy(dtype=float, na_value=np.nan)

    def operand(self, value: Union[IndicatorRef, Number]) -> np.ndarray:
        if isinstance(value, IndicatorRef):
            return self.get(value)
        return np.full(self._n, _resolve_number(value, self._params), dtype=float)


# -------- Compilation --------
def _compare(left: np.ndarray, op: Comparator, right: np.ndarray) -> np.ndarray:
    with np.errstate(invalid="ignore"):
        if op is Comparator.GT:
            out = left > right
        elif op is Comparator.GE:
            out = left >= right
        elif op is Comparator.LT:
            out = left < right
        else:
            out = left <= right
    return out & ~np.isnan(left) & ~np.isnan(right)


def _cross(left: np.ndarray, right: np.ndarray, direction: str) -> np.ndarray:
    out = np.zeros(len(left), dtype=bool)
    if len(left) < 2:
        return out
    prev_l, prev_r = left[:-1], right[:-1]
    cur_l, cur_r = left[1:], right[1:]
    with np.errstate(invalid="ignore"):
        if direction == "above":
            hit = (prev_l <= prev_r) & (cur_l > cur_r)
        else:
            hit = (prev_l >= prev_r) & (cur_l < cur_r)
    valid = ~(np.isnan(prev_l) | np.isnan(prev_r) | np.isnan(cur_l) | np.isnan(cur_r))
    out[1:] = hit & valid
    return out


def compile_condition(cond: Condition, cache: IndicatorCache) -> np.ndarray:
    left = cache.get(cond.left)
    if isinstance(cond, Cross):
        return _cross(left, cache.operand(cond.right), cond.direction)
    return _compare(left, cond.op, cache.operand(cond.right))


def compile_groups(
    groups: Tuple[ConditionGroup, ...],
    operator: GroupOperator,
    cache: IndicatorCache,
) -> np.ndarray:
    """
    Reduce condition groups to one boolean array per bar.

    Conditions in a group are ANDed; groups are combined with `operator`.
    Empty groups are ignored; no groups at all yields all-False.
    """
    masks: List[np.ndarray] = []
    for group in groups:
        if not group.conditions:
            continue
        mask = np.ones(len(cache), dtype=bool)
        for cond in group.conditions:
            mask &= compile_condition(cond, cache)
        masks.append(mask)
    if not masks:
        return np.zeros(len(cache), dtype=bool)
    if operator is GroupOperator.AND:
        return np.logical_and.reduce(masks)
    return np.logical_or.reduce(masks)


__all__ = [
    "IndicatorKind",
    "Comparator",
    "GroupOperator",
    "ParamRef",
    "IndicatorRef",
    "Compare",
    "CompareIndicators",
    "Cross",
    "Condition",
    "ConditionGroup",
    "IndicatorCache",
    "compile_condition",
    "compile_groups",
    "iter_refs",
    "iter_param_refs",
    "resolve_period",
    "warmup_bars",
]
