from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

import numpy as np
import pandas as pd
from loguru import logger
from pydantic import AliasChoices, BaseModel, Field

from stratlab.core.exceptions import DataValidationError

OHLCV_COLUMNS = ("open", "high", "low", "close", "volume")


class HistoricalDataPoint(BaseModel):
    """
    A single OHLCV bar.

    Attributes:
        timestamp (datetime): Bar open time.
        open (float): The open price.
        high (float): The high price.
        low (float): The low price.
        close (float): The close price.
        volume (float): Traded volume.
    """

    timestamp: datetime = Field(validation_alias=AliasChoices("timestamp", "t", "ts"))
    open: float = Field(validation_alias=AliasChoices("open", "o"))
    high: float = Field(validation_alias=AliasChoices("high", "h"))
    low: float = Field(validation_alias=AliasChoices("low", "l"))
    close: float = Field(validation_alias=AliasChoices("close", "c"))
    volume: float = Field(0.0, validation_alias=AliasChoices("volume", "v"))

    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    @classmethod
    def flat(cls, timestamp: datetime, price: float, volume: float = 0.0) -> "HistoricalDataPoint":
        """A bar whose four prices are all `price`."""
        return cls(
            timestamp=timestamp,
            open=price,
            high=price,
            low=price,
            close=price,
            volume=volume,
        )


def bars_to_frame(points: Iterable[HistoricalDataPoint]) -> pd.DataFrame:
    """Convert bar objects into a validated OHLCV DataFrame indexed by timestamp."""
    rows = [p.model_dump() for p in points]
    if not rows:
        return pd.DataFrame(columns=list(OHLCV_COLUMNS), index=pd.DatetimeIndex([]))
    df = pd.DataFrame(rows).set_index("timestamp")
    df.index = pd.DatetimeIndex(df.index)
    return validate_bars(df)


def frame_to_bars(df: pd.DataFrame) -> list[HistoricalDataPoint]:
    out = normalize_columns(df)
    return [
        HistoricalDataPoint(
            timestamp=ts.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for ts, row in out.iterrows()
    ]


def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Lowercase column names, default a missing volume column to 0."""
    out = df.copy()
    out.columns = pd.Index([str(c).strip().lower() for c in out.columns])
    out = out.loc[:, ~out.columns.duplicated(keep="first")]
    if "volume" not in out.columns:
        out["volume"] = 0.0
    missing = [c for c in OHLCV_COLUMNS if c not in out.columns]
    if missing:
        raise DataValidationError(f"bar frame missing columns: {missing}")
    return out.loc[:, list(OHLCV_COLUMNS)].astype(float)


def validate_bars(df: pd.DataFrame) -> pd.DataFrame:
    """
    Check an OHLCV frame for the invariants the simulator relies on.

    Timestamps must be strictly increasing and prices finite; gaps are left
    as they are.
    """
    out = normalize_columns(df)
    if not isinstance(out.index, pd.DatetimeIndex):
        try:
            out.index = pd.DatetimeIndex(out.index)
        except (TypeError, ValueError) as exc:
            raise DataValidationError("bar index must be timestamps") from exc
    if len(out) > 1:
        diffs = np.diff(out.index.asi8)
        if (diffs <= 0).any():
            bad = int(np.argmax(diffs <= 0)) + 1
            raise DataValidationError(
                f"timestamps must be strictly increasing (first violation at {out.index[bad]})"
            )
    prices = out[["open", "high", "low", "close"]].to_numpy()
    if not np.isfinite(prices).all():
        raise DataValidationError("bar prices must be finite")
    inverted = out["high"] < out["low"]
    if inverted.any():
        logger.warning(
            "[bars] {} bars have high < low; swapping", int(inverted.sum())
        )
        hi = out["high"].where(~inverted, out["low"])
        lo = out["low"].where(~inverted, out["high"])
        out["high"], out["low"] = hi, lo
    return out


def slice_window(
    df: pd.DataFrame, start: datetime | None, end: datetime | None
) -> pd.DataFrame:
    """Inclusive [start, end] slice of a timestamp-indexed frame."""
    out = df
    if start is not None:
        out = out.loc[out.index >= _align_ts(start, out.index)]
    if end is not None:
        out = out.loc[out.index <= _align_ts(end, out.index)]
    return out


def _align_ts(value: datetime, index: pd.DatetimeIndex) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    tz = index.tz
    if tz is not None and ts.tzinfo is None:
        return ts.tz_localize(tz)
    if tz is None and ts.tzinfo is not None:
        return ts.tz_convert(None)
    return ts


def synthetic_bars(
    n: int,
    *,
    start: str = "2024-01-01",
    freq: str = "h",
    base: float = 1.1,
    drift: float | Sequence[float] = 0.0,
    vol: float = 0.001,
    seed: int = 7,
) -> pd.DataFrame:
    """
    Deterministic random-walk OHLCV bars.

    Used by the CLI demo mode and by tests; `vol=0` yields a flat series.
    """
    rng = np.random.default_rng(seed=seed)
    idx = pd.date_range(start, periods=n, freq=freq)
    drift_arr = np.broadcast_to(np.asarray(drift, dtype=float), (n,))
    ret = drift_arr + rng.normal(0.0, vol, n) if vol > 0 else drift_arr.copy()
    close = base * np.cumprod(1 + ret)
    open_ = np.r_[base, close[:-1]]
    wick = np.abs(rng.normal(0.0, vol, n)) * close if vol > 0 else np.zeros(n)
    high = np.maximum(open_, close) + wick
    low = np.minimum(open_, close) - wick
    volume = rng.integers(1_000, 5_000, n).astype(float)
    return pd.DataFrame(
        {"open": open_, "high": high, "low": low, "close": close, "volume": volume},
        index=idx,
    )


__all__ = [
    "OHLCV_COLUMNS",
    "HistoricalDataPoint",
    "bars_to_frame",
    "frame_to_bars",
    "normalize_columns",
    "validate_bars",
    "slice_window",
    "synthetic_bars",
]
