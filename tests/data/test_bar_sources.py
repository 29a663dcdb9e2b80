from __future__ import annotations

from datetime import datetime

import numpy as np
import pandas as pd
import pytest

from stratlab.core.exceptions import DataUnavailableError, DataValidationError
from stratlab.core.timeframe import Timeframe
from stratlab.data.bars import (
    HistoricalDataPoint,
    bars_to_frame,
    frame_to_bars,
    synthetic_bars,
    validate_bars,
)
from stratlab.data.source import CsvDataSource, InMemoryDataSource


def test_validate_bars_normalizes_columns_and_defaults_volume():
    idx = pd.date_range("2024-01-01", periods=3, freq="h")
    df = pd.DataFrame(
        {"Open": [1, 2, 3], "HIGH": [2, 3, 4], "low": [0.5, 1, 2], "Close": [1.5, 2.5, 3.5]},
        index=idx,
    )

    out = validate_bars(df)

    assert list(out.columns) == ["open", "high", "low", "close", "volume"]
    assert (out["volume"] == 0.0).all()


def test_validate_bars_rejects_unordered_timestamps():
    idx = pd.DatetimeIndex(["2024-01-01 01:00", "2024-01-01 00:00"])
    df = pd.DataFrame({"open": [1, 1], "high": [1, 1], "low": [1, 1], "close": [1, 1]}, index=idx)

    with pytest.raises(DataValidationError, match="strictly increasing"):
        validate_bars(df)


def test_validate_bars_rejects_non_finite_prices():
    idx = pd.date_range("2024-01-01", periods=2, freq="h")
    df = pd.DataFrame(
        {"open": [1, np.nan], "high": [1, 1], "low": [1, 1], "close": [1, 1]}, index=idx
    )

    with pytest.raises(DataValidationError, match="finite"):
        validate_bars(df)


def test_validate_bars_swaps_inverted_high_low():
    idx = pd.date_range("2024-01-01", periods=1, freq="h")
    df = pd.DataFrame({"open": [1.0], "high": [0.9], "low": [1.1], "close": [1.0]}, index=idx)

    out = validate_bars(df)

    assert out["high"].iat[0] == pytest.approx(1.1)
    assert out["low"].iat[0] == pytest.approx(0.9)


def test_missing_columns_raise():
    df = pd.DataFrame({"close": [1.0]}, index=pd.date_range("2024-01-01", periods=1))

    with pytest.raises(DataValidationError, match="missing"):
        validate_bars(df)


def test_data_points_accept_short_aliases():
    point = HistoricalDataPoint.model_validate(
        {"t": "2024-01-01T00:00:00", "o": 1.0, "h": 1.2, "l": 0.9, "c": 1.1, "v": 10}
    )

    frame = bars_to_frame([point, HistoricalDataPoint.flat(datetime(2024, 1, 1, 1), 1.1)])

    assert len(frame) == 2
    assert frame["close"].tolist() == [1.1, 1.1]
    assert frame_to_bars(frame)[0] == point


def test_synthetic_bars_are_deterministic_and_flat_without_vol():
    a = synthetic_bars(50, seed=3)
    b = synthetic_bars(50, seed=3)
    flat = synthetic_bars(20, vol=0.0)

    pd.testing.assert_frame_equal(a, b)
    assert np.allclose(flat["close"], 1.1)
    assert (a["high"] >= a["low"]).all()


def test_in_memory_source_slices_inclusive_window(ohlcv):
    src = InMemoryDataSource({("eurusd", Timeframe.H1): ohlcv})
    start, end = ohlcv.index[10], ohlcv.index[19]

    window = src.load_bars("EURUSD", Timeframe.H1, start.to_pydatetime(), end.to_pydatetime())

    assert len(window) == 10
    assert window.index[0] == start
    assert window.index[-1] == end


def test_in_memory_source_unknown_series_raises(ohlcv):
    src = InMemoryDataSource({("EURUSD", Timeframe.H1): ohlcv})

    with pytest.raises(DataUnavailableError):
        src.load_bars("EURUSD", Timeframe.D1, None, None)


def test_csv_source_reads_named_files(tmp_path, ohlcv):
    frame = ohlcv.iloc[:100].rename_axis("timestamp")
    frame.to_csv(tmp_path / "EURUSD_H1.csv")
    src = CsvDataSource(tmp_path)

    loaded = src.load_bars("eurusd", Timeframe.H1, None, None)

    assert len(loaded) == 100
    assert np.allclose(loaded["close"].to_numpy(), frame["close"].to_numpy())
    with pytest.raises(DataUnavailableError):
        src.load_bars("GBPUSD", Timeframe.H1, None, None)
