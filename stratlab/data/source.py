"""Adapters for the external market-data collaborator."""

from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Mapping, Protocol, Tuple

import pandas as pd
from loguru import logger

from stratlab.core.exceptions import DataUnavailableError
from stratlab.core.timeframe import Timeframe
from stratlab.data.bars import slice_window, validate_bars


class MarketDataSource(Protocol):
    """Supplies ordered OHLCV bars for a symbol/timeframe/date range."""

    def load_bars(
        self,
        symbol: str,
        timeframe: Timeframe,
        start: datetime | None,
        end: datetime | None,
    ) -> pd.DataFrame: ...


class InMemoryDataSource:
    """
    Serves bars from frames registered per (symbol, timeframe).

    Frames are validated once on registration and never mutated afterwards,
    so concurrent runs can read them without locking.
    """

    def __init__(self, frames: Mapping[Tuple[str, Timeframe], pd.DataFrame] | None = None) -> None:
        self._frames: Dict[Tuple[str, Timeframe], pd.DataFrame] = {}
        self._lock = threading.Lock()
        for (symbol, timeframe), df in (frames or {}).items():
            self.add(symbol, timeframe, df)

    def add(self, symbol: str, timeframe: Timeframe, df: pd.DataFrame) -> None:
        frame = validate_bars(df)
        with self._lock:
            self._frames[(symbol.upper(), Timeframe(timeframe))] = frame
        logger.debug("[data] registered {} {} bars={}", symbol, Timeframe(timeframe).value, len(frame))

    def load_bars(
        self,
        symbol: str,
        timeframe: Timeframe,
        start: datetime | None,
        end: datetime | None,
    ) -> pd.DataFrame:
        with self._lock:
            frame = self._frames.get((symbol.upper(), Timeframe(timeframe)))
        if frame is None:
            raise DataUnavailableError(f"no bars registered for {symbol} {Timeframe(timeframe).value}")
        return slice_window(frame, start, end)


class CsvDataSource:
    """
    Reads bars from `<root>/<SYMBOL>_<TIMEFRAME>.csv` files.

    The CSV needs a timestamp column (`timestamp`, `date` or `time`) and
    OHLCV columns; files are parsed lazily and cached per path.
    """

    _TS_CANDIDATES = ("timestamp", "date", "time", "datetime")

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._cache: Dict[Path, pd.DataFrame] = {}
        self._lock = threading.Lock()

    def path_for(self, symbol: str, timeframe: Timeframe) -> Path:
        return self.root / f"{symbol.upper()}_{Timeframe(timeframe).value}.csv"

    def _read(self, path: Path) -> pd.DataFrame:
        raw = pd.read_csv(path)
        cols = {c.lower(): c for c in raw.columns}
        ts_col = next((cols[c] for c in self._TS_CANDIDATES if c in cols), None)
        if ts_col is None:
            raise DataUnavailableError(f"{path} has no timestamp column")
        raw[ts_col] = pd.to_datetime(raw[ts_col], utc=False)
        return validate_bars(raw.set_index(ts_col))

    def load_bars(
        self,
        symbol: str,
        timeframe: Timeframe,
        start: datetime | None,
        end: datetime | None,
    ) -> pd.DataFrame:
        path = self.path_for(symbol, timeframe)
        with self._lock:
            frame = self._cache.get(path)
        if frame is None:
            if not path.exists():
                raise DataUnavailableError(f"no data file {path}")
            frame = self._read(path)
            with self._lock:
                self._cache[path] = frame
            logger.info("[data] loaded {} bars from {}", len(frame), path)
        return slice_window(frame, start, end)


__all__ = ["MarketDataSource", "InMemoryDataSource", "CsvDataSource"]
