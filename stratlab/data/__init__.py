"""Market data adapters and bar helpers."""

from .bars import HistoricalDataPoint, bars_to_frame, synthetic_bars, validate_bars
from .source import CsvDataSource, InMemoryDataSource, MarketDataSource

__all__ = [
    "HistoricalDataPoint",
    "bars_to_frame",
    "synthetic_bars",
    "validate_bars",
    "MarketDataSource",
    "InMemoryDataSource",
    "CsvDataSource",
]
