"""Backtesting: signal generation, trade simulation and performance metrics."""

from .engine import BacktestEngine, BacktestPhase, BacktestProgress, BacktestTask
from .model import (
    PROFIT_FACTOR_INFINITE,
    BacktestPerformanceMetrics,
    BacktestRequest,
    BacktestResult,
    BacktestStatistics,
    BacktestTrade,
    Costs,
    ExitReason,
)

__all__ = [
    "PROFIT_FACTOR_INFINITE",
    "BacktestEngine",
    "BacktestPhase",
    "BacktestProgress",
    "BacktestTask",
    "BacktestPerformanceMetrics",
    "BacktestRequest",
    "BacktestResult",
    "BacktestStatistics",
    "BacktestTrade",
    "Costs",
    "ExitReason",
]
