from __future__ import annotations

import os
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from dotenv import load_dotenv

from stratlab.backtest.model import BacktestTrade, ExitReason
from stratlab.core.timeframe import Timeframe
from stratlab.data.source import InMemoryDataSource
from stratlab.logging_utils import setup_test_logging
from stratlab.settings import EngineSettings, reload_settings
from stratlab.strats.strategy import TradeDirection

os.environ.setdefault("ENV", "test")


@pytest.fixture(scope="session", autouse=True)
def load_env():
    load_dotenv(override=False)
    reload_settings()


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    setup_test_logging(Path("stratlab-logs/"))
    yield


@pytest.fixture
def anyio_backend():
    """Force anyio-powered async tests to run under asyncio backend only."""
    return "asyncio"


def make_ohlcv(
    n: int = 1_500,
    *,
    seed: int = 42,
    start: str = "2024-01-01",
    freq: str = "h",
    base: float = 1.10,
    scale: float = 0.0015,
) -> pd.DataFrame:
    """
    Deterministic mean-reverting OHLCV with alternating calm and choppy
    stretches, so RSI / band strategies trade often enough to measure.
    """
    rng = np.random.default_rng(seed=seed)
    idx = pd.date_range(start, periods=n, freq=freq)
    cycle = np.sin(np.arange(n) / 18.0) * 0.004
    noise = rng.normal(0.0, scale, n)
    close = base * np.exp(np.cumsum(noise) * 0.35 + cycle)
    open_ = np.r_[base, close[:-1]]
    wick = np.abs(rng.normal(0.0, scale * 0.6, n)) * close
    high = np.maximum(open_, close) + wick
    low = np.minimum(open_, close) - wick
    volume = rng.integers(1_000, 9_000, n).astype(float)
    return pd.DataFrame(
        {"open": open_, "high": high, "low": low, "close": close, "volume": volume},
        index=idx,
    )


@pytest.fixture(scope="module")
def ohlcv() -> pd.DataFrame:
    return make_ohlcv()


@pytest.fixture(scope="module")
def flat_ohlcv() -> pd.DataFrame:
    n = 300
    idx = pd.date_range("2024-01-01", periods=n, freq="h")
    price = np.full(n, 1.1)
    return pd.DataFrame(
        {"open": price, "high": price, "low": price, "close": price, "volume": np.full(n, 1_000.0)},
        index=idx,
    )


@pytest.fixture
def source(ohlcv) -> InMemoryDataSource:
    return InMemoryDataSource({("EURUSD", Timeframe.H1): ohlcv})


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(STRATLAB_MAX_WORKERS=2, STRATLAB_OPTIMIZATION_ROUNDS=1)


@pytest.fixture
def ohlcv_factory():
    return make_ohlcv


def make_trade(
    trade_id: int,
    pnl: float,
    *,
    entry: str = "2024-01-01 00:00",
    hours: int = 4,
    notional: float = 10_000.0,
) -> BacktestTrade:
    entry_ts = pd.Timestamp(entry)
    return BacktestTrade(
        trade_id=trade_id,
        symbol="EURUSD",
        direction=TradeDirection.LONG,
        entry_time=entry_ts,
        exit_time=entry_ts + pd.Timedelta(hours=hours),
        entry_price=1.1,
        exit_price=1.1,
        units=notional / 1.1,
        volume=notional / 1.1 / 100_000.0,
        notional=notional,
        commission=0.0,
        pnl=pnl,
        pnl_pct=pnl / notional * 100.0,
        exit_reason=ExitReason.SIGNAL if pnl > 0 else ExitReason.STOP_LOSS,
    )


@pytest.fixture
def trade_factory():
    return make_trade
