"""
Feature engineering: technical indicators.

Contains vectorized indicator calculations built on pandas.
Every function returns a Series aligned to the input index, NaN during the
indicator's warm-up.
"""

import logging

import numpy as np
import pandas as pd

log = logging.getLogger(__name__)


def rsi(series: pd.Series, period: int = 14) -> pd.Series:
    """
    Compute Relative Strength Index (RSI) with Wilder smoothing.

    Parameters
    ----------
    series : pd.Series
        Price series (e.g., closing prices).
    period : int, default 14
        Lookback period for RSI.

    Returns
    -------
    pd.Series
        RSI values scaled 0–100. A window with neither gains nor losses
        reads 50.
    """
    if series is None or len(series) <= period:
        log.warning(
            "RSI input too short (len=%s <= period=%s)",
            len(series) if series is not None else None,
            period,
        )
        return pd.Series(np.nan, index=getattr(series, "index", None), dtype=float)

    delta = series.diff()
    gain = delta.clip(lower=0)
    loss = -delta.clip(upper=0)

    avg_gain = gain.ewm(alpha=1 / period, min_periods=period, adjust=False).mean()
    avg_loss = loss.ewm(alpha=1 / period, min_periods=period, adjust=False).mean()

    rs = avg_gain / avg_loss.replace(0, np.nan)
    rsi_val = 100 - (100 / (1 + rs))
    rsi_val = rsi_val.where(~((avg_loss == 0) & (avg_gain > 0)), 100.0)
    rsi_val = rsi_val.where(~((avg_loss == 0) & (avg_gain == 0)), 50.0)
    rsi_val = rsi_val.where(avg_gain.notna()).clip(0, 100)

    log.debug("RSI computed for %d bars", len(series))
    return rsi_val


def sma(series: pd.Series, period: int = 20) -> pd.Series:
    """Simple moving average."""
    return series.rolling(window=period, min_periods=period).mean()


def ema(series: pd.Series, period: int = 20) -> pd.Series:
    """Exponential moving average."""
    return series.ewm(span=period, adjust=False, min_periods=period).mean()


def atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    """
    Average True Range using OHLC data.
    Requires columns: 'high', 'low', 'close'.
    """
    if not all(c in df.columns for c in ["high", "low", "close"]):
        raise ValueError("DataFrame must contain columns: high, low, close")
    tr = df[["high", "low", "close"]].copy()
    tr["h-l"] = tr["high"] - tr["low"]
    tr["h-cp"] = (tr["high"] - tr["close"].shift()).abs()
    tr["l-cp"] = (tr["low"] - tr["close"].shift()).abs()
    tr["tr"] = tr[["h-l", "h-cp", "l-cp"]].max(axis=1)
    return tr["tr"].ewm(alpha=1 / period, min_periods=period, adjust=False).mean()


def bollinger(
    series: pd.Series, period: int = 20, num_std: float = 2.0
) -> pd.DataFrame:
    """Bollinger bands (population std) as columns upper/middle/lower."""
    mid = series.rolling(window=period, min_periods=period).mean()
    std = series.rolling(window=period, min_periods=period).std(ddof=0)
    return pd.DataFrame(
        {"upper": mid + num_std * std, "middle": mid, "lower": mid - num_std * std},
        index=series.index,
    )


def macd(
    series: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9
) -> pd.DataFrame:
    """MACD line, signal line and histogram."""
    fast_ema = series.ewm(span=fast, adjust=False).mean()
    slow_ema = series.ewm(span=slow, adjust=False).mean()
    line = (fast_ema - slow_ema).where(np.arange(len(series)) >= slow - 1)
    sig = line.ewm(span=signal, adjust=False, min_periods=signal).mean()
    return pd.DataFrame(
        {"line": line, "signal": sig, "histogram": line - sig}, index=series.index
    )


def roc(series: pd.Series, period: int = 10) -> pd.Series:
    """Rate of change in percent."""
    return series.pct_change(period, fill_method=None) * 100.0


__all__ = ["rsi", "sma", "ema", "atr", "bollinger", "macd", "roc"]
