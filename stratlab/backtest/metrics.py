# stratlab/backtest/metrics.py
from __future__ import annotations

import math
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd
from loguru import logger

from stratlab.backtest.model import (
    PROFIT_FACTOR_INFINITE,
    BacktestEquityPoint,
    BacktestPerformanceMetrics,
    BacktestStatistics,
    BacktestTrade,
    DrawdownPoint,
    MonthlyReturn,
)
from stratlab.core.timeframe import Timeframe

_DAYS_PER_MONTH = 30.4375


# -------- Internals --------
def _equity_series(curve: Sequence[BacktestEquityPoint]) -> pd.Series:
    return pd.Series(
        [p.equity for p in curve],
        index=pd.DatetimeIndex([p.timestamp for p in curve]),
        dtype=float,
    )


def _to_returns(equity: pd.Series, initial_capital: float) -> pd.Series:
    if equity.empty:
        return pd.Series(dtype=float)
    prev = equity.shift(1)
    prev.iloc[0] = initial_capital
    rets = equity / prev - 1.0
    return rets.replace([np.inf, -np.inf], np.nan).fillna(0.0).astype(float)


def _drawdown(equity: pd.Series, initial_capital: float) -> Tuple[pd.Series, float]:
    if equity.empty:
        return pd.Series(dtype=float), 0.0
    peak = equity.cummax().clip(lower=initial_capital)
    dd = ((peak - equity) / peak).clip(lower=0.0, upper=1.0)
    return dd, float(dd.max())


def profit_factor(gross_profit: float, gross_loss: float) -> float:
    """gross profit / |gross loss|; infinite sentinel when only winners exist."""
    if gross_loss < 0:
        return gross_profit / abs(gross_loss)
    if gross_profit > 0:
        return PROFIT_FACTOR_INFINITE
    return 0.0


def streaks(trades: Sequence[BacktestTrade]) -> Tuple[int, int]:
    """Longest winning and losing runs, scanning trades in exit order."""
    best_w = best_l = run_w = run_l = 0
    for t in sorted(trades, key=lambda t: (t.exit_time, t.trade_id)):
        if t.pnl > 0:
            run_w += 1
            run_l = 0
        else:
            run_l += 1
            run_w = 0
        best_w = max(best_w, run_w)
        best_l = max(best_l, run_l)
    return best_w, best_l


def monthly_returns(
    trades: Sequence[BacktestTrade], initial_capital: float
) -> List[MonthlyReturn]:
    """PnL per exit month; return_pct is relative to equity at the month's start."""
    if not trades:
        return []
    buckets: dict[Tuple[int, int], float] = {}
    for t in sorted(trades, key=lambda t: (t.exit_time, t.trade_id)):
        key = (t.exit_time.year, t.exit_time.month)
        buckets[key] = buckets.get(key, 0.0) + t.pnl
    out: List[MonthlyReturn] = []
    equity = initial_capital
    for (year, month), pnl in sorted(buckets.items()):
        pct = pnl / equity * 100.0 if equity > 0 else 0.0
        out.append(MonthlyReturn(year=year, month=month, pnl=pnl, return_pct=pct))
        equity += pnl
    return out


# -------- Public API --------
def analyze(
    trades: Sequence[BacktestTrade],
    equity_curve: Sequence[BacktestEquityPoint],
    initial_capital: float,
    timeframe: Timeframe = Timeframe.H1,
    *,
    risk_free_rate: float = 0.0,
    market_close: pd.Series | None = None,
    bars_in_market: int = 0,
    max_leverage: float = 0.0,
) -> Tuple[
    BacktestPerformanceMetrics,
    BacktestStatistics,
    List[DrawdownPoint],
    List[MonthlyReturn],
]:
    """
    Compute performance metrics and statistics.

    Pure: depends only on the arguments. Sharpe/Sortino use per-bar equity
    returns annualized with the timeframe's periods per year and population
    standard deviation; both are 0 when the deviation is 0. Max drawdown is
    a fraction in [0, 1].
    """
    equity = _equity_series(equity_curve)
    dd, max_dd = _drawdown(equity, initial_capital)
    drawdown_points = [
        DrawdownPoint(timestamp=ts, drawdown=float(v)) for ts, v in dd.items()
    ]
    months = monthly_returns(trades, initial_capital)

    if not trades:
        logger.debug("[metrics] no trades; zeroed metrics")
        return (
            BacktestPerformanceMetrics(max_drawdown=max_dd),
            BacktestStatistics(max_leverage=max_leverage),
            drawdown_points,
            months,
        )

    periods = timeframe.periods_per_year
    rets = _to_returns(equity, initial_capital)
    rf_per_period = float(risk_free_rate) / float(periods)
    if rf_per_period != 0.0:
        rets = rets - rf_per_period
    mean = float(rets.mean()) if len(rets) else 0.0
    std = float(rets.std(ddof=0)) if len(rets) else 0.0
    ann_mean = mean * periods
    ann_std = std * math.sqrt(periods)
    sharpe = ann_mean / ann_std if ann_std > 0 else 0.0
    neg = rets[rets < 0]
    downs = float(np.sqrt(np.mean(np.square(neg)))) if len(neg) else 0.0
    sortino = ann_mean / (downs * math.sqrt(periods)) if downs > 0 else 0.0

    pnls = np.array([t.pnl for t in trades], dtype=float)
    wins = pnls[pnls > 0]
    losses = pnls[pnls <= 0]
    n = len(pnls)
    win_rate = len(wins) / n
    avg_win = float(wins.mean()) if len(wins) else 0.0
    avg_loss = float(losses.mean()) if len(losses) else 0.0
    gross_profit = float(wins.sum())
    gross_loss = float(losses.sum())
    expectancy = win_rate * avg_win + (1 - win_rate) * avg_loss
    total_pnl = float(pnls.sum())
    total_return = total_pnl / initial_capital * 100.0

    span_days = 0.0
    if len(equity) >= 2:
        span_days = (equity.index[-1] - equity.index[0]).total_seconds() / 86400.0
    if span_days > 0:
        years = max(span_days / 365.25, 1.0 / 12.0)
        growth = 1.0 + total_return / 100.0
        annualized = (growth ** (1.0 / years) - 1.0) * 100.0 if growth > 0 else -100.0
        trades_per_month = n / max(span_days / _DAYS_PER_MONTH, 1.0)
    else:
        annualized = total_return
        trades_per_month = float(n)

    max_w, max_l = streaks(trades)
    holding = [t.duration.total_seconds() / 3600.0 for t in trades]
    correlation = 0.0
    if market_close is not None and len(equity) > 2:
        mkt = market_close.astype(float).reindex(equity.index).pct_change().fillna(0.0)
        if float(mkt.std(ddof=0)) > 0 and std > 0:
            correlation = float(np.corrcoef(rets.to_numpy(), mkt.to_numpy())[0, 1])
            if not math.isfinite(correlation):
                correlation = 0.0

    performance = BacktestPerformanceMetrics(
        total_return_pct=total_return,
        annualized_return_pct=annualized,
        total_pnl=total_pnl,
        total_trades=n,
        winning_trades=int(len(wins)),
        losing_trades=int(len(losses)),
        win_rate=win_rate,
        average_win=avg_win,
        average_loss=avg_loss,
        gross_profit=gross_profit,
        gross_loss=gross_loss,
        profit_factor=profit_factor(gross_profit, gross_loss),
        expectancy=expectancy,
        sharpe_ratio=sharpe,
        sortino_ratio=sortino,
        volatility=ann_std,
        max_drawdown=max_dd,
        trades_per_month=trades_per_month,
    )
    statistics = BacktestStatistics(
        calmar_ratio=min(annualized / 100.0 / max_dd, 100.0) if max_dd > 0 else 0.0,
        recovery_factor=total_pnl / (max_dd * initial_capital) if max_dd > 0 else 0.0,
        payoff_ratio=avg_win / abs(avg_loss) if (avg_win > 0 and avg_loss < 0) else 0.0,
        max_consecutive_wins=max_w,
        max_consecutive_losses=max_l,
        largest_win=float(pnls.max()) if len(wins) else 0.0,
        largest_loss=float(pnls.min()) if len(losses) else 0.0,
        average_holding_hours=float(np.mean(holding)),
        exposure=bars_in_market / len(equity) if len(equity) else 0.0,
        market_correlation=correlation,
        max_leverage=max_leverage,
        forced_closes=sum(1 for t in trades if t.forced_close),
    )

    logger.debug(
        "[metrics] n={} win={:.3f} pf={} ret={:.3f}% sharpe={:.3f} sortino={:.3f} maxDD={:.4f}",
        n,
        win_rate,
        performance.profit_factor,
        total_return,
        sharpe,
        sortino,
        max_dd,
    )
    return performance, statistics, drawdown_points, months


__all__ = ["analyze", "profit_factor", "streaks", "monthly_returns"]
