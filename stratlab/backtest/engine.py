"""
Backtesting engine: load bars, generate signals, simulate, compute metrics.

Every `run` builds its own indicator cache, signal generator and simulator;
nothing is shared between runs, so one engine can serve concurrent
requests from a thread pool.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Sequence

import pandas as pd
from loguru import logger

from stratlab.backtest import metrics as perf
from stratlab.backtest.model import BacktestRequest, BacktestResult, Costs
from stratlab.backtest.signals import SignalGenerator
from stratlab.backtest.simulator import TradeSimulator
from stratlab.core.cancellation import CancellationToken, check_cancelled
from stratlab.core.exceptions import (
    CancellationRequestedError,
    DataUnavailableError,
    StratLabError,
)
from stratlab.data.bars import validate_bars
from stratlab.data.source import MarketDataSource
from stratlab.logging_utils import logging_context
from stratlab.settings import EngineSettings, get_settings
from stratlab.strats.conditions import IndicatorCache
from stratlab.strats.strategy import TradingStrategy, validate_strategy
from stratlab.telemetry import record_run, start_span


class BacktestPhase(str, Enum):
    IDLE = "idle"
    LOADING_DATA = "loading_data"
    GENERATING_SIGNALS = "generating_signals"
    SIMULATING = "simulating"
    COMPUTING_METRICS = "computing_metrics"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BacktestProgress:
    phase: BacktestPhase
    fraction: float
    message: str = ""


ProgressCallback = Callable[[BacktestProgress], None]

# overall progress window per phase
_PHASE_SPAN: Dict[BacktestPhase, tuple[float, float]] = {
    BacktestPhase.LOADING_DATA: (0.0, 0.1),
    BacktestPhase.GENERATING_SIGNALS: (0.1, 0.2),
    BacktestPhase.SIMULATING: (0.2, 0.9),
    BacktestPhase.COMPUTING_METRICS: (0.9, 1.0),
}


class _Reporter:
    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self._last = 0.0

    def __call__(self, phase: BacktestPhase, within: float = 0.0, message: str = "") -> None:
        if phase in _PHASE_SPAN:
            lo, hi = _PHASE_SPAN[phase]
            fraction = lo + (hi - lo) * min(max(within, 0.0), 1.0)
        elif phase is BacktestPhase.DONE:
            fraction = 1.0
        else:
            fraction = self._last
        self._last = max(self._last, fraction)
        if self._callback is not None:
            self._callback(BacktestProgress(phase=phase, fraction=self._last, message=message))


class BacktestTask:
    """Handle for a submitted run: future, latest progress and cancellation."""

    def __init__(self, request: BacktestRequest) -> None:
        self.request = request
        self.run_id = uuid.uuid4().hex[:12]
        self.token = CancellationToken()
        self._lock = threading.Lock()
        self._progress = BacktestProgress(BacktestPhase.IDLE, 0.0)
        self.future: Future[BacktestResult] | None = None

    def _update(self, progress: BacktestProgress) -> None:
        with self._lock:
            self._progress = progress

    @property
    def progress(self) -> BacktestProgress:
        with self._lock:
            return self._progress

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.token.cancel(reason)

    def done(self) -> bool:
        return self.future is not None and self.future.done()

    def result(self, timeout: float | None = None) -> BacktestResult:
        if self.future is None:
            raise RuntimeError(f"backtest {self.run_id} was never submitted")
        return self.future.result(timeout=timeout)


class BacktestEngine:
    """
    Runs `BacktestRequest`s against a `MarketDataSource`.

    Example:
        engine = BacktestEngine(InMemoryDataSource({("EURUSD", Timeframe.H1): df}))
        result = engine.run(BacktestRequest(strategy=rsi_mean_reversion()))
    """

    def __init__(
        self,
        data_source: MarketDataSource,
        settings: EngineSettings | None = None,
    ) -> None:
        self.data_source = data_source
        self.settings = settings or get_settings()
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    # -------- Lifecycle --------
    def _pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.settings.max_workers,
                    thread_name_prefix="backtest",
                )
            return self._executor

    def close(self) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    def __enter__(self) -> "BacktestEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def request_for(self, strategy: TradingStrategy, **kwargs) -> BacktestRequest:
        """Build a request with capital and costs taken from settings."""
        kwargs.setdefault("initial_capital", self.settings.initial_capital)
        kwargs.setdefault("costs", Costs.from_settings(self.settings))
        return BacktestRequest(strategy=strategy, **kwargs)

    # -------- Runs --------
    def load(self, request: BacktestRequest) -> pd.DataFrame:
        strategy = request.strategy
        bars = self.data_source.load_bars(
            request.resolved_symbol, strategy.timeframe, request.start, request.end
        )
        if bars is None or len(bars) == 0:
            raise DataUnavailableError(
                f"no bars for {request.resolved_symbol} {strategy.timeframe.value} "
                f"in [{request.start}, {request.end}]"
            )
        bars = validate_bars(bars)
        needed = strategy.warmup() + 2
        if len(bars) < needed:
            raise DataUnavailableError(
                f"{len(bars)} bars available, {needed} needed for warm-up"
            )
        return bars

    def run(
        self,
        request: BacktestRequest,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
        *,
        run_id: str | None = None,
    ) -> BacktestResult:
        """
        Execute one backtest synchronously.

        Raises:
            InvalidStrategyError: strategy fails validation.
            DataUnavailableError: empty window or not enough bars for warm-up.
            CancellationRequestedError: `cancel` was triggered; no result.
        """
        run_id = run_id or uuid.uuid4().hex[:12]
        report = _Reporter(progress)
        strategy = request.strategy
        symbol = request.resolved_symbol
        attrs = {
            "run_id": run_id,
            "strategy": strategy.name,
            "symbol": symbol,
            "timeframe": strategy.timeframe.value,
        }
        with logging_context(run_id=run_id), start_span("backtest.run", attrs):
            try:
                validate_strategy(strategy)
                report(BacktestPhase.LOADING_DATA, 0.0)
                bars = self.load(request)
                report(BacktestPhase.LOADING_DATA, 1.0, f"{len(bars)} bars")
                check_cancelled(cancel)

                report(BacktestPhase.GENERATING_SIGNALS, 0.0)
                cache = IndicatorCache(bars, strategy.parameters)
                generator = SignalGenerator(strategy, bars, symbol, cache=cache)
                report(BacktestPhase.GENERATING_SIGNALS, 1.0)
                check_cancelled(cancel)

                report(BacktestPhase.SIMULATING, 0.0)
                simulator = TradeSimulator(
                    strategy,
                    bars,
                    symbol,
                    request.initial_capital,
                    request.costs,
                    generator=generator,
                )
                outcome = simulator.run(
                    progress=lambda f: report(BacktestPhase.SIMULATING, f),
                    cancel=cancel,
                )
                check_cancelled(cancel)

                report(BacktestPhase.COMPUTING_METRICS, 0.0)
                performance, statistics, drawdowns, months = perf.analyze(
                    outcome.trades,
                    outcome.equity_curve,
                    request.initial_capital,
                    strategy.timeframe,
                    risk_free_rate=self.settings.risk_free_rate,
                    market_close=bars["close"],
                    bars_in_market=outcome.bars_in_market,
                    max_leverage=outcome.max_leverage,
                )
                result = BacktestResult(
                    strategy=strategy,
                    symbol=symbol,
                    initial_capital=request.initial_capital,
                    bars_processed=len(bars),
                    performance=performance,
                    statistics=statistics,
                    trades=tuple(outcome.trades),
                    equity_curve=tuple(outcome.equity_curve),
                    drawdown_curve=tuple(drawdowns),
                    monthly_returns=tuple(months),
                )
            except CancellationRequestedError:
                report(BacktestPhase.CANCELLED)
                record_run("backtest", "cancelled", attrs)
                logger.info("[backtest] {} cancelled", strategy.name)
                raise
            except StratLabError as exc:
                report(BacktestPhase.FAILED, message=str(exc))
                record_run("backtest", "failed", attrs)
                logger.warning("[backtest] {} failed: {}", strategy.name, exc)
                raise
            except Exception:
                report(BacktestPhase.FAILED)
                record_run("backtest", "error", attrs)
                logger.exception("[backtest] {} crashed", strategy.name)
                raise

            report(BacktestPhase.DONE, 1.0)
            record_run("backtest", "done", attrs)
            p = performance
            logger.info(
                "[backtest] {} {} bars={} trades={} ret={:.2f}% win={:.2f} sharpe={:.2f} maxDD={:.4f}",
                strategy.name,
                symbol,
                len(bars),
                p.total_trades,
                p.total_return_pct,
                p.win_rate,
                p.sharpe_ratio,
                p.max_drawdown,
            )
            return result

    def submit(self, request: BacktestRequest) -> BacktestTask:
        """Run in the engine's thread pool; poll or cancel through the task."""
        task = BacktestTask(request)
        task.future = self._pool().submit(
            self.run, request, task._update, task.token, run_id=task.run_id
        )
        return task

    async def run_async(
        self,
        request: BacktestRequest,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> BacktestResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._pool(), lambda: self.run(request, progress, cancel)
        )

    def compare_strategies(
        self,
        strategies: Sequence[TradingStrategy],
        request: BacktestRequest,
        cancel: CancellationToken | None = None,
    ) -> List[BacktestResult]:
        """
        Backtest several strategies over the same request window.

        Results come back in input order; a strategy that fails is logged and
        left out.
        """
        futures = {
            self._pool().submit(self.run, request.with_strategy(s), None, cancel): i
            for i, s in enumerate(strategies)
        }
        results: Dict[int, BacktestResult] = {}
        for fut in as_completed(futures):
            i = futures[fut]
            try:
                results[i] = fut.result()
            except CancellationRequestedError:
                raise
            except StratLabError:
                logger.exception("[backtest] compare: {} failed", strategies[i].name)
        return [results[i] for i in sorted(results)]


__all__ = [
    "BacktestPhase",
    "BacktestProgress",
    "ProgressCallback",
    "BacktestTask",
    "BacktestEngine",
]
