"""
A/B tests between two strategy variants.

An `ABTest` moves `scheduled -> running -> completed`. While running, each
signal key is allocated to one arm by `SplitAllocator`, and closed trades
accumulate per arm under that arm's lock. Significance is 1 - p from a
Welch two-sample t-test on per-trade returns, computed only once both arms
hold at least `minimum_trades`; before that it is 0 and there is no winner.
The test completes when its duration elapses or both arms reach
`minimum_trades`, after which it rejects writes with `ABTestClosedError`.
"""

from __future__ import annotations

import math
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Set, Tuple

import numpy as np
from loguru import logger
from scipy import stats

from stratlab.abtest.allocator import SplitAllocator, signal_key
from stratlab.abtest.models import (
    ABArm,
    ABTestConfiguration,
    ABTestPerformance,
    ABTestResult,
    ABTestStatus,
    ABTestWinner,
)
from stratlab.backtest.engine import BacktestEngine
from stratlab.backtest.model import BacktestRequest, BacktestResult, BacktestTrade
from stratlab.core.cancellation import CancellationToken, check_cancelled
from stratlab.core.exceptions import ABTestClosedError
from stratlab.data.source import MarketDataSource
from stratlab.evolution.tracker import EvolutionTracker
from stratlab.settings import EngineSettings, get_settings
from stratlab.telemetry import record_run, start_span

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Arm:
    """Append-only trade accumulator for one arm."""

    def __init__(self, initial_capital: float) -> None:
        self.lock = threading.Lock()
        self.initial_capital = initial_capital
        self.pnls: List[float] = []
        self.returns: List[float] = []
        self.hold_hours: List[float] = []

    def append(self, trade: BacktestTrade) -> None:
        with self.lock:
            self.pnls.append(trade.pnl)
            self.returns.append(trade.pnl_pct)
            self.hold_hours.append(trade.duration.total_seconds() / 3600.0)

    def count(self) -> int:
        with self.lock:
            return len(self.pnls)

    def snapshot(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        with self.lock:
            return (
                np.asarray(self.pnls, dtype=float),
                np.asarray(self.returns, dtype=float),
                np.asarray(self.hold_hours, dtype=float),
            )

    def performance(self) -> ABTestPerformance:
        pnls, rets, holds = self.snapshot()
        n = len(pnls)
        if n == 0:
            return ABTestPerformance()
        equity = self.initial_capital + np.cumsum(pnls)
        peak = np.maximum.accumulate(np.r_[self.initial_capital, equity])[1:]
        dd = float(np.max((peak - equity) / peak)) if n else 0.0
        std = float(rets.std(ddof=0))
        return ABTestPerformance(
            trades=n,
            win_rate=float(np.count_nonzero(pnls > 0)) / n,
            total_pnl=float(pnls.sum()),
            mean_return_pct=float(rets.mean()),
            sharpe_ratio=float(rets.mean()) / std if std > 0 else 0.0,
            max_drawdown=min(max(dd, 0.0), 1.0),
            average_hold_hours=float(holds.mean()),
        )


def welch_significance(a: np.ndarray, b: np.ndarray) -> Tuple[float, float | None]:
    """(1 - p, p) of a Welch t-test; (0, None) when the test is undefined."""
    if len(a) < 2 or len(b) < 2:
        return 0.0, None
    res = stats.ttest_ind(a, b, equal_var=False)
    p = float(res.pvalue)
    if not math.isfinite(p):
        # identical constant samples give nan
        return 0.0, None
    return min(max(1.0 - p, 0.0), 1.0), p


class ABTest:
    """One running comparison; safe to feed from several threads."""

    def __init__(
        self,
        config: ABTestConfiguration,
        clock: Clock | None = None,
        test_id: str | None = None,
    ) -> None:
        self.config = config
        self.test_id = test_id or uuid.uuid4().hex[:12]
        self.allocator = SplitAllocator(config.split_ratio, salt=config.test_name)
        self._clock = clock or _utcnow
        self._state_lock = threading.Lock()
        self._status = ABTestStatus.SCHEDULED
        self._start: datetime | None = None
        self._end: datetime | None = None
        self._arms: Dict[ABArm, _Arm] = {
            ABArm.A: _Arm(config.initial_capital),
            ABArm.B: _Arm(config.initial_capital),
        }
        self._final: ABTestResult | None = None

    @property
    def status(self) -> ABTestStatus:
        with self._state_lock:
            return self._status

    def start(self, now: datetime | None = None) -> None:
        with self._state_lock:
            if self._status is not ABTestStatus.SCHEDULED:
                raise ABTestClosedError(f"test {self.test_id} already {self._status.value}")
            self._start = now or self._clock()
            self._end = self._start + self.config.duration
            self._status = ABTestStatus.RUNNING
        logger.info(
            "[abtest] {} started: {} vs {} split={} until {}",
            self.config.test_name,
            self.config.strategy_a.name,
            self.config.strategy_b.name,
            self.config.split_ratio,
            self._end,
        )

    def allocate(self, key: str) -> ABArm:
        return self.allocator.arm_for(key)

    def record_trade(self, arm: ABArm, trade: BacktestTrade, now: datetime | None = None) -> None:
        """Append a closed trade to `arm`; may complete the test."""
        self.refresh(now)
        with self._state_lock:
            if self._status is not ABTestStatus.RUNNING:
                raise ABTestClosedError(f"test {self.test_id} is {self._status.value}")
            self._arms[arm].append(trade)
        self.refresh(now)

    def counts(self) -> Tuple[int, int]:
        return self._arms[ABArm.A].count(), self._arms[ABArm.B].count()

    def refresh(self, now: datetime | None = None) -> ABTestStatus:
        """Complete the test if its duration elapsed or both arms have enough trades."""
        with self._state_lock:
            if self._status is not ABTestStatus.RUNNING:
                return self._status
            now = now or self._clock()
            a, b = self.counts()
            enough = a >= self.config.minimum_trades and b >= self.config.minimum_trades
            if enough or (self._end is not None and now >= self._end):
                self._final = self._evaluate(ABTestStatus.COMPLETED, now)
                self._status = ABTestStatus.COMPLETED
                logger.info(
                    "[abtest] {} completed trades=({}, {}) winner={} significance={:.4f}",
                    self.config.test_name,
                    a,
                    b,
                    self._final.winner.value,
                    self._final.statistical_significance,
                )
            return self._status

    def conclude(self, now: datetime | None = None) -> ABTestResult:
        """Force completion, e.g. when historical data runs out."""
        with self._state_lock:
            if self._status is ABTestStatus.COMPLETED and self._final is not None:
                return self._final
            if self._status is ABTestStatus.SCHEDULED:
                raise ABTestClosedError(f"test {self.test_id} was never started")
            self._final = self._evaluate(ABTestStatus.COMPLETED, now or self._clock())
            self._status = ABTestStatus.COMPLETED
            return self._final

    def _evaluate(self, status: ABTestStatus, now: datetime) -> ABTestResult:
        arm_a, arm_b = self._arms[ABArm.A], self._arms[ABArm.B]
        _, rets_a, _ = arm_a.snapshot()
        _, rets_b, _ = arm_b.snapshot()
        minimum = self.config.minimum_trades
        significance, p_value = 0.0, None
        winner = ABTestWinner.NO_SIGNIFICANT_DIFFERENCE
        if len(rets_a) >= minimum and len(rets_b) >= minimum:
            significance, p_value = welch_significance(rets_a, rets_b)
            if significance > self.config.confidence_level:
                winner = (
                    ABTestWinner.STRATEGY_A
                    if rets_a.mean() > rets_b.mean()
                    else ABTestWinner.STRATEGY_B
                )
        end = self._end
        if status is ABTestStatus.COMPLETED and end is not None:
            end = min(end, now)
        return ABTestResult(
            test_id=self.test_id,
            configuration=self.config,
            status=status,
            start_date=self._start,
            end_date=end,
            performance_a=arm_a.performance(),
            performance_b=arm_b.performance(),
            winner=winner,
            statistical_significance=significance,
            p_value=p_value,
        )

    def result(self) -> ABTestResult:
        """Current snapshot; the final result once completed."""
        with self._state_lock:
            if self._final is not None:
                return self._final
            return self._evaluate(self._status, self._clock())


class ABTestingEngine:
    """Creates and tracks A/B tests; optionally records outcomes as strategy evolution."""

    def __init__(
        self,
        data_source: MarketDataSource,
        settings: EngineSettings | None = None,
        tracker: EvolutionTracker | None = None,
        clock: Clock | None = None,
        backtester: BacktestEngine | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.backtester = backtester or BacktestEngine(data_source, self.settings)
        self.tracker = tracker
        self._clock = clock or _utcnow
        self._tests: Dict[str, ABTest] = {}
        self._reported: Set[str] = set()
        self._lock = threading.Lock()

    def create_test(self, config: ABTestConfiguration, *, start: bool = True) -> ABTest:
        test = ABTest(config, clock=self._clock)
        with self._lock:
            self._tests[test.test_id] = test
        if start:
            test.start()
        return test

    def get(self, test_id: str) -> ABTest:
        with self._lock:
            return self._tests[test_id]

    def active_tests(self) -> List[ABTest]:
        with self._lock:
            tests = list(self._tests.values())
        return [t for t in tests if t.status is ABTestStatus.RUNNING]

    def refresh_all(self) -> List[ABTestResult]:
        """Advance every test; returns those completed since the last call, once each."""
        with self._lock:
            pending = [t for t in self._tests.values() if t.test_id not in self._reported]
        done = []
        for test in pending:
            if test.refresh() is ABTestStatus.COMPLETED:
                result = test.result()
                if self._track(result):
                    done.append(result)
        return done

    def _track(self, result: ABTestResult) -> bool:
        """Report a completed test once; False if it was already reported."""
        with self._lock:
            if result.test_id in self._reported:
                return False
            self._reported.add(result.test_id)
        if self.tracker is not None and result.winner is not ABTestWinner.NO_SIGNIFICANT_DIFFERENCE:
            self.tracker.record_ab_result(result)
        return True

    def run_historical(
        self,
        config: ABTestConfiguration,
        request: BacktestRequest,
        cancel: CancellationToken | None = None,
    ) -> ABTestResult:
        """
        Replay both arms over the same historical window.

        Both strategies are backtested concurrently; each closed trade is
        offered to the test in exit-time order and kept only when its entry
        signal key allocates to the arm that produced it. Bar timestamps act
        as the test clock, and the test is concluded when the data ends.
        """
        attrs = {"test": config.test_name, "symbol": request.resolved_symbol}
        with start_span("abtest.run_historical", attrs):
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="abtest") as pool:
                fut_a = pool.submit(
                    self.backtester.run, request.with_strategy(config.strategy_a), None, cancel
                )
                fut_b = pool.submit(
                    self.backtester.run, request.with_strategy(config.strategy_b), None, cancel
                )
                res_a: BacktestResult = fut_a.result()
                res_b: BacktestResult = fut_b.result()

            test = ABTest(config, clock=self._clock)
            with self._lock:
                self._tests[test.test_id] = test
            test.start(now=_first_bar(res_a, res_b))

            events = [(t.exit_time, ABArm.A, t) for t in res_a.trades]
            events += [(t.exit_time, ABArm.B, t) for t in res_b.trades]
            events.sort(key=lambda e: (e[0], e[1].value, e[2].trade_id))
            for exit_time, arm, trade in events:
                check_cancelled(cancel)
                now = exit_time.to_pydatetime()
                if test.refresh(now) is ABTestStatus.COMPLETED:
                    break
                if test.allocate(signal_key(trade.symbol, trade.entry_time)) is not arm:
                    continue
                test.record_trade(arm, trade, now=now)

            result = test.conclude(now=_last_bar(res_a, res_b))
            self._track(result)
            record_run("abtest", result.winner.value, attrs)
        return result


def _first_bar(*results: BacktestResult) -> datetime:
    return min(r.equity_curve[0].timestamp for r in results).to_pydatetime()


def _last_bar(*results: BacktestResult) -> datetime:
    return max(r.equity_curve[-1].timestamp for r in results).to_pydatetime()


__all__ = ["ABTest", "ABTestingEngine", "welch_significance"]
