"""
Bounded neighborhood search over a strategy's tunable values.

The search is coordinate-wise greedy: each round walks the dimensions (risk
stop-loss / take-profit / position size, then every parameter spec),
backtests a small grid of values for that one dimension in a thread pool,
and keeps the best candidate that satisfies the constraints and beats the
current score. It stops after the configured number of rounds or when a
full round finds nothing better.
"""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from stratlab.backtest.engine import BacktestEngine
from stratlab.backtest.model import BacktestPerformanceMetrics, BacktestRequest, BacktestResult, Costs
from stratlab.core.cancellation import CancellationToken, check_cancelled
from stratlab.core.exceptions import CancellationRequestedError
from stratlab.data.source import MarketDataSource
from stratlab.optimize.models import (
    BacktestComparison,
    OptimizationGoal,
    OptimizationRecommendation,
    OptimizationRequest,
    OptimizationResult,
    StrategyImprovements,
)
from stratlab.settings import EngineSettings, get_settings
from stratlab.strats.strategy import RISK_BOUNDS, TradingStrategy
from stratlab.telemetry import record_run, start_span

# multiplier (min, max) applied to the base risk value, per goal
GOAL_RISK_RANGES: Dict[OptimizationGoal, Dict[str, Tuple[float, float]]] = {
    OptimizationGoal.MAXIMIZE_PROFIT: {
        "stop_loss_pct": (0.5, 3.0),
        "take_profit_pct": (1.0, 5.0),
        "position_size_pct": (1.0, 3.0),
    },
    OptimizationGoal.MINIMIZE_DRAWDOWN: {
        "stop_loss_pct": (0.3, 1.5),
        "take_profit_pct": (0.5, 2.0),
        "position_size_pct": (0.5, 1.5),
    },
    OptimizationGoal.MAXIMIZE_SHARPE_RATIO: {
        "stop_loss_pct": (0.5, 2.0),
        "take_profit_pct": (1.0, 3.0),
        "position_size_pct": (0.5, 2.0),
    },
    OptimizationGoal.BALANCED_RISK_REWARD: {
        "stop_loss_pct": (0.5, 2.0),
        "take_profit_pct": (1.0, 3.0),
        "position_size_pct": (0.75, 1.5),
    },
    OptimizationGoal.MINIMIZE_VOLATILITY: {
        "stop_loss_pct": (0.3, 1.0),
        "take_profit_pct": (0.5, 1.5),
        "position_size_pct": (0.5, 1.0),
    },
}

_PF_CAP = 10.0
_LOW_CONFIDENCE = 0.2
_RISK_PREFIX = "risk."

OptimizerProgress = Callable[[float], None]


def goal_score(goal: OptimizationGoal, p: BacktestPerformanceMetrics) -> float:
    """Higher is better for every goal."""
    if goal is OptimizationGoal.MAXIMIZE_PROFIT:
        return p.total_return_pct
    if goal is OptimizationGoal.MINIMIZE_DRAWDOWN:
        return -p.max_drawdown
    if goal is OptimizationGoal.MAXIMIZE_SHARPE_RATIO:
        return p.sharpe_ratio
    if goal is OptimizationGoal.MINIMIZE_VOLATILITY:
        return -p.volatility
    pf = min(p.profit_factor, _PF_CAP)
    return p.sharpe_ratio * pf / (1.0 + p.max_drawdown)


def consistency_score(p: BacktestPerformanceMetrics) -> float:
    win = p.win_rate
    pf = min(p.profit_factor / 2.0, 1.0)
    sharpe = min(p.sharpe_ratio / 2.0, 1.0)
    return (win + pf + sharpe) / 3.0


def confidence_for(p: BacktestPerformanceMetrics) -> float:
    sharpe = min(p.sharpe_ratio / 2.0, 1.0)
    drawdown = 1.0 - min(p.max_drawdown, 1.0)
    return float(min(1.0, max(0.0, (sharpe + p.win_rate + drawdown) / 3.0)))


def improvements_between(
    original: BacktestPerformanceMetrics, optimized: BacktestPerformanceMetrics
) -> StrategyImprovements:
    return StrategyImprovements(
        profit_improvement=(optimized.total_return_pct - original.total_return_pct)
        / max(abs(original.total_return_pct), 1.0)
        * 100.0,
        drawdown_reduction=(original.max_drawdown - optimized.max_drawdown)
        / max(original.max_drawdown, 1.0)
        * 100.0,
        sharpe_ratio_improvement=(optimized.sharpe_ratio - original.sharpe_ratio)
        / max(abs(original.sharpe_ratio), 1.0)
        * 100.0,
        win_rate_improvement=(optimized.win_rate - original.win_rate) * 100.0,
        consistency_score=consistency_score(optimized),
    )


def performance_ratio(
    recent: BacktestPerformanceMetrics, baseline: BacktestPerformanceMetrics
) -> float:
    """Recent Sharpe as a fraction of the baseline Sharpe."""
    if baseline.sharpe_ratio <= 0:
        return 1.0 if recent.sharpe_ratio >= baseline.sharpe_ratio else 0.0
    return recent.sharpe_ratio / baseline.sharpe_ratio


def needs_reoptimization(
    recent: BacktestPerformanceMetrics,
    baseline: BacktestPerformanceMetrics,
    threshold: float = 0.8,
) -> bool:
    """True when recent performance has fallen below `threshold` of the baseline."""
    return performance_ratio(recent, baseline) < threshold


@dataclass(frozen=True)
class _Dimension:
    key: str
    values: Tuple[float, ...]


@dataclass
class _Tally:
    evaluated: int = 0
    rejected: int = 0
    failed: int = 0


def _risk_values(
    base_value: float, key: str, bounds: Tuple[float, float], points: int
) -> Tuple[float, ...]:
    lo_b, hi_b = RISK_BOUNDS[key]
    raw = np.linspace(bounds[0], bounds[1], max(2, points)) * base_value
    vals = sorted({round(float(min(hi_b, max(lo_b, v))), 6) for v in raw})
    return tuple(vals)


def _param_values(strategy: TradingStrategy, name: str, points: int) -> Tuple[float, ...]:
    spec = strategy.parameters.get(name)
    unit = spec.step or (spec.maximum - spec.minimum) / 10.0 or 1.0
    half = max(1, points // 2)
    vals = {spec.clamp(spec.value + k * unit) for k in range(-half, half + 1)}
    return tuple(sorted(vals))


def search_dimensions(
    base: TradingStrategy, goal: OptimizationGoal, points: int
) -> List[_Dimension]:
    dims: List[_Dimension] = []
    for key, bounds in GOAL_RISK_RANGES[goal].items():
        dims.append(
            _Dimension(_RISK_PREFIX + key, _risk_values(getattr(base.risk, key), key, bounds, points))
        )
    for name in base.parameters.names():
        dims.append(_Dimension(name, _param_values(base, name, points)))
    return dims


def _apply(strategy: TradingStrategy, key: str, value: float) -> TradingStrategy:
    if key.startswith(_RISK_PREFIX):
        return strategy.with_risk(**{key[len(_RISK_PREFIX):]: value})
    return strategy.with_parameters({key: value})


def _current(strategy: TradingStrategy, key: str) -> float:
    return strategy.tunable_values()[key]


def _impact_text(key: str, before: float, after: float, goal: OptimizationGoal) -> str:
    direction = "Raise" if after > before else "Lower"
    label = key[len(_RISK_PREFIX):] if key.startswith(_RISK_PREFIX) else key
    if label == "stop_loss_pct":
        return f"{direction} stop distance to {after:g}% to better fit {goal.description.lower()}"
    if label == "take_profit_pct":
        return f"{direction} profit target to {after:g}% to capture more of each move"
    if label == "position_size_pct":
        return f"{direction} risk per trade to {after:g}% of equity"
    return f"{direction} {label} from {before:g} to {after:g}"


class OptimizationEngine:
    """
    Searches for a better parameterization of a strategy.

    Each candidate is an independent `BacktestEngine.run`; candidates are
    evaluated in a private thread pool and the winner is chosen by score,
    with ties resolved by candidate order so results are reproducible.
    """

    def __init__(
        self,
        data_source: MarketDataSource,
        settings: EngineSettings | None = None,
        backtester: BacktestEngine | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.backtester = backtester or BacktestEngine(data_source, self.settings)

    def _request(self, req: OptimizationRequest, strategy: TradingStrategy) -> BacktestRequest:
        return BacktestRequest(
            strategy=strategy,
            symbol=req.symbol,
            start=req.start,
            end=req.end,
            initial_capital=req.initial_capital or self.settings.initial_capital,
            costs=req.costs or Costs.from_settings(self.settings),
        )

    def _evaluate(
        self,
        req: OptimizationRequest,
        candidates: Sequence[TradingStrategy],
        pool: ThreadPoolExecutor,
        cancel: CancellationToken | None,
        tally: _Tally,
    ) -> List[Tuple[int, BacktestResult]]:
        futures = {
            pool.submit(self.backtester.run, self._request(req, c), None, cancel): i
            for i, c in enumerate(candidates)
        }
        out: List[Tuple[int, BacktestResult]] = []
        try:
            for fut in as_completed(futures):
                check_cancelled(cancel)
                i = futures[fut]
                try:
                    result = fut.result()
                except CancellationRequestedError:
                    raise
                except Exception:
                    tally.failed += 1
                    logger.exception("[optimize] candidate {} failed", i)
                    continue
                tally.evaluated += 1
                if result.performance.total_trades == 0:
                    tally.rejected += 1
                    continue
                violations = req.constraints.violations(result)
                if violations:
                    tally.rejected += 1
                    logger.debug("[optimize] candidate {} rejected: {}", i, "; ".join(violations))
                    continue
                out.append((i, result))
        except CancellationRequestedError:
            for fut in futures:
                fut.cancel()
            raise
        return sorted(out, key=lambda pair: pair[0])

    def optimize(
        self,
        request: OptimizationRequest,
        progress: OptimizerProgress | None = None,
        cancel: CancellationToken | None = None,
    ) -> OptimizationResult:
        """
        Run the search and return an immutable result.

        When no candidate beats the baseline the baseline strategy itself is
        returned with zero improvements and low confidence.

        Raises:
            CancellationRequestedError: `cancel` was triggered.
            InvalidStrategyError / DataUnavailableError: the baseline run failed.
        """
        goal = request.goal
        base = request.strategy
        rounds = request.rounds or self.settings.optimization_rounds
        attrs = {"strategy": base.name, "goal": goal.value, "rounds": rounds}
        with start_span("optimize.run", attrs):
            baseline = self.backtester.run(self._request(request, base), cancel=cancel)
            base_score = goal_score(goal, baseline.performance)
            base_ok = not request.constraints.violations(baseline)
            logger.info(
                "[optimize] {} goal={} baseline score={:.4f} feasible={}",
                base.name,
                goal.value,
                base_score,
                base_ok,
            )

            tally = _Tally()
            best_strategy, best_result, best_score = base, baseline, base_score
            dims = search_dimensions(base, goal, request.grid_points)
            total_steps = max(1, rounds * len(dims))
            step = 0
            with ThreadPoolExecutor(
                max_workers=self.settings.max_workers, thread_name_prefix="optimize"
            ) as pool:
                for round_no in range(1, rounds + 1):
                    improved = False
                    for dim in dims:
                        check_cancelled(cancel)
                        current = _current(best_strategy, dim.key)
                        candidates = [
                            _apply(best_strategy, dim.key, v)
                            for v in dim.values
                            if not math.isclose(v, current)
                        ]
                        scored = self._evaluate(request, candidates, pool, cancel, tally)
                        for _, result in scored:
                            score = goal_score(goal, result.performance)
                            if score > best_score + 1e-12:
                                best_strategy, best_result, best_score = result.strategy, result, score
                                improved = True
                        step += 1
                        if progress is not None:
                            progress(step / total_steps)
                    logger.debug(
                        "[optimize] round {} best score={:.4f} improved={}", round_no, best_score, improved
                    )
                    if not improved:
                        break

            if best_strategy is base:
                result = self._baseline_result(request, baseline, tally)
                record_run("optimize", "baseline", attrs)
            else:
                result = self._improved_result(request, baseline, best_result, base_score, best_score, tally)
                record_run("optimize", "improved", attrs)
        logger.info(
            "[optimize] {} done evaluated={} rejected={} failed={} improved={}",
            base.name,
            tally.evaluated,
            tally.rejected,
            tally.failed,
            result.improved,
        )
        return result

    def _baseline_result(
        self, request: OptimizationRequest, baseline: BacktestResult, tally: _Tally
    ) -> OptimizationResult:
        p = baseline.performance
        if tally.evaluated and tally.rejected == tally.evaluated:
            why = "every candidate violated the constraints"
        elif tally.evaluated == 0:
            why = "no candidate could be evaluated"
        else:
            why = "no feasible candidate beat the baseline"
        return OptimizationResult(
            original_strategy=request.strategy,
            optimized_strategy=request.strategy,
            goal=request.goal,
            recommendations=(),
            improvements=StrategyImprovements(consistency_score=consistency_score(p)),
            comparison=BacktestComparison(p, p, 0.0),
            confidence=min(confidence_for(p), _LOW_CONFIDENCE),
            candidates_evaluated=tally.evaluated,
            candidates_rejected=tally.rejected,
            candidates_failed=tally.failed,
            explanation=f"Kept the current parameters: {why} for goal '{request.goal.description}'.",
        )

    def _improved_result(
        self,
        request: OptimizationRequest,
        baseline: BacktestResult,
        best: BacktestResult,
        base_score: float,
        best_score: float,
        tally: _Tally,
    ) -> OptimizationResult:
        confidence = confidence_for(best.performance)
        before = request.strategy.tunable_values()
        after = best.strategy.tunable_values()
        recs = [
            OptimizationRecommendation(
                parameter=key,
                original_value=before[key],
                recommended_value=after[key],
                impact=_impact_text(key, before[key], after[key], request.goal),
                confidence=confidence,
            )
            for key in before
            if not math.isclose(before[key], after[key])
        ]
        recs.sort(key=lambda r: r.relative_change, reverse=True)
        improvements = improvements_between(baseline.performance, best.performance)
        pct = (best_score - base_score) / max(abs(base_score), 1.0) * 100.0
        return OptimizationResult(
            original_strategy=request.strategy,
            optimized_strategy=best.strategy,
            goal=request.goal,
            recommendations=tuple(recs),
            improvements=improvements,
            comparison=BacktestComparison(baseline.performance, best.performance, pct),
            confidence=confidence,
            candidates_evaluated=tally.evaluated,
            candidates_rejected=tally.rejected,
            candidates_failed=tally.failed,
            explanation=(
                f"{len(recs)} change(s) improve '{request.goal.description}' "
                f"score from {base_score:.4f} to {best_score:.4f}."
            ),
        )

    def reoptimize_if_degraded(
        self,
        request: OptimizationRequest,
        recent: BacktestPerformanceMetrics,
        baseline: BacktestPerformanceMetrics,
        threshold: float = 0.8,
        cancel: CancellationToken | None = None,
    ) -> Optional[OptimizationResult]:
        """Optimize `request` only when recent Sharpe has decayed below `threshold` of the baseline."""
        ratio = performance_ratio(recent, baseline)
        if ratio >= threshold:
            logger.debug(
                "[optimize] {} holding up ratio={:.2f}; no re-optimization", request.strategy.name, ratio
            )
            return None
        logger.info(
            "[optimize] {} degraded ratio={:.2f} < {:.2f}; re-optimizing",
            request.strategy.name,
            ratio,
            threshold,
        )
        return self.optimize(request, cancel=cancel)

    def optimize_queue(
        self,
        requests: Iterable[OptimizationRequest],
        cancel: CancellationToken | None = None,
    ) -> List[OptimizationResult]:
        """Process queued requests in order; a failing request is logged and skipped."""
        results: List[OptimizationResult] = []
        for req in requests:
            check_cancelled(cancel)
            try:
                results.append(self.optimize(req, cancel=cancel))
            except CancellationRequestedError:
                raise
            except Exception:
                logger.exception("[optimize] queued request for {} failed", req.strategy.name)
        return results


__all__ = [
    "GOAL_RISK_RANGES",
    "OptimizationEngine",
    "goal_score",
    "consistency_score",
    "confidence_for",
    "improvements_between",
    "performance_ratio",
    "needs_reoptimization",
    "search_dimensions",
]
