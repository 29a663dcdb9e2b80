"""
Append-only version history of strategy parameter changes.

Versions are drawn from a per-strategy monotonic counter: a version handed
out by `reserve_version` (e.g. for a candidate that was later discarded) is
never handed out again. When a manifest path is given every record is also
appended to a JSONL file.
"""

from __future__ import annotations

import json
import math
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Mapping, Optional, Tuple

from loguru import logger

if TYPE_CHECKING:
    from stratlab.abtest.models import ABTestResult
    from stratlab.optimize.models import OptimizationResult


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EvolutionTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    PERFORMANCE_DROP = "performance_drop"
    MARKET_REGIME_CHANGE = "market_regime_change"
    OPTIMIZATION = "optimization"
    AB_TEST = "ab_test"


@dataclass(frozen=True)
class ParameterChange:
    parameter: str
    old_value: float | None
    new_value: float | None
    reason: str = ""


@dataclass(frozen=True)
class StrategyEvolution:
    strategy_id: str
    version: int
    timestamp: datetime
    trigger: EvolutionTrigger
    changes: Tuple[ParameterChange, ...]
    performance_change: float = 0.0

    def to_record(self) -> Dict[str, object]:
        return {
            "strategy_id": self.strategy_id,
            "version": self.version,
            "ts": self.timestamp.isoformat(),
            "trigger": self.trigger.value,
            "changes": [asdict(c) for c in self.changes],
            "performance_change": self.performance_change,
        }


def diff_parameters(
    before: Mapping[str, float], after: Mapping[str, float], reason: str = ""
) -> List[ParameterChange]:
    """Changed, added and removed keys, in sorted key order."""
    changes: List[ParameterChange] = []
    for key in sorted(set(before) | set(after)):
        old, new = before.get(key), after.get(key)
        if old is not None and new is not None and math.isclose(old, new):
            continue
        changes.append(ParameterChange(parameter=key, old_value=old, new_value=new, reason=reason))
    return changes


class EvolutionTracker:
    """Thread-safe history store keyed by strategy id."""

    def __init__(
        self,
        manifest_path: str | Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.manifest_path = Path(manifest_path) if manifest_path else None
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._history: Dict[str, List[StrategyEvolution]] = {}

    def reserve_version(self, strategy_id: str) -> int:
        with self._lock:
            return self._next(strategy_id)

    def _next(self, strategy_id: str) -> int:
        version = self._counters.get(strategy_id, 0) + 1
        self._counters[strategy_id] = version
        return version

    def record(
        self,
        strategy_id: str,
        before: Mapping[str, float],
        after: Mapping[str, float],
        trigger: EvolutionTrigger = EvolutionTrigger.MANUAL,
        *,
        performance_change: float = 0.0,
        reason: str = "",
        version: Optional[int] = None,
    ) -> StrategyEvolution:
        """
        Append a version for `strategy_id`.

        `version` may be one previously obtained from `reserve_version`;
        otherwise the next counter value is used.
        """
        changes = tuple(diff_parameters(before, after, reason))
        with self._lock:
            if version is None:
                version = self._next(strategy_id)
            elif version > self._counters.get(strategy_id, 0):
                raise ValueError(f"version {version} was not reserved for {strategy_id}")
            elif any(e.version == version for e in self._history.get(strategy_id, ())):
                raise ValueError(f"version {version} already recorded for {strategy_id}")
            entry = StrategyEvolution(
                strategy_id=strategy_id,
                version=version,
                timestamp=self._clock(),
                trigger=trigger,
                changes=changes,
                performance_change=performance_change,
            )
            self._history.setdefault(strategy_id, []).append(entry)
            if self.manifest_path is not None:
                self._append(self.manifest_path, entry)
        logger.info(
            "[evolution] {} v{} trigger={} changes={}",
            strategy_id,
            entry.version,
            trigger.value,
            len(changes),
        )
        return entry

    def _append(self, path: Path, entry: StrategyEvolution) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry.to_record(), default=str) + "\n")

    def record_optimization(self, result: "OptimizationResult") -> Optional[StrategyEvolution]:
        """Record an accepted optimization; `None` when the baseline was kept."""
        if not result.improved:
            return None
        return self.record(
            result.original_strategy.id,
            result.original_strategy.tunable_values(),
            result.optimized_strategy.tunable_values(),
            EvolutionTrigger.OPTIMIZATION,
            performance_change=result.improvements.profit_improvement,
            reason=f"optimized for {result.goal.description.lower()}",
        )

    def record_ab_result(self, result: "ABTestResult") -> Optional[StrategyEvolution]:
        """Record a concluded A/B test against strategy A's history; ties are skipped."""
        winner = result.winning_strategy
        if winner is None:
            return None
        cfg = result.configuration
        if winner is cfg.strategy_a:
            win_perf, lose_perf = result.performance_a, result.performance_b
        else:
            win_perf, lose_perf = result.performance_b, result.performance_a
        delta = win_perf.mean_return_pct - lose_perf.mean_return_pct
        return self.record(
            cfg.strategy_a.id,
            cfg.strategy_a.tunable_values(),
            winner.tunable_values(),
            EvolutionTrigger.AB_TEST,
            performance_change=delta,
            reason=f"A/B test '{cfg.test_name}' winner",
        )

    def history(self, strategy_id: str) -> Tuple[StrategyEvolution, ...]:
        with self._lock:
            return tuple(self._history.get(strategy_id, ()))

    def latest_version(self, strategy_id: str) -> int:
        with self._lock:
            return self._counters.get(strategy_id, 0)


def load_manifest(path: str | Path, strategy_id: str | None = None) -> List[Dict[str, object]]:
    """Read records back from a JSONL manifest, oldest first; bad lines are skipped."""
    p = Path(path)
    if not p.exists():
        return []
    records: List[Dict[str, object]] = []
    with p.open(encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("[evolution] skipping malformed manifest line in {}", p)
                continue
            if strategy_id is None or record.get("strategy_id") == strategy_id:
                records.append(record)
    return records


__all__ = [
    "EvolutionTrigger",
    "ParameterChange",
    "StrategyEvolution",
    "EvolutionTracker",
    "diff_parameters",
    "load_manifest",
]
