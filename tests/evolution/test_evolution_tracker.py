from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from stratlab.evolution.tracker import (
    EvolutionTracker,
    EvolutionTrigger,
    diff_parameters,
    load_manifest,
)
from stratlab.strats.templates import rsi_mean_reversion

FIXED = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def tracker(tmp_path):
    return EvolutionTracker(tmp_path / "evolution" / "manifest.jsonl", clock=lambda: FIXED)


def test_versions_are_sequential_per_strategy(tracker):
    v1 = tracker.record("s1", {"a": 1.0}, {"a": 2.0})
    v2 = tracker.record("s1", {"a": 2.0}, {"a": 3.0})
    other = tracker.record("s2", {"a": 1.0}, {"a": 1.5})
    v3 = tracker.record("s1", {"a": 3.0}, {"a": 4.0}, EvolutionTrigger.PERFORMANCE_DROP)

    assert [v1.version, v2.version, v3.version] == [1, 2, 3]
    assert other.version == 1
    assert [e.version for e in tracker.history("s1")] == [1, 2, 3]
    assert tracker.latest_version("s1") == 3


def test_reserved_versions_are_never_reused(tracker):
    reserved = tracker.reserve_version("s1")
    entry = tracker.record("s1", {"a": 1.0}, {"a": 2.0})

    assert reserved == 1
    assert entry.version == 2
    late = tracker.record("s1", {"a": 2.0}, {"a": 2.5}, version=reserved)
    assert late.version == 1
    with pytest.raises(ValueError, match="already recorded"):
        tracker.record("s1", {}, {}, version=reserved)
    with pytest.raises(ValueError, match="not reserved"):
        tracker.record("s1", {}, {}, version=99)


def test_concurrent_records_get_unique_versions(tracker):
    def add(i):
        return tracker.record("shared", {"x": float(i)}, {"x": float(i + 1)}).version

    with ThreadPoolExecutor(max_workers=8) as pool:
        versions = list(pool.map(add, range(40)))

    assert sorted(versions) == list(range(1, 41))


def test_manifest_is_appended_as_jsonl(tracker):
    tracker.record("s1", {"a": 1.0, "b": 2.0}, {"a": 1.0, "b": 3.0}, reason="tune b")
    tracker.record("s2", {}, {"c": 1.0})

    lines = tracker.manifest_path.read_text().strip().splitlines()
    first = json.loads(lines[0])

    assert len(lines) == 2
    assert first["version"] == 1
    assert first["ts"] == FIXED.isoformat()
    assert first["changes"] == [
        {"parameter": "b", "old_value": 2.0, "new_value": 3.0, "reason": "tune b"}
    ]
    assert [r["strategy_id"] for r in load_manifest(tracker.manifest_path, "s2")] == ["s2"]


def test_tracker_without_manifest_keeps_history_in_memory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    tracker = EvolutionTracker()

    entry = tracker.record("s1", {"a": 1.0}, {"a": 2.0})

    assert entry.version == 1
    assert tracker.history("s1") == (entry,)
    assert list(tmp_path.iterdir()) == []


def test_load_manifest_skips_bad_lines(tmp_path):
    path = tmp_path / "m.jsonl"
    path.write_text('{"strategy_id": "s1", "version": 1}\nnot json\n\n')

    assert load_manifest(path) == [{"strategy_id": "s1", "version": 1}]
    assert load_manifest(tmp_path / "missing.jsonl") == []


def test_diff_parameters_reports_added_removed_and_changed():
    changes = diff_parameters({"a": 1.0, "b": 2.0, "c": 3.0}, {"a": 1.0, "b": 2.5, "d": 4.0})

    assert [(c.parameter, c.old_value, c.new_value) for c in changes] == [
        ("b", 2.0, 2.5),
        ("c", 3.0, None),
        ("d", None, 4.0),
    ]


def test_strategy_tunables_diff_is_empty_for_same_strategy():
    strategy = rsi_mean_reversion()

    assert diff_parameters(strategy.tunable_values(), strategy.tunable_values()) == []
