"""Minimal helpers for run telemetry.

Spans and counters go through the OpenTelemetry API; without an SDK
configured by the host application they are no-ops.
"""

from __future__ import annotations

from typing import Any, Dict

from opentelemetry import metrics, trace

_tracer = trace.get_tracer("stratlab")
_meter = metrics.get_meter("stratlab")

_run_counter = _meter.create_counter(
    name="stratlab_runs_total",
    unit="1",
    description="Number of engine runs completed, by kind and outcome",
)


def _clean(attributes: Dict[str, Any]) -> Dict[str, Any]:
    return {
        k: (v if isinstance(v, (str, bool, int, float)) else str(v))
        for k, v in attributes.items()
        if v is not None
    }


def start_span(name: str, attributes: Dict[str, Any]):
    return _tracer.start_as_current_span(name, attributes=_clean(attributes))


def record_run(kind: str, outcome: str, attributes: Dict[str, Any] | None = None) -> None:
    attrs = _clean(dict(attributes or {}))
    attrs.update({"kind": kind, "outcome": outcome})
    _run_counter.add(1, attributes=attrs)


__all__ = ["start_span", "record_run"]
