from __future__ import annotations

import math
import time
from collections import Counter, deque
from typing import Deque, NamedTuple


# Per-integration sample window; older calls fall off the left.
_SAMPLES_PER_INTEGRATION = 2000


class CallSample(NamedTuple):
    at: float
    latency_ms: float
    ok: bool


_calls: dict[str, Deque[CallSample]] = {}
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    window = _calls.setdefault(integration, deque(maxlen=_SAMPLES_PER_INTEGRATION))
    window.append(CallSample(time.time(), float(latency_ms), bool(success)))
    if not success:
        _counters[f"external_failures_total.{integration}"] += 1


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def _percentile(sorted_values: list[float], fraction: float) -> float:
    return sorted_values[max(0, math.ceil(fraction * len(sorted_values)) - 1)]


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | int]]:
    """Summarize vectorizer and LLM gateway calls made in the last ``window_s`` seconds.

    Integrations without calls in the window are left out.
    """
    since = time.time() - window_s
    summary: dict[str, dict[str, float | int]] = {}
    for integration, window in _calls.items():
        recent = [sample for sample in window if sample.at >= since]
        if not recent:
            continue
        latencies = sorted(sample.latency_ms for sample in recent)
        failures = sum(1 for sample in recent if not sample.ok)
        summary[integration] = {
            "calls": len(recent),
            "failure_rate": failures / len(recent),
            "p50": _percentile(latencies, 0.5),
            "p95": _percentile(latencies, 0.95),
            "max": latencies[-1],
        }
    return summary


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    _calls.clear()
    _counters.clear()
    _gauges.clear()
