from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    # One outbound call: a probe or a routing backend request.
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture probe and backend call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Counters are monotonic for the life of the process.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    # Gauges hold the latest value only.
    _gauges[name] = float(value)


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate latency and success ratio per integration in the window.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample)
    result: dict[str, dict[str, float | None]] = {}
    for integration, samples in by_integration.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        successes = sum(1 for sample in samples if sample.success)
        result[integration] = {
            "p95": latencies[p95_idx],
            "max": latencies[-1],
            "success_ratio": successes / len(samples),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    # Copies so callers cannot mutate live counters.
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Allow tests to assert on counters from a clean slate.
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()
