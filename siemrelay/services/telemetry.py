from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
# Event-to-receipt latency for successful deliveries.
_delivery_latency_samples: Deque[float] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def record_delivery_latency(latency_ms: float) -> None:
    _delivery_latency_samples.append(max(0.0, float(latency_ms)))


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ops dashboards.
    _counters[name] += value


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate external call latency for integrations in the window.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[float]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample.latency_ms)
    result: dict[str, dict[str, float | None]] = {}
    for integration, latencies in by_integration.items():
        latencies.sort()
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[integration] = {
            "p95": latencies[p95_idx],
            "max": latencies[-1],
        }
    return result


def delivery_latency_stats() -> dict[str, float | None]:
    # Summarize recent event-to-delivery latencies.
    if not _delivery_latency_samples:
        return {"p50": None, "p95": None, "max": None}
    latencies = sorted(_delivery_latency_samples)
    p50_idx = max(0, math.ceil(0.5 * len(latencies)) - 1)
    p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return {"p50": latencies[p50_idx], "p95": latencies[p95_idx], "max": latencies[-1]}


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_telemetry() -> None:
    _external_samples.clear()
    _delivery_latency_samples.clear()
    _counters.clear()
