from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class DeliverySample:
    ts: float
    transport: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_delivery_samples: Deque[DeliverySample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_delivery(*, transport: str, latency_ms: float, success: bool) -> None:
    # Track transport latency and outcomes per delivery attempt.
    _delivery_samples.append(
        DeliverySample(ts=time.time(), transport=transport, latency_ms=latency_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def get_counter(name: str) -> int:
    return int(_counters.get(name, 0))


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_counters() -> None:
    # Tests share the process; clear everything between cases.
    _counters.clear()
    _request_samples.clear()
    _delivery_samples.clear()


def delivery_stats(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate p95/max latency and success ratio by transport in the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[DeliverySample]] = defaultdict(list)
    for sample in _delivery_samples:
        if sample.ts >= cutoff:
            grouped[sample.transport].append(sample)
    result: dict[str, dict[str, float | None]] = {}
    for transport, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        successes = sum(1 for sample in samples if sample.success)
        result[transport] = {
            "p95": latencies[idx],
            "max": latencies[-1],
            "success_ratio": successes / len(samples),
        }
    return result


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if path_prefix:
        samples = [sample for sample in samples if sample.path.startswith(path_prefix)]
    if not samples:
        return None
    latencies = sorted(sample.latency_ms for sample in samples)
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]
