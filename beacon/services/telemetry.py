from __future__ import annotations

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
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture provider latency and outcomes for worker diagnostics.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def external_call_summary(window_s: int = 300) -> dict[str, dict[str, float]]:
    # Per-integration call count, error rate and mean latency over the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    summary: dict[str, dict[str, float]] = {}
    for integration, samples in grouped.items():
        failures = sum(1 for sample in samples if not sample.success)
        summary[integration] = {
            "calls": float(len(samples)),
            "error_rate": failures / len(samples),
            "avg_latency_ms": sum(sample.latency_ms for sample in samples) / len(samples),
        }
    return summary


def reset_telemetry() -> None:
    # Tests reset module state between cases.
    _external_samples.clear()
    _counters.clear()
