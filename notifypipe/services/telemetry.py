from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
import math
import time
from typing import Deque


@dataclass(frozen=True)
class ProviderCallSample:
    ts: float
    provider: str
    latency_ms: float
    success: bool


# In-process only; every worker and API process keeps its own window.
_provider_samples: Deque[ProviderCallSample] = deque(maxlen=10000)
_counters: Counter[str] = Counter()


def record_provider_call(*, provider: str, latency_ms: float, success: bool) -> None:
    _provider_samples.append(
        ProviderCallSample(ts=time.time(), provider=provider, latency_ms=latency_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Dotted names, e.g. dispatch.email.sent or webhook.sendgrid.bounce.
    _counters[name] += value


def _percentile(ordered: list[float], fraction: float) -> float:
    return ordered[max(0, math.ceil(fraction * len(ordered)) - 1)]


def provider_call_stats(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Per-provider call volume, error rate and latency percentiles over the trailing window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ProviderCallSample]] = {}
    for sample in _provider_samples:
        if sample.ts >= cutoff:
            grouped.setdefault(sample.provider, []).append(sample)
    stats: dict[str, dict[str, float | int | None]] = {}
    for provider, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        errors = sum(1 for sample in samples if not sample.success)
        stats[provider] = {
            "calls": len(samples),
            "errors": errors,
            "error_rate_percent": round(errors / len(samples) * 100, 1),
            "p50": _percentile(latencies, 0.5),
            "p95": _percentile(latencies, 0.95),
            "max": latencies[-1],
        }
    return stats


def counters_snapshot(prefix: str | None = None) -> dict[str, int]:
    if prefix is None:
        return dict(_counters)
    return {name: value for name, value in _counters.items() if name.startswith(prefix)}


def reset_telemetry() -> None:
    _provider_samples.clear()
    _counters.clear()
