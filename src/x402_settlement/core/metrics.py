"""
Counters, timings, gauges and histograms for the payment pipeline.

Usage:
    metrics = InMemoryMetrics()
    metrics.increment_counter("x402.payment.verification.success", tags={"network": "base"})
    metrics.record_timing("x402.payment.verification.duration_ms", 12.5)

    snapshot = metrics.get_metrics()
    snapshot["timings"]["x402.payment.verification.duration_ms"]["p95"]

The in-memory store is meant for tests and single-process deployments; wire
a real backend (StatsD, Prometheus, ...) behind the :class:`Metrics`
protocol for anything else.
"""

from __future__ import annotations

import math
import threading
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Union

__all__ = [
    "InMemoryMetrics",
    "Metrics",
    "NullMetrics",
    "build_key",
    "percentile",
]

Tags = Mapping[str, str]


class Metrics(Protocol):
    def increment_counter(
        self, name: str, value: Union[int, Tags] = 1, tags: Optional[Tags] = None
    ) -> None:
        ...

    def record_timing(self, name: str, duration: float, tags: Optional[Tags] = None) -> None:
        ...

    def record_gauge(self, name: str, value: float, tags: Optional[Tags] = None) -> None:
        ...

    def record_histogram(self, name: str, value: float, tags: Optional[Tags] = None) -> None:
        ...


def build_key(name: str, tags: Optional[Tags]) -> str:
    """``name{k1=v1,k2=v2}`` with tags sorted by key; bare ``name`` without tags."""
    if not tags:
        return name
    tag_string = ",".join(f"{key}={tags[key]}" for key in sorted(tags))
    return f"{name}{{{tag_string}}}"


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """Linear interpolation between the two nearest ranks."""
    count = len(sorted_values)
    if count == 0:
        return 0.0
    index = (pct / 100) * (count - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return float(sorted_values[lower])
    fraction = index - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * fraction


def _summarise(values: List[float]) -> Dict[str, float]:
    ordered = sorted(values)
    count = len(ordered)
    return {
        "count": count,
        "mean": sum(ordered) / count,
        "min": ordered[0],
        "max": ordered[-1],
        "p50": percentile(ordered, 50),
        "p95": percentile(ordered, 95),
        "p99": percentile(ordered, 99),
    }


class InMemoryMetrics:
    """Thread-safe in-process metrics store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._timings: Dict[str, List[float]] = {}
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, List[float]] = {}

    def increment_counter(
        self, name: str, value: Union[int, Tags] = 1, tags: Optional[Tags] = None
    ) -> None:
        # A mapping in the value slot is the tags-only call shape.
        if isinstance(value, Mapping):
            tags, value = value, 1
        key = build_key(name, tags)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def record_timing(self, name: str, duration: float, tags: Optional[Tags] = None) -> None:
        key = build_key(name, tags)
        with self._lock:
            self._timings.setdefault(key, []).append(float(duration))

    def record_gauge(self, name: str, value: float, tags: Optional[Tags] = None) -> None:
        key = build_key(name, tags)
        with self._lock:
            self._gauges[key] = float(value)

    def record_histogram(self, name: str, value: float, tags: Optional[Tags] = None) -> None:
        key = build_key(name, tags)
        with self._lock:
            self._histograms.setdefault(key, []).append(float(value))

    def get_counter(self, name: str, tags: Optional[Tags] = None) -> int:
        with self._lock:
            return self._counters.get(build_key(name, tags), 0)

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            timings = {key: list(values) for key, values in self._timings.items() if values}
            histograms = {
                key: list(values) for key, values in self._histograms.items() if values
            }
        return {
            "counters": counters,
            "timings": {key: _summarise(values) for key, values in timings.items()},
            "gauges": gauges,
            "histograms": {key: _summarise(values) for key, values in histograms.items()},
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()
            self._gauges.clear()
            self._histograms.clear()


class NullMetrics:
    """Discards everything."""

    def increment_counter(
        self, name: str, value: Union[int, Tags] = 1, tags: Optional[Tags] = None
    ) -> None:
        return None

    def record_timing(self, name: str, duration: float, tags: Optional[Tags] = None) -> None:
        return None

    def record_gauge(self, name: str, value: float, tags: Optional[Tags] = None) -> None:
        return None

    def record_histogram(self, name: str, value: float, tags: Optional[Tags] = None) -> None:
        return None
