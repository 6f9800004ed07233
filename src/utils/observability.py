from __future__ import annotations

import time
from collections import defaultdict, deque
from contextlib import contextmanager
from threading import Lock
from typing import Any, Deque, Dict, List

MetricsSnapshot = Dict[str, Any]


class _LatencySeries:
    """Running total plus a bounded sample window for percentiles."""

    def __init__(self, window: int) -> None:
        self.count = 0
        self.errors = 0
        self.total_ms = 0.0
        self.samples: Deque[float] = deque(maxlen=window)

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.samples.append(duration_ms)

    def summary(self) -> Dict[str, float]:
        percentiles = _compute_percentiles(list(self.samples))
        return {
            "count": float(self.count),
            "avg_latency_ms": (self.total_ms / self.count) if self.count else 0.0,
            "p50_latency_ms": percentiles.get(50, 0.0),
            "p95_latency_ms": percentiles.get(95, 0.0),
        }


class RequestMetrics:
    """In-process latency and counter registry behind ``GET /v1/metrics``.

    Endpoints are keyed by request path; phases cover generation calls and
    other inner work timed with :func:`time_phase`. Counters track discrete
    outcomes such as ``ingestion::failed``.
    """

    def __init__(self, percentile_window: int = 200) -> None:
        self._window = percentile_window
        self._lock = Lock()
        self._endpoints: Dict[str, _LatencySeries] = {}
        self._phases: Dict[str, _LatencySeries] = {}
        self._counters: Dict[str, float] = defaultdict(float)

    def _series(self, table: Dict[str, _LatencySeries], name: str) -> _LatencySeries:
        series = table.get(name)
        if series is None:
            series = table[name] = _LatencySeries(self._window)
        return series

    def record(self, endpoint: str, duration_ms: float, status_code: int | None = None) -> None:
        with self._lock:
            series = self._series(self._endpoints, endpoint)
            series.add(duration_ms)
            if status_code is not None and status_code >= 500:
                series.errors += 1

    def record_phase(self, phase: str, duration_ms: float) -> None:
        with self._lock:
            self._series(self._phases, phase).add(duration_ms)

    def increment_counter(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += amount

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            data: MetricsSnapshot = {}
            for endpoint, series in self._endpoints.items():
                entry = series.summary()
                entry["server_errors"] = float(series.errors)
                data[endpoint] = entry
            if self._phases:
                data["phases"] = {phase: series.summary() for phase, series in self._phases.items()}
            if self._counters:
                data["counters"] = dict(self._counters)
            return data

    def reset(self) -> None:
        with self._lock:
            self._endpoints.clear()
            self._phases.clear()
            self._counters.clear()


@contextmanager
def time_phase(metrics: RequestMetrics, phase: str):
    start = time.perf_counter()
    try:
        yield
    finally:
        metrics.record_phase(phase, (time.perf_counter() - start) * 1000)


def _compute_percentiles(samples: List[float]) -> Dict[int, float]:
    if not samples:
        return {}
    ordered = sorted(samples)
    results: Dict[int, float] = {}
    for percentile in (50, 95):
        index = int(round((percentile / 100) * (len(ordered) - 1)))
        results[percentile] = ordered[min(max(index, 0), len(ordered) - 1)]
    return results


_METRICS = RequestMetrics()


def get_metrics() -> RequestMetrics:
    return _METRICS
