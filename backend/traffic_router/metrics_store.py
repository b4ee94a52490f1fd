from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock


@dataclass
class TimingStats:
    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def add(self, duration_ms: float, *, error: bool) -> None:
        self.count += 1
        self.error_count += int(error)
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)

    def as_dict(self, *, prefix: str) -> dict[str, float | int]:
        avg = self.total_ms / self.count if self.count else 0.0
        return {
            f"{prefix}_count": self.count,
            "error_count": self.error_count,
            "total_duration_ms": round(self.total_ms, 3),
            "avg_duration_ms": round(avg, 3),
            "max_duration_ms": round(self.max_ms, 3),
        }


class MetricsStore:
    """In-process counters shared by the API and the pipeline workers.

    `endpoints` time HTTP requests, `timers` time internal work (route search
    per mode, shortcut recomputes, rebuilds), `gauges` hold the latest value of
    a level such as queue depth or live snapshot version.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._created_at = datetime.now(UTC).isoformat()
        self._endpoints: dict[str, TimingStats] = {}
        self._timers: dict[str, TimingStats] = {}
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, float] = {}

    @staticmethod
    def _name(raw: str) -> str:
        return raw.strip() or "unknown"

    def record(self, endpoint: str, *, duration_ms: float, error: bool = False) -> None:
        with self._lock:
            stats = self._endpoints.setdefault(self._name(endpoint), TimingStats())
            stats.add(max(float(duration_ms), 0.0), error=error)

    def observe(self, timer: str, duration_ms: float, *, error: bool = False) -> None:
        with self._lock:
            stats = self._timers.setdefault(self._name(timer), TimingStats())
            stats.add(max(float(duration_ms), 0.0), error=error)

    def increment(self, counter: str, amount: int = 1) -> None:
        name = self._name(counter)
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + int(amount)

    def set_gauge(self, gauge: str, value: float) -> None:
        with self._lock:
            self._gauges[self._name(gauge)] = float(value)

    def counter(self, counter: str) -> int:
        with self._lock:
            return self._counters.get(counter, 0)

    def gauge(self, gauge: str) -> float | None:
        with self._lock:
            return self._gauges.get(gauge)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            endpoints = {name: self._endpoints[name].as_dict(prefix="request") for name in sorted(self._endpoints)}
            return {
                "created_at": self._created_at,
                "total_requests": sum(s.count for s in self._endpoints.values()),
                "total_errors": sum(s.error_count for s in self._endpoints.values()),
                "endpoint_count": len(endpoints),
                "endpoints": endpoints,
                "timers": {name: self._timers[name].as_dict(prefix="sample") for name in sorted(self._timers)},
                "counters": {name: self._counters[name] for name in sorted(self._counters)},
                "gauges": {name: self._gauges[name] for name in sorted(self._gauges)},
            }

    def reset(self) -> None:
        with self._lock:
            self._created_at = datetime.now(UTC).isoformat()
            self._endpoints.clear()
            self._timers.clear()
            self._counters.clear()
            self._gauges.clear()


METRICS = MetricsStore()


def record_request(endpoint: str, *, duration_ms: float, error: bool = False) -> None:
    METRICS.record(endpoint, duration_ms=duration_ms, error=error)


def observe(timer: str, duration_ms: float, *, error: bool = False) -> None:
    METRICS.observe(timer, duration_ms, error=error)


def increment(counter: str, amount: int = 1) -> None:
    METRICS.increment(counter, amount)


def set_gauge(gauge: str, value: float) -> None:
    METRICS.set_gauge(gauge, value)


def metrics_snapshot() -> dict[str, object]:
    return METRICS.snapshot()


def reset_metrics() -> None:
    METRICS.reset()
