from __future__ import annotations

from bisect import bisect_right
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from threading import Lock
import time
from typing import Any, Callable, Iterator

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST

PROMETHEUS_CONTENT_TYPE = CONTENT_TYPE_LATEST

_REQUEST_LABELS = ("method", "route", "status_code")
_LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


@dataclass(frozen=True)
class RequestEvent:
    method: str
    route: str
    status_code: int
    duration_ms: float
    timestamp: float


@dataclass(frozen=True)
class AggregateMetrics:
    total_requests: int
    error_count: int
    total_response_time_ms: float
    avg_response_time_ms: float
    error_rate_percent: float
    requests_per_minute: int
    uptime_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MetricsAggregator:
    """Process-wide request metrics, owned by the application.

    ``record`` folds one completed request into the running aggregate under a
    single lock, so readers never see totals and derived rates out of step.
    The same call feeds the per-instance Prometheus registry.
    """

    def __init__(
        self,
        *,
        namespace: str = "opswatch",
        window_sec: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._clock = clock
        self._window_sec = max(1.0, float(window_sec))
        self._started_at = clock()
        self._lock = Lock()
        self._recent: deque[float] = deque()
        self._total_requests = 0
        self._error_count = 0
        self._total_response_time_ms = 0.0
        self._avg_response_time_ms = 0.0
        self._error_rate_percent = 0.0
        self._requests_per_minute = 0

        self.registry = registry if registry is not None else CollectorRegistry()
        self._requests = Counter(
            f"{namespace}_http_requests_total",
            "Total HTTP requests",
            _REQUEST_LABELS,
            registry=self.registry,
        )
        self._latency = Histogram(
            f"{namespace}_http_request_duration_seconds",
            "HTTP request latency in seconds",
            _REQUEST_LABELS,
            registry=self.registry,
            buckets=_LATENCY_BUCKETS,
        )
        self._open_connections = Gauge(
            f"{namespace}_http_open_connections",
            "Requests currently being served",
            registry=self.registry,
        )
        self._rpm_gauge = Gauge(
            f"{namespace}_requests_per_minute",
            "Requests completed in the trailing minute",
            registry=self.registry,
        )
        self._error_rate_gauge = Gauge(
            f"{namespace}_error_rate_percent",
            "Share of requests answered with status >= 400",
            registry=self.registry,
        )
        self._avg_latency_gauge = Gauge(
            f"{namespace}_avg_response_time_ms",
            "Mean response time since start in milliseconds",
            registry=self.registry,
        )

    def now(self) -> float:
        return self._clock()

    def _prune_locked(self, now: float) -> None:
        cutoff = now - self._window_sec
        while self._recent and self._recent[0] <= cutoff:
            self._recent.popleft()
        self._requests_per_minute = len(self._recent)

    def record(self, event: RequestEvent) -> None:
        duration_ms = max(0.0, float(event.duration_ms))
        with self._lock:
            self._total_requests += 1
            self._total_response_time_ms += duration_ms
            self._avg_response_time_ms = self._total_response_time_ms / self._total_requests
            if event.status_code >= 400:
                self._error_count += 1
            self._error_rate_percent = self._error_count / self._total_requests * 100.0
            if self._recent and event.timestamp < self._recent[-1]:
                self._recent.insert(bisect_right(self._recent, event.timestamp), event.timestamp)
            else:
                self._recent.append(event.timestamp)
            self._prune_locked(self._clock())
            self._rpm_gauge.set(self._requests_per_minute)
            self._error_rate_gauge.set(self._error_rate_percent)
            self._avg_latency_gauge.set(self._avg_response_time_ms)

        labels = {
            "method": event.method,
            "route": event.route,
            "status_code": str(event.status_code),
        }
        self._requests.labels(**labels).inc()
        self._latency.labels(**labels).observe(duration_ms / 1000.0)

    def snapshot_application(self) -> AggregateMetrics:
        with self._lock:
            now = self._clock()
            self._prune_locked(now)
            self._rpm_gauge.set(self._requests_per_minute)
            return AggregateMetrics(
                total_requests=self._total_requests,
                error_count=self._error_count,
                total_response_time_ms=self._total_response_time_ms,
                avg_response_time_ms=self._avg_response_time_ms,
                error_rate_percent=self._error_rate_percent,
                requests_per_minute=self._requests_per_minute,
                uptime_seconds=max(0.0, now - self._started_at),
            )

    def snapshot_prometheus(self) -> bytes:
        return generate_latest(self.registry)

    @contextmanager
    def track_connection(self) -> Iterator[None]:
        self._open_connections.inc()
        try:
            yield
        finally:
            self._open_connections.dec()
