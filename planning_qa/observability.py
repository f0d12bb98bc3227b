"""Request logging and metrics for the question-answering service.

Two interchangeable metrics backends share the ``MetricsBackend`` protocol:
an in-process collector that renders Prometheus text itself, and one backed
by ``prometheus_client``. ``metrics_backend`` in settings picks one.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from bisect import bisect_left
from collections import defaultdict
from contextvars import ContextVar
from threading import Lock
from typing import Iterable, Protocol, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from planning_qa.core.config import get_settings

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
UNMATCHED_ROUTE = "/__unknown__"

# Pipeline latencies run from tens of milliseconds (cached config) to a
# couple of minutes (three agentic iterations plus generation).
DEFAULT_BUCKETS_MS = (50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 120000)

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)


def get_request_id() -> str | None:
    """Request id of the request being handled, if any."""
    return request_id_ctx.get()


class MetricsBackend(Protocol):
    """What the service records, independent of where it goes."""

    def observe_request(self, method: str, path: str, status_code: int, duration_ms: float) -> None:
        ...

    def observe_external_api(
        self, provider: str, operation: str, status_code: int, duration_ms: float
    ) -> None:
        ...

    def observe_rag_query(
        self,
        query_class: str,
        search_method: str,
        decision: str,
        iterations: int,
        duration_ms: float,
    ) -> None:
        ...

    def render_prometheus(self) -> str:
        ...


# -------------------------------------------------------------------------
# In-memory backend
# -------------------------------------------------------------------------


def _label_text(names: Sequence[str], values: Sequence[str]) -> str:
    return ",".join(f'{name}="{value}"' for name, value in zip(names, values))


class _Counter:
    def __init__(self, name: str, help_text: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._values: dict[tuple[str, ...], float] = defaultdict(float)

    def inc(self, labels: tuple[str, ...], amount: float = 1) -> None:
        self._values[labels] += amount

    def render(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} counter"]
        for labels, value in sorted(self._values.items()):
            lines.append(f"{self.name}{{{_label_text(self.label_names, labels)}}} {value:g}")
        return lines


class _Histogram:
    """Per-label-set bucket counts; the last slot is the +Inf overflow."""

    def __init__(
        self,
        name: str,
        help_text: str,
        label_names: Sequence[str],
        bounds: Sequence[float],
    ) -> None:
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self.bounds = sorted(bounds)
        self._buckets: dict[tuple[str, ...], list[int]] = {}
        self._sums: dict[tuple[str, ...], float] = defaultdict(float)

    def observe(self, labels: tuple[str, ...], value: float) -> None:
        buckets = self._buckets.setdefault(labels, [0] * (len(self.bounds) + 1))
        buckets[bisect_left(self.bounds, value)] += 1
        self._sums[labels] += value

    def render(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} histogram"]
        for labels, buckets in sorted(self._buckets.items()):
            label_text = _label_text(self.label_names, labels)
            cumulative = 0
            for bound, hits in zip([*map(str, self.bounds), "+Inf"], buckets):
                cumulative += hits
                lines.append(f'{self.name}_bucket{{{label_text},le="{bound}"}} {cumulative}')
            lines.append(f"{self.name}_sum{{{label_text}}} {self._sums[labels]:.2f}")
            lines.append(f"{self.name}_count{{{label_text}}} {cumulative}")
        return lines


class MetricsCollector:
    """Thread-safe in-process metrics with Prometheus text output."""

    def __init__(self, buckets_ms: Iterable[float] | None = None) -> None:
        bounds = list(buckets_ms or DEFAULT_BUCKETS_MS)
        self._lock = Lock()

        self._http_requests = _Counter(
            "http_requests_total", "Total HTTP requests", ("method", "path", "status")
        )
        self._http_duration = _Histogram(
            "http_request_duration_ms",
            "Request duration in milliseconds",
            ("method", "path"),
            bounds,
        )
        self._external_requests = _Counter(
            "external_api_requests_total",
            "External API requests",
            ("provider", "operation", "status"),
        )
        self._external_duration = _Histogram(
            "external_api_duration_ms",
            "External API duration in milliseconds",
            ("provider", "operation"),
            bounds,
        )
        self._rag_queries = _Counter(
            "rag_queries_total",
            "Answered questions",
            ("query_class", "search_method", "decision"),
        )
        self._rag_iterations = _Counter(
            "rag_iterations_total", "Agentic retrieval iterations", ("query_class",)
        )
        self._rag_duration = _Histogram(
            "rag_query_duration_ms",
            "Question answering duration in milliseconds",
            ("query_class",),
            bounds,
        )
        self._metrics: list[_Counter | _Histogram] = [
            self._http_requests,
            self._http_duration,
            self._external_requests,
            self._external_duration,
            self._rag_queries,
            self._rag_iterations,
            self._rag_duration,
        ]

    def observe_request(self, method: str, path: str, status_code: int, duration_ms: float) -> None:
        with self._lock:
            self._http_requests.inc((method, path, str(status_code)))
            self._http_duration.observe((method, path), duration_ms)

    def observe_external_api(
        self, provider: str, operation: str, status_code: int, duration_ms: float
    ) -> None:
        with self._lock:
            self._external_requests.inc((provider, operation, str(status_code)))
            self._external_duration.observe((provider, operation), duration_ms)

    def observe_rag_query(
        self,
        query_class: str,
        search_method: str,
        decision: str,
        iterations: int,
        duration_ms: float,
    ) -> None:
        with self._lock:
            self._rag_queries.inc((query_class, search_method, decision))
            self._rag_iterations.inc((query_class,), iterations)
            self._rag_duration.observe((query_class,), duration_ms)

    def render_prometheus(self) -> str:
        lines: list[str] = []
        with self._lock:
            for metric in self._metrics:
                lines.extend(metric.render())
        return "\n".join(lines) + "\n"


# -------------------------------------------------------------------------
# prometheus_client backend
# -------------------------------------------------------------------------


class PrometheusMetrics:
    """Backend built on ``prometheus_client`` with a private registry."""

    def __init__(self, buckets_ms: Iterable[float] = DEFAULT_BUCKETS_MS) -> None:
        from prometheus_client import CollectorRegistry, Counter, Histogram

        bounds = list(buckets_ms)
        self._registry = CollectorRegistry()

        def counter(name: str, help_text: str, labels: list[str]) -> Counter:
            return Counter(name, help_text, labels, registry=self._registry)

        def histogram(name: str, help_text: str, labels: list[str]) -> Histogram:
            return Histogram(name, help_text, labels, buckets=bounds, registry=self._registry)

        self._http_requests = counter(
            "http_requests_total", "Total HTTP requests", ["method", "path", "status"]
        )
        self._http_duration = histogram(
            "http_request_duration_ms", "Request duration in milliseconds", ["method", "path"]
        )
        self._external_requests = counter(
            "external_api_requests_total",
            "External API requests",
            ["provider", "operation", "status"],
        )
        self._external_duration = histogram(
            "external_api_duration_ms",
            "External API duration in milliseconds",
            ["provider", "operation"],
        )
        self._rag_queries = counter(
            "rag_queries_total",
            "Answered questions",
            ["query_class", "search_method", "decision"],
        )
        self._rag_iterations = counter(
            "rag_iterations_total", "Agentic retrieval iterations", ["query_class"]
        )
        self._rag_duration = histogram(
            "rag_query_duration_ms",
            "Question answering duration in milliseconds",
            ["query_class"],
        )

    def observe_request(self, method: str, path: str, status_code: int, duration_ms: float) -> None:
        self._http_requests.labels(method, path, str(status_code)).inc()
        self._http_duration.labels(method, path).observe(duration_ms)

    def observe_external_api(
        self, provider: str, operation: str, status_code: int, duration_ms: float
    ) -> None:
        self._external_requests.labels(provider, operation, str(status_code)).inc()
        self._external_duration.labels(provider, operation).observe(duration_ms)

    def observe_rag_query(
        self,
        query_class: str,
        search_method: str,
        decision: str,
        iterations: int,
        duration_ms: float,
    ) -> None:
        self._rag_queries.labels(query_class, search_method, decision).inc()
        self._rag_iterations.labels(query_class).inc(iterations)
        self._rag_duration.labels(query_class).observe(duration_ms)

    def render_prometheus(self) -> str:
        from prometheus_client import generate_latest

        return generate_latest(self._registry).decode("utf-8")


_metrics_backend: MetricsBackend | None = None


def get_metrics_backend() -> MetricsBackend:
    """Process-wide metrics backend, chosen by ``metrics_backend`` in settings."""
    global _metrics_backend
    if _metrics_backend is None:
        _metrics_backend = _build_metrics_backend(get_settings().metrics_backend)
    return _metrics_backend


def _build_metrics_backend(backend: str) -> MetricsBackend:
    if backend == "prometheus":
        return PrometheusMetrics()
    if backend != "inmemory":
        logger.warning("Unknown metrics backend %r, using in-memory metrics", backend)
    return MetricsCollector()


# -------------------------------------------------------------------------
# Request logging
# -------------------------------------------------------------------------


def _route_template(request: Request) -> str:
    # Route templates keep label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id, logs one JSON line and records metrics."""

    def __init__(
        self,
        app: ASGIApp,
        metrics: MetricsBackend | None = None,
        request_logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(app)
        self.metrics = metrics or get_metrics_backend()
        self.request_logger = request_logger or logging.getLogger("planning_qa.request")

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = request_id_ctx.set(request_id)
        request.state.request_id = request_id

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            route = _route_template(request)
            self.metrics.observe_request(request.method, route, status_code, elapsed_ms)
            self.request_logger.info(
                json.dumps(
                    {
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "route": route,
                        "status_code": status_code,
                        "elapsed_ms": round(elapsed_ms, 2),
                    }
                )
            )
            request_id_ctx.reset(token)
