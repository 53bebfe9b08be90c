from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

pipeline_transitions_total = Counter(
    "pipeline_transitions_total",
    "Stage machine transition requests by machine, verb and outcome",
    ["machine", "transition", "outcome"],
)

pipeline_conversions_total = Counter(
    "pipeline_conversions_total",
    "Opportunity to client conversions by outcome",
    ["outcome"],
)


_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(machine: str, transition: str, outcome: str) -> None:
    pipeline_transitions_total.labels(machine=machine, transition=transition, outcome=outcome).inc()


def observe_conversion(outcome: str) -> None:
    pipeline_conversions_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
