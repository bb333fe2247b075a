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

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Total webhook deliveries by event type and routing outcome",
    ["event_type", "outcome"],
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Total rejected webhook signatures by reason",
    ["reason"],
)

call_correlation_total = Counter(
    "call_correlation_total",
    "Total call.completed correlation attempts by result",
    ["result"],
)

call_artifact_merge_total = Counter(
    "call_artifact_merge_total",
    "Total artifact merge operations by event type and status",
    ["event_type", "status"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_webhook_delivery(event_type: str, outcome: str) -> None:
    webhook_deliveries_total.labels(event_type=event_type or "unknown", outcome=outcome).inc()


def observe_signature_failure(reason: str) -> None:
    webhook_signature_failures_total.labels(reason=reason).inc()


def observe_correlation(result: str) -> None:
    call_correlation_total.labels(result=result).inc()


def observe_artifact_merge(event_type: str, status: str) -> None:
    call_artifact_merge_total.labels(event_type=event_type, status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
