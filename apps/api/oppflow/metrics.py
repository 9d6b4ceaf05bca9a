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

crm_trigger_runs_total = Counter(
    "crm_trigger_runs_total",
    "Total opportunity trigger runs by phase, operation and status",
    ["phase", "operation", "status"],
)

crm_trigger_duration_seconds = Histogram(
    "crm_trigger_duration_seconds",
    "Opportunity trigger run duration in seconds",
    ["phase", "operation"],
)

crm_trigger_rejections_total = Counter(
    "crm_trigger_rejections_total",
    "Total records rejected by trigger validation rules",
    ["reason"],
)

crm_notification_failures_total = Counter(
    "crm_notification_failures_total",
    "Total failed outbound notification batches",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _UUID_RE.sub("{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_trigger_run(phase: str, operation: str, status: str, duration: float) -> None:
    crm_trigger_runs_total.labels(phase=phase, operation=operation, status=status).inc()
    crm_trigger_duration_seconds.labels(phase=phase, operation=operation).observe(duration)


def observe_trigger_rejection(reason: str, count: int = 1) -> None:
    if count > 0:
        crm_trigger_rejections_total.labels(reason=reason).inc(count)


def observe_notification_failure() -> None:
    crm_notification_failures_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
