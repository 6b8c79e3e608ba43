from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request

UNMATCHED_PATH = "unmatched"

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route template and status",
    ["method", "path", "status"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency by route template",
    ["method", "path"],
)

lead_operations_total = Counter(
    "lead_operations_total",
    "Lead operations by outcome",
    ["operation", "outcome"],
)
lead_operation_duration_seconds = Histogram(
    "lead_operation_duration_seconds",
    "Lead operation duration in seconds",
    ["operation"],
)
lead_duplicate_rejections_total = Counter(
    "lead_duplicate_rejections_total",
    "Writes rejected because of a duplicate phone number",
    ["source"],
)
audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Audit entries that could not be persisted",
    ["action"],
)
notification_dispatch_total = Counter(
    "notification_dispatch_total",
    "Notification jobs by outcome",
    ["notification_type", "outcome"],
)
notification_queue_dropped_total = Counter(
    "notification_queue_dropped_total",
    "Notification jobs dropped because the dispatch queue was full",
)

_PARAM = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    """Route template with every parameter collapsed to ``{id}``.

    Requests that matched no route share one label so probing random URLs
    cannot grow the series count.
    """

    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if not isinstance(template, str) or not template:
        return UNMATCHED_PATH
    return _PARAM.sub("{id}", template)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_operation(operation: str, outcome: str, duration: float) -> None:
    lead_operations_total.labels(operation=operation, outcome=outcome).inc()
    lead_operation_duration_seconds.labels(operation=operation).observe(duration)


def observe_duplicate_rejection(source: str) -> None:
    lead_duplicate_rejections_total.labels(source=source).inc()


def observe_audit_write_failure(action: str) -> None:
    audit_write_failures_total.labels(action=action).inc()


def observe_notification_dispatch(notification_type: str, outcome: str) -> None:
    notification_dispatch_total.labels(notification_type=notification_type, outcome=outcome).inc()


def observe_notification_dropped() -> None:
    notification_queue_dropped_total.inc()


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
