from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest
from starlette.requests import Request


REGISTRY = CollectorRegistry(auto_describe=True)

_JOB_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300)

http_requests_total = Counter(
    "requests",
    "HTTP requests served",
    ["method", "path", "status"],
    namespace="http",
    registry=REGISTRY,
)
http_request_duration_seconds = Histogram(
    "request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
    namespace="http",
    registry=REGISTRY,
)

webhooks_total = Counter(
    "webhooks",
    "Inbound GHL webhooks by canonical event and outcome",
    ["event", "outcome"],
    namespace="ghl",
    registry=REGISTRY,
)
sync_operations_total = Counter(
    "sync_operations",
    "Sync engine operations by entity, action and outcome",
    ["entity", "action", "outcome"],
    namespace="ghl",
    registry=REGISTRY,
)
token_refresh_total = Counter(
    "token_refresh",
    "Token refresh attempts by outcome",
    ["outcome"],
    namespace="ghl",
    registry=REGISTRY,
)
api_requests_total = Counter(
    "api_requests",
    "Outbound GHL API calls by method and status class",
    ["method", "status"],
    namespace="ghl",
    registry=REGISTRY,
)
jobs_total = Counter(
    "jobs",
    "Background job runs by final status",
    ["job_type", "status"],
    namespace="ghl",
    registry=REGISTRY,
)
job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Background job wall time",
    ["job_type"],
    namespace="ghl",
    buckets=_JOB_BUCKETS,
    registry=REGISTRY,
)


_TEMPLATE_PARAM_RE = re.compile(r"\{[^{}]+\}")
UNMATCHED_PATH = "unmatched"


def resolve_http_path_label(request: Request) -> str:
    """Route template with parameters collapsed to `{id}`; raw paths never become labels."""
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) if route is not None else None
    if not isinstance(template, str) or not template:
        return UNMATCHED_PATH
    return _TEMPLATE_PARAM_RE.sub("{id}", template)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_webhook(event: str, outcome: str) -> None:
    webhooks_total.labels(event=event, outcome=outcome).inc()


def observe_sync(entity: str, action: str, outcome: str) -> None:
    sync_operations_total.labels(entity=entity, action=action, outcome=outcome).inc()


def observe_token_refresh(outcome: str, count: int = 1) -> None:
    if count > 0:
        token_refresh_total.labels(outcome=outcome).inc(count)


def observe_api_request(method: str, status: int | None) -> None:
    status_class = "timeout" if status is None else f"{status // 100}xx"
    api_requests_total.labels(method=method, status=status_class).inc()


def observe_job(job_type: str, status: str, duration: float) -> None:
    jobs_total.labels(job_type=job_type, status=status).inc()
    job_duration_seconds.labels(job_type=job_type).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest(REGISTRY)


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
