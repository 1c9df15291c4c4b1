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

automation_jobs_total = Counter(
    "automation_jobs_total",
    "Total automation background jobs by status",
    ["job_type", "status"],
)

automation_job_duration_seconds = Histogram(
    "automation_job_duration_seconds",
    "Automation background job duration in seconds",
    ["job_type"],
)

automation_transitions_total = Counter(
    "automation_transitions_total",
    "Deal automation run transitions by resulting status",
    ["status"],
)

automation_skips_total = Counter(
    "automation_skips_total",
    "Stage entries that did not start an automation, by reason",
    ["reason"],
)

automation_flow_failures_total = Counter(
    "automation_flow_failures_total",
    "Flow runner failures while starting or cancelling flows",
    ["operation"],
)

automation_sweep_outcomes_total = Counter(
    "automation_sweep_outcomes_total",
    "Timeout sweep outcomes per candidate run",
    ["outcome"],
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
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_job(job_type: str, status: str, duration: float) -> None:
    automation_jobs_total.labels(job_type=job_type, status=status).inc()
    automation_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_automation_transition(status: str) -> None:
    automation_transitions_total.labels(status=status).inc()


def observe_automation_skip(reason: str) -> None:
    automation_skips_total.labels(reason=reason).inc()


def observe_flow_failure(operation: str) -> None:
    automation_flow_failures_total.labels(operation=operation).inc()


def observe_sweep_outcome(outcome: str) -> None:
    automation_sweep_outcomes_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
