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

crm_stage_transitions_total = Counter(
    "crm_stage_transitions_total",
    "Total opportunity stage transitions by target pipeline and trigger",
    ["pipeline", "trigger"],
)

crm_stage_transition_duration_seconds = Histogram(
    "crm_stage_transition_duration_seconds",
    "Stage transition duration in seconds",
    ["trigger"],
)

crm_stage_rollbacks_total = Counter(
    "crm_stage_rollbacks_total",
    "Total stage change rollbacks by outcome",
    ["outcome"],
)

crm_tasks_generated_total = Counter(
    "crm_tasks_generated_total",
    "Total tasks generated from stage templates",
)

crm_task_toggles_total = Counter(
    "crm_task_toggles_total",
    "Total task completion toggles by resulting state",
    ["completed", "opportunity_moved"],
)

crm_lead_triage_total = Counter(
    "crm_lead_triage_total",
    "Total lead triage transitions",
    ["transition", "lead_status"],
)

crm_duplicate_matches_total = Counter(
    "crm_duplicate_matches_total",
    "Total duplicate matches by match type",
    ["match_type"],
)

crm_rate_limited_total = Counter(
    "crm_rate_limited_total",
    "Total CRM mutations rejected by the rate limiter by route group",
    ["route_group"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


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


def observe_stage_transition(pipeline: str, trigger: str, duration: float) -> None:
    crm_stage_transitions_total.labels(pipeline=pipeline, trigger=trigger).inc()
    crm_stage_transition_duration_seconds.labels(trigger=trigger).observe(duration)


def observe_stage_rollback(outcome: str) -> None:
    crm_stage_rollbacks_total.labels(outcome=outcome).inc()


def observe_tasks_generated(count: int) -> None:
    if count > 0:
        crm_tasks_generated_total.inc(count)


def observe_task_toggle(completed: bool, opportunity_moved: bool) -> None:
    crm_task_toggles_total.labels(
        completed=str(completed).lower(),
        opportunity_moved=str(opportunity_moved).lower(),
    ).inc()


def observe_lead_triage(transition: str, lead_status: str) -> None:
    crm_lead_triage_total.labels(transition=transition, lead_status=lead_status).inc()


def observe_duplicate_match(match_type: str) -> None:
    crm_duplicate_matches_total.labels(match_type=match_type).inc()


def observe_rate_limited(route_group: str) -> None:
    crm_rate_limited_total.labels(route_group=route_group).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
