"""Per-user throttling of lifecycle mutations.

Mutating ``/api/crm`` calls are charged against a token bucket per user and
lifecycle area, so a burst of lead triage does not starve stage moves or task
toggles for the same user.
"""

from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import Settings, get_settings
from app.metrics import observe_rate_limited

logger = logging.getLogger("app.middleware.rate_limit")

# First path segment after /api/crm -> lifecycle area sharing one bucket.
ROUTE_GROUPS = {
    "intakes": "triage",
    "leads": "triage",
    "opportunities": "transitions",
    "stage-changes": "transitions",
    "tasks": "tasks",
    "pipelines": "automation",
    "pipeline-stages": "automation",
    "task-templates": "automation",
    "stage-completion-mappings": "automation",
}


@dataclass
class _Bucket:
    capacity: int
    tokens: float
    refilled_at: float = field(default_factory=time.monotonic)


class _TokenBucketLimiter:
    def __init__(self, window_seconds: int = 60) -> None:
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, key: tuple[str, str], capacity: int) -> int:
        """Spend one token; return 0 when allowed, else seconds until one is available."""
        if capacity <= 0:
            return self.window_seconds

        refill_per_second = capacity / float(self.window_seconds)
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or bucket.capacity != capacity:
                bucket = self._buckets[key] = _Bucket(capacity=capacity, tokens=float(capacity), refilled_at=now)

            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * refill_per_second)
            bucket.refilled_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1, math.ceil((1.0 - bucket.tokens) / refill_per_second))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = frozenset({"POST", "PUT", "PATCH", "DELETE"})
    path_prefix = "/api/crm"

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in self.mutating_methods
            or not path.startswith(self.path_prefix)
        ):
            return await call_next(request)

        user_id = _resolve_user_id(request, settings)
        route_group = route_group_for(path)
        retry_after = _limiter.take((user_id, route_group), _capacity_for(route_group, settings))
        if retry_after == 0:
            return await call_next(request)

        observe_rate_limited(route_group)
        logger.warning(
            "rate_limit.rejected",
            extra={"path": path, "route_group": route_group, "retry_after_seconds": retry_after},
        )
        return _rate_limited_response(request, retry_after)


def route_group_for(path: str) -> str:
    segments = [part for part in path.split("/") if part]
    if len(segments) < 3:
        return "crm"
    return ROUTE_GROUPS.get(segments[2], segments[2])


def _capacity_for(route_group: str, settings: Settings) -> int:
    return settings.rate_limit_group_limits.get(route_group, settings.rate_limit_crm_mutations_per_minute)


def _rate_limited_response(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or request.headers.get("x-correlation-id")
        or str(uuid.uuid4())
    )
    return JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "details": {"retry_after_seconds": retry_after},
            "correlation_id": correlation_id,
        },
        headers={"Retry-After": str(retry_after), "X-Correlation-Id": correlation_id},
    )


def _resolve_user_id(request: Request, settings: Settings) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        return "anonymous"
    try:
        claims: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return "anonymous"
    subject = claims.get("sub")
    return str(subject) if subject is not None else "anonymous"


def reset_rate_limiter() -> None:
    _limiter.clear()
