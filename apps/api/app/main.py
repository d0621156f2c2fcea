from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.core.database import SessionLocal, get_db
from app.lifecycle.actor import SYSTEM_ACTOR
from app.lifecycle.queries import seed_all_defaults
from app.lifecycle.service import pipeline_stage_service
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_lifecycle_event_types = [
    "crm.intake.submitted",
    "crm.lead.accepted",
    "crm.lead.ignored",
    "crm.lead.restored",
    "crm.lead.duplicate_removed",
    "crm.lead.duplicate_updated",
    "crm.lead.marked_new",
    "crm.opportunity.stage_changed",
    "crm.stage_change.rolled_back",
    "crm.task.completed",
    "crm.task.reopened",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_lifecycle_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
    logger.info(
        "domain_event.published",
        extra={
            "transition": event.name,
            "intake_id": payload.get("intake_id"),
            "opportunity_id": payload.get("opportunity_id"),
            "stage_change_id": payload.get("stage_change_id"),
            "task_id": payload.get("task_id"),
        },
    )


@contextmanager
def _startup_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _seed_defaults() -> None:
    with _startup_session_scope() as session:
        for result in seed_all_defaults(session, SYSTEM_ACTOR, pipeline_stage_service):
            logger.info("seed.completed", extra={"task_count": result.created})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _lifecycle_event_types:
            event_bus.subscribe(event_name, _on_lifecycle_event)
        _subscriptions_registered = True
    if get_settings().seed_defaults_on_startup:
        _seed_defaults()
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()
app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
