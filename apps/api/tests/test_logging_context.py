from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.lifecycle.actor import ActorUser
from app.lifecycle.api import get_current_user as lifecycle_get_current_user
from app.middleware.rate_limit import reset_rate_limiter
from app.main import app


ALL_PERMISSIONS = {
    "crm.intakes.submit",
    "crm.leads.read",
    "crm.leads.triage",
    "crm.opportunities.read",
    "crm.opportunities.move",
    "crm.automation.manage",
}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[lifecycle_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/crm/intakes/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/intakes/{intake_id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_lifecycle_logs_carry_request_correlation_id(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    for path in (
        "/api/crm/pipeline-stages/seed",
        "/api/crm/task-templates/seed",
        "/api/crm/stage-completion-mappings/seed",
    ):
        assert client.post(path).status_code == 200

    intake = client.post(
        "/api/crm/intakes",
        json={"practice_area": "Probate", "first_name": "Log", "last_name": "Lead", "phone": "555-010-0199"},
    )
    assert intake.status_code == 201

    accepted = client.post(f"/api/crm/leads/{intake.json()['id']}/accept", headers={"X-Correlation-Id": "log-accept-1"})
    assert accepted.status_code == 200
    opportunity_id = accepted.json()["opportunity"]["id"]

    triage_records = [record for record in caplog.records if record.name == "app.lifecycle.triage"]
    assert any(
        record.getMessage() == "lead_triage.transition"
        and getattr(record, "transition", None) == "accept"
        and getattr(record, "intake_id", None) == intake.json()["id"]
        and getattr(record, "correlation_id", None) == "log-accept-1"
        for record in triage_records
    )

    transition_records = [record for record in caplog.records if record.name == "app.lifecycle.transitions"]
    assert any(
        record.getMessage() == "stage_transition.applied"
        and getattr(record, "opportunity_id", None) == opportunity_id
        and getattr(record, "stage_name", None) == "Fresh Leads"
        and getattr(record, "task_count", None) == 5
        and getattr(record, "correlation_id", None) == "log-accept-1"
        for record in transition_records
    )


def test_rejected_transition_is_logged(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.post(
        f"/api/crm/opportunities/{uuid.uuid4()}/move-to-pipeline",
        json={"pipeline_id": "Main Lead Flow", "stage_id": str(uuid.uuid4())},
        headers={"X-Correlation-Id": "log-reject-1"},
    )
    assert response.status_code == 404

    assert any(
        record.name == "app.lifecycle.transitions"
        and record.getMessage() == "stage_transition.rejected"
        and getattr(record, "correlation_id", None) == "log-reject-1"
        for record in caplog.records
    )
