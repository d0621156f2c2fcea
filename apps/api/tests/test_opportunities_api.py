from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.lifecycle.actor import ActorUser
from app.lifecycle.api import get_current_user
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {
    "crm.intakes.submit",
    "crm.leads.read",
    "crm.leads.triage",
    "crm.opportunities.read",
    "crm.opportunities.move",
    "crm.tasks.read",
    "crm.tasks.write",
    "crm.automation.read",
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
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "user1": ALL_PERMISSIONS,
        "viewer": {"crm.opportunities.read", "crm.tasks.read"},
    }
    state = {"current": "user1"}

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=f"{state['current']}-1",
            permissions=actors[state["current"]],
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


@pytest.fixture()
def stage_ids(client: tuple[TestClient, Callable[[str], None]]) -> dict[tuple[str, str], str]:
    test_client, _ = client
    for path in ("/api/crm/pipeline-stages/seed", "/api/crm/task-templates/seed", "/api/crm/stage-completion-mappings/seed"):
        assert test_client.post(path).status_code == 200
    stages = test_client.get("/api/crm/pipeline-stages")
    assert stages.status_code == 200
    return {(row["pipeline"], row["name"]): row["id"] for row in stages.json()}


@pytest.fixture()
def opportunity(client: tuple[TestClient, Callable[[str], None]], stage_ids: dict[tuple[str, str], str]) -> dict:
    test_client, _ = client
    intake = test_client.post(
        "/api/crm/intakes",
        json={
            "practice_area": "Probate",
            "first_name": "Grace",
            "last_name": "Hopper",
            "email": "grace@navy-mail.org",
        },
    )
    assert intake.status_code == 201
    accepted = test_client.post(f"/api/crm/leads/{intake.json()['id']}/accept")
    assert accepted.status_code == 200
    return accepted.json()["opportunity"]


def test_move_to_pipeline_and_rollback(
    client: tuple[TestClient, Callable[[str], None]],
    stage_ids: dict[tuple[str, str], str],
    opportunity: dict,
) -> None:
    test_client, _ = client
    target = stage_ids[("Main Lead Flow", "Pending Contact")]

    moved = test_client.post(
        f"/api/crm/opportunities/{opportunity['id']}/move-to-pipeline",
        json={"pipeline_id": "Main Lead Flow", "stage_id": target},
    )
    assert moved.status_code == 200
    body = moved.json()
    assert body["opportunity"]["stage_id"] == target
    assert body["tasks_created"] == 3
    assert body["stage_change"]["previous_stage"] == "Fresh Leads"

    changes = test_client.get(f"/api/crm/opportunities/{opportunity['id']}/stage-changes")
    assert changes.status_code == 200
    assert [row["new_stage"] for row in changes.json()] == ["Pending Contact", "Fresh Leads"]

    rolled_back = test_client.post(f"/api/crm/stage-changes/{body['stage_change']['id']}/rollback")
    assert rolled_back.status_code == 200
    assert rolled_back.json()["opportunity"]["stage_id"] == stage_ids[("Main Lead Flow", "Fresh Leads")]
    assert len(rolled_back.json()["deleted_task_ids"]) == 3

    tasks = test_client.get("/api/crm/tasks", params={"opportunity_id": opportunity["id"]})
    assert tasks.status_code == 200
    assert len(tasks.json()) == 5


def test_rollback_of_acceptance_returns_conflict(
    client: tuple[TestClient, Callable[[str], None]],
    opportunity: dict,
) -> None:
    test_client, _ = client
    changes = test_client.get(f"/api/crm/opportunities/{opportunity['id']}/stage-changes").json()

    response = test_client.post(f"/api/crm/stage-changes/{changes[0]['id']}/rollback")

    assert response.status_code == 409
    assert response.json()["code"] == "crm_stage_change_rollback_failed"


def test_move_to_stage_outside_pipeline_is_rejected(
    client: tuple[TestClient, Callable[[str], None]],
    stage_ids: dict[tuple[str, str], str],
    opportunity: dict,
) -> None:
    test_client, _ = client

    response = test_client.post(
        f"/api/crm/opportunities/{opportunity['id']}/move-to-stage",
        json={"stage_id": stage_ids[("Did Not Hire", "Cost Concerns")]},
        headers={"X-Correlation-Id": "corr-move-422"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "crm_opportunity_move_failed"
    assert body["correlation_id"] == "corr-move-422"
    assert body["details"]["stage_pipeline"] == "Did Not Hire"


def test_move_into_did_not_hire(
    client: tuple[TestClient, Callable[[str], None]],
    stage_ids: dict[tuple[str, str], str],
    opportunity: dict,
) -> None:
    test_client, _ = client

    response = test_client.post(
        f"/api/crm/opportunities/{opportunity['id']}/move-to-pipeline",
        json={
            "pipeline_id": "Did Not Hire",
            "stage_id": stage_ids[("Did Not Hire", "Hired Other Attorney")],
            "did_not_hire_point": "pre_contact",
        },
    )

    assert response.status_code == 200
    moved = response.json()["opportunity"]
    assert moved["pipeline_id"] == "Did Not Hire"
    assert moved["did_not_hire_reason"] == "Hired Other Attorney"
    assert moved["did_not_hire_point"] == "pre_contact"
    assert moved["did_not_hire_at"] is not None


def test_move_unknown_opportunity_returns_not_found(
    client: tuple[TestClient, Callable[[str], None]],
    stage_ids: dict[tuple[str, str], str],
) -> None:
    test_client, _ = client
    response = test_client.post(
        f"/api/crm/opportunities/{uuid.uuid4()}/move-to-pipeline",
        json={"pipeline_id": "Main Lead Flow", "stage_id": stage_ids[("Main Lead Flow", "Engaged")]},
    )
    assert response.status_code == 404
    assert response.json()["code"] == "crm_opportunity_move_failed"


def test_completing_final_follow_up_moves_to_did_not_hire(
    client: tuple[TestClient, Callable[[str], None]],
    stage_ids: dict[tuple[str, str], str],
    opportunity: dict,
) -> None:
    test_client, _ = client
    moved = test_client.post(
        f"/api/crm/opportunities/{opportunity['id']}/move-to-stage",
        json={"stage_id": stage_ids[("Main Lead Flow", "Pending Contact")]},
    )
    assert moved.status_code == 200
    tasks = test_client.get(
        "/api/crm/tasks",
        params={"opportunity_id": opportunity["id"], "completed": "false"},
    ).json()
    final = next(
        task
        for task in tasks
        if task["stage_id"] == stage_ids[("Main Lead Flow", "Pending Contact")] and task["task_number"] == 3
    )

    toggled = test_client.post(f"/api/crm/tasks/{final['id']}/toggle-complete")

    assert toggled.status_code == 200
    assert toggled.json() == {
        "task_id": final["id"],
        "completed": True,
        "opportunity_moved": True,
        "moved_to": {"pipeline": "Did Not Hire", "stage": "Follow-up Completed : Pending Contact"},
    }
    related = test_client.get(f"/api/crm/opportunities/{opportunity['id']}/related").json()
    assert related["opportunity"]["pipeline_id"] == "Did Not Hire"
    assert related["stage"]["name"] == "Follow-up Completed : Pending Contact"
    assert related["stage_changes"][0]["trigger"] == "automation"

    reopened = test_client.post(f"/api/crm/tasks/{final['id']}/toggle-complete")
    assert reopened.status_code == 200
    assert reopened.json()["opportunity_moved"] is False
    related = test_client.get(f"/api/crm/opportunities/{opportunity['id']}/related").json()
    assert related["opportunity"]["pipeline_id"] == "Did Not Hire"


def test_create_manual_task(
    client: tuple[TestClient, Callable[[str], None]],
    opportunity: dict,
) -> None:
    test_client, _ = client

    created = test_client.post(
        "/api/crm/tasks",
        json={"title": "Send parking directions", "opportunity_id": opportunity["id"], "priority": "Low"},
    )

    assert created.status_code == 201
    body = created.json()
    assert body["task_number"] is None
    assert body["contact_id"] == opportunity["contact_id"]
    assert body["status"] == "Pending"

    missing = test_client.post("/api/crm/tasks", json={"title": "Orphan", "opportunity_id": str(uuid.uuid4())})
    assert missing.status_code == 404
    assert missing.json()["code"] == "crm_task_create_failed"


def test_viewer_cannot_move_or_toggle(
    client: tuple[TestClient, Callable[[str], None]],
    stage_ids: dict[tuple[str, str], str],
    opportunity: dict,
) -> None:
    test_client, set_actor = client
    set_actor("viewer")

    move = test_client.post(
        f"/api/crm/opportunities/{opportunity['id']}/move-to-stage",
        json={"stage_id": stage_ids[("Main Lead Flow", "Engaged")]},
    )
    assert move.status_code == 403
    assert move.json()["code"] == "crm_opportunity_move_failed"

    tasks = test_client.get("/api/crm/tasks", params={"opportunity_id": opportunity["id"]}).json()
    toggle = test_client.post(f"/api/crm/tasks/{tasks[0]['id']}/toggle-complete")
    assert toggle.status_code == 403
    assert toggle.json()["code"] == "crm_task_toggle_failed"
