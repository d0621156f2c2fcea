from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.database import Base
from app.lifecycle.actor import ActorUser
from app.lifecycle.automation import TaskAutomationEngine, TaskService
from app.lifecycle.errors import NotFoundError
from app.lifecycle.mappings import StageCompletionMappingService
from app.lifecycle.models import Contact, Opportunity, PipelineStage, StageChange, Task, as_utc
from app.lifecycle.schemas import StageCompletionMappingCreate, TaskCreate, TaskTemplateCreate
from app.lifecycle.templates import StageTemplateResolver, TaskTemplateService
from app.lifecycle.transitions import StageTransitionCoordinator


ACTOR = ActorUser(user_id="user-1", permissions={"crm.tasks.write"}, correlation_id="corr-automation")


class TickingClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def resolver() -> StageTemplateResolver:
    return StageTemplateResolver()


@pytest.fixture()
def templates(resolver: StageTemplateResolver) -> TaskTemplateService:
    return TaskTemplateService(resolver)


@pytest.fixture()
def mappings() -> StageCompletionMappingService:
    return StageCompletionMappingService()


@pytest.fixture()
def automation(resolver: StageTemplateResolver, mappings: StageCompletionMappingService) -> TaskAutomationEngine:
    return TaskAutomationEngine(resolver, mappings)


@pytest.fixture()
def coordinator(automation: TaskAutomationEngine) -> StageTransitionCoordinator:
    coordinator = StageTransitionCoordinator(
        automation,
        clock=TickingClock(datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)),
    )
    automation.bind_coordinator(coordinator)
    return coordinator


@pytest.fixture()
def stages(db_session: Session) -> dict[str, PipelineStage]:
    rows = {
        "fresh": PipelineStage(pipeline="Main Lead Flow", name="Fresh Leads", order=0),
        "scheduled_iv": PipelineStage(pipeline="Main Lead Flow", name="Scheduled I/V", order=5),
        "engagement": PipelineStage(pipeline="Main Lead Flow", name="Pending Engagement Lvl 1", order=7),
        "engaged": PipelineStage(pipeline="Main Lead Flow", name="Engaged", order=11),
        "dnh_no_show": PipelineStage(pipeline="Did Not Hire", name="Cancelled/No Show I/V", order=0),
    }
    db_session.add_all(rows.values())
    db_session.commit()
    return rows


@pytest.fixture()
def opportunity(db_session: Session, stages: dict[str, PipelineStage]) -> Opportunity:
    contact = Contact(first_name="Ada", last_name="Lovelace", email="ada@example.com")
    db_session.add(contact)
    db_session.flush()
    row = Opportunity(
        title="1 - Ada Lovelace",
        contact_id=contact.id,
        pipeline_id="Main Lead Flow",
        stage_id=stages["fresh"].id,
        practice_area="Estate Planning",
        tags=[],
    )
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture()
def engagement_automation(
    db_session: Session,
    templates: TaskTemplateService,
    mappings: StageCompletionMappingService,
    stages: dict[str, PipelineStage],
) -> None:
    templates.create_template(
        db_session,
        ACTOR,
        TaskTemplateCreate(stage_name="Pending Engagement Lvl 1", task_number=1, task_name="Send agreement"),
    )
    templates.create_template(
        db_session,
        ACTOR,
        TaskTemplateCreate(
            stage_name="Pending Engagement Lvl 1",
            task_number=2,
            task_name="Final Follow Up",
            due_date_value=7,
        ),
    )
    mappings.create_mapping(
        db_session,
        ACTOR,
        StageCompletionMappingCreate(
            source_stage_name="Pending Engagement Lvl 1",
            target_pipeline_id="Did Not Hire",
            target_stage_name="Cancelled/No Show I/V",
        ),
    )


def _task_by_number(session: Session, opportunity_id: uuid.UUID, task_number: int) -> Task:
    task = session.scalar(
        select(Task).where(Task.opportunity_id == opportunity_id, Task.task_number == task_number)
    )
    assert task is not None
    return task


def test_stage_entry_generates_one_task_per_active_template(
    db_session: Session,
    templates: TaskTemplateService,
    coordinator: StageTransitionCoordinator,
    stages: dict[str, PipelineStage],
    opportunity: Opportunity,
) -> None:
    templates.create_template(
        db_session,
        ACTOR,
        TaskTemplateCreate(stage_name="Scheduled I/V", task_number=1, task_name="Prepare", due_date_value=1),
    )
    templates.create_template(
        db_session,
        ACTOR,
        TaskTemplateCreate(stage_name="Scheduled I/V", task_number=2, task_name="Remind", due_date_value=3),
    )

    result = coordinator.move_to_pipeline(
        db_session,
        ACTOR,
        opportunity.id,
        "Main Lead Flow",
        stages["scheduled_iv"].id,
    )

    assert result.tasks_created == 2
    entered_at = as_utc(result.stage_change.created_at)
    tasks = db_session.scalars(select(Task).where(Task.opportunity_id == opportunity.id).order_by(Task.task_number)).all()
    assert [task.title for task in tasks] == ["Prepare", "Remind"]
    assert [as_utc(task.due_date) for task in tasks] == [entered_at + timedelta(days=1), entered_at + timedelta(days=3)]
    assert all(task.stage_id == stages["scheduled_iv"].id for task in tasks)
    assert all(task.contact_id == opportunity.contact_id for task in tasks)
    assert {str(task.id) for task in tasks} == {str(task_id) for task_id in result.stage_change.task_ids}


def test_stage_without_templates_creates_no_tasks(
    db_session: Session,
    coordinator: StageTransitionCoordinator,
    stages: dict[str, PipelineStage],
    opportunity: Opportunity,
) -> None:
    result = coordinator.move_to_pipeline(db_session, ACTOR, opportunity.id, "Main Lead Flow", stages["engaged"].id)

    assert result.tasks_created == 0
    assert result.stage_change.task_ids == []
    assert db_session.scalars(select(Task)).all() == []


@pytest.mark.usefixtures("engagement_automation")
def test_completing_triggering_task_moves_opportunity(
    db_session: Session,
    automation: TaskAutomationEngine,
    coordinator: StageTransitionCoordinator,
    stages: dict[str, PipelineStage],
    opportunity: Opportunity,
) -> None:
    coordinator.move_to_pipeline(db_session, ACTOR, opportunity.id, "Main Lead Flow", stages["engagement"].id)
    trigger = _task_by_number(db_session, opportunity.id, 2)
    events.published_events.clear()

    result = automation.toggle_complete(db_session, ACTOR, trigger.id)

    assert result.completed is True
    assert result.opportunity_moved is True
    assert result.moved_to is not None
    assert result.moved_to.pipeline == "Did Not Hire"
    assert result.moved_to.stage == "Cancelled/No Show I/V"

    db_session.refresh(opportunity)
    assert opportunity.pipeline_id == "Did Not Hire"
    assert opportunity.stage_id == stages["dnh_no_show"].id
    assert opportunity.did_not_hire_reason == "Cancelled/No Show I/V"
    assert opportunity.did_not_hire_at is not None

    latest = db_session.scalar(
        select(StageChange)
        .where(StageChange.opportunity_id == opportunity.id)
        .order_by(StageChange.sequence.desc())
        .limit(1)
    )
    assert latest is not None
    assert latest.trigger == "automation"
    assert latest.previous_stage == "Pending Engagement Lvl 1"

    event_types = [item["event_type"] for item in events.published_events]
    assert event_types == ["crm.task.completed", "crm.opportunity.stage_changed"]
    assert events.published_events[-1]["payload"]["trigger"] == "automation"
    assert all(item["correlation_id"] == "corr-automation" for item in events.published_events)


@pytest.mark.usefixtures("engagement_automation")
def test_reopening_triggering_task_does_not_move_back(
    db_session: Session,
    automation: TaskAutomationEngine,
    coordinator: StageTransitionCoordinator,
    stages: dict[str, PipelineStage],
    opportunity: Opportunity,
) -> None:
    coordinator.move_to_pipeline(db_session, ACTOR, opportunity.id, "Main Lead Flow", stages["engagement"].id)
    trigger = _task_by_number(db_session, opportunity.id, 2)
    automation.toggle_complete(db_session, ACTOR, trigger.id)

    reopened = automation.toggle_complete(db_session, ACTOR, trigger.id)

    assert reopened.completed is False
    assert reopened.opportunity_moved is False
    assert reopened.moved_to is None
    db_session.refresh(trigger)
    assert trigger.status == "Pending"
    assert trigger.completed_at is None
    db_session.refresh(opportunity)
    assert opportunity.pipeline_id == "Did Not Hire"
    assert events.published_events[-1]["event_type"] == "crm.task.reopened"


@pytest.mark.usefixtures("engagement_automation")
def test_non_triggering_task_does_not_move(
    db_session: Session,
    automation: TaskAutomationEngine,
    coordinator: StageTransitionCoordinator,
    stages: dict[str, PipelineStage],
    opportunity: Opportunity,
) -> None:
    coordinator.move_to_pipeline(db_session, ACTOR, opportunity.id, "Main Lead Flow", stages["engagement"].id)
    first = _task_by_number(db_session, opportunity.id, 1)

    result = automation.toggle_complete(db_session, ACTOR, first.id)

    assert result.completed is True
    assert result.opportunity_moved is False
    db_session.refresh(first)
    assert first.status == "Completed"
    assert first.completed_at is not None
    db_session.refresh(opportunity)
    assert opportunity.stage_id == stages["engagement"].id


@pytest.mark.usefixtures("engagement_automation")
def test_manual_task_never_triggers_move(
    db_session: Session,
    automation: TaskAutomationEngine,
    coordinator: StageTransitionCoordinator,
    stages: dict[str, PipelineStage],
    opportunity: Opportunity,
) -> None:
    coordinator.move_to_pipeline(db_session, ACTOR, opportunity.id, "Main Lead Flow", stages["engagement"].id)
    manual = TaskService().create_task(
        db_session,
        ACTOR,
        TaskCreate(title="Call back about parking", opportunity_id=opportunity.id),
    )
    assert manual.task_number is None
    assert manual.contact_id == opportunity.contact_id

    result = automation.toggle_complete(db_session, ACTOR, manual.id)

    assert result.completed is True
    assert result.opportunity_moved is False
    db_session.refresh(opportunity)
    assert opportunity.stage_id == stages["engagement"].id


@pytest.mark.usefixtures("engagement_automation")
def test_task_from_a_left_stage_does_not_move(
    db_session: Session,
    automation: TaskAutomationEngine,
    coordinator: StageTransitionCoordinator,
    stages: dict[str, PipelineStage],
    opportunity: Opportunity,
) -> None:
    coordinator.move_to_pipeline(db_session, ACTOR, opportunity.id, "Main Lead Flow", stages["engagement"].id)
    stale = _task_by_number(db_session, opportunity.id, 2)
    coordinator.move_to_pipeline(db_session, ACTOR, opportunity.id, "Main Lead Flow", stages["engaged"].id)

    result = automation.toggle_complete(db_session, ACTOR, stale.id)

    assert result.opportunity_moved is False
    db_session.refresh(opportunity)
    assert opportunity.stage_id == stages["engaged"].id


@pytest.mark.usefixtures("engagement_automation")
def test_inactive_mapping_does_not_move(
    db_session: Session,
    automation: TaskAutomationEngine,
    mappings: StageCompletionMappingService,
    coordinator: StageTransitionCoordinator,
    stages: dict[str, PipelineStage],
    opportunity: Opportunity,
) -> None:
    mapping = mappings.list_mappings(db_session)[0]
    mappings.toggle_active(db_session, ACTOR, mapping.id)
    coordinator.move_to_pipeline(db_session, ACTOR, opportunity.id, "Main Lead Flow", stages["engagement"].id)
    trigger = _task_by_number(db_session, opportunity.id, 2)

    result = automation.toggle_complete(db_session, ACTOR, trigger.id)

    assert result.completed is True
    assert result.opportunity_moved is False


def test_toggle_unknown_task_raises_not_found(db_session: Session, automation: TaskAutomationEngine) -> None:
    with pytest.raises(NotFoundError):
        automation.toggle_complete(db_session, ACTOR, uuid.uuid4())


def test_create_task_rejects_unknown_opportunity(db_session: Session) -> None:
    with pytest.raises(NotFoundError):
        TaskService().create_task(db_session, ACTOR, TaskCreate(title="Orphan", opportunity_id=uuid.uuid4()))


def test_list_tasks_filters_by_completion(
    db_session: Session,
    automation: TaskAutomationEngine,
    opportunity: Opportunity,
) -> None:
    service = TaskService()
    done = service.create_task(db_session, ACTOR, TaskCreate(title="Done", opportunity_id=opportunity.id))
    service.create_task(db_session, ACTOR, TaskCreate(title="Open", opportunity_id=opportunity.id))
    automation.toggle_complete(db_session, ACTOR, done.id)

    completed = service.list_tasks(db_session, opportunity_id=opportunity.id, completed=True)
    pending = service.list_tasks(db_session, opportunity_id=opportunity.id, completed=False)

    assert [task.title for task in completed] == ["Done"]
    assert [task.title for task in pending] == ["Open"]
