from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.database import Base
from app.lifecycle.actor import ActorUser, SYSTEM_ACTOR
from app.lifecycle.automation import TaskAutomationEngine
from app.lifecycle.dedup import DeduplicationMatcher
from app.lifecycle.errors import ConflictError, NotFoundError, ValidationError
from app.lifecycle.mappings import StageCompletionMappingService
from app.lifecycle.models import Appointment, Contact, Document, Intake, Opportunity, PipelineStage, Task
from app.lifecycle.queries import LeadQueryService, PipelineStageService, seed_all_defaults
from app.lifecycle.repositories import contact_repository
from app.lifecycle.schemas import IntakeSubmit
from app.lifecycle.templates import StageTemplateResolver, TaskTemplateService
from app.lifecycle.transitions import StageTransitionCoordinator
from app.lifecycle.triage import LeadTriageWorkflow


ACTOR = ActorUser(user_id="intake-1", permissions={"crm.leads.triage"}, correlation_id="corr-triage")


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
def triage() -> LeadTriageWorkflow:
    resolver = StageTemplateResolver()
    automation = TaskAutomationEngine(resolver, StageCompletionMappingService())
    coordinator = StageTransitionCoordinator(
        automation,
        clock=TickingClock(datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)),
    )
    automation.bind_coordinator(coordinator)
    return LeadTriageWorkflow(DeduplicationMatcher(), coordinator)


@pytest.fixture()
def seeded(db_session: Session) -> None:
    resolver = StageTemplateResolver()
    stages = PipelineStageService(TaskTemplateService(resolver), StageCompletionMappingService())
    seed_all_defaults(db_session, SYSTEM_ACTOR, stages)
    audit.audit_entries.clear()


def _contact(
    session: Session,
    *,
    email: str | None = None,
    phone: str | None = None,
    lead_status: str | None = None,
) -> Contact:
    contact = Contact(first_name="Existing", last_name="Client", lead_status=lead_status)
    contact_repository.set_identity(contact, email=email, phone=phone)
    session.add(contact)
    session.commit()
    return contact


def _submit(triage: LeadTriageWorkflow, session: Session, **overrides: object) -> uuid.UUID:
    payload = {
        "practice_area": "Estate Planning",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "a@x.com",
    }
    payload.update(overrides)
    return triage.submit(session, ACTOR, IntakeSubmit(**payload)).id


def _count(session: Session, model: type) -> int:
    return session.scalar(select(func.count()).select_from(model)) or 0


def test_submit_without_collision_is_pending(db_session: Session, triage: LeadTriageWorkflow) -> None:
    intake = triage.submit(
        db_session,
        ACTOR,
        IntakeSubmit(practice_area="Estate Planning", first_name="Ada", last_name="Lovelace", email="a@x.com"),
    )

    assert intake.lead_status == "pending"
    assert intake.duplicate_of_contact_id is None
    assert intake.duplicate_match_type is None
    assert events.published_events[-1]["event_type"] == "crm.intake.submitted"


def test_submit_with_matching_email_is_duplicate(db_session: Session, triage: LeadTriageWorkflow) -> None:
    existing = _contact(db_session, email="A@X.com")

    intake = triage.get_intake(db_session, _submit(triage, db_session))

    assert intake.lead_status == "duplicate"
    assert intake.duplicate_match_type == "email"
    assert intake.duplicate_of_contact_id == existing.id


def test_submit_matching_email_and_phone_reports_both(db_session: Session, triage: LeadTriageWorkflow) -> None:
    existing = _contact(db_session, email="a@x.com", phone="(555) 010-2000")

    intake = triage.get_intake(db_session, _submit(triage, db_session, phone="555.010.2000"))

    assert intake.duplicate_match_type == "both"
    assert intake.duplicate_of_contact_id == existing.id


def test_check_duplicate_returns_matching_contact(db_session: Session, triage: LeadTriageWorkflow) -> None:
    existing = _contact(db_session, phone="5550102000")

    result = triage.check_duplicate(db_session, None, "555-010-2000")

    assert result.has_duplicate is True
    assert result.match_type == "phone"
    assert result.matching_contact is not None
    assert result.matching_contact.id == existing.id
    assert triage.check_duplicate(db_session, None, None).has_duplicate is False


def test_update_duplicate_email_to_unique_value_clears_markers(db_session: Session, triage: LeadTriageWorkflow) -> None:
    _contact(db_session, email="a@x.com")
    intake_id = _submit(triage, db_session)

    result = triage.update_duplicate_email(db_session, ACTOR, intake_id, "unique@new.com")

    assert result.still_duplicate is False
    assert result.intake.lead_status == "pending"
    assert result.intake.email == "unique@new.com"
    assert result.intake.duplicate_of_contact_id is None
    assert result.intake.duplicate_match_type is None
    assert events.published_events[-1]["event_type"] == "crm.lead.duplicate_updated"


def test_update_duplicate_phone_that_still_collides_stays_duplicate(
    db_session: Session,
    triage: LeadTriageWorkflow,
) -> None:
    first = _contact(db_session, email="a@x.com")
    second = _contact(db_session, phone="5559990000")
    intake_id = _submit(triage, db_session)

    result = triage.update_duplicate_phone(db_session, ACTOR, intake_id, "555 999 0000")

    # The email collision with the first contact is still there.
    assert result.still_duplicate is True
    assert result.intake.lead_status == "duplicate"
    assert result.intake.duplicate_match_type == "email"
    assert result.intake.duplicate_of_contact_id == first.id
    assert result.intake.duplicate_of_contact_id != second.id


def test_duplicate_updates_require_duplicate_status_and_value(db_session: Session, triage: LeadTriageWorkflow) -> None:
    intake_id = _submit(triage, db_session)

    with pytest.raises(ConflictError):
        triage.update_duplicate_email(db_session, ACTOR, intake_id, "other@x.com")
    with pytest.raises(ValidationError):
        triage.update_duplicate_phone(db_session, ACTOR, intake_id, "   ")


@pytest.mark.usefixtures("seeded")
def test_accept_lead_creates_contact_opportunity_and_tasks(db_session: Session, triage: LeadTriageWorkflow) -> None:
    intake_id = _submit(triage, db_session, phone="(555) 222-3333", referral_source="Google")
    events.published_events.clear()

    result = triage.accept_lead(db_session, ACTOR, intake_id)

    assert result.intake.lead_status == "accepted"
    assert result.intake.contact_id == result.contact.id
    assert result.intake.opportunity_id == result.opportunity.id
    assert result.contact.email == "a@x.com"
    assert result.contact.source == "Intake"
    assert result.contact.lead_status == "accepted"

    contact = db_session.get(Contact, result.contact.id)
    assert contact is not None
    assert contact.phone_normalized == "5552223333"

    fresh_leads = db_session.scalar(
        select(PipelineStage).where(PipelineStage.pipeline == "Main Lead Flow", PipelineStage.name == "Fresh Leads")
    )
    assert fresh_leads is not None
    assert result.opportunity.title == "1 - Ada Lovelace"
    assert result.opportunity.pipeline_id == "Main Lead Flow"
    assert result.opportunity.stage_id == fresh_leads.id
    assert result.opportunity.source == "Google"
    assert result.opportunity.practice_area == "Estate Planning"

    assert result.stage_change.trigger == "lead_accepted"
    assert result.stage_change.previous_stage_id is None
    tasks = db_session.scalars(select(Task).where(Task.opportunity_id == result.opportunity.id)).all()
    assert len(tasks) == 5
    assert {task.id for task in tasks} == set(result.stage_change.task_ids)

    event_types = [item["event_type"] for item in events.published_events]
    assert event_types == ["crm.lead.accepted", "crm.opportunity.stage_changed"]
    assert all(item["correlation_id"] == "corr-triage" for item in events.published_events)


@pytest.mark.usefixtures("seeded")
def test_accept_lead_twice_conflicts(db_session: Session, triage: LeadTriageWorkflow) -> None:
    intake_id = _submit(triage, db_session)
    triage.accept_lead(db_session, ACTOR, intake_id)

    with pytest.raises(ConflictError):
        triage.accept_lead(db_session, ACTOR, intake_id)

    assert _count(db_session, Opportunity) == 1
    assert _count(db_session, Contact) == 1


@pytest.mark.usefixtures("seeded")
def test_accept_lead_links_existing_contact(db_session: Session, triage: LeadTriageWorkflow) -> None:
    existing = _contact(db_session, email="client@firm-mail.com")
    intake_id = _submit(triage, db_session, email="client@firm-mail.com", contact_id=existing.id)

    result = triage.accept_lead(db_session, ACTOR, intake_id)

    assert result.contact.id == existing.id
    assert result.opportunity.contact_id == existing.id
    assert result.opportunity.title == "1 - Existing Client"
    assert _count(db_session, Contact) == 1


@pytest.mark.usefixtures("seeded")
def test_accept_duplicate_lead_conflicts(db_session: Session, triage: LeadTriageWorkflow) -> None:
    _contact(db_session, email="a@x.com")
    intake_id = _submit(triage, db_session)

    with pytest.raises(ConflictError):
        triage.accept_lead(db_session, ACTOR, intake_id)


def test_accept_without_entry_stage_rolls_back(db_session: Session, triage: LeadTriageWorkflow) -> None:
    intake_id = _submit(triage, db_session)

    with pytest.raises(NotFoundError):
        triage.accept_lead(db_session, ACTOR, intake_id)

    assert triage.get_intake(db_session, intake_id).lead_status == "pending"
    assert _count(db_session, Contact) == 0
    assert _count(db_session, Opportunity) == 0


def test_ignore_and_restore(db_session: Session, triage: LeadTriageWorkflow) -> None:
    intake_id = _submit(triage, db_session)

    assert triage.ignore_lead(db_session, ACTOR, intake_id).lead_status == "ignored"
    with pytest.raises(ConflictError):
        triage.ignore_lead(db_session, ACTOR, intake_id)

    assert triage.restore_lead(db_session, ACTOR, intake_id).lead_status == "pending"
    published = len(events.published_events)
    assert triage.restore_lead(db_session, ACTOR, intake_id).lead_status == "pending"
    assert len(events.published_events) == published


@pytest.mark.usefixtures("seeded")
def test_create_as_new_clears_markers_and_accept_creates_separate_contact(
    db_session: Session,
    triage: LeadTriageWorkflow,
) -> None:
    existing = _contact(db_session, email="a@x.com")
    intake_id = _submit(triage, db_session)

    restored = triage.create_as_new_lead(db_session, ACTOR, intake_id)
    assert restored.lead_status == "pending"
    assert restored.duplicate_of_contact_id is None
    assert restored.duplicate_match_type is None
    assert events.published_events[-1]["event_type"] == "crm.lead.marked_new"

    accepted = triage.accept_lead(db_session, ACTOR, intake_id)
    assert accepted.contact.id != existing.id
    assert _count(db_session, Contact) == 2


def test_remove_duplicate_detaches_references_and_deletes_intake(
    db_session: Session,
    triage: LeadTriageWorkflow,
) -> None:
    _contact(db_session, email="a@x.com")
    intake_id = _submit(triage, db_session)
    appointment = Appointment(
        intake_id=intake_id,
        title="Discovery call",
        type="Discovery",
        starts_at=datetime(2026, 10, 20, 15, 0, tzinfo=timezone.utc),
        status="Scheduled",
    )
    document = Document(intake_id=intake_id, name="intake.pdf", storage_key="intakes/intake.pdf")
    db_session.add_all([appointment, document])
    db_session.commit()

    result = triage.remove_duplicate_lead(db_session, ACTOR, intake_id)

    assert result.detached_appointments == 1
    assert result.detached_documents == 1
    assert db_session.get(Intake, intake_id) is None
    db_session.refresh(appointment)
    db_session.refresh(document)
    assert appointment.intake_id is None
    assert document.intake_id is None
    assert events.published_events[-1]["event_type"] == "crm.lead.duplicate_removed"

    with pytest.raises(NotFoundError):
        triage.remove_duplicate_lead(db_session, ACTOR, intake_id)


def test_remove_duplicate_rejects_pending_lead(db_session: Session, triage: LeadTriageWorkflow) -> None:
    intake_id = _submit(triage, db_session)

    with pytest.raises(ConflictError):
        triage.remove_duplicate_lead(db_session, ACTOR, intake_id)

    assert db_session.get(Intake, intake_id) is not None


def test_scan_flags_pending_intakes_that_now_collide(db_session: Session, triage: LeadTriageWorkflow) -> None:
    first = _submit(triage, db_session)
    _submit(triage, db_session, email="someone@else.org", first_name="Other")
    existing = _contact(db_session, email="a@x.com", lead_status="accepted")

    result = triage.scan_for_duplicates(db_session, ACTOR)

    assert result.scanned == 2
    assert result.duplicates_found == 1
    flagged = triage.get_intake(db_session, first)
    assert flagged.lead_status == "duplicate"
    assert flagged.duplicate_of_contact_id == existing.id
    assert events.published_events[-1]["event_type"] == "crm.lead.duplicate_updated"


def test_scan_only_matches_accepted_contacts(db_session: Session, triage: LeadTriageWorkflow) -> None:
    first = _submit(triage, db_session)
    _contact(db_session, email="a@x.com")

    result = triage.scan_for_duplicates(db_session, ACTOR)

    assert result.duplicates_found == 0
    assert triage.get_intake(db_session, first).lead_status == "pending"


def test_scan_matches_contact_with_an_opportunity(db_session: Session, triage: LeadTriageWorkflow) -> None:
    first = _submit(triage, db_session, email=None, phone="(555) 010-2000")
    existing = _contact(db_session, phone="555-010-2000")
    stage = PipelineStage(pipeline="Main Lead Flow", name="Fresh Leads", order=0)
    db_session.add(stage)
    db_session.flush()
    db_session.add(
        Opportunity(
            title="1 - Existing Client",
            contact_id=existing.id,
            pipeline_id="Main Lead Flow",
            stage_id=stage.id,
            tags=[],
        )
    )
    db_session.commit()

    result = triage.scan_for_duplicates(db_session, ACTOR)

    assert result.duplicates_found == 1
    flagged = triage.get_intake(db_session, first)
    assert flagged.duplicate_of_contact_id == existing.id
    assert flagged.duplicate_match_type == "phone"


def test_scan_leaves_leads_marked_as_new_alone(db_session: Session, triage: LeadTriageWorkflow) -> None:
    _contact(db_session, email="a@x.com", lead_status="accepted")
    intake_id = _submit(triage, db_session)
    assert triage.get_intake(db_session, intake_id).lead_status == "duplicate"

    restored = triage.create_as_new_lead(db_session, ACTOR, intake_id)
    assert restored.duplicate_override_at is not None

    result = triage.scan_for_duplicates(db_session, ACTOR)

    assert result.scanned == 0
    assert result.duplicates_found == 0
    intake = triage.get_intake(db_session, intake_id)
    assert intake.lead_status == "pending"
    assert intake.duplicate_of_contact_id is None


def test_lead_lists_are_newest_first_and_limited(db_session: Session, triage: LeadTriageWorkflow) -> None:
    ids = [_submit(triage, db_session, email=f"lead{index}@x.com") for index in range(3)]
    _contact(db_session, email="dupe@x.com")
    duplicate_id = _submit(triage, db_session, email="dupe@x.com")
    queries = LeadQueryService()

    pending = queries.list_pending(db_session, limit=2)
    assert len(pending) == 2
    assert {item.intake.id for item in pending} <= set(ids)

    duplicates = queries.list_duplicates(db_session)
    assert [item.intake.id for item in duplicates] == [duplicate_id]
    assert duplicates[0].duplicate_contact is not None
    assert duplicates[0].duplicate_opportunity is None
