from __future__ import annotations

import uuid
from collections import OrderedDict

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.core.database import atomic
from app.lifecycle.actor import ActorUser, snapshot
from app.lifecycle.errors import ConflictError
from app.lifecycle.mappings import StageCompletionMappingService
from app.lifecycle.models import (
    Appointment,
    Contact,
    Document,
    Intake,
    Invoice,
    Opportunity,
    PipelineStage,
    StageChange,
    Task,
    utcnow,
)
from app.lifecycle.repositories import opportunity_repository, stage_repository
from app.lifecycle.schemas import (
    AppointmentRead,
    ContactRead,
    ContactSummary,
    DocumentRead,
    DuplicateLeadListItem,
    IntakeRead,
    InvoiceRead,
    LeadListItem,
    OpportunityRead,
    OpportunitySummary,
    OpportunityWithRelated,
    PipelineGroupRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageUpdate,
    SeedResult,
    StageChangeRead,
    TaskRead,
)
from app.lifecycle.seeds import DEFAULT_STAGES
from app.lifecycle.templates import TaskTemplateService


def clamp_limit(limit: int | None) -> int:
    settings = get_settings()
    if limit is None or limit <= 0:
        return settings.lead_list_default_limit
    return min(limit, settings.lead_list_max_limit)


class LeadQueryService:
    def list_pending(self, session: Session, limit: int | None = None) -> list[LeadListItem]:
        return self._list_by_status(session, "pending", limit)

    def list_ignored(self, session: Session, limit: int | None = None) -> list[LeadListItem]:
        return self._list_by_status(session, "ignored", limit)

    def list_duplicates(self, session: Session, limit: int | None = None) -> list[DuplicateLeadListItem]:
        intakes = self._intakes(session, "duplicate", limit)
        items: list[DuplicateLeadListItem] = []
        for intake in intakes:
            contact = session.get(Contact, intake.duplicate_of_contact_id) if intake.duplicate_of_contact_id else None
            opportunity = (
                opportunity_repository.latest_for_contact(session, contact.id) if contact is not None else None
            )
            items.append(
                DuplicateLeadListItem(
                    intake=IntakeRead.model_validate(intake),
                    duplicate_contact=ContactSummary.model_validate(contact) if contact is not None else None,
                    duplicate_opportunity=(
                        OpportunitySummary.model_validate(opportunity) if opportunity is not None else None
                    ),
                )
            )
        return items

    def _list_by_status(self, session: Session, lead_status: str, limit: int | None) -> list[LeadListItem]:
        items: list[LeadListItem] = []
        for intake in self._intakes(session, lead_status, limit):
            contact = session.get(Contact, intake.contact_id) if intake.contact_id else None
            items.append(
                LeadListItem(
                    intake=IntakeRead.model_validate(intake),
                    contact=ContactSummary.model_validate(contact) if contact is not None else None,
                )
            )
        return items

    def _intakes(self, session: Session, lead_status: str, limit: int | None) -> list[Intake]:
        stmt = (
            select(Intake)
            .where(Intake.lead_status == lead_status)
            .order_by(Intake.created_at.desc(), Intake.id.desc())
            .limit(clamp_limit(limit))
        )
        return list(session.scalars(stmt))


class OpportunityQueryService:
    def get_with_related(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityWithRelated:
        opportunity = opportunity_repository.get(session, opportunity_id)
        stage = session.get(PipelineStage, opportunity.stage_id)
        contact = session.get(Contact, opportunity.contact_id)
        intake = session.get(Intake, opportunity.intake_id) if opportunity.intake_id else None

        tasks = session.scalars(
            select(Task)
            .where(Task.opportunity_id == opportunity.id)
            .order_by(Task.due_date.asc().nulls_last(), Task.task_number.asc(), Task.created_at.asc())
        )
        appointments = session.scalars(
            select(Appointment).where(Appointment.opportunity_id == opportunity.id).order_by(Appointment.starts_at.asc())
        )
        documents = session.scalars(
            select(Document).where(Document.opportunity_id == opportunity.id).order_by(Document.created_at.desc())
        )
        invoices = session.scalars(
            select(Invoice).where(Invoice.opportunity_id == opportunity.id).order_by(Invoice.issued_at.desc())
        )
        changes = session.scalars(
            select(StageChange)
            .where(StageChange.opportunity_id == opportunity.id)
            .order_by(StageChange.sequence.desc())
        )
        return OpportunityWithRelated(
            opportunity=OpportunityRead.model_validate(opportunity),
            stage=PipelineStageRead.model_validate(stage) if stage is not None else None,
            contact=ContactRead.model_validate(contact) if contact is not None else None,
            intake=IntakeRead.model_validate(intake) if intake is not None else None,
            tasks=[TaskRead.model_validate(row) for row in tasks],
            appointments=[AppointmentRead.model_validate(row) for row in appointments],
            documents=[DocumentRead.model_validate(row) for row in documents],
            invoices=[InvoiceRead.model_validate(row) for row in invoices],
            stage_changes=[StageChangeRead.model_validate(row) for row in changes],
        )


class PipelineStageService:
    entity_type = "crm.pipeline_stage"

    def __init__(self, templates: TaskTemplateService, mappings: StageCompletionMappingService) -> None:
        self.templates = templates
        self.mappings = mappings

    def list_stages(self, session: Session, pipeline: str | None = None) -> list[PipelineStageRead]:
        return [PipelineStageRead.model_validate(row) for row in stage_repository.list_stages(session, pipeline)]

    def list_pipelines(self, session: Session) -> list[PipelineGroupRead]:
        groups: OrderedDict[str, list[PipelineStageRead]] = OrderedDict()
        for stage in stage_repository.list_stages(session):
            groups.setdefault(stage.pipeline, []).append(PipelineStageRead.model_validate(stage))
        return [PipelineGroupRead(name=name, stage_count=len(stages), stages=stages) for name, stages in groups.items()]

    def create_stage(self, session: Session, actor_user: ActorUser, dto: PipelineStageCreate) -> PipelineStageRead:
        try:
            with atomic(session):
                stage = PipelineStage(
                    pipeline=dto.pipeline.strip(),
                    name=dto.name.strip(),
                    order=dto.order,
                    color=dto.color,
                )
                session.add(stage)
                session.flush()
                audit.record(
                    actor_user_id=actor_user.user_id,
                    entity_type=self.entity_type,
                    entity_id=str(stage.id),
                    action="create",
                    before=None,
                    after=snapshot(PipelineStageRead, stage),
                    correlation_id=actor_user.correlation_id,
                )
        except SQLAlchemyIntegrityError as exc:
            raise ConflictError(
                "stage name or order already used in pipeline",
                details={"pipeline": dto.pipeline, "name": dto.name, "order": dto.order},
            ) from exc
        return PipelineStageRead.model_validate(stage)

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: uuid.UUID,
        dto: PipelineStageUpdate,
    ) -> PipelineStageRead:
        """Rename, reorder or recolor a stage. Bound templates and mappings pick up a new name."""
        try:
            with atomic(session):
                stage = stage_repository.get(session, stage_id)
                before = snapshot(PipelineStageRead, stage)
                changes = dto.model_dump(exclude_unset=True)
                renamed = "name" in changes and changes["name"] is not None and changes["name"].strip() != stage.name
                if changes.get("name"):
                    stage.name = changes["name"].strip()
                if changes.get("order") is not None:
                    stage.order = changes["order"]
                if "color" in changes:
                    stage.color = changes["color"]
                stage.updated_at = utcnow()
                session.flush()
                if renamed:
                    self.templates.refresh_stage_name(session, stage)
                    self.mappings.refresh_stage_name(session, stage)
                audit.record(
                    actor_user_id=actor_user.user_id,
                    entity_type=self.entity_type,
                    entity_id=str(stage.id),
                    action="update",
                    before=before,
                    after=snapshot(PipelineStageRead, stage),
                    correlation_id=actor_user.correlation_id,
                )
        except SQLAlchemyIntegrityError as exc:
            raise ConflictError("stage name or order already used in pipeline", details={"stage_id": str(stage_id)}) from exc
        return PipelineStageRead.model_validate(stage)

    def seed_defaults(self, session: Session, actor_user: ActorUser) -> SeedResult:
        with atomic(session):
            existing = session.scalar(select(func.count()).select_from(PipelineStage)) or 0
            if existing:
                return SeedResult(created=0, message="Pipeline stages already exist")

            created = 0
            for pipeline, names in DEFAULT_STAGES.items():
                for order, name in enumerate(names):
                    session.add(PipelineStage(pipeline=pipeline, name=name, order=order))
                    created += 1
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id="*",
                action="seed",
                before=None,
                after={"created": created},
                correlation_id=actor_user.correlation_id,
            )
        return SeedResult(created=created, message="Seeded default pipeline stages")


def seed_all_defaults(session: Session, actor_user: ActorUser, stages: PipelineStageService) -> list[SeedResult]:
    """Seed stages first so templates and mappings can bind to stage ids."""
    return [
        stages.seed_defaults(session, actor_user),
        stages.templates.seed_defaults(session, actor_user),
        stages.mappings.seed_defaults(session, actor_user),
    ]
