from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from app import audit
from app.core.database import atomic
from app.lifecycle.actor import ActorUser, snapshot
from app.lifecycle.errors import NotFoundError
from app.lifecycle.models import PipelineStage, TaskTemplate, utcnow
from app.lifecycle.repositories import stage_repository
from app.lifecycle.schemas import SeedResult, TaskTemplateCreate, TaskTemplateRead, TaskTemplateUpdate
from app.lifecycle.seeds import DEFAULT_TASK_TEMPLATES

logger = logging.getLogger("app.lifecycle.automation")

_DUE_DATE_UNITS = {"minutes", "hours", "days", "weeks"}


def compute_due_date(entered_at: datetime, value: int, unit: str | None) -> datetime:
    """Offset ``entered_at`` by ``value`` units; anything unrecognised counts as days."""
    normalized = (unit or "").strip().lower()
    if normalized not in _DUE_DATE_UNITS:
        normalized = "days"
    return entered_at + timedelta(**{normalized: value or 0})


class StageTemplateResolver:
    """Looks up the active task templates that apply to a stage.

    Templates bound to a stage id match on that id only. Unbound templates fall
    back to the stage name. A template without a pipeline applies to every
    pipeline that has a stage with the name.
    """

    def _query(self, stage_name: str, pipeline_id: str | None, stage_id: uuid.UUID | None):
        if stage_id is not None:
            stage_clause = or_(
                TaskTemplate.stage_id == stage_id,
                and_(TaskTemplate.stage_id.is_(None), TaskTemplate.stage_name == stage_name),
            )
        else:
            stage_clause = TaskTemplate.stage_name == stage_name

        stmt = select(TaskTemplate).where(TaskTemplate.is_active.is_(True), stage_clause)
        if pipeline_id is not None:
            stmt = stmt.where(or_(TaskTemplate.pipeline_id.is_(None), TaskTemplate.pipeline_id == pipeline_id))
        return stmt

    def resolve(
        self,
        session: Session,
        stage_name: str,
        pipeline_id: str | None = None,
        stage_id: uuid.UUID | None = None,
    ) -> list[TaskTemplate]:
        stmt = self._query(stage_name, pipeline_id, stage_id).order_by(
            TaskTemplate.task_number.asc(),
            TaskTemplate.created_at.asc(),
        )
        return list(session.scalars(stmt))

    def trigger_task_number(
        self,
        session: Session,
        stage_name: str,
        pipeline_id: str | None = None,
        stage_id: uuid.UUID | None = None,
    ) -> int | None:
        """Highest active ``task_number`` for the stage; completing that task may move the opportunity."""
        subquery = self._query(stage_name, pipeline_id, stage_id).subquery()
        return session.scalar(select(func.max(subquery.c.task_number)))


class TaskTemplateService:
    entity_type = "crm.task_template"

    def __init__(self, resolver: StageTemplateResolver) -> None:
        self.resolver = resolver

    def list_templates(
        self,
        session: Session,
        *,
        stage_name: str | None = None,
        pipeline_id: str | None = None,
        active_only: bool = False,
    ) -> list[TaskTemplateRead]:
        stmt = select(TaskTemplate).order_by(
            TaskTemplate.stage_name.asc(),
            TaskTemplate.task_number.asc(),
            TaskTemplate.created_at.asc(),
        )
        if stage_name is not None:
            stmt = stmt.where(TaskTemplate.stage_name == stage_name)
        if pipeline_id is not None:
            stmt = stmt.where(TaskTemplate.pipeline_id == pipeline_id)
        if active_only:
            stmt = stmt.where(TaskTemplate.is_active.is_(True))
        return [TaskTemplateRead.model_validate(row) for row in session.scalars(stmt)]

    def resolve_for_stage(
        self,
        session: Session,
        stage_name: str,
        pipeline_id: str | None = None,
        stage_id: uuid.UUID | None = None,
    ) -> list[TaskTemplateRead]:
        templates = self.resolver.resolve(session, stage_name, pipeline_id, stage_id)
        return [TaskTemplateRead.model_validate(row) for row in templates]

    def create_template(self, session: Session, actor_user: ActorUser, dto: TaskTemplateCreate) -> TaskTemplateRead:
        with atomic(session):
            stage = stage_repository.find_unique_by_name(session, dto.stage_name.strip(), dto.pipeline_id)
            template = TaskTemplate(
                stage_name=dto.stage_name.strip(),
                stage_id=stage.id if stage is not None else None,
                pipeline_id=dto.pipeline_id,
                task_number=dto.task_number,
                task_name=dto.task_name.strip(),
                task_description=dto.task_description,
                assignee_id=dto.assignee_id,
                assignee_name=dto.assignee_name,
                due_date_value=dto.due_date_value,
                due_date_unit=dto.due_date_unit,
                priority=dto.priority,
                is_active=dto.is_active,
            )
            session.add(template)
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(template.id),
                action="create",
                before=None,
                after=snapshot(TaskTemplateRead, template),
                correlation_id=actor_user.correlation_id,
            )
        return TaskTemplateRead.model_validate(template)

    def update_template(
        self,
        session: Session,
        actor_user: ActorUser,
        template_id: uuid.UUID,
        dto: TaskTemplateUpdate,
    ) -> TaskTemplateRead:
        with atomic(session):
            template = self._get(session, template_id)
            before = snapshot(TaskTemplateRead, template)
            for field_name, value in dto.model_dump(exclude_unset=True).items():
                setattr(template, field_name, value)
            template.updated_at = utcnow()
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(template.id),
                action="update",
                before=before,
                after=snapshot(TaskTemplateRead, template),
                correlation_id=actor_user.correlation_id,
            )
        return TaskTemplateRead.model_validate(template)

    def toggle_active(self, session: Session, actor_user: ActorUser, template_id: uuid.UUID) -> TaskTemplateRead:
        with atomic(session):
            template = self._get(session, template_id)
            template.is_active = not template.is_active
            template.updated_at = utcnow()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(template.id),
                action="activate" if template.is_active else "deactivate",
                before={"is_active": not template.is_active},
                after={"is_active": template.is_active},
                correlation_id=actor_user.correlation_id,
            )
        return TaskTemplateRead.model_validate(template)

    def seed_defaults(self, session: Session, actor_user: ActorUser) -> SeedResult:
        with atomic(session):
            existing = session.scalar(select(func.count()).select_from(TaskTemplate)) or 0
            if existing:
                return SeedResult(created=0, message="Task templates already exist")

            # Stagger creation times so equal task numbers keep their seed order.
            base = utcnow()
            for index, row in enumerate(DEFAULT_TASK_TEMPLATES):
                stage = stage_repository.find_unique_by_name(session, row["stage_name"])
                session.add(
                    TaskTemplate(
                        **row,
                        stage_id=stage.id if stage is not None else None,
                        created_at=base + timedelta(microseconds=index),
                        updated_at=base,
                    )
                )
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id="*",
                action="seed",
                before=None,
                after={"created": len(DEFAULT_TASK_TEMPLATES)},
                correlation_id=actor_user.correlation_id,
            )

        logger.info("task_templates.seeded", extra={"task_count": len(DEFAULT_TASK_TEMPLATES)})
        return SeedResult(created=len(DEFAULT_TASK_TEMPLATES), message="Seeded default task templates")

    def refresh_stage_name(self, session: Session, stage: PipelineStage) -> None:
        """Rewrite the cached stage name on templates bound to ``stage``. Caller owns the transaction."""
        for template in session.scalars(select(TaskTemplate).where(TaskTemplate.stage_id == stage.id)):
            template.stage_name = stage.name
            template.updated_at = utcnow()

    def _get(self, session: Session, template_id: uuid.UUID) -> TaskTemplate:
        template = session.get(TaskTemplate, template_id)
        if template is None:
            raise NotFoundError("task template", template_id)
        return template
