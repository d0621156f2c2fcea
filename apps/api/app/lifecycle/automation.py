from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit, events
from app.core.database import atomic
from app.lifecycle.actor import ActorUser, snapshot
from app.lifecycle.errors import NotFoundError
from app.lifecycle.mappings import StageCompletionMappingService
from app.lifecycle.models import Contact, Opportunity, PipelineStage, Task, utcnow
from app.lifecycle.schemas import MovedTo, TaskCreate, TaskRead, ToggleCompleteResult
from app.lifecycle.templates import StageTemplateResolver, compute_due_date
from app.metrics import observe_stage_transition, observe_task_toggle, observe_tasks_generated

if TYPE_CHECKING:
    from app.lifecycle.transitions import StageTransitionCoordinator

logger = logging.getLogger("app.lifecycle.automation")
tracer = trace.get_tracer("app.lifecycle.automation")


class TaskAutomationEngine:
    """Turns stage entry into tasks and triggering-task completion into a stage move.

    The engine never commits. :meth:`toggle_complete` is the only public
    operation and owns its transaction; :meth:`on_stage_enter` runs inside the
    coordinator's transaction.
    """

    entity_type = "crm.task"

    def __init__(self, resolver: StageTemplateResolver, mappings: StageCompletionMappingService) -> None:
        self.resolver = resolver
        self.mappings = mappings
        self.coordinator: StageTransitionCoordinator | None = None

    def bind_coordinator(self, coordinator: StageTransitionCoordinator) -> None:
        self.coordinator = coordinator

    def on_stage_enter(
        self,
        session: Session,
        opportunity: Opportunity,
        stage: PipelineStage,
        entered_at: datetime,
    ) -> list[uuid.UUID]:
        templates = self.resolver.resolve(session, stage.name, stage.pipeline, stage.id)
        tasks = [
            Task(
                id=uuid.uuid4(),
                contact_id=opportunity.contact_id,
                opportunity_id=opportunity.id,
                stage_id=stage.id,
                task_template_id=template.id,
                task_number=template.task_number,
                title=template.task_name,
                description=template.task_description,
                due_date=compute_due_date(entered_at, template.due_date_value, template.due_date_unit),
                assigned_to=template.assignee_id,
                assigned_to_name=template.assignee_name,
                status="Pending",
                completed=False,
                priority=template.priority or "Medium",
                created_at=entered_at,
                updated_at=entered_at,
            )
            for template in templates
        ]
        session.add_all(tasks)
        session.flush()
        observe_tasks_generated(len(tasks))
        return [task.id for task in tasks]

    def toggle_complete(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> ToggleCompleteResult:
        """Flip a task's completion state.

        Completing the stage's triggering task may move the opportunity along an
        active completion mapping. Un-completing it later does not move it back.
        """
        started = time.perf_counter()
        with tracer.start_as_current_span("lifecycle.toggle_complete") as span:
            span.set_attribute("task_id", str(task_id))
            with atomic(session):
                result, envelopes = self.on_task_complete(session, actor_user, task_id)
            span.set_attribute("opportunity_moved", result.opportunity_moved)

        events.publish_all(envelopes)
        observe_task_toggle(result.completed, result.opportunity_moved)
        if result.moved_to is not None:
            observe_stage_transition(result.moved_to.pipeline, "automation", time.perf_counter() - started)
        return result

    def on_task_complete(
        self,
        session: Session,
        actor_user: ActorUser,
        task_id: uuid.UUID,
    ) -> tuple[ToggleCompleteResult, list[dict[str, Any]]]:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError("task", task_id)

        before = snapshot(TaskRead, task)
        now = utcnow()
        task.completed = not task.completed
        task.status = "Completed" if task.completed else "Pending"
        task.completed_at = now if task.completed else None
        task.updated_at = now
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(task.id),
            action="complete" if task.completed else "reopen",
            before=before,
            after=snapshot(TaskRead, task),
            correlation_id=actor_user.correlation_id,
        )
        envelopes = [
            events.build_envelope(
                "crm.task.completed" if task.completed else "crm.task.reopened",
                actor_user_id=actor_user.user_id,
                correlation_id=actor_user.correlation_id,
                payload={"task_id": str(task.id), "opportunity_id": str(task.opportunity_id) if task.opportunity_id else None},
            )
        ]

        result = ToggleCompleteResult(task_id=task.id, completed=task.completed, opportunity_moved=False)
        if not task.completed:
            return result, envelopes

        target = self._mapped_target(session, task)
        if target is None:
            return result, envelopes

        opportunity, stage = target
        if self.coordinator is None:
            raise RuntimeError("task automation engine has no stage coordinator bound")
        change = self.coordinator.transition(session, actor_user, opportunity, stage, trigger="automation")
        envelopes.append(self.coordinator.stage_changed_envelope(actor_user, change))
        logger.info(
            "task_completion.triggered_move",
            extra={
                "task_id": str(task.id),
                "opportunity_id": str(opportunity.id),
                "stage_change_id": str(change.id),
                "pipeline_id": stage.pipeline,
                "stage_name": stage.name,
            },
        )
        result.opportunity_moved = True
        result.moved_to = MovedTo(pipeline=stage.pipeline, stage=stage.name)
        return result, envelopes

    def _mapped_target(self, session: Session, task: Task) -> tuple[Opportunity, PipelineStage] | None:
        """Opportunity and destination stage when ``task`` is its current stage's triggering task."""
        if task.task_number is None or task.opportunity_id is None or task.stage_id is None:
            return None
        opportunity = session.get(Opportunity, task.opportunity_id)
        if opportunity is None or opportunity.stage_id != task.stage_id:
            return None
        current_stage = session.get(PipelineStage, opportunity.stage_id)
        if current_stage is None:
            return None

        trigger_number = self.resolver.trigger_task_number(
            session,
            current_stage.name,
            current_stage.pipeline,
            current_stage.id,
        )
        if trigger_number is None or task.task_number != trigger_number:
            return None

        mapping = self.mappings.find_active_for_stage(session, current_stage)
        if mapping is None:
            return None
        target_stage = self.mappings.resolve_target(session, mapping)
        if target_stage is None:
            logger.warning(
                "task_completion.mapping_unresolved",
                extra={"task_id": str(task.id), "stage_name": mapping.target_stage_name, "pipeline_id": mapping.target_pipeline_id},
            )
            return None
        return opportunity, target_stage


class TaskService:
    entity_type = "crm.task"

    def create_task(self, session: Session, actor_user: ActorUser, dto: TaskCreate) -> TaskRead:
        with atomic(session):
            contact_id = dto.contact_id
            stage_id = None
            if dto.opportunity_id is not None:
                opportunity = session.get(Opportunity, dto.opportunity_id)
                if opportunity is None:
                    raise NotFoundError("opportunity", dto.opportunity_id)
                contact_id = contact_id or opportunity.contact_id
                stage_id = opportunity.stage_id
            if contact_id is not None and session.get(Contact, contact_id) is None:
                raise NotFoundError("contact", contact_id)

            # Manual tasks carry no task number, so they never trigger a stage move.
            task = Task(
                contact_id=contact_id,
                opportunity_id=dto.opportunity_id,
                stage_id=stage_id,
                title=dto.title.strip(),
                description=dto.description,
                due_date=dto.due_date,
                assigned_to=dto.assigned_to,
                assigned_to_name=dto.assigned_to_name,
                priority=dto.priority,
            )
            session.add(task)
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(task.id),
                action="create",
                before=None,
                after=snapshot(TaskRead, task),
                correlation_id=actor_user.correlation_id,
            )
        return TaskRead.model_validate(task)

    def list_tasks(
        self,
        session: Session,
        *,
        opportunity_id: uuid.UUID | None = None,
        contact_id: uuid.UUID | None = None,
        completed: bool | None = None,
    ) -> list[TaskRead]:
        stmt = select(Task).order_by(Task.due_date.asc().nulls_last(), Task.task_number.asc(), Task.created_at.asc())
        if opportunity_id is not None:
            stmt = stmt.where(Task.opportunity_id == opportunity_id)
        if contact_id is not None:
            stmt = stmt.where(Task.contact_id == contact_id)
        if completed is not None:
            stmt = stmt.where(Task.completed.is_(completed))
        return [TaskRead.model_validate(row) for row in session.scalars(stmt)]
