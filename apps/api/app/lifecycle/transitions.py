"""Opportunity stage transitions.

:class:`StageTransitionCoordinator` is the only code that writes an
opportunity's ``pipeline_id``/``stage_id``. Every transition expands the new
stage's task templates and appends one :class:`StageChange` row in the same
transaction, which is what :meth:`StageTransitionCoordinator.rollback` undoes.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.core.database import atomic
from app.lifecycle.actor import ActorUser, snapshot
from app.lifecycle.errors import ConflictError, IntegrityError, NotFoundError, ValidationError
from app.lifecycle.models import Opportunity, PipelineStage, StageChange, Task, as_utc, utcnow
from app.lifecycle.repositories import opportunity_repository, stage_repository
from app.lifecycle.schemas import MoveResult, OpportunityRead, RollbackResult, StageChangeRead
from app.metrics import observe_stage_rollback, observe_stage_transition

if TYPE_CHECKING:
    from app.lifecycle.automation import TaskAutomationEngine

logger = logging.getLogger("app.lifecycle.transitions")
tracer = trace.get_tracer("app.lifecycle.transitions")


class StageTransitionCoordinator:
    entity_type = "crm.opportunity"

    def __init__(self, automation: TaskAutomationEngine, clock: Callable[[], datetime] = utcnow) -> None:
        self.automation = automation
        self.clock = clock

    def move_to_pipeline(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        pipeline_id: str,
        stage_id: uuid.UUID,
        *,
        did_not_hire_point: str | None = None,
        skip_task_generation: bool = False,
    ) -> MoveResult:
        started = time.perf_counter()
        with tracer.start_as_current_span("lifecycle.move_to_pipeline") as span:
            span.set_attribute("opportunity_id", str(opportunity_id))
            span.set_attribute("pipeline_id", pipeline_id)
            span.set_attribute("stage_id", str(stage_id))
            try:
                with atomic(session):
                    stage = self._validate_target(session, pipeline_id, stage_id)
                    opportunity = opportunity_repository.get(session, opportunity_id)
                    change = self.transition(
                        session,
                        actor_user,
                        opportunity,
                        stage,
                        trigger="manual",
                        did_not_hire_point=did_not_hire_point,
                        skip_task_generation=skip_task_generation,
                    )
                    envelope = self.stage_changed_envelope(actor_user, change)
            except (ConflictError, ValidationError, NotFoundError, IntegrityError) as exc:
                logger.warning(
                    "stage_transition.rejected",
                    extra={
                        "opportunity_id": str(opportunity_id),
                        "pipeline_id": pipeline_id,
                        "stage_id": str(stage_id),
                        "error": exc.message,
                    },
                )
                raise

        events.publish(envelope)
        observe_stage_transition(pipeline_id, "manual", time.perf_counter() - started)
        return MoveResult(
            opportunity=OpportunityRead.model_validate(opportunity),
            stage_change=StageChangeRead.model_validate(change),
            tasks_created=len(change.task_ids),
        )

    def move_to_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        stage_id: uuid.UUID,
        *,
        skip_task_generation: bool = False,
    ) -> MoveResult:
        """Move within the opportunity's current pipeline."""
        opportunity = opportunity_repository.get(session, opportunity_id)
        return self.move_to_pipeline(
            session,
            actor_user,
            opportunity_id,
            opportunity.pipeline_id,
            stage_id,
            skip_task_generation=skip_task_generation,
        )

    def transition(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity: Opportunity,
        stage: PipelineStage,
        *,
        trigger: str,
        did_not_hire_point: str | None = None,
        skip_task_generation: bool = False,
    ) -> StageChange:
        """Apply a validated move inside the caller's transaction. Never commits."""
        now = self.clock()
        before = snapshot(OpportunityRead, opportunity)
        previous_pipeline_id = opportunity.pipeline_id
        previous_stage = session.get(PipelineStage, opportunity.stage_id)

        values: dict[str, Any] = {
            "pipeline_id": stage.pipeline,
            "stage_id": stage.id,
            "updated_at": now,
            "row_version": Opportunity.row_version + 1,
        }
        if stage.pipeline == get_settings().did_not_hire_pipeline_name:
            values["did_not_hire_at"] = now
            values["did_not_hire_reason"] = stage.name
            if did_not_hire_point:
                values["did_not_hire_point"] = did_not_hire_point

        result = session.execute(
            update(Opportunity)
            .where(Opportunity.id == opportunity.id, Opportunity.row_version == opportunity.row_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError("row_version conflict", details={"opportunity_id": str(opportunity.id)})
        session.refresh(opportunity)

        task_ids: list[uuid.UUID] = []
        if not skip_task_generation:
            task_ids = self.automation.on_stage_enter(session, opportunity, stage, now)

        change = self._append_change(
            session,
            opportunity,
            previous_pipeline_id=previous_pipeline_id,
            previous_stage=previous_stage,
            stage=stage,
            task_ids=task_ids,
            trigger=trigger,
            created_at=now,
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="move_to_pipeline",
            before=before,
            after=snapshot(OpportunityRead, opportunity),
            correlation_id=actor_user.correlation_id,
        )
        logger.info(
            "stage_transition.applied",
            extra={
                "opportunity_id": str(opportunity.id),
                "stage_change_id": str(change.id),
                "pipeline_id": stage.pipeline,
                "stage_name": stage.name,
                "trigger": trigger,
                "task_count": len(task_ids),
            },
        )
        return change

    def enter_initial_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity: Opportunity,
        stage: PipelineStage,
        *,
        trigger: str = "lead_accepted",
    ) -> StageChange:
        """Place a new opportunity in its first stage inside the caller's transaction."""
        now = self.clock()
        opportunity.pipeline_id = stage.pipeline
        opportunity.stage_id = stage.id
        session.flush()

        task_ids = self.automation.on_stage_enter(session, opportunity, stage, now)
        change = self._append_change(
            session,
            opportunity,
            previous_pipeline_id=None,
            previous_stage=None,
            stage=stage,
            task_ids=task_ids,
            trigger=trigger,
            created_at=now,
        )
        logger.info(
            "stage_transition.applied",
            extra={
                "opportunity_id": str(opportunity.id),
                "stage_change_id": str(change.id),
                "pipeline_id": stage.pipeline,
                "stage_name": stage.name,
                "trigger": trigger,
                "task_count": len(task_ids),
            },
        )
        return change

    def rollback(self, session: Session, actor_user: ActorUser, stage_change_id: uuid.UUID) -> RollbackResult:
        with tracer.start_as_current_span("lifecycle.rollback") as span:
            span.set_attribute("stage_change_id", str(stage_change_id))
            try:
                with atomic(session):
                    result, envelope = self._rollback(session, actor_user, stage_change_id)
            except ConflictError as exc:
                observe_stage_rollback("conflict")
                logger.warning(
                    "stage_change.rollback_rejected",
                    extra={"stage_change_id": str(stage_change_id), "error": exc.message},
                )
                raise
            except NotFoundError:
                observe_stage_rollback("not_found")
                raise

        events.publish(envelope)
        observe_stage_rollback("rolled_back")
        return result

    def _rollback(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_change_id: uuid.UUID,
    ) -> tuple[RollbackResult, dict[str, Any]]:
        change = session.get(StageChange, stage_change_id)
        if change is None:
            raise NotFoundError("stage change", stage_change_id)

        task_ids = [uuid.UUID(value) for value in change.task_ids]
        tasks = list(session.scalars(select(Task).where(Task.id.in_(task_ids)))) if task_ids else []
        if any(task.completed for task in tasks):
            raise ConflictError(
                "stage change has completed tasks",
                details={"completed_task_ids": [str(task.id) for task in tasks if task.completed]},
            )

        grace = timedelta(seconds=get_settings().stage_change_grace_period_seconds)
        if self.clock() - as_utc(change.created_at) > grace:
            raise ConflictError("rollback window expired", details={"grace_period_seconds": int(grace.total_seconds())})

        latest = session.scalar(
            select(StageChange)
            .where(StageChange.opportunity_id == change.opportunity_id)
            .order_by(StageChange.sequence.desc())
            .limit(1)
        )
        if latest is None or latest.id != change.id:
            raise ConflictError("only the latest stage change can be rolled back")
        if change.previous_stage_id is None or change.previous_pipeline_id is None:
            raise ConflictError("stage change has no previous stage")

        opportunity = opportunity_repository.get(session, change.opportunity_id)
        if opportunity.stage_id != change.new_stage_id or opportunity.pipeline_id != change.new_pipeline_id:
            raise ConflictError(
                "opportunity is no longer in the stage this change entered",
                details={
                    "opportunity_id": str(opportunity.id),
                    "stage_id": str(opportunity.stage_id),
                    "expected_stage_id": str(change.new_stage_id),
                },
            )
        before = snapshot(OpportunityRead, opportunity)
        did_not_hire = get_settings().did_not_hire_pipeline_name

        values: dict[str, Any] = {
            "pipeline_id": change.previous_pipeline_id,
            "stage_id": change.previous_stage_id,
            "updated_at": self.clock(),
            "row_version": Opportunity.row_version + 1,
        }
        if change.new_pipeline_id == did_not_hire and change.previous_pipeline_id != did_not_hire:
            values.update(did_not_hire_at=None, did_not_hire_reason=None, did_not_hire_point=None)
        result = session.execute(
            update(Opportunity)
            .where(Opportunity.id == opportunity.id, Opportunity.row_version == opportunity.row_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError("row_version conflict", details={"opportunity_id": str(opportunity.id)})

        for task in tasks:
            session.delete(task)
        session.delete(change)
        session.flush()
        session.refresh(opportunity)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm.stage_change",
            entity_id=str(stage_change_id),
            action="rollback",
            before=before,
            after=snapshot(OpportunityRead, opportunity),
            correlation_id=actor_user.correlation_id,
        )
        logger.info(
            "stage_change.rolled_back",
            extra={
                "opportunity_id": str(opportunity.id),
                "stage_change_id": str(stage_change_id),
                "stage_id": str(opportunity.stage_id),
                "task_count": len(tasks),
            },
        )
        envelope = events.build_envelope(
            "crm.stage_change.rolled_back",
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
            payload={
                "stage_change_id": str(stage_change_id),
                "opportunity_id": str(opportunity.id),
                "pipeline_id": opportunity.pipeline_id,
                "stage_id": str(opportunity.stage_id),
                "deleted_task_ids": [str(task.id) for task in tasks],
            },
        )
        result_model = RollbackResult(
            stage_change_id=stage_change_id,
            opportunity=OpportunityRead.model_validate(opportunity),
            deleted_task_ids=[task.id for task in tasks],
        )
        return result_model, envelope

    def list_stage_changes(self, session: Session, opportunity_id: uuid.UUID) -> list[StageChangeRead]:
        opportunity_repository.get(session, opportunity_id)
        rows = session.scalars(
            select(StageChange)
            .where(StageChange.opportunity_id == opportunity_id)
            .order_by(StageChange.sequence.desc())
        )
        return [StageChangeRead.model_validate(row) for row in rows]

    def stage_changed_envelope(self, actor_user: ActorUser, change: StageChange) -> dict[str, Any]:
        return events.build_envelope(
            "crm.opportunity.stage_changed",
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
            payload={
                "opportunity_id": str(change.opportunity_id),
                "stage_change_id": str(change.id),
                "previous_pipeline_id": change.previous_pipeline_id,
                "previous_stage_id": str(change.previous_stage_id) if change.previous_stage_id else None,
                "pipeline_id": change.new_pipeline_id,
                "stage_id": str(change.new_stage_id),
                "trigger": change.trigger,
                "task_ids": list(change.task_ids),
            },
        )

    def _validate_target(self, session: Session, pipeline_id: str, stage_id: uuid.UUID) -> PipelineStage:
        stage = session.get(PipelineStage, stage_id)
        if stage is None:
            raise NotFoundError("stage", stage_id)
        if stage.pipeline != pipeline_id:
            raise ValidationError(
                "stage does not belong to pipeline",
                details={"pipeline_id": pipeline_id, "stage_id": str(stage_id), "stage_pipeline": stage.pipeline},
            )
        return stage

    def _append_change(
        self,
        session: Session,
        opportunity: Opportunity,
        *,
        previous_pipeline_id: str | None,
        previous_stage: PipelineStage | None,
        stage: PipelineStage,
        task_ids: list[uuid.UUID],
        trigger: str,
        created_at: datetime,
    ) -> StageChange:
        last_sequence = session.scalar(
            select(func.max(StageChange.sequence)).where(StageChange.opportunity_id == opportunity.id)
        )
        change = StageChange(
            opportunity_id=opportunity.id,
            opportunity_name=opportunity.title,
            previous_pipeline_id=previous_pipeline_id,
            previous_stage=previous_stage.name if previous_stage is not None else None,
            previous_stage_id=previous_stage.id if previous_stage is not None else None,
            new_pipeline_id=stage.pipeline,
            new_stage=stage.name,
            new_stage_id=stage.id,
            sequence=(last_sequence or 0) + 1,
            task_ids=[str(task_id) for task_id in task_ids],
            trigger=trigger,
            created_at=created_at,
        )
        session.add(change)
        session.flush()

        created: set[uuid.UUID] = set()
        if task_ids:
            created = set(
                session.scalars(select(Task.id).where(Task.opportunity_id == opportunity.id, Task.id.in_(task_ids)))
            )
        if created != set(task_ids) or len(change.task_ids) != len(task_ids):
            raise IntegrityError(
                "stage change task ids do not match created tasks",
                details={"stage_change_id": str(change.id), "expected": len(task_ids), "found": len(created)},
            )
        return change
