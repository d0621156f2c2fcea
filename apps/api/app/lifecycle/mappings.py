from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.core.database import atomic
from app.lifecycle.actor import ActorUser, snapshot
from app.lifecycle.errors import NotFoundError
from app.lifecycle.models import PipelineStage, StageCompletionMapping, utcnow
from app.lifecycle.repositories import stage_repository
from app.lifecycle.schemas import (
    SeedResult,
    StageCompletionMappingCreate,
    StageCompletionMappingRead,
    StageCompletionMappingUpdate,
)
from app.lifecycle.seeds import DEFAULT_COMPLETION_MAPPINGS

logger = logging.getLogger("app.lifecycle.automation")


class StageCompletionMappingService:
    entity_type = "crm.stage_completion_mapping"

    def find_active_for_stage(self, session: Session, stage: PipelineStage) -> StageCompletionMapping | None:
        """Active mapping for ``stage``: id-bound rows first, then unbound rows by name."""
        by_id = session.scalar(
            select(StageCompletionMapping)
            .where(
                StageCompletionMapping.is_active.is_(True),
                StageCompletionMapping.source_stage_id == stage.id,
            )
            .order_by(StageCompletionMapping.created_at.asc())
            .limit(1)
        )
        if by_id is not None:
            return by_id
        return session.scalar(
            select(StageCompletionMapping)
            .where(
                StageCompletionMapping.is_active.is_(True),
                StageCompletionMapping.source_stage_id.is_(None),
                StageCompletionMapping.source_stage_name == stage.name,
                or_(
                    StageCompletionMapping.source_pipeline_id.is_(None),
                    StageCompletionMapping.source_pipeline_id == stage.pipeline,
                ),
            )
            .order_by(StageCompletionMapping.created_at.asc())
            .limit(1)
        )

    def resolve_target(self, session: Session, mapping: StageCompletionMapping) -> PipelineStage | None:
        if mapping.target_stage_id is not None:
            stage = session.get(PipelineStage, mapping.target_stage_id)
            if stage is not None:
                return stage
        return stage_repository.find_by_name(session, mapping.target_pipeline_id, mapping.target_stage_name)

    def list_mappings(self, session: Session, *, active_only: bool = False) -> list[StageCompletionMappingRead]:
        stmt = select(StageCompletionMapping).order_by(
            StageCompletionMapping.source_stage_name.asc(),
            StageCompletionMapping.created_at.asc(),
        )
        if active_only:
            stmt = stmt.where(StageCompletionMapping.is_active.is_(True))
        return [StageCompletionMappingRead.model_validate(row) for row in session.scalars(stmt)]

    def create_mapping(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: StageCompletionMappingCreate,
    ) -> StageCompletionMappingRead:
        with atomic(session):
            source = stage_repository.find_unique_by_name(session, dto.source_stage_name.strip(), dto.source_pipeline_id)
            target = stage_repository.find_by_name(session, dto.target_pipeline_id, dto.target_stage_name.strip())
            mapping = StageCompletionMapping(
                source_stage_name=dto.source_stage_name.strip(),
                source_stage_id=source.id if source is not None else None,
                source_pipeline_id=dto.source_pipeline_id,
                target_pipeline_id=dto.target_pipeline_id,
                target_pipeline_name=dto.target_pipeline_name or dto.target_pipeline_id,
                target_stage_name=dto.target_stage_name.strip(),
                target_stage_id=target.id if target is not None else None,
                is_active=dto.is_active,
            )
            session.add(mapping)
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(mapping.id),
                action="create",
                before=None,
                after=snapshot(StageCompletionMappingRead, mapping),
                correlation_id=actor_user.correlation_id,
            )
        return StageCompletionMappingRead.model_validate(mapping)

    def update_mapping(
        self,
        session: Session,
        actor_user: ActorUser,
        mapping_id: uuid.UUID,
        dto: StageCompletionMappingUpdate,
    ) -> StageCompletionMappingRead:
        with atomic(session):
            mapping = self._get(session, mapping_id)
            before = snapshot(StageCompletionMappingRead, mapping)
            changes = dto.model_dump(exclude_unset=True)
            if "target_pipeline_id" in changes and changes["target_pipeline_id"] is not None:
                mapping.target_pipeline_id = changes["target_pipeline_id"]
                mapping.target_pipeline_name = changes.get("target_pipeline_name") or changes["target_pipeline_id"]
            elif changes.get("target_pipeline_name"):
                mapping.target_pipeline_name = changes["target_pipeline_name"]
            if changes.get("target_stage_name"):
                mapping.target_stage_name = changes["target_stage_name"].strip()
            if "target_pipeline_id" in changes or "target_stage_name" in changes:
                target = stage_repository.find_by_name(session, mapping.target_pipeline_id, mapping.target_stage_name)
                mapping.target_stage_id = target.id if target is not None else None
            mapping.updated_at = utcnow()
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(mapping.id),
                action="update",
                before=before,
                after=snapshot(StageCompletionMappingRead, mapping),
                correlation_id=actor_user.correlation_id,
            )
        return StageCompletionMappingRead.model_validate(mapping)

    def toggle_active(self, session: Session, actor_user: ActorUser, mapping_id: uuid.UUID) -> StageCompletionMappingRead:
        with atomic(session):
            mapping = self._get(session, mapping_id)
            mapping.is_active = not mapping.is_active
            mapping.updated_at = utcnow()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(mapping.id),
                action="activate" if mapping.is_active else "deactivate",
                before={"is_active": not mapping.is_active},
                after={"is_active": mapping.is_active},
                correlation_id=actor_user.correlation_id,
            )
        return StageCompletionMappingRead.model_validate(mapping)

    def seed_defaults(self, session: Session, actor_user: ActorUser) -> SeedResult:
        settings = get_settings()
        target_pipeline = settings.did_not_hire_pipeline_name
        with atomic(session):
            existing = session.scalar(select(func.count()).select_from(StageCompletionMapping)) or 0
            if existing:
                return SeedResult(created=0, message="Stage completion mappings already exist")

            for source_name, target_name in DEFAULT_COMPLETION_MAPPINGS:
                source = stage_repository.find_by_name(session, settings.main_pipeline_name, source_name)
                target = stage_repository.find_by_name(session, target_pipeline, target_name)
                session.add(
                    StageCompletionMapping(
                        source_stage_name=source_name,
                        source_stage_id=source.id if source is not None else None,
                        source_pipeline_id=None,
                        target_pipeline_id=target_pipeline,
                        target_pipeline_name=target_pipeline,
                        target_stage_name=target_name,
                        target_stage_id=target.id if target is not None else None,
                    )
                )
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id="*",
                action="seed",
                before=None,
                after={"created": len(DEFAULT_COMPLETION_MAPPINGS)},
                correlation_id=actor_user.correlation_id,
            )

        logger.info("stage_completion_mappings.seeded", extra={"mapping_count": len(DEFAULT_COMPLETION_MAPPINGS)})
        return SeedResult(created=len(DEFAULT_COMPLETION_MAPPINGS), message="Seeded default stage completion mappings")

    def refresh_stage_name(self, session: Session, stage: PipelineStage) -> None:
        """Keep cached names on id-bound rows in step with a renamed stage. Caller owns the transaction."""
        for mapping in session.scalars(
            select(StageCompletionMapping).where(
                or_(
                    StageCompletionMapping.source_stage_id == stage.id,
                    StageCompletionMapping.target_stage_id == stage.id,
                )
            )
        ):
            if mapping.source_stage_id == stage.id:
                mapping.source_stage_name = stage.name
            if mapping.target_stage_id == stage.id:
                mapping.target_stage_name = stage.name
            mapping.updated_at = utcnow()

    def _get(self, session: Session, mapping_id: uuid.UUID) -> StageCompletionMapping:
        mapping = session.get(StageCompletionMapping, mapping_id)
        if mapping is None:
            raise NotFoundError("stage completion mapping", mapping_id)
        return mapping
