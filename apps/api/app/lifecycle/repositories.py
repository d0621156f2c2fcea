from __future__ import annotations

import uuid

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.lifecycle.dedup import DuplicateCandidate, normalize_email, normalize_phone
from app.lifecycle.errors import NotFoundError
from app.lifecycle.models import Contact, Opportunity, PipelineStage


class ContactRepository:
    resource = "crm.contact"

    def set_identity(self, contact: Contact, *, email: str | None, phone: str | None) -> None:
        """Write email/phone and keep the indexed normalized copies in step."""
        contact.email = email.strip() if email else None
        contact.phone = phone.strip() if phone else None
        contact.email_normalized = normalize_email(email)
        contact.phone_normalized = normalize_phone(phone)

    def find_match_candidates(
        self,
        session: Session,
        candidate: DuplicateCandidate,
        *,
        accepted_only: bool = False,
    ) -> list[Contact]:
        clauses = []
        if candidate.normalized_email is not None:
            clauses.append(Contact.email_normalized == candidate.normalized_email)
        if candidate.normalized_phone is not None:
            clauses.append(Contact.phone_normalized == candidate.normalized_phone)
        if not clauses:
            return []
        statement = select(Contact).where(or_(*clauses))
        if accepted_only:
            statement = statement.where(
                or_(
                    Contact.lead_status == "accepted",
                    select(Opportunity.id).where(Opportunity.contact_id == Contact.id).exists(),
                )
            )
        return list(session.scalars(statement))

    def get(self, session: Session, contact_id: uuid.UUID) -> Contact:
        contact = session.get(Contact, contact_id)
        if contact is None:
            raise NotFoundError("contact", contact_id)
        return contact


class PipelineStageRepository:
    resource = "crm.pipeline_stage"

    def get(self, session: Session, stage_id: uuid.UUID) -> PipelineStage:
        stage = session.get(PipelineStage, stage_id)
        if stage is None:
            raise NotFoundError("stage", stage_id)
        return stage

    def find_by_name(self, session: Session, pipeline: str, name: str) -> PipelineStage | None:
        return session.scalar(
            select(PipelineStage).where(PipelineStage.pipeline == pipeline, PipelineStage.name == name)
        )

    def find_unique_by_name(self, session: Session, name: str, pipeline: str | None = None) -> PipelineStage | None:
        """Resolve a stage name to a single stage, or ``None`` when absent or ambiguous across pipelines."""
        stmt = select(PipelineStage).where(PipelineStage.name == name)
        if pipeline is not None:
            stmt = stmt.where(PipelineStage.pipeline == pipeline)
        matches = list(session.scalars(stmt.limit(2)))
        return matches[0] if len(matches) == 1 else None

    def list_stages(self, session: Session, pipeline: str | None = None) -> list[PipelineStage]:
        stmt = select(PipelineStage).order_by(PipelineStage.pipeline.asc(), PipelineStage.order.asc())
        if pipeline is not None:
            stmt = stmt.where(PipelineStage.pipeline == pipeline)
        return list(session.scalars(stmt))


class OpportunityRepository:
    resource = "crm.opportunity"

    def get(self, session: Session, opportunity_id: uuid.UUID) -> Opportunity:
        opportunity = session.get(Opportunity, opportunity_id)
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)
        return opportunity

    def latest_for_contact(self, session: Session, contact_id: uuid.UUID) -> Opportunity | None:
        return session.scalar(
            select(Opportunity)
            .where(Opportunity.contact_id == contact_id)
            .order_by(Opportunity.created_at.desc())
            .limit(1)
        )


contact_repository = ContactRepository()
stage_repository = PipelineStageRepository()
opportunity_repository = OpportunityRepository()
