"""Lead triage: the pending/duplicate/accepted/ignored state machine over intakes.

Every public method is one transaction. Events are published after commit and
metrics are observed only for transitions that actually committed.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from opentelemetry import trace
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.core.database import atomic
from app.lifecycle.actor import ActorUser, snapshot
from app.lifecycle.dedup import DeduplicationMatcher, DuplicateCandidate, MatchResult
from app.lifecycle.errors import ConflictError, NotFoundError, ValidationError
from app.lifecycle.models import Appointment, Contact, Document, Intake, Opportunity, utcnow
from app.lifecycle.repositories import contact_repository, stage_repository
from app.lifecycle.schemas import (
    AcceptLeadResult,
    ContactRead,
    ContactSummary,
    DuplicateCheckResult,
    DuplicateUpdateResult,
    IntakeRead,
    IntakeSubmit,
    OpportunityRead,
    RemoveDuplicateResult,
    ScanDuplicatesResult,
    StageChangeRead,
)
from app.lifecycle.transitions import StageTransitionCoordinator
from app.metrics import observe_duplicate_match, observe_lead_triage

logger = logging.getLogger("app.lifecycle.triage")
tracer = trace.get_tracer("app.lifecycle.triage")


class LeadTriageWorkflow:
    entity_type = "crm.intake"

    def __init__(self, matcher: DeduplicationMatcher, coordinator: StageTransitionCoordinator) -> None:
        self.matcher = matcher
        self.coordinator = coordinator

    def submit(self, session: Session, actor_user: ActorUser, dto: IntakeSubmit) -> IntakeRead:
        with atomic(session):
            if dto.contact_id is not None:
                contact_repository.get(session, dto.contact_id)
            intake = Intake(
                contact_id=dto.contact_id,
                practice_area=dto.practice_area.strip(),
                first_name=dto.first_name.strip(),
                middle_name=dto.middle_name,
                last_name=dto.last_name.strip(),
                email=dto.email.strip() if dto.email else None,
                phone=dto.phone.strip() if dto.phone else None,
                street_address=dto.street_address,
                city=dto.city,
                state=dto.state,
                zip_code=dto.zip_code,
                referral_source=dto.referral_source,
                call_details=dto.call_details,
            )
            match = self._match(session, intake.email, intake.phone, exclude_contact_id=dto.contact_id)
            self._apply_match(intake, match)
            session.add(intake)
            session.flush()
            envelope = self._record(session, actor_user, intake, "submit", before=None)

        events.publish(envelope)
        self._observe("submit", intake.lead_status, match)
        return IntakeRead.model_validate(intake)

    def get_intake(self, session: Session, intake_id: uuid.UUID) -> IntakeRead:
        return IntakeRead.model_validate(self._get(session, intake_id))

    def check_duplicate(self, session: Session, email: str | None, phone: str | None) -> DuplicateCheckResult:
        match = self._match(session, email, phone)
        contact = session.get(Contact, match.matched_contact_id) if match.matched_contact_id else None
        return DuplicateCheckResult(
            has_duplicate=match.is_duplicate,
            match_type=match.match_type,
            matching_contact=ContactSummary.model_validate(contact) if contact is not None else None,
        )

    def accept_lead(self, session: Session, actor_user: ActorUser, intake_id: uuid.UUID) -> AcceptLeadResult:
        settings = get_settings()
        with tracer.start_as_current_span("lifecycle.accept_lead") as span:
            span.set_attribute("intake_id", str(intake_id))
            with atomic(session):
                intake = self._get(session, intake_id)
                self._require_status(intake, "accept", {"pending"})
                before = snapshot(IntakeRead, intake)

                stage = stage_repository.find_by_name(
                    session,
                    settings.main_pipeline_name,
                    settings.lead_accept_stage_name,
                )
                if stage is None:
                    raise NotFoundError("stage", settings.lead_accept_stage_name)

                contact = self._contact_for(session, intake)
                contact.lead_status = "accepted"
                opportunity_count = session.scalar(select(func.count()).select_from(Opportunity)) or 0
                opportunity = Opportunity(
                    title=f"{opportunity_count + 1} - {contact.full_name}",
                    contact_id=contact.id,
                    intake_id=intake.id,
                    pipeline_id=stage.pipeline,
                    stage_id=stage.id,
                    practice_area=intake.practice_area,
                    source=intake.referral_source or "Intake",
                    tags=[],
                )
                session.add(opportunity)
                session.flush()
                change = self.coordinator.enter_initial_stage(session, actor_user, opportunity, stage)

                intake.contact_id = contact.id
                intake.opportunity_id = opportunity.id
                intake.lead_status = "accepted"
                intake.updated_at = utcnow()
                session.flush()
                span.set_attribute("opportunity_id", str(opportunity.id))
                envelopes = [
                    self._record(session, actor_user, intake, "accept", before=before),
                    self.coordinator.stage_changed_envelope(actor_user, change),
                ]

        events.publish_all(envelopes)
        observe_lead_triage("accept", "accepted")
        return AcceptLeadResult(
            intake=IntakeRead.model_validate(intake),
            contact=ContactRead.model_validate(contact),
            opportunity=OpportunityRead.model_validate(opportunity),
            stage_change=StageChangeRead.model_validate(change),
        )

    def ignore_lead(self, session: Session, actor_user: ActorUser, intake_id: uuid.UUID) -> IntakeRead:
        return self._set_status(session, actor_user, intake_id, "ignore", {"pending"}, "ignored")

    def restore_lead(self, session: Session, actor_user: ActorUser, intake_id: uuid.UUID) -> IntakeRead:
        """Return an ignored lead to pending; restoring a pending lead is a no-op."""
        intake = self._get(session, intake_id)
        if intake.lead_status == "pending":
            return IntakeRead.model_validate(intake)
        return self._set_status(session, actor_user, intake_id, "restore", {"ignored"}, "pending")

    def create_as_new_lead(self, session: Session, actor_user: ActorUser, intake_id: uuid.UUID) -> IntakeRead:
        return self._set_status(session, actor_user, intake_id, "create_as_new", {"duplicate"}, "pending")

    def remove_duplicate_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        intake_id: uuid.UUID,
    ) -> RemoveDuplicateResult:
        with atomic(session):
            intake = self._get(session, intake_id)
            self._require_status(intake, "remove_duplicate", {"duplicate"})
            before = snapshot(IntakeRead, intake)

            appointments = session.execute(
                update(Appointment)
                .where(Appointment.intake_id == intake.id)
                .values(intake_id=None)
                .execution_options(synchronize_session=False)
            )
            documents = session.execute(
                update(Document)
                .where(Document.intake_id == intake.id)
                .values(intake_id=None)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(Opportunity)
                .where(Opportunity.intake_id == intake.id)
                .values(intake_id=None)
                .execution_options(synchronize_session=False)
            )
            session.delete(intake)
            session.flush()

            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(intake_id),
                action="remove_duplicate",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            envelope = events.build_envelope(
                "crm.lead.duplicate_removed",
                actor_user_id=actor_user.user_id,
                correlation_id=actor_user.correlation_id,
                payload={
                    "intake_id": str(intake_id),
                    "detached_appointments": appointments.rowcount,
                    "detached_documents": documents.rowcount,
                },
            )

        logger.info("lead_triage.transition", extra={"intake_id": str(intake_id), "transition": "remove_duplicate"})
        events.publish(envelope)
        observe_lead_triage("remove_duplicate", "deleted")
        return RemoveDuplicateResult(
            intake_id=intake_id,
            detached_appointments=appointments.rowcount,
            detached_documents=documents.rowcount,
        )

    def update_duplicate_email(
        self,
        session: Session,
        actor_user: ActorUser,
        intake_id: uuid.UUID,
        email: str,
    ) -> DuplicateUpdateResult:
        if not email or not email.strip():
            raise ValidationError("email must not be empty")
        return self._update_duplicate_identity(session, actor_user, intake_id, email=email.strip())

    def update_duplicate_phone(
        self,
        session: Session,
        actor_user: ActorUser,
        intake_id: uuid.UUID,
        phone: str,
    ) -> DuplicateUpdateResult:
        if not phone or not phone.strip():
            raise ValidationError("phone must not be empty")
        return self._update_duplicate_identity(session, actor_user, intake_id, phone=phone.strip())

    def scan_for_duplicates(self, session: Session, actor_user: ActorUser) -> ScanDuplicatesResult:
        """Re-match pending intakes against accepted contacts.

        Intakes a user already marked as new are left alone.
        """
        flagged: list[tuple[Intake, MatchResult]] = []
        with atomic(session):
            pending = list(
                session.scalars(
                    select(Intake).where(Intake.lead_status == "pending", Intake.duplicate_override_at.is_(None))
                )
            )
            envelopes: list[dict[str, Any]] = []
            for intake in pending:
                match = self._match(
                    session,
                    intake.email,
                    intake.phone,
                    exclude_contact_id=intake.contact_id,
                    accepted_only=True,
                )
                if not match.is_duplicate:
                    continue
                before = snapshot(IntakeRead, intake)
                self._apply_match(intake, match)
                intake.updated_at = utcnow()
                session.flush()
                envelopes.append(self._record(session, actor_user, intake, "scan", before=before))
                flagged.append((intake, match))

        events.publish_all(envelopes)
        for intake, match in flagged:
            self._observe("scan", intake.lead_status, match)
        logger.info(
            "lead_triage.scan_completed",
            extra={"scanned": len(pending), "duplicates_found": len(flagged)},
        )
        return ScanDuplicatesResult(scanned=len(pending), duplicates_found=len(flagged))

    def _update_duplicate_identity(
        self,
        session: Session,
        actor_user: ActorUser,
        intake_id: uuid.UUID,
        *,
        email: str | None = None,
        phone: str | None = None,
    ) -> DuplicateUpdateResult:
        transition = "update_email" if email is not None else "update_phone"
        with atomic(session):
            intake = self._get(session, intake_id)
            self._require_status(intake, transition, {"duplicate"})
            before = snapshot(IntakeRead, intake)
            if email is not None:
                intake.email = email
            if phone is not None:
                intake.phone = phone

            match = self._match(session, intake.email, intake.phone, exclude_contact_id=intake.contact_id)
            self._apply_match(intake, match)
            intake.updated_at = utcnow()
            session.flush()
            envelope = self._record(session, actor_user, intake, transition, before=before)

        events.publish(envelope)
        self._observe(transition, intake.lead_status, match)
        return DuplicateUpdateResult(intake=IntakeRead.model_validate(intake), still_duplicate=match.is_duplicate)

    def _set_status(
        self,
        session: Session,
        actor_user: ActorUser,
        intake_id: uuid.UUID,
        transition: str,
        allowed: set[str],
        to_status: str,
    ) -> IntakeRead:
        with atomic(session):
            intake = self._get(session, intake_id)
            self._require_status(intake, transition, allowed)
            before = snapshot(IntakeRead, intake)
            intake.lead_status = to_status
            if to_status == "pending":
                intake.duplicate_of_contact_id = None
                intake.duplicate_match_type = None
            if transition == "create_as_new":
                intake.duplicate_override_at = utcnow()
            intake.updated_at = utcnow()
            if intake.contact_id is not None:
                contact = session.get(Contact, intake.contact_id)
                if contact is not None:
                    contact.lead_status = to_status
            session.flush()
            envelope = self._record(session, actor_user, intake, transition, before=before)

        events.publish(envelope)
        observe_lead_triage(transition, to_status)
        return IntakeRead.model_validate(intake)

    def _match(
        self,
        session: Session,
        email: str | None,
        phone: str | None,
        *,
        exclude_contact_id: uuid.UUID | None = None,
        accepted_only: bool = False,
    ) -> MatchResult:
        candidate = DuplicateCandidate(email=email, phone=phone)
        if candidate.is_empty:
            return self.matcher.match(candidate, [])
        contacts = contact_repository.find_match_candidates(session, candidate, accepted_only=accepted_only)
        return self.matcher.match(candidate, contacts, exclude_contact_id=exclude_contact_id)

    def _apply_match(self, intake: Intake, match: MatchResult) -> None:
        if match.is_duplicate:
            intake.lead_status = "duplicate"
            intake.duplicate_of_contact_id = match.matched_contact_id
            intake.duplicate_match_type = match.match_type
        else:
            intake.lead_status = "pending"
            intake.duplicate_of_contact_id = None
            intake.duplicate_match_type = None

    def _contact_for(self, session: Session, intake: Intake) -> Contact:
        if intake.contact_id is not None:
            return contact_repository.get(session, intake.contact_id)
        contact = Contact(
            first_name=intake.first_name,
            middle_name=intake.middle_name,
            last_name=intake.last_name,
            source="Intake",
            referral_source=intake.referral_source,
        )
        contact_repository.set_identity(contact, email=intake.email, phone=intake.phone)
        session.add(contact)
        session.flush()
        return contact

    def _require_status(self, intake: Intake, transition: str, allowed: set[str]) -> None:
        if intake.lead_status not in allowed:
            logger.warning(
                "lead_triage.rejected",
                extra={"intake_id": str(intake.id), "transition": transition, "lead_status": intake.lead_status},
            )
            raise ConflictError(
                f"cannot {transition.replace('_', ' ')} a lead in status {intake.lead_status}",
                details={"intake_id": str(intake.id), "lead_status": intake.lead_status, "allowed": sorted(allowed)},
            )

    def _record(
        self,
        session: Session,
        actor_user: ActorUser,
        intake: Intake,
        transition: str,
        *,
        before: dict[str, Any] | None,
    ) -> dict[str, Any]:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(intake.id),
            action=transition,
            before=before,
            after=snapshot(IntakeRead, intake),
            correlation_id=actor_user.correlation_id,
        )
        logger.info(
            "lead_triage.transition",
            extra={
                "intake_id": str(intake.id),
                "transition": transition,
                "match_type": intake.duplicate_match_type,
            },
        )
        return events.build_envelope(
            _EVENT_TYPES[transition],
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
            payload={
                "intake_id": str(intake.id),
                "lead_status": intake.lead_status,
                "contact_id": str(intake.contact_id) if intake.contact_id else None,
                "opportunity_id": str(intake.opportunity_id) if intake.opportunity_id else None,
                "duplicate_of_contact_id": str(intake.duplicate_of_contact_id) if intake.duplicate_of_contact_id else None,
                "duplicate_match_type": intake.duplicate_match_type,
            },
        )

    def _observe(self, transition: str, lead_status: str, match: MatchResult) -> None:
        observe_lead_triage(transition, lead_status)
        if match.match_type is not None:
            observe_duplicate_match(match.match_type)

    def _get(self, session: Session, intake_id: uuid.UUID) -> Intake:
        intake = session.get(Intake, intake_id)
        if intake is None:
            raise NotFoundError("intake", intake_id)
        return intake


_EVENT_TYPES = {
    "submit": "crm.intake.submitted",
    "accept": "crm.lead.accepted",
    "ignore": "crm.lead.ignored",
    "restore": "crm.lead.restored",
    "create_as_new": "crm.lead.marked_new",
    "update_email": "crm.lead.duplicate_updated",
    "update_phone": "crm.lead.duplicate_updated",
    "scan": "crm.lead.duplicate_updated",
}
