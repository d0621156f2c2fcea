from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


LeadStatus = Literal["pending", "duplicate", "accepted", "ignored"]
DuplicateMatchType = Literal["email", "phone", "both"]
DueDateUnit = Literal["minutes", "hours", "days", "weeks"]
DidNotHirePoint = Literal["pre_contact", "pre_intake", "pre_iv", "post_iv"]
TaskPriority = Literal["Low", "Medium", "High", "Urgent"]


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    middle_name: str | None
    last_name: str
    email: str | None
    phone: str | None
    source: str | None
    referral_source: str | None
    notes: str | None
    lead_status: str | None
    created_at: datetime
    updated_at: datetime


class ContactSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str | None
    phone: str | None


class PipelineStageCreate(BaseModel):
    pipeline: str = Field(min_length=1)
    name: str = Field(min_length=1)
    order: int = Field(ge=0)
    color: str | None = None


class PipelineStageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    order: int | None = Field(default=None, ge=0)
    color: str | None = None


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline: str
    name: str
    order: int
    color: str | None
    created_at: datetime
    updated_at: datetime


class PipelineGroupRead(BaseModel):
    name: str
    stage_count: int
    stages: list[PipelineStageRead]


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    contact_id: UUID
    intake_id: UUID | None
    pipeline_id: str
    stage_id: UUID
    estimated_value: float
    practice_area: str | None
    source: str | None
    tags: list[str]
    notes: str | None
    did_not_hire_at: datetime | None
    did_not_hire_reason: str | None
    did_not_hire_point: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class OpportunitySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    pipeline_id: str
    stage_id: UUID
    practice_area: str | None
    created_at: datetime


class TaskTemplateCreate(BaseModel):
    stage_name: str = Field(min_length=1)
    pipeline_id: str | None = None
    task_number: int = Field(ge=1)
    task_name: str = Field(min_length=1)
    task_description: str | None = None
    assignee_id: str | None = None
    assignee_name: str | None = None
    due_date_value: int = Field(default=0, ge=0)
    due_date_unit: DueDateUnit = "days"
    priority: TaskPriority | None = None
    is_active: bool = True


class TaskTemplateUpdate(BaseModel):
    task_number: int | None = Field(default=None, ge=1)
    task_name: str | None = Field(default=None, min_length=1)
    task_description: str | None = None
    assignee_id: str | None = None
    assignee_name: str | None = None
    due_date_value: int | None = Field(default=None, ge=0)
    due_date_unit: DueDateUnit | None = None
    priority: TaskPriority | None = None


class TaskTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stage_name: str
    stage_id: UUID | None
    pipeline_id: str | None
    task_number: int
    task_name: str
    task_description: str | None
    assignee_id: str | None
    assignee_name: str | None
    due_date_value: int
    due_date_unit: str
    priority: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    opportunity_id: UUID | None = None
    contact_id: UUID | None = None
    due_date: datetime | None = None
    assigned_to: str | None = None
    assigned_to_name: str | None = None
    priority: TaskPriority = "Medium"


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID | None
    opportunity_id: UUID | None
    stage_id: UUID | None
    task_template_id: UUID | None
    task_number: int | None
    title: str
    description: str | None
    due_date: datetime | None
    assigned_to: str | None
    assigned_to_name: str | None
    status: str
    completed: bool
    completed_at: datetime | None
    priority: str
    created_at: datetime
    updated_at: datetime


class MovedTo(BaseModel):
    pipeline: str
    stage: str


class ToggleCompleteResult(BaseModel):
    task_id: UUID
    completed: bool
    opportunity_moved: bool
    moved_to: MovedTo | None = None


class StageCompletionMappingCreate(BaseModel):
    source_stage_name: str = Field(min_length=1)
    source_pipeline_id: str | None = None
    target_pipeline_id: str = Field(min_length=1)
    target_pipeline_name: str | None = None
    target_stage_name: str = Field(min_length=1)
    is_active: bool = True


class StageCompletionMappingUpdate(BaseModel):
    target_pipeline_id: str | None = Field(default=None, min_length=1)
    target_pipeline_name: str | None = None
    target_stage_name: str | None = Field(default=None, min_length=1)


class StageCompletionMappingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source_stage_name: str
    source_stage_id: UUID | None
    source_pipeline_id: str | None
    target_pipeline_id: str
    target_pipeline_name: str
    target_stage_name: str
    target_stage_id: UUID | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class StageChangeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    opportunity_id: UUID
    opportunity_name: str
    previous_pipeline_id: str | None
    previous_stage: str | None
    previous_stage_id: UUID | None
    new_pipeline_id: str
    new_stage: str
    new_stage_id: UUID
    sequence: int
    task_ids: list[UUID]
    trigger: str
    created_at: datetime


class MoveToPipelineRequest(BaseModel):
    pipeline_id: str = Field(min_length=1)
    stage_id: UUID
    did_not_hire_point: DidNotHirePoint | None = None
    skip_task_generation: bool = False


class MoveToStageRequest(BaseModel):
    stage_id: UUID
    skip_task_generation: bool = False


class MoveResult(BaseModel):
    opportunity: OpportunityRead
    stage_change: StageChangeRead
    tasks_created: int


class RollbackResult(BaseModel):
    stage_change_id: UUID
    opportunity: OpportunityRead
    deleted_task_ids: list[UUID]


class IntakeSubmit(BaseModel):
    practice_area: str = Field(min_length=1)
    first_name: str = Field(min_length=1)
    middle_name: str | None = None
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    referral_source: str | None = None
    call_details: str | None = None
    contact_id: UUID | None = None

    @model_validator(mode="after")
    def _require_reachable(self) -> "IntakeSubmit":
        if not (self.email or (self.phone and self.phone.strip())):
            raise ValueError("email or phone is required")
        return self


class IntakeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID | None
    opportunity_id: UUID | None
    lead_status: LeadStatus
    duplicate_of_contact_id: UUID | None
    duplicate_match_type: DuplicateMatchType | None
    duplicate_override_at: datetime | None = None
    practice_area: str
    first_name: str
    middle_name: str | None
    last_name: str
    email: str | None
    phone: str | None
    street_address: str | None
    city: str | None
    state: str | None
    zip_code: str | None
    referral_source: str | None
    call_details: str | None
    created_at: datetime
    updated_at: datetime


class DuplicateEmailUpdate(BaseModel):
    email: EmailStr


class DuplicatePhoneUpdate(BaseModel):
    phone: str = Field(min_length=1)


class DuplicateUpdateResult(BaseModel):
    intake: IntakeRead
    still_duplicate: bool


class DuplicateCheckResult(BaseModel):
    has_duplicate: bool
    match_type: DuplicateMatchType | None
    matching_contact: ContactSummary | None


class AcceptLeadResult(BaseModel):
    intake: IntakeRead
    contact: ContactRead
    opportunity: OpportunityRead
    stage_change: StageChangeRead


class RemoveDuplicateResult(BaseModel):
    intake_id: UUID
    detached_appointments: int
    detached_documents: int


class ScanDuplicatesResult(BaseModel):
    scanned: int
    duplicates_found: int


class LeadListItem(BaseModel):
    intake: IntakeRead
    contact: ContactSummary | None


class DuplicateLeadListItem(BaseModel):
    intake: IntakeRead
    duplicate_contact: ContactSummary | None
    duplicate_opportunity: OpportunitySummary | None


class AppointmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID | None
    opportunity_id: UUID | None
    intake_id: UUID | None
    title: str
    type: str
    starts_at: datetime
    duration_minutes: int | None
    status: str


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID | None
    opportunity_id: UUID | None
    intake_id: UUID | None
    name: str
    mime_type: str | None
    storage_key: str
    created_at: datetime


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    opportunity_id: UUID | None
    invoice_number: str
    amount: float
    amount_paid: float
    currency: str
    status: str
    issued_at: datetime


class OpportunityWithRelated(BaseModel):
    opportunity: OpportunityRead
    stage: PipelineStageRead | None
    contact: ContactRead | None
    intake: IntakeRead | None
    tasks: list[TaskRead]
    appointments: list[AppointmentRead]
    documents: list[DocumentRead]
    invoices: list[InvoiceRead]
    stage_changes: list[StageChangeRead]


class SeedResult(BaseModel):
    created: int
    message: str
