from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.lifecycle.actor import ActorUser
from app.lifecycle.errors import LifecycleError
from app.lifecycle.schemas import (
    AcceptLeadResult,
    DuplicateCheckResult,
    DuplicateEmailUpdate,
    DuplicateLeadListItem,
    DuplicatePhoneUpdate,
    DuplicateUpdateResult,
    IntakeRead,
    IntakeSubmit,
    LeadListItem,
    MoveResult,
    MoveToPipelineRequest,
    MoveToStageRequest,
    OpportunityWithRelated,
    PipelineGroupRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageUpdate,
    RemoveDuplicateResult,
    RollbackResult,
    ScanDuplicatesResult,
    SeedResult,
    StageChangeRead,
    StageCompletionMappingCreate,
    StageCompletionMappingRead,
    StageCompletionMappingUpdate,
    TaskCreate,
    TaskRead,
    TaskTemplateCreate,
    TaskTemplateRead,
    TaskTemplateUpdate,
    ToggleCompleteResult,
)
from app.lifecycle.service import (
    lead_query_service,
    lead_triage,
    opportunity_query_service,
    pipeline_stage_service,
    stage_completion_mapping_service,
    stage_coordinator,
    task_automation,
    task_service,
    task_template_service,
)

intakes_router = APIRouter(prefix="/api/crm", tags=["crm.intakes"])
leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
tasks_router = APIRouter(prefix="/api/crm", tags=["crm.tasks"])
pipeline_stages_router = APIRouter(prefix="/api/crm", tags=["crm.pipeline_stages"])
task_templates_router = APIRouter(prefix="/api/crm", tags=["crm.task_templates"])
stage_mappings_router = APIRouter(prefix="/api/crm", tags=["crm.stage_completion_mappings"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, exc: HTTPException | LifecycleError, *, code: str) -> JSONResponse:
    if isinstance(exc, LifecycleError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=code,
            message=exc.message,
            details=exc.details,
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        display_name=auth_user.name,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@intakes_router.post("/intakes", response_model=IntakeRead, status_code=status.HTTP_201_CREATED)
def submit_intake(
    request: Request,
    dto: IntakeSubmit,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> IntakeRead | JSONResponse:
    try:
        require_permission(user, "crm.intakes.submit")
        return lead_triage.submit(db, user, dto)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_intake_submit_failed")


@intakes_router.post("/intakes/scan-duplicates", response_model=ScanDuplicatesResult)
def scan_duplicates(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScanDuplicatesResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.triage")
        return lead_triage.scan_for_duplicates(db, user)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_intake_scan_failed")


@intakes_router.get("/intakes/{intake_id}", response_model=IntakeRead)
def get_intake(
    request: Request,
    intake_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> IntakeRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_triage.get_intake(db, intake_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_intake_get_failed")


@intakes_router.get("/duplicates/check", response_model=DuplicateCheckResult)
def check_duplicate(
    request: Request,
    email: str | None = Query(default=None),
    phone: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DuplicateCheckResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_triage.check_duplicate(db, email, phone)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_duplicate_check_failed")


@leads_router.get("/leads/pending", response_model=list[LeadListItem])
def list_pending_leads(
    request: Request,
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadListItem] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_query_service.list_pending(db, limit)
    except HTTPException as exc:
        return failure_response(request, exc, code="crm_lead_list_failed")


@leads_router.get("/leads/ignored", response_model=list[LeadListItem])
def list_ignored_leads(
    request: Request,
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadListItem] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_query_service.list_ignored(db, limit)
    except HTTPException as exc:
        return failure_response(request, exc, code="crm_lead_list_failed")


@leads_router.get("/leads/duplicates", response_model=list[DuplicateLeadListItem])
def list_duplicate_leads(
    request: Request,
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DuplicateLeadListItem] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_query_service.list_duplicates(db, limit)
    except HTTPException as exc:
        return failure_response(request, exc, code="crm_lead_list_failed")


@leads_router.post("/leads/{intake_id}/accept", response_model=AcceptLeadResult)
def accept_lead(
    request: Request,
    intake_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AcceptLeadResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.triage")
        return lead_triage.accept_lead(db, user, intake_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_lead_accept_failed")


@leads_router.post("/leads/{intake_id}/ignore", response_model=IntakeRead)
def ignore_lead(
    request: Request,
    intake_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> IntakeRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.triage")
        return lead_triage.ignore_lead(db, user, intake_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_lead_ignore_failed")


@leads_router.post("/leads/{intake_id}/restore", response_model=IntakeRead)
def restore_lead(
    request: Request,
    intake_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> IntakeRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.triage")
        return lead_triage.restore_lead(db, user, intake_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_lead_restore_failed")


@leads_router.post("/leads/{intake_id}/create-as-new", response_model=IntakeRead)
def create_as_new_lead(
    request: Request,
    intake_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> IntakeRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.triage")
        return lead_triage.create_as_new_lead(db, user, intake_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_lead_create_as_new_failed")


@leads_router.post("/leads/{intake_id}/duplicate-email", response_model=DuplicateUpdateResult)
def update_duplicate_email(
    request: Request,
    intake_id: uuid.UUID,
    dto: DuplicateEmailUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DuplicateUpdateResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.triage")
        return lead_triage.update_duplicate_email(db, user, intake_id, dto.email)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_lead_duplicate_update_failed")


@leads_router.post("/leads/{intake_id}/duplicate-phone", response_model=DuplicateUpdateResult)
def update_duplicate_phone(
    request: Request,
    intake_id: uuid.UUID,
    dto: DuplicatePhoneUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DuplicateUpdateResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.triage")
        return lead_triage.update_duplicate_phone(db, user, intake_id, dto.phone)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_lead_duplicate_update_failed")


@leads_router.delete("/leads/{intake_id}/duplicate", response_model=RemoveDuplicateResult)
def remove_duplicate_lead(
    request: Request,
    intake_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RemoveDuplicateResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.triage")
        return lead_triage.remove_duplicate_lead(db, user, intake_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_lead_duplicate_remove_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/move-to-pipeline", response_model=MoveResult)
def move_to_pipeline(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: MoveToPipelineRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MoveResult | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.move")
        return stage_coordinator.move_to_pipeline(
            db,
            user,
            opportunity_id,
            dto.pipeline_id,
            dto.stage_id,
            did_not_hire_point=dto.did_not_hire_point,
            skip_task_generation=dto.skip_task_generation,
        )
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_opportunity_move_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/move-to-stage", response_model=MoveResult)
def move_to_stage(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: MoveToStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MoveResult | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.move")
        return stage_coordinator.move_to_stage(
            db,
            user,
            opportunity_id,
            dto.stage_id,
            skip_task_generation=dto.skip_task_generation,
        )
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_opportunity_move_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/related", response_model=OpportunityWithRelated)
def get_opportunity_with_related(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityWithRelated | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_query_service.get_with_related(db, opportunity_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_opportunity_get_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/stage-changes", response_model=list[StageChangeRead])
def list_stage_changes(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageChangeRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return stage_coordinator.list_stage_changes(db, opportunity_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_stage_change_list_failed")


@opportunities_router.post("/stage-changes/{stage_change_id}/rollback", response_model=RollbackResult)
def rollback_stage_change(
    request: Request,
    stage_change_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RollbackResult | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.move")
        return stage_coordinator.rollback(db, user, stage_change_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_stage_change_rollback_failed")


@tasks_router.post("/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.create_task(db, user, dto)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_task_create_failed")


@tasks_router.get("/tasks", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    opportunity_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    completed: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.list_tasks(db, opportunity_id=opportunity_id, contact_id=contact_id, completed=completed)
    except HTTPException as exc:
        return failure_response(request, exc, code="crm_task_list_failed")


@tasks_router.post("/tasks/{task_id}/toggle-complete", response_model=ToggleCompleteResult)
def toggle_task_complete(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ToggleCompleteResult | JSONResponse:
    """Toggle completion. A stage move triggered by completing a task is not undone by reopening it."""
    try:
        require_permission(user, "crm.tasks.write")
        return task_automation.toggle_complete(db, user, task_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_task_toggle_failed")


@pipeline_stages_router.get("/pipeline-stages", response_model=list[PipelineStageRead])
def list_pipeline_stages(
    request: Request,
    pipeline: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.automation.read")
        return pipeline_stage_service.list_stages(db, pipeline)
    except HTTPException as exc:
        return failure_response(request, exc, code="crm_pipeline_stage_list_failed")


@pipeline_stages_router.get("/pipelines", response_model=list[PipelineGroupRead])
def list_pipelines(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineGroupRead] | JSONResponse:
    try:
        require_permission(user, "crm.automation.read")
        return pipeline_stage_service.list_pipelines(db)
    except HTTPException as exc:
        return failure_response(request, exc, code="crm_pipeline_list_failed")


@pipeline_stages_router.post("/pipeline-stages", response_model=PipelineStageRead, status_code=status.HTTP_201_CREATED)
def create_pipeline_stage(
    request: Request,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.automation.manage")
        return pipeline_stage_service.create_stage(db, user, dto)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_pipeline_stage_create_failed")


@pipeline_stages_router.post("/pipeline-stages/seed", response_model=SeedResult)
def seed_pipeline_stages(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SeedResult | JSONResponse:
    try:
        require_permission(user, "crm.automation.manage")
        return pipeline_stage_service.seed_defaults(db, user)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_pipeline_stage_seed_failed")


@pipeline_stages_router.patch("/pipeline-stages/{stage_id}", response_model=PipelineStageRead)
def update_pipeline_stage(
    request: Request,
    stage_id: uuid.UUID,
    dto: PipelineStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.automation.manage")
        return pipeline_stage_service.update_stage(db, user, stage_id, dto)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_pipeline_stage_update_failed")


@task_templates_router.get("/task-templates", response_model=list[TaskTemplateRead])
def list_task_templates(
    request: Request,
    stage_name: str | None = Query(default=None),
    pipeline_id: str | None = Query(default=None),
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskTemplateRead] | JSONResponse:
    try:
        require_permission(user, "crm.automation.read")
        return task_template_service.list_templates(
            db,
            stage_name=stage_name,
            pipeline_id=pipeline_id,
            active_only=active_only,
        )
    except HTTPException as exc:
        return failure_response(request, exc, code="crm_task_template_list_failed")


@task_templates_router.get("/task-templates/resolve", response_model=list[TaskTemplateRead])
def resolve_task_templates(
    request: Request,
    stage_name: str = Query(min_length=1),
    pipeline_id: str | None = Query(default=None),
    stage_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskTemplateRead] | JSONResponse:
    try:
        require_permission(user, "crm.automation.read")
        return task_template_service.resolve_for_stage(db, stage_name, pipeline_id, stage_id)
    except HTTPException as exc:
        return failure_response(request, exc, code="crm_task_template_resolve_failed")


@task_templates_router.post("/task-templates", response_model=TaskTemplateRead, status_code=status.HTTP_201_CREATED)
def create_task_template(
    request: Request,
    dto: TaskTemplateCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskTemplateRead | JSONResponse:
    try:
        require_permission(user, "crm.automation.manage")
        return task_template_service.create_template(db, user, dto)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_task_template_create_failed")


@task_templates_router.post("/task-templates/seed", response_model=SeedResult)
def seed_task_templates(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SeedResult | JSONResponse:
    try:
        require_permission(user, "crm.automation.manage")
        return task_template_service.seed_defaults(db, user)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_task_template_seed_failed")


@task_templates_router.patch("/task-templates/{template_id}", response_model=TaskTemplateRead)
def update_task_template(
    request: Request,
    template_id: uuid.UUID,
    dto: TaskTemplateUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskTemplateRead | JSONResponse:
    try:
        require_permission(user, "crm.automation.manage")
        return task_template_service.update_template(db, user, template_id, dto)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_task_template_update_failed")


@task_templates_router.post("/task-templates/{template_id}/toggle-active", response_model=TaskTemplateRead)
def toggle_task_template(
    request: Request,
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskTemplateRead | JSONResponse:
    try:
        require_permission(user, "crm.automation.manage")
        return task_template_service.toggle_active(db, user, template_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_task_template_toggle_failed")


@stage_mappings_router.get("/stage-completion-mappings", response_model=list[StageCompletionMappingRead])
def list_stage_completion_mappings(
    request: Request,
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageCompletionMappingRead] | JSONResponse:
    try:
        require_permission(user, "crm.automation.read")
        return stage_completion_mapping_service.list_mappings(db, active_only=active_only)
    except HTTPException as exc:
        return failure_response(request, exc, code="crm_stage_mapping_list_failed")


@stage_mappings_router.post(
    "/stage-completion-mappings",
    response_model=StageCompletionMappingRead,
    status_code=status.HTTP_201_CREATED,
)
def create_stage_completion_mapping(
    request: Request,
    dto: StageCompletionMappingCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageCompletionMappingRead | JSONResponse:
    try:
        require_permission(user, "crm.automation.manage")
        return stage_completion_mapping_service.create_mapping(db, user, dto)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_stage_mapping_create_failed")


@stage_mappings_router.post("/stage-completion-mappings/seed", response_model=SeedResult)
def seed_stage_completion_mappings(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SeedResult | JSONResponse:
    try:
        require_permission(user, "crm.automation.manage")
        return stage_completion_mapping_service.seed_defaults(db, user)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_stage_mapping_seed_failed")


@stage_mappings_router.patch("/stage-completion-mappings/{mapping_id}", response_model=StageCompletionMappingRead)
def update_stage_completion_mapping(
    request: Request,
    mapping_id: uuid.UUID,
    dto: StageCompletionMappingUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageCompletionMappingRead | JSONResponse:
    try:
        require_permission(user, "crm.automation.manage")
        return stage_completion_mapping_service.update_mapping(db, user, mapping_id, dto)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_stage_mapping_update_failed")


@stage_mappings_router.post(
    "/stage-completion-mappings/{mapping_id}/toggle-active",
    response_model=StageCompletionMappingRead,
)
def toggle_stage_completion_mapping(
    request: Request,
    mapping_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageCompletionMappingRead | JSONResponse:
    try:
        require_permission(user, "crm.automation.manage")
        return stage_completion_mapping_service.toggle_active(db, user, mapping_id)
    except (HTTPException, LifecycleError) as exc:
        return failure_response(request, exc, code="crm_stage_mapping_toggle_failed")
