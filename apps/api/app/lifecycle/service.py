from __future__ import annotations

from app.lifecycle.automation import TaskAutomationEngine, TaskService
from app.lifecycle.dedup import DeduplicationMatcher
from app.lifecycle.mappings import StageCompletionMappingService
from app.lifecycle.queries import LeadQueryService, OpportunityQueryService, PipelineStageService
from app.lifecycle.templates import StageTemplateResolver, TaskTemplateService
from app.lifecycle.transitions import StageTransitionCoordinator
from app.lifecycle.triage import LeadTriageWorkflow

stage_template_resolver = StageTemplateResolver()
deduplication_matcher = DeduplicationMatcher()

task_template_service = TaskTemplateService(stage_template_resolver)
stage_completion_mapping_service = StageCompletionMappingService()
pipeline_stage_service = PipelineStageService(task_template_service, stage_completion_mapping_service)

task_automation = TaskAutomationEngine(stage_template_resolver, stage_completion_mapping_service)
stage_coordinator = StageTransitionCoordinator(task_automation)
task_automation.bind_coordinator(stage_coordinator)

lead_triage = LeadTriageWorkflow(deduplication_matcher, stage_coordinator)
task_service = TaskService()
lead_query_service = LeadQueryService()
opportunity_query_service = OpportunityQueryService()
