from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import ConfigDict, Field

from bugflow.config import BUG_ASSESSMENT_WORKFLOW, SYSTEM_USER
from bugflow.dsl.dsl_model import DSLBase


class ApiModel(DSLBase):
    model_config = ConfigDict(from_attributes=True)


class StartWorkflowRequest(ApiModel):
    workflow_name: str = BUG_ASSESSMENT_WORKFLOW
    context: Dict[str, Any] = Field(default_factory=dict)
    started_by: str = SYSTEM_USER


class ExecutionResponse(ApiModel):
    workflow_execution_id: str
    task_id: str
    workflow_definition_id: str
    current_step_id: str
    status: str
    started_at: datetime
    started_by: str
    completed_at: Optional[datetime] = None
    last_updated: datetime
    error_message: Optional[str] = None
    version: int


class AuditEntryResponse(ApiModel):
    workflow_audit_log_id: str
    sequence: int
    step_id: str
    step_name: str
    action: str
    result: str
    previous_step_id: Optional[str] = None
    next_step_id: Optional[str] = None
    decision: Optional[str] = None
    notes: Optional[str] = None
    conditions_evaluated: Optional[str] = None
    context_snapshot: str
    timestamp: datetime
    performed_by: str
    duration_ms: Optional[int] = None


class DefinitionResponse(ApiModel):
    workflow_definition_id: str
    name: str
    description: str
    version: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
    created_by: str
