# bugflow/engine/workflow_state.py
# read-only projection of one execution, plus the action request/result envelopes
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from bugflow.config import SYSTEM_USER
from bugflow.dsl.dsl_model import ActionType, DSLBase, StepType, ValidationIssue, ValidationType
from bugflow.persistence.models import ExecutionStatus


class CurrentStep(DSLBase):
    step_id: str
    name: str
    description: str = ""
    type: StepType
    is_terminal: bool = False
    requires_note: bool = False
    auto_execute: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AvailableAction(DSLBase):
    action_id: str
    name: str
    label: str = ""
    type: ActionType
    is_enabled: bool = True
    description: str = ""
    # presentation only
    button_variant: str = "default"
    glow_color: str = "blue"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ValidationState(DSLBase):
    rule_id: str
    field: str
    type: ValidationType
    is_required: bool = False
    value: Any = None
    error_message: str = ""
    is_valid: bool = True


class NextStep(DSLBase):
    step_id: str
    name: str
    description: str = ""
    type: StepType
    is_terminal: bool = False
    condition: str = ""
    preview_text: str = ""


class CompletedStep(DSLBase):
    step_id: str
    name: str
    action: str
    completed_at: datetime
    decision: Optional[str] = None
    notes: Optional[str] = None
    completed_by: str = SYSTEM_USER
    duration_ms: Optional[int] = None


class Progress(DSLBase):
    completed_steps: int = 0
    total_steps: int = 0
    percent_complete: float = 0.0
    status_text: str = ""
    is_in_progress: bool = False


class UIHints(DSLBase):
    current_step_type: str = "action"
    theme_color: str = "blue"
    show_progress_bar: bool = True
    show_step_history: bool = True
    show_upcoming_steps: bool = True
    next_step_preview: str = ""
    custom_hints: Dict[str, Any] = Field(default_factory=dict)


class WorkflowState(DSLBase):
    """Recomputed on every query; never stored."""

    task_id: str
    workflow_execution_id: str
    workflow_name: str
    workflow_version: str
    status: ExecutionStatus
    current_step: Optional[CurrentStep] = None
    available_actions: List[AvailableAction] = Field(default_factory=list)
    validation_rules: List[ValidationState] = Field(default_factory=list)
    possible_next_steps: List[NextStep] = Field(default_factory=list)
    completed_steps: List[CompletedStep] = Field(default_factory=list)
    progress: Progress = Field(default_factory=Progress)
    ui_hints: Optional[UIHints] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class ActionRequest(DSLBase):
    action_id: str
    performed_by: str = SYSTEM_USER
    decision: Optional[str] = None
    notes: Optional[str] = None
    additional_data: Dict[str, Any] = Field(default_factory=dict)


class ActionResult(DSLBase):
    success: bool
    message: str = ""
    error_code: Optional[str] = None
    errors: List[ValidationIssue] = Field(default_factory=list)
    previous_step_id: Optional[str] = None
    next_step_id: Optional[str] = None
    workflow_completed: bool = False
    new_state: Optional[WorkflowState] = None


class SimulationResult(DSLBase):
    path: List[str] = Field(default_factory=list)
    final_step_id: Optional[str] = None
    completed: bool = False
    stop_reason: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
