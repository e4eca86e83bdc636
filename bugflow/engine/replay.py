# bugflow/engine/replay.py
# rebuilds the execution snapshot from its audit trail
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import Field

from bugflow.dsl.dsl_model import DSLBase
from bugflow.persistence.models import ExecutionStatus, WorkflowAuditLog, WorkflowExecution
from bugflow.service.workflow_execution_service import (
    RESULT_SUCCESS, WORKFLOW_CANCELLED, WORKFLOW_COMPLETED, WORKFLOW_FAILED,
    WORKFLOW_RESUMED, WORKFLOW_STARTED, WORKFLOW_SUSPENDED, load_context,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ACTION = {
    WORKFLOW_COMPLETED: ExecutionStatus.COMPLETED,
    WORKFLOW_SUSPENDED: ExecutionStatus.SUSPENDED,
    WORKFLOW_RESUMED: ExecutionStatus.ACTIVE,
    WORKFLOW_FAILED: ExecutionStatus.FAILED,
    WORKFLOW_CANCELLED: ExecutionStatus.CANCELLED,
}


class ReplayResult(DSLBase):
    step_sequence: List[str] = Field(default_factory=list)
    current_step_id: Optional[str] = None
    status: Optional[ExecutionStatus] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    entries_applied: int = 0


class ReplayReport(DSLBase):
    task_id: str
    consistent: bool
    differences: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    replayed: ReplayResult


def replay_audit_trail(entries: Iterable[WorkflowAuditLog]) -> ReplayResult:
    """
    Fold the audit entries (in trail order) from `workflow_started` onwards.

    Action entries with result Success move the pointer to their next step,
    when they name one, and carry the context snapshot. Lifecycle entries
    only change the status.
    """
    result = ReplayResult()
    for entry in entries:
        action = entry.action
        if action == WORKFLOW_STARTED:
            result.current_step_id = entry.next_step_id or entry.step_id
            result.step_sequence = [result.current_step_id]
            result.status = ExecutionStatus.ACTIVE
            result.context = load_context(entry.context_snapshot)
        elif result.status is None:
            logger.warning(f"[replay_audit_trail] skipping {action} before workflow_started")
            continue
        elif action in _STATUS_BY_ACTION:
            result.status = _STATUS_BY_ACTION[action]
            if action in (WORKFLOW_COMPLETED, WORKFLOW_CANCELLED):
                result.completed_at = entry.timestamp
            if action == WORKFLOW_FAILED:
                result.error_message = entry.notes
        elif entry.result == RESULT_SUCCESS:
            result.context = load_context(entry.context_snapshot)
            if entry.next_step_id and entry.next_step_id != result.current_step_id:
                result.current_step_id = entry.next_step_id
                result.step_sequence.append(entry.next_step_id)
        result.entries_applied += 1
    return result


def compare_with_execution(execution: WorkflowExecution, replayed: ReplayResult) -> Dict[str, Dict[str, Any]]:
    """Fields where the stored row and the replay disagree, as {field: {stored, replayed}}."""
    stored = {
        "current_step_id": execution.current_step_id,
        "status": execution.status,
        "context": load_context(execution.context_json),
    }
    rebuilt = {
        "current_step_id": replayed.current_step_id,
        "status": replayed.status.value if replayed.status else None,
        "context": replayed.context,
    }
    differences = {}
    for key, value in stored.items():
        if json.dumps(value, sort_keys=True, default=str) != json.dumps(rebuilt[key], sort_keys=True, default=str):
            differences[key] = {"stored": value, "replayed": rebuilt[key]}
    return differences
