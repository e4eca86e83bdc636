import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError

from bugflow.config import SYSTEM_USER
from bugflow.engine.path_utils import normalize_context
from bugflow.errors import (
    InvalidStatusTransitionError, WorkflowAlreadyStartedError, WorkflowNotFoundError,
)
from bugflow.persistence.models import ExecutionStatus, WorkflowAuditLog, WorkflowExecution, new_id
from bugflow.persistence.repositories.workflow_audit_log_repository import WorkflowAuditLogRepository
from bugflow.persistence.repositories.workflow_execution_repository import WorkflowExecutionRepository
from bugflow.utils.timefmt import utc_now

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# synthetic audit actions written by the store itself
WORKFLOW_STARTED = "workflow_started"
WORKFLOW_COMPLETED = "workflow_completed"
WORKFLOW_SUSPENDED = "workflow_suspended"
WORKFLOW_RESUMED = "workflow_resumed"
WORKFLOW_FAILED = "workflow_failed"
WORKFLOW_CANCELLED = "workflow_cancelled"
LIFECYCLE_ACTIONS = frozenset({
    WORKFLOW_STARTED, WORKFLOW_COMPLETED, WORKFLOW_SUSPENDED,
    WORKFLOW_RESUMED, WORKFLOW_FAILED, WORKFLOW_CANCELLED,
})

RESULT_SUCCESS = "Success"


def dump_context(context: Optional[Mapping[str, Any]]) -> str:
    return json.dumps(normalize_context(context), ensure_ascii=False, sort_keys=True)


def load_context(context_json: Optional[str]) -> Dict[str, Any]:
    if not context_json:
        return {}
    data = json.loads(context_json)
    return data if isinstance(data, dict) else {}


class WorkflowExecutionService:
    """
    Owns the execution row of a task and its append-only audit trail.

    Every mutation goes through a version-guarded update. Mutators accept
    `commit=False` so the engine can combine several writes (audit append +
    advance + complete) into one transaction via `transaction()`.
    """

    def __init__(self, repo: WorkflowExecutionRepository, audit_repo: WorkflowAuditLogRepository):
        self.repo = repo
        self.audit_repo = audit_repo

    @asynccontextmanager
    async def transaction(self):
        try:
            yield
            await self.repo.commit()
        except Exception:
            await self.repo.rollback()
            raise

    @asynccontextmanager
    async def _unit(self, commit: bool):
        if not commit:
            yield
            return
        async with self.transaction():
            yield

    # ─────────────────────────────── reads ──────────────────────────────────

    async def get_by_task_id(self, task_id: str) -> Optional[WorkflowExecution]:
        return await self.repo.get_by_task_id(task_id)

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        return await self.repo.get_by_execution_id(execution_id)

    async def list_by_status(self, status: ExecutionStatus) -> List[WorkflowExecution]:
        return await self.repo.list_by_status(status.value)

    async def get_audit_trail(self, execution_id: str) -> List[WorkflowAuditLog]:
        return await self.audit_repo.list_by_execution(execution_id)

    async def get_successful_entries(self, execution_id: str) -> List[WorkflowAuditLog]:
        return await self.audit_repo.list_by_execution(execution_id, result=RESULT_SUCCESS)

    async def _require(self, execution_id: str) -> WorkflowExecution:
        execution = await self.repo.get_by_execution_id(execution_id)
        if execution is None:
            raise WorkflowNotFoundError(f"Workflow execution {execution_id} not found")
        return execution

    # ─────────────────────────────── create ─────────────────────────────────

    async def create(
        self,
        task_id: str,
        definition_id: str,
        initial_step_id: str,
        context: Optional[Mapping[str, Any]] = None,
        started_by: str = SYSTEM_USER,
    ) -> WorkflowExecution:
        if await self.repo.get_by_task_id(task_id) is not None:
            raise WorkflowAlreadyStartedError(f"Workflow execution already exists for task {task_id}")

        context_json = dump_context(context)
        now = utc_now()
        execution = WorkflowExecution(
            workflow_execution_id=new_id(),
            task_id=task_id,
            workflow_definition_id=definition_id,
            current_step_id=initial_step_id,
            status=ExecutionStatus.ACTIVE.value,
            context_json=context_json,
            started_at=now,
            started_by=started_by,
            last_updated=now,
            version=1,
        )
        started = WorkflowAuditLog(
            workflow_execution_id=execution.workflow_execution_id,
            step_id=initial_step_id,
            step_name="Workflow Started",
            action=WORKFLOW_STARTED,
            result=RESULT_SUCCESS,
            previous_step_id=None,
            next_step_id=initial_step_id,
            context_snapshot=context_json,
            timestamp=now,
            performed_by=started_by,
            duration_ms=0,
        )
        try:
            async with self.transaction():
                await self.repo.add(execution)
                await self.audit_repo.append(started)
        except IntegrityError as e:
            # lost a race against another start for the same task
            raise WorkflowAlreadyStartedError(
                f"Workflow execution already exists for task {task_id}"
            ) from e

        logger.info(
            f"[create] Created execution {execution.workflow_execution_id} for task {task_id} "
            f"at step {initial_step_id}"
        )
        return execution

    # ─────────────────────────────── step pointer ───────────────────────────

    async def advance_step(
        self,
        execution_id: str,
        new_step_id: str,
        updated_context: Optional[Mapping[str, Any]] = None,
        *,
        expected_version: Optional[int] = None,
        commit: bool = True,
    ) -> WorkflowExecution:
        """Moves the step pointer. Appends no audit entry; the caller owns that."""
        async with self._unit(commit):
            execution = await self._require(execution_id)
            previous = execution.current_step_id
            values: Dict[str, Any] = {"current_step_id": new_step_id, "last_updated": utc_now()}
            if updated_context is not None:
                values["context_json"] = dump_context(updated_context)
            await self.repo.update_guarded(
                execution_id, execution.version if expected_version is None else expected_version, **values
            )
            execution = await self._require(execution_id)

        logger.info(f"[advance_step] {execution_id}: {previous} -> {new_step_id}")
        return execution

    async def replace_snapshot(
        self,
        execution_id: str,
        *,
        expected_version: Optional[int] = None,
        commit: bool = True,
        **values: Any,
    ) -> WorkflowExecution:
        """Rewrites snapshot columns wholesale; used by audit-trail repair."""
        async with self._unit(commit):
            execution = await self._require(execution_id)
            await self.repo.update_guarded(
                execution_id, execution.version if expected_version is None else expected_version,
                last_updated=utc_now(), **values,
            )
            execution = await self._require(execution_id)
        logger.info(f"[replace_snapshot] {execution_id}: rewrote {sorted(values)}")
        return execution

    # ─────────────────────────────── status transitions ─────────────────────

    async def _change_status(
        self,
        execution_id: str,
        *,
        allowed: Iterable[ExecutionStatus],
        status: ExecutionStatus,
        action: str,
        step_name: str,
        result: str,
        notes: Optional[str] = None,
        performed_by: str = SYSTEM_USER,
        expected_version: Optional[int],
        commit: bool,
        **extra: Any,
    ) -> WorkflowExecution:
        async with self._unit(commit):
            execution = await self._require(execution_id)
            allowed_values = {s.value for s in allowed}
            if execution.status not in allowed_values:
                raise InvalidStatusTransitionError(
                    f"Workflow execution {execution_id} cannot become {status.value} "
                    f"(current status: {execution.status})"
                )
            now = utc_now()
            await self.repo.update_guarded(
                execution_id,
                execution.version if expected_version is None else expected_version,
                status=status.value, last_updated=now, **extra,
            )
            await self.audit_repo.append(WorkflowAuditLog(
                workflow_execution_id=execution_id,
                step_id=execution.current_step_id,
                step_name=step_name,
                action=action,
                result=result,
                previous_step_id=execution.current_step_id if status == ExecutionStatus.COMPLETED else None,
                next_step_id=None,
                notes=notes,
                context_snapshot=execution.context_json,
                timestamp=now,
                performed_by=performed_by,
                duration_ms=0,
            ))
            return await self._require(execution_id)

    async def complete(
        self, execution_id: str, *, expected_version: Optional[int] = None, commit: bool = True,
    ) -> WorkflowExecution:
        execution = await self._change_status(
            execution_id,
            allowed=(ExecutionStatus.ACTIVE,),
            status=ExecutionStatus.COMPLETED,
            action=WORKFLOW_COMPLETED,
            step_name="Workflow Completed",
            result=RESULT_SUCCESS,
            completed_at=utc_now(),
            expected_version=expected_version,
            commit=commit,
        )
        logger.info(f"[complete] Completed execution {execution_id} at step {execution.current_step_id}")
        return execution

    async def suspend(
        self, execution_id: str, reason: str, *, expected_version: Optional[int] = None, commit: bool = True,
    ) -> WorkflowExecution:
        execution = await self._change_status(
            execution_id,
            allowed=(ExecutionStatus.ACTIVE,),
            status=ExecutionStatus.SUSPENDED,
            action=WORKFLOW_SUSPENDED,
            step_name="Workflow Suspended",
            result="Suspended",
            notes=reason,
            expected_version=expected_version,
            commit=commit,
        )
        logger.warning(f"[suspend] Suspended execution {execution_id} at step {execution.current_step_id}: {reason}")
        return execution

    async def resume(
        self, execution_id: str, *, expected_version: Optional[int] = None, commit: bool = True,
    ) -> WorkflowExecution:
        execution = await self._change_status(
            execution_id,
            allowed=(ExecutionStatus.SUSPENDED,),
            status=ExecutionStatus.ACTIVE,
            action=WORKFLOW_RESUMED,
            step_name="Workflow Resumed",
            result="Active",
            expected_version=expected_version,
            commit=commit,
        )
        logger.info(f"[resume] Resumed execution {execution_id} at step {execution.current_step_id}")
        return execution

    async def fail(
        self,
        execution_id: str,
        message: str,
        cause: Optional[BaseException] = None,
        *,
        expected_version: Optional[int] = None,
        commit: bool = True,
    ) -> WorkflowExecution:
        execution = await self._change_status(
            execution_id,
            allowed=(ExecutionStatus.ACTIVE, ExecutionStatus.SUSPENDED),
            status=ExecutionStatus.FAILED,
            action=WORKFLOW_FAILED,
            step_name="Workflow Failed",
            result="Failed",
            notes=message,
            error_message=message,
            expected_version=expected_version,
            commit=commit,
        )
        logger.error(
            f"[fail] Failed execution {execution_id} at step {execution.current_step_id}: {message}",
            exc_info=cause,
        )
        return execution

    async def cancel(
        self,
        execution_id: str,
        reason: str,
        performed_by: str = SYSTEM_USER,
        *,
        expected_version: Optional[int] = None,
        commit: bool = True,
    ) -> WorkflowExecution:
        execution = await self._change_status(
            execution_id,
            allowed=(ExecutionStatus.ACTIVE, ExecutionStatus.SUSPENDED),
            status=ExecutionStatus.CANCELLED,
            action=WORKFLOW_CANCELLED,
            step_name="Workflow Cancelled",
            result="Cancelled",
            notes=reason,
            performed_by=performed_by,
            completed_at=utc_now(),
            expected_version=expected_version,
            commit=commit,
        )
        logger.warning(f"[cancel] Cancelled execution {execution_id}: {reason}")
        return execution

    # ─────────────────────────────── audit ──────────────────────────────────

    async def append_audit_log(self, entry: WorkflowAuditLog, *, commit: bool = True) -> WorkflowAuditLog:
        async with self._unit(commit):
            await self.audit_repo.append(entry)
        logger.debug(
            f"[append_audit_log] {entry.workflow_execution_id}: {entry.action} on step {entry.step_id}"
        )
        return entry

    # ─────────────────────────────── statistics ─────────────────────────────

    async def get_statistics(self) -> Dict[str, Any]:
        by_status = await self.repo.count_by_status()
        spans = await self.repo.list_completed_spans()
        minutes = [
            (completed - started).total_seconds() / 60
            for started, completed in spans
            if started is not None and completed is not None
        ]
        return {
            "total": sum(by_status.values()),
            "active": by_status.get(ExecutionStatus.ACTIVE.value, 0),
            "completed": by_status.get(ExecutionStatus.COMPLETED.value, 0),
            "failed": by_status.get(ExecutionStatus.FAILED.value, 0),
            "suspended": by_status.get(ExecutionStatus.SUSPENDED.value, 0),
            "cancelled": by_status.get(ExecutionStatus.CANCELLED.value, 0),
            "average_completion_minutes": round(sum(minutes) / len(minutes), 2) if minutes else 0.0,
            "step_completions": await self.audit_repo.step_completion_counts(exclude_actions=LIFECYCLE_ACTIONS),
            "definition_usage": await self.repo.count_by_definition_name(),
        }
