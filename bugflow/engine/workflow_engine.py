# bugflow/engine/workflow_engine.py

import json
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from bugflow.config import MAX_AUTO_STEPS, SYSTEM_USER
from bugflow.dsl.dsl_model import (
    ActionDefinition, ActionType, StepDefinition, StepType, ValidationResult, ValidationType, WorkflowSchema,
    parse_workflow_schema,
)
from bugflow.engine.path_utils import normalize_context, to_context_value
from bugflow.engine.replay import ReplayReport, compare_with_execution, replay_audit_trail
from bugflow.engine.rule_engine import RuleEngine
from bugflow.engine.workflow_state import (
    ActionRequest, ActionResult, AvailableAction, CompletedStep, CurrentStep, NextStep,
    Progress, SimulationResult, UIHints, ValidationState, WorkflowState,
)
from bugflow.errors import (
    ConcurrencyConflictError, DefinitionNotFoundError, NoInitialStepError, WorkflowNotFoundError,
)
from bugflow.persistence.models import ExecutionStatus, WorkflowAuditLog, WorkflowDefinition, WorkflowExecution
from bugflow.persistence.repositories.workflow_audit_log_repository import WorkflowAuditLogRepository
from bugflow.persistence.repositories.workflow_definition_repository import WorkflowDefinitionRepository
from bugflow.persistence.repositories.workflow_execution_repository import WorkflowExecutionRepository
from bugflow.service.workflow_definition_service import WorkflowDefinitionService
from bugflow.service.workflow_execution_service import (
    RESULT_SUCCESS, WorkflowExecutionService, dump_context, load_context,
)
from bugflow.utils.lock_manager import lock_manager
from bugflow.utils.timefmt import to_utc_naive, utc_now

logger = logging.getLogger(__name__)

YES, NO = "Yes", "No"

# ─────────────────────────────── presentation tables ────────────────────────────────

_STEP_TYPE_LABELS = {
    StepType.DECISION: "decision",
    StepType.TERMINAL: "terminal",
    StepType.AUTO_CHECK: "autocheck",
}
_THEME_COLORS = {"decision": "cyan", "terminal": "orange", "autocheck": "purple"}

_STATUS_TEXT = {
    ExecutionStatus.COMPLETED.value: "Complete",
    ExecutionStatus.FAILED.value: "Failed",
    ExecutionStatus.CANCELLED.value: "Cancelled",
    ExecutionStatus.SUSPENDED.value: "Suspended",
}


def trigger_matches(trigger_action: str, action_id: str, decision: Optional[str]) -> bool:
    if trigger_action == "complete":
        return action_id == "complete"
    if trigger_action == "decide_yes":
        return action_id == "decide" and decision == YES
    if trigger_action == "decide_no":
        return action_id == "decide" and decision == NO
    return trigger_action == action_id


def condition_label(trigger_action: str) -> str:
    return {"decide_yes": YES, "decide_no": NO}.get(trigger_action, trigger_action)


def _lock_key(task_id: str) -> str:
    return f"execution:{task_id}"


class WorkflowEngine:
    """
    Drives persisted executions through their pinned workflow schema.

    Reads are pure projections of (execution row, pinned definition, audit
    trail). `execute_action` validates, resolves the next step and then
    writes the audit entry together with the advance/complete in one
    transaction; nothing is written when validation or resolution fails.
    """

    def __init__(
        self,
        definitions: WorkflowDefinitionService,
        executions: WorkflowExecutionService,
        rule_engine: Optional[RuleEngine] = None,
    ):
        self.definitions = definitions
        self.executions = executions
        self.rule_engine = rule_engine or RuleEngine()

    # ─────────────────────────────── start ────────────────────────────────

    async def start_workflow(
        self,
        task_id: str,
        definition_name: str,
        initial_context: Optional[Mapping[str, Any]] = None,
        started_by: str = SYSTEM_USER,
    ) -> WorkflowExecution:
        definition = await self.definitions.load_by_name(definition_name)
        if definition is None:
            raise DefinitionNotFoundError(f"Workflow definition not found: {definition_name}")

        schema = self.definitions.load_schema(definition)
        if not schema.initial_step_id or not schema.initial_step_id.strip():
            raise NoInitialStepError(f"Workflow definition {definition_name} has no initial step defined")

        async with lock_manager.lock(_lock_key(task_id)):
            execution = await self.executions.create(
                task_id,
                definition.workflow_definition_id,
                schema.initial_step_id,
                initial_context,
                started_by=started_by,
            )
        logger.info(f"[start_workflow] Started {definition_name} v{definition.version} for task {task_id}")
        return execution

    # ─────────────────────────────── state ────────────────────────────────

    async def _load(self, task_id: str) -> Tuple[WorkflowExecution, WorkflowDefinition, WorkflowSchema]:
        execution = await self.executions.get_by_task_id(task_id)
        if execution is None:
            raise WorkflowNotFoundError(f"No workflow execution found for task {task_id}")
        definition = execution.workflow_definition
        if definition is None:
            definition = await self.definitions.get_definition(execution.workflow_definition_id)
        if definition is None:
            raise DefinitionNotFoundError(
                f"Workflow definition {execution.workflow_definition_id} of task {task_id} not found"
            )
        return execution, definition, self.definitions.load_schema(definition)

    async def get_workflow_state(self, task_id: str) -> WorkflowState:
        execution, definition, schema = await self._load(task_id)
        entries = await self.executions.get_successful_entries(execution.workflow_execution_id)
        return self.build_state(execution, definition, schema, entries)

    def build_state(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        schema: WorkflowSchema,
        successful_entries: List[WorkflowAuditLog],
    ) -> WorkflowState:
        context = load_context(execution.context_json)
        state = WorkflowState(
            task_id=execution.task_id,
            workflow_execution_id=execution.workflow_execution_id,
            workflow_name=schema.name,
            workflow_version=definition.version,
            status=ExecutionStatus(execution.status),
            context=context,
        )

        step = schema.get_step(execution.current_step_id)
        if step is not None and execution.status != ExecutionStatus.COMPLETED.value:
            state.current_step = CurrentStep(
                step_id=step.step_id,
                name=step.name,
                description=step.description,
                type=step.type,
                is_terminal=step.is_terminal,
                requires_note=step.config.requires_note,
                auto_execute=step.config.auto_execute,
                metadata=step.metadata,
            )
            if execution.status == ExecutionStatus.ACTIVE.value:
                state.available_actions = [self._available_action(step, a) for a in step.enabled_actions]
                state.validation_rules = [
                    ValidationState(
                        rule_id=rule.rule_id,
                        field=rule.field,
                        type=rule.type,
                        is_required=rule.type == ValidationType.REQUIRED,
                        value=rule.value,
                        error_message=rule.error_message,
                    )
                    for rule in step.config.validation_rules
                ]
                state.possible_next_steps = self._possible_next_steps(schema, step)
                state.ui_hints = self._ui_hints(step, state.possible_next_steps)

        state.completed_steps = completed_steps_from(successful_entries)
        state.progress = calculate_progress(len(state.completed_steps), len(schema.steps), execution.status)
        return state

    @staticmethod
    def _available_action(step: StepDefinition, action: ActionDefinition) -> AvailableAction:
        if action.type == ActionType.COMPLETE:
            variant = "workflow-terminal" if step.is_terminal else "workflow-action"
            glow = "orange" if step.is_terminal else "emerald"
        elif action.type == ActionType.DECIDE:
            variant = "workflow-decision"
            glow = "green" if "Yes" in action.name else "red"
        else:
            variant, glow = "default", "blue"
        return AvailableAction(
            action_id=action.action_id,
            name=action.name,
            label=action.label,
            type=action.type,
            description=action.description,
            button_variant=variant,
            glow_color=glow,
            metadata=action.metadata,
        )

    @staticmethod
    def _possible_next_steps(schema: WorkflowSchema, step: StepDefinition) -> List[NextStep]:
        if step.is_terminal:
            return []
        next_steps = []
        for transition in schema.transitions_from(step.step_id):
            target = schema.get_step(transition.to_step_id)
            if target is None:
                continue
            next_steps.append(NextStep(
                step_id=target.step_id,
                name=target.name,
                description=target.description,
                type=target.type,
                is_terminal=target.is_terminal,
                condition=condition_label(transition.trigger_action),
                preview_text="This will complete the workflow" if target.is_terminal else f"Next: {target.name}",
            ))
        return next_steps

    @staticmethod
    def _ui_hints(step: StepDefinition, next_steps: List[NextStep]) -> UIHints:
        step_type = _STEP_TYPE_LABELS.get(step.type, "action")
        if step.is_terminal:
            preview = "This will complete the workflow"
        else:
            preview = next_steps[0].preview_text if next_steps else "Processing next step..."
        return UIHints(
            current_step_type=step_type,
            theme_color=_THEME_COLORS.get(step_type, "blue"),
            show_upcoming_steps=not step.is_terminal,
            next_step_preview=preview,
            custom_hints=step.metadata,
        )

    # ─────────────────────────────── actions ──────────────────────────────

    async def validate_action(self, task_id: str, request: ActionRequest) -> ValidationResult:
        execution = await self.executions.get_by_task_id(task_id)
        if execution is None:
            report = ValidationResult()
            report.add_error("taskId", "WORKFLOW_NOT_FOUND", f"No workflow execution found for task {task_id}")
            return report
        _, _, schema = await self._load(task_id)
        return self._validate_request(schema.get_step(execution.current_step_id), execution, request)

    def _validate_request(
        self, step: Optional[StepDefinition], execution: WorkflowExecution, request: ActionRequest,
    ) -> ValidationResult:
        report = ValidationResult()
        if step is None:
            report.add_error(
                "currentStep", "STEP_NOT_FOUND",
                f"Current step {execution.current_step_id} not found in workflow definition",
            )
            return report

        action = step.get_action(request.action_id)
        if action is None or not action.is_enabled:
            report.add_error(
                "actionId", "ACTION_NOT_ALLOWED",
                f"Action {request.action_id} is not allowed for step {step.name}",
            )
            return report

        if step.config.requires_note and not (request.notes or "").strip():
            report.add_error("notes", "NOTES_REQUIRED", "Notes are required for this step")

        if step.type == StepType.DECISION and action.type == ActionType.DECIDE:
            if not (request.decision or "").strip():
                report.add_error("decision", "DECISION_REQUIRED", "Decision is required for decision steps")
            elif request.decision not in (YES, NO):
                report.add_error("decision", "INVALID_DECISION", "Decision must be 'Yes' or 'No'", request.decision)

        if step.config.validation_rules:
            data: Dict[str, Any] = {}
            if request.notes:
                data["notes"] = request.notes
            if request.decision:
                data["decision"] = request.decision
            data.update(request.additional_data)
            report.merge(self.rule_engine.validate_input(step.config.validation_rules, data))
        return report

    def resolve_next_step(
        self,
        schema: WorkflowSchema,
        step: StepDefinition,
        action_id: str,
        decision: Optional[str],
        context: Mapping[str, Any],
    ) -> Tuple[Optional[str], List[dict]]:
        """First outgoing transition, in declaration order, whose trigger matches and conditions hold."""
        if step.is_terminal:
            return None, []
        diagnostics = []
        for transition in schema.transitions_from(step.step_id):
            if not trigger_matches(transition.trigger_action, action_id, decision):
                continue
            satisfied = self.rule_engine.evaluate_conditions(transition.conditions, context)
            if transition.conditions:
                diagnostics.append({
                    "transitionId": transition.transition_id,
                    "toStepId": transition.to_step_id,
                    "satisfied": satisfied,
                    "conditions": self.rule_engine.explain_conditions(transition.conditions, context),
                })
            if satisfied:
                return transition.to_step_id, diagnostics
        logger.warning(f"[resolve_next_step] No valid transition from {step.step_id} for action {action_id}")
        return None, diagnostics

    async def execute_action(self, task_id: str, request: ActionRequest) -> ActionResult:
        try:
            async with lock_manager.lock(_lock_key(task_id)):
                return await self._execute_action(task_id, request)
        except ConcurrencyConflictError as e:
            logger.warning(f"[execute_action] task {task_id}: {e.message}")
            return ActionResult(
                success=False,
                message="The workflow was modified concurrently; reload its state and retry",
                error_code=ConcurrencyConflictError.code,
            )
        except Exception:
            logger.exception(f"[execute_action] Error executing {request.action_id} for task {task_id}")
            return ActionResult(
                success=False,
                message="An error occurred while executing the workflow action",
                error_code="EXECUTION_ERROR",
            )

    async def _execute_action(self, task_id: str, request: ActionRequest) -> ActionResult:
        started_at = utc_now()
        clock = time.perf_counter()
        execution = await self.executions.get_by_task_id(task_id)
        if execution is None:
            return ActionResult(
                success=False,
                message=f"No workflow execution found for task {task_id}",
                error_code="WORKFLOW_NOT_FOUND",
            )
        if execution.status != ExecutionStatus.ACTIVE.value:
            return ActionResult(
                success=False,
                message=f"Workflow is not active. Current status: {execution.status}",
                error_code="WORKFLOW_NOT_ACTIVE",
            )

        _, _, schema = await self._load(task_id)
        step = schema.get_step(execution.current_step_id)
        report = self._validate_request(step, execution, request)
        if not report.is_valid:
            logger.info(f"[execute_action] task {task_id}: rejected {request.action_id}: {report.messages}")
            return ActionResult(
                success=False,
                message="; ".join(report.messages),
                error_code="VALIDATION_FAILED",
                errors=report.errors,
            )

        context = load_context(execution.context_json)
        context.update(normalize_context(request.additional_data))
        if request.decision:
            context[f"step_{step.step_id}_decision"] = request.decision
        if request.notes:
            context[f"step_{step.step_id}_notes"] = to_context_value(request.notes)

        next_step_id, diagnostics = self.resolve_next_step(
            schema, step, request.action_id, request.decision, context
        )
        if next_step_id is None and not step.is_terminal:
            return ActionResult(
                success=False,
                message=f"No valid transition from step {step.name} for action {request.action_id}",
                error_code="NO_VALID_TRANSITION",
                previous_step_id=step.step_id,
            )

        entry = WorkflowAuditLog(
            workflow_execution_id=execution.workflow_execution_id,
            step_id=step.step_id,
            step_name=step.name,
            action=request.action_id,
            result=RESULT_SUCCESS,
            previous_step_id=step.step_id,
            next_step_id=next_step_id,
            decision=request.decision,
            notes=request.notes,
            conditions_evaluated=json.dumps(diagnostics, default=str) if diagnostics else None,
            context_snapshot=dump_context(context),
            timestamp=started_at,
            performed_by=request.performed_by,
            duration_ms=int((time.perf_counter() - clock) * 1000),
        )

        execution_id = execution.workflow_execution_id
        completed = False
        async with self.executions.transaction():
            await self.executions.append_audit_log(entry, commit=False)
            if next_step_id is None:
                # acting on a terminal step finishes the workflow
                await self.executions.replace_snapshot(
                    execution_id, expected_version=execution.version, commit=False,
                    context_json=dump_context(context),
                )
                await self.executions.complete(execution_id, commit=False)
                completed = True
            else:
                await self.executions.advance_step(
                    execution_id, next_step_id, context, expected_version=execution.version, commit=False,
                )
                target = schema.get_step(next_step_id)
                if target is not None and target.is_terminal and not target.enabled_actions:
                    await self.executions.complete(execution_id, commit=False)
                    completed = True

        logger.info(
            f"[execute_action] task {task_id}: {request.action_id} on {step.step_id} -> "
            f"{next_step_id or '(end)'}{' [completed]' if completed else ''}"
        )
        try:
            new_state = await self.get_workflow_state(task_id)
        except Exception:
            # the transition is committed; only the returned projection is missing
            logger.exception(f"[execute_action] task {task_id}: could not build state after {request.action_id}")
            new_state = None
        return ActionResult(
            success=True,
            message="Workflow completed successfully" if completed else "Action executed successfully",
            previous_step_id=step.step_id,
            next_step_id=next_step_id,
            workflow_completed=completed,
            new_state=new_state,
        )

    # ─────────────────────────────── audit & lifecycle ────────────────────

    async def get_audit_trail(self, task_id: str) -> List[WorkflowAuditLog]:
        execution = await self.executions.get_by_task_id(task_id)
        if execution is None:
            return []
        return await self.executions.get_audit_trail(execution.workflow_execution_id)

    async def verify_execution(self, task_id: str) -> ReplayReport:
        execution = await self.executions.get_by_task_id(task_id)
        if execution is None:
            raise WorkflowNotFoundError(f"No workflow execution found for task {task_id}")
        replayed = replay_audit_trail(await self.executions.get_audit_trail(execution.workflow_execution_id))
        differences = compare_with_execution(execution, replayed)
        if differences:
            logger.warning(f"[verify_execution] task {task_id} diverges from its audit trail: {sorted(differences)}")
        return ReplayReport(task_id=task_id, consistent=not differences, differences=differences, replayed=replayed)

    async def repair_execution(self, task_id: str) -> ReplayReport:
        """Rewrites the execution row from its audit trail when the two diverge."""
        async with lock_manager.lock(_lock_key(task_id)):
            report = await self.verify_execution(task_id)
            if report.consistent:
                return report
            execution = await self.executions.get_by_task_id(task_id)
            replayed = report.replayed
            await self.executions.replace_snapshot(
                execution.workflow_execution_id,
                expected_version=execution.version,
                current_step_id=replayed.current_step_id,
                status=replayed.status.value,
                context_json=dump_context(replayed.context),
                completed_at=replayed.completed_at,
                error_message=replayed.error_message,
            )
        logger.info(f"[repair_execution] task {task_id}: rewrote {sorted(report.differences)} from audit trail")
        return report

    async def suspend_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Suspends active executions whose current step outlived its timeoutMinutes."""
        now = to_utc_naive(now) if now is not None else utc_now()
        # plain snapshots: a lost race rolls back and expires every row of the session
        candidates = [
            (
                execution.task_id,
                execution.workflow_execution_id,
                execution.version,
                execution.current_step_id,
                execution.last_updated,
                execution.workflow_definition.definition_json,
            )
            for execution in await self.executions.list_by_status(ExecutionStatus.ACTIVE)
        ]

        suspended = []
        for task_id, execution_id, version, step_id, last_updated, definition_json in candidates:
            step = parse_workflow_schema(definition_json).get_step(step_id)
            if step is None or not step.config.timeout_minutes:
                continue
            if last_updated + timedelta(minutes=step.config.timeout_minutes) > now:
                continue
            try:
                async with lock_manager.lock(_lock_key(task_id)):
                    await self.executions.suspend(
                        execution_id,
                        f"Step {step.name} exceeded its {step.config.timeout_minutes} minute timeout",
                        expected_version=version,
                    )
            except ConcurrencyConflictError as e:
                logger.warning(f"[suspend_expired] task {task_id} skipped: {e.message}")
                continue
            suspended.append(task_id)
        return suspended

    # ─────────────────────────────── simulation ───────────────────────────

    def simulate_path(
        self,
        schema: WorkflowSchema,
        context: Optional[Mapping[str, Any]] = None,
        decisions: Optional[Mapping[str, str]] = None,
        max_steps: int = MAX_AUTO_STEPS,
    ) -> SimulationResult:
        """
        Walk the schema without persistence. Each step runs its first enabled
        action; Decide actions answer from `decisions` (by step id), default Yes.
        """
        decisions = decisions or {}
        ctx = normalize_context(context)
        result = SimulationResult(context=ctx)
        current = schema.initial_step_id
        result.path.append(current)

        for _ in range(max_steps):
            step = schema.get_step(current)
            if step is None:
                result.stop_reason = "STEP_NOT_FOUND"
                break
            if step.is_terminal:
                result.completed = True
                break
            actions = step.enabled_actions
            if not actions:
                result.stop_reason = "NO_ACTIONS"
                break
            action = actions[0]
            decision = decisions.get(step.step_id, YES) if action.type == ActionType.DECIDE else None
            if decision:
                ctx[f"step_{step.step_id}_decision"] = decision
            next_step_id, _ = self.resolve_next_step(schema, step, action.action_id, decision, ctx)
            if next_step_id is None:
                result.stop_reason = "NO_VALID_TRANSITION"
                break
            current = next_step_id
            result.path.append(current)
        else:
            result.stop_reason = "MAX_STEPS"

        result.final_step_id = current
        return result


def completed_steps_from(entries: List[WorkflowAuditLog]) -> List[CompletedStep]:
    return [
        CompletedStep(
            step_id=entry.step_id,
            name=entry.step_name or entry.action,
            action=entry.action,
            completed_at=entry.timestamp,
            decision=entry.decision,
            notes=entry.notes,
            completed_by=entry.performed_by,
            duration_ms=entry.duration_ms,
        )
        for entry in entries
        if entry.result == RESULT_SUCCESS
    ]


def calculate_progress(completed: int, total: int, status: str) -> Progress:
    percent = completed / total * 100 if total > 0 else 0.0
    return Progress(
        completed_steps=completed,
        total_steps=total,
        percent_complete=round(min(percent, 100.0), 1),
        status_text=_STATUS_TEXT.get(status, f"Step {completed + 1} of {total}"),
        is_in_progress=status == ExecutionStatus.ACTIVE.value,
    )


def build_engine(session: AsyncSession) -> WorkflowEngine:
    """Engine wired to repositories sharing one session."""
    return WorkflowEngine(
        WorkflowDefinitionService(WorkflowDefinitionRepository(session)),
        WorkflowExecutionService(
            WorkflowExecutionRepository(session), WorkflowAuditLogRepository(session),
        ),
    )
