import logging
from typing import Set

from bugflow.dsl.dsl_model import WorkflowSchema, ValidationResult

logger = logging.getLogger(__name__)


def _blank(value: str) -> bool:
    return not value or not value.strip()


def validate_structure(schema: WorkflowSchema) -> ValidationResult:
    """
    Structural checks of a workflow schema.

    Errors block activation: missing identity fields, no steps, duplicate
    step / action / transition ids, blank step names, references to unknown
    steps, blank trigger actions and conditions without a field.
    Warnings (no terminal step, actionless steps, unreachable or dead-end
    steps) are reported but never block.
    """
    result = ValidationResult()

    if _blank(schema.workflow_id):
        result.add_error("workflowId", "REQUIRED", "Workflow ID is required")
    if _blank(schema.name):
        result.add_error("name", "REQUIRED", "Workflow name is required")
    if _blank(schema.initial_step_id):
        result.add_error("initialStepId", "REQUIRED", "Initial step ID is required")
    if not schema.steps:
        result.add_error("steps", "REQUIRED", "At least one step is required")

    step_ids: Set[str] = set()
    terminal_count = 0
    for step in schema.steps:
        if step.step_id in step_ids:
            result.add_error("steps", "DUPLICATE_STEP_ID", f"Duplicate step ID: {step.step_id}")
        step_ids.add(step.step_id)

        if _blank(step.name):
            result.add_error(
                f"steps[{step.step_id}].name", "REQUIRED",
                f"Step name is required for step {step.step_id}",
            )
        if step.is_terminal:
            terminal_count += 1

        if not step.actions and not step.config.auto_execute and not step.is_terminal:
            result.add_warning(
                f"steps[{step.step_id}].actions", "NO_ACTIONS",
                f"Step {step.step_id} has no actions and is not auto-execute",
            )

        action_ids: Set[str] = set()
        for action in step.actions:
            if action.action_id in action_ids:
                result.add_error(
                    f"steps[{step.step_id}].actions", "DUPLICATE_ACTION_ID",
                    f"Duplicate action ID: {action.action_id} in step {step.step_id}",
                )
            action_ids.add(action.action_id)

    if not _blank(schema.initial_step_id) and schema.initial_step_id not in step_ids:
        result.add_error(
            "initialStepId", "STEP_NOT_FOUND",
            f"Initial step {schema.initial_step_id} not found in workflow steps",
        )

    if terminal_count == 0:
        result.add_warning(
            "steps", "NO_TERMINAL_STEPS",
            "No terminal steps defined - workflow may not complete properly",
        )

    transition_ids: Set[str] = set()
    for transition in schema.transitions:
        tid = transition.transition_id
        if tid in transition_ids:
            result.add_error("transitions", "DUPLICATE_TRANSITION_ID", f"Duplicate transition ID: {tid}")
        transition_ids.add(tid)

        if transition.from_step_id not in step_ids:
            result.add_error(
                f"transitions[{tid}].fromStepId", "STEP_NOT_FOUND",
                f"From step {transition.from_step_id} not found in transition {tid}",
            )
        if transition.to_step_id not in step_ids:
            result.add_error(
                f"transitions[{tid}].toStepId", "STEP_NOT_FOUND",
                f"To step {transition.to_step_id} not found in transition {tid}",
            )
        if _blank(transition.trigger_action):
            result.add_error(
                f"transitions[{tid}].triggerAction", "REQUIRED",
                f"Trigger action is required for transition {tid}",
            )
        for i, condition in enumerate(transition.conditions):
            if _blank(condition.field):
                result.add_error(
                    f"transitions[{tid}].conditions[{i}].field", "REQUIRED",
                    f"Condition {i} of transition {tid} does not reference a context field",
                )

    reachable = {schema.initial_step_id} | {t.to_step_id for t in schema.transitions}
    for step in schema.steps:
        if step.step_id not in reachable:
            result.add_warning(
                f"steps[{step.step_id}]", "UNREACHABLE_STEP",
                f"Step {step.step_id} may be unreachable",
            )

    with_outgoing = {t.from_step_id for t in schema.transitions}
    for step in schema.steps:
        if not step.is_terminal and step.step_id not in with_outgoing:
            result.add_warning(
                f"steps[{step.step_id}]", "DEAD_END_STEP",
                f"Non-terminal step {step.step_id} has no outgoing transitions",
            )

    if result.errors:
        logger.info(f"[validate_structure] '{schema.name}' rejected: {'; '.join(result.messages)}")
    return result
