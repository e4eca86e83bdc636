from datetime import timedelta

import pytest
import pytest_asyncio

from bugflow.engine.workflow_state import ActionRequest
from bugflow.errors import (
    DefinitionNotFoundError, NoInitialStepError, WorkflowAlreadyStartedError, WorkflowNotFoundError,
)
from bugflow.persistence.database import create_session_factory
from bugflow.persistence.models import ExecutionStatus, WorkflowDefinition
from bugflow.persistence.repositories.workflow_audit_log_repository import WorkflowAuditLogRepository
from bugflow.persistence.repositories.workflow_execution_repository import WorkflowExecutionRepository
from bugflow.service.workflow_execution_service import WorkflowExecutionService
from bugflow.utils.timefmt import utc_now

TASK = "task-1"


@pytest_asyncio.fixture
async def abcd(definition_service, abcd_schema):
    return await definition_service.publish(abcd_schema)


@pytest.mark.asyncio
async def test_start_workflow_creates_execution(engine, abcd):
    execution = await engine.start_workflow(TASK, "ABCD Workflow", {"bugSeverity": "Major"})

    assert execution.current_step_id == "A"
    assert execution.status == ExecutionStatus.ACTIVE.value
    assert execution.workflow_definition_id == abcd.workflow_definition_id

    trail = await engine.get_audit_trail(TASK)
    assert [e.action for e in trail] == ["workflow_started"]
    assert trail[0].step_name == "Workflow Started"
    assert trail[0].next_step_id == "A"


@pytest.mark.asyncio
async def test_start_twice_fails(engine, abcd, execution_service):
    await engine.start_workflow(TASK, "ABCD Workflow")
    with pytest.raises(WorkflowAlreadyStartedError):
        await engine.start_workflow(TASK, "ABCD Workflow")

    stats = await execution_service.get_statistics()
    assert stats["total"] == 1


@pytest.mark.asyncio
async def test_start_unknown_definition(engine):
    with pytest.raises(DefinitionNotFoundError):
        await engine.start_workflow(TASK, "Nope")


@pytest.mark.asyncio
async def test_start_without_initial_step(engine, definition_service, abcd_schema):
    # stored directly; publish would reject a blank initial step
    schema = abcd_schema.model_copy(update={"initial_step_id": ""})
    await definition_service.repo.create(WorkflowDefinition(
        name="ABCD Workflow", version="1.0.0", definition_json=schema.to_json(), is_active=True,
    ))

    with pytest.raises(NoInitialStepError):
        await engine.start_workflow(TASK, "ABCD Workflow")


@pytest.mark.asyncio
async def test_complete_then_decide_no_finishes_at_d(engine, abcd):
    await engine.start_workflow(TASK, "ABCD Workflow")

    first = await engine.execute_action(TASK, ActionRequest(action_id="complete", performed_by="alice"))
    assert first.success, first.message
    assert first.next_step_id == "B"
    assert first.new_state.current_step.step_id == "B"
    assert not first.workflow_completed

    second = await engine.execute_action(TASK, ActionRequest(action_id="decide", decision="No"))
    assert second.success, second.message
    assert second.workflow_completed
    assert second.next_step_id == "D"
    assert second.new_state.status == ExecutionStatus.COMPLETED
    assert second.new_state.current_step is None

    trail = await engine.get_audit_trail(TASK)
    assert [e.action for e in trail] == ["workflow_started", "complete", "decide", "workflow_completed"]
    assert [(e.previous_step_id, e.next_step_id) for e in trail[1:3]] == [("A", "B"), ("B", "D")]
    assert [e.timestamp for e in trail] == sorted(e.timestamp for e in trail)
    assert trail[1].performed_by == "alice"
    assert trail[2].decision == "No"


@pytest.mark.asyncio
async def test_completed_workflow_rejects_actions(engine, abcd, execution_service):
    await engine.start_workflow(TASK, "ABCD Workflow")
    await engine.execute_action(TASK, ActionRequest(action_id="complete"))
    await engine.execute_action(TASK, ActionRequest(action_id="decide", decision="Yes"))

    execution = await execution_service.get_by_task_id(TASK)
    assert execution.status == ExecutionStatus.COMPLETED.value
    assert execution.completed_at is not None
    assert execution.current_step_id == "C"

    result = await engine.execute_action(TASK, ActionRequest(action_id="complete"))
    assert not result.success
    assert result.error_code == "WORKFLOW_NOT_ACTIVE"


@pytest.mark.asyncio
async def test_get_state_is_idempotent(engine, abcd):
    await engine.start_workflow(TASK, "ABCD Workflow")
    await engine.execute_action(TASK, ActionRequest(action_id="complete"))

    first = await engine.get_workflow_state(TASK)
    second = await engine.get_workflow_state(TASK)
    assert first == second
    assert first.model_dump_json() == second.model_dump_json()
    assert len(await engine.get_audit_trail(TASK)) == 2


@pytest.mark.asyncio
async def test_get_state_unknown_task(engine):
    with pytest.raises(WorkflowNotFoundError):
        await engine.get_workflow_state("missing")


@pytest.mark.asyncio
async def test_state_projection(engine, abcd):
    await engine.start_workflow(TASK, "ABCD Workflow")
    await engine.execute_action(TASK, ActionRequest(action_id="complete"))
    state = await engine.get_workflow_state(TASK)

    assert state.workflow_name == "ABCD Workflow"
    assert state.workflow_version == "1.0.0"
    assert state.current_step.step_id == "B"
    assert [a.action_id for a in state.available_actions] == ["decide"]
    assert state.available_actions[0].button_variant == "workflow-decision"
    assert state.available_actions[0].glow_color == "red"

    previews = {n.step_id: (n.condition, n.preview_text) for n in state.possible_next_steps}
    assert previews == {
        "C": ("Yes", "This will complete the workflow"),
        "D": ("No", "This will complete the workflow"),
    }
    assert state.ui_hints.current_step_type == "decision"
    assert state.ui_hints.theme_color == "cyan"

    assert [s.action for s in state.completed_steps] == ["workflow_started", "complete"]
    assert state.progress.completed_steps == 2
    assert state.progress.total_steps == 4
    assert state.progress.percent_complete == 50.0
    assert state.progress.status_text == "Step 3 of 4"
    assert state.progress.is_in_progress


@pytest.mark.asyncio
async def test_completed_steps_are_stable(engine, abcd):
    await engine.start_workflow(TASK, "ABCD Workflow")
    await engine.execute_action(TASK, ActionRequest(action_id="complete", notes="done"))
    await engine.execute_action(TASK, ActionRequest(action_id="decide", decision="Yes"))

    first = (await engine.get_workflow_state(TASK)).completed_steps
    second = (await engine.get_workflow_state(TASK)).completed_steps
    assert [s.model_dump() for s in first] == [s.model_dump() for s in second]
    assert [s.action for s in first] == ["workflow_started", "complete", "decide", "workflow_completed"]
    assert first[1].notes == "done"


@pytest.mark.asyncio
async def test_unknown_action_changes_nothing(engine, abcd, execution_service):
    await engine.start_workflow(TASK, "ABCD Workflow")
    before = await execution_service.get_by_task_id(TASK)
    version = before.version

    result = await engine.execute_action(TASK, ActionRequest(action_id="decide", decision="Yes"))
    assert not result.success
    assert result.error_code == "VALIDATION_FAILED"
    assert result.errors[0].code == "ACTION_NOT_ALLOWED"

    after = await execution_service.get_by_task_id(TASK)
    assert after.current_step_id == "A"
    assert after.version == version
    assert len(await engine.get_audit_trail(TASK)) == 1


@pytest.mark.asyncio
async def test_decision_must_be_yes_or_no(engine, abcd):
    await engine.start_workflow(TASK, "ABCD Workflow")
    await engine.execute_action(TASK, ActionRequest(action_id="complete"))

    missing = await engine.execute_action(TASK, ActionRequest(action_id="decide"))
    assert [e.code for e in missing.errors] == ["DECISION_REQUIRED"]

    invalid = await engine.execute_action(TASK, ActionRequest(action_id="decide", decision="Maybe"))
    assert [e.code for e in invalid.errors] == ["INVALID_DECISION"]
    assert len(await engine.get_audit_trail(TASK)) == 2


@pytest.mark.asyncio
async def test_requires_note_rejects_blank_notes(engine, definition_service, abcd_schema):
    abcd_schema.steps[0].config.requires_note = True
    await definition_service.publish(abcd_schema)
    await engine.start_workflow(TASK, "ABCD Workflow")

    for notes in (None, "", "   "):
        result = await engine.execute_action(TASK, ActionRequest(action_id="complete", notes=notes))
        assert not result.success
        assert result.error_code == "VALIDATION_FAILED"
        assert "Notes are required for this step" in result.message

    assert len(await engine.get_audit_trail(TASK)) == 1

    ok = await engine.execute_action(TASK, ActionRequest(action_id="complete", notes="cloned as PROJ-1"))
    assert ok.success
    assert ok.new_state.context["step_A_notes"] == "cloned as PROJ-1"


@pytest.mark.asyncio
async def test_validate_action_without_mutation(engine, abcd):
    await engine.start_workflow(TASK, "ABCD Workflow")
    report = await engine.validate_action(TASK, ActionRequest(action_id="decide"))
    assert not report.is_valid
    assert report.errors[0].code == "ACTION_NOT_ALLOWED"

    missing = await engine.validate_action("other", ActionRequest(action_id="complete"))
    assert missing.errors[0].code == "WORKFLOW_NOT_FOUND"


@pytest.mark.asyncio
async def test_unknown_task_action(engine):
    result = await engine.execute_action("missing", ActionRequest(action_id="complete"))
    assert not result.success
    assert result.error_code == "WORKFLOW_NOT_FOUND"


@pytest.mark.asyncio
async def test_additional_data_merges_into_context(engine, abcd):
    await engine.start_workflow(TASK, "ABCD Workflow", {"keep": 1, "over": "old"})
    result = await engine.execute_action(
        TASK, ActionRequest(action_id="complete", additional_data={"over": "new", "extra": [1, 2]})
    )
    assert result.new_state.context == {"keep": 1, "over": "new", "extra": [1, 2]}


@pytest.mark.asyncio
async def test_no_matching_transition_leaves_state(engine, definition_service, abcd_schema):
    abcd_schema.transitions = [t for t in abcd_schema.transitions if t.transition_id != "b-d"]
    await definition_service.publish(abcd_schema)
    await engine.start_workflow(TASK, "ABCD Workflow")
    await engine.execute_action(TASK, ActionRequest(action_id="complete"))

    result = await engine.execute_action(TASK, ActionRequest(action_id="decide", decision="No"))
    assert not result.success
    assert result.error_code == "NO_VALID_TRANSITION"

    state = await engine.get_workflow_state(TASK)
    assert state.current_step.step_id == "B"
    assert len(await engine.get_audit_trail(TASK)) == 2


@pytest.mark.asyncio
async def test_first_declared_transition_wins(engine, definition_service, abcd_schema):
    duplicate = abcd_schema.transitions[0].model_copy(update={"transition_id": "a-c", "to_step_id": "C"})
    abcd_schema.transitions.append(duplicate)
    await definition_service.publish(abcd_schema)
    await engine.start_workflow(TASK, "ABCD Workflow")

    result = await engine.execute_action(TASK, ActionRequest(action_id="complete"))
    assert result.next_step_id == "B"


@pytest.mark.asyncio
async def test_execution_stays_pinned_to_its_version(engine, definition_service, abcd_schema):
    await definition_service.publish(abcd_schema)
    await engine.start_workflow(TASK, "ABCD Workflow")

    renamed = abcd_schema.model_copy(deep=True)
    renamed.steps[1].name = "Step B (v2)"
    await definition_service.publish(renamed)

    result = await engine.execute_action(TASK, ActionRequest(action_id="complete"))
    assert result.new_state.workflow_version == "1.0.0"
    assert result.new_state.current_step.name == "Step B"


@pytest.mark.asyncio
async def test_concurrent_modification_rolls_back(engine, abcd, execution_service, monkeypatch):
    await engine.start_workflow(TASK, "ABCD Workflow")
    original_append = execution_service.append_audit_log

    async def append_after_foreign_write(entry, *, commit=True):
        # another writer bumps the row between our read and our guarded update
        execution = await execution_service.get_execution(entry.workflow_execution_id)
        await execution_service.repo.update_guarded(
            execution.workflow_execution_id, execution.version, error_message="foreign write",
        )
        return await original_append(entry, commit=commit)

    monkeypatch.setattr(execution_service, "append_audit_log", append_after_foreign_write)
    result = await engine.execute_action(TASK, ActionRequest(action_id="complete"))

    assert not result.success
    assert result.error_code == "CONCURRENT_MODIFICATION"

    execution = await execution_service.get_by_task_id(TASK)
    assert execution.current_step_id == "A"
    assert execution.error_message is None
    assert len(await engine.get_audit_trail(TASK)) == 1


@pytest.mark.asyncio
async def test_suspend_expired_steps(engine, definition_service, abcd_schema):
    abcd_schema.steps[0].config.timeout_minutes = 30
    await definition_service.publish(abcd_schema)
    await engine.start_workflow(TASK, "ABCD Workflow")

    assert await engine.suspend_expired() == []
    assert await engine.suspend_expired(now=utc_now() + timedelta(hours=1)) == [TASK]

    state = await engine.get_workflow_state(TASK)
    assert state.status == ExecutionStatus.SUSPENDED
    assert state.available_actions == []
    assert state.progress.status_text == "Suspended"

    result = await engine.execute_action(TASK, ActionRequest(action_id="complete"))
    assert result.error_code == "WORKFLOW_NOT_ACTIVE"

    trail = await engine.get_audit_trail(TASK)
    assert trail[-1].action == "workflow_suspended"
    assert "30 minute timeout" in trail[-1].notes


# ───────────────────────────── bug assessment ─────────────────────────────

def _bug_context(severity="Major", affected=True):
    return {
        "bugSeverity": severity,
        "severityIsMajorOrCritical": severity in ("Major", "Critical"),
        "versionAffected": affected,
    }


@pytest.mark.asyncio
async def test_bug_assessment_major_keeps_bug_as_new(engine, definition_service, bug_assessment_schema):
    await definition_service.publish(bug_assessment_schema)
    await engine.start_workflow(TASK, "Bug Assessment Workflow", _bug_context("Major"))

    steps = [
        ActionRequest(action_id="auto_evaluate"),
        ActionRequest(action_id="complete", notes="PROD-123"),
        ActionRequest(action_id="decide", decision="Yes"),
        ActionRequest(action_id="decide", decision="Yes", notes="reproduced on 3.2"),
        ActionRequest(action_id="auto_evaluate"),
    ]
    for request in steps:
        result = await engine.execute_action(TASK, request)
        assert result.success, result.message

    state = await engine.get_workflow_state(TASK)
    assert state.current_step.step_id == "keep-as-new"
    assert state.status == ExecutionStatus.ACTIVE
    assert state.ui_hints.current_step_type == "terminal"
    assert state.available_actions[0].button_variant == "workflow-terminal"

    final = await engine.execute_action(TASK, ActionRequest(action_id="complete"))
    assert final.success
    assert final.workflow_completed
    assert final.next_step_id is None
    assert final.new_state.status == ExecutionStatus.COMPLETED
    assert final.new_state.progress.status_text == "Complete"

    trail = await engine.get_audit_trail(TASK)
    assert trail[-1].action == "workflow_completed"
    assert trail[-1].previous_step_id == "keep-as-new"
    severity_entry = trail[-3]
    assert severity_entry.step_id == "check-severity"
    assert '"satisfied": true' in severity_entry.conditions_evaluated


@pytest.mark.asyncio
async def test_bug_assessment_clone_requires_issue_key(engine, definition_service, bug_assessment_schema):
    await definition_service.publish(bug_assessment_schema)
    await engine.start_workflow(TASK, "Bug Assessment Workflow", _bug_context())
    await engine.execute_action(TASK, ActionRequest(action_id="auto_evaluate"))

    result = await engine.execute_action(TASK, ActionRequest(action_id="complete", notes="x"))
    assert not result.success
    assert [e.code for e in result.errors] == ["MinLength"]
    assert result.message == "Enter the key of the cloned JIRA issue"


@pytest.mark.asyncio
async def test_bug_assessment_not_affected_completes(engine, definition_service, bug_assessment_schema):
    await definition_service.publish(bug_assessment_schema)
    await engine.start_workflow(TASK, "Bug Assessment Workflow", _bug_context(affected=False))

    result = await engine.execute_action(TASK, ActionRequest(action_id="auto_evaluate"))
    assert result.success
    assert result.next_step_id == "not-affected-terminal"
    assert result.workflow_completed


@pytest.mark.asyncio
async def test_suspend_expired_skips_execution_changed_by_another_session(
    engine, definition_service, execution_service, abcd_schema, db_engine, monkeypatch,
):
    abcd_schema.steps[0].config.timeout_minutes = 30
    await definition_service.publish(abcd_schema)
    await engine.start_workflow("task-raced", "ABCD Workflow")
    await engine.start_workflow("task-idle", "ABCD Workflow")

    async with create_session_factory(db_engine)() as other_session:
        other = WorkflowExecutionService(
            WorkflowExecutionRepository(other_session), WorkflowAuditLogRepository(other_session),
        )
        original_suspend = execution_service.suspend
        raced = []

        async def suspend_after_foreign_write(execution_id, reason, **kwargs):
            if not raced:
                raced.append(execution_id)
                await other.replace_snapshot(execution_id, context_json='{"touched": true}')
            return await original_suspend(execution_id, reason, **kwargs)

        monkeypatch.setattr(execution_service, "suspend", suspend_after_foreign_write)
        suspended = await engine.suspend_expired(now=utc_now() + timedelta(hours=1))

    states = {task: await engine.get_workflow_state(task) for task in ("task-raced", "task-idle")}
    [lost] = [task for task, state in states.items() if state.workflow_execution_id == raced[0]]
    [won] = [task for task in states if task != lost]

    assert suspended == [won]
    assert states[lost].status == ExecutionStatus.ACTIVE
    assert states[lost].context == {"touched": True}
    assert states[won].status == ExecutionStatus.SUSPENDED


@pytest.mark.asyncio
async def test_committed_action_reports_success_when_state_projection_fails(engine, abcd, monkeypatch):
    await engine.start_workflow(TASK, "ABCD Workflow")

    async def broken_projection(task_id):
        raise RuntimeError("projection failed")

    monkeypatch.setattr(engine, "get_workflow_state", broken_projection)
    result = await engine.execute_action(TASK, ActionRequest(action_id="complete"))

    assert result.success
    assert result.next_step_id == "B"
    assert result.new_state is None
    assert [e.action for e in await engine.get_audit_trail(TASK)] == ["workflow_started", "complete"]
