# bugflow/adapters/task_generation.py
# fans an assessed bug out into one bug-assessment workflow per product instance
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from bugflow.config import MAX_AUTO_STEPS, SYSTEM_USER
from bugflow.dsl.dsl_model import StepType
from bugflow.engine.path_utils import normalize_context
from bugflow.engine.workflow_engine import WorkflowEngine
from bugflow.engine.workflow_state import ActionRequest, WorkflowState
from bugflow.errors import BugflowError
from bugflow.persistence.models import ExecutionStatus
from bugflow.service.workflow_seeder_service import WorkflowSeederService
from bugflow.utils.timefmt import utc_now

logger = logging.getLogger(__name__)


class BugSeverity(str, Enum):
    CRITICAL = "Critical"
    MAJOR = "Major"
    MODERATE = "Moderate"
    MINOR = "Minor"
    NONE = "None"


class ProductType(str, Enum):
    IRT = "InteractiveResponseTechnology"
    TM = "TM"
    EXTERNAL_MODULE = "ExternalModule"


class BugRecord(BaseModel):
    bug_id: str
    jira_key: str
    title: str
    severity: BugSeverity
    description: str = ""
    affected_versions: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class ProductInstance(BaseModel):
    product_id: str
    product_type: ProductType
    label: str
    version: str


class GeneratedTask(BaseModel):
    task_id: str
    bug_id: str
    product_id: str
    title: str
    description: str
    execution_id: Optional[str] = None
    current_step_id: Optional[str] = None
    status: Optional[ExecutionStatus] = None
    error: Optional[str] = None


def build_context(
    bug: BugRecord,
    product_version: str,
    affected_versions: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    versions = list(bug.affected_versions if affected_versions is None else affected_versions)
    version_affected = product_version in versions
    severity = bug.severity.value
    return normalize_context({
        "bugId": bug.bug_id,
        "bugJiraKey": bug.jira_key,
        "bugTitle": bug.title,
        "bugSeverity": severity,
        "bugDescription": bug.description or "",
        "productVersion": product_version,
        "affectedVersions": versions,
        "versionAffected": version_affected,
        "severityIsMajorOrCritical": bug.severity in (BugSeverity.MAJOR, BugSeverity.CRITICAL),
        "versionCheckNotes": (
            f"This product version {product_version} is affected by the bug"
            if version_affected else
            f"This product is version {product_version} and is not impacted by this core bug "
            f"which affects versions: {', '.join(versions)}"
        ),
        "severityCheckNotes": f"Bug severity is {severity}",
        "workflowStarted": utc_now(),
        "bugCreated": bug.created_at,
    })


class TaskGenerationAdapter:
    def __init__(
        self,
        engine: WorkflowEngine,
        seeder: WorkflowSeederService,
        max_auto_steps: int = MAX_AUTO_STEPS,
    ):
        self.engine = engine
        self.seeder = seeder
        self.max_auto_steps = max_auto_steps

    async def generate_tasks_for_bug(
        self, bug: BugRecord, products: Iterable[ProductInstance],
    ) -> List[GeneratedTask]:
        await self.seeder.seed_if_needed()
        definition = await self.seeder.get_bug_assessment_workflow()
        # plain value: a rolled-back action expires every row in the shared session
        definition_name = definition.name

        tasks = []
        for product in products:
            task = GeneratedTask(
                task_id=str(uuid.uuid4()),
                bug_id=bug.bug_id,
                product_id=product.product_id,
                title=f"{bug.jira_key} - {product.label}",
                description=(
                    f"Assess impact of bug {bug.jira_key} on {product.product_type.value} "
                    f"{product.label} v{product.version}"
                ),
            )
            context = build_context(bug, product.version)
            try:
                execution = await self.engine.start_workflow(task.task_id, definition_name, context)
            except BugflowError as e:
                task.error = e.message
                logger.error(f"[generate_tasks_for_bug] Could not start workflow for task {task.task_id}: {e.message}")
                tasks.append(task)
                continue

            task.execution_id = execution.workflow_execution_id
            state = await self.drain_auto_steps(task.task_id, context)
            task.status = state.status
            if state.current_step is not None:
                task.current_step_id = state.current_step.step_id
            else:
                finished = await self.engine.executions.get_by_task_id(task.task_id)
                task.current_step_id = finished.current_step_id
            tasks.append(task)
            logger.info(
                f"[generate_tasks_for_bug] {bug.jira_key} / {product.label}: task {task.task_id} "
                f"at {task.current_step_id} ({task.status.value})"
            )

        logger.info(f"[generate_tasks_for_bug] Generated {len(tasks)} task(s) for bug {bug.bug_id}")
        return tasks

    async def drain_auto_steps(self, task_id: str, context: Optional[Dict[str, Any]] = None) -> WorkflowState:
        """Runs the sole action of leading AutoCheck steps until a human step, completion or failure."""
        state = await self.engine.get_workflow_state(task_id)
        for _ in range(self.max_auto_steps):
            if (
                state.current_step is None
                or state.current_step.type != StepType.AUTO_CHECK
                or state.status != ExecutionStatus.ACTIVE
                or not state.available_actions
            ):
                return state
            action = state.available_actions[0]
            result = await self.engine.execute_action(task_id, ActionRequest(
                action_id=action.action_id,
                performed_by=SYSTEM_USER,
                additional_data=context or {},
            ))
            if not result.success:
                logger.warning(f"[drain_auto_steps] Auto-check step failed for task {task_id}: {result.message}")
                return state
            state = result.new_state or await self.engine.get_workflow_state(task_id)
            logger.debug(
                f"[drain_auto_steps] task {task_id} now at "
                f"{state.current_step.name if state.current_step else state.status.value}"
            )
        logger.warning(f"[drain_auto_steps] task {task_id}: stopped after {self.max_auto_steps} auto steps")
        return state
