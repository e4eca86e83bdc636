import os

os.environ.setdefault("BUGFLOW_ENV", "test")
os.environ.setdefault("BUGFLOW_AUTO_SEED", "false")

import pytest
import pytest_asyncio

from bugflow.config import WORKFLOW_DIR
from bugflow.dsl.dsl_loader import load_and_validate_definition
from bugflow.dsl.dsl_model import WorkflowSchema
from bugflow.engine.workflow_engine import WorkflowEngine
from bugflow.persistence.database import create_all, create_engine_for, create_session_factory
from bugflow.persistence.repositories.workflow_audit_log_repository import WorkflowAuditLogRepository
from bugflow.persistence.repositories.workflow_definition_repository import WorkflowDefinitionRepository
from bugflow.persistence.repositories.workflow_execution_repository import WorkflowExecutionRepository
from bugflow.service.workflow_definition_service import WorkflowDefinitionService
from bugflow.service.workflow_execution_service import WorkflowExecutionService
from bugflow.service.workflow_seeder_service import WorkflowSeederService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ───────────────────────────── schemas ─────────────────────────────

def make_schema(data: dict) -> WorkflowSchema:
    return WorkflowSchema.model_validate(data)


@pytest.fixture
def abcd_schema() -> WorkflowSchema:
    """A --complete--> B --decide_yes--> C(terminal), B --decide_no--> D(terminal)."""
    return make_schema({
        "workflowId": "abcd",
        "name": "ABCD Workflow",
        "initialStepId": "A",
        "steps": [
            {"stepId": "A", "name": "Step A", "type": "Action",
             "actions": [{"actionId": "complete", "name": "Complete", "type": "Complete"}]},
            {"stepId": "B", "name": "Step B", "type": "Decision",
             "actions": [{"actionId": "decide", "name": "Decide", "type": "Decide"}]},
            {"stepId": "C", "name": "Step C", "type": "Terminal", "isTerminal": True},
            {"stepId": "D", "name": "Step D", "type": "Terminal", "isTerminal": True},
        ],
        "transitions": [
            {"transitionId": "a-b", "fromStepId": "A", "toStepId": "B", "triggerAction": "complete"},
            {"transitionId": "b-c", "fromStepId": "B", "toStepId": "C", "triggerAction": "decide_yes"},
            {"transitionId": "b-d", "fromStepId": "B", "toStepId": "D", "triggerAction": "decide_no"},
        ],
    })


@pytest.fixture
def bug_assessment_schema() -> WorkflowSchema:
    return load_and_validate_definition(WORKFLOW_DIR / "bug_assessment.json")


# ───────────────────────────── database ────────────────────────────

@pytest_asyncio.fixture
async def db_engine():
    engine = create_engine_for(TEST_DATABASE_URL)
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    session_factory = create_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def definition_service(db_session) -> WorkflowDefinitionService:
    return WorkflowDefinitionService(WorkflowDefinitionRepository(db_session))


@pytest.fixture
def execution_service(db_session) -> WorkflowExecutionService:
    return WorkflowExecutionService(
        WorkflowExecutionRepository(db_session), WorkflowAuditLogRepository(db_session)
    )


@pytest.fixture
def engine(definition_service, execution_service) -> WorkflowEngine:
    return WorkflowEngine(definition_service, execution_service)


@pytest.fixture
def seeder(definition_service) -> WorkflowSeederService:
    return WorkflowSeederService(definition_service)
