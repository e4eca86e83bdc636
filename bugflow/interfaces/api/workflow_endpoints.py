import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from bugflow.engine.workflow_engine import WorkflowEngine, build_engine
from bugflow.engine.workflow_state import ActionRequest, ActionResult, WorkflowState
from bugflow.errors import (
    DefinitionNotFoundError, NoInitialStepError, WorkflowAlreadyStartedError, WorkflowNotFoundError,
)
from bugflow.interfaces.api.schemas import AuditEntryResponse, ExecutionResponse, StartWorkflowRequest
from bugflow.persistence.database import get_db_session
from bugflow.persistence.repositories.workflow_audit_log_repository import WorkflowAuditLogRepository
from bugflow.persistence.repositories.workflow_execution_repository import WorkflowExecutionRepository
from bugflow.service.workflow_execution_service import WorkflowExecutionService

router = APIRouter(prefix="/workflows", tags=["workflows"])

logger = logging.getLogger(__name__)

_ACTION_STATUS = {
    "WORKFLOW_NOT_FOUND": 404,
    "WORKFLOW_NOT_ACTIVE": 400,
    "VALIDATION_FAILED": 422,
    "NO_VALID_TRANSITION": 422,
    "CONCURRENT_MODIFICATION": 409,
    "EXECUTION_ERROR": 500,
}


def get_engine(db: AsyncSession = Depends(get_db_session)) -> WorkflowEngine:
    return build_engine(db)


def get_execution_service(db: AsyncSession = Depends(get_db_session)) -> WorkflowExecutionService:
    return WorkflowExecutionService(WorkflowExecutionRepository(db), WorkflowAuditLogRepository(db))


@router.get("/statistics", response_model=Dict[str, Any])
async def get_statistics(service: WorkflowExecutionService = Depends(get_execution_service)):
    return await service.get_statistics()


@router.post("/{task_id}/start", response_model=ExecutionResponse, status_code=201)
async def start_workflow(task_id: str, req: StartWorkflowRequest, engine: WorkflowEngine = Depends(get_engine)):
    try:
        execution = await engine.start_workflow(task_id, req.workflow_name, req.context, started_by=req.started_by)
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except NoInitialStepError as e:
        raise HTTPException(status_code=422, detail=e.message)
    except WorkflowAlreadyStartedError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return ExecutionResponse.model_validate(execution)


@router.get("/{task_id}/state", response_model=WorkflowState)
async def get_state(task_id: str, engine: WorkflowEngine = Depends(get_engine)):
    try:
        return await engine.get_workflow_state(task_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.post("/{task_id}/actions", response_model=ActionResult)
async def execute_action(task_id: str, req: ActionRequest, engine: WorkflowEngine = Depends(get_engine)):
    result = await engine.execute_action(task_id, req)
    if result.success:
        return result
    logger.info(f"[execute_action] task {task_id}: {result.error_code} {result.message}")
    return JSONResponse(
        status_code=_ACTION_STATUS.get(result.error_code, 400),
        content=result.model_dump(mode="json", by_alias=True),
    )


@router.get("/{task_id}/audit", response_model=List[AuditEntryResponse])
async def get_audit_trail(task_id: str, engine: WorkflowEngine = Depends(get_engine)):
    entries = await engine.get_audit_trail(task_id)
    return [AuditEntryResponse.model_validate(e) for e in entries]
