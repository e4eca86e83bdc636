from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bugflow.dsl.dsl_model import ValidationResult, WorkflowSchema
from bugflow.interfaces.api.schemas import DefinitionResponse
from bugflow.persistence.database import get_db_session
from bugflow.persistence.repositories.workflow_definition_repository import WorkflowDefinitionRepository
from bugflow.service.workflow_definition_service import WorkflowDefinitionService

router = APIRouter(prefix="/workflow_definitions", tags=["workflow_definitions"])


def get_definition_service(db: AsyncSession = Depends(get_db_session)) -> WorkflowDefinitionService:
    return WorkflowDefinitionService(WorkflowDefinitionRepository(db))


@router.get("/", response_model=List[DefinitionResponse])
async def list_definitions(service: WorkflowDefinitionService = Depends(get_definition_service)):
    return [DefinitionResponse.model_validate(d) for d in await service.list_active()]


@router.post("/validate", response_model=ValidationResult)
async def validate_definition(
    schema: WorkflowSchema,
    service: WorkflowDefinitionService = Depends(get_definition_service),
):
    return service.validate_report(schema)
