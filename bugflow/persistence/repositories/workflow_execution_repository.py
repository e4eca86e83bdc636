from typing import Any, Dict, List, Optional
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bugflow.errors import ConcurrencyConflictError
from bugflow.persistence.models import WorkflowDefinition, WorkflowExecution
from bugflow.persistence.repositories.base_repository import BaseRepository


class WorkflowExecutionRepository(BaseRepository[WorkflowExecution]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, WorkflowExecution)

    def get_id_attribute(self) -> str:
        return "workflow_execution_id"

    async def get_by_execution_id(self, execution_id: str) -> Optional[WorkflowExecution]:
        stmt = (
            select(WorkflowExecution)
            .where(WorkflowExecution.workflow_execution_id == execution_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_by_task_id(self, task_id: str) -> Optional[WorkflowExecution]:
        # populate_existing: guarded updates bypass the identity map
        stmt = (
            select(WorkflowExecution)
            .where(WorkflowExecution.task_id == task_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_by_status(self, status: str) -> List[WorkflowExecution]:
        stmt = (
            select(WorkflowExecution)
            .where(WorkflowExecution.status == status)
            .order_by(WorkflowExecution.started_at.asc())
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def update_guarded(self, execution_id: str, expected_version: int, **values: Any) -> int:
        """
        Optimistic update: applies `values` only while the row still carries
        `expected_version`, bumping it. Flushes without committing; the caller
        owns the transaction. Returns the new version.
        """
        stmt = (
            update(WorkflowExecution)
            .where(
                WorkflowExecution.workflow_execution_id == execution_id,
                WorkflowExecution.version == expected_version,
            )
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrencyConflictError(
                f"Execution {execution_id} was modified concurrently (expected version {expected_version})",
                details={"execution_id": execution_id, "expected_version": expected_version},
            )
        return expected_version + 1

    async def count_by_status(self) -> Dict[str, int]:
        stmt = select(WorkflowExecution.status, func.count()).group_by(WorkflowExecution.status)
        result = await self.session.execute(stmt)
        return {status: count for status, count in result.all()}

    async def count_by_definition_name(self) -> Dict[str, int]:
        stmt = (
            select(WorkflowDefinition.name, func.count(WorkflowExecution.workflow_execution_id))
            .join(WorkflowDefinition, WorkflowDefinition.workflow_definition_id == WorkflowExecution.workflow_definition_id)
            .group_by(WorkflowDefinition.name)
        )
        result = await self.session.execute(stmt)
        return {name: count for name, count in result.all()}

    async def list_completed_spans(self) -> List[tuple]:
        stmt = (
            select(WorkflowExecution.started_at, WorkflowExecution.completed_at)
            .where(WorkflowExecution.completed_at.is_not(None))
        )
        result = await self.session.execute(stmt)
        return [tuple(row) for row in result.all()]
