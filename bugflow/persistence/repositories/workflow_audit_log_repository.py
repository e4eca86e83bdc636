from typing import Dict, Iterable, List, Optional
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bugflow.persistence.models import WorkflowAuditLog
from bugflow.persistence.repositories.base_repository import BaseRepository


class WorkflowAuditLogRepository(BaseRepository[WorkflowAuditLog]):
    """Append-only: entries are added and read, never updated or deleted."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, WorkflowAuditLog)

    def get_id_attribute(self) -> str:
        return "sequence"

    async def append(self, entry: WorkflowAuditLog) -> WorkflowAuditLog:
        return await self.add(entry)

    async def list_by_execution(self, execution_id: str, result: Optional[str] = None) -> List[WorkflowAuditLog]:
        stmt = select(WorkflowAuditLog).where(WorkflowAuditLog.workflow_execution_id == execution_id)
        if result is not None:
            stmt = stmt.where(WorkflowAuditLog.result == result)
        stmt = stmt.order_by(WorkflowAuditLog.timestamp.asc(), WorkflowAuditLog.sequence.asc())
        rows = await self.session.execute(stmt)
        return list(rows.scalars().all())

    async def step_completion_counts(self, exclude_actions: Iterable[str] = ()) -> Dict[str, int]:
        stmt = (
            select(WorkflowAuditLog.step_name, func.count())
            .where(WorkflowAuditLog.result == "Success")
            .group_by(WorkflowAuditLog.step_name)
        )
        excluded = list(exclude_actions)
        if excluded:
            stmt = stmt.where(WorkflowAuditLog.action.not_in(excluded))
        rows = await self.session.execute(stmt)
        return {name: count for name, count in rows.all()}
