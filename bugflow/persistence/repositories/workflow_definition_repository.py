from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bugflow.persistence.models import WorkflowDefinition
from bugflow.persistence.repositories.base_repository import BaseRepository
from bugflow.utils.timefmt import utc_now


class WorkflowDefinitionRepository(BaseRepository[WorkflowDefinition]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, WorkflowDefinition)

    def get_id_attribute(self) -> str:
        return "workflow_definition_id"

    async def get_active_by_name(self, name: str) -> Optional[WorkflowDefinition]:
        stmt = (
            select(WorkflowDefinition)
            .where(WorkflowDefinition.name == name, WorkflowDefinition.is_active.is_(True))
            .order_by(WorkflowDefinition.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_by_name(self, name: str) -> List[WorkflowDefinition]:
        stmt = (
            select(WorkflowDefinition)
            .where(WorkflowDefinition.name == name)
            .order_by(WorkflowDefinition.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_active(self) -> List[WorkflowDefinition]:
        stmt = (
            select(WorkflowDefinition)
            .where(WorkflowDefinition.is_active.is_(True))
            .order_by(WorkflowDefinition.name.asc(), WorkflowDefinition.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def deactivate(self, name: Optional[str] = None) -> int:
        """Marks active rows inactive (all names when `name` is None). Flushes, does not commit."""
        stmt = (
            update(WorkflowDefinition)
            .where(WorkflowDefinition.is_active.is_(True))
            .values(is_active=False, updated_at=utc_now())
            .execution_options(synchronize_session="fetch")
        )
        if name is not None:
            stmt = stmt.where(WorkflowDefinition.name == name)
        result = await self.session.execute(stmt)
        return result.rowcount

