# bugflow/persistence/repositories/base_repository.py

from typing import Any, Type, TypeVar, Optional, Generic
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from bugflow.utils.lock_manager import lock_manager

T = TypeVar('T')

class BaseRepository(Generic[T]):
    """Generic async CRUD repository. `add` only flushes; `create`/`update` commit."""

    def __init__(self, session: AsyncSession, model_class: Type[T]):
        self.session = session
        self.model_class = model_class

    async def get_by_id(self, id_value: Any) -> Optional[T]:
        return await self.session.get(self.model_class, id_value)

    async def add(self, entity: T) -> T:
        self.session.add(entity)
        await self.session.flush()
        return entity

    async def create(self, entity: T) -> T:
        self.session.add(entity)
        try:
            await self.session.commit()
            await self.session.refresh(entity)
            return entity
        except IntegrityError:
            await self.session.rollback()
            raise

    async def update(self, entity: T) -> T:
        entity_id = getattr(entity, self.get_id_attribute())
        key = f"{self.model_class.__name__}:{entity_id}"

        async with lock_manager.lock(key):
            self.session.add(entity)
            await self.session.commit()
            await self.session.refresh(entity)
            return entity

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    def get_id_attribute(self) -> str:
        return "id"
