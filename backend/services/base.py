"""Base CRUD service over an async session.

All service classes inherit from this. Provides standard
create/read/delete and converts SQLAlchemy failures into
StoreError so callers only ever see the engine's error taxonomy.
"""

import functools
from typing import Any, Generic, Optional, Sequence, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import StoreError
from db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


def store_errors(func):
    """Re-raise SQLAlchemy errors from a service coroutine as StoreError."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except SQLAlchemyError as e:
            raise StoreError(f"{func.__qualname__} failed: {e}") from e

    return wrapper


class BaseService(Generic[ModelType]):
    """Generic CRUD service for any SQLAlchemy model.

    Usage:
        class TaskService(BaseService[Task]):
            def __init__(self, db: AsyncSession):
                super().__init__(Task, db)
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    # ─── Read ──────────────────────────────────────────────

    @store_errors
    async def get_by_id(self, id: Any) -> Optional[ModelType]:
        """Get a single record by ID."""
        return await self.db.get(self.model, id)

    @store_errors
    async def list(
        self,
        offset: int = 0,
        limit: Optional[int] = None,
        order_by: str = "created_at",
        order_desc: bool = False,
        filters: Optional[dict[str, Any]] = None,
    ) -> Sequence[ModelType]:
        """List records with optional equality filters and sorting."""
        query = select(self.model)

        if filters:
            for field, value in filters.items():
                if hasattr(self.model, field):
                    query = query.where(getattr(self.model, field) == value)

        if hasattr(self.model, order_by):
            col = getattr(self.model, order_by)
            query = query.order_by(col.desc() if order_desc else col.asc())

        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return result.scalars().all()

    # ─── Create ────────────────────────────────────────────

    @store_errors
    async def create(self, data: dict[str, Any]) -> ModelType:
        """Create a new record and flush it so generated keys are populated."""
        instance = self.model(**data)
        self.db.add(instance)
        await self.db.flush()
        await self.db.refresh(instance)
        return instance

    # ─── Delete ────────────────────────────────────────────

    @store_errors
    async def delete(self, instance: ModelType) -> None:
        """Permanently delete a record."""
        await self.db.delete(instance)
        await self.db.flush()

    @store_errors
    async def commit(self) -> None:
        await self.db.commit()
