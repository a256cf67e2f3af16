"""
Base Repository for the Membership Billing backend

Generic async repository over a single SQLModel table.
Repositories share the caller's session so that every mutation made while
handling one request or one webhook event commits or rolls back together.
"""

from typing import Generic, List, Optional, Type, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel


# Type variable for generic repository
ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """
    Generic async repository with read helpers and atomic insert support.

    Args:
        model: The SQLModel class to operate on
        session: Async database session
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self._model = model
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Get the current session."""
        return self._session

    def _insert(self, model: Optional[Type[SQLModel]] = None):
        """
        Dialect-specific INSERT supporting ON CONFLICT clauses.

        PostgreSQL in production, SQLite in tests; both accept
        ``on_conflict_do_nothing`` / ``on_conflict_do_update``.
        """
        target = model or self._model
        dialect = self._session.get_bind().dialect.name
        if dialect == "sqlite":
            return sqlite.insert(target)
        return postgresql.insert(target)

    async def get_by_id(self, id: UUID) -> Optional[ModelType]:
        """
        Get a single record by its primary key.

        Args:
            id: UUID primary key

        Returns:
            Model instance or None if not found
        """
        return await self._session.get(self._model, id)

    async def add(self, db_obj: ModelType) -> ModelType:
        """Persist a new instance and return it refreshed."""
        self._session.add(db_obj)
        await self._session.flush()
        await self._session.refresh(db_obj)
        return db_obj

    async def count(self) -> int:
        """Get total count of records."""
        stmt = select(func.count()).select_from(self._model)
        result = await self._session.execute(stmt)
        return result.scalar_one()
