"""
Base repository with common database operations.

Feature repositories subclass BaseRepository and get simple lookups plus
single-statement upserts that work on both PostgreSQL and SQLite.

Usage:
    class TrackRepository(BaseRepository[Track]):
        def __init__(self, db: AsyncSession):
            super().__init__(db, Track)

        async def upsert(self, data: TrackData) -> Track:
            return await self.upsert_returning(
                {"spotify_id": data.spotify_id, "title": data.title},
                conflict_on=["spotify_id"],
                update_fields=["title"],
            )
"""

from typing import Any, Generic, Sequence, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


def dialect_insert(db: AsyncSession, model):
    """
    Return a dialect-specific INSERT for `model`.

    Both the PostgreSQL and SQLite constructs support
    on_conflict_do_update / on_conflict_do_nothing and RETURNING.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect!r}")


def dialect_greatest(db: AsyncSession, *args):
    """GREATEST() on PostgreSQL, multi-argument max() on SQLite."""
    if db.get_bind().dialect.name == "postgresql":
        return func.greatest(*args)
    return func.max(*args)


class BaseRepository(Generic[T]):
    """
    Base repository for database operations.

    All methods are async and only flush; committing is the caller's job.
    """

    def __init__(self, db: AsyncSession, model: Type[T]):
        self.db = db
        self.model = model

    async def get_by_id(self, id: str | int) -> T | None:
        result = await self.db.execute(
            select(self.model).where(self.model.id == id)
        )
        return result.scalar_one_or_none()

    async def get_by(self, **kwargs) -> T | None:
        """Get a single entity by field values (must match at most one row)."""
        query = select(self.model)
        for key, value in kwargs.items():
            query = query.where(getattr(self.model, key) == value)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> T:
        entity = self.model(**kwargs)
        self.db.add(entity)
        await self.db.flush()
        await self.db.refresh(entity)
        return entity

    async def update(self, entity: T, **kwargs) -> T:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        await self.db.flush()
        await self.db.refresh(entity)
        return entity

    async def count(self, **kwargs) -> int:
        query = select(func.count()).select_from(self.model)
        for key, value in kwargs.items():
            query = query.where(getattr(self.model, key) == value)
        result = await self.db.execute(query)
        return result.scalar() or 0

    async def upsert_returning(
        self,
        values: dict[str, Any],
        conflict_on: Sequence[str],
        update_fields: Sequence[str],
    ) -> T:
        """
        INSERT ... ON CONFLICT DO UPDATE ... RETURNING in one statement.

        Args:
            values: Column values for the new row
            conflict_on: Columns of the unique constraint that identifies the row
            update_fields: Columns overwritten from `values` when the row exists

        Returns:
            The inserted or updated row. Any copy already in the session is
            refreshed with the stored values.
        """
        stmt = dialect_insert(self.db, self.model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[getattr(self.model, name) for name in conflict_on],
            set_={name: stmt.excluded[name] for name in update_fields},
        ).returning(self.model)

        result = await self.db.scalars(
            stmt,
            execution_options={"populate_existing": True}
        )
        return result.one()

    async def insert_or_ignore(
        self,
        values: dict[str, Any],
        conflict_on: Sequence[str],
    ) -> T | None:
        """
        INSERT ... ON CONFLICT DO NOTHING ... RETURNING.

        Returns:
            The new row, or None if a row with the same key already exists
        """
        stmt = dialect_insert(self.db, self.model).values(**values)
        stmt = stmt.on_conflict_do_nothing(
            index_elements=[getattr(self.model, name) for name in conflict_on],
        ).returning(self.model)

        result = await self.db.scalars(stmt)
        return result.one_or_none()
