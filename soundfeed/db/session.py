"""
Database Session Management

Provides the async engine and session factory.
"""

from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from soundfeed.config import settings


def _get_async_url(url: str) -> str:
    """Convert sync database URL to async version."""
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///")
    elif url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://")
    return url


def configure_sqlite(engine: AsyncEngine) -> None:
    """
    Make SQLite behave for nested transactions and cascades.

    aiosqlite emits its own BEGIN lazily, which breaks SAVEPOINT handling.
    Disable it and emit BEGIN explicitly; also turn on foreign keys so
    ON DELETE CASCADE works like it does on PostgreSQL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_engine_for_url(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine with per-dialect settings."""
    async_url = _get_async_url(url)

    if async_url.startswith("sqlite"):
        engine = create_async_engine(async_url, **kwargs)
        configure_sqlite(engine)
        return engine

    if async_url.startswith("postgresql"):
        # PostgreSQL with connection pool settings
        return create_async_engine(
            async_url,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,  # 30 minutes
            **kwargs,
        )

    return create_async_engine(async_url, **kwargs)


async_engine = create_engine_for_url(settings.database_url)

# Async session factory
AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(engine: AsyncEngine = async_engine) -> None:
    """Create all tables (development / tests; production uses Alembic)."""
    from soundfeed.models import Base, register_models

    register_models()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
