"""
Shared fixtures.

Every storage test gets its own file-backed SQLite database so that
several sessions can run against it concurrently.
"""

import os

# Must be set before soundfeed.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SPOTIFY_CLIENT_ID", "test-client-id")
os.environ.setdefault("SPOTIFY_CLIENT_SECRET", "test-client-secret")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from soundfeed.db.session import create_engine_for_url, init_db
from soundfeed.features.users import CredentialStore, UserRepository

from spotify_stub import SpotifyStub


@pytest.fixture
async def engine(tmp_path):
    """Fresh database with all tables."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'soundfeed.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def user(db):
    """User 'alice' holding access-1 / refresh-1."""
    user, _ = await UserRepository(db).get_or_create("alice")
    await CredentialStore(db).store_issued(user.id, "access-1", "refresh-1", 3600)
    return user


@pytest.fixture
def stub():
    return SpotifyStub()
