"""
Tests for BaseRepository and the dialect helpers.
"""

import pytest

from soundfeed.features.spotify.models import Track
from soundfeed.shared.repository import BaseRepository, dialect_insert


@pytest.fixture
def repo(db):
    return BaseRepository(db, Track)


class TestBaseRepository:
    """Generic lookups over a feature model."""

    async def test_create_and_get(self, repo):
        track = await repo.create(spotify_id="t1", title="One")

        assert track.id is not None
        assert (await repo.get_by_id(track.id)).title == "One"
        assert (await repo.get_by(spotify_id="t1")).id == track.id

    async def test_update(self, repo):
        track = await repo.create(spotify_id="t1", title="One")
        await repo.update(track, title="Uno")

        assert (await repo.get_by_id(track.id)).title == "Uno"

    async def test_count_with_filter(self, repo):
        await repo.create(spotify_id="t1", title="One", album="A")
        await repo.create(spotify_id="t2", title="Two", album="A")
        await repo.create(spotify_id="t3", title="Three", album="B")

        assert await repo.count() == 3
        assert await repo.count(album="A") == 2


class TestUpserts:
    """Single-statement insert-or-update and insert-or-ignore."""

    async def test_upsert_returning_inserts_then_updates_in_place(self, repo):
        first = await repo.upsert_returning(
            {"spotify_id": "t1", "title": "One", "album": "A"},
            conflict_on=["spotify_id"],
            update_fields=["title"],
        )
        second = await repo.upsert_returning(
            {"spotify_id": "t1", "title": "Uno", "album": "B"},
            conflict_on=["spotify_id"],
            update_fields=["title"],
        )

        assert second.id == first.id
        assert second.title == "Uno"
        # Not listed in update_fields
        assert second.album == "A"
        assert await repo.count() == 1

    async def test_insert_or_ignore_returns_none_for_existing_key(self, repo):
        created = await repo.insert_or_ignore(
            {"spotify_id": "t1", "title": "One"},
            conflict_on=["spotify_id"],
        )
        duplicate = await repo.insert_or_ignore(
            {"spotify_id": "t1", "title": "Other"},
            conflict_on=["spotify_id"],
        )

        assert created is not None
        assert duplicate is None
        assert (await repo.get_by(spotify_id="t1")).title == "One"


class TestDialectInsert:

    def test_sqlite_insert_supports_upsert(self, db):
        stmt = dialect_insert(db, Track)
        assert hasattr(stmt, "on_conflict_do_update")
        assert hasattr(stmt, "on_conflict_do_nothing")
