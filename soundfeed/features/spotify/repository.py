"""
Spotify repositories.

Data access layer for tracks, artists, ranked lists, playback history,
feed events and daily listening stats. Idempotency lives here, in
single-statement upserts backed by unique constraints.
"""

from datetime import date, datetime
from typing import Iterable, Optional, Type, Union

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from soundfeed.shared.constants import SOURCE_SPOTIFY, TimeRange
from soundfeed.shared.repository import BaseRepository, dialect_greatest, dialect_insert
from .models import (
    Artist,
    FeedEvent,
    ListeningStats,
    RecentPlayback,
    TopArtist,
    TopTrack,
    Track,
)
from .schemas import ArtistData, TrackData


class TrackRepository(BaseRepository[Track]):
    """Repository for tracks."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, Track)

    async def get_by_spotify_id(self, spotify_id: str) -> Track | None:
        return await self.get_by(spotify_id=spotify_id)

    async def upsert(self, data: TrackData) -> Track:
        """
        Insert or update a track in one statement.

        On conflict the display fields (title, artist string, album) are
        updated; the local id stays the same.
        """
        return await self.upsert_returning(
            {
                "spotify_id": data.spotify_id,
                "title": data.title,
                "artist": data.artist,
                "album": data.album,
                "duration": data.duration,
                "source": SOURCE_SPOTIFY,
                "source_url": data.source_url,
            },
            conflict_on=["spotify_id"],
            update_fields=["title", "artist", "album"],
        )


class ArtistRepository(BaseRepository[Artist]):
    """Repository for artists."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, Artist)

    async def get_by_spotify_id(self, spotify_id: str) -> Artist | None:
        return await self.get_by(spotify_id=spotify_id)

    async def upsert(self, data: ArtistData) -> Artist:
        """Insert or update an artist in one statement."""
        return await self.upsert_returning(
            {
                "spotify_id": data.spotify_id,
                "name": data.name,
                "image_url": data.image_url,
                "genres": data.genres,
                "popularity": data.popularity,
                "followers": data.followers,
                "source_url": data.source_url,
            },
            conflict_on=["spotify_id"],
            update_fields=["name", "image_url", "genres", "popularity", "followers"],
        )

    async def get_genres(self, spotify_ids: Iterable[str]) -> dict[str, list[str]]:
        """Map known artist spotify ids to their genres."""
        ids = list(set(spotify_ids))
        if not ids:
            return {}
        result = await self.db.execute(
            select(Artist.spotify_id, Artist.genres).where(Artist.spotify_id.in_(ids))
        )
        return {spotify_id: list(genres or []) for spotify_id, genres in result.all()}


RankedModel = Union[Type[TopTrack], Type[TopArtist]]


class RankedListRepository(BaseRepository):
    """
    Repository for ranked list snapshots (top tracks / top artists).

    `entity_column` is the FK column name on the model: track_id or artist_id.
    """

    def __init__(self, db: AsyncSession, model: RankedModel):
        super().__init__(db, model)
        self.entity_column = "track_id" if model is TopTrack else "artist_id"

    async def get_entity_ids(self, user_id: str, time_range: TimeRange) -> list[int]:
        """Entity ids of the current snapshot, in rank order."""
        column = getattr(self.model, self.entity_column)
        result = await self.db.execute(
            select(column)
            .where(
                self.model.user_id == user_id,
                self.model.time_range == TimeRange(time_range).value
            )
            .order_by(self.model.rank)
        )
        return list(result.scalars().all())

    async def get_entries(self, user_id: str, time_range: TimeRange) -> list:
        result = await self.db.execute(
            select(self.model)
            .where(
                self.model.user_id == user_id,
                self.model.time_range == TimeRange(time_range).value
            )
            .order_by(self.model.rank)
        )
        return list(result.scalars().unique().all())

    async def delete_window(self, user_id: str, time_range: TimeRange) -> int:
        """Remove every entry for exactly this (user, time_range)."""
        result = await self.db.execute(
            delete(self.model).where(
                self.model.user_id == user_id,
                self.model.time_range == TimeRange(time_range).value
            )
        )
        return result.rowcount or 0

    async def insert_ranked(
        self,
        user_id: str,
        time_range: TimeRange,
        entity_ids: list[int],
        collected_at: Optional[datetime] = None,
    ) -> list:
        """Insert entries with rank = 1-based position in `entity_ids`."""
        collected_at = collected_at or datetime.utcnow()
        entries = [
            self.model(
                user_id=user_id,
                time_range=TimeRange(time_range).value,
                rank=position,
                collected_at=collected_at,
                **{self.entity_column: entity_id},
            )
            for position, entity_id in enumerate(entity_ids, start=1)
        ]
        self.db.add_all(entries)
        await self.db.flush()
        return entries


class PlaybackRepository(BaseRepository[RecentPlayback]):
    """Repository for playback history."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, RecentPlayback)

    async def insert_if_absent(
        self,
        user_id: str,
        track_id: int,
        played_at: datetime,
        context: Optional[dict] = None,
    ) -> RecentPlayback | None:
        """
        Insert a playback row keyed by (user, track, played_at).

        Returns:
            The new row, or None if it was already stored
        """
        return await self.insert_or_ignore(
            {
                "user_id": user_id,
                "track_id": track_id,
                "played_at": played_at,
                "context": context,
                "created_at": datetime.utcnow(),
            },
            conflict_on=["user_id", "track_id", "played_at"],
        )

    async def get_latest_played_at(self, user_id: str) -> Optional[datetime]:
        """Most recent stored play for the user (naive UTC), if any."""
        result = await self.db.execute(
            select(func.max(RecentPlayback.played_at)).where(RecentPlayback.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def count_for_user(self, user_id: str) -> int:
        return await self.count(user_id=user_id)


class FeedEventRepository(BaseRepository[FeedEvent]):
    """Repository for the append-only feed. Events are never updated."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, FeedEvent)

    async def add(
        self,
        user_id: str,
        event_type: str,
        track_id: Optional[int] = None,
        context: Optional[dict] = None,
    ) -> FeedEvent:
        event = FeedEvent(
            user_id=user_id,
            event_type=event_type,
            track_id=track_id,
            context=context,
            created_at=datetime.utcnow(),
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def get_for_user(
        self,
        user_id: str,
        event_type: Optional[str] = None,
        limit: int = 50
    ) -> list[FeedEvent]:
        """Newest first."""
        query = (
            select(FeedEvent)
            .where(FeedEvent.user_id == user_id)
            .order_by(FeedEvent.created_at.desc(), FeedEvent.id.desc())
            .limit(limit)
        )
        if event_type:
            query = query.where(FeedEvent.event_type == event_type)
        result = await self.db.execute(query)
        return list(result.scalars().all())


class ListeningStatsRepository(BaseRepository[ListeningStats]):
    """Repository for daily listening stats."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, ListeningStats)

    async def get_for_day(self, user_id: str, day: date) -> ListeningStats | None:
        result = await self.db.execute(
            select(ListeningStats)
            .where(ListeningStats.user_id == user_id, ListeningStats.date == day)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add_batch(
        self,
        user_id: str,
        day: date,
        tracks: int,
        minutes: int,
        unique_artists: int,
    ) -> None:
        """
        Merge batch totals into the day's row atomically.

        Counts and minutes add; unique_artists takes the max of stored and
        batch values. A missing row is created seeded with the batch.
        """
        now = datetime.utcnow()
        stmt = dialect_insert(self.db, ListeningStats).values(
            user_id=user_id,
            date=day,
            total_tracks=tracks,
            total_minutes=minutes,
            unique_artists=unique_artists,
            top_genres=[],
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ListeningStats.user_id, ListeningStats.date],
            set_={
                "total_tracks": ListeningStats.total_tracks + stmt.excluded.total_tracks,
                "total_minutes": ListeningStats.total_minutes + stmt.excluded.total_minutes,
                "unique_artists": dialect_greatest(
                    self.db,
                    ListeningStats.unique_artists,
                    stmt.excluded.unique_artists
                ),
                "updated_at": stmt.excluded.updated_at,
            }
        )
        await self.db.execute(stmt)

    async def lock_for_day(self, user_id: str, day: date) -> ListeningStats | None:
        """Fetch the day's row with a row lock (SELECT ... FOR UPDATE)."""
        result = await self.db.execute(
            select(ListeningStats)
            .where(ListeningStats.user_id == user_id, ListeningStats.date == day)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
