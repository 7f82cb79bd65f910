"""
Aggregation engine.

Derived state maintained from ingested activity:
- Ranked list replacement (top tracks / top artists per time range)
- Playback ingestion with recently_played feed events
- Daily listening statistics

Ranked lists and their feed events are written per (user, kind, time
range) under an in-process lock held through commit. Playback and stats
rely on unique constraints and atomic upserts instead of locks.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from soundfeed.shared.constants import (
    FeedEventType,
    SyncFailureReason,
    SyncKind,
    TimeRange,
    TOP_GENRES_LIMIT,
)
from soundfeed.shared.locks import KeyedLocks
from .models import FeedEvent, RecentPlayback, TopArtist, TopTrack
from .reconciler import EntityFailure
from .repository import (
    ArtistRepository,
    FeedEventRepository,
    ListeningStatsRepository,
    PlaybackRepository,
    RankedListRepository,
)
from .schemas import PlaybackData

logger = logging.getLogger(__name__)


# Global ranked-list locks, keyed by (user_id, kind, time_range)
ranked_list_locks = KeyedLocks()


@dataclass
class RankedListReplacement:
    """Result of swapping a ranked list snapshot."""
    entries: list
    previous_entity_ids: list[int]
    events: list[FeedEvent] = field(default_factory=list)

    @property
    def new_entity_ids(self) -> list[int]:
        """Entity ids that were not in the previous snapshot, in rank order."""
        previous = set(self.previous_entity_ids)
        return [
            _entity_id(entry) for entry in self.entries
            if _entity_id(entry) not in previous
        ]


@dataclass
class PlaybackIngestion:
    """Result of ingesting one page of playback history."""
    inserted: list[RecentPlayback] = field(default_factory=list)
    inserted_records: list[PlaybackData] = field(default_factory=list)
    duplicates: int = 0
    feed_events: list[FeedEvent] = field(default_factory=list)
    failures: list[EntityFailure] = field(default_factory=list)


@dataclass
class BatchStats:
    """Batch-local totals merged into the day's stats row."""
    tracks: int
    minutes: int
    unique_artists: int
    genre_counts: dict[str, int] = field(default_factory=dict)


def _entity_id(entry) -> int:
    return entry.track_id if isinstance(entry, TopTrack) else entry.artist_id


def compute_batch_stats(
    records: list[PlaybackData],
    artist_genres: Optional[dict[str, list[str]]] = None
) -> BatchStats:
    """
    Totals for one ingestion batch.

    unique_artists counts distinct primary artists in this batch only.
    Genres come from artists already stored (top-artist syncs populate them).
    """
    artist_genres = artist_genres or {}
    genres: Counter = Counter()
    for record in records:
        for artist_id in record.track.artist_ids:
            genres.update(artist_genres.get(artist_id, []))

    return BatchStats(
        tracks=len(records),
        minutes=sum(record.track.minutes for record in records),
        unique_artists=len({
            record.track.primary_artist
            for record in records
            if record.track.primary_artist
        }),
        genre_counts=dict(genres),
    )


def merge_top_genres(
    existing: Optional[list[dict]],
    batch_counts: dict[str, int],
    limit: int = TOP_GENRES_LIMIT
) -> list[dict]:
    """Add batch genre counts to a stored summary, keep the top `limit`."""
    totals: Counter = Counter()
    for item in existing or []:
        if isinstance(item, dict) and item.get("genre"):
            totals[item["genre"]] += int(item.get("count") or 0)
    totals.update(batch_counts)

    ranked = sorted(totals.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
    return [{"genre": genre, "count": count} for genre, count in ranked]


class AggregationEngine:
    """
    Maintains ranked lists, the playback log, feed events and daily stats.

    Usage:
        engine = AggregationEngine(db)
        replacement = await engine.replace_ranked_list(
            user_id, SyncKind.TOP_TRACKS, TimeRange.SHORT_TERM, [t.id for t in tracks]
        )
    """

    def __init__(self, db: AsyncSession, locks: Optional[KeyedLocks] = None):
        self.db = db
        self.locks = locks or ranked_list_locks
        self.artists = ArtistRepository(db)
        self.playback = PlaybackRepository(db)
        self.feed = FeedEventRepository(db)
        self.stats = ListeningStatsRepository(db)

    # -------------------------------------------------------------------------
    # Ranked lists
    # -------------------------------------------------------------------------

    def _ranked_repository(self, kind: SyncKind) -> RankedListRepository:
        if kind == SyncKind.TOP_TRACKS:
            return RankedListRepository(self.db, TopTrack)
        if kind == SyncKind.TOP_ARTISTS:
            return RankedListRepository(self.db, TopArtist)
        raise ValueError(f"{kind} has no ranked list")

    async def replace_ranked_list(
        self,
        user_id: str,
        kind: SyncKind,
        time_range: TimeRange,
        entity_ids: list[int],
        names: Optional[dict[int, str]] = None,
    ) -> RankedListReplacement:
        """
        Swap the (user, time_range) snapshot for `entity_ids`.

        Under the window lock: deletes every existing entry for the window,
        inserts the new ones with rank = 1-based position, creates the
        top_track / top_artist feed events for entries new to the window,
        and commits. The snapshot and its events commit together or not at
        all. Duplicate ids keep their first position.

        Args:
            names: Artist names by local id, carried in top_artist events
        """
        repo = self._ranked_repository(kind)
        kind = SyncKind(kind)
        time_range = TimeRange(time_range)
        ordered = list(dict.fromkeys(entity_ids))

        async with self.locks.acquire((user_id, kind.value, time_range.value)):
            previous = await repo.get_entity_ids(user_id, time_range)
            removed = await repo.delete_window(user_id, time_range)
            entries = await repo.insert_ranked(user_id, time_range, ordered)
            replacement = RankedListReplacement(entries=entries, previous_entity_ids=previous)
            replacement.events = await self._record_top_list_events(
                user_id, kind, time_range, replacement, names
            )
            await self.db.commit()

        logger.debug(
            f"Replaced {kind.value}/{time_range.value} for user {user_id}: "
            f"{removed} removed, {len(entries)} inserted, {len(replacement.events)} new"
        )
        return replacement

    async def _record_top_list_events(
        self,
        user_id: str,
        kind: SyncKind,
        time_range: TimeRange,
        replacement: RankedListReplacement,
        names: Optional[dict[int, str]] = None,
    ) -> list[FeedEvent]:
        """Feed events for entries that are new to this window's list."""
        names = names or {}
        new_ids = set(replacement.new_entity_ids)
        events = []

        for entry in replacement.entries:
            entity_id = _entity_id(entry)
            if entity_id not in new_ids:
                continue

            if kind == SyncKind.TOP_TRACKS:
                event = await self.feed.add(
                    user_id,
                    FeedEventType.TOP_TRACK.value,
                    track_id=entity_id,
                    context={"rank": entry.rank, "time_range": time_range.value},
                )
            else:
                event = await self.feed.add(
                    user_id,
                    FeedEventType.TOP_ARTIST.value,
                    track_id=None,
                    context={
                        "artist_id": entity_id,
                        "artist_name": names.get(entity_id),
                        "rank": entry.rank,
                        "time_range": time_range.value,
                    },
                )
            events.append(event)

        return events

    # -------------------------------------------------------------------------
    # Playback
    # -------------------------------------------------------------------------

    async def ingest_playback(
        self,
        user_id: str,
        records: list[tuple[int, PlaybackData]],
    ) -> PlaybackIngestion:
        """
        Insert playback rows keyed by (user, track, played_at).

        Args:
            user_id: Owner of the history
            records: (local track id, playback record) pairs

        Already-stored rows are skipped silently; each new row gets exactly
        one recently_played feed event. A row and its event share a
        SAVEPOINT: a storage error drops that play only and is reported in
        `failures`.
        """
        ingestion = PlaybackIngestion()

        for track_id, record in records:
            spotify_id = record.track.spotify_id
            try:
                async with self.db.begin_nested():
                    row = await self.playback.insert_if_absent(
                        user_id,
                        track_id,
                        record.played_at,
                        record.context,
                    )
                    event = None
                    if row is not None:
                        event = await self.feed.add(
                            user_id,
                            FeedEventType.RECENTLY_PLAYED.value,
                            track_id=track_id,
                            context={"played_at": record.played_at.isoformat() + "Z"},
                        )
            except IntegrityError as e:
                logger.warning(f"Storage conflict for play of {spotify_id} at {record.played_at}: {e.orig}")
                ingestion.failures.append(
                    EntityFailure(spotify_id, SyncFailureReason.STORAGE_CONFLICT, str(e.orig))
                )
                continue
            except SQLAlchemyError as e:
                logger.error(f"Failed to store play of {spotify_id} at {record.played_at}: {e}")
                ingestion.failures.append(
                    EntityFailure(spotify_id, SyncFailureReason.STORAGE_CONFLICT, str(e))
                )
                continue

            if row is None:
                ingestion.duplicates += 1
                continue

            ingestion.inserted.append(row)
            ingestion.inserted_records.append(record)
            ingestion.feed_events.append(event)

        if ingestion.duplicates:
            logger.debug(
                f"Skipped {ingestion.duplicates} already-stored plays for user {user_id}"
            )
        return ingestion

    # -------------------------------------------------------------------------
    # Daily stats
    # -------------------------------------------------------------------------

    async def update_daily_stats(
        self,
        user_id: str,
        records: list[PlaybackData],
        day: Optional[date] = None,
    ) -> Optional[BatchStats]:
        """
        Merge one ingestion batch into the day's listening stats.

        Counts and minutes add, unique_artists is max(stored, batch). The
        totals go through a single atomic upsert; the genre summary is merged
        under a row lock.
        """
        if not records:
            return None

        day = day or datetime.utcnow().date()
        artist_ids = [aid for record in records for aid in record.track.artist_ids]
        batch = compute_batch_stats(records, await self.artists.get_genres(artist_ids))

        await self.stats.add_batch(
            user_id,
            day,
            tracks=batch.tracks,
            minutes=batch.minutes,
            unique_artists=batch.unique_artists,
        )

        if batch.genre_counts:
            row = await self.stats.lock_for_day(user_id, day)
            if row is not None:
                row.top_genres = merge_top_genres(row.top_genres, batch.genre_counts)
                await self.db.flush()

        return batch
