"""
Entity reconciliation.

Turns raw Spotify records into local Track / Artist rows (and the user's
profile), keyed by the Spotify id. Each entity is reconciled inside its own
SAVEPOINT: one bad record is reported and skipped, the rest of the batch
still lands.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from soundfeed.features.users import User, UserRepository
from soundfeed.shared.constants import SyncFailureReason
from .client import MalformedUpstreamData
from .models import Artist, Track
from .repository import ArtistRepository, TrackRepository
from .schemas import ArtistData, ProfileData, TrackData

logger = logging.getLogger(__name__)

R = TypeVar("R")
D = TypeVar("D")


def normalize_track(data: Any) -> TrackData:
    """Build TrackData from a raw Spotify track object."""
    return data if isinstance(data, TrackData) else TrackData.from_api(data)


def normalize_artist(data: Any) -> ArtistData:
    """Build ArtistData from a raw Spotify artist object."""
    return data if isinstance(data, ArtistData) else ArtistData.from_api(data)


@dataclass
class EntityFailure:
    """Why a single entity of a batch was not stored."""
    external_id: Optional[str]
    reason: SyncFailureReason
    message: str

    def to_dict(self) -> dict:
        return {
            "external_id": self.external_id,
            "reason": self.reason.value,
            "message": self.message,
        }


@dataclass
class Reconciled(Generic[R, D]):
    """One reconciled entity: the stored row plus the normalized input."""
    row: R
    data: D
    position: int  # index in the upstream batch


@dataclass
class BatchOutcome(Generic[R, D]):
    reconciled: list[Reconciled[R, D]] = field(default_factory=list)
    failures: list[EntityFailure] = field(default_factory=list)

    @property
    def rows(self) -> list[R]:
        return [item.row for item in self.reconciled]


class EntityReconciler:
    """
    Upserts normalized entities into storage.

    Usage:
        reconciler = EntityReconciler(db)
        outcome = await reconciler.reconcile_tracks(items)
        local_ids = [t.id for t in outcome.rows]
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.tracks = TrackRepository(db)
        self.artists = ArtistRepository(db)
        self.users = UserRepository(db)

    # -------------------------------------------------------------------------
    # Single entities
    # -------------------------------------------------------------------------

    async def upsert_track(self, data: Any) -> Track:
        """Normalize and upsert one track (raw dict or TrackData)."""
        return await self.tracks.upsert(normalize_track(data))

    async def upsert_artist(self, data: Any) -> Artist:
        """Normalize and upsert one artist (raw dict or ArtistData)."""
        return await self.artists.upsert(normalize_artist(data))

    async def reconcile_profile(
        self,
        user_id: str,
        data: Any
    ) -> tuple[Optional[User], list[EntityFailure]]:
        """
        Apply the Spotify profile to the local user.

        A spotify id already bound to a different user is a storage
        conflict for this entity.
        """
        try:
            profile = ProfileData.from_api(data)
        except MalformedUpstreamData as e:
            logger.warning(f"Skipping malformed profile for user {user_id}: {e}")
            return None, [EntityFailure(e.external_id, SyncFailureReason.MALFORMED_UPSTREAM_DATA, str(e))]

        owner = await self.users.get_by_spotify_id(profile.spotify_id)
        if owner and owner.id != user_id:
            message = f"Spotify account {profile.spotify_id} is linked to another user"
            logger.warning(message)
            return None, [EntityFailure(profile.spotify_id, SyncFailureReason.STORAGE_CONFLICT, message)]

        user = await self.users.get_fresh(user_id)
        if not user:
            message = f"User {user_id} not found"
            return None, [EntityFailure(profile.spotify_id, SyncFailureReason.STORAGE_CONFLICT, message)]

        try:
            async with self.db.begin_nested():
                user = await self.users.update_profile(
                    user,
                    display_name=profile.display_name,
                    avatar_url=profile.avatar_url,
                    spotify_id=profile.spotify_id,
                )
        except IntegrityError as e:
            logger.warning(f"Profile conflict for user {user_id}: {e.orig}")
            return None, [EntityFailure(profile.spotify_id, SyncFailureReason.STORAGE_CONFLICT, str(e.orig))]

        return user, []

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def reconcile_tracks(self, items: list[Any]) -> BatchOutcome[Track, TrackData]:
        """Reconcile raw track dicts; failures are collected, not raised."""
        return await self._reconcile_batch(items, normalize_track, self.tracks.upsert)

    async def reconcile_artists(self, items: list[Any]) -> BatchOutcome[Artist, ArtistData]:
        """Reconcile raw artist dicts; failures are collected, not raised."""
        return await self._reconcile_batch(items, normalize_artist, self.artists.upsert)

    async def reconcile_normalized_tracks(
        self,
        tracks: list[TrackData]
    ) -> BatchOutcome[Track, TrackData]:
        """Reconcile already-normalized tracks (e.g. from playback items)."""
        return await self._reconcile_batch(tracks, lambda t: t, self.tracks.upsert)

    async def _reconcile_batch(
        self,
        items: list[Any],
        normalize: Callable[[Any], D],
        upsert: Callable,
    ) -> BatchOutcome:
        outcome = BatchOutcome()

        for position, item in enumerate(items):
            try:
                data = normalize(item)
            except MalformedUpstreamData as e:
                logger.warning(f"Skipping malformed record at position {position}: {e}")
                outcome.failures.append(
                    EntityFailure(e.external_id, SyncFailureReason.MALFORMED_UPSTREAM_DATA, str(e))
                )
                continue

            try:
                async with self.db.begin_nested():
                    row = await upsert(data)
            except IntegrityError as e:
                logger.warning(f"Storage conflict for {data.spotify_id}: {e.orig}")
                outcome.failures.append(
                    EntityFailure(data.spotify_id, SyncFailureReason.STORAGE_CONFLICT, str(e.orig))
                )
                continue
            except SQLAlchemyError as e:
                logger.error(f"Failed to store {data.spotify_id}: {e}")
                outcome.failures.append(
                    EntityFailure(data.spotify_id, SyncFailureReason.STORAGE_CONFLICT, str(e))
                )
                continue

            outcome.reconciled.append(Reconciled(row=row, data=data, position=position))

        return outcome
