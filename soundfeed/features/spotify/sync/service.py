"""
Spotify sync orchestration.

Main entry point for syncing one kind of data for one user.

State machine per invocation:

    START -> FETCHING -> (UNAUTHORIZED -> REFRESHING -> FETCHING_RETRY)
          -> RECONCILING -> AGGREGATING -> DONE

with FAILED(reason) reachable from any state. A second Unauthorized after
a refresh is terminal (credential_invalid); rate limits and upstream errors
are surfaced, never retried here.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from soundfeed.config import settings
from soundfeed.features.users import CredentialStore
from soundfeed.shared.constants import (
    SyncFailureReason,
    SyncKind,
    SyncStatus,
    TimeRange,
    TopItemType,
)
from ..aggregation import AggregationEngine
from ..client import (
    ActivityRequest,
    ApiResult,
    ApiSuccess,
    MalformedUpstreamData,
    ProfileRequest,
    RateLimited,
    RecentlyPlayedRequest,
    SpotifyAuthError,
    SpotifyClient,
    SpotifyUnavailableError,
    TopItemsRequest,
    Unauthorized,
    UpstreamError,
)
from ..reconciler import EntityFailure, EntityReconciler
from ..refresh import CredentialRefresher
from ..schemas import PlaybackData
from .config import SyncConfig

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    START = "start"
    FETCHING = "fetching"
    UNAUTHORIZED = "unauthorized"
    REFRESHING = "refreshing"
    FETCHING_RETRY = "fetching_retry"
    RECONCILING = "reconciling"
    AGGREGATING = "aggregating"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncRequest:
    """
    What to sync.

    time_range applies to top_tracks / top_artists; after / before are
    Unix ms cursors for recent_playback (at most one of them).
    """
    kind: SyncKind
    time_range: TimeRange = TimeRange.MEDIUM_TERM
    limit: int = SyncConfig.DEFAULT_LIMIT
    offset: int = 0
    after: Optional[int] = None
    before: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "kind", SyncKind(self.kind))
        object.__setattr__(self, "time_range", TimeRange(self.time_range))
        if self.after is not None and self.before is not None:
            raise ValueError("Only one of 'after' or 'before' may be given")

    def to_api_request(self) -> ActivityRequest:
        if self.kind == SyncKind.PROFILE:
            return ProfileRequest()
        if self.kind == SyncKind.TOP_TRACKS:
            return TopItemsRequest(TopItemType.TRACKS, self.time_range, self.limit, self.offset)
        if self.kind == SyncKind.TOP_ARTISTS:
            return TopItemsRequest(TopItemType.ARTISTS, self.time_range, self.limit, self.offset)
        return RecentlyPlayedRequest(self.limit, self.after, self.before)


@dataclass
class SyncResult:
    """Outcome of one sync invocation."""
    status: SyncStatus
    kind: SyncKind
    entities: list[dict] = field(default_factory=list)
    feed_events_created: int = 0
    failures: list[EntityFailure] = field(default_factory=list)
    reason: Optional[SyncFailureReason] = None
    message: Optional[str] = None
    retry_after: Optional[int] = None
    cursors: Optional[dict] = None

    @classmethod
    def failed(
        cls,
        kind: SyncKind,
        reason: SyncFailureReason,
        message: str,
        retry_after: Optional[int] = None,
    ) -> "SyncResult":
        return cls(
            status=SyncStatus.FAILED,
            kind=kind,
            reason=reason,
            message=message[:SyncConfig.MAX_ERROR_LENGTH],
            retry_after=retry_after,
        )

    @classmethod
    def completed(
        cls,
        kind: SyncKind,
        entities: list[dict],
        feed_events_created: int,
        failures: list[EntityFailure],
        cursors: Optional[dict] = None,
    ) -> "SyncResult":
        return cls(
            status=SyncStatus.PARTIAL if failures else SyncStatus.DONE,
            kind=kind,
            entities=entities,
            feed_events_created=feed_events_created,
            failures=failures,
            cursors=cursors,
        )

    @property
    def ok(self) -> bool:
        return self.status != SyncStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "kind": self.kind.value,
            "entities": self.entities,
            "feed_events_created": self.feed_events_created,
            "failures": [f.to_dict() for f in self.failures],
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "retry_after": self.retry_after,
            "cursors": self.cursors,
        }


class SyncOrchestrator:
    """
    Main sync orchestrator.

    Drives client -> (refresh on Unauthorized) -> reconciler -> aggregation
    for one user and one kind, and reports a single SyncResult.

    Usage:
        orchestrator = SyncOrchestrator(db)
        result = await orchestrator.sync(
            user_id, SyncRequest(SyncKind.TOP_TRACKS, TimeRange.SHORT_TERM)
        )
    """

    def __init__(
        self,
        db: AsyncSession,
        client: Optional[SpotifyClient] = None,
        refresher: Optional[CredentialRefresher] = None,
        aggregation: Optional[AggregationEngine] = None,
    ):
        self.db = db
        self.client = client or SpotifyClient()
        self.credentials = CredentialStore(db)
        self.refresher = refresher or CredentialRefresher(db)
        self.reconciler = EntityReconciler(db)
        self.aggregation = aggregation or AggregationEngine(db)

    async def sync(
        self,
        user_id: str,
        request: SyncRequest,
        timeout: Optional[float] = None
    ) -> SyncResult:
        """
        Run one sync invocation.

        Args:
            user_id: Local user id
            request: What to collect
            timeout: Deadline in seconds for the whole invocation (network and
                storage); defaults to settings.sync_timeout_seconds

        Returns:
            SyncResult with status done, partial or failed
        """
        timeout = settings.sync_timeout_seconds if timeout is None else timeout

        try:
            result = await asyncio.wait_for(self._run(user_id, request), timeout)
        except asyncio.TimeoutError:
            logger.error(f"Sync {request.kind.value} for user {user_id} exceeded {timeout}s")
            await self._rollback()
            return SyncResult.failed(
                request.kind,
                SyncFailureReason.UPSTREAM_UNAVAILABLE,
                f"Deadline of {timeout}s exceeded"
            )
        except SQLAlchemyError as e:
            logger.error(f"Storage error during {request.kind.value} sync for user {user_id}: {e}")
            await self._rollback()
            return SyncResult.failed(
                request.kind,
                SyncFailureReason.UPSTREAM_UNAVAILABLE,
                f"Storage error: {e}"
            )

        if result.ok:
            logger.info(
                f"Synced {request.kind.value} for user {user_id}: "
                f"status={result.status.value}, entities={len(result.entities)}, "
                f"feed_events={result.feed_events_created}, failures={len(result.failures)}"
            )
        else:
            logger.warning(
                f"Sync {request.kind.value} failed for user {user_id}: "
                f"{result.reason.value} - {result.message}"
            )
        return result

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def _transition(self, user_id: str, state: SyncState) -> None:
        logger.debug(f"Sync user={user_id} -> {state.value}")

    async def _run(self, user_id: str, request: SyncRequest) -> SyncResult:
        kind = request.kind
        self._transition(user_id, SyncState.START)

        credentials = await self.credentials.get(user_id)
        if credentials is None:
            return self._fail(user_id, kind, SyncFailureReason.CREDENTIAL_INVALID, "User not found")

        api_request = request.to_api_request()

        self._transition(user_id, SyncState.FETCHING)
        result = await self.client.fetch(credentials.access_token, api_request)

        if isinstance(result, Unauthorized):
            if not credentials.can_refresh:
                return self._fail(
                    user_id, kind, SyncFailureReason.CREDENTIAL_INVALID,
                    "Access token rejected and no refresh token on file"
                )

            self._transition(user_id, SyncState.UNAUTHORIZED)
            self._transition(user_id, SyncState.REFRESHING)
            try:
                credentials = await self.refresher.refresh(user_id, credentials.access_token)
            except SpotifyAuthError as e:
                return self._fail(user_id, kind, SyncFailureReason.CREDENTIAL_INVALID, str(e))
            except SpotifyUnavailableError as e:
                return self._fail(user_id, kind, SyncFailureReason.UPSTREAM_UNAVAILABLE, str(e))

            self._transition(user_id, SyncState.FETCHING_RETRY)
            result = await self.client.fetch(credentials.access_token, api_request)

            if isinstance(result, Unauthorized):
                return self._fail(
                    user_id, kind, SyncFailureReason.CREDENTIAL_INVALID,
                    "Still unauthorized after token refresh"
                )

        failure = self._failure_for(user_id, kind, result)
        if failure is not None:
            return failure

        self._transition(user_id, SyncState.RECONCILING)
        if kind == SyncKind.PROFILE:
            sync_result = await self._sync_profile(user_id, result.data)
        elif kind == SyncKind.TOP_TRACKS:
            sync_result = await self._sync_top_tracks(user_id, request, result.data)
        elif kind == SyncKind.TOP_ARTISTS:
            sync_result = await self._sync_top_artists(user_id, request, result.data)
        else:
            sync_result = await self._sync_recent_playback(user_id, result.data)

        self._transition(user_id, SyncState.DONE if sync_result.ok else SyncState.FAILED)
        return sync_result

    def _failure_for(
        self,
        user_id: str,
        kind: SyncKind,
        result: ApiResult
    ) -> Optional[SyncResult]:
        """Map non-success API results to a terminal SyncResult."""
        if isinstance(result, ApiSuccess):
            return None
        if isinstance(result, RateLimited):
            return self._fail(
                user_id, kind, SyncFailureReason.RATE_LIMITED,
                result.message, retry_after=result.retry_after
            )
        if isinstance(result, UpstreamError):
            return self._fail(user_id, kind, SyncFailureReason.UPSTREAM_UNAVAILABLE, result.message)
        if isinstance(result, Unauthorized):
            return self._fail(user_id, kind, SyncFailureReason.CREDENTIAL_INVALID, result.message)
        raise TypeError(f"Unexpected API result: {result!r}")

    def _fail(
        self,
        user_id: str,
        kind: SyncKind,
        reason: SyncFailureReason,
        message: str,
        retry_after: Optional[int] = None
    ) -> SyncResult:
        self._transition(user_id, SyncState.FAILED)
        return SyncResult.failed(kind, reason, message, retry_after=retry_after)

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.warning(f"Rollback after failed sync raised: {e}")

    # -------------------------------------------------------------------------
    # Per-kind reconciliation + aggregation
    # -------------------------------------------------------------------------

    async def _sync_profile(self, user_id: str, data: dict) -> SyncResult:
        user, failures = await self.reconciler.reconcile_profile(user_id, data)
        self._transition(user_id, SyncState.AGGREGATING)
        await self.db.commit()

        entities = []
        if user is not None:
            entities.append({
                "id": user.id,
                "spotify_id": user.spotify_id,
                "display_name": user.display_name,
                "avatar_url": user.avatar_url,
            })
        return SyncResult.completed(SyncKind.PROFILE, entities, 0, failures)

    async def _sync_top_tracks(self, user_id: str, request: SyncRequest, data: dict) -> SyncResult:
        outcome = await self.reconciler.reconcile_tracks(data["items"])

        self._transition(user_id, SyncState.AGGREGATING)
        replacement = await self.aggregation.replace_ranked_list(
            user_id,
            SyncKind.TOP_TRACKS,
            request.time_range,
            [track.id for track in outcome.rows],
        )

        tracks = {track.id: track for track in outcome.rows}
        entities = [
            {**tracks[entry.track_id].to_dict(), "rank": entry.rank, "time_range": request.time_range.value}
            for entry in replacement.entries
        ]
        return SyncResult.completed(SyncKind.TOP_TRACKS, entities, len(replacement.events), outcome.failures)

    async def _sync_top_artists(self, user_id: str, request: SyncRequest, data: dict) -> SyncResult:
        outcome = await self.reconciler.reconcile_artists(data["items"])

        self._transition(user_id, SyncState.AGGREGATING)
        replacement = await self.aggregation.replace_ranked_list(
            user_id,
            SyncKind.TOP_ARTISTS,
            request.time_range,
            [artist.id for artist in outcome.rows],
            names={artist.id: artist.name for artist in outcome.rows},
        )

        artists = {artist.id: artist for artist in outcome.rows}
        entities = [
            {**artists[entry.artist_id].to_dict(), "rank": entry.rank, "time_range": request.time_range.value}
            for entry in replacement.entries
        ]
        return SyncResult.completed(SyncKind.TOP_ARTISTS, entities, len(replacement.events), outcome.failures)

    async def _sync_recent_playback(self, user_id: str, data: dict) -> SyncResult:
        failures: list[EntityFailure] = []
        records: list[PlaybackData] = []

        for item in data["items"]:
            try:
                records.append(PlaybackData.from_api(item))
            except MalformedUpstreamData as e:
                logger.warning(f"Skipping malformed playback item for user {user_id}: {e}")
                failures.append(
                    EntityFailure(e.external_id, SyncFailureReason.MALFORMED_UPSTREAM_DATA, str(e))
                )

        outcome = await self.reconciler.reconcile_normalized_tracks([r.track for r in records])
        failures.extend(outcome.failures)

        self._transition(user_id, SyncState.AGGREGATING)
        tracks_by_id = {item.row.id: item.row for item in outcome.reconciled}
        pairs = [(item.row.id, records[item.position]) for item in outcome.reconciled]

        ingestion = await self.aggregation.ingest_playback(user_id, pairs)
        failures.extend(ingestion.failures)
        await self.aggregation.update_daily_stats(user_id, ingestion.inserted_records)
        await self.db.commit()

        entities = [
            {**row.to_dict(), "track": tracks_by_id[row.track_id].to_dict()}
            for row in ingestion.inserted
        ]
        return SyncResult.completed(
            SyncKind.RECENT_PLAYBACK,
            entities,
            len(ingestion.feed_events),
            failures,
            cursors=data.get("cursors"),
        )
