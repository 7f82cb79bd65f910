"""
Tests for SyncOrchestrator.

Drives the full pipeline (client -> refresh -> reconcile -> aggregate)
against a stubbed Spotify and a real SQLite database.
"""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy.exc import IntegrityError

from soundfeed.features.spotify import (
    AggregationEngine,
    CredentialRefresher,
    FeedEventRepository,
    ListeningStatsRepository,
    PlaybackRepository,
    RankedListRepository,
    SpotifyClient,
    SpotifyRateLimiter,
    TopArtist,
    TopTrack,
    TrackRepository,
)
from soundfeed.features.spotify.sync import SyncOrchestrator, SyncRequest, SyncResult
from soundfeed.features.users import CredentialStore, Credentials, UserRepository
from soundfeed.shared.constants import (
    FeedEventType,
    SyncFailureReason,
    SyncKind,
    SyncStatus,
    TimeRange,
)
from soundfeed.shared.locks import KeyedLocks

from spotify_stub import (
    PROFILE_PATH,
    RECENTLY_PLAYED_PATH,
    TOKEN_PATH,
    TOP_ARTISTS_PATH,
    TOP_TRACKS_PATH,
    artist_payload,
    make_oauth,
    make_orchestrator,
    page,
    playback_item,
    profile_payload,
    track_payload,
)

TOP_TRACKS = SyncRequest(SyncKind.TOP_TRACKS, TimeRange.SHORT_TERM)


@pytest.fixture
def orchestrator(db, stub):
    return make_orchestrator(db, stub)


# =============================================================================
# SyncRequest / SyncResult
# =============================================================================

class TestSyncRequest:

    def test_accepts_string_values(self):
        request = SyncRequest("top_artists", "long_term")

        assert request.kind == SyncKind.TOP_ARTISTS
        assert request.time_range == TimeRange.LONG_TERM

    def test_cursors_are_exclusive(self):
        with pytest.raises(ValueError):
            SyncRequest(SyncKind.RECENT_PLAYBACK, after=1, before=2)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            SyncRequest("top_podcasts")


class TestSyncResult:

    def test_to_dict(self):
        result = SyncResult.failed(
            SyncKind.TOP_TRACKS, SyncFailureReason.RATE_LIMITED, "slow down", retry_after=30
        )

        assert result.to_dict() == {
            "status": "failed",
            "kind": "top_tracks",
            "entities": [],
            "feed_events_created": 0,
            "failures": [],
            "reason": "rate_limited",
            "message": "slow down",
            "retry_after": 30,
            "cursors": None,
        }


# =============================================================================
# Happy paths
# =============================================================================

class TestTopTracks:

    async def test_first_collection(self, db, orchestrator, stub, user):
        """Three tracks in, three ranked entries and three feed events out."""
        stub.add(TOP_TRACKS_PATH, json=page([track_payload(f"T{i}") for i in (1, 2, 3)]))

        result = await orchestrator.sync(user.id, TOP_TRACKS)

        assert result.status == SyncStatus.DONE
        assert [e["spotify_id"] for e in result.entities] == ["T1", "T2", "T3"]
        assert [e["rank"] for e in result.entities] == [1, 2, 3]
        assert result.feed_events_created == 3

        assert await TrackRepository(db).count() == 3
        entries = await RankedListRepository(db, TopTrack).get_entries(user.id, TimeRange.SHORT_TERM)
        assert [e.rank for e in entries] == [1, 2, 3]
        events = await FeedEventRepository(db).get_for_user(user.id, FeedEventType.TOP_TRACK.value)
        assert len(events) == 3

    async def test_resync_replaces_window(self, db, orchestrator, stub, user):
        stub.add(TOP_TRACKS_PATH, json=page([track_payload(t) for t in ("A", "B", "C")]))
        stub.add(TOP_TRACKS_PATH, json=page([track_payload(t) for t in ("C", "A")]))

        await orchestrator.sync(user.id, TOP_TRACKS)
        result = await orchestrator.sync(user.id, TOP_TRACKS)

        assert [(e["spotify_id"], e["rank"]) for e in result.entities] == [("C", 1), ("A", 2)]
        assert result.feed_events_created == 0
        entries = await RankedListRepository(db, TopTrack).get_entries(user.id, TimeRange.SHORT_TERM)
        assert len(entries) == 2
        assert await TrackRepository(db).count() == 3

    async def test_request_parameters(self, orchestrator, stub, user):
        stub.add(TOP_TRACKS_PATH, json=page([]))

        await orchestrator.sync(
            user.id, SyncRequest(SyncKind.TOP_TRACKS, TimeRange.LONG_TERM, limit=7, offset=14)
        )

        params = stub.calls(TOP_TRACKS_PATH)[0].url.params
        assert (params["time_range"], params["limit"], params["offset"]) == ("long_term", "7", "14")


class TestTopArtists:

    async def test_collection(self, db, orchestrator, stub, user):
        stub.add(TOP_ARTISTS_PATH, json=page([
            artist_payload("ar1", "First", genres=["rock"]),
            artist_payload("ar2", "Second"),
        ]))

        result = await orchestrator.sync(user.id, SyncRequest(SyncKind.TOP_ARTISTS, TimeRange.MEDIUM_TERM))

        assert result.status == SyncStatus.DONE
        assert [e["name"] for e in result.entities] == ["First", "Second"]
        assert result.entities[0]["genres"] == ["rock"]
        entries = await RankedListRepository(db, TopArtist).get_entries(user.id, TimeRange.MEDIUM_TERM)
        assert [e.rank for e in entries] == [1, 2]
        events = await FeedEventRepository(db).get_for_user(user.id, FeedEventType.TOP_ARTIST.value)
        assert {e.context["artist_name"] for e in events} == {"First", "Second"}


class TestProfile:

    async def test_profile(self, db, orchestrator, stub, user):
        stub.add(PROFILE_PATH, json=profile_payload("alice-spotify", "Alice A."))

        result = await orchestrator.sync(user.id, SyncRequest(SyncKind.PROFILE))

        assert result.status == SyncStatus.DONE
        assert result.entities[0]["display_name"] == "Alice A."
        stored = await UserRepository(db).get_fresh(user.id)
        assert stored.spotify_id == "alice-spotify"


class TestRecentPlayback:

    ITEMS = [
        playback_item(track_payload("t1", artists=[("a1", "One")]), "2026-10-18T10:00:00.000Z"),
        playback_item(track_payload("t2", artists=[("a2", "Two")]), "2026-10-18T10:04:00.000Z"),
    ]
    CURSORS = {"after": "1760781600000", "before": "1760781840000"}

    async def test_ingest(self, db, orchestrator, stub, user):
        stub.add(RECENTLY_PLAYED_PATH, json=page(self.ITEMS, cursors=self.CURSORS))

        result = await orchestrator.sync(user.id, SyncRequest(SyncKind.RECENT_PLAYBACK, limit=50))

        assert result.status == SyncStatus.DONE
        assert len(result.entities) == 2
        assert result.entities[0]["track"]["spotify_id"] == "t1"
        assert result.feed_events_created == 2
        assert result.cursors == self.CURSORS
        stats = await ListeningStatsRepository(db).get_for_day(user.id, datetime.utcnow().date())
        assert (stats.total_tracks, stats.total_minutes, stats.unique_artists) == (2, 6, 2)

    async def test_redelivered_page_changes_nothing(self, db, orchestrator, stub, user):
        stub.add(RECENTLY_PLAYED_PATH, json=page(self.ITEMS))

        await orchestrator.sync(user.id, SyncRequest(SyncKind.RECENT_PLAYBACK))
        result = await orchestrator.sync(user.id, SyncRequest(SyncKind.RECENT_PLAYBACK))

        assert result.status == SyncStatus.DONE
        assert result.entities == []
        assert result.feed_events_created == 0
        assert await PlaybackRepository(db).count_for_user(user.id) == 2
        stats = await ListeningStatsRepository(db).get_for_day(user.id, datetime.utcnow().date())
        assert stats.total_tracks == 2

    async def test_malformed_item_is_partial(self, db, orchestrator, stub, user):
        items = self.ITEMS + [{"track": track_payload("t3")}]
        stub.add(RECENTLY_PLAYED_PATH, json=page(items))

        result = await orchestrator.sync(user.id, SyncRequest(SyncKind.RECENT_PLAYBACK))

        assert result.status == SyncStatus.PARTIAL
        assert len(result.entities) == 2
        assert result.failures[0].external_id == "t3"
        assert result.failures[0].reason == SyncFailureReason.MALFORMED_UPSTREAM_DATA

    async def test_storage_conflict_on_one_play_is_partial(self, db, orchestrator, stub, user, monkeypatch):
        items = self.ITEMS + [
            playback_item(track_payload("t3", artists=[("a3", "Three")]), "2026-10-18T10:08:00.000Z"),
        ]
        stub.add(RECENTLY_PLAYED_PATH, json=page(items))
        playback = orchestrator.aggregation.playback
        insert = playback.insert_if_absent
        calls = []

        async def conflict_on_second(*args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise IntegrityError("INSERT INTO recent_playback", {}, Exception("constraint failed"))
            return await insert(*args, **kwargs)

        monkeypatch.setattr(playback, "insert_if_absent", conflict_on_second)
        result = await orchestrator.sync(user.id, SyncRequest(SyncKind.RECENT_PLAYBACK))

        assert result.status == SyncStatus.PARTIAL
        assert [e["track"]["spotify_id"] for e in result.entities] == ["t1", "t3"]
        assert result.feed_events_created == 2
        assert [(f.external_id, f.reason) for f in result.failures] == [
            ("t2", SyncFailureReason.STORAGE_CONFLICT)
        ]
        assert await PlaybackRepository(db).count_for_user(user.id) == 2
        stats = await ListeningStatsRepository(db).get_for_day(user.id, datetime.utcnow().date())
        assert stats.total_tracks == 2


# =============================================================================
# Partial success
# =============================================================================

class TestPartial:

    async def test_malformed_track_is_skipped(self, db, orchestrator, stub, user):
        stub.add(TOP_TRACKS_PATH, json=page([
            track_payload("T1"),
            {"id": "T2"},
            track_payload("T3"),
        ]))

        result = await orchestrator.sync(user.id, TOP_TRACKS)

        assert result.status == SyncStatus.PARTIAL
        assert [(e["spotify_id"], e["rank"]) for e in result.entities] == [("T1", 1), ("T3", 2)]
        assert [f.to_dict()["external_id"] for f in result.failures] == ["T2"]
        assert result.to_dict()["failures"][0]["reason"] == "malformed_upstream_data"
        assert await TrackRepository(db).count() == 2


# =============================================================================
# Credentials
# =============================================================================

class TestUnauthorized:

    async def test_refresh_then_retry(self, db, orchestrator, stub, user):
        stub.add(TOP_TRACKS_PATH, status=401)
        stub.add(TOP_TRACKS_PATH, json=page([track_payload("T1")]))
        stub.add(TOKEN_PATH, json={"access_token": "access-2", "expires_in": 3600})

        result = await orchestrator.sync(user.id, TOP_TRACKS)

        assert result.status == SyncStatus.DONE
        assert stub.bearer_tokens(TOP_TRACKS_PATH) == ["access-1", "access-2"]
        assert len(stub.calls(TOKEN_PATH)) == 1
        assert (await CredentialStore(db).get(user.id)).access_token == "access-2"

    async def test_second_unauthorized_is_terminal(self, orchestrator, stub, user):
        """Exactly one refresh and one retry."""
        stub.add(TOP_TRACKS_PATH, status=401)
        stub.add(TOKEN_PATH, json={"access_token": "access-2", "expires_in": 3600})

        result = await orchestrator.sync(user.id, TOP_TRACKS)

        assert result.status == SyncStatus.FAILED
        assert result.reason == SyncFailureReason.CREDENTIAL_INVALID
        assert len(stub.calls(TOP_TRACKS_PATH)) == 2
        assert len(stub.calls(TOKEN_PATH)) == 1

    async def test_no_refresh_token(self, db, stub):
        bob, _ = await UserRepository(db).get_or_create("bob")
        await CredentialStore(db).store_issued(bob.id, "access-b", None, 3600)
        stub.add(TOP_TRACKS_PATH, status=401)

        result = await make_orchestrator(db, stub).sync(bob.id, TOP_TRACKS)

        assert result.reason == SyncFailureReason.CREDENTIAL_INVALID
        assert stub.calls(TOKEN_PATH) == []

    async def test_refresh_rejected(self, orchestrator, stub, user):
        stub.add(TOP_TRACKS_PATH, status=401)
        stub.add(TOKEN_PATH, status=400, json={"error": "invalid_grant"})

        result = await orchestrator.sync(user.id, TOP_TRACKS)

        assert result.reason == SyncFailureReason.CREDENTIAL_INVALID
        assert len(stub.calls(TOP_TRACKS_PATH)) == 1

    async def test_refresh_provider_down(self, orchestrator, stub, user):
        stub.add(TOP_TRACKS_PATH, status=401)
        stub.add(TOKEN_PATH, status=503)

        result = await orchestrator.sync(user.id, TOP_TRACKS)

        assert result.reason == SyncFailureReason.UPSTREAM_UNAVAILABLE

    async def test_refresher_receives_stale_token(self, db, stub, user):
        stub.add(TOP_TRACKS_PATH, status=401)
        stub.add(TOP_TRACKS_PATH, json=page([]))
        orchestrator = make_orchestrator(db, stub)
        orchestrator.refresher = AsyncMock()
        orchestrator.refresher.refresh.return_value = Credentials(user.id, "access-2", "refresh-1", 4102444800)

        result = await orchestrator.sync(user.id, TOP_TRACKS)

        assert result.status == SyncStatus.DONE
        orchestrator.refresher.refresh.assert_awaited_once_with(user.id, "access-1")

    async def test_unknown_user(self, orchestrator, stub):
        result = await orchestrator.sync("missing", TOP_TRACKS)

        assert result.reason == SyncFailureReason.CREDENTIAL_INVALID
        assert stub.requests == []

    async def test_stale_token_refreshed_once(self, db, stub, user):
        """A second refresh for an already-replaced token reuses the stored one."""
        locks = KeyedLocks()
        stub.add(TOKEN_PATH, json={"access_token": "access-2", "expires_in": 3600})

        orchestrator = make_orchestrator(db, stub, refresh_locks=locks)
        first = await orchestrator.refresher.refresh(user.id, "access-1")
        second = await orchestrator.refresher.refresh(user.id, "access-1")

        assert first.access_token == second.access_token == "access-2"
        assert len(stub.calls(TOKEN_PATH)) == 1


# =============================================================================
# Upstream failures
# =============================================================================

class TestUpstreamFailures:

    async def test_rate_limited(self, db, orchestrator, stub, user):
        stub.add(TOP_TRACKS_PATH, status=429, headers={"Retry-After": "30"})

        result = await orchestrator.sync(user.id, TOP_TRACKS)

        assert result.status == SyncStatus.FAILED
        assert result.reason == SyncFailureReason.RATE_LIMITED
        assert result.retry_after == 30
        assert len(stub.calls(TOP_TRACKS_PATH)) == 1
        assert await TrackRepository(db).count() == 0

    async def test_server_error_message_is_surfaced(self, orchestrator, stub, user):
        stub.add(TOP_TRACKS_PATH, status=502, json={"error": "bad gateway"})

        result = await orchestrator.sync(user.id, TOP_TRACKS)

        assert result.reason == SyncFailureReason.UPSTREAM_UNAVAILABLE
        assert "502" in result.message

    async def test_deadline(self, db, stub, user):
        async def hang(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json=page([]))

        orchestrator = SyncOrchestrator(
            db,
            client=SpotifyClient(
                transport=httpx.MockTransport(hang),
                limiter=SpotifyRateLimiter(limit=10, window_seconds=30),
            ),
            refresher=CredentialRefresher(db, oauth=make_oauth(stub), locks=KeyedLocks()),
            aggregation=AggregationEngine(db, locks=KeyedLocks()),
        )

        result = await orchestrator.sync(user.id, TOP_TRACKS, timeout=0.05)

        assert result.status == SyncStatus.FAILED
        assert result.reason == SyncFailureReason.UPSTREAM_UNAVAILABLE
        assert "Deadline" in result.message

    async def test_deadline_during_aggregation_keeps_events_recoverable(self, db, orchestrator, stub, user, monkeypatch):
        """A timed-out swap is rolled back whole; the next sync still announces every entry."""
        stub.add(TOP_TRACKS_PATH, json=page([track_payload(f"T{i}") for i in (1, 2, 3)]))
        user_id = user.id
        add = orchestrator.aggregation.feed.add

        async def slow_add(*args, **kwargs):
            await asyncio.sleep(1)
            return await add(*args, **kwargs)

        monkeypatch.setattr(orchestrator.aggregation.feed, "add", slow_add)
        first = await orchestrator.sync(user_id, TOP_TRACKS, timeout=0.2)
        monkeypatch.undo()

        assert first.status == SyncStatus.FAILED
        assert first.reason == SyncFailureReason.UPSTREAM_UNAVAILABLE
        assert await RankedListRepository(db, TopTrack).get_entries(user_id, TimeRange.SHORT_TERM) == []

        second = await orchestrator.sync(user_id, TOP_TRACKS)

        assert second.status == SyncStatus.DONE
        assert second.feed_events_created == 3
        events = await FeedEventRepository(db).get_for_user(user_id, FeedEventType.TOP_TRACK.value)
        assert len(events) == 3
