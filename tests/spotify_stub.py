"""
Spotify test doubles.

Payload builders shaped like Web API objects, and a programmable
httpx.MockTransport handler that serves both the Web API and the
accounts service.
"""

import httpx

from soundfeed.features.spotify import (
    AggregationEngine,
    CredentialRefresher,
    SpotifyClient,
    SpotifyOAuth,
    SpotifyRateLimiter,
)
from soundfeed.features.spotify.sync import SyncOrchestrator
from soundfeed.shared.locks import KeyedLocks

API = "/v1"
TOKEN_PATH = "/api/token"
PROFILE_PATH = f"{API}/me"
TOP_TRACKS_PATH = f"{API}/me/top/tracks"
TOP_ARTISTS_PATH = f"{API}/me/top/artists"
RECENTLY_PLAYED_PATH = f"{API}/me/player/recently-played"


# =============================================================================
# Payload builders
# =============================================================================

def track_payload(
    spotify_id: str,
    name: str = None,
    artists=(("ar1", "Artist One"),),
    duration_ms: int = 180000,
    album: str = "Album",
) -> dict:
    return {
        "id": spotify_id,
        "name": name or f"Track {spotify_id}",
        "artists": [{"id": artist_id, "name": artist_name} for artist_id, artist_name in artists],
        "album": {"name": album},
        "duration_ms": duration_ms,
        "external_urls": {"spotify": f"https://open.spotify.com/track/{spotify_id}"},
    }


def artist_payload(
    spotify_id: str,
    name: str = None,
    genres=(),
    popularity: int = 50,
    followers: int = 1000,
) -> dict:
    return {
        "id": spotify_id,
        "name": name or f"Artist {spotify_id}",
        "genres": list(genres),
        "popularity": popularity,
        "followers": {"total": followers},
        "images": [{"url": f"https://i.scdn.co/image/{spotify_id}"}],
        "external_urls": {"spotify": f"https://open.spotify.com/artist/{spotify_id}"},
    }


def playback_item(track: dict, played_at: str, context: dict = None) -> dict:
    return {"track": track, "played_at": played_at, "context": context}


def profile_payload(spotify_id: str = "alice-spotify", display_name: str = "Alice") -> dict:
    return {
        "id": spotify_id,
        "display_name": display_name,
        "images": [{"url": "https://i.scdn.co/image/alice"}],
    }


def page(items: list, **extra) -> dict:
    return {"items": items, **extra}


# =============================================================================
# Transport stub
# =============================================================================

class SpotifyStub:
    """
    Serves canned responses by URL path.

    Responses queued for a path are returned in order; the last one
    repeats once the queue is down to it.
    """

    def __init__(self):
        self.routes: dict[str, list[tuple]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, path: str, status: int = 200, json=None, headers: dict = None):
        self.routes.setdefault(path, []).append((status, json, headers or {}))
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"error": f"no stub for {request.url.path}"})
        status, body, headers = queue.pop(0) if len(queue) > 1 else queue[0]
        if body is None:
            return httpx.Response(status, headers=headers)
        return httpx.Response(status, json=body, headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def bearer_tokens(self, path: str) -> list[str]:
        return [r.headers["Authorization"].removeprefix("Bearer ") for r in self.calls(path)]


def make_client(stub: SpotifyStub, limit: int = 1000) -> SpotifyClient:
    return SpotifyClient(
        transport=stub.transport,
        limiter=SpotifyRateLimiter(limit=limit, window_seconds=30),
    )


def make_oauth(stub: SpotifyStub) -> SpotifyOAuth:
    return SpotifyOAuth(
        transport=stub.transport,
        client_id="test-client-id",
        client_secret="test-client-secret",
    )


def make_orchestrator(db, stub: SpotifyStub, refresh_locks: KeyedLocks = None) -> SyncOrchestrator:
    """Orchestrator wired to the stub with locks private to the test."""
    return SyncOrchestrator(
        db,
        client=make_client(stub),
        refresher=CredentialRefresher(
            db,
            oauth=make_oauth(stub),
            locks=refresh_locks or KeyedLocks(),
        ),
        aggregation=AggregationEngine(db, locks=KeyedLocks()),
    )
