"""
Spotify integration module.

Usage:
    from soundfeed.features.spotify import SpotifyClient, EntityReconciler
    from soundfeed.features.spotify.sync import SyncOrchestrator, SyncRequest

Components:
- SpotifyOAuth: Token refresh against the accounts service
- SpotifyClient: Web API client returning a closed result type
- CredentialRefresher: Single-flight refresh per user
- EntityReconciler: Idempotent upserts of tracks, artists and profiles
- AggregationEngine: Ranked lists, playback log, feed events, daily stats

Models:
- Track, Artist: Normalized entities
- TopTrack, TopArtist: Ranked list snapshots per time range
- RecentPlayback: Playback history
- FeedEvent: Append-only activity feed
- ListeningStats: Daily totals
"""

from .models import (
    Track,
    Artist,
    TopTrack,
    TopArtist,
    RecentPlayback,
    FeedEvent,
    ListeningStats,
)
from .oauth import SpotifyOAuth, RefreshedToken
from .client import (
    SpotifyClient,
    SpotifyError,
    SpotifyAuthError,
    SpotifyUnavailableError,
    MalformedUpstreamData,
    SpotifyRateLimiter,
    rate_limiter,
    ApiSuccess,
    Unauthorized,
    RateLimited,
    UpstreamError,
    ProfileRequest,
    TopItemsRequest,
    RecentlyPlayedRequest,
)
from .refresh import CredentialRefresher, refresh_locks
from .reconciler import (
    EntityReconciler,
    EntityFailure,
    BatchOutcome,
    normalize_track,
    normalize_artist,
)
from .aggregation import AggregationEngine, ranked_list_locks
from .repository import (
    TrackRepository,
    ArtistRepository,
    RankedListRepository,
    PlaybackRepository,
    FeedEventRepository,
    ListeningStatsRepository,
)

__all__ = [
    # Models
    "Track",
    "Artist",
    "TopTrack",
    "TopArtist",
    "RecentPlayback",
    "FeedEvent",
    "ListeningStats",
    # OAuth
    "SpotifyOAuth",
    "RefreshedToken",
    "CredentialRefresher",
    "refresh_locks",
    # Client
    "SpotifyClient",
    "SpotifyError",
    "SpotifyAuthError",
    "SpotifyUnavailableError",
    "MalformedUpstreamData",
    "SpotifyRateLimiter",
    "rate_limiter",
    "ApiSuccess",
    "Unauthorized",
    "RateLimited",
    "UpstreamError",
    "ProfileRequest",
    "TopItemsRequest",
    "RecentlyPlayedRequest",
    # Reconciliation / aggregation
    "EntityReconciler",
    "EntityFailure",
    "BatchOutcome",
    "normalize_track",
    "normalize_artist",
    "AggregationEngine",
    "ranked_list_locks",
    # Repositories
    "TrackRepository",
    "ArtistRepository",
    "RankedListRepository",
    "PlaybackRepository",
    "FeedEventRepository",
    "ListeningStatsRepository",
]
