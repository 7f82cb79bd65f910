"""
Unified constants for sync kinds, time windows and failure reasons.

Single source of truth for the string values stored in the database and
exchanged over the API.
"""

from enum import Enum


class TimeRange(str, Enum):
    """
    Spotify top-items time window.

    - short_term: ~4 weeks
    - medium_term: ~6 months
    - long_term: several years
    """
    SHORT_TERM = "short_term"
    MEDIUM_TERM = "medium_term"
    LONG_TERM = "long_term"


class SyncKind(str, Enum):
    """What a sync invocation collects."""
    PROFILE = "profile"
    TOP_TRACKS = "top_tracks"
    TOP_ARTISTS = "top_artists"
    RECENT_PLAYBACK = "recent_playback"


class TopItemType(str, Enum):
    """Path segment for /me/top/{type}."""
    TRACKS = "tracks"
    ARTISTS = "artists"


class FeedEventType(str, Enum):
    TOP_TRACK = "top_track"
    TOP_ARTIST = "top_artist"
    RECENTLY_PLAYED = "recently_played"


class SyncFailureReason(str, Enum):
    """
    Error taxonomy surfaced to callers.

    - credential_invalid: missing/expired/unrefreshable credential, re-auth needed
    - upstream_unavailable: network, 5xx or deadline; caller may retry later
    - rate_limited: carries a retry-after hint
    - malformed_upstream_data: one record skipped, batch continues
    - storage_conflict: constraint violation fatal to one entity
    """
    CREDENTIAL_INVALID = "credential_invalid"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    RATE_LIMITED = "rate_limited"
    MALFORMED_UPSTREAM_DATA = "malformed_upstream_data"
    STORAGE_CONFLICT = "storage_conflict"


class SyncStatus(str, Enum):
    DONE = "done"
    PARTIAL = "partial"
    FAILED = "failed"


# Spotify caps page size for top items and recently played at 50
MAX_PAGE_SIZE = 50

# Source tag stored on every track ingested from Spotify
SOURCE_SPOTIFY = "spotify"

# How many genres the daily top-genre summary keeps
TOP_GENRES_LIMIT = 10
