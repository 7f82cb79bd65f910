"""
Spotify sync configuration constants.

Contains all configuration values for sync behavior.
"""

from soundfeed.shared.constants import TimeRange


class SyncConfig:
    """Configuration for sync behavior."""

    # Default page size for top items and recent playback
    DEFAULT_LIMIT = 20

    # Background collection pulls the largest page Spotify allows
    BACKGROUND_LIMIT = 50

    # Time ranges collected by the background runner
    BACKGROUND_TIME_RANGES = [
        TimeRange.SHORT_TERM,
        TimeRange.MEDIUM_TERM,
        TimeRange.LONG_TERM,
    ]

    # Delay between API calls for the same user (seconds)
    API_CALL_DELAY = 0.5

    # Truncate stored/logged error messages
    MAX_ERROR_LENGTH = 500
