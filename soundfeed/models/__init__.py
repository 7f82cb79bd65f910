"""
Database Models

Import all models here to ensure they are registered with SQLAlchemy.

Note: Feature models are imported lazily to avoid circular imports.
Use direct imports from features/ modules when possible.
"""

from soundfeed.models.base import Base


def _get_user_models():
    """Lazy import of User model."""
    from soundfeed.features.users.models import User
    return {"User": User}


def _get_spotify_models():
    """Lazy import of Spotify models."""
    from soundfeed.features.spotify import models
    return {
        "Track": models.Track,
        "Artist": models.Artist,
        "TopTrack": models.TopTrack,
        "TopArtist": models.TopArtist,
        "RecentPlayback": models.RecentPlayback,
        "FeedEvent": models.FeedEvent,
        "ListeningStats": models.ListeningStats,
    }


def register_models() -> None:
    """Import every model module so Base.metadata is complete."""
    _get_user_models()
    _get_spotify_models()


def __getattr__(name):
    user_models = _get_user_models()
    if name in user_models:
        return user_models[name]

    spotify_models = _get_spotify_models()
    if name in spotify_models:
        return spotify_models[name]

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Base",
    "register_models",
    "User",
    "Track",
    "Artist",
    "TopTrack",
    "TopArtist",
    "RecentPlayback",
    "FeedEvent",
    "ListeningStats",
]
