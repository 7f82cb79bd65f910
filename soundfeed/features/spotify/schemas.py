"""
Spotify schemas.

Pydantic models for normalized upstream records. `from_api` builds them from
raw Spotify JSON; a record without its identifying fields raises
MalformedUpstreamData, while missing optional fields fall back to defaults.
"""

import math
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from .client import MalformedUpstreamData, parse_spotify_timestamp


def _first_image(data: dict) -> Optional[str]:
    images = data.get("images") or []
    if images and isinstance(images[0], dict):
        return images[0].get("url")
    return None


def _spotify_url(data: dict) -> Optional[str]:
    return (data.get("external_urls") or {}).get("spotify")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _require_dict(data: Any, kind: str) -> dict:
    if not isinstance(data, dict):
        raise MalformedUpstreamData(f"{kind} record is not an object")
    return data


class TrackData(BaseModel):
    """Normalized track."""

    spotify_id: str = Field(min_length=1)
    title: str
    artist: str = ""  # "A, B"
    artist_ids: list[str] = Field(default_factory=list)
    primary_artist: Optional[str] = None  # id, or name when id is absent
    album: Optional[str] = None
    duration: int = 0  # whole seconds
    duration_ms: int = 0
    source_url: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any) -> "TrackData":
        data = _require_dict(data, "Track")
        external_id = data.get("id")
        if not external_id or not data.get("name"):
            raise MalformedUpstreamData("Track is missing id or name", external_id)

        artists = [a for a in (data.get("artists") or []) if isinstance(a, dict)]
        names = [a["name"] for a in artists if a.get("name")]
        ids = [a["id"] for a in artists if a.get("id")]
        duration_ms = data.get("duration_ms") or 0
        primary = None
        if artists:
            primary = artists[0].get("id") or artists[0].get("name")

        try:
            return cls(
                spotify_id=external_id,
                title=data["name"],
                artist=", ".join(names),
                artist_ids=ids,
                primary_artist=primary,
                album=(data.get("album") or {}).get("name"),
                duration=_round_half_up(duration_ms / 1000),
                duration_ms=duration_ms,
                source_url=_spotify_url(data),
            )
        except (ValidationError, TypeError, AttributeError) as e:
            raise MalformedUpstreamData(f"Invalid track {external_id}: {e}", external_id) from e

    @property
    def minutes(self) -> int:
        """Whole minutes, as counted in daily stats (rounded half up)."""
        return _round_half_up(self.duration_ms / 60000)


class ArtistData(BaseModel):
    """Normalized artist."""

    spotify_id: str = Field(min_length=1)
    name: str
    image_url: Optional[str] = None
    genres: list[str] = Field(default_factory=list)
    popularity: int = 0
    followers: int = 0
    source_url: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any) -> "ArtistData":
        data = _require_dict(data, "Artist")
        external_id = data.get("id")
        if not external_id or not data.get("name"):
            raise MalformedUpstreamData("Artist is missing id or name", external_id)

        try:
            return cls(
                spotify_id=external_id,
                name=data["name"],
                image_url=_first_image(data),
                genres=[g for g in (data.get("genres") or []) if isinstance(g, str)],
                popularity=data.get("popularity") or 0,
                followers=(data.get("followers") or {}).get("total") or 0,
                source_url=_spotify_url(data),
            )
        except (ValidationError, TypeError, AttributeError) as e:
            raise MalformedUpstreamData(f"Invalid artist {external_id}: {e}", external_id) from e


class PlaybackData(BaseModel):
    """One recently-played item."""

    track: TrackData
    played_at: datetime  # naive UTC
    context: Optional[dict[str, Any]] = None

    @classmethod
    def from_api(cls, item: Any) -> "PlaybackData":
        item = _require_dict(item, "Playback")
        track = TrackData.from_api(item.get("track"))

        played_at_raw = item.get("played_at")
        if not played_at_raw:
            raise MalformedUpstreamData("Playback is missing played_at", track.spotify_id)
        try:
            played_at = parse_spotify_timestamp(played_at_raw)
        except (ValueError, AttributeError) as e:
            raise MalformedUpstreamData(
                f"Invalid played_at {played_at_raw!r}", track.spotify_id
            ) from e

        context = item.get("context")
        if isinstance(context, dict):
            context = {
                "context_type": context.get("type"),
                "context_uri": context.get("uri"),
                "context_url": _spotify_url(context),
            }
        else:
            context = None

        return cls(track=track, played_at=played_at, context=context)


class ProfileData(BaseModel):
    """Normalized /me profile."""

    spotify_id: str = Field(min_length=1)
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any) -> "ProfileData":
        data = _require_dict(data, "Profile")
        if not data.get("id"):
            raise MalformedUpstreamData("Profile is missing id")
        return cls(
            spotify_id=data["id"],
            display_name=data.get("display_name"),
            avatar_url=_first_image(data),
        )
