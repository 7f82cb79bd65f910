"""
Spotify-related database models.

Models:
- Track: Normalized song, keyed by Spotify track ID
- Artist: Normalized artist, keyed by Spotify artist ID
- TopTrack / TopArtist: Ranked list snapshot per (user, time range)
- RecentPlayback: Playback history, unique per (user, track, played_at)
- FeedEvent: Append-only activity feed
- ListeningStats: Daily listening totals, one row per (user, day)
"""

from datetime import datetime

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from soundfeed.models.base import Base


class Track(Base):
    """
    Normalized track.

    `artist` is the display string of all artist names joined with ", ".
    Upserted by spotify_id; never deleted directly.
    """

    __tablename__ = "tracks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    spotify_id = Column(String(64), unique=True, nullable=False)

    title = Column(Text, nullable=False)
    artist = Column(Text, nullable=True)
    album = Column(Text, nullable=True)
    duration = Column(Integer, nullable=True)  # seconds
    source = Column(String(20), nullable=False, default="spotify")
    source_url = Column(Text, nullable=True)

    def __repr__(self):
        return f"<Track {self.spotify_id} {self.title!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "spotify_id": self.spotify_id,
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "duration": self.duration,
            "source": self.source,
            "source_url": self.source_url,
        }


class Artist(Base):
    """Normalized artist, upserted by spotify_id."""

    __tablename__ = "artists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    spotify_id = Column(String(64), unique=True, nullable=False)

    name = Column(Text, nullable=False)
    image_url = Column(Text, nullable=True)
    genres = Column(JSON, nullable=False, default=list)
    popularity = Column(Integer, nullable=False, default=0)
    followers = Column(Integer, nullable=False, default=0)
    source_url = Column(Text, nullable=True)

    def __repr__(self):
        return f"<Artist {self.spotify_id} {self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "spotify_id": self.spotify_id,
            "name": self.name,
            "image_url": self.image_url,
            "genres": list(self.genres or []),
            "popularity": self.popularity,
            "followers": self.followers,
            "source_url": self.source_url,
        }


class TopTrack(Base):
    """
    Ranked top-track entry.

    The set for a (user, time_range) pair is replaced as a whole on every
    collection; rank is dense and 1-based.
    """

    __tablename__ = "top_tracks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    track_id = Column(
        Integer,
        ForeignKey("tracks.id", ondelete="CASCADE"),
        nullable=False
    )
    time_range = Column(String(20), nullable=False)  # short_term, medium_term, long_term
    rank = Column(Integer, nullable=False)
    collected_at = Column(DateTime, default=datetime.utcnow)

    track = relationship("Track", lazy="joined")

    def __repr__(self):
        return f"<TopTrack user={self.user_id} {self.time_range} #{self.rank}>"


class TopArtist(Base):
    """Ranked top-artist entry. Same replacement semantics as TopTrack."""

    __tablename__ = "top_artists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    artist_id = Column(
        Integer,
        ForeignKey("artists.id", ondelete="CASCADE"),
        nullable=False
    )
    time_range = Column(String(20), nullable=False)
    rank = Column(Integer, nullable=False)
    collected_at = Column(DateTime, default=datetime.utcnow)

    artist = relationship("Artist", lazy="joined")

    def __repr__(self):
        return f"<TopArtist user={self.user_id} {self.time_range} #{self.rank}>"


class RecentPlayback(Base):
    """
    One play of a track by a user.

    The unique constraint makes re-ingesting the same history page a no-op.
    """

    __tablename__ = "recent_playback"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "track_id", "played_at",
            name="uq_recent_playback_user_track_played_at"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    track_id = Column(
        Integer,
        ForeignKey("tracks.id", ondelete="CASCADE"),
        nullable=False
    )
    played_at = Column(DateTime, nullable=False)  # UTC
    context = Column(JSON, nullable=True)  # playlist, album, etc.
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<RecentPlayback user={self.user_id} track={self.track_id} at={self.played_at}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "track_id": self.track_id,
            "played_at": self.played_at.isoformat() if self.played_at else None,
            "context": self.context,
        }


class FeedEvent(Base):
    """
    Append-only activity feed entry.

    Types:
    - top_track: Track entered a user's top list
    - top_artist: Artist entered a user's top list
    - recently_played: New playback ingested
    """

    __tablename__ = "feed_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    event_type = Column(String(50), nullable=False)
    track_id = Column(
        Integer,
        ForeignKey("tracks.id", ondelete="SET NULL"),
        nullable=True
    )
    context = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="feed_events")

    def __repr__(self):
        return f"<FeedEvent {self.id} type={self.event_type}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "track_id": self.track_id,
            "context": self.context,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ListeningStats(Base):
    """
    Daily listening statistics.

    Totals only grow within a day. unique_artists is the max over ingestion
    batches, not a true running distinct count.
    """

    __tablename__ = "listening_stats"
    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_listening_stats_user_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    date = Column(Date, nullable=False)
    total_tracks = Column(Integer, nullable=False, default=0)
    total_minutes = Column(Integer, nullable=False, default=0)
    unique_artists = Column(Integer, nullable=False, default=0)
    top_genres = Column(JSON, nullable=True)  # [{"genre": ..., "count": ...}]
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return (
            f"<ListeningStats user={self.user_id} {self.date} "
            f"tracks={self.total_tracks} minutes={self.total_minutes}>"
        )
