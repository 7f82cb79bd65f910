"""
User model.

Holds identity, display attributes and the Spotify credential pair.
Credential fields are written only by the credential store (initial
authorization exchange and the refresh protocol).
"""

from datetime import datetime
import uuid

from sqlalchemy import Column, String, DateTime, Integer, Text
from sqlalchemy.orm import relationship

from soundfeed.models.base import Base


class User(Base):
    """
    Application user connected to Spotify.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(100), unique=True, nullable=False)

    # Profile (from Spotify /me)
    display_name = Column(String(255), nullable=True)
    avatar_url = Column(Text, nullable=True)
    spotify_id = Column(String(64), unique=True, nullable=True)

    # OAuth credentials (should be encrypted in production)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(Integer, nullable=True)  # Unix timestamp

    # Timestamps
    last_active_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    feed_events = relationship(
        "FeedEvent",
        back_populates="user",
        lazy="raise",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<User {self.id} ({self.username})>"
