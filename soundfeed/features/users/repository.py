"""
User repository.

Data access layer for the User model.
"""

from datetime import datetime

from sqlalchemy import select

from sqlalchemy.ext.asyncio import AsyncSession

from soundfeed.shared.repository import BaseRepository
from .models import User


class UserRepository(BaseRepository[User]):
    """Repository for User operations."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, User)

    async def get_by_username(self, username: str) -> User | None:
        return await self.get_by(username=username)

    async def get_by_spotify_id(self, spotify_id: str) -> User | None:
        return await self.get_by(spotify_id=spotify_id)

    async def get_fresh(self, user_id: str) -> User | None:
        """
        Get user bypassing the session identity map.

        Credentials may have been rewritten by a concurrent session, so
        cached attribute values are overwritten with what is stored.
        """
        result = await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, username: str, **kwargs) -> tuple[User, bool]:
        """
        Get existing user or create new one.

        Returns:
            Tuple of (user, created) where created is True if new user was made
        """
        user = await self.get_by_username(username)
        if user:
            return user, False
        user = await self.create(username=username, **kwargs)
        return user, True

    async def get_syncable(self) -> list[User]:
        """Users holding a refresh credential (eligible for background sync)."""
        result = await self.db.execute(
            select(User).where(User.refresh_token.is_not(None))
        )
        return list(result.scalars().all())

    async def update_profile(
        self,
        user: User,
        display_name: str | None,
        avatar_url: str | None,
        spotify_id: str,
    ) -> User:
        """Update display attributes from the Spotify profile."""
        return await self.update(
            user,
            display_name=display_name,
            avatar_url=avatar_url,
            spotify_id=spotify_id,
            last_active_at=datetime.utcnow(),
        )
