"""
Credential refresh protocol.

Invoked only after the API reported Unauthorized, never speculatively.
At most one refresh is in flight per user: concurrent callers queue on a
per-user lock and the later ones reuse the credential the first stored.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from soundfeed.features.users import CredentialStore, Credentials
from soundfeed.shared.locks import KeyedLocks
from .client import SpotifyAuthError
from .oauth import SpotifyOAuth

logger = logging.getLogger(__name__)


# Global per-user refresh locks
refresh_locks = KeyedLocks()


class CredentialRefresher:
    """
    Refreshes and persists a user's access credential.

    Usage:
        refresher = CredentialRefresher(db)
        creds = await refresher.refresh(user_id, stale_access_token)
    """

    def __init__(
        self,
        db: AsyncSession,
        oauth: Optional[SpotifyOAuth] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.store = CredentialStore(db)
        self.oauth = oauth or SpotifyOAuth()
        self.locks = locks or refresh_locks

    async def refresh(self, user_id: str, stale_access_token: Optional[str]) -> Credentials:
        """
        Obtain a new access credential for `user_id`.

        Args:
            user_id: User whose call came back Unauthorized
            stale_access_token: The token that was rejected

        Returns:
            Credentials persisted in the store

        Raises:
            SpotifyAuthError: No refresh token, or the provider rejected it
            SpotifyUnavailableError: Provider unreachable
        """
        async with self.locks.acquire(user_id):
            current = await self.store.get(user_id)
            if current is None:
                raise SpotifyAuthError(f"User {user_id} not found")

            # Another operation refreshed while we waited for the lock
            if (
                current.access_token
                and current.access_token != stale_access_token
                and not current.is_expired()
            ):
                logger.debug(f"Reusing credential refreshed concurrently for user {user_id}")
                return current

            if not current.can_refresh:
                raise SpotifyAuthError(f"No refresh token for user {user_id}")

            logger.info(f"Refreshing Spotify token for user {user_id}")
            token = await self.oauth.refresh_token(current.refresh_token)

            return await self.store.save_refreshed(
                user_id,
                access_token=token.access_token,
                expires_in=token.expires_in,
                refresh_token=token.refresh_token,
            )
