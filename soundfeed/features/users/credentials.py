"""
Credential store.

Per-user storage of the Spotify credential pair and its expiry.
Only two writers exist: the initial authorization exchange (store_issued)
and the refresh protocol (save_refreshed).
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from soundfeed.config import settings
from .repository import UserRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    """Snapshot of a user's stored credentials."""
    user_id: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[int]  # Unix timestamp

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return True
        return (now if now is not None else time.time()) >= self.expires_at


def compute_expiry(expires_in: Optional[int], now: Optional[float] = None) -> int:
    """Expiry timestamp = now + provider-declared lifetime."""
    lifetime = expires_in if expires_in is not None else settings.default_token_lifetime_seconds
    return int((now if now is not None else time.time()) + lifetime)


class CredentialStore:
    """
    Reads and writes user credentials.

    Reads always go to storage (never a cached ORM instance) so a refresh
    committed by another session is visible.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.users = UserRepository(db)

    async def get(self, user_id: str) -> Optional[Credentials]:
        """Return stored credentials, or None if the user does not exist."""
        user = await self.users.get_fresh(user_id)
        if not user:
            return None
        return Credentials(
            user_id=user.id,
            access_token=user.access_token,
            refresh_token=user.refresh_token,
            expires_at=user.token_expires_at,
        )

    async def store_issued(
        self,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_in: Optional[int],
    ) -> Credentials:
        """
        Persist a credential triple from the authorization-code exchange.

        Raises:
            LookupError: If the user does not exist
        """
        user = await self.users.get_fresh(user_id)
        if not user:
            raise LookupError(f"User {user_id} not found")

        expires_at = compute_expiry(expires_in)
        await self.users.update(
            user,
            access_token=access_token,
            refresh_token=refresh_token or user.refresh_token,
            token_expires_at=expires_at,
        )
        await self.db.commit()

        logger.info(f"Stored issued credentials for user {user_id}")
        return Credentials(user.id, user.access_token, user.refresh_token, expires_at)

    async def save_refreshed(
        self,
        user_id: str,
        access_token: str,
        expires_in: Optional[int],
        refresh_token: Optional[str] = None,
    ) -> Credentials:
        """
        Persist a refreshed access credential.

        The refresh credential is replaced only when the provider rotated it.
        Committed before returning so the retried call and concurrent
        operations see the new credential.
        """
        user = await self.users.get_fresh(user_id)
        if not user:
            raise LookupError(f"User {user_id} not found")

        values = {
            "access_token": access_token,
            "token_expires_at": compute_expiry(expires_in),
        }
        if refresh_token:
            values["refresh_token"] = refresh_token

        await self.users.update(user, **values)
        await self.db.commit()

        return Credentials(
            user_id=user.id,
            access_token=user.access_token,
            refresh_token=user.refresh_token,
            expires_at=user.token_expires_at,
        )
