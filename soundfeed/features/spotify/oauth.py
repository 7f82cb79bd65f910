"""
Spotify OAuth token refresh.

Handles the refresh_token grant against the accounts service.
The authorization-code exchange happens elsewhere; this module only
turns a refresh credential into a new access credential.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from soundfeed.config import settings
from .client import SpotifyAuthError, SpotifyUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefreshedToken:
    """Token endpoint response for a refresh_token grant."""
    access_token: str
    expires_in: Optional[int]
    refresh_token: Optional[str] = None  # Present only when rotated


class SpotifyOAuth:
    """
    Spotify OAuth handler.

    Usage:
        oauth = SpotifyOAuth()
        token = await oauth.refresh_token(refresh_token)
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        accounts_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._transport = transport
        self.client_id = client_id or settings.spotify_client_id
        self.client_secret = client_secret or settings.spotify_client_secret
        self.token_url = f"{(accounts_url or settings.spotify_accounts_url).rstrip('/')}/api/token"
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds

    async def refresh_token(self, refresh_token: str) -> RefreshedToken:
        """
        Refresh an expired access token.

        Args:
            refresh_token: Current refresh token

        Returns:
            RefreshedToken with the new access token and its lifetime

        Raises:
            SpotifyAuthError: Refresh token rejected (revoked, invalid_grant)
            SpotifyUnavailableError: Network error, timeout, 5xx or bad body
        """
        if not self.client_id or not self.client_secret:
            raise SpotifyAuthError("Spotify client credentials not configured")

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.timeout
            ) as client:
                response = await client.post(
                    self.token_url,
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": refresh_token,
                    },
                    auth=(self.client_id, self.client_secret)
                )
        except httpx.HTTPError as e:
            logger.error(f"Spotify token refresh transport error: {e}")
            raise SpotifyUnavailableError(f"Token refresh failed: {e}") from e

        if response.status_code in (400, 401):
            logger.error(f"Spotify token refresh rejected: {response.text[:200]}")
            raise SpotifyAuthError(f"Token refresh rejected: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"Spotify token refresh failed: {response.status_code}")
            raise SpotifyUnavailableError(f"Token refresh failed: {response.status_code}")

        try:
            payload = response.json()
            access_token = payload["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise SpotifyUnavailableError("Malformed token refresh response") from e

        expires_in = payload.get("expires_in")
        return RefreshedToken(
            access_token=access_token,
            expires_in=int(expires_in) if expires_in is not None else None,
            refresh_token=payload.get("refresh_token"),
        )
