"""
Spotify Web API client.

Performs authenticated calls for the three ingestion operations:
- profile (/me)
- top items by time range (/me/top/{tracks|artists})
- recently played (/me/player/recently-played)

Every call returns a closed result type instead of raising:
ApiSuccess | Unauthorized | RateLimited | UpstreamError.
Rate limits are surfaced with their hint, never retried here.
"""

import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

import httpx

from soundfeed.config import settings
from soundfeed.shared.constants import MAX_PAGE_SIZE, TimeRange, TopItemType

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class SpotifyError(Exception):
    """Base Spotify error."""
    pass


class SpotifyAuthError(SpotifyError):
    """Credential rejected by the provider (re-authentication needed)."""
    pass


class SpotifyUnavailableError(SpotifyError):
    """Provider unreachable, timed out or answered with 5xx/garbage."""
    pass


class MalformedUpstreamData(SpotifyError):
    """A record from the API does not have the expected shape."""

    def __init__(self, message: str, external_id: Optional[str] = None):
        super().__init__(message)
        self.external_id = external_id


# =============================================================================
# Results
# =============================================================================

@dataclass
class ApiSuccess:
    data: Any


@dataclass
class Unauthorized:
    message: str = "Invalid or expired token"


@dataclass
class RateLimited:
    retry_after: Optional[int] = None  # seconds
    message: str = "Rate limit exceeded"


@dataclass
class UpstreamError:
    message: str
    status_code: Optional[int] = None


ApiResult = Union[ApiSuccess, Unauthorized, RateLimited, UpstreamError]


# =============================================================================
# Requests
# =============================================================================

@dataclass(frozen=True)
class ProfileRequest:
    pass


@dataclass(frozen=True)
class TopItemsRequest:
    item_type: TopItemType
    time_range: TimeRange = TimeRange.MEDIUM_TERM
    limit: int = 20
    offset: int = 0


@dataclass(frozen=True)
class RecentlyPlayedRequest:
    limit: int = 20
    after: Optional[int] = None   # Unix ms cursor
    before: Optional[int] = None  # Unix ms cursor


ActivityRequest = Union[ProfileRequest, TopItemsRequest, RecentlyPlayedRequest]


# =============================================================================
# Rate Limiter
# =============================================================================

class SpotifyRateLimiter:
    """
    In-memory sliding-window rate limiter.

    Spotify enforces a rolling 30 second window per app. Calls past the
    local limit are refused before reaching the network.
    """

    def __init__(
        self,
        limit: int = settings.rate_limit_requests,
        window_seconds: int = settings.rate_limit_window_seconds,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._calls: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def acquire(self, key: str = "global") -> Optional[int]:
        """
        Try to take a slot.

        Returns None if the request is allowed, otherwise the number of
        seconds until a slot frees up.
        """
        async with self._lock:
            now = time.monotonic()
            calls = self._calls[key]

            # Drop timestamps outside the window
            while calls and calls[0] <= now - self.window_seconds:
                calls.popleft()

            if len(calls) >= self.limit:
                retry_after = int(calls[0] + self.window_seconds - now) + 1
                logger.warning(
                    f"Local Spotify rate limit hit: {len(calls)}/{self.limit} "
                    f"requests in {self.window_seconds}s for {key}"
                )
                return retry_after

            calls.append(now)
            return None

    def get_usage(self, key: str = "global") -> dict:
        """Get current rate limit usage."""
        now = time.monotonic()
        used = len([ts for ts in self._calls[key] if ts > now - self.window_seconds])
        return {
            "used": used,
            "limit": self.limit,
            "window_seconds": self.window_seconds,
        }


# Global rate limiter instance
rate_limiter = SpotifyRateLimiter()


# =============================================================================
# Spotify Client
# =============================================================================

def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Retry-After is either delta-seconds or an HTTP date; we only need seconds."""
    if not value:
        return None
    try:
        return max(int(value), 0)
    except ValueError:
        return None


class SpotifyClient:
    """
    Async client for the Spotify Web API.

    Usage:
        client = SpotifyClient()
        result = await client.get_top_items(token, TopItemType.TRACKS, TimeRange.SHORT_TERM)
        if isinstance(result, ApiSuccess):
            items = result.data["items"]
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        limiter: Optional[SpotifyRateLimiter] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._transport = transport
        self.limiter = limiter or rate_limiter
        self.api_url = (api_url or settings.spotify_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds

    async def _api_request(
        self,
        endpoint: str,
        access_token: Optional[str],
        params: Optional[dict] = None
    ) -> ApiResult:
        """Make an authenticated GET with rate limiting and typed failures."""
        if not access_token:
            return Unauthorized("No access token on file")

        retry_after = await self.limiter.acquire()
        if retry_after is not None:
            return RateLimited(retry_after=retry_after, message="Local rate limit exceeded")

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.timeout
            ) as client:
                response = await client.get(
                    f"{self.api_url}{endpoint}",
                    headers={"Authorization": f"Bearer {access_token}"},
                    params=params
                )
        except httpx.TimeoutException as e:
            logger.warning(f"Spotify request timed out: {endpoint}")
            return UpstreamError(f"Timeout calling {endpoint}: {e}")
        except httpx.HTTPError as e:
            logger.warning(f"Spotify transport error on {endpoint}: {e}")
            return UpstreamError(f"Transport error calling {endpoint}: {e}")

        if response.status_code == 401:
            return Unauthorized()
        if response.status_code == 429:
            hint = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(f"Spotify rate limit on {endpoint}, retry after {hint}s")
            return RateLimited(retry_after=hint, message="Spotify rate limit exceeded")
        if response.status_code != 200:
            return UpstreamError(
                f"API error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError:
            return UpstreamError("Malformed JSON body", status_code=response.status_code)

        if not isinstance(data, dict):
            return UpstreamError("Unexpected response shape", status_code=response.status_code)

        return ApiSuccess(data)

    async def get_profile(self, access_token: Optional[str]) -> ApiResult:
        """Get the current user's profile."""
        return await self._api_request("/me", access_token)

    async def get_top_items(
        self,
        access_token: Optional[str],
        item_type: TopItemType,
        time_range: TimeRange = TimeRange.MEDIUM_TERM,
        limit: int = 20,
        offset: int = 0
    ) -> ApiResult:
        """
        Get the user's top tracks or artists for a time range.

        Items come back in rank order; that order is authoritative.
        """
        params = {
            "time_range": TimeRange(time_range).value,
            "limit": _clamp_limit(limit),
            "offset": max(offset, 0),
        }
        result = await self._api_request(
            f"/me/top/{TopItemType(item_type).value}",
            access_token,
            params
        )
        return _require_items(result)

    async def get_recently_played(
        self,
        access_token: Optional[str],
        limit: int = 20,
        after: Optional[int] = None,
        before: Optional[int] = None
    ) -> ApiResult:
        """
        Get one page of recently played tracks.

        Args:
            access_token: Bearer credential
            limit: Page size (1-50)
            after: Only plays after this Unix ms cursor
            before: Only plays before this Unix ms cursor

        The window is bounded by the caller; this does not page through
        the whole history.
        """
        if after is not None and before is not None:
            raise ValueError("Only one of 'after' or 'before' may be given")

        params = {"limit": _clamp_limit(limit)}
        if after is not None:
            params["after"] = int(after)
        if before is not None:
            params["before"] = int(before)

        result = await self._api_request(
            "/me/player/recently-played",
            access_token,
            params
        )
        return _require_items(result)

    async def fetch(self, access_token: Optional[str], request: ActivityRequest) -> ApiResult:
        """Dispatch a request descriptor to the matching endpoint."""
        if isinstance(request, ProfileRequest):
            return await self.get_profile(access_token)
        if isinstance(request, TopItemsRequest):
            return await self.get_top_items(
                access_token,
                request.item_type,
                request.time_range,
                request.limit,
                request.offset
            )
        if isinstance(request, RecentlyPlayedRequest):
            return await self.get_recently_played(
                access_token,
                request.limit,
                request.after,
                request.before
            )
        raise TypeError(f"Unknown request type: {type(request).__name__}")


# =============================================================================
# Helper Functions
# =============================================================================

def _clamp_limit(limit: int) -> int:
    return min(max(int(limit), 1), MAX_PAGE_SIZE)


def _require_items(result: ApiResult) -> ApiResult:
    """A paged response without an `items` list is an upstream error."""
    if isinstance(result, ApiSuccess) and not isinstance(result.data.get("items"), list):
        return UpstreamError("Response is missing 'items'")
    return result


def parse_spotify_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp from Spotify into naive UTC.

    Example: "2024-05-01T12:34:56.789Z"
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
