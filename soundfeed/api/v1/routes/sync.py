"""
Sync routes.

Credential hand-off from the authorization-code exchange and on-demand
sync invocations. Protected by the X-API-Key header when
INTERNAL_API_KEY is configured.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from soundfeed.config import settings
from soundfeed.db.session import get_async_db
from soundfeed.features.users import CredentialStore, UserRepository
from soundfeed.features.spotify.sync import SyncOrchestrator, SyncRequest
from soundfeed.shared.constants import MAX_PAGE_SIZE, SyncKind, TimeRange

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Sync"])


# =============================================================================
# API Key Dependency
# =============================================================================

async def verify_api_key(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")
) -> Optional[str]:
    """Verify the shared API key, if one is configured."""
    if not settings.internal_api_key:
        return None
    if x_api_key != settings.internal_api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


async def get_orchestrator(db: AsyncSession = Depends(get_async_db)) -> SyncOrchestrator:
    return SyncOrchestrator(db)


# =============================================================================
# Schemas
# =============================================================================

class CredentialsRequest(BaseModel):
    """Credential triple issued by the authorization-code exchange."""
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, ge=0)


class CredentialsResponse(BaseModel):
    user_id: str
    username: str
    created: bool
    expires_at: int


class SyncRequestBody(BaseModel):
    """Body of POST /sync/{user_id}."""
    kind: SyncKind
    time_range: TimeRange = TimeRange.MEDIUM_TERM
    limit: int = Field(default=20, ge=1, le=MAX_PAGE_SIZE)
    offset: int = Field(default=0, ge=0)
    after: Optional[int] = Field(default=None, ge=0)
    before: Optional[int] = Field(default=None, ge=0)


# =============================================================================
# Endpoints
# =============================================================================

@router.put(
    "/users/{username}/credentials",
    response_model=CredentialsResponse,
    dependencies=[Depends(verify_api_key)],
)
async def store_credentials(
    username: str,
    request: CredentialsRequest,
    db: AsyncSession = Depends(get_async_db),
):
    """
    Store an issued credential triple.

    Creates the user on first sight.
    """
    user, created = await UserRepository(db).get_or_create(username)
    credentials = await CredentialStore(db).store_issued(
        user.id,
        request.access_token,
        request.refresh_token,
        request.expires_in,
    )

    logger.info(f"Stored credentials for {username} (user_id={user.id}, created={created})")

    return CredentialsResponse(
        user_id=user.id,
        username=username,
        created=created,
        expires_at=credentials.expires_at,
    )


@router.post("/sync/{user_id}", dependencies=[Depends(verify_api_key)])
async def run_sync(
    user_id: str,
    body: SyncRequestBody,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Run one sync invocation and return its outcome.

    Failed syncs are reported in the body (status "failed" with a reason),
    not as HTTP errors.
    """
    try:
        request = SyncRequest(**body.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    result = await orchestrator.sync(user_id, request)
    return result.to_dict()
