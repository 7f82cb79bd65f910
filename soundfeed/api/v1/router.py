"""
API Router v1

Combines all route modules.
"""

from fastapi import APIRouter

from soundfeed.api.v1.routes import sync

api_router = APIRouter()

api_router.include_router(sync.router)
