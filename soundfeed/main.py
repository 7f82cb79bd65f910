"""
Soundfeed API

FastAPI application exposing the listening-data sync engine.
"""

from contextlib import asynccontextmanager
import logging
import sys

from fastapi import FastAPI

from soundfeed.config import settings
from soundfeed.db.session import init_db, AsyncSessionLocal
from soundfeed.api.v1.router import api_router
from soundfeed.features.spotify.sync import background_sync


# === Logging Setup ===
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger(__name__)


def _background_enabled() -> bool:
    return bool(
        settings.background_sync_enabled
        and settings.spotify_client_id
        and settings.spotify_client_secret
    )


# === Lifespan ===
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    logger.info("Starting Soundfeed API...")
    await init_db()
    logger.info("Database initialized")

    if _background_enabled():
        await background_sync.start(AsyncSessionLocal)

    yield

    # Shutdown
    if background_sync.running:
        await background_sync.stop()
    logger.info("Shutting down...")


# === App Creation ===
app = FastAPI(
    title="Soundfeed API",
    description="Spotify listening data sync",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# === Routes ===
app.include_router(api_router, prefix="/api/v1")


# === Health Check ===
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "0.1.0"}
