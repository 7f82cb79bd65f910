"""
Spotify sync services.

Provides:
- SyncOrchestrator: Main sync orchestrator
- SyncRequest / SyncResult: Invocation input and outcome
- BackgroundSyncRunner: Background sync task runner
"""

from .service import SyncOrchestrator, SyncRequest, SyncResult, SyncState
from .background import BackgroundSyncRunner, background_sync, build_user_requests
from .config import SyncConfig

__all__ = [
    # Services
    "SyncOrchestrator",
    "SyncRequest",
    "SyncResult",
    "SyncState",
    # Background
    "BackgroundSyncRunner",
    "background_sync",
    "build_user_requests",
    # Config
    "SyncConfig",
]
