"""
Background sync runner.

Periodically collects top lists and recent playback for every user that
holds a refresh credential.
"""

import asyncio
import calendar
import logging
from typing import Optional

from soundfeed.config import settings
from soundfeed.features.users import UserRepository
from soundfeed.shared.constants import SyncFailureReason, SyncKind

from ..repository import PlaybackRepository
from .config import SyncConfig
from .service import SyncOrchestrator, SyncRequest, SyncResult

logger = logging.getLogger(__name__)

# Failures that make the rest of a pass pointless
_STOP_REASONS = (SyncFailureReason.CREDENTIAL_INVALID, SyncFailureReason.RATE_LIMITED)


def build_user_requests(after: Optional[int] = None) -> list[SyncRequest]:
    """
    Requests for one background pass over a user.

    Top tracks and top artists for every configured time range, then one
    page of recent playback starting after `after` (Unix ms).
    """
    requests = []
    for time_range in SyncConfig.BACKGROUND_TIME_RANGES:
        requests.append(SyncRequest(SyncKind.TOP_TRACKS, time_range, limit=SyncConfig.BACKGROUND_LIMIT))
        requests.append(SyncRequest(SyncKind.TOP_ARTISTS, time_range, limit=SyncConfig.BACKGROUND_LIMIT))
    requests.append(
        SyncRequest(SyncKind.RECENT_PLAYBACK, limit=SyncConfig.BACKGROUND_LIMIT, after=after)
    )
    return requests


class BackgroundSyncRunner:
    """
    Background task runner for listening data sync.

    Call `start()` to begin background syncing.
    Call `stop()` to gracefully stop.

    Usage:
        runner = BackgroundSyncRunner()
        await runner.start(AsyncSessionLocal)
        # ... later ...
        await runner.stop()
    """

    def __init__(
        self,
        interval_seconds: Optional[int] = None,
        concurrency: Optional[int] = None,
        orchestrator_factory=None,
    ):
        self.interval_seconds = interval_seconds or settings.background_sync_interval_seconds
        self.concurrency = concurrency or settings.background_sync_concurrency
        self._orchestrator_factory = orchestrator_factory or SyncOrchestrator
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._db_factory = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, db_factory):
        """Start background sync loop."""
        if self._running:
            return

        self._running = True
        self._db_factory = db_factory
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Background sync started")

    async def stop(self):
        """Stop background sync loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Background sync stopped")

    async def _run_loop(self):
        """Main sync loop."""
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Sync batch error: {e}")

            await asyncio.sleep(self.interval_seconds)

    async def run_once(self, db_factory=None) -> dict[str, list[SyncResult]]:
        """
        Sync every eligible user once.

        Users run concurrently, bounded by `concurrency`; requests for a
        single user run in order.

        Args:
            db_factory: Session factory; defaults to the one given to start()

        Returns:
            Results keyed by user id
        """
        if db_factory is not None:
            self._db_factory = db_factory

        async with self._db_factory() as db:
            user_ids = [user.id for user in await UserRepository(db).get_syncable()]

        if not user_ids:
            logger.debug("No users eligible for background sync")
            return {}

        logger.info(f"Processing sync batch: {len(user_ids)} users")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_user(user_id: str):
            async with semaphore:
                return user_id, await self.sync_user(user_id)

        pairs = await asyncio.gather(*(run_user(user_id) for user_id in user_ids))
        return dict(pairs)

    async def sync_user(self, user_id: str) -> list[SyncResult]:
        """Run one background pass for a user, stopping on credential failure."""
        results = []

        async with self._db_factory() as db:
            latest = await PlaybackRepository(db).get_latest_played_at(user_id)
            after = calendar.timegm(latest.timetuple()) * 1000 if latest else None

            orchestrator = self._orchestrator_factory(db)
            for request in build_user_requests(after):
                result = await orchestrator.sync(user_id, request)
                results.append(result)
                logger.debug(f"Sync result for {user_id}: {result.status.value} ({request.kind.value})")

                if not result.ok and result.reason in _STOP_REASONS:
                    logger.warning(
                        f"Stopping background pass for {user_id}: {result.reason.value}"
                    )
                    break

                await asyncio.sleep(SyncConfig.API_CALL_DELAY)

        return results


# Global instance
background_sync = BackgroundSyncRunner()
