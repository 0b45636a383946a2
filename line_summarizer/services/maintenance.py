"""
Periodic maintenance loop.

Every SESSION_SWEEP_INTERVAL_SECONDS:
- close active sessions whose trigger fired while the room was quiet
- reset monthly usage counters once a new month has started

Started from the application lifespan and stopped through stop().
"""

import asyncio
from typing import Optional

from pymongo.errors import PyMongoError

from line_summarizer.config import settings
from line_summarizer.core.exceptions import AppError
from line_summarizer.core.logging_config import get_logger
from line_summarizer.services.organization_service import OrganizationService, get_organization_service
from line_summarizer.services.session_manager import SessionLifecycleManager, get_session_manager

logger = get_logger(__name__)


class MaintenanceLoop:

    def __init__(
        self,
        session_manager: Optional[SessionLifecycleManager] = None,
        organization_service: Optional[OrganizationService] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.session_manager = session_manager or get_session_manager()
        self.organization_service = organization_service or get_organization_service()
        self.interval_seconds = (
            settings.SESSION_SWEEP_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        """One sweep. Returns the number of sessions closed."""
        await self.organization_service.reset_monthly_usage()
        return await self.session_manager.close_expired_sessions()

    async def _run(self) -> None:
        logger.info("maintenance_loop_started", interval_seconds=self.interval_seconds)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            try:
                closed = await self.run_once()
                logger.debug("maintenance_sweep_completed", sessions_closed=closed)
            except AppError as e:
                logger.error("maintenance_sweep_failed", error_code=e.code, error=e.message)
            except PyMongoError as e:
                logger.error("maintenance_sweep_failed", error_type=type(e).__name__, error=str(e))
            except Exception as e:  # the loop outlives a failed sweep
                logger.error(
                    "maintenance_sweep_failed",
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )
        logger.info("maintenance_loop_stopped")

    def start(self) -> Optional[asyncio.Task]:
        if self.interval_seconds <= 0:
            logger.info("maintenance_loop_disabled")
            return None
        self._stop.clear()
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self, timeout: float = 5.0) -> None:
        if self._task is None:
            return
        self._stop.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            logger.warning("maintenance_loop_cancelled")
        self._task = None
