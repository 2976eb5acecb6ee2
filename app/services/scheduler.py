"""
Background session scheduler.

Two independent periodic tasks, owned and cancelled explicitly by the process
supervisor (the FastAPI lifespan):

- refresh scan (TOKEN_REFRESH_INTERVAL): refresh sessions whose access token is
  within TOKEN_REFRESH_THRESHOLD of expiry
- cleanup (SESSION_CLEANUP_INTERVAL): mark sessions past expiry inactive

Both tolerate running alongside request-path refreshes and lazy expiry: a
session refreshed twice just gets the later expiries, a session already revoked
is skipped by the guarded UPDATE.

`trigger_refresh_scan` and `trigger_cleanup` run one pass on demand.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.database import AsyncSessionLocal
from app.core.errors import AuthError
from app.core.logging import bind_context, get_logger, unbind_context
from app.services.session_store import SessionStore

logger = get_logger(__name__)


class SessionScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        refresh_interval: float | None = None,
        cleanup_interval: float | None = None,
    ) -> None:
        self.session_factory = session_factory or AsyncSessionLocal
        self.refresh_interval = refresh_interval or settings.TOKEN_REFRESH_INTERVAL
        self.cleanup_interval = cleanup_interval or settings.SESSION_CLEANUP_INTERVAL
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(
                self._loop("session_refresh_scan", self.refresh_interval, self.run_refresh_scan),
                name="session_refresh_scan",
            ),
            asyncio.create_task(
                self._loop("session_cleanup", self.cleanup_interval, self.run_cleanup),
                name="session_cleanup",
            ),
        ]
        logger.info(
            "scheduler_started",
            refresh_interval=self.refresh_interval,
            cleanup_interval=self.cleanup_interval,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("scheduler_stopped")

    async def _loop(self, name: str, interval: float, job: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            bind_context(task=name)
            try:
                await job()
            except Exception as e:
                logger.error(
                    "scheduler_task_failed",
                    task=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                unbind_context("task")

    async def run_refresh_scan(self) -> dict[str, int]:
        """Refresh every session that is close to access-token expiry."""
        refreshed = failed = 0
        async with self.session_factory() as db:
            store = SessionStore(db)
            for record in await store.find_sessions_needing_refresh():
                try:
                    await store.refresh_record(record)
                    refreshed += 1
                except AuthError as e:
                    # refresh_record already revoked the session
                    failed += 1
                    logger.info("scheduled_refresh_failed", session_id=record.id, reason=e.code)

        if refreshed or failed:
            logger.info("refresh_scan_completed", refreshed=refreshed, failed=failed)
        return {"refreshed": refreshed, "failed": failed}

    async def run_cleanup(self) -> int:
        async with self.session_factory() as db:
            return await SessionStore(db).cleanup_expired_sessions()

    trigger_refresh_scan = run_refresh_scan
    trigger_cleanup = run_cleanup


_scheduler: SessionScheduler | None = None


def get_scheduler() -> SessionScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = SessionScheduler()
    return _scheduler
