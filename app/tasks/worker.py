"""
ARQ worker configuration and job definitions.

Run worker with: uv run arq app.tasks.worker.WorkerSettings

Deployments that run the session scheduler in the worker instead of the API
process set SCHEDULER_ENABLED=false on the API; the cron jobs below then take
over the refresh scan and cleanup.
"""

from typing import Any

from arq import cron
from arq.connections import RedisSettings
from arq.worker import func

from app.config import settings
from app.tasks.session_jobs import (
    cleanup_expired_grants_job,
    cleanup_expired_sessions_job,
    push_identity_to_provider_job,
    refresh_expiring_sessions_job,
)


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup - initialize any shared resources."""
    from app.core.logging import configure_logging, get_logger

    configure_logging()
    logger = get_logger(__name__)
    logger.info("arq_worker_starting", redis_url=settings.ARQ_REDIS_URL)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown - cleanup resources."""
    from app.core.logging import get_logger

    logger = get_logger(__name__)
    logger.info("arq_worker_shutdown")


class WorkerSettings:
    """ARQ worker configuration."""

    redis_settings = RedisSettings.from_dsn(settings.ARQ_REDIS_URL)

    # Worker behavior
    max_jobs = 10
    job_timeout = 300  # 5 minutes max per job
    keep_result = settings.ARQ_KEEP_RESULT

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown

    # Job functions
    functions = [
        func(push_identity_to_provider_job, max_tries=settings.ARQ_MAX_TRIES),
    ]

    cron_jobs = [
        cron(refresh_expiring_sessions_job, second=0, run_at_startup=False),
        cron(cleanup_expired_sessions_job, minute=0, second=0),
        cron(cleanup_expired_grants_job, minute=30, second=0),
    ]
