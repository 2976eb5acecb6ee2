"""
Queue client for enqueuing arq jobs from API endpoints.
"""

from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from app.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

# Seconds a profile push waits in the queue, so edits made in quick succession share one job
IDENTITY_PUSH_DELAY = 5

# Global pool instance (created on first use)
_pool: ArqRedis | None = None


async def get_queue() -> ArqRedis:
    """Get or create the arq Redis connection pool."""
    global _pool
    if _pool is None:
        _pool = await create_pool(RedisSettings.from_dsn(settings.ARQ_REDIS_URL))
        logger.info("arq_pool_created", redis_url=settings.ARQ_REDIS_URL)
    return _pool


async def enqueue_job(
    function_name: str,
    *args: Any,
    _job_id: str | None = None,
    _defer_by: float | None = None,
    **kwargs: Any,
) -> str | None:
    """
    Enqueue a job to the arq worker.

    Returns:
        Job ID if the job is queued (or was already queued under `_job_id`),
        None if the queue is unreachable
    """
    try:
        pool = await get_queue()
        job = await pool.enqueue_job(
            function_name,
            *args,
            _job_id=_job_id,
            _defer_by=_defer_by,
            **kwargs,
        )
    except Exception as e:
        logger.error(
            "job_enqueue_error",
            function=function_name,
            error=str(e),
            error_type=type(e).__name__,
        )
        return None

    if job is None:
        # arq refuses duplicate job ids; the pending job covers this request
        logger.debug("job_already_queued", function=function_name, job_id=_job_id)
        return _job_id

    logger.debug("job_enqueued", function=function_name, job_id=job.job_id)
    return job.job_id


async def enqueue_identity_push(identity_id: int) -> bool:
    """Queue a provider push for one identity. False means the caller should push inline."""
    job_id = await enqueue_job(
        "push_identity_to_provider_job",
        identity_id=identity_id,
        _job_id=f"identity_push:{identity_id}",
        _defer_by=IDENTITY_PUSH_DELAY,
    )
    return job_id is not None


async def close_queue() -> None:
    """Close arq Redis connection pool (call on shutdown)."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("arq_pool_closed")
