"""Session and identity background jobs for arq worker."""

from typing import Any

from arq import Retry

from app.core.database import get_async_session
from app.core.logging import bind_context, get_logger

logger = get_logger(__name__)


async def refresh_expiring_sessions_job(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron: refresh sessions whose access token is about to expire."""
    from app.services.scheduler import get_scheduler

    bind_context(task="session_refresh_scan")
    return await get_scheduler().trigger_refresh_scan()


async def cleanup_expired_sessions_job(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron: mark expired sessions inactive."""
    from app.services.scheduler import get_scheduler

    bind_context(task="session_cleanup")
    return {"cleaned": await get_scheduler().trigger_cleanup()}


async def cleanup_expired_grants_job(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron: delete authorization-server grants and interactions past expiry."""
    from app.services.oidc_adapter import cleanup_all_expired

    bind_context(task="oidc_grant_cleanup")
    async with get_async_session() as db:
        removed = await cleanup_all_expired(db)
    return {"removed": removed}


async def push_identity_to_provider_job(
    ctx: dict[str, Any],
    identity_id: int,
) -> dict[str, bool]:
    """
    Push a local identity's profile and role to the delegated provider.

    Args:
        ctx: ARQ context dict
        identity_id: Identity to push

    Raises:
        Retry: If the provider call failed
    """
    from app.services.identity_store import get_identity
    from app.services.identity_sync import IdentitySync

    bind_context(task="identity_push", identity_id=identity_id)

    async with get_async_session() as db:
        identity = await get_identity(db, identity_id)
        if identity is None:
            logger.warning("identity_push_skipped", identity_id=identity_id, reason="not_found")
            return {"success": False}

        sync = IdentitySync(db)
        if not sync.push_enabled:
            return {"success": False}
        if await sync.push_profile(identity) and await sync.sync_role(identity):
            return {"success": True}

    raise Retry(defer=ctx["job_try"] * 10)
