"""
Admin API endpoints for session upkeep and identity-provider sync.

These endpoints require the admin role and provide:
- Manual runs of the scheduler's refresh scan and session cleanup
- Authorization-server artifact cleanup
- Provider sync for one identity, all identities, and roles/permissions
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import AdminAuth, require_admin
from app.core.database import get_db
from app.core.logging import get_logger
from app.services.identity_store import get_identity
from app.services.identity_sync import IdentitySync
from app.services.oidc_adapter import cleanup_all_expired
from app.services.scheduler import get_scheduler

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/scheduler/refresh-scan")
async def trigger_refresh_scan(auth: AdminAuth) -> dict[str, int]:
    """Run one refresh scan now."""
    result = await get_scheduler().trigger_refresh_scan()
    logger.info("admin_triggered_refresh_scan", admin_id=auth.identity_id, **result)
    return result


@router.post("/scheduler/cleanup")
async def trigger_cleanup(auth: AdminAuth) -> dict[str, int]:
    """Run one expired-session cleanup now."""
    cleaned = await get_scheduler().trigger_cleanup()
    logger.info("admin_triggered_cleanup", admin_id=auth.identity_id, cleaned=cleaned)
    return {"cleaned": cleaned}


@router.post("/oidc/cleanup")
async def cleanup_oidc_artifacts(
    auth: AdminAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, int]:
    removed = await cleanup_all_expired(db)
    return {"removed": removed}


@router.get("/scheduler")
async def scheduler_status(auth: AdminAuth) -> dict[str, Any]:
    scheduler = get_scheduler()
    return {
        "running": scheduler.running,
        "refresh_interval": scheduler.refresh_interval,
        "cleanup_interval": scheduler.cleanup_interval,
    }


@router.post("/idp/sync/users/{identity_id}")
async def sync_identity(
    auth: AdminAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
    identity_id: Annotated[int, Path(description="Identity ID")],
) -> dict[str, Any]:
    """Push one identity's profile and role to the provider."""
    identity = await get_identity(db, identity_id)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Identity not found")

    sync = IdentitySync(db)
    if not sync.push_enabled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Identity provider sync is disabled",
        )
    profile = await sync.push_profile(identity)
    role = await sync.sync_role(identity) if profile else False
    logger.info("admin_synced_identity", admin_id=auth.identity_id, identity_id=identity_id)
    return {
        "identity_id": identity_id,
        "external_id": identity.external_id,
        "profile_synced": profile,
        "role_synced": role,
    }


@router.post("/idp/sync/users")
async def sync_all_identities(
    auth: AdminAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
    batch_size: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> dict[str, int]:
    sync = IdentitySync(db)
    if not sync.push_enabled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Identity provider sync is disabled",
        )
    return await sync.sync_all_identities(batch_size)


@router.post("/idp/sync/roles")
async def sync_roles(
    auth: AdminAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, int]:
    """Publish local roles and permissions as provider realm roles."""
    sync = IdentitySync(db)
    if not sync.idp.is_configured:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Identity provider is not configured",
        )
    return await sync.sync_roles_and_permissions()
