"""
Identity profile endpoints
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.auth import CurrentAuth, require_auth
from app.core.database import get_db
from app.core.logging import get_logger
from app.schemas.user import IdentityResponse, ProfileUpdate, ProfileUpdateResponse
from app.services.identity_store import get_identity_by_email, touch, unique_username
from app.services.identity_sync import IdentitySync
from app.tasks.queue import enqueue_identity_push

logger = get_logger(__name__)

router = APIRouter(prefix="/users", tags=["users"], dependencies=[Depends(require_auth)])


@router.get("/me", response_model=IdentityResponse)
async def get_my_profile(auth: CurrentAuth) -> IdentityResponse:
    return IdentityResponse.from_identity(auth.identity, auth.roles, auth.permissions)


@router.patch("/me", response_model=ProfileUpdateResponse)
async def update_my_profile(
    update: ProfileUpdate,
    auth: CurrentAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ProfileUpdateResponse:
    """
    Update the caller's profile.

    Saved locally first, then pushed to the delegated provider best-effort:
    through the worker queue when it is reachable, inline otherwise. A failed
    push never fails the request.
    """
    identity = auth.identity
    changes = update.model_dump(exclude_unset=True)

    if "email" in changes and changes["email"] != identity.email:
        existing = await get_identity_by_email(db, changes["email"])
        if existing is not None and existing.id != identity.id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Email is already in use",
            )
    if "username" in changes and changes["username"] != identity.username:
        if await unique_username(db, changes["username"]) != changes["username"]:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Username is already taken",
            )

    for field, value in changes.items():
        setattr(identity, field, value)
    touch(identity)
    await db.commit()
    logger.info("profile_updated", identity_id=identity.id, fields=sorted(changes))

    sync = IdentitySync(db)
    provider_sync = "skipped"
    if changes and sync.push_enabled and settings.IDP_SYNC_ON_UPDATE:
        if await enqueue_identity_push(identity.id):
            provider_sync = "queued"
        else:
            provider_sync = "synced" if await sync.push_profile(identity) else "failed"

    return ProfileUpdateResponse.from_identity(
        identity, auth.roles, auth.permissions, provider_sync=provider_sync
    )
