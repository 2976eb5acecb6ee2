"""
Authentication API endpoints.

This module provides endpoints for:
- Login (delegated password grant when configured, local password otherwise)
- Interactive login through the delegated provider (redirect + callback)
- Session refresh, listing and revocation
- Password change

Every endpoint here is protected by the router-level `require_auth` guard
except the ones marked @public.
"""

from datetime import timedelta
from typing import Annotated
from urllib.parse import urlsplit

import redis.asyncio as redis
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.auth import CurrentAuth, public, require_auth
from app.core.database import get_db, utcnow
from app.core.errors import (
    ExpiredCredential,
    ExternalProviderUnavailable,
    InvalidCredential,
    UnresolvableIdentity,
)
from app.core.logging import get_logger
from app.core.permissions import get_identity_permission_codes, get_identity_role_codes
from app.core.redis import get_redis
from app.core.security import get_password_hash
from app.models.user import Users
from app.schemas.auth import (
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    RefreshResponse,
    SessionListResponse,
    SessionResponse,
)
from app.schemas.common import CountResponse, MessageResponse
from app.schemas.user import IdentityResponse
from app.services.credentials import CredentialVerifier, get_credential_verifier
from app.services.identity_store import get_identity_by_login
from app.services.identity_sync import IdentitySync, ProviderProfile
from app.services.idp_client import IdpClient, get_idp_client
from app.services.session_store import SessionMetadata, SessionStore, TokenPair, session_lifetime
from app.services.state_store import AuthStateStore

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"], dependencies=[Depends(require_auth)])


def get_state_store(
    redis_client: Annotated[redis.Redis, Depends(get_redis)],  # type: ignore[type-arg]
) -> AuthStateStore:
    return AuthStateStore(redis_client)


def _set_session_cookie(response: Response, session_token: str, remember_me: bool) -> None:
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=session_token,
        httponly=True,  # Prevent JavaScript access (XSS protection)
        secure=settings.ENVIRONMENT == "production",  # HTTPS only in production
        samesite=settings.SESSION_COOKIE_SAMESITE,
        max_age=session_lifetime(remember_me),
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    # Match set_cookie params
    response.delete_cookie(
        key=settings.SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=settings.ENVIRONMENT == "production",
        samesite=settings.SESSION_COOKIE_SAMESITE,
    )


async def _identity_response(db: AsyncSession, identity: Users) -> IdentityResponse:
    assert identity.id is not None
    return IdentityResponse.from_identity(
        identity,
        roles=await get_identity_role_codes(db, identity.id),
        permissions=await get_identity_permission_codes(db, identity.id),
    )


async def _delegated_login(
    db: AsyncSession, idp: IdpClient, username: str, password: str
) -> tuple[Users, TokenPair] | None:
    """
    Password grant at the provider followed by a profile sync.

    Returns None when the provider rejects the credentials or is unreachable,
    so the caller can fall back to the local path.
    """
    try:
        token_set = await idp.password_grant(username, password)
        profile = ProviderProfile.from_claims(await idp.userinfo(token_set.access_token))
    except (InvalidCredential, ExternalProviderUnavailable) as e:
        logger.info("delegated_login_failed", reason=e.code)
        return None

    identity = await IdentitySync(db, idp).sync_from_provider(profile)
    return identity, TokenPair.from_token_set(token_set)


async def _local_login(
    db: AsyncSession, store: SessionStore, username: str, password: str
) -> tuple[Users, TokenPair]:
    identity = await get_identity_by_login(db, username)
    if identity is None or not CredentialVerifier.verify_local(password, identity.password_hash):
        raise InvalidCredential("Incorrect username or password")
    identity.last_login_at = utcnow()
    await db.commit()
    return identity, await store.issue_local_token_pair(identity)


async def _start_session(
    db: AsyncSession,
    store: SessionStore,
    request: Request,
    response: Response,
    identity: Users,
    token_pair: TokenPair,
    remember_me: bool,
) -> LoginResponse:
    if not identity.is_active:
        raise UnresolvableIdentity("Account is not active")
    assert identity.id is not None

    session_token = await store.create_session(
        identity.id, token_pair, SessionMetadata.from_request(request), remember_me
    )
    _set_session_cookie(response, session_token, remember_me)

    lifetime = session_lifetime(remember_me)
    return LoginResponse(
        identity=await _identity_response(db, identity),
        expires_at=utcnow().replace(microsecond=0) + timedelta(seconds=lifetime),
        expires_in=lifetime,
        method=token_pair.source,
    )


@router.post("/login", response_model=LoginResponse)
@public
async def login(
    credentials: LoginRequest,
    request: Request,
    response: Response,
    db: Annotated[AsyncSession, Depends(get_db)],
    verifier: Annotated[CredentialVerifier, Depends(get_credential_verifier)],
    idp: Annotated[IdpClient, Depends(get_idp_client)],
) -> LoginResponse:
    """
    Authenticate and start a session.

    Flow:
    1. If a delegated provider is configured, try its password grant and sync
       the provider profile into the local identity
    2. Otherwise, or if the provider rejects the credentials, check the local
       password hash
    3. Create a session wrapping the resulting token pair; the opaque session
       token is set as an HTTPOnly cookie and never returned in the body
    """
    store = SessionStore(db, verifier=verifier, idp=idp)

    result = None
    if idp.is_configured:
        result = await _delegated_login(db, idp, credentials.username, credentials.password)
    if result is None:
        result = await _local_login(db, store, credentials.username, credentials.password)

    identity, token_pair = result
    login_response = await _start_session(
        db, store, request, response, identity, token_pair, credentials.remember_me
    )
    logger.info("login_succeeded", identity_id=identity.id, method=token_pair.source)
    return login_response


def _safe_return_to(return_to: str | None) -> str | None:
    """
    Resolve a post-login redirect against the frontend.

    Relative paths are joined to FRONTEND_URL. Absolute URLs must share its
    scheme and host; anything else is dropped.
    """
    if not return_to:
        return None
    frontend = urlsplit(settings.FRONTEND_URL)
    if return_to.startswith("/") and not return_to.startswith("//") and "\\" not in return_to:
        return f"{settings.FRONTEND_URL.rstrip('/')}{return_to}"
    target = urlsplit(return_to)
    if (target.scheme, target.netloc) == (frontend.scheme, frontend.netloc):
        return return_to
    logger.warning("return_to_rejected", return_to=return_to)
    return None


@router.get("/idp/login")
@public
async def idp_login(
    state_store: Annotated[AuthStateStore, Depends(get_state_store)],
    idp: Annotated[IdpClient, Depends(get_idp_client)],
    remember_me: Annotated[bool, Query(alias="rememberMe")] = False,
    return_to: Annotated[str | None, Query(alias="returnTo")] = None,
) -> RedirectResponse:
    """Redirect to the delegated provider's login page."""
    if not idp.is_configured:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Delegated login is not configured",
        )
    state = await state_store.issue(
        {"remember_me": remember_me, "return_to": _safe_return_to(return_to)}
    )
    return RedirectResponse(
        idp.authorization_url(state, settings.IDP_REDIRECT_URI),
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/idp/callback")
@public
async def idp_callback(
    code: Annotated[str, Query()],
    state: Annotated[str, Query()],
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    state_store: Annotated[AuthStateStore, Depends(get_state_store)],
    verifier: Annotated[CredentialVerifier, Depends(get_credential_verifier)],
    idp: Annotated[IdpClient, Depends(get_idp_client)],
) -> RedirectResponse:
    """Finish an interactive delegated login and redirect back to the frontend."""
    data = await state_store.consume(state)
    if data is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired login state",
        )

    token_set = await idp.exchange_code(code, settings.IDP_REDIRECT_URI)
    profile = ProviderProfile.from_claims(await idp.userinfo(token_set.access_token))
    identity = await IdentitySync(db, idp).sync_from_provider(profile)

    redirect = RedirectResponse(
        data.get("return_to") or settings.FRONTEND_URL, status_code=status.HTTP_302_FOUND
    )
    store = SessionStore(db, verifier=verifier, idp=idp)
    await _start_session(
        db,
        store,
        request,
        redirect,
        identity,
        TokenPair.from_token_set(token_set),
        bool(data.get("remember_me")),
    )
    logger.info("login_succeeded", identity_id=identity.id, method="delegated_redirect")
    return redirect


@router.post("/logout", response_model=MessageResponse)
async def logout(
    auth: CurrentAuth,
    response: Response,
    db: Annotated[AsyncSession, Depends(get_db)],
    idp: Annotated[IdpClient, Depends(get_idp_client)],
) -> MessageResponse:
    """
    Revoke the current session. Bearer-authenticated callers have no session;
    their token simply expires.
    """
    if auth.session_token:
        await SessionStore(db, idp=idp).revoke_session(auth.session_token)
    _clear_session_cookie(response)
    return MessageResponse(message="Successfully logged out")


@router.post("/logout-all", response_model=CountResponse)
async def logout_all(
    auth: CurrentAuth,
    response: Response,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CountResponse:
    """Revoke every session of the caller, this one included."""
    count = await SessionStore(db).revoke_all_sessions(auth.identity_id)
    _clear_session_cookie(response)
    return CountResponse(message="Successfully logged out from all devices", count=count)


@router.post("/logout-others", response_model=CountResponse)
async def logout_others(
    auth: CurrentAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CountResponse:
    """Revoke every session of the caller except the current one."""
    store = SessionStore(db)
    if auth.session_token:
        count = await store.revoke_other_sessions(auth.identity_id, auth.session_token)
    else:
        count = await store.revoke_all_sessions(auth.identity_id)
    return CountResponse(message="Other sessions revoked", count=count)


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(
    auth: CurrentAuth,
    response: Response,
    db: Annotated[AsyncSession, Depends(get_db)],
    verifier: Annotated[CredentialVerifier, Depends(get_credential_verifier)],
    idp: Annotated[IdpClient, Depends(get_idp_client)],
) -> RefreshResponse:
    """
    Refresh the token pair wrapped by the current session.

    If neither the provider nor the local path can refresh it, the session is
    revoked and the caller has to log in again.
    """
    if not auth.session_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only cookie sessions can be refreshed",
        )
    store = SessionStore(db, verifier=verifier, idp=idp)
    try:
        record = await store.refresh_session(auth.session_token)
    except ExpiredCredential:
        _clear_session_cookie(response)
        raise
    return RefreshResponse(
        access_token_expires_at=record.access_token_expires_at,
        refresh_token_expires_at=record.refresh_token_expires_at,
    )


@router.get("/me", response_model=IdentityResponse)
async def me(auth: CurrentAuth) -> IdentityResponse:
    return IdentityResponse.from_identity(auth.identity, auth.roles, auth.permissions)


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    auth: CurrentAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> SessionListResponse:
    """Active sessions of the caller, most recently used first."""
    records = await SessionStore(db).list_user_sessions(auth.identity_id)
    current_id = auth.session.id if auth.session else None
    sessions = [
        SessionResponse.model_validate(record).model_copy(
            update={"current": record.id == current_id}
        )
        for record in records
    ]
    return SessionListResponse(total=len(sessions), sessions=sessions)


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def revoke_session(
    session_id: int,
    auth: CurrentAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> MessageResponse:
    if not await SessionStore(db).revoke_session_by_id(auth.identity_id, session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return MessageResponse(message="Session revoked")


@router.post("/change-password", response_model=CountResponse)
async def change_password(
    request_data: PasswordChangeRequest,
    auth: CurrentAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CountResponse:
    """
    Change the local password and revoke every other session.

    Identities that only ever logged in through the provider have no local
    password and must change it there.
    """
    identity = auth.identity
    if identity.password_hash is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password is managed by the identity provider",
        )
    if not CredentialVerifier.verify_local(request_data.current_password, identity.password_hash):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Current password is incorrect",
        )

    identity.password_hash = get_password_hash(request_data.new_password)
    identity.updated_at = utcnow()
    await db.commit()

    store = SessionStore(db)
    if auth.session_token:
        count = await store.revoke_other_sessions(auth.identity_id, auth.session_token)
    else:
        count = await store.revoke_all_sessions(auth.identity_id)
    logger.info("password_changed", identity_id=auth.identity_id, sessions_revoked=count)
    return CountResponse(message="Password changed successfully", count=count)
