"""
Per-request authentication dispatch and FastAPI dependencies.

Order of resolution for a protected route:
1. Routes decorated with @public are allowed through
2. A bearer credential, if present, is verified by the credential verifier and
   its failure is returned to the caller; the session cookie is not consulted
3. Otherwise the session cookie is resolved through the session store; a
   refresh-if-needed check and a last-activity update are started in the
   background and never affect the response
4. Nothing resolved -> AuthenticationRequired
"""

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, TypeVar

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import RoleCode, settings
from app.core.database import AsyncSessionLocal, get_db
from app.core.errors import AuthenticationRequired, AuthError
from app.core.logging import get_logger, set_identity_context
from app.core.permissions import get_identity_permission_codes, get_identity_role_codes
from app.models.user import Users
from app.models.user_session import UserSessions
from app.services.credentials import Claims, CredentialVerifier, get_credential_verifier
from app.services.session_store import SessionStore

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

PUBLIC_ROUTE_ATTR = "__public_route__"

F = TypeVar("F", bound=Callable[..., Any])


def public(endpoint: F) -> F:
    """Mark an endpoint as reachable without authentication."""
    setattr(endpoint, PUBLIC_ROUTE_ATTR, True)
    return endpoint


def is_public_route(request: Request) -> bool:
    endpoint = request.scope.get("endpoint")
    if endpoint is None:
        route = request.scope.get("route")
        endpoint = getattr(route, "endpoint", None)
    return bool(getattr(endpoint, PUBLIC_ROUTE_ATTR, False))


@dataclass
class AuthContext:
    """Resolved identity attached to the request."""

    identity: Users
    method: Literal["bearer", "session"]
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    claims: Claims | None = None
    session: UserSessions | None = None
    session_token: str | None = None

    @property
    def identity_id(self) -> int:
        assert self.identity.id is not None
        return self.identity.id

    @property
    def is_admin(self) -> bool:
        return RoleCode.ADMIN in self.roles


class AuthDispatcher:
    """
    Resolves request credentials and runs the fire-and-forget session upkeep.

    Background work uses its own database sessions from `session_factory`, so
    it outlives the request that started it.
    """

    def __init__(
        self,
        verifier: CredentialVerifier | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.verifier = verifier or get_credential_verifier()
        self.session_factory = session_factory or AsyncSessionLocal
        self._tasks: set[asyncio.Task[None]] = set()

    async def resolve(
        self, db: AsyncSession, bearer: str | None, session_token: str | None
    ) -> AuthContext | None:
        """
        Resolve credentials without the public-route check.

        Returns None when no credential was presented or the session is not live.

        Raises:
            AuthError: bearer credential present but not verifiable
        """
        if bearer:
            claims = await self.verifier.authenticate(db, bearer)
            identity = await db.get(Users, claims.id)
            if identity is None:
                raise AuthenticationRequired()
            return AuthContext(
                identity=identity,
                method="bearer",
                roles=claims.roles,
                permissions=claims.permissions,
                claims=claims,
            )

        if not session_token:
            return None

        active = await SessionStore(db, verifier=self.verifier).get_session(session_token)
        if active is None:
            return None

        self.spawn(self._refresh_if_needed(session_token), "session_refresh")
        self.spawn(self._touch(session_token), "session_activity")

        identity_id = active.identity.id
        assert identity_id is not None
        return AuthContext(
            identity=active.identity,
            method="session",
            roles=await get_identity_role_codes(db, identity_id),
            permissions=await get_identity_permission_codes(db, identity_id),
            session=active.session,
            session_token=session_token,
        )

    async def dispatch(
        self, request: Request, db: AsyncSession, bearer: str | None
    ) -> AuthContext | None:
        """Full per-request decision; returns None only for public routes."""
        if is_public_route(request):
            return None
        ctx = await self.resolve(db, bearer, request.cookies.get(settings.SESSION_COOKIE_NAME))
        if ctx is None:
            raise AuthenticationRequired()
        return ctx

    # ===== Fire-and-forget upkeep =====

    def spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(
                "background_session_task_failed",
                task=name,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _refresh_if_needed(self, session_token: str) -> None:
        async with self.session_factory() as db:
            store = SessionStore(db, verifier=self.verifier)
            if await store.needs_refresh(session_token):
                await store.refresh_session(session_token)

    async def _touch(self, session_token: str) -> None:
        async with self.session_factory() as db:
            await SessionStore(db, verifier=self.verifier).update_session_activity(session_token)

    async def drain(self) -> None:
        """Wait for outstanding background tasks (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


_dispatcher: AuthDispatcher | None = None


def get_auth_dispatcher() -> AuthDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = AuthDispatcher()
    return _dispatcher


# ===== Dependencies =====


async def require_auth(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)] = None,
) -> AuthContext | None:
    """
    Router-level guard. Use as `APIRouter(dependencies=[Depends(require_auth)])`.

    Returns None for @public endpoints.
    """
    ctx = await get_auth_dispatcher().dispatch(
        request, db, credentials.credentials if credentials else None
    )
    if ctx is not None:
        request.state.auth = ctx
        set_identity_context(ctx.identity_id)
    return ctx


async def get_auth_context(
    ctx: Annotated[AuthContext | None, Depends(require_auth)],
) -> AuthContext:
    if ctx is None:
        raise AuthenticationRequired()
    return ctx


async def get_optional_auth_context(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)] = None,
) -> AuthContext | None:
    """Identity if one resolves, else None. Invalid credentials count as anonymous."""
    try:
        ctx = await get_auth_dispatcher().resolve(
            db,
            credentials.credentials if credentials else None,
            request.cookies.get(settings.SESSION_COOKIE_NAME),
        )
    except AuthError:
        return None
    if ctx is not None:
        set_identity_context(ctx.identity_id)
    return ctx


async def require_admin(
    ctx: Annotated[AuthContext, Depends(get_auth_context)],
) -> AuthContext:
    """
    Require the admin role.

    Raises:
        HTTPException: 403 if the identity is not an admin
    """
    if not ctx.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return ctx


# Type aliases for dependency injection
CurrentAuth = Annotated[AuthContext, Depends(get_auth_context)]
OptionalAuth = Annotated[AuthContext | None, Depends(get_optional_auth_context)]
AdminAuth = Annotated[AuthContext, Depends(require_admin)]
