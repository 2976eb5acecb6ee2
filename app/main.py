"""
FastAPI Application - Platform identity service
Session-based authentication, delegated identity provider integration and an
embedded OAuth2/OpenID Connect authorization server
"""

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from app.config import settings
from app.core.auth import get_auth_dispatcher
from app.core.database import AsyncSessionLocal, create_tables
from app.core.errors import OAuthError
from app.core.logging import (
    clear_request_context,
    configure_logging,
    get_logger,
    set_request_context,
)
from app.core.permissions import seed_roles
from app.services.oidc_server import get_authorization_server, with_query
from app.services.scheduler import get_scheduler
from app.tasks.queue import close_queue

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    configure_logging()
    logger.info(
        "api_starting",
        environment=settings.ENVIRONMENT,
        database=settings.DATABASE_URL.split("@")[-1],
        idp_configured=settings.is_idp_configured,
    )

    if settings.DB_CREATE_TABLES:
        await create_tables()
    async with AsyncSessionLocal() as db:
        await seed_roles(db)

    # Loads or generates signing keys; refuses to boot in production without them
    get_authorization_server()

    scheduler = get_scheduler()
    if settings.SCHEDULER_ENABLED:
        scheduler.start()

    yield

    # Shutdown
    await scheduler.stop()
    await get_auth_dispatcher().drain()
    await close_queue()
    logger.info("api_stopped")


# Create FastAPI application
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Authentication, session lifecycle and OpenID Connect provider",
    version=settings.VERSION,
    debug=settings.DEBUG,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    set_request_context(request_id)
    try:
        response = await call_next(request)
    finally:
        clear_request_context()
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError) -> Response:
    """RFC 6749 error rendering: redirect to a trusted redirect URI, JSON otherwise."""
    if exc.redirect_uri:
        params = {**exc.to_dict(), "state": exc.state}
        return RedirectResponse(
            with_query(exc.redirect_uri, params), status_code=status.HTTP_302_FOUND
        )

    headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        scheme = "Basic" if exc.error == "invalid_client" else "Bearer"
        headers["WWW-Authenticate"] = f'{scheme} error="{exc.error}"'
    logger.info("oauth_error", error=exc.error, path=request.url.path)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint"""
    return {"status": "healthy"}


# Import and include routers
from app.api.oidc import router as oidc_router  # noqa: E402
from app.api.v1 import router as api_v1_router  # noqa: E402

app.include_router(api_v1_router, prefix=settings.API_V1_STR)
app.include_router(oidc_router)
