"""
OAuth2 / OpenID Connect protocol endpoints.

Mounted at the application root so the paths match the discovery document.
Protocol errors are raised as OAuthError and rendered by the handler in
app/main.py (RFC 6749 JSON, or a redirect for authorization requests once the
redirect URI is trusted).
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import CurrentAuth, OptionalAuth
from app.core.database import get_db
from app.core.logging import get_logger
from app.schemas.oidc import (
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    DeviceVerifyRequest,
    DeviceVerifyResponse,
    InteractionCompleteRequest,
)
from app.services.oidc_server import AuthorizationServer, get_authorization_server

logger = get_logger(__name__)

router = APIRouter(tags=["oidc"])

Server = Annotated[AuthorizationServer, Depends(get_authorization_server)]

# Token responses must not be cached (RFC 6749 section 5.1)
NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


async def _form(request: Request) -> dict[str, str]:
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _bearer(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


@router.get("/.well-known/openid-configuration")
async def discovery(server: Server) -> dict[str, Any]:
    return server.discovery()


@router.get("/.well-known/jwks.json")
async def jwks(server: Server) -> dict[str, Any]:
    return server.jwks()


@router.get("/authorization")
async def authorization(
    request: Request,
    auth: OptionalAuth,
    server: Server,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RedirectResponse:
    """
    Authorization endpoint (code flow).

    A logged-in caller who already approved these scopes for the client is
    redirected straight back with a code. Everyone else is sent to the
    interaction page, which completes the request after login and consent.
    prompt=none turns that detour into a login_required or consent_required
    error, and prompt=consent forces it.
    """
    account_id = str(auth.identity_id) if auth else None
    target = await server.authorize(db, dict(request.query_params), account_id)
    return RedirectResponse(target, status_code=status.HTTP_302_FOUND)


@router.get("/interaction/{uid}")
async def interaction_details(
    uid: str,
    server: Server,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    return await server.interaction_details(db, uid)


@router.post("/interaction/{uid}/complete")
async def complete_interaction(
    uid: str,
    auth: CurrentAuth,
    server: Server,
    db: Annotated[AsyncSession, Depends(get_db)],
    body: InteractionCompleteRequest | None = None,
) -> dict[str, str]:
    """Approve or deny a parked authorization request; returns where to send the browser."""
    approve = body.approve if body else True
    target = await server.complete_interaction(db, uid, str(auth.identity_id), approve)
    return {"redirect_to": target}


@router.post("/token")
async def token(
    request: Request,
    server: Server,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> JSONResponse:
    form = await _form(request)
    result = await server.token(db, form, request.headers.get("Authorization"))
    return JSONResponse(result, headers=NO_STORE)


@router.post("/introspection")
async def introspection(
    request: Request,
    server: Server,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    form = await _form(request)
    await server.authenticate_client(db, form, request.headers.get("Authorization"))
    token_value = form.get("token")
    if not token_value:
        return {"active": False}
    return await server.introspect(db, token_value, form.get("token_type_hint"))


@router.post("/revocation")
async def revocation(
    request: Request,
    server: Server,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Response:
    form = await _form(request)
    client = await server.authenticate_client(db, form, request.headers.get("Authorization"))
    token_value = form.get("token")
    if token_value:
        await server.revoke(db, client, token_value, form.get("token_type_hint"))
    return Response(status_code=status.HTTP_200_OK)


@router.get("/userinfo")
async def userinfo(
    request: Request,
    server: Server,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> JSONResponse:
    claims = await server.userinfo(db, _bearer(request))
    return JSONResponse(claims, headers=NO_STORE)


@router.post("/userinfo")
async def userinfo_post(
    request: Request,
    server: Server,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> JSONResponse:
    access_token = _bearer(request) or (await _form(request)).get("access_token")
    claims = await server.userinfo(db, access_token)
    return JSONResponse(claims, headers=NO_STORE)


@router.post("/device/auth")
async def device_authorization(
    request: Request,
    server: Server,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> JSONResponse:
    form = await _form(request)
    client = await server.authenticate_client(db, form, request.headers.get("Authorization"))
    result = await server.device_authorization(db, client, form.get("scope"))
    return JSONResponse(result, headers=NO_STORE)


@router.post("/device/verify", response_model=DeviceVerifyResponse)
async def verify_device(
    body: DeviceVerifyRequest,
    auth: CurrentAuth,
    server: Server,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> DeviceVerifyResponse:
    """Approve or deny a device login by its user code (logged-in users only)."""
    grant = await server.verify_device(db, body.user_code, str(auth.identity_id), body.approve)
    return DeviceVerifyResponse(
        client_id=grant.client_id, scope=grant.scope, status=grant.status.value
    )


@router.post(
    "/reg",
    response_model=ClientRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_client(
    body: ClientRegistrationRequest,
    request: Request,
    server: Server,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ClientRegistrationResponse:
    registered = await server.register_client(db, body, _bearer(request))
    return ClientRegistrationResponse.model_validate(registered)
