"""
HTTP client for the delegated identity provider (Keycloak-compatible realm API).

Covers the token endpoint (password, authorization_code, refresh_token and
client_credentials grants), userinfo, introspection, logout, the realm JWKS,
and the admin API for users and realm roles.

Error mapping (every non-2xx response lands in the auth taxonomy):
- network failure, 404, 429 or 5xx -> ExternalProviderUnavailable
- 400/401/403 on a grant, userinfo or introspection -> InvalidCredential
- any admin API failure -> ExternalProviderUnavailable
- 404 on an admin lookup -> None
"""

import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from app.config import settings
from app.core.errors import ExternalProviderUnavailable, InvalidCredential
from app.core.logging import get_logger

logger = get_logger(__name__)

# Provider default when a token response omits expires_in
DEFAULT_EXPIRES_IN = 300

# Statuses meaning "the provider looked at the credential and said no"
REJECTED_STATUSES = frozenset({400, 401, 403})


@dataclass
class TokenSet:
    """Token endpoint response from the delegated provider."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int = DEFAULT_EXPIRES_IN
    refresh_expires_in: int | None = None
    id_token: str | None = None
    session_state: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "TokenSet":
        refresh_expires_in = data.get("refresh_expires_in")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in") or DEFAULT_EXPIRES_IN),
            # 0 means "no fixed expiry" (offline tokens); treat as omitted
            refresh_expires_in=int(refresh_expires_in) if refresh_expires_in else None,
            id_token=data.get("id_token"),
            session_state=data.get("session_state"),
        )


class IdpClient:
    """
    Async client for the delegated provider.

    Args:
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self._admin_token: str | None = None
        self._admin_token_expires_at = 0.0

    @property
    def is_configured(self) -> bool:
        return settings.is_idp_configured

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.IDP_TIMEOUT, transport=self._transport)

    def _client_credentials(self) -> dict[str, str]:
        data = {"client_id": settings.IDP_CLIENT_ID or ""}
        if settings.IDP_CLIENT_SECRET:
            data["client_secret"] = settings.IDP_CLIENT_SECRET
        return data

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._http() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("idp_request_failed", method=method, url=url, error=str(e))
            raise ExternalProviderUnavailable() from e

        if response.status_code >= 500:
            logger.error("idp_server_error", method=method, url=url, status=response.status_code)
            raise ExternalProviderUnavailable()
        return response

    async def _token_request(self, data: dict[str, str]) -> TokenSet:
        response = await self._request(
            "POST",
            f"{settings.IDP_OIDC_URL}/token",
            data={**self._client_credentials(), **data},
        )
        _check_response(response, f"{data.get('grant_type')} grant")
        return TokenSet.from_response(response.json())

    # ===== Token endpoint =====

    async def password_grant(self, username: str, password: str) -> TokenSet:
        return await self._token_request(
            {
                "grant_type": "password",
                "username": username,
                "password": password,
                "scope": "openid profile email",
            }
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        return await self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
        )

    async def refresh(self, refresh_token: str) -> TokenSet:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    def authorization_url(self, state: str, redirect_uri: str, nonce: str | None = None) -> str:
        params = {
            "client_id": settings.IDP_CLIENT_ID or "",
            "response_type": "code",
            "scope": "openid profile email",
            "redirect_uri": redirect_uri,
            "state": state,
        }
        if nonce:
            params["nonce"] = nonce
        return f"{settings.IDP_OIDC_URL}/auth?{urlencode(params)}"

    # ===== Token inspection =====

    async def userinfo(self, access_token: str) -> dict[str, Any]:
        response = await self._request(
            "GET",
            f"{settings.IDP_OIDC_URL}/userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        _check_response(response, "userinfo")
        return response.json()

    async def introspect(self, token: str, token_type_hint: str | None = None) -> dict[str, Any]:
        data = {**self._client_credentials(), "token": token}
        if token_type_hint:
            data["token_type_hint"] = token_type_hint
        response = await self._request(
            "POST", f"{settings.IDP_OIDC_URL}/token/introspect", data=data
        )
        _check_response(response, "introspection")
        return response.json()

    async def fetch_jwks(self) -> dict[str, Any]:
        response = await self._request("GET", f"{settings.IDP_OIDC_URL}/certs")
        _check_response(response, "jwks", credential=False)
        return response.json()

    async def logout(self, refresh_token: str) -> None:
        response = await self._request(
            "POST",
            f"{settings.IDP_OIDC_URL}/logout",
            data={**self._client_credentials(), "refresh_token": refresh_token},
        )
        _check_response(response, "logout")

    # ===== Admin API =====

    async def _admin_headers(self) -> dict[str, str]:
        if self._admin_token is None or time.monotonic() >= self._admin_token_expires_at:
            data = {
                "grant_type": "client_credentials",
                "client_id": settings.IDP_ADMIN_CLIENT_ID or settings.IDP_CLIENT_ID or "",
                "client_secret": settings.IDP_ADMIN_CLIENT_SECRET
                or settings.IDP_CLIENT_SECRET
                or "",
            }
            response = await self._request("POST", f"{settings.IDP_OIDC_URL}/token", data=data)
            if response.status_code >= 400:
                logger.error("idp_admin_auth_failed", status=response.status_code)
                raise ExternalProviderUnavailable("Provider admin authentication failed")
            body = response.json()
            self._admin_token = body["access_token"]
            # Renew 30s early
            self._admin_token_expires_at = (
                time.monotonic() + int(body.get("expires_in") or DEFAULT_EXPIRES_IN) - 30
            )
        return {"Authorization": f"Bearer {self._admin_token}"}

    async def _admin(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = await self._admin_headers()
        response = await self._request(
            method, f"{settings.IDP_ADMIN_URL}{path}", headers=headers, **kwargs
        )
        if response.status_code == 401:
            # Token revoked early; drop it so the next call re-authenticates
            self._admin_token = None
        return response

    async def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        response = await self._admin("GET", "/users", params={"email": email, "exact": "true"})
        _check_response(response, "user lookup", credential=False)
        users = response.json()
        return users[0] if users else None

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        response = await self._admin("GET", f"/users/{user_id}")
        if response.status_code == 404:
            return None
        _check_response(response, "user lookup", credential=False)
        return response.json()

    async def create_user(self, representation: dict[str, Any]) -> str:
        """Create a user and return the provider's id for it."""
        response = await self._admin("POST", "/users", json=representation)
        _check_response(response, "user create", credential=False)
        location = response.headers.get("Location", "")
        user_id = location.rstrip("/").rsplit("/", 1)[-1]
        if not user_id:
            created = await self.get_user_by_email(representation["email"])
            if created is None:
                raise ExternalProviderUnavailable("Provider did not return the created user")
            user_id = created["id"]
        logger.info("idp_user_created", external_id=user_id)
        return user_id

    async def update_user(self, user_id: str, representation: dict[str, Any]) -> None:
        response = await self._admin("PUT", f"/users/{user_id}", json=representation)
        _check_response(response, "user update", credential=False)

    async def delete_user(self, user_id: str) -> None:
        response = await self._admin("DELETE", f"/users/{user_id}")
        if response.status_code != 404:
            _check_response(response, "user delete", credential=False)

    async def get_realm_role(self, name: str) -> dict[str, Any] | None:
        response = await self._admin("GET", f"/roles/{name}")
        if response.status_code == 404:
            return None
        _check_response(response, "role lookup", credential=False)
        return response.json()

    async def create_realm_role(self, name: str, description: str | None = None) -> dict[str, Any]:
        """Create a plain (never composite) realm role."""
        response = await self._admin(
            "POST",
            "/roles",
            json={"name": name, "description": description or "", "composite": False},
        )
        if response.status_code != 409:
            _check_response(response, "role create", credential=False)
        role = await self.get_realm_role(name)
        if role is None:
            raise ExternalProviderUnavailable(f"Realm role {name} missing after create")
        return role

    async def get_user_realm_roles(self, user_id: str) -> list[dict[str, Any]]:
        response = await self._admin("GET", f"/users/{user_id}/role-mappings/realm")
        _check_response(response, "role mapping lookup", credential=False)
        return response.json()

    async def add_user_realm_roles(self, user_id: str, roles: list[dict[str, Any]]) -> None:
        if not roles:
            return
        response = await self._admin("POST", f"/users/{user_id}/role-mappings/realm", json=roles)
        _check_response(response, "role mapping update", credential=False)

    async def remove_user_realm_roles(self, user_id: str, roles: list[dict[str, Any]]) -> None:
        if not roles:
            return
        response = await self._admin(
            "DELETE", f"/users/{user_id}/role-mappings/realm", json=roles
        )
        _check_response(response, "role mapping update", credential=False)


def _check_response(response: httpx.Response, action: str, *, credential: bool = True) -> None:
    """
    Raise the taxonomy error for a non-2xx provider response.

    With credential=False (JWKS, admin API) a refusal says nothing about the
    user's credential, so every failure means the provider is unavailable.
    """
    if response.is_success:
        return
    body = _safe_json(response)
    if credential and response.status_code in REJECTED_STATUSES:
        logger.warning(
            "idp_request_rejected",
            action=action,
            status=response.status_code,
            error=body.get("error"),
        )
        raise InvalidCredential(body.get("error_description") or f"Provider rejected {action}")
    logger.error("idp_response_error", action=action, status=response.status_code)
    raise ExternalProviderUnavailable(f"Provider {action} failed")


def _safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


_client: IdpClient | None = None


def get_idp_client() -> IdpClient:
    """Return the process-wide provider client (also a FastAPI dependency)."""
    global _client
    if _client is None:
        _client = IdpClient()
    return _client
