"""
Embedded OAuth2 / OpenID Connect authorization server.

Endpoints (wired in app/api/oidc.py):
- authorization (code flow, PKCE), parked as an interaction until the user logs in
  and consents; stored consent lets later requests skip the interaction
- token: authorization_code, refresh_token, client_credentials, device_code
- introspection, revocation, userinfo
- device authorization and user-code verification
- dynamic client registration
- discovery document and JWKS

All protocol state goes through the storage adapter (app/services/oidc_adapter.py).
Access tokens are RS256 JWTs whose `jti` is persisted, so revocation and
introspection always consult the store.
"""

import base64
import hashlib
import hmac
import secrets
from datetime import UTC, datetime
from typing import Any
from urllib.parse import unquote, urlencode

import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import OAuthError
from app.core.logging import get_logger
from app.models.oidc import OidcClients
from app.schemas.oidc import (
    GRANT_TYPE_DEVICE_CODE,
    SUPPORTED_GRANT_TYPES,
    ClientRegistrationRequest,
)
from app.services.oidc_accounts import SCOPE_CLAIMS, find_account
from app.services.oidc_adapter import ClientStore, GrantStore, InteractionStore, revoke_grant
from app.services.oidc_grants import (
    AccessTokenGrant,
    AuthorizationCodeGrant,
    ConsentGrant,
    DeviceCodeGrant,
    DeviceCodeStatus,
    GrantKind,
    RefreshTokenGrant,
)
from app.services.oidc_keys import SIGNING_ALGORITHM, SigningKeys

logger = get_logger(__name__)

SUPPORTED_SCOPES = ("openid", "profile", "email", "address", "phone", "offline_access")
CODE_CHALLENGE_METHODS = ("S256", "plain")
TOKEN_ENDPOINT_AUTH_METHODS = ("client_secret_basic", "client_secret_post", "none")

# Consonants only, so user codes cannot spell words
USER_CODE_ALPHABET = "BCDFGHJKLMNPQRSTVWXZ"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def pkce_challenge(verifier: str, method: str) -> str:
    if method == "plain":
        return verifier
    return _b64url(hashlib.sha256(verifier.encode()).digest())


def token_hash(token: str) -> str:
    """at_hash: left half of the SHA-256 of the access token."""
    digest = hashlib.sha256(token.encode()).digest()
    return _b64url(digest[: len(digest) // 2])


def generate_user_code() -> str:
    chars = "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(8))
    return f"{chars[:4]}-{chars[4:]}"


def normalize_user_code(user_code: str) -> str:
    chars = "".join(c for c in user_code.upper() if c.isalnum())
    return f"{chars[:4]}-{chars[4:]}"


def consent_id(client_id: str, account_id: str) -> str:
    return f"consent:{client_id}:{account_id}"


def with_query(uri: str, params: dict[str, Any]) -> str:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    separator = "&" if "?" in uri else "?"
    return f"{uri}{separator}{query}"


def _now() -> datetime:
    return datetime.now(UTC)


class AuthorizationServer:
    def __init__(self, keys: SigningKeys) -> None:
        self.keys = keys
        self.issuer = settings.OIDC_ISSUER.rstrip("/")

    # ===== Metadata =====

    def discovery(self) -> dict[str, Any]:
        claims = sorted({name for names in SCOPE_CLAIMS.values() for name in names})
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorization",
            "token_endpoint": f"{self.issuer}/token",
            "userinfo_endpoint": f"{self.issuer}/userinfo",
            "introspection_endpoint": f"{self.issuer}/introspection",
            "revocation_endpoint": f"{self.issuer}/revocation",
            "device_authorization_endpoint": f"{self.issuer}/device/auth",
            "registration_endpoint": f"{self.issuer}/reg",
            "jwks_uri": f"{self.issuer}/.well-known/jwks.json",
            "scopes_supported": list(SUPPORTED_SCOPES),
            "response_types_supported": ["code"],
            "response_modes_supported": ["query"],
            "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
            "token_endpoint_auth_methods_supported": list(TOKEN_ENDPOINT_AUTH_METHODS),
            "code_challenge_methods_supported": list(CODE_CHALLENGE_METHODS),
            "claims_supported": ["sub", "iss", "aud", "exp", "iat", "auth_time", "nonce", *claims],
        }

    def jwks(self) -> dict[str, Any]:
        return self.keys.jwks()

    # ===== Clients =====

    async def _active_client(self, db: AsyncSession, client_id: str | None) -> OidcClients | None:
        if not client_id:
            return None
        client = await ClientStore(db).find(client_id)
        if client is None or not client.is_active:
            return None
        return client

    async def authenticate_client(
        self, db: AsyncSession, form: dict[str, str], authorization: str | None
    ) -> OidcClients:
        """
        Authenticate the calling client.

        Supports client_secret_basic (Authorization header), client_secret_post
        (form fields) and none (public clients, client_id only).

        Raises:
            OAuthError: invalid_client (401)
        """
        client_id = form.get("client_id")
        client_secret = form.get("client_secret")

        if authorization and authorization.lower().startswith("basic "):
            try:
                decoded = base64.b64decode(authorization[6:]).decode()
                basic_id, basic_secret = decoded.split(":", 1)
            except ValueError as e:
                raise OAuthError("invalid_client", "Malformed Basic credentials", 401) from e
            client_id, client_secret = unquote(basic_id), unquote(basic_secret)

        client = await self._active_client(db, client_id)
        if client is None:
            raise OAuthError("invalid_client", "Unknown client", 401)

        if client.is_public:
            if client_secret:
                raise OAuthError("invalid_client", "Public clients must not send a secret", 401)
            return client

        if not ClientStore.check_secret(client, client_secret):
            logger.warning("oidc_client_auth_failed", client_id=client.client_id)
            raise OAuthError("invalid_client", "Client authentication failed", 401)
        return client

    @staticmethod
    def _check_grant_type(client: OidcClients, grant_type: str) -> None:
        if grant_type not in client.grant_types:
            raise OAuthError("unauthorized_client", f"Client may not use {grant_type}")

    @staticmethod
    def _resolve_scope(client: OidcClients, requested: str | None) -> str:
        allowed = set(client.scope.split())
        if not requested:
            return client.scope
        scopes = requested.split()
        if not set(scopes) <= allowed:
            raise OAuthError("invalid_scope", "Requested scope exceeds the client's scope")
        return " ".join(scopes)

    # ===== Authorization =====

    async def authorize(
        self, db: AsyncSession, params: dict[str, str], account_id: str | None
    ) -> str:
        """
        Validate an authorization request.

        Returns:
            Redirect target: the client's redirect URI carrying a code when
            `account_id` has already consented to the requested scopes,
            otherwise the interaction page

        Raises:
            OAuthError: JSON error while the redirect URI is untrusted, a
            redirecting error afterwards
        """
        client = await self._active_client(db, params.get("client_id"))
        if client is None:
            raise OAuthError("invalid_client", "Unknown client")

        redirect_uri = params.get("redirect_uri")
        if not redirect_uri and len(client.redirect_uris) == 1:
            redirect_uri = client.redirect_uris[0]
        if not redirect_uri or redirect_uri not in client.redirect_uris:
            raise OAuthError("invalid_request", "redirect_uri is not registered for this client")

        state = params.get("state")

        def fail(error: str, description: str) -> OAuthError:
            return OAuthError(error, description, redirect_uri=redirect_uri, state=state)

        if params.get("response_type") != "code":
            raise fail("unsupported_response_type", "Only response_type=code is supported")
        if "authorization_code" not in client.grant_types:
            raise fail("unauthorized_client", "Client may not use authorization_code")

        try:
            scope = self._resolve_scope(client, params.get("scope"))
        except OAuthError as e:
            raise fail(e.error, e.description or e.error) from e

        code_challenge = params.get("code_challenge")
        method = params.get("code_challenge_method") or ("plain" if code_challenge else None)
        if method is not None and method not in CODE_CHALLENGE_METHODS:
            raise fail("invalid_request", "Unsupported code_challenge_method")
        if client.is_public and not code_challenge:
            raise fail("invalid_request", "PKCE code_challenge is required for public clients")

        request = {
            "client_id": client.client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
            "nonce": params.get("nonce"),
            "code_challenge": code_challenge,
            "code_challenge_method": method,
        }
        prompt = set((params.get("prompt") or "").split())

        if account_id is None:
            if "none" in prompt:
                raise fail("login_required", "End-user is not logged in")
            return await self._park(db, request, account_id=None)

        if "consent" not in prompt and await self._has_consent(db, account_id, request):
            return await self._issue_code(db, request, account_id)
        if "none" in prompt:
            raise fail("consent_required", "End-user consent is required")
        return await self._park(db, request, account_id=account_id)

    async def _park(
        self, db: AsyncSession, request: dict[str, Any], account_id: str | None
    ) -> str:
        uid = secrets.token_urlsafe(24)
        await InteractionStore(db).upsert(
            uid, request, settings.OIDC_INTERACTION_TTL, account_id=account_id
        )
        logger.info(
            "oidc_interaction_started",
            uid=uid,
            client_id=request["client_id"],
            prompt="consent" if account_id else "login",
        )
        return f"{settings.OIDC_INTERACTION_URL.rstrip('/')}/{uid}"

    # ===== Consent =====

    async def _has_consent(
        self, db: AsyncSession, account_id: str, request: dict[str, Any]
    ) -> bool:
        grant = await GrantStore(db, GrantKind.CONSENT).find(
            consent_id(request["client_id"], account_id)
        )
        return isinstance(grant, ConsentGrant) and set(request["scope"].split()) <= grant.scopes

    async def _grant_consent(
        self, db: AsyncSession, account_id: str, request: dict[str, Any]
    ) -> None:
        store = GrantStore(db, GrantKind.CONSENT)
        grant_key = consent_id(request["client_id"], account_id)
        existing = await store.find(grant_key)
        scopes = set(request["scope"].split())
        if isinstance(existing, ConsentGrant):
            scopes |= existing.scopes
        grant = ConsentGrant(
            id=grant_key,
            client_id=request["client_id"],
            account_id=account_id,
            scope=" ".join(sorted(scopes)),
        )
        await store.upsert(grant, settings.OIDC_CONSENT_TTL)
        logger.info("oidc_consent_granted", client_id=grant.client_id, account_id=account_id)

    async def interaction_details(self, db: AsyncSession, uid: str) -> dict[str, Any]:
        """What the interaction page shows the user before they approve."""
        interaction = await InteractionStore(db).find(uid)
        if interaction is None:
            raise OAuthError("invalid_request", "Interaction expired or not found", 404)
        request = interaction.payload
        client = await ClientStore(db).find(request["client_id"])
        return {
            "uid": uid,
            "prompt": "consent" if interaction.account_id else "login",
            "client_id": request["client_id"],
            "client_name": client.client_name if client else None,
            "scope": request["scope"],
            "redirect_uri": request["redirect_uri"],
        }

    async def complete_interaction(
        self, db: AsyncSession, uid: str, account_id: str, approve: bool = True
    ) -> str:
        """
        Finish a parked authorization request for the now logged-in account.

        Approval is remembered as a consent grant, so the same client asking
        for the same scopes is not parked again.
        """
        store = InteractionStore(db)
        interaction = await store.find(uid)
        if interaction is None:
            raise OAuthError("invalid_request", "Interaction expired or not found", 404)
        if interaction.account_id is not None and interaction.account_id != account_id:
            raise OAuthError("access_denied", "Interaction belongs to another account", 403)
        request = dict(interaction.payload)
        await store.destroy(uid)

        if not approve:
            logger.info("oidc_interaction_denied", uid=uid)
            return with_query(
                request["redirect_uri"],
                {
                    "error": "access_denied",
                    "error_description": "The resource owner denied the request",
                    "state": request.get("state"),
                },
            )
        await self._grant_consent(db, account_id, request)
        return await self._issue_code(db, request, account_id)

    async def _issue_code(self, db: AsyncSession, request: dict[str, Any], account_id: str) -> str:
        code = secrets.token_urlsafe(32)
        grant = AuthorizationCodeGrant(
            id=code,
            grant_id=secrets.token_urlsafe(16),
            client_id=request["client_id"],
            account_id=account_id,
            scope=request["scope"],
            redirect_uri=request["redirect_uri"],
            code_challenge=request.get("code_challenge"),
            code_challenge_method=request.get("code_challenge_method"),
            nonce=request.get("nonce"),
            auth_time=int(_now().timestamp()),
        )
        await GrantStore(db, GrantKind.AUTHORIZATION_CODE).upsert(grant, settings.OIDC_CODE_TTL)
        logger.info("oidc_code_issued", client_id=grant.client_id, account_id=account_id)
        return with_query(request["redirect_uri"], {"code": code, "state": request.get("state")})

    # ===== Token endpoint =====

    async def token(
        self, db: AsyncSession, form: dict[str, str], authorization: str | None = None
    ) -> dict[str, Any]:
        grant_type = form.get("grant_type")
        if grant_type not in SUPPORTED_GRANT_TYPES:
            raise OAuthError("unsupported_grant_type", f"Unsupported grant_type: {grant_type}")

        client = await self.authenticate_client(db, form, authorization)
        self._check_grant_type(client, grant_type)

        if grant_type == "authorization_code":
            return await self._authorization_code_grant(db, client, form)
        if grant_type == "refresh_token":
            return await self._refresh_token_grant(db, client, form)
        if grant_type == "client_credentials":
            return await self._client_credentials_grant(db, client, form)
        return await self._device_code_grant(db, client, form)

    async def _authorization_code_grant(
        self, db: AsyncSession, client: OidcClients, form: dict[str, str]
    ) -> dict[str, Any]:
        code = form.get("code")
        if not code:
            raise OAuthError("invalid_request", "code is required")

        store = GrantStore(db, GrantKind.AUTHORIZATION_CODE)
        grant = await store.find(code)
        if not isinstance(grant, AuthorizationCodeGrant) or grant.client_id != client.client_id:
            raise OAuthError("invalid_grant", "Invalid authorization code")

        if grant.consumed or not await store.mark_consumed(code):
            # Replay: everything issued from this code is revoked
            if grant.grant_id:
                await revoke_grant(db, grant.grant_id)
            logger.warning("oidc_code_replayed", client_id=client.client_id)
            raise OAuthError("invalid_grant", "Authorization code has already been used")

        if form.get("redirect_uri") != grant.redirect_uri:
            raise OAuthError("invalid_grant", "redirect_uri does not match the authorization")

        if grant.code_challenge:
            verifier = form.get("code_verifier")
            if not verifier:
                raise OAuthError("invalid_grant", "code_verifier is required")
            expected = pkce_challenge(verifier, grant.code_challenge_method or "plain")
            if not hmac.compare_digest(expected, grant.code_challenge):
                raise OAuthError("invalid_grant", "PKCE verification failed")

        assert grant.account_id is not None and grant.grant_id is not None
        return await self._issue_tokens(
            db,
            client,
            account_id=grant.account_id,
            scope=grant.scope,
            grant_id=grant.grant_id,
            issued_by="authorization_code",
            nonce=grant.nonce,
            auth_time=grant.auth_time,
        )

    async def _refresh_token_grant(
        self, db: AsyncSession, client: OidcClients, form: dict[str, str]
    ) -> dict[str, Any]:
        token = form.get("refresh_token")
        if not token:
            raise OAuthError("invalid_request", "refresh_token is required")

        store = GrantStore(db, GrantKind.REFRESH_TOKEN)
        grant = await store.find(token)
        if not isinstance(grant, RefreshTokenGrant) or grant.client_id != client.client_id:
            raise OAuthError("invalid_grant", "Invalid refresh token")

        if grant.consumed or not await store.mark_consumed(token):
            # A rotated-out token came back: treat the grant as compromised
            if grant.grant_id:
                await revoke_grant(db, grant.grant_id)
            logger.warning("oidc_refresh_token_reused", client_id=client.client_id)
            raise OAuthError("invalid_grant", "Refresh token has already been used")

        scope = grant.scope
        if form.get("scope"):
            requested = form["scope"].split()
            if not set(requested) <= grant.scopes:
                raise OAuthError("invalid_scope", "Requested scope exceeds the original grant")
            scope = " ".join(requested)

        assert grant.account_id is not None and grant.grant_id is not None
        return await self._issue_tokens(
            db,
            client,
            account_id=grant.account_id,
            scope=scope,
            grant_id=grant.grant_id,
            issued_by="refresh_token",
            nonce=grant.nonce,
            auth_time=grant.auth_time,
            rotated_from=token,
        )

    async def _client_credentials_grant(
        self, db: AsyncSession, client: OidcClients, form: dict[str, str]
    ) -> dict[str, Any]:
        if client.is_public:
            raise OAuthError("unauthorized_client", "Public clients cannot use client_credentials")
        scope = self._resolve_scope(client, form.get("scope"))
        # No end user: identity scopes do not apply
        scope = " ".join(s for s in scope.split() if s not in SUPPORTED_SCOPES)
        return await self._issue_tokens(
            db,
            client,
            account_id=None,
            scope=scope,
            grant_id=secrets.token_urlsafe(16),
            issued_by="client_credentials",
        )

    async def _device_code_grant(
        self, db: AsyncSession, client: OidcClients, form: dict[str, str]
    ) -> dict[str, Any]:
        device_code = form.get("device_code")
        if not device_code:
            raise OAuthError("invalid_request", "device_code is required")

        store = GrantStore(db, GrantKind.DEVICE_CODE)
        grant = await store.find(device_code)
        if grant is None:
            raise OAuthError("expired_token", "Device code expired or unknown")
        if not isinstance(grant, DeviceCodeGrant) or grant.client_id != client.client_id:
            raise OAuthError("invalid_grant", "Invalid device code")

        if grant.status == DeviceCodeStatus.PENDING:
            raise OAuthError("authorization_pending", "The user has not yet completed verification")
        if grant.status == DeviceCodeStatus.DENIED:
            await store.destroy(device_code)
            raise OAuthError("access_denied", "The user denied the request")

        if not await store.mark_consumed(device_code):
            raise OAuthError("invalid_grant", "Device code has already been used")

        assert grant.account_id is not None
        return await self._issue_tokens(
            db,
            client,
            account_id=grant.account_id,
            scope=grant.scope,
            grant_id=grant.grant_id or secrets.token_urlsafe(16),
            issued_by=GRANT_TYPE_DEVICE_CODE,
            auth_time=grant.auth_time,
        )

    async def _issue_tokens(
        self,
        db: AsyncSession,
        client: OidcClients,
        account_id: str | None,
        scope: str,
        grant_id: str,
        issued_by: str,
        nonce: str | None = None,
        auth_time: int | None = None,
        rotated_from: str | None = None,
    ) -> dict[str, Any]:
        scopes = set(scope.split())
        account: dict[str, Any] | None = None
        if account_id is not None:
            account = await find_account(db, account_id, scopes)
            if account is None:
                await revoke_grant(db, grant_id)
                raise OAuthError("invalid_grant", "Account is no longer available")

        now = _now()
        iat = int(now.timestamp())
        jti = secrets.token_urlsafe(32)
        access_claims: dict[str, Any] = {
            "iss": self.issuer,
            "sub": account_id or client.client_id,
            "aud": client.client_id,
            "client_id": client.client_id,
            "scope": scope,
            "iat": iat,
            "exp": iat + settings.OIDC_ACCESS_TOKEN_TTL,
            "jti": jti,
        }
        if account is not None:
            access_claims["roles"] = account["roles"]
            access_claims["permissions"] = account["permissions"]
        access_token = self.keys.sign(access_claims)

        await GrantStore(db, GrantKind.ACCESS_TOKEN).upsert(
            AccessTokenGrant(
                id=jti,
                grant_id=grant_id,
                client_id=client.client_id,
                account_id=account_id,
                scope=scope,
                issued_by=issued_by,
            ),
            settings.OIDC_ACCESS_TOKEN_TTL,
        )

        response: dict[str, Any] = {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": settings.OIDC_ACCESS_TOKEN_TTL,
            "scope": scope,
        }

        if account is not None and "refresh_token" in client.grant_types:
            refresh_token = secrets.token_urlsafe(48)
            await GrantStore(db, GrantKind.REFRESH_TOKEN).upsert(
                RefreshTokenGrant(
                    id=refresh_token,
                    grant_id=grant_id,
                    client_id=client.client_id,
                    account_id=account_id,
                    scope=scope,
                    nonce=nonce,
                    auth_time=auth_time,
                    rotated_from=rotated_from,
                ),
                settings.OIDC_REFRESH_TOKEN_TTL,
            )
            response["refresh_token"] = refresh_token

        if account is not None and "openid" in scopes:
            id_claims = {
                k: v for k, v in account.items() if k not in ("roles", "permissions", "role_id")
            }
            id_claims.update(
                {
                    "iss": self.issuer,
                    "aud": client.client_id,
                    "azp": client.client_id,
                    "iat": iat,
                    "exp": iat + settings.OIDC_ID_TOKEN_TTL,
                    "at_hash": token_hash(access_token),
                }
            )
            if nonce:
                id_claims["nonce"] = nonce
            if auth_time:
                id_claims["auth_time"] = auth_time
            response["id_token"] = self.keys.sign(id_claims)

        logger.info(
            "oidc_tokens_issued",
            client_id=client.client_id,
            account_id=account_id,
            grant_type=issued_by,
            refresh=("refresh_token" in response),
        )
        return response

    # ===== Token inspection =====

    async def _access_grant(
        self, db: AsyncSession, token: str
    ) -> tuple[dict[str, Any], AccessTokenGrant] | None:
        try:
            claims = self.keys.verify(token)
        except jwt.PyJWTError:
            return None
        grant = await GrantStore(db, GrantKind.ACCESS_TOKEN).find(claims.get("jti", ""))
        if not isinstance(grant, AccessTokenGrant):
            return None
        return claims, grant

    async def introspect(
        self, db: AsyncSession, token: str, token_type_hint: str | None = None
    ) -> dict[str, Any]:
        """RFC 7662 introspection; unknown, expired and revoked tokens are inactive."""
        if token_type_hint != "refresh_token":
            found = await self._access_grant(db, token)
            if found is not None:
                claims, grant = found
                return {
                    "active": True,
                    "token_type": "Bearer",
                    "scope": grant.scope,
                    "client_id": grant.client_id,
                    "sub": claims["sub"],
                    "aud": claims.get("aud"),
                    "iss": claims.get("iss"),
                    "exp": claims["exp"],
                    "iat": claims["iat"],
                    "jti": claims["jti"],
                }

        refresh = await GrantStore(db, GrantKind.REFRESH_TOKEN).find(token)
        if isinstance(refresh, RefreshTokenGrant) and not refresh.consumed:
            return {
                "active": True,
                "token_type": "refresh_token",
                "scope": refresh.scope,
                "client_id": refresh.client_id,
                "sub": refresh.account_id,
                "exp": (
                    int(refresh.expires_at.replace(tzinfo=UTC).timestamp())
                    if refresh.expires_at
                    else None
                ),
            }
        return {"active": False}

    async def revoke(
        self,
        db: AsyncSession,
        client: OidcClients,
        token: str,
        token_type_hint: str | None = None,
    ) -> None:
        """
        RFC 7009 revocation. Revoking a refresh token revokes the whole grant.
        Tokens that are unknown or belong to another client are ignored.
        """
        if token_type_hint != "refresh_token":
            found = await self._access_grant(db, token)
            if found is not None:
                _, grant = found
                if grant.client_id == client.client_id:
                    await GrantStore(db, GrantKind.ACCESS_TOKEN).destroy(grant.id)
                    logger.info("oidc_access_token_revoked", client_id=client.client_id)
                return

        refresh = await GrantStore(db, GrantKind.REFRESH_TOKEN).find(token)
        if isinstance(refresh, RefreshTokenGrant) and refresh.client_id == client.client_id:
            if refresh.grant_id:
                await revoke_grant(db, refresh.grant_id)
            else:
                await GrantStore(db, GrantKind.REFRESH_TOKEN).destroy(refresh.id)

    async def userinfo(self, db: AsyncSession, access_token: str | None) -> dict[str, Any]:
        if not access_token:
            raise OAuthError("invalid_token", "Missing access token", 401)
        found = await self._access_grant(db, access_token)
        if found is None:
            raise OAuthError("invalid_token", "Access token is invalid, expired or revoked", 401)
        _, grant = found
        if grant.account_id is None or "openid" not in grant.scopes:
            raise OAuthError("insufficient_scope", "The openid scope is required", 403)

        account = await find_account(db, grant.account_id, grant.scopes)
        if account is None:
            raise OAuthError("invalid_token", "Account is no longer available", 401)
        return account

    # ===== Device flow =====

    async def device_authorization(
        self, db: AsyncSession, client: OidcClients, scope: str | None
    ) -> dict[str, Any]:
        self._check_grant_type(client, GRANT_TYPE_DEVICE_CODE)
        resolved_scope = self._resolve_scope(client, scope)

        store = GrantStore(db, GrantKind.DEVICE_CODE)
        user_code = generate_user_code()
        while await store.find_by_user_code(user_code) is not None:
            user_code = generate_user_code()

        device_code = secrets.token_urlsafe(32)
        await store.upsert(
            DeviceCodeGrant(
                id=device_code,
                grant_id=secrets.token_urlsafe(16),
                client_id=client.client_id,
                scope=resolved_scope,
                user_code=user_code,
            ),
            settings.OIDC_DEVICE_CODE_TTL,
        )
        logger.info("oidc_device_code_issued", client_id=client.client_id)

        verification_uri = settings.OIDC_DEVICE_VERIFICATION_URL
        return {
            "device_code": device_code,
            "user_code": user_code,
            "verification_uri": verification_uri,
            "verification_uri_complete": with_query(verification_uri, {"user_code": user_code}),
            "expires_in": settings.OIDC_DEVICE_CODE_TTL,
            "interval": settings.OIDC_DEVICE_POLL_INTERVAL,
        }

    async def verify_device(
        self, db: AsyncSession, user_code: str, account_id: str, approve: bool = True
    ) -> DeviceCodeGrant:
        """Approve or deny a pending device code on behalf of the logged-in account."""
        store = GrantStore(db, GrantKind.DEVICE_CODE)
        grant = await store.find_by_user_code(normalize_user_code(user_code))
        if not isinstance(grant, DeviceCodeGrant) or grant.status != DeviceCodeStatus.PENDING:
            raise OAuthError("invalid_request", "Unknown or expired user code", 404)

        grant.account_id = account_id
        grant.status = DeviceCodeStatus.APPROVED if approve else DeviceCodeStatus.DENIED
        grant.auth_time = int(_now().timestamp())
        await store.upsert(grant, expires_in=None)
        logger.info(
            "oidc_device_code_verified",
            client_id=grant.client_id,
            account_id=account_id,
            status=grant.status.value,
        )
        return grant

    # ===== Registration =====

    async def register_client(
        self,
        db: AsyncSession,
        metadata: ClientRegistrationRequest,
        initial_access_token: str | None = None,
        trusted: bool = False,
    ) -> dict[str, Any]:
        """
        RFC 7591 dynamic registration. When OIDC_REGISTRATION_ACCESS_TOKEN is
        set, callers must present it as a bearer token unless `trusted` (admin API).
        """
        expected = settings.OIDC_REGISTRATION_ACCESS_TOKEN
        presented = initial_access_token or ""
        if expected and not trusted and not hmac.compare_digest(expected, presented):
            raise OAuthError("invalid_token", "A valid initial access token is required", 401)

        if "authorization_code" in metadata.grant_types and not metadata.redirect_uris:
            raise OAuthError("invalid_redirect_uri", "redirect_uris is required")

        confidential = metadata.token_endpoint_auth_method != "none"
        if not confidential and "client_credentials" in metadata.grant_types:
            raise OAuthError(
                "invalid_client_metadata", "Public clients cannot use client_credentials"
            )

        client, secret = await ClientStore(db).create(
            confidential=confidential, **metadata.model_dump()
        )
        response = metadata.model_dump()
        response.update(
            {
                "client_id": client.client_id,
                "client_secret": secret,
                "client_id_issued_at": int(client.created_at.replace(tzinfo=UTC).timestamp()),
                "client_secret_expires_at": 0,
                "token_endpoint_auth_method": client.token_endpoint_auth_method,
            }
        )
        return response


_server: AuthorizationServer | None = None


def get_authorization_server() -> AuthorizationServer:
    """Singleton. Keys are loaded (or generated) on first use; main.py does this at boot."""
    global _server
    if _server is None:
        _server = AuthorizationServer(SigningKeys.from_settings())
    return _server
