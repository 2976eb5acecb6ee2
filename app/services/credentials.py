"""
Credential verification for local and delegated credentials.

Verification runs an ordered list of strategies. Each returns one outcome:

- Ok(claims): verified, stop here
- Retry(error): this strategy could not verify, try the next one
- Fatal(error): stop, nothing further can verify this credential

The delegated strategy comes first when a provider is configured and only ever
returns Retry, so a local token still verifies while the provider is down.
When every strategy fails, one consolidated error is raised, picking the most
specific cause: ExpiredCredential, then UnresolvableIdentity, then
InvalidCredential.

Claims from both sources are normalized to `Claims`. Delegated role tokens
(realm_access.roles and resource_access.<client>.roles) are flattened,
de-duplicated and split into roles and permissions by the "permission:" prefix.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import PERMISSION_ROLE_PREFIX, TokenSource, settings
from app.core.errors import (
    AuthError,
    ExpiredCredential,
    ExternalProviderUnavailable,
    InvalidCredential,
    UnresolvableIdentity,
)
from app.core.logging import get_logger
from app.core.security import decode_local_token, decode_unverified, verify_password
from app.services.idp_client import IdpClient, get_idp_client
from app.services.identity_store import find_identity, get_identity

logger = get_logger(__name__)

DELEGATED_ALGORITHMS = ["RS256"]
JWKS_CACHE_SECONDS = 300
# Floor between forced reloads triggered by unknown key ids
JWKS_MIN_RELOAD_SECONDS = 30


@dataclass
class Claims:
    """Canonical claims shape for an authenticated request."""

    id: int
    email: str | None
    username: str | None
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    source: str = TokenSource.LOCAL
    subject: str = ""
    expires_at: datetime | None = None


@dataclass
class Ok:
    claims: Claims


@dataclass
class Retry:
    error: AuthError


@dataclass
class Fatal:
    error: AuthError


VerificationOutcome = Ok | Retry | Fatal


class VerifierStrategy(Protocol):
    name: str

    def applies(self) -> bool: ...

    async def verify(self, db: AsyncSession, token: str) -> VerificationOutcome: ...


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(v for v in values if v))


def flatten_delegated_roles(payload: dict[str, Any]) -> tuple[list[str], list[str]]:
    """
    Collect realm and resource roles from a delegated token.

    Returns:
        (roles, permissions): permission tokens have the prefix stripped and
        never appear in roles
    """
    tokens: list[str] = list((payload.get("realm_access") or {}).get("roles") or [])
    for resource in (payload.get("resource_access") or {}).values():
        tokens.extend((resource or {}).get("roles") or [])

    roles: list[str] = []
    permissions: list[str] = []
    for token in _dedupe(tokens):
        if token.startswith(PERMISSION_ROLE_PREFIX):
            permissions.append(token[len(PERMISSION_ROLE_PREFIX) :])
        else:
            roles.append(token)
    return roles, _dedupe(permissions)


def _expiry(payload: dict[str, Any]) -> datetime | None:
    exp = payload.get("exp")
    if isinstance(exp, int | float):
        return datetime.fromtimestamp(exp, tz=UTC).replace(tzinfo=None)
    return None


class DelegatedTokenStrategy:
    """Verify provider-issued RS256 tokens against the realm JWKS, or by introspection."""

    name = "delegated"

    def __init__(self, idp: IdpClient) -> None:
        self.idp = idp
        self._jwks: jwt.PyJWKSet | None = None
        self._jwks_fetched_at = 0.0
        self._lock = asyncio.Lock()

    def applies(self) -> bool:
        return self.idp.is_configured

    async def _load_jwks(self, force: bool = False) -> jwt.PyJWKSet:
        async with self._lock:
            age = time.monotonic() - self._jwks_fetched_at
            if force and age < JWKS_MIN_RELOAD_SECONDS:
                logger.debug("jwks_reload_throttled", age=round(age, 1))
                force = False
            if self._jwks is None or age > JWKS_CACHE_SECONDS or force:
                try:
                    self._jwks = jwt.PyJWKSet.from_dict(await self.idp.fetch_jwks())
                except jwt.PyJWKSetError as e:
                    raise ExternalProviderUnavailable("Provider published no usable keys") from e
                self._jwks_fetched_at = time.monotonic()
            return self._jwks

    async def signing_key(self, kid: str | None) -> jwt.PyJWK:
        jwks = await self._load_jwks()
        for key in jwks.keys:
            if kid is None or key.key_id == kid:
                return key
        # Unknown kid: the provider may have rotated keys
        jwks = await self._load_jwks(force=True)
        for key in jwks.keys:
            if key.key_id == kid:
                return key
        raise InvalidCredential("Token signed with an unknown key")

    def _check_claims(self, payload: dict[str, Any]) -> None:
        if not payload.get("sub"):
            raise InvalidCredential("Token has no subject")

        iat = payload.get("iat")
        if isinstance(iat, int | float) and iat > time.time() + settings.IDP_CLOCK_TOLERANCE:
            raise InvalidCredential("Token issued in the future")

        if settings.IDP_VERIFY_AUDIENCE:
            aud = payload.get("aud") or []
            audiences = [aud] if isinstance(aud, str) else list(aud)
            if settings.IDP_CLIENT_ID not in audiences and payload.get("azp") != settings.IDP_CLIENT_ID:
                raise InvalidCredential("Token audience mismatch")

    async def decode(self, token: str) -> dict[str, Any]:
        """
        Verify a delegated token and return its payload.

        Raises:
            ExpiredCredential, InvalidCredential, ExternalProviderUnavailable
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as e:
            raise InvalidCredential("Malformed token") from e
        if header.get("alg") not in DELEGATED_ALGORITHMS:
            raise InvalidCredential("Token is not provider-signed")

        try:
            key = await self.signing_key(header.get("kid"))
        except ExternalProviderUnavailable:
            logger.warning("delegated_jwks_unavailable", fallback="introspection")
            return await self.introspect(token)

        try:
            payload = jwt.decode(
                token,
                key.key,
                algorithms=DELEGATED_ALGORITHMS,
                issuer=settings.IDP_REALM_URL,
                leeway=settings.IDP_CLOCK_TOLERANCE,
                options={"verify_aud": False, "require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise ExpiredCredential("Provider token has expired") from e
        except jwt.PyJWTError as e:
            raise InvalidCredential("Invalid token signature") from e

        self._check_claims(payload)
        return payload

    async def introspect(self, token: str) -> dict[str, Any]:
        data = await self.idp.introspect(token, token_type_hint="access_token")
        if not data.get("active"):
            raise InvalidCredential("Token is not active")
        if data.get("iss") and data["iss"] != settings.IDP_REALM_URL:
            raise InvalidCredential("Token issuer mismatch")
        self._check_claims(data)
        return data

    async def verify(self, db: AsyncSession, token: str) -> VerificationOutcome:
        try:
            payload = await self.decode(token)
            identity = await find_identity(
                db, external_id=payload["sub"], email=payload.get("email")
            )
            if identity is None or identity.id is None or not identity.is_active:
                raise UnresolvableIdentity()
        except AuthError as e:
            logger.info("delegated_verification_failed", reason=e.code)
            return Retry(e)

        roles, permissions = flatten_delegated_roles(payload)
        return Ok(
            Claims(
                id=identity.id,
                email=identity.email,
                username=identity.username,
                roles=roles,
                permissions=permissions,
                source=TokenSource.DELEGATED,
                subject=payload["sub"],
                expires_at=_expiry(payload),
            )
        )


class LocalTokenStrategy:
    """Verify locally issued HS256 access tokens."""

    name = "local"

    def applies(self) -> bool:
        return True

    async def verify(self, db: AsyncSession, token: str) -> VerificationOutcome:
        try:
            payload = decode_local_token(token)
            try:
                identity_id = int(payload["sub"])
            except (TypeError, ValueError) as e:
                raise InvalidCredential("Malformed subject") from e
            identity = await get_identity(db, identity_id)
            if identity is None or not identity.is_active:
                raise UnresolvableIdentity()
        except AuthError as e:
            return Fatal(e)

        return Ok(
            Claims(
                id=identity_id,
                email=identity.email,
                username=identity.username,
                roles=_dedupe(list(payload.get("roles") or [])),
                permissions=_dedupe(list(payload.get("permissions") or [])),
                source=TokenSource.LOCAL,
                subject=payload["sub"],
                expires_at=_expiry(payload),
            )
        )


_ERROR_PRECEDENCE: tuple[type[AuthError], ...] = (
    ExpiredCredential,
    UnresolvableIdentity,
    InvalidCredential,
)


def consolidate_errors(errors: list[AuthError]) -> AuthError:
    """Pick the single error to surface after every strategy failed."""
    for error_type in _ERROR_PRECEDENCE:
        for error in errors:
            if isinstance(error, error_type):
                return error
    return errors[0] if errors else InvalidCredential()


class CredentialVerifier:
    """Runs verification strategies in order and normalizes the result."""

    def __init__(self, strategies: list[VerifierStrategy], idp: IdpClient | None = None) -> None:
        self.strategies = strategies
        self.idp = idp

    def _strategy(self, name: str) -> VerifierStrategy:
        for strategy in self.strategies:
            if strategy.name == name:
                return strategy
        raise LookupError(name)

    async def authenticate(self, db: AsyncSession, credential: str) -> Claims:
        """
        Verify a bearer credential.

        Raises:
            AuthError: the consolidated failure when no strategy verified it
        """
        errors: list[AuthError] = []
        for strategy in self.strategies:
            if not strategy.applies():
                continue
            outcome = await strategy.verify(db, credential)
            if isinstance(outcome, Ok):
                return outcome.claims
            errors.append(outcome.error)
            if isinstance(outcome, Fatal):
                break

        error = consolidate_errors(errors)
        logger.info(
            "credential_rejected",
            reason=error.code,
            attempts=[type(e).__name__ for e in errors],
            diagnostics=_diagnostics(credential),
        )
        raise error

    @staticmethod
    def verify_local(password: str, password_hash: str | None) -> bool:
        """Slow salted comparison of a password against a stored bcrypt hash."""
        if not password_hash:
            return False
        return verify_password(password, password_hash)

    async def verify_local_token(self, db: AsyncSession, token: str) -> Claims:
        return await self._verify_with(db, token, "local")

    async def verify_delegated(self, db: AsyncSession, token: str) -> Claims:
        return await self._verify_with(db, token, "delegated")

    async def _verify_with(self, db: AsyncSession, token: str, name: str) -> Claims:
        outcome = await self._strategy(name).verify(db, token)
        if isinstance(outcome, Ok):
            return outcome.claims
        raise outcome.error

    async def verify_refresh_token(self, refresh_token: str) -> bool:
        """True if the delegated provider still considers the refresh token active."""
        if self.idp is None or not self.idp.is_configured:
            return False
        data = await self.idp.introspect(refresh_token, token_type_hint="refresh_token")
        return bool(data.get("active"))


def is_token_expiring_soon(token: str, threshold: int | None = None) -> bool:
    """
    Diagnostic check on a JWT's own `exp` claim.

    Not used for trust or refresh decisions; sessions track expiries in the store.
    """
    payload = decode_unverified(token)
    if not payload or not isinstance(payload.get("exp"), int | float):
        return True
    limit = settings.TOKEN_REFRESH_THRESHOLD if threshold is None else threshold
    return payload["exp"] - time.time() <= limit


def _diagnostics(token: str) -> dict[str, Any]:
    payload = decode_unverified(token) or {}
    return {"iss": payload.get("iss"), "exp": payload.get("exp"), "typ": payload.get("typ")}


_verifier: CredentialVerifier | None = None


def get_credential_verifier() -> CredentialVerifier:
    """Return the process-wide verifier (also a FastAPI dependency)."""
    global _verifier
    if _verifier is None:
        idp = get_idp_client()
        _verifier = CredentialVerifier([DelegatedTokenStrategy(idp), LocalTokenStrategy()], idp=idp)
    return _verifier
