"""
Security utilities for authentication.

This module provides:
- Password hashing and verification using bcrypt
- Local JWT access token generation and verification (HS256)
- Opaque random tokens (session tokens, local refresh tokens) and their hashes
- A non-verifying JWT decode for diagnostics
"""

import base64
import hashlib
import re
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

import bcrypt
import jwt

from app.config import settings
from app.core.errors import ExpiredCredential, InvalidCredential

# 48 random bytes -> 64 URL-safe characters
SESSION_TOKEN_BYTES = 48


def validate_password_strength(password: str) -> tuple[bool, str | None]:
    """
    Validate password meets security requirements.

    Requirements:
    - At least 8 characters
    - Contains at least one uppercase letter
    - Contains at least one lowercase letter
    - Contains at least one digit

    Returns:
        Tuple of (is_valid, error_message)
    """
    if len(password) < 8:
        return False, "Password must be at least 8 characters long"

    if not re.search(r"[A-Z]", password):
        return False, "Password must contain at least one uppercase letter"

    if not re.search(r"[a-z]", password):
        return False, "Password must contain at least one lowercase letter"

    if not re.search(r"\d", password):
        return False, "Password must contain at least one digit"

    return True, None


def _prepare_password_for_bcrypt(password: str) -> str:
    """
    Prepare password for bcrypt by handling long passwords.

    Bcrypt has a 72 byte limit. For passwords longer than 72 bytes,
    we SHA256 hash them first and encode as base64.
    """
    password_bytes = password.encode("utf-8")

    if len(password_bytes) <= 72:
        return password

    # SHA256 produces 32 bytes, base64 encoding produces 44 chars (well under 72)
    hashed = hashlib.sha256(password_bytes).digest()
    return base64.b64encode(hashed).decode("ascii")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a plain password against a bcrypt hash.

    Returns False (never raises) for malformed hashes.
    """
    prepared_password = _prepare_password_for_bcrypt(plain_password)
    try:
        return bcrypt.checkpw(prepared_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt.

    For passwords longer than 72 bytes (bcrypt's limit), we SHA256 hash them first.
    """
    prepared_password = _prepare_password_for_bcrypt(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(prepared_password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def create_access_token(
    identity_id: int,
    roles: list[str] | None = None,
    permissions: list[str] | None = None,
    email: str | None = None,
    username: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a local JWT access token.

    Args:
        identity_id: The identity ID to encode as `sub`
        roles: Role codes to embed
        permissions: Permission codes to embed
        email: Optional email claim
        username: Optional preferred_username claim
        expires_delta: Optional custom lifetime (defaults to ACCESS_TOKEN_EXPIRE_MINUTES)

    Returns:
        Encoded JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    now = datetime.now(UTC)
    payload: dict[str, Any] = {
        "sub": str(identity_id),
        "iat": now,
        "exp": now + expires_delta,
        "type": "access",
        "roles": roles or [],
        "permissions": permissions or [],
    }
    if email:
        payload["email"] = email
    if username:
        payload["preferred_username"] = username

    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_refresh_token() -> str:
    """
    Create a cryptographically secure local refresh token.

    Returns:
        URL-safe random token string (43 characters)
    """
    return secrets.token_urlsafe(32)


def create_session_token() -> str:
    """Create an opaque session token (48 random bytes, URL-safe base64)."""
    return secrets.token_urlsafe(SESSION_TOKEN_BYTES)


def hash_token(token: str) -> str:
    """SHA-256 hex digest used as the storage key for opaque tokens."""
    return hashlib.sha256(token.encode()).hexdigest()


def decode_local_token(token: str) -> dict[str, Any]:
    """
    Verify and decode a local JWT access token.

    Raises:
        ExpiredCredential: Signature valid but token expired
        InvalidCredential: Bad signature, malformed token or wrong token type
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"verify_exp": True, "verify_signature": True, "require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise ExpiredCredential("Access token has expired") from e
    except jwt.PyJWTError as e:
        raise InvalidCredential("Invalid token signature") from e

    if payload.get("type") != "access":
        raise InvalidCredential("Unexpected token type")

    return payload


def decode_unverified(token: str) -> dict[str, Any] | None:
    """
    Decode a JWT without verifying anything.

    Diagnostics only (logging and expiry hints). Never use the result to
    decide whether a credential is trusted.
    """
    try:
        return jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.DecodeError:
        return None
