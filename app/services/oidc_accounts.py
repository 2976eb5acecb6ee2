"""
Account claims for the authorization server.

Given a subject and the granted scopes, returns the claims the server may
release. Standard claims are included per scope; role and permission claims
are always included.
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.permissions import get_identity_permission_codes, get_identity_role_codes
from app.models.user import Users
from app.services.identity_sync import IdentitySync

SCOPE_CLAIMS: dict[str, tuple[str, ...]] = {
    "profile": (
        "name",
        "given_name",
        "family_name",
        "preferred_username",
        "nickname",
        "picture",
        "locale",
        "zoneinfo",
        "birthdate",
        "gender",
        "updated_at",
    ),
    "email": ("email", "email_verified"),
    "address": ("address",),
    "phone": ("phone_number", "phone_number_verified"),
}


def _standard_claims(identity: Users) -> dict[str, Any]:
    return {
        "name": identity.full_name,
        "given_name": identity.first_name,
        "family_name": identity.last_name,
        "preferred_username": identity.username,
        "nickname": identity.username,
        "picture": identity.avatar_url,
        "locale": identity.locale,
        "zoneinfo": identity.timezone,
        "birthdate": identity.date_of_birth.isoformat() if identity.date_of_birth else None,
        "gender": identity.gender,
        "updated_at": int(identity.updated_at.timestamp()) if identity.updated_at else None,
        "email": identity.email,
        "email_verified": identity.email_verified_at is not None,
        "address": {"formatted": identity.address} if identity.address else None,
        "phone_number": identity.phone,
        "phone_number_verified": identity.phone_verified if identity.phone else None,
    }


async def account_claims(db: AsyncSession, identity: Users, scopes: set[str]) -> dict[str, Any]:
    assert identity.id is not None
    available = _standard_claims(identity)
    claims: dict[str, Any] = {"sub": str(identity.id)}
    for scope, names in SCOPE_CLAIMS.items():
        if scope in scopes:
            for name in names:
                if available.get(name) is not None:
                    claims[name] = available[name]

    claims["roles"] = await get_identity_role_codes(db, identity.id)
    claims["permissions"] = await get_identity_permission_codes(db, identity.id)
    claims["role_id"] = identity.role_id
    return claims


async def find_account(
    db: AsyncSession, subject: str, scopes: set[str], sync: IdentitySync | None = None
) -> dict[str, Any] | None:
    """Resolve `subject` through the identity store (pulling from the provider if needed)."""
    identity = await (sync or IdentitySync(db)).resolve_account(subject)
    if identity is None or not identity.is_active:
        return None
    return await account_claims(db, identity, scopes)
