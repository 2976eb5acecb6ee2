"""
Identity sync between the local identity store and the delegated provider.

Pull (at delegated login): provider data wins for identity attributes (email,
username, given/family name, display name, email verification). Everything
else (password hash, bio, avatar, phone, locale, timezone, role, status) is
platform-owned and left untouched.

Push (after local edits): best-effort. A provider failure is logged and
reported as False; it never fails the local operation.

Roles: every identity holds exactly one system role at the provider. Permissions
are published as standalone "permission:<code>" realm roles and are never
attached to a role as composites.
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import RoleCode, settings
from app.core.database import utcnow
from app.core.errors import AuthError
from app.core.logging import get_logger
from app.core.permissions import (
    get_identity_role_codes,
    is_permission_role,
    permission_role_name,
)
from app.models.role import Permissions, Roles
from app.models.user import Users
from app.services.idp_client import IdpClient, get_idp_client
from app.services.identity_store import (
    create_identity,
    find_identity,
    get_identity,
    get_identity_by_external_id,
    unique_username,
)

logger = get_logger(__name__)


@dataclass
class ProviderProfile:
    """Canonical profile as published by the delegated provider."""

    sub: str
    email: str
    email_verified: bool = False
    preferred_username: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    name: str | None = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "ProviderProfile":
        """Build from OIDC userinfo/ID-token claims."""
        return cls(
            sub=claims["sub"],
            email=claims["email"],
            email_verified=bool(claims.get("email_verified")),
            preferred_username=claims.get("preferred_username"),
            given_name=claims.get("given_name"),
            family_name=claims.get("family_name"),
            name=claims.get("name"),
        )

    @classmethod
    def from_admin_representation(cls, user: dict[str, Any]) -> "ProviderProfile":
        """Build from an admin API user representation."""
        first = user.get("firstName")
        last = user.get("lastName")
        return cls(
            sub=user["id"],
            email=user["email"],
            email_verified=bool(user.get("emailVerified")),
            preferred_username=user.get("username"),
            given_name=first,
            family_name=last,
            name=" ".join(p for p in (first, last) if p) or None,
        )


def build_user_representation(identity: Users) -> dict[str, Any]:
    """Admin API representation of a local identity."""
    attributes: dict[str, list[str]] = {"platformUserId": [str(identity.id)]}
    for key, value in (
        ("phone", identity.phone),
        ("avatar", identity.avatar_url),
        ("locale", identity.locale),
        ("timezone", identity.timezone),
    ):
        if value:
            attributes[key] = [value]

    return {
        "username": identity.username,
        "email": identity.email,
        "firstName": identity.first_name or "",
        "lastName": identity.last_name or "",
        "enabled": identity.is_active,
        "emailVerified": identity.email_verified_at is not None,
        "attributes": attributes,
    }


class IdentitySync:
    def __init__(self, db: AsyncSession, idp: IdpClient | None = None) -> None:
        self.db = db
        self.idp = idp or get_idp_client()

    @property
    def push_enabled(self) -> bool:
        return settings.IDP_SYNC_ENABLED and self.idp.is_configured

    # ===== Pull =====

    async def sync_from_provider(self, profile: ProviderProfile) -> Users:
        """
        Reconcile a provider profile into the local store.

        Finds the identity by external reference, then by email. Updates
        provider-owned fields on a match, otherwise creates a new identity with
        the default role and active status.
        """
        now = utcnow()
        identity = await find_identity(self.db, external_id=profile.sub, email=profile.email)

        if identity is None:
            identity = await create_identity(
                self.db,
                email=profile.email,
                username=profile.preferred_username or profile.email.split("@")[0],
                external_id=profile.sub,
                first_name=profile.given_name,
                last_name=profile.family_name,
                display_name=profile.name,
                email_verified_at=now if profile.email_verified else None,
                last_login_at=now,
            )
            await self.db.commit()
            logger.info("identity_created_from_provider", identity_id=identity.id)
            return identity

        identity.external_id = profile.sub
        identity.email = profile.email
        if profile.preferred_username and profile.preferred_username != identity.username:
            identity.username = await unique_username(self.db, profile.preferred_username)
        if profile.given_name is not None:
            identity.first_name = profile.given_name
        if profile.family_name is not None:
            identity.last_name = profile.family_name
        if profile.name is not None:
            identity.display_name = profile.name
        identity.email_verified_at = now if profile.email_verified else None
        identity.last_login_at = now
        identity.updated_at = now
        await self.db.commit()

        logger.info("identity_synced", identity_id=identity.id, direction="pull")
        return identity

    async def resolve_account(self, subject: str) -> Users | None:
        """
        Resolve an authorization-server subject to a local identity.

        Numeric subjects are local ids. Anything else is an external reference;
        unknown references are pulled from the provider when it is configured.
        """
        if subject.isdigit():
            return await get_identity(self.db, int(subject))

        identity = await get_identity_by_external_id(self.db, subject)
        if identity is not None or not self.idp.is_configured:
            return identity

        try:
            user = await self.idp.get_user(subject)
        except AuthError as e:
            logger.warning("account_lookup_failed", subject=subject, error=str(e))
            return None
        if user is None or not user.get("email"):
            return None
        return await self.sync_from_provider(ProviderProfile.from_admin_representation(user))

    # ===== Push =====

    async def push_profile(self, identity: Users) -> bool:
        """
        Create or update the provider's copy of a local identity.

        Returns:
            True on success, False if disabled or the provider call failed
        """
        if not self.push_enabled:
            return False

        representation = build_user_representation(identity)
        try:
            if identity.external_id:
                await self.idp.update_user(identity.external_id, representation)
            else:
                existing = await self.idp.get_user_by_email(identity.email)
                if existing is not None:
                    await self.idp.update_user(existing["id"], representation)
                    identity.external_id = existing["id"]
                else:
                    identity.external_id = await self.idp.create_user(representation)
                await self.db.commit()
        except AuthError as e:
            logger.warning(
                "identity_push_failed",
                identity_id=identity.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        logger.info("identity_synced", identity_id=identity.id, direction="push")
        return True

    async def sync_role(self, identity: Users) -> bool:
        """
        Make the provider hold exactly the identity's local role.

        Other system roles are removed; permission roles and provider-internal
        roles are left alone.
        """
        if not self.push_enabled or not identity.external_id or identity.id is None:
            return False

        codes = await get_identity_role_codes(self.db, identity.id)
        target = codes[0] if codes else RoleCode.DEFAULT
        try:
            role = await self.idp.get_realm_role(target) or await self.idp.create_realm_role(target)
            current = await self.idp.get_user_realm_roles(identity.external_id)
            stale = [
                r
                for r in current
                if r.get("name") in RoleCode.SYSTEM
                and r.get("name") != target
                and not is_permission_role(r.get("name", ""))
            ]
            await self.idp.remove_user_realm_roles(identity.external_id, stale)
            if not any(r.get("name") == target for r in current):
                await self.idp.add_user_realm_roles(identity.external_id, [role])
        except AuthError as e:
            logger.warning("role_sync_failed", identity_id=identity.id, error=str(e))
            return False

        logger.info("role_synced", identity_id=identity.id, role=target)
        return True

    async def sync_roles_and_permissions(self) -> dict[str, int]:
        """
        Publish every local role and permission as a plain realm role.

        Returns:
            Counts of roles and permissions published
        """
        if not self.idp.is_configured:
            return {"roles": 0, "permissions": 0}

        roles = (await self.db.execute(select(Roles))).scalars().all()
        permissions = (await self.db.execute(select(Permissions))).scalars().all()

        for role in roles:
            if await self.idp.get_realm_role(role.code) is None:
                await self.idp.create_realm_role(role.code, role.description)
        for permission in permissions:
            name = permission_role_name(permission.code)
            if await self.idp.get_realm_role(name) is None:
                await self.idp.create_realm_role(name, permission.description)

        logger.info("realm_roles_synced", roles=len(roles), permissions=len(permissions))
        return {"roles": len(roles), "permissions": len(permissions)}

    async def sync_all_identities(self, batch_size: int | None = None) -> dict[str, int]:
        """Push every identity (profile and role) in batches."""
        size = batch_size or settings.IDP_SYNC_BATCH_SIZE
        synced = failed = 0
        last_id = 0
        while True:
            result = await self.db.execute(
                select(Users)
                .where(Users.id > last_id)  # type: ignore[arg-type,operator]
                .order_by(Users.id)  # type: ignore[arg-type]
                .limit(size)
            )
            batch = list(result.scalars().all())
            if not batch:
                break
            for identity in batch:
                if await self.push_profile(identity) and await self.sync_role(identity):
                    synced += 1
                else:
                    failed += 1
            last_id = batch[-1].id or last_id

        logger.info("identities_synced", synced=synced, failed=failed)
        return {"synced": synced, "failed": failed}
