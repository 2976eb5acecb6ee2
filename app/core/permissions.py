"""
Role and permission lookup by identity.

Each identity holds exactly one role (users.role_id). Permissions come from
that role through role_permissions. Role codes and permission codes are
disjoint namespaces; `permission_role_name` is the only place that maps a
permission into the delegated realm's role namespace.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import PERMISSION_ROLE_PREFIX, RoleCode
from app.core.logging import get_logger
from app.models.role import Permissions, RolePermissions, Roles
from app.models.user import Users

logger = get_logger(__name__)

SYSTEM_ROLES: dict[str, tuple[str, str]] = {
    RoleCode.ADMIN: ("Administrator", "Full platform access"),
    RoleCode.INSTRUCTOR: ("Instructor", "Creates and manages course content"),
    RoleCode.STUDENT: ("Student", "Default role for new accounts"),
    RoleCode.GUEST: ("Guest", "Read-only access"),
}


def permission_role_name(code: str) -> str:
    """Realm role name used for a permission code at the delegated provider."""
    return f"{PERMISSION_ROLE_PREFIX}{code}"


def is_permission_role(name: str) -> bool:
    return name.startswith(PERMISSION_ROLE_PREFIX)


async def get_identity_role_codes(db: AsyncSession, identity_id: int) -> list[str]:
    """
    Return the role codes held by an identity.

    Always zero or one element; a list keeps the claim shape uniform with
    delegated tokens, which may carry several.
    """
    result = await db.execute(
        select(Roles.code)  # type: ignore[call-overload]
        .join(Users, Users.role_id == Roles.id)
        .where(Users.id == identity_id)
    )
    return [row[0] for row in result.all()]


async def get_identity_permission_codes(db: AsyncSession, identity_id: int) -> list[str]:
    """Return the permission codes granted to an identity through its role."""
    result = await db.execute(
        select(Permissions.code)  # type: ignore[call-overload]
        .select_from(Users)
        .join(RolePermissions, RolePermissions.role_id == Users.role_id)
        .join(Permissions, Permissions.id == RolePermissions.permission_id)
        .where(Users.id == identity_id)
        .order_by(Permissions.code)
    )
    return [row[0] for row in result.all()]


async def get_role_by_code(db: AsyncSession, code: str) -> Roles | None:
    result = await db.execute(select(Roles).where(Roles.code == code))  # type: ignore[arg-type]
    return result.scalar_one_or_none()


async def seed_roles(db: AsyncSession) -> None:
    """
    Ensure the system roles exist.

    Idempotent - safe to run on every startup.
    """
    result = await db.execute(select(Roles.code))  # type: ignore[call-overload]
    existing = {row[0] for row in result.all()}

    added = 0
    for code, (name, description) in SYSTEM_ROLES.items():
        if code not in existing:
            db.add(Roles(code=code, name=name, description=description, is_system=True))
            added += 1
            logger.info("role_seeded", role=code)

    await db.commit()
    logger.info("roles_synced", total=len(SYSTEM_ROLES), added=added)
