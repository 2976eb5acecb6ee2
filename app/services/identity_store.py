"""Identity store: find/create/update identities by id, email or external reference."""

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import RoleCode, UserStatus
from app.core.database import utcnow
from app.core.permissions import get_role_by_code
from app.models.user import Users


async def get_identity(db: AsyncSession, identity_id: int) -> Users | None:
    result = await db.execute(select(Users).where(Users.id == identity_id))  # type: ignore[arg-type]
    return result.scalar_one_or_none()


async def get_identity_by_email(db: AsyncSession, email: str) -> Users | None:
    result = await db.execute(
        select(Users).where(func.lower(Users.email) == email.lower())  # type: ignore[arg-type]
    )
    return result.scalar_one_or_none()


async def get_identity_by_external_id(db: AsyncSession, external_id: str) -> Users | None:
    result = await db.execute(
        select(Users).where(Users.external_id == external_id)  # type: ignore[arg-type]
    )
    return result.scalar_one_or_none()


async def get_identity_by_login(db: AsyncSession, login: str) -> Users | None:
    """Look an identity up by username or email (case-insensitive for email)."""
    result = await db.execute(
        select(Users).where(
            or_(
                Users.username == login,  # type: ignore[arg-type]
                func.lower(Users.email) == login.lower(),  # type: ignore[arg-type]
            )
        )
    )
    return result.scalars().first()


async def find_identity(
    db: AsyncSession, external_id: str | None = None, email: str | None = None
) -> Users | None:
    """Locate an identity by external reference first, then by email."""
    if external_id:
        identity = await get_identity_by_external_id(db, external_id)
        if identity is not None:
            return identity
    if email:
        return await get_identity_by_email(db, email)
    return None


async def unique_username(db: AsyncSession, base: str) -> str:
    """Return `base`, or `base` with a numeric suffix if it is already taken."""
    candidate = base
    suffix = 1
    while True:
        result = await db.execute(
            select(Users.id).where(Users.username == candidate)  # type: ignore[call-overload]
        )
        if result.first() is None:
            return candidate
        suffix += 1
        candidate = f"{base}{suffix}"


async def create_identity(
    db: AsyncSession,
    email: str,
    username: str,
    password_hash: str | None = None,
    role_code: str = RoleCode.DEFAULT,
    **fields: object,
) -> Users:
    """Create an identity with the given role, active unless `status` is passed. Caller commits."""
    role = await get_role_by_code(db, role_code)
    fields.setdefault("status", UserStatus.ACTIVE)
    identity = Users(
        email=email,
        username=await unique_username(db, username),
        password_hash=password_hash,
        role_id=role.id if role else None,
        **fields,
    )
    db.add(identity)
    await db.flush()
    return identity


def touch(identity: Users) -> None:
    identity.updated_at = utcnow()
