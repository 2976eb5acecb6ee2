"""
SQLModel-based role and permission models.

- Roles: one role per identity (users.role_id)
- Permissions: individual permission codes
- RolePermissions: junction table linking roles to permissions

Role codes and permission codes are separate namespaces. When pushed to the
delegated provider, permissions become standalone realm roles with a
"permission:" prefix; roles are never made composite.
"""

from sqlalchemy import ForeignKeyConstraint, Index
from sqlmodel import Field, SQLModel


class Roles(SQLModel, table=True):
    """Database table for roles."""

    __tablename__ = "roles"

    __table_args__ = (Index("idx_roles_code", "code", unique=True),)

    id: int | None = Field(default=None, primary_key=True)
    code: str = Field(max_length=50)
    name: str = Field(max_length=100)
    description: str | None = Field(default=None, max_length=255)
    is_system: bool = Field(default=False)


class Permissions(SQLModel, table=True):
    """Database table for individual permissions."""

    __tablename__ = "permissions"

    __table_args__ = (Index("idx_permissions_code", "code", unique=True),)

    id: int | None = Field(default=None, primary_key=True)
    code: str = Field(max_length=100)
    description: str | None = Field(default=None, max_length=255)


class RolePermissions(SQLModel, table=True):
    """Junction table linking roles to permissions."""

    __tablename__ = "role_permissions"

    __table_args__ = (
        ForeignKeyConstraint(
            ["role_id"],
            ["roles.id"],
            ondelete="CASCADE",
            name="fk_role_permissions_role_id",
        ),
        ForeignKeyConstraint(
            ["permission_id"],
            ["permissions.id"],
            ondelete="CASCADE",
            name="fk_role_permissions_permission_id",
        ),
    )

    role_id: int = Field(primary_key=True)
    permission_id: int = Field(primary_key=True)
