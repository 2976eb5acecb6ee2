"""
SQLModel-based User (identity) models with inheritance for security

This module defines the Users database model using SQLModel, which combines
SQLAlchemy and Pydantic functionality. The inheritance structure is:

UserBase (shared public fields)
    ├─> Users (database table, adds internal/sensitive fields)
    └─> UserResponse/UserProfileUpdate (API schemas, defined in app/schemas)

Field ownership:
- Provider-owned (overwritten by delegated login): email, username, first_name,
  last_name, display_name, email_verified_at
- Platform-owned (never overwritten by sync): password_hash, bio, avatar_url,
  phone, locale, timezone, role_id, status and the remaining profile fields
"""

from datetime import date, datetime

from sqlalchemy import ForeignKeyConstraint, Index
from sqlmodel import Field, SQLModel

from app.config import UserStatus
from app.core.database import utcnow


class UserBase(SQLModel):
    """
    Base model with shared public fields for Users.

    These fields are safe to expose via the API.
    """

    username: str = Field(max_length=100)
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    display_name: str | None = Field(default=None, max_length=200)

    # Public profile (platform-owned)
    bio: str | None = Field(default=None, max_length=1000)
    avatar_url: str | None = Field(default=None, max_length=500)
    locale: str | None = Field(default=None, max_length=10)
    timezone: str | None = Field(default=None, max_length=50)


class Users(UserBase, table=True):
    """
    Database table for identities with internal and sensitive fields.

    Internal/sensitive fields (should NOT be exposed via public API):
    - password_hash: Authentication (highly sensitive)
    - external_id: Delegated provider reference
    - email, phone, address, date_of_birth: Privacy-sensitive
    - role_id, status: Access control
    """

    __tablename__ = "users"

    __table_args__ = (
        ForeignKeyConstraint(
            ["role_id"],
            ["roles.id"],
            ondelete="SET NULL",
            name="fk_users_role_id",
        ),
        Index("idx_users_email", "email", unique=True),
        Index("idx_users_username", "username", unique=True),
        Index("idx_users_external_id", "external_id", unique=True),
    )

    # Primary key
    id: int | None = Field(default=None, primary_key=True)

    # Delegated provider reference
    external_id: str | None = Field(default=None, max_length=255)

    # Authentication (highly sensitive - never expose)
    password_hash: str | None = Field(default=None, max_length=255)

    # Contact info (privacy-sensitive)
    email: str = Field(max_length=255)
    email_verified_at: datetime | None = Field(default=None)
    phone: str | None = Field(default=None, max_length=30)
    phone_verified: bool = Field(default=False)
    address: str | None = Field(default=None, max_length=500)
    date_of_birth: date | None = Field(default=None)
    gender: str | None = Field(default=None, max_length=20)

    # Access control
    role_id: int | None = Field(default=None)
    status: int = Field(default=UserStatus.ACTIVE)

    # Timestamps
    last_login_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        if parts:
            return " ".join(parts)
        return self.display_name or self.username
