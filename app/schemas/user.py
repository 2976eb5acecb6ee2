"""
Pydantic schemas for identity endpoints
"""

from datetime import date

from pydantic import BaseModel, EmailStr, field_validator

from app.models.user import UserBase, Users
from app.schemas.common import UTCDatetime, UTCDatetimeOptional


class IdentityResponse(UserBase):
    """Identity as returned to its owner."""

    id: int
    email: str
    email_verified: bool = False
    phone: str | None = None
    status: int
    roles: list[str] = []
    permissions: list[str] = []
    last_login_at: UTCDatetimeOptional = None
    created_at: UTCDatetime

    @classmethod
    def from_identity(
        cls, identity: Users, roles: list[str], permissions: list[str], **extra: object
    ) -> "IdentityResponse":
        return cls.model_validate(
            {
                **identity.model_dump(exclude={"password_hash"}),
                "email_verified": identity.email_verified_at is not None,
                "roles": roles,
                "permissions": permissions,
                **extra,
            }
        )


class ProfileUpdate(BaseModel):
    """Schema for updating the caller's profile - all fields optional

    Provider-owned fields (email, username, names) are included: the change
    is pushed to the delegated provider afterwards.
    """

    username: str | None = None
    email: EmailStr | None = None
    first_name: str | None = None
    last_name: str | None = None
    display_name: str | None = None
    bio: str | None = None
    avatar_url: str | None = None
    phone: str | None = None
    locale: str | None = None
    timezone: str | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    address: str | None = None

    @field_validator("username", "first_name", "last_name", "display_name", "bio", "address")
    @classmethod
    def sanitize_text_fields(cls, v: str | None) -> str | None:
        """Just trims whitespace."""
        if v is None:
            return v
        return v.strip()

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str | None) -> str | None:
        if v is not None and not 3 <= len(v) <= 100:
            raise ValueError("Username must be between 3 and 100 characters")
        return v


class ProfileUpdateResponse(IdentityResponse):
    # queued, synced, failed or skipped
    provider_sync: str = "skipped"
