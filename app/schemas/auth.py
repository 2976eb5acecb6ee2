"""
Authentication schemas for request/response validation.

This module defines Pydantic models for authentication-related API operations:
- Login credentials and the login response
- Session listing
- Password change
"""

from pydantic import BaseModel, Field, field_validator

from app.core.security import validate_password_strength
from app.schemas.common import UTCDatetime, UTCDatetimeOptional
from app.schemas.user import IdentityResponse


class LoginRequest(BaseModel):
    """Request schema for login. `username` accepts a username or an email."""

    username: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=255)  # Allow any length for existing users
    remember_me: bool = Field(default=False, alias="rememberMe")

    model_config = {"populate_by_name": True}


class LoginResponse(BaseModel):
    """Identity and session expiry. The session token itself is only in the cookie."""

    identity: IdentityResponse
    expires_at: UTCDatetime
    expires_in: int = Field(..., description="Session lifetime in seconds from now")
    method: str = Field(..., description="local or delegated")


class RefreshResponse(BaseModel):
    access_token_expires_at: UTCDatetimeOptional
    refresh_token_expires_at: UTCDatetimeOptional


class SessionResponse(BaseModel):
    """One of the caller's active sessions."""

    id: int
    device_name: str | None = None
    device_type: str | None = None
    browser: str | None = None
    os: str | None = None
    ip_address: str | None = None
    remember_me: bool
    created_at: UTCDatetime
    last_activity_at: UTCDatetime
    expires_at: UTCDatetime
    current: bool = False

    model_config = {"from_attributes": True}


class SessionListResponse(BaseModel):
    total: int
    sessions: list[SessionResponse]


class PasswordChangeRequest(BaseModel):
    """Request schema for password change."""

    current_password: str = Field(..., min_length=1, max_length=255)  # Allow any length for current
    new_password: str = Field(..., min_length=8, max_length=255)

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        """Validate new password strength."""
        is_valid, error_message = validate_password_strength(v)
        if not is_valid:
            raise ValueError(error_message)
        return v
