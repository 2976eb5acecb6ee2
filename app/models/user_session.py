"""
SQLModel-based UserSession models with inheritance for security

UserSessionBase (shared public fields)
    ├─> UserSessions (database table, adds internal fields)
    └─> SessionResponse (API schema, defined in app/schemas)

A session wraps an access/refresh token pair behind an opaque random token.
Only the SHA-256 hash of the opaque token is stored; the token itself is
handed to the client once, in the session cookie.

Lifecycle: created at login, refreshed while active, terminated by revoke or
expiry detection (is_active=False, revoked_at set). Terminated rows are never
reactivated.
"""

from datetime import datetime

from sqlalchemy import ForeignKeyConstraint, Index, Text
from sqlmodel import Field, SQLModel

from app.config import TokenSource
from app.core.database import utcnow


class UserSessionBase(SQLModel):
    """
    Base model with shared public fields for UserSessions.

    Device metadata is shown to the owner in the "active sessions" list.
    """

    device_name: str | None = Field(default=None, max_length=100)
    device_type: str | None = Field(default=None, max_length=20)
    browser: str | None = Field(default=None, max_length=50)
    os: str | None = Field(default=None, max_length=50)
    ip_address: str | None = Field(default=None, max_length=45)  # Supports IPv6

    remember_me: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime


class UserSessions(UserSessionBase, table=True):
    """
    Database table for user sessions with internal fields.

    Internal fields (should NOT be exposed via public API):
    - token_hash: Lookup key for the opaque session token
    - access_token, refresh_token: The wrapped token pair (highly sensitive)
    - idp_session_id: Delegated provider session reference
    - user_agent, device_fingerprint: Tracking
    """

    __tablename__ = "user_sessions"

    __table_args__ = (
        ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            ondelete="CASCADE",
            name="fk_user_sessions_user_id",
        ),
        Index("idx_user_sessions_token_hash", "token_hash", unique=True),
        Index("idx_user_sessions_user_active", "user_id", "is_active"),
        Index("idx_user_sessions_expires_at", "expires_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    token_hash: str = Field(max_length=64)
    user_id: int

    # Wrapped token pair
    access_token: str = Field(sa_type=Text)
    refresh_token: str | None = Field(default=None, sa_type=Text)
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime | None = Field(default=None)
    token_source: str = Field(default=TokenSource.LOCAL, max_length=20)
    idp_session_id: str | None = Field(default=None, max_length=255)

    # Tracking
    user_agent: str | None = Field(default=None, max_length=500)
    device_fingerprint: str | None = Field(default=None, max_length=64)

    # State
    is_active: bool = Field(default=True)
    updated_at: datetime = Field(default_factory=utcnow)
    revoked_at: datetime | None = Field(default=None)
