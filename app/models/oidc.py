"""
SQLModel tables backing the embedded authorization server.

- OidcClients: registered OAuth clients
- OidcGrants: every grant kind (authorization code, access token, refresh
  token, device code) in one table, discriminated by `kind`; the typed view
  lives in app/services/oidc_grants.py
- OidcSessions: interactive authorization sessions waiting for a login
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from app.core.database import utcnow


class OidcClients(SQLModel, table=True):
    """Registered OAuth client."""

    __tablename__ = "oidc_clients"

    __table_args__ = (Index("idx_oidc_clients_client_id", "client_id", unique=True),)

    id: int | None = Field(default=None, primary_key=True)
    client_id: str = Field(max_length=255)
    # SHA-256 of the secret; NULL for public clients (PKCE required)
    client_secret_hash: str | None = Field(default=None, max_length=64)
    client_name: str | None = Field(default=None, max_length=255)

    redirect_uris: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    post_logout_redirect_uris: list[str] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    grant_types: list[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"],
        sa_column=Column(JSON, nullable=False),
    )
    response_types: list[str] = Field(
        default_factory=lambda: ["code"], sa_column=Column(JSON, nullable=False)
    )
    scope: str = Field(default="openid profile email", max_length=500)
    token_endpoint_auth_method: str = Field(default="client_secret_basic", max_length=50)
    application_type: str = Field(default="web", max_length=20)
    client_uri: str | None = Field(default=None, max_length=500)
    logo_uri: str | None = Field(default=None, max_length=500)

    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_public(self) -> bool:
        return self.client_secret_hash is None


class OidcGrants(SQLModel, table=True):
    """Persisted protocol artifact of any grant kind."""

    __tablename__ = "oidc_grants"

    __table_args__ = (
        Index("idx_oidc_grants_kind", "kind"),
        Index("idx_oidc_grants_grant_id", "grant_id"),
        Index("idx_oidc_grants_user_code", "user_code"),
        Index("idx_oidc_grants_expires_at", "expires_at"),
    )

    # Artifact value (code, jti, refresh token, device code)
    id: str = Field(primary_key=True, max_length=255)
    kind: str = Field(max_length=50)
    # Shared by all artifacts issued from one authorization
    grant_id: str | None = Field(default=None, max_length=255)
    user_code: str | None = Field(default=None, max_length=20)
    client_id: str | None = Field(default=None, max_length=255)
    account_id: str | None = Field(default=None, max_length=255)

    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    issued_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = Field(default=None)
    consumed: bool = Field(default=False)
    consumed_at: datetime | None = Field(default=None)


class OidcSessions(SQLModel, table=True):
    """Interactive authorization request parked until the user logs in and consents."""

    __tablename__ = "oidc_sessions"

    __table_args__ = (Index("idx_oidc_sessions_expires_at", "expires_at"),)

    id: str = Field(primary_key=True, max_length=255)
    # Set when the request arrived with a session and only needs consent
    account_id: str | None = Field(default=None, max_length=255)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
