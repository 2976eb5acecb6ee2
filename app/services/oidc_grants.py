"""
Typed grant artifacts for the authorization server.

Every artifact is stored in the single oidc_grants table: common fields as
columns, kind-specific fields in the JSON payload. Above the storage boundary
they are a pydantic discriminated union on `kind`.

Device user codes are not a separate artifact: they are a secondary key on the
DeviceCode grant (see GrantStore.find_by_user_code).

Consent grants record which scopes an account approved for a client, so the
authorization endpoint only asks again for scopes not yet approved.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter


class GrantKind(str, Enum):
    AUTHORIZATION_CODE = "AuthorizationCode"
    ACCESS_TOKEN = "AccessToken"
    REFRESH_TOKEN = "RefreshToken"
    DEVICE_CODE = "DeviceCode"
    CONSENT = "Consent"


class DeviceCodeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


# Stored in columns; everything else goes to the payload
COLUMN_FIELDS = frozenset(
    {
        "id",
        "kind",
        "grant_id",
        "user_code",
        "client_id",
        "account_id",
        "issued_at",
        "expires_at",
        "consumed",
        "consumed_at",
    }
)


class GrantBase(BaseModel):
    id: str
    grant_id: str | None = None
    client_id: str | None = None
    account_id: str | None = None
    scope: str = ""
    issued_at: datetime | None = None
    expires_at: datetime | None = None
    consumed: bool = False
    consumed_at: datetime | None = None

    @property
    def scopes(self) -> set[str]:
        return set(self.scope.split())

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude=set(COLUMN_FIELDS))


class AuthorizationCodeGrant(GrantBase):
    kind: Literal["AuthorizationCode"] = "AuthorizationCode"
    redirect_uri: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    nonce: str | None = None
    auth_time: int | None = None


class AccessTokenGrant(GrantBase):
    kind: Literal["AccessToken"] = "AccessToken"
    token_type: str = "Bearer"
    # grant_type the token was issued by, for introspection and auditing
    issued_by: str = "authorization_code"


class RefreshTokenGrant(GrantBase):
    kind: Literal["RefreshToken"] = "RefreshToken"
    nonce: str | None = None
    auth_time: int | None = None
    rotated_from: str | None = None


class DeviceCodeGrant(GrantBase):
    kind: Literal["DeviceCode"] = "DeviceCode"
    user_code: str
    status: DeviceCodeStatus = DeviceCodeStatus.PENDING
    auth_time: int | None = None


class ConsentGrant(GrantBase):
    """Scopes an account has approved for a client; one row per (account, client)."""

    kind: Literal["Consent"] = "Consent"


Grant = Annotated[
    AuthorizationCodeGrant | AccessTokenGrant | RefreshTokenGrant | DeviceCodeGrant | ConsentGrant,
    Field(discriminator="kind"),
]

grant_adapter: TypeAdapter[Grant] = TypeAdapter(Grant)
