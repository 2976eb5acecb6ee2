"""
Schemas for the embedded authorization server.

- Dynamic client registration (RFC 7591) request/response
- Admin client management
- Device verification
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

GRANT_TYPE_DEVICE_CODE = "urn:ietf:params:oauth:grant-type:device_code"

SUPPORTED_GRANT_TYPES = (
    "authorization_code",
    "refresh_token",
    "client_credentials",
    GRANT_TYPE_DEVICE_CODE,
)

TokenEndpointAuthMethod = Literal["client_secret_basic", "client_secret_post", "none"]


def _check_grant_types(grant_types: list[str]) -> list[str]:
    unsupported = [g for g in grant_types if g not in SUPPORTED_GRANT_TYPES]
    if unsupported:
        raise ValueError(f"Unsupported grant types: {', '.join(unsupported)}")
    return grant_types


class ClientMetadata(BaseModel):
    """Client metadata shared by registration and admin updates."""

    client_name: str | None = Field(default=None, max_length=255)
    redirect_uris: list[str] = Field(default_factory=list)
    post_logout_redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] = Field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    scope: str = Field(default="openid profile email", max_length=500)
    application_type: Literal["web", "native"] = "web"
    client_uri: str | None = Field(default=None, max_length=500)
    logo_uri: str | None = Field(default=None, max_length=500)

    @field_validator("grant_types")
    @classmethod
    def validate_grant_types(cls, v: list[str]) -> list[str]:
        return _check_grant_types(v)

    @field_validator("response_types")
    @classmethod
    def validate_response_types(cls, v: list[str]) -> list[str]:
        if any(r != "code" for r in v):
            raise ValueError("Only the 'code' response type is supported")
        return v


class ClientRegistrationRequest(ClientMetadata):
    token_endpoint_auth_method: TokenEndpointAuthMethod = "client_secret_basic"


class ClientRegistrationResponse(ClientRegistrationRequest):
    client_id: str
    client_secret: str | None = None
    client_id_issued_at: int
    client_secret_expires_at: int = 0


class ClientUpdateRequest(BaseModel):
    """
    Admin update. Omitted fields are left unchanged.

    null clears client_name, client_uri or logo_uri; every other field is
    required on the client and rejects null.
    """

    client_name: str | None = None
    redirect_uris: list[str] | None = None
    post_logout_redirect_uris: list[str] | None = None
    grant_types: list[str] | None = None
    scope: str | None = None
    client_uri: str | None = None
    logo_uri: str | None = None
    is_active: bool | None = None

    @field_validator("redirect_uris", "post_logout_redirect_uris", "scope", "is_active")
    @classmethod
    def reject_null(cls, v: object) -> object:
        if v is None:
            raise ValueError("may be omitted but not set to null")
        return v

    @field_validator("grant_types")
    @classmethod
    def validate_grant_types(cls, v: list[str] | None) -> list[str]:
        if v is None:
            raise ValueError("may be omitted but not set to null")
        _check_grant_types(v)
        return v


class ClientResponse(BaseModel):
    """Client as shown to administrators; never includes the secret."""

    client_id: str
    client_name: str | None
    redirect_uris: list[str]
    post_logout_redirect_uris: list[str]
    grant_types: list[str]
    response_types: list[str]
    scope: str
    token_endpoint_auth_method: str
    application_type: str
    client_uri: str | None
    logo_uri: str | None
    is_active: bool
    is_public: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ClientListResponse(BaseModel):
    total: int
    clients: list[ClientResponse]


class DeviceVerifyRequest(BaseModel):
    user_code: str = Field(..., min_length=8, max_length=9)
    approve: bool = True


class DeviceVerifyResponse(BaseModel):
    client_id: str | None
    scope: str
    status: str


class InteractionCompleteRequest(BaseModel):
    approve: bool = True
