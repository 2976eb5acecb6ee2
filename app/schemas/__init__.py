"""
Pydantic schemas for API responses and requests
"""
from app.models.user import UserBase  # Re-export from models
from app.schemas.auth import (
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    RefreshResponse,
    SessionListResponse,
    SessionResponse,
)
from app.schemas.common import CountResponse, MessageResponse
from app.schemas.oidc import (
    ClientListResponse,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    ClientResponse,
    ClientUpdateRequest,
)
from app.schemas.user import IdentityResponse, ProfileUpdate, ProfileUpdateResponse

__all__ = [
    # Identity schemas
    "UserBase",
    "IdentityResponse",
    "ProfileUpdate",
    "ProfileUpdateResponse",
    # Auth schemas
    "LoginRequest",
    "LoginResponse",
    "PasswordChangeRequest",
    "RefreshResponse",
    "SessionResponse",
    "SessionListResponse",
    # OIDC client schemas
    "ClientRegistrationRequest",
    "ClientRegistrationResponse",
    "ClientResponse",
    "ClientListResponse",
    "ClientUpdateRequest",
    # Common
    "MessageResponse",
    "CountResponse",
]
