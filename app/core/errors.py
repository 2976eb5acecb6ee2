"""
Authentication error taxonomy.

These are HTTPException subclasses so FastAPI renders them directly. Service
code raises them; routes let them propagate.

- AuthenticationRequired: no usable credential was presented
- InvalidCredential: credential failed verification (signature, format, password)
- ExpiredCredential: credential verified but is past its expiry (recoverable via refresh)
- UnresolvableIdentity: credential is valid but names no usable local identity
- ExternalProviderUnavailable: the delegated provider could not be reached
"""

from typing import Any

from fastapi import HTTPException, status


class AuthError(HTTPException):
    """Base class for authentication failures."""

    code = "authentication_failed"
    default_detail = "Authentication failed"
    default_status = status.HTTP_401_UNAUTHORIZED

    def __init__(self, detail: str | None = None, headers: dict[str, str] | None = None) -> None:
        if headers is None and self.default_status == status.HTTP_401_UNAUTHORIZED:
            headers = {"WWW-Authenticate": "Bearer"}
        super().__init__(
            status_code=self.default_status,
            detail=detail or self.default_detail,
            headers=headers,
        )


class AuthenticationRequired(AuthError):
    code = "authentication_required"
    default_detail = "Not authenticated"


class InvalidCredential(AuthError):
    code = "invalid_credential"
    default_detail = "Could not validate credentials"


class ExpiredCredential(AuthError):
    code = "expired_credential"
    default_detail = "Credential has expired"


class UnresolvableIdentity(AuthError):
    code = "unresolvable_identity"
    default_detail = "Credential does not resolve to an active account"


class ExternalProviderUnavailable(AuthError):
    code = "external_provider_unavailable"
    default_detail = "Identity provider temporarily unavailable"
    default_status = status.HTTP_503_SERVICE_UNAVAILABLE


class OAuthError(Exception):
    """
    OAuth2 protocol error rendered as an RFC 6749 error body.

    Args:
        error: Registered error code (invalid_request, invalid_grant, ...)
        description: Human readable error_description
        status_code: HTTP status for the JSON response
        redirect_uri: If set, the authorization endpoint redirects the error here
        state: Echoed back when redirecting
    """

    def __init__(
        self,
        error: str,
        description: str | None = None,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        redirect_uri: str | None = None,
        state: str | None = None,
    ) -> None:
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.status_code = status_code
        self.redirect_uri = redirect_uri
        self.state = state

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body
