from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    JSON endpoints render them through the error envelope; the browser-facing
    OAuth endpoints turn ``error_code`` into an ``?error=`` redirect parameter.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token signature, algorithm, kind, or expiry check failed (401)."""


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class OwnershipViolation(ForbiddenError):
    """Caller does not own the resource they tried to mutate (403)."""


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Required provider or signing configuration is missing."""
    error_code = "auth_config_missing"


class OAuthFlowError(ServiceError):
    """Base for failures during the login redirect dance.

    ``error_code`` is what the frontend error page receives; it never carries
    provider response bodies.
    """

    status_code = 400
    error_code = "authentication_failed"


class InvalidStateError(OAuthFlowError):
    """Missing, expired, replayed or mismatched OAuth state."""
    error_code = "invalid_state"


class ProviderError(OAuthFlowError):
    """The provider redirected back with an OAuth error."""

    error_code = "provider_error"

    def __init__(self, provider_error: str, description: Optional[str] = None) -> None:
        super().__init__(
            description or provider_error,
            detail={"provider_error": provider_error, "description": description},
        )
        self.provider_error = provider_error
        self.description = description


class TokenExchangeError(OAuthFlowError):
    """Exchanging the authorization code failed."""
    status_code = 502


class ProfileFetchError(OAuthFlowError):
    """Fetching the customer profile failed or returned an unusable payload."""
    status_code = 502


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "ForbiddenError",
    "OwnershipViolation",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ConfigurationError",
    "OAuthFlowError",
    "InvalidStateError",
    "ProviderError",
    "TokenExchangeError",
    "ProfileFetchError",
]
