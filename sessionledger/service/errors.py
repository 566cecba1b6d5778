from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    rendered in the error envelope. ``public_message`` is what callers see;
    ``message`` may carry internal detail for logs.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    public_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.public_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    public_message = "not authenticated"


class AuthenticationFailedError(AuthenticationError):
    """Unknown subject or wrong password at login."""


class InvalidCredentialError(AuthenticationError):
    """Presented credential is malformed or its signature does not verify."""
    public_message = "authentication error"


class CredentialRejectedError(AuthenticationError):
    """Bearer credential failed the per-request gate."""


class SessionExpiredError(AuthenticationError):
    """No renewal session on record; the caller must log in again."""
    error_code = "session_expired"
    public_message = "session expired, please log in again"


class CredentialMismatchError(AuthenticationError):
    """Presented renewal credential is not the one on record."""


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"
    public_message = "already registered"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    public_message = "rate limit exceeded"


class StoreUnavailableError(ServiceError):
    """Session store unreachable; the operation did not happen (503)."""
    status_code = 503
    error_code = "service_unavailable"
    public_message = "authentication error"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "AuthenticationFailedError",
    "InvalidCredentialError",
    "CredentialRejectedError",
    "SessionExpiredError",
    "CredentialMismatchError",
    "ConflictError",
    "RateLimitedError",
    "StoreUnavailableError",
]
