from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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


class InvalidSessionError(AuthenticationError):
    """Missing, expired, revoked or forged session (401).

    Always carries the same message so callers cannot tell the cases apart.
    """

    def __init__(self) -> None:
        super().__init__("invalid session")


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Reason codes carried to the login page as ?error=<reason>
LOGIN_FAILURE_REASONS = frozenset(
    {
        "invalid_callback",
        "invalid_state",
        "invalid_nonce",
        "no_id_token",
        "session_creation_failed",
        "authentication_failed",
        "access_denied",
    }
)


class TokenExchangeError(Exception):
    """The identity provider exchange or ID token validation failed."""

    def __init__(self, message: str, *, reason: str = "authentication_failed") -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason if reason in LOGIN_FAILURE_REASONS else "authentication_failed"


class LoginError(Exception):
    """A login attempt ended without a session; ``reason`` is safe to show users."""

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason)
        self.reason = reason if reason in LOGIN_FAILURE_REASONS else "authentication_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidSessionError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "LOGIN_FAILURE_REASONS",
    "TokenExchangeError",
    "LoginError",
]
