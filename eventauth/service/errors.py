from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    ``message`` is always safe to show to end users; library detail goes to
    the log, never into ``message``.
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
        errors: Optional[list] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.errors = errors or []


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class PolicyViolationError(ValidationError):
    """Password does not satisfy the active policy (400, structured errors)."""
    error_code = "policy_violation"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token is malformed, forged, wrong-purpose or no longer recognised."""
    error_code = "invalid_token"


class ExpiredTokenError(AuthenticationError):
    """Token signature is fine but its lifetime has passed."""
    error_code = "token_expired"


class AccountLockedError(ServiceError):
    status_code = 423
    error_code = "account_locked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class TokenIssuanceError(ServerError):
    """A token could not be produced; the cause is logged, not exposed."""
    error_code = "token_issuance_failed"


class SigningError(TokenIssuanceError):
    """Signing key missing or unusable."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "PolicyViolationError",
    "AuthenticationError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
    "TokenIssuanceError",
    "SigningError",
]
