from __future__ import annotations

from datetime import datetime
from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``.
    ``reason`` is the machine-readable value written to audit metadata; it
    defaults to ``error_code`` but may be narrower than what the client sees
    (for example ``account_not_found`` behind ``invalid_credentials``).
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
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.reason = reason or self.error_code


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class PolicyViolationError(ValidationError):
    """Password does not satisfy the strength rules; lists every failed rule."""

    error_code = "policy_violation"

    def __init__(self, violations: List[str], message: str = "Password does not meet requirements") -> None:
        super().__init__(message, detail={"violations": list(violations)})
        self.violations = list(violations)


class PasswordReuseError(ValidationError):
    """New password matches one of the recent passwords (400)."""
    error_code = "password_reuse"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Wrong email or password; the message never says which."""

    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", *, reason: Optional[str] = None) -> None:
        super().__init__(message, reason=reason)


class TokenExpiredError(AuthenticationError):
    """Token signature is valid but the token is past its expiry."""
    error_code = "token_expired"


class TokenInvalidError(AuthenticationError):
    """Token is malformed, forged, revoked or superseded."""
    error_code = "token_invalid"


class OtpNoChallengeError(AuthenticationError):
    """No one-time code is outstanding for the account."""
    error_code = "otp_no_challenge"


class OtpExpiredError(AuthenticationError):
    """The outstanding one-time code has expired."""
    error_code = "otp_expired"


class OtpMismatchError(AuthenticationError):
    """The submitted one-time code does not match."""
    error_code = "otp_mismatch"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountLockedError(ForbiddenError):
    """Too many failed attempts; carries the time the lock lifts."""

    error_code = "locked"

    def __init__(self, lock_until: datetime, message: str = "Account temporarily locked") -> None:
        super().__init__(message, detail={"lockUntil": lock_until.isoformat()})
        self.lock_until = lock_until


class PasswordExpiredError(ForbiddenError):
    """Password is past its maximum age and must be changed (403)."""
    error_code = "password_expired"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "PolicyViolationError",
    "PasswordReuseError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "TokenInvalidError",
    "OtpNoChallengeError",
    "OtpExpiredError",
    "OtpMismatchError",
    "ForbiddenError",
    "AccountLockedError",
    "PasswordExpiredError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
