from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can switch on:
    - validation_error (400)
    - invalid_token (400)
    - invalid_code (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - policy_violation (422)
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


class InvalidCredentialsError(AuthenticationError):
    """Login failed. Deliberately does not say which part was wrong."""

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(ServiceError):
    """Set-password token was tampered with, expired, or of the wrong type (400)."""
    status_code = 400
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorError(ServiceError):
    """One-time code verification failed (400)."""
    status_code = 400
    error_code = "invalid_code"

    def __init__(self, message: str, *, reason: str, **kwargs) -> None:
        super().__init__(message, detail={"reason": reason}, **kwargs)
        self.reason = reason


class WeakPasswordError(ServiceError):
    """Password does not satisfy the password policy (422)."""
    status_code = 422
    error_code = "policy_violation"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AdminAlreadyExistsError(ForbiddenError):
    def __init__(self, message: str = "Admin already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    def __init__(self, message: str = "Email already in use", **kwargs) -> None:
        super().__init__(message, detail={"field": "email"}, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class MailDeliveryError(ServerError):
    """The mailer could not hand the message to the SMTP server."""

    def __init__(self, message: str = "Email delivery failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TwoFactorError",
    "WeakPasswordError",
    "ForbiddenError",
    "AdminAlreadyExistsError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "ServerError",
    "MailDeliveryError",
]
