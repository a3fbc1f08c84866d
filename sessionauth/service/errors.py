from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class defines both an HTTP status_code and a stable
    error_code so a transport layer can map failures without inspecting
    messages:
    - unauthorized (401)
    - validation_error (400)
    - forbidden (403)
    - conflict (409)
    - service_unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

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


class InvalidCredentials(AuthenticationError):
    """Unknown email or wrong password; the two cases are never distinguished."""

    def __init__(self) -> None:
        super().__init__("invalid credentials")


class NoSession(AuthenticationError):
    """Token is unknown, expired or revoked."""

    def __init__(self) -> None:
        super().__init__("authentication required")


class ForbiddenError(ServiceError):
    """Operation disabled or not permitted (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class StoreUnavailable(ServiceError):
    """Session backend timed out or refused the connection (503).

    Transient; callers may retry with bounded backoff.
    """
    status_code = 503
    error_code = "service_unavailable"
    retryable = True


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class CorruptCredentialError(ServerError):
    """Stored password hash cannot be decoded; a data integrity problem."""
    pass


class CollisionExhausted(ServerError):
    """Token generation kept colliding; points at a broken entropy source."""
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "NoSession",
    "ForbiddenError",
    "ConflictError",
    "StoreUnavailable",
    "ServerError",
    "CorruptCredentialError",
    "CollisionExhausted",
]
