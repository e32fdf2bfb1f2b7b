from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (422)
    - bad_request (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)

    ``message`` is the user-facing text and is safe to return verbatim.
    ``detail`` is for logs only.
    """

    status_code: int = 400
    error_code: str = "bad_request"

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

    @property
    def retryable(self) -> bool:
        return bool(self.detail.get("retryable"))


class ValidationError(ServiceError):
    """Malformed email or a weak or mismatched password."""
    status_code = 422
    error_code = "validation_error"


class BadRequestError(ServiceError):
    """Verification token missing, expired, already used or of the wrong type."""
    status_code = 400
    error_code = "bad_request"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """The email address already belongs to an account."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """A dependent system failed; the cause is logged, never returned."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
