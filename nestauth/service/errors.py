from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer errors mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
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
    """Malformed or policy-violating input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credential or bad/expired/wrong-type token (401).

    The message stays generic so callers cannot tell the root causes apart.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(AuthenticationError):
    """Lockout window in effect.

    Rendered exactly like AuthenticationError; ``locked_until`` is for
    server-side logs only.
    """

    def __init__(
        self, locked_until: Optional[datetime] = None, message: str = "invalid credentials"
    ) -> None:
        super().__init__(message)
        self.locked_until = locked_until


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Unknown session, token or resource (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate resource, e.g. an email already registered (409)."""
    status_code = 409
    error_code = "conflict"


class InternalError(ServiceError):
    """Unexpected store or crypto failure (500)."""
    status_code = 500
    error_code = "server_error"

    def __init__(self, message: str = "internal server error", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "InternalError",
]
