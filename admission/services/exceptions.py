"""Domain-specific exceptions.

Every error carries the HTTP-equivalent status and a stable machine code so
the API layer can render it without knowing which service raised it.
"""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class Unauthenticated(ServiceError):
    status_code = 401
    code = "unauthenticated"


class Unauthorized(ServiceError):
    status_code = 403
    code = "forbidden"


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"


class ValidationError(ServiceError):
    status_code = 400
    code = "validation_error"


class InvalidStateTransition(ServiceError):
    status_code = 409
    code = "invalid_state_transition"


class QuotaExceeded(ServiceError):
    """Structured business denial: reason, usage, quota, credits and upgrade hint."""

    status_code = 402
    code = "quota_exceeded"


class QuotaServiceUnavailable(ServiceError):
    """The metering dependency failed; admission fails closed."""

    status_code = 503
    code = "quota_service_unavailable"


class Internal(ServiceError):
    status_code = 500
    code = "internal_error"


__all__ = [
    "Internal",
    "InvalidStateTransition",
    "NotFound",
    "QuotaExceeded",
    "QuotaServiceUnavailable",
    "ServiceError",
    "Unauthenticated",
    "Unauthorized",
    "ValidationError",
]
