"""
Domain exceptions raised by services.

Each error carries the HTTP status and a short machine-readable code so the
API layer can translate it with a single exception handler.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class TaquillaError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(TaquillaError):
    status_code = 400
    code = "validation_error"


class InvalidSignatureError(ValidationError):
    code = "invalid_signature"


class AuthorizationError(TaquillaError):
    status_code = 403
    code = "forbidden"


class NotFoundError(TaquillaError):
    status_code = 404
    code = "not_found"


class ConflictError(TaquillaError):
    status_code = 409
    code = "conflict"


class ConcurrencyError(ConflictError):
    """A compare-and-swap update lost against a concurrent writer."""

    code = "concurrent_modification"


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Invalid state transition from {from_status} to {to_status}",
            details={"from": from_status, "to": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


__all__ = [
    "TaquillaError",
    "ValidationError",
    "InvalidSignatureError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "ConcurrencyError",
    "InvalidTransitionError",
]
