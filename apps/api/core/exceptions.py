"""
Custom exception classes and error handling.

Provides a consistent error taxonomy for the session engine. Callers
(HTTP layer, workers) map these onto their own responses:
ValidationError -> 400, NotFoundError -> 404, everything else -> 500.
"""
from typing import List, Optional


class SessionError(Exception):
    """Base session engine exception with a machine-readable code."""

    def __init__(self, detail: str, error_code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.error_code = error_code or "SESSION_ERROR"


class ValidationError(SessionError):
    """One or more validation failures, all reported together."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(
            detail="; ".join(self.errors) or "Validation failed",
            error_code="VALIDATION_ERROR"
        )


class NotFoundError(SessionError):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ConflictError(SessionError):
    """Mutually exclusive state conflict (e.g., a second active session)."""

    def __init__(self, detail: str):
        super().__init__(
            detail=detail,
            error_code="CONFLICT"
        )
