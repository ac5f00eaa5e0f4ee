"""Error taxonomy shared by the services and the HTTP layer.

Every error carries the HTTP status it maps to; the exception handlers in
``main`` turn them into ``{"error": message}`` bodies.
"""

from typing import Optional


class LedgerError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(LedgerError):
    status_code = 400
    default_message = "Validation failed"


class InvalidRangeError(ValidationError):
    default_message = "Invalid date range"


class InvalidReference(ValidationError):
    default_message = "Invalid category ID"


class Unauthorized(LedgerError):
    status_code = 401
    default_message = "Authentication required"


class Forbidden(LedgerError):
    status_code = 403
    default_message = "Insufficient permissions"


class NotFound(LedgerError):
    status_code = 404
    default_message = "Not found"


class Conflict(LedgerError):
    status_code = 409
    default_message = "Conflict"


class RateLimited(LedgerError):
    status_code = 429
    default_message = "Too many requests, please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        retry_after: int = 0,
        retry_hint: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.retry_hint = retry_hint


class Unavailable(LedgerError):
    status_code = 503
    default_message = "Service temporarily unavailable, please retry"


class Internal(LedgerError):
    status_code = 500
