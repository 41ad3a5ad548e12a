"""
shared/errors.py
Domain error taxonomy. Core services raise these; main.py maps them to HTTP.
"""

from typing import Optional


class AppError(Exception):
    """Base class for errors that carry their own HTTP status."""
    status_code: int = 500
    default_message: str = "An internal server error occurred"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        self.message = message or self.default_message
        self.code = code
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid input"


class NotFound(AppError):
    status_code = 404
    default_message = "Resource not found"


class Forbidden(AppError):
    status_code = 403
    default_message = "You are not allowed to perform this action"


class Conflict(AppError):
    status_code = 409
    default_message = "Request conflicts with the current state"


class SlotUnavailable(Conflict):
    default_message = "Slot no longer available, please pick another"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, code="SLOT_UNAVAILABLE")


class ExternalProviderError(AppError):
    status_code = 502
    default_message = "Payment gateway error, please retry"

    def __init__(self, message: Optional[str] = None, provider: Optional[str] = None):
        self.provider = provider
        super().__init__(message, code="PROVIDER_ERROR")


class InternalError(AppError):
    status_code = 500
