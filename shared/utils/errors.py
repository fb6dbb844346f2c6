"""
shared/utils/errors.py
Domain errors for booking operations.

Services raise these; main.py renders them into the
{success: false, error: {code, message}} envelope with the matching status code.
"""

from typing import Optional


class BookingError(Exception):
    code: str = "BOOKING_ERROR"
    status_code: int = 400
    default_message: str = "Booking operation failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class PermissionDenied(BookingError):
    """Actor lacks the role or ownership for the requested mutation."""
    code = "PERMISSION_DENIED"
    status_code = 403
    default_message = "You do not have permission to perform this action"


class AlreadyAssigned(BookingError):
    """Another provider claimed the booking first."""
    code = "ALREADY_ASSIGNED"
    status_code = 409
    default_message = "This booking is already assigned to another provider"


class NotFound(BookingError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Booking not found"


class ValidationFailed(BookingError):
    """Malformed or illegal transition arguments."""
    code = "VALIDATION_FAILED"
    status_code = 422
    default_message = "Invalid booking operation"


class UpstreamUnavailable(BookingError):
    """The store or identity provider failed at the transport level."""
    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503
    default_message = "Service temporarily unavailable. Please try again later."


class EnrichmentFailed(BookingError):
    """Summarization failed. Recorded as a flag, never fails the parent operation."""
    code = "ENRICHMENT_FAILED"
    status_code = 502
    default_message = "Summary generation failed"
