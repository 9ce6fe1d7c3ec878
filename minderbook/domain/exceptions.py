"""
Domain-specific exception hierarchy for the booking engine.

Every business rejection is a ``SchedulingError`` with a stable ``code`` and
a ``details`` mapping, so callers can explain *why* a request failed.
Infrastructure failures deliberately live outside that hierarchy.
"""

from typing import Any, Dict, Iterable, Optional


class SchedulingError(Exception):
    """Base class for all recoverable, user-facing scheduling errors."""

    code = "SCHEDULING_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidRange(SchedulingError, ValueError):
    code = "INVALID_RANGE"


class PastStart(SchedulingError):
    code = "PAST_START"


class BookingOverlap(SchedulingError):
    """Raised when a range collides with PENDING/CONFIRMED bookings."""

    code = "BOOKING_OVERLAP"

    def __init__(self, message: str, booking_ids: Iterable[str] = ()):
        self.booking_ids = tuple(booking_ids)
        super().__init__(message, {"booking_ids": list(self.booking_ids)})


class MarkedUnavailable(SchedulingError):
    code = "MARKED_UNAVAILABLE"

    def __init__(self, message: str, block_ids: Iterable[str] = ()):
        self.block_ids = tuple(block_ids)
        super().__init__(message, {"block_ids": list(self.block_ids)})


class OutsideDeclaredAvailability(SchedulingError):
    code = "OUTSIDE_DECLARED_AVAILABILITY"


class BlockInUse(SchedulingError):
    """Raised when retracting availability would orphan active bookings."""

    code = "BLOCK_IN_USE"

    def __init__(self, message: str, booking_ids: Iterable[str] = ()):
        self.booking_ids = tuple(booking_ids)
        super().__init__(message, {"booking_ids": list(self.booking_ids)})


class OverlappingAvailability(SchedulingError):
    code = "OVERLAPPING_AVAILABILITY"

    def __init__(self, message: str, block_ids: Iterable[str] = ()):
        self.block_ids = tuple(block_ids)
        super().__init__(message, {"block_ids": list(self.block_ids)})


class IllegalTransition(SchedulingError):
    code = "ILLEGAL_TRANSITION"


class NoLongerAvailable(SchedulingError):
    """Raised when a pending booking can no longer be confirmed."""

    code = "NO_LONGER_AVAILABLE"

    def __init__(self, message: str, cause: Optional[SchedulingError] = None):
        details = {"reason": cause.to_dict()} if cause is not None else {}
        super().__init__(message, details)
        self.cause = cause


class NotFound(SchedulingError):
    code = "NOT_FOUND"


class Unauthorized(SchedulingError):
    code = "UNAUTHORIZED"


class InvalidRequest(SchedulingError):
    code = "INVALID_REQUEST"


class InsufficientLeadTime(SchedulingError):
    code = "INSUFFICIENT_LEAD_TIME"


class EmergencyWindowExceeded(SchedulingError):
    code = "EMERGENCY_WINDOW_EXCEEDED"


class InfrastructureError(Exception):
    """Base class for failures unrelated to business rules."""


class PersistenceError(InfrastructureError):
    """Raised when the repository cannot load or store state."""


class CalendarSyncError(InfrastructureError):
    """Raised when the external calendar rejects or cannot be reached."""
