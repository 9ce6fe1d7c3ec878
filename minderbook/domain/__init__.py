"""
Domain layer - Pure scheduling logic without external dependencies.
"""

from .conflict_resolver import ConflictResolver
from .models import (
    Admission,
    AvailabilityBlock,
    AvailabilityKind,
    Booking,
    BookingResult,
    BookingStatus,
    RecurrenceRule,
    SchedulingPolicy,
    TimeRange,
)
from .recurrence import RecurrenceExpander
from .state_machine import BookingStateMachine

__all__ = [
    "Admission",
    "AvailabilityBlock",
    "AvailabilityKind",
    "Booking",
    "BookingResult",
    "BookingStateMachine",
    "BookingStatus",
    "ConflictResolver",
    "RecurrenceExpander",
    "RecurrenceRule",
    "SchedulingPolicy",
    "TimeRange",
]
