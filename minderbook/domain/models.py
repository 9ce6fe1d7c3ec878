"""
Domain models for bookings, availability and admission decisions.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

import pendulum
from pendulum import Date, DateTime

from .exceptions import (
    BookingOverlap,
    InvalidRange,
    InvalidRequest,
    MarkedUnavailable,
    OutsideDeclaredAvailability,
    PastStart,
    SchedulingError,
)


@dataclass(frozen=True)
class TimeRange:
    """
    Represents an immutable, half-open time range ``[start, end)``.

    Invariant: start must be before end.
    """
    start: DateTime
    end: DateTime

    def __post_init__(self):
        if self.start >= self.end:
            raise InvalidRange(f"Start time {self.start} must be before end time {self.end}")

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)

    def overlaps(self, other: "TimeRange") -> bool:
        """Check if this range overlaps with another. Touching ranges do not."""
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeRange") -> bool:
        """Check if ``other`` lies entirely within this range."""
        return self.start <= other.start and other.end <= self.end

    def intersect(self, other: "TimeRange") -> "TimeRange | None":
        """
        Calculate the intersection of two time ranges.
        Returns None if there is no overlap.
        """
        if not self.overlaps(other):
            return None

        start = max(self.start, other.start)
        end = min(self.end, other.end)

        return TimeRange(start=start, end=end)

    def dates(self, timezone: str) -> List[Date]:
        """Return every calendar date (in ``timezone``) the range touches."""
        first = self.start.in_timezone(timezone).date()
        # The end is exclusive, so a range ending at midnight stops the day before.
        last = self.end.subtract(microseconds=1).in_timezone(timezone).date()

        days: List[Date] = []
        current = first
        while current <= last:
            days.append(current)
            current = current.add(days=1)
        return days

    def __str__(self) -> str:
        return f"{self.start.format('DD.MM.YYYY HH:mm')} - {self.end.format('HH:mm')}"


def day_range(day: Date, timezone: str) -> TimeRange:
    """Return the full-day range ``[00:00, next 00:00)`` of a date."""
    start = pendulum.datetime(day.year, day.month, day.day, tz=timezone)
    return TimeRange(start=start, end=start.add(days=1))


def merge_ranges(ranges: List[TimeRange]) -> List[TimeRange]:
    """
    Merge overlapping or adjacent time ranges.

    Example: [09:00-10:00, 10:00-11:00] -> [09:00-11:00]
    """
    if not ranges:
        return []

    sorted_ranges = sorted(ranges, key=lambda r: r.start)
    merged: List[TimeRange] = [sorted_ranges[0]]

    for current in sorted_ranges[1:]:
        last = merged[-1]

        if current.start <= last.end:
            merged[-1] = TimeRange(start=last.start, end=max(last.end, current.end))
        else:
            merged.append(current)

    return merged


@dataclass
class SchedulingPolicy:
    """
    Business rules the engine applies to every admission and cancellation.
    """
    timezone: str = "Europe/Dublin"
    late_cancellation_hours: int = 24
    open_when_undeclared: bool = True  # dates without AVAILABLE blocks are open
    emergency_bypasses_past_start: bool = False
    min_lead_minutes: int = 0  # standard bookings only
    emergency_max_lead_hours: int = 24
    max_recurrence_days: int = 366


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    LATE_CANCELLED = "LATE_CANCELLED"
    COMPLETED = "COMPLETED"


# Statuses that hold a slot on the provider's calendar.
ACTIVE_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED}
)

TERMINAL_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.CANCELLED, BookingStatus.LATE_CANCELLED, BookingStatus.COMPLETED}
)


class AvailabilityKind(str, Enum):
    AVAILABLE = "AVAILABLE"
    UNAVAILABLE = "UNAVAILABLE"


class RecurrenceFrequency(str, Enum):
    WEEKLY = "WEEKLY"


@dataclass(frozen=True)
class RecurrenceRule:
    """
    Weekly recurrence on a set of weekdays up to an inclusive horizon date.

    Weekdays follow ``date.weekday()``: 0=Monday, 6=Sunday.
    """
    days_of_week: FrozenSet[int]
    horizon_end: Date
    frequency: RecurrenceFrequency = RecurrenceFrequency.WEEKLY

    def __post_init__(self):
        days = frozenset(int(day) for day in self.days_of_week)
        if not days:
            raise InvalidRequest("A recurrence rule needs at least one weekday")
        invalid = sorted(day for day in days if day not in range(7))
        if invalid:
            raise InvalidRequest(f"Weekdays must be between 0 and 6, got {invalid}")
        object.__setattr__(self, "days_of_week", days)
        object.__setattr__(self, "frequency", RecurrenceFrequency(self.frequency))

    def matches(self, day: Date) -> bool:
        """Check whether an occurrence falls on ``day``."""
        return day.weekday() in self.days_of_week and day <= self.horizon_end


@dataclass(frozen=True)
class AvailabilityBlock:
    """
    A declared AVAILABLE or UNAVAILABLE interval on a provider's calendar.

    For recurring blocks ``date`` and ``range`` describe the first
    occurrence; later occurrences are projected by the recurrence expander.
    """
    id: str
    provider_id: str
    date: Date
    range: TimeRange
    kind: AvailabilityKind
    recurrence_rule: Optional[RecurrenceRule] = None
    external_calendar_ref: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class Booking:
    """A consumer's request for care from a provider over a time range."""
    id: str
    consumer_id: str
    provider_id: str
    range: TimeRange
    status: BookingStatus
    created_at: DateTime
    updated_at: DateTime
    children: Tuple[str, ...] = ()
    is_emergency: bool = False
    recurrence_pattern: Optional[RecurrenceRule] = None
    series_id: Optional[str] = None
    cancellation_note: Optional[str] = None
    cancelled_at: Optional[DateTime] = None
    external_calendar_ref: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class ConflictReason(str, Enum):
    INVALID_RANGE = "INVALID_RANGE"
    PAST_START = "PAST_START"
    BOOKING_OVERLAP = "BOOKING_OVERLAP"
    MARKED_UNAVAILABLE = "MARKED_UNAVAILABLE"
    OUTSIDE_DECLARED_AVAILABILITY = "OUTSIDE_DECLARED_AVAILABILITY"


@dataclass(frozen=True)
class Admission:
    """Outcome of an admission check, with enough detail to explain a rejection."""
    ok: bool
    reason: Optional[ConflictReason] = None
    message: str = ""
    conflicting_booking_ids: Tuple[str, ...] = ()
    blocking_block_ids: Tuple[str, ...] = ()

    @classmethod
    def admitted(cls) -> "Admission":
        return cls(ok=True)

    @classmethod
    def rejected(
        cls,
        reason: ConflictReason,
        message: str,
        *,
        booking_ids: Tuple[str, ...] = (),
        block_ids: Tuple[str, ...] = (),
    ) -> "Admission":
        return cls(
            ok=False,
            reason=reason,
            message=message,
            conflicting_booking_ids=tuple(booking_ids),
            blocking_block_ids=tuple(block_ids),
        )

    def to_error(self) -> SchedulingError:
        """Convert a rejection into the matching typed error."""
        if self.ok:
            raise ValueError("An admitted request has no error")
        if self.reason is ConflictReason.BOOKING_OVERLAP:
            return BookingOverlap(self.message, self.conflicting_booking_ids)
        if self.reason is ConflictReason.MARKED_UNAVAILABLE:
            return MarkedUnavailable(self.message, self.blocking_block_ids)
        if self.reason is ConflictReason.PAST_START:
            return PastStart(self.message)
        if self.reason is ConflictReason.OUTSIDE_DECLARED_AVAILABILITY:
            return OutsideDeclaredAvailability(self.message)
        return InvalidRange(self.message)


class BookingAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    CANCEL = "cancel"
    COMPLETE = "complete"


class ActorRole(str, Enum):
    PROVIDER = "provider"
    CONSUMER = "consumer"
    SYSTEM = "system"


@dataclass(frozen=True)
class OccurrenceRejection:
    """A requested occurrence that could not be booked, dated in the service timezone."""
    range: TimeRange
    error: SchedulingError
    date: Date


@dataclass
class BookingResult:
    """
    Result of a booking request.

    Recurring requests commit each occurrence independently, so a result may
    hold committed bookings and rejected occurrences side by side.
    """
    bookings: List[Booking] = field(default_factory=list)
    rejections: List[OccurrenceRejection] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.bookings) and not self.rejections

    @property
    def is_partial(self) -> bool:
        return bool(self.bookings) and bool(self.rejections)

    @property
    def rejected_dates(self) -> List[Date]:
        return [rejection.date for rejection in self.rejections]


@dataclass(frozen=True)
class CalendarEntry:
    """A single item on a provider's calendar view."""
    id: str
    range: TimeRange
    category: str
    title: str
    booking_id: Optional[str] = None
    block_id: Optional[str] = None
    recurrence_rule: Optional[RecurrenceRule] = None
