"""
Admission control: decides whether a time range may become a booking.

This is the heart of the engine. It only reads state through the two
lookup protocols below and never writes, so calling it twice with the same
inputs and no intervening change gives the same answer.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Protocol

import pendulum
from pendulum import Date, DateTime

from .exceptions import EmergencyWindowExceeded, InsufficientLeadTime
from .models import (
    ACTIVE_STATUSES,
    Admission,
    AvailabilityBlock,
    AvailabilityKind,
    Booking,
    BookingStatus,
    ConflictReason,
    SchedulingPolicy,
    TimeRange,
    merge_ranges,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], DateTime]


class BookingLookup(Protocol):
    """Read access to a provider's bookings."""

    def conflicts(
        self,
        provider_id: str,
        time_range: TimeRange,
        statuses: Iterable[BookingStatus] = ACTIVE_STATUSES,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """Return bookings in ``statuses`` whose range overlaps ``time_range``."""


class AvailabilityLookup(Protocol):
    """Read access to a provider's declared availability."""

    def blocks_covering(self, provider_id: str, day: Date) -> Iterable[AvailabilityBlock]:
        """Return the block occurrences that apply to ``day``."""


class ConflictResolver:
    """
    Decides ADMIT / REJECT for a candidate range on a provider's calendar.

    Algorithm:
    1. Reject an empty or inverted range
    2. Reject a start in the past (unless policy exempts emergencies)
    3. Reject overlaps with PENDING/CONFIRMED bookings
    4. Reject overlaps with UNAVAILABLE blocks
    5. Reject ranges outside the AVAILABLE blocks once every spanned date declares some
    6. Otherwise admit
    """

    def __init__(
        self,
        bookings: BookingLookup,
        availability: AvailabilityLookup,
        policy: SchedulingPolicy,
        clock: Optional[Clock] = None,
    ):
        self.bookings = bookings
        self.availability = availability
        self.policy = policy
        self.clock = clock or (lambda: pendulum.now(policy.timezone))

    def admit(
        self,
        provider_id: str,
        candidate: TimeRange,
        exclude_booking_id: Optional[str] = None,
        *,
        now: Optional[DateTime] = None,
        is_emergency: bool = False,
    ) -> Admission:
        """
        Check whether ``candidate`` may be booked with ``provider_id``.

        Args:
            provider_id: Provider whose calendar is checked
            candidate: Requested time range
            exclude_booking_id: Booking to ignore, used when re-validating it
            now: Scheduling clock reading; defaults to the injected clock
            is_emergency: Whether the request is an emergency booking

        Returns:
            Admission describing the decision and any conflicting ids
        """
        now = now or self.clock()

        if candidate.start >= candidate.end:
            return Admission.rejected(
                ConflictReason.INVALID_RANGE,
                f"Start time {candidate.start} must be before end time {candidate.end}",
            )

        exempt = is_emergency and self.policy.emergency_bypasses_past_start
        if candidate.start < now and not exempt:
            return Admission.rejected(
                ConflictReason.PAST_START,
                f"Bookings cannot start in the past ({candidate.start} < {now})",
            )

        overlapping = self.bookings.conflicts(
            provider_id,
            candidate,
            statuses=ACTIVE_STATUSES,
            exclude_booking_id=exclude_booking_id,
        )
        if overlapping:
            booking_ids = tuple(sorted(booking.id for booking in overlapping))
            logger.info("Range %s overlaps bookings %s", candidate, ", ".join(booking_ids))
            return Admission.rejected(
                ConflictReason.BOOKING_OVERLAP,
                "The provider already has a booking in this time range",
                booking_ids=booking_ids,
            )

        blocks_by_day = {
            day: list(self.availability.blocks_covering(provider_id, day))
            for day in candidate.dates(self.policy.timezone)
        }

        unavailable = sorted({
            block.id
            for blocks in blocks_by_day.values()
            for block in blocks
            if block.kind is AvailabilityKind.UNAVAILABLE and block.range.overlaps(candidate)
        })
        if unavailable:
            logger.info("Range %s hits unavailable blocks %s", candidate, ", ".join(unavailable))
            return Admission.rejected(
                ConflictReason.MARKED_UNAVAILABLE,
                "The provider has marked this time as unavailable",
                block_ids=tuple(unavailable),
            )

        rejection = self._check_declared_availability(candidate, blocks_by_day)
        if rejection is not None:
            return rejection

        return Admission.admitted()

    def _check_declared_availability(
        self,
        candidate: TimeRange,
        blocks_by_day: Dict[Date, List[AvailabilityBlock]],
    ) -> Optional[Admission]:
        """
        Require the candidate to sit inside the union of the AVAILABLE blocks
        of the dates it spans, once every one of those dates declares some.

        A date without AVAILABLE blocks leaves the range open, unless the
        policy closes undeclared dates.
        """
        available = {
            day: [block.range for block in blocks if block.kind is AvailabilityKind.AVAILABLE]
            for day, blocks in blocks_by_day.items()
        }

        undeclared = [day for day, ranges in available.items() if not ranges]
        if undeclared:
            if self.policy.open_when_undeclared:
                return None
            return Admission.rejected(
                ConflictReason.OUTSIDE_DECLARED_AVAILABILITY,
                f"The provider has not declared any availability on {undeclared[0].isoformat()}",
            )

        windows = merge_ranges([window for ranges in available.values() for window in ranges])
        if any(window.contains(candidate) for window in windows):
            return None

        return Admission.rejected(
            ConflictReason.OUTSIDE_DECLARED_AVAILABILITY,
            "The requested time is outside the provider's declared availability",
        )

    def check_lead_time(
        self,
        candidate: TimeRange,
        *,
        now: Optional[DateTime] = None,
        is_emergency: bool = False,
    ) -> None:
        """
        Enforce lead-time rules for new requests.

        Standard bookings must start at least ``min_lead_minutes`` from now.
        Emergency bookings skip that rule but must start within
        ``emergency_max_lead_hours``.

        Raises:
            InsufficientLeadTime: If a standard booking starts too soon
            EmergencyWindowExceeded: If an emergency booking starts too late
        """
        now = now or self.clock()

        if is_emergency:
            latest = now.add(hours=self.policy.emergency_max_lead_hours)
            if candidate.start > latest:
                raise EmergencyWindowExceeded(
                    f"Emergency bookings must start within the next "
                    f"{self.policy.emergency_max_lead_hours} hours",
                    {"latest_start": latest.to_iso8601_string()},
                )
            return

        earliest = now.add(minutes=self.policy.min_lead_minutes)
        if candidate.start < earliest:
            raise InsufficientLeadTime(
                f"Bookings must be requested at least {self.policy.min_lead_minutes} minutes ahead",
                {"earliest_start": earliest.to_iso8601_string()},
            )
