"""
The booking ledger: every booking read or write goes through here.
"""

import logging
from dataclasses import replace
from typing import Iterable, List, Optional

from ..domain.exceptions import BookingOverlap, NotFound
from ..domain.models import ACTIVE_STATUSES, Booking, BookingStatus, TimeRange
from .ports import SchedulingRepository

logger = logging.getLogger(__name__)


class BookingLedger:
    """
    Holds bookings and answers conflict queries by time range and status.

    Writes re-validate the no-overlap invariant, so a commit that lost a race
    against another writer fails instead of double-booking the provider.
    """

    def __init__(self, repository: SchedulingRepository):
        self._repository = repository

    def get(self, booking_id: str) -> Booking:
        booking = self._repository.get_booking(booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found", {"booking_id": booking_id})
        return booking

    def for_provider(
        self,
        provider_id: str,
        statuses: Optional[Iterable[BookingStatus]] = None,
    ) -> List[Booking]:
        bookings = self._repository.load_bookings(provider_id=provider_id, statuses=statuses)
        return sorted(bookings, key=lambda booking: booking.range.start)

    def for_consumer(
        self,
        consumer_id: str,
        statuses: Optional[Iterable[BookingStatus]] = None,
    ) -> List[Booking]:
        bookings = self._repository.load_bookings(consumer_id=consumer_id, statuses=statuses)
        return sorted(bookings, key=lambda booking: booking.range.start)

    def conflicts(
        self,
        provider_id: str,
        time_range: TimeRange,
        statuses: Iterable[BookingStatus] = ACTIVE_STATUSES,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """Return the provider's bookings in ``statuses`` overlapping ``time_range``."""
        return [
            booking
            for booking in self._repository.load_bookings(provider_id=provider_id, statuses=statuses)
            if booking.id != exclude_booking_id and booking.range.overlaps(time_range)
        ]

    def overlapping(self, provider_id: str, window: TimeRange) -> List[Booking]:
        """Return bookings of any status overlapping ``window``, sorted by start."""
        return [
            booking
            for booking in self.for_provider(provider_id)
            if booking.range.overlaps(window)
        ]

    def add(self, booking: Booking) -> Booking:
        """
        Record a new booking.

        Raises:
            BookingOverlap: If an active booking already holds part of the range
        """
        self._guard_overlap(booking)
        self._repository.save_booking(booking)
        logger.debug("Recorded booking %s (%s)", booking.id, booking.status.value)
        return booking

    def update(self, booking: Booking) -> Booking:
        """
        Replace a stored booking with a new version.

        Raises:
            NotFound: If the booking was never recorded
            BookingOverlap: If the new version collides with another active booking
        """
        self.get(booking.id)
        self._guard_overlap(booking)
        self._repository.save_booking(booking)
        logger.debug("Updated booking %s (%s)", booking.id, booking.status.value)
        return booking

    def attach_external_ref(self, booking_id: str, external_ref: str) -> Booking:
        """Record the external calendar event of a booking, leaving everything else as stored."""
        booking = replace(self.get(booking_id), external_calendar_ref=external_ref)
        self._repository.save_booking(booking)
        return booking

    def _guard_overlap(self, booking: Booking) -> None:
        if not booking.is_active:
            return

        clashes = self.conflicts(booking.provider_id, booking.range, exclude_booking_id=booking.id)
        if clashes:
            booking_ids = sorted(clash.id for clash in clashes)
            logger.warning(
                "Refusing to write booking %s: overlaps %s", booking.id, ", ".join(booking_ids)
            )
            raise BookingOverlap(
                "The provider already has a booking in this time range",
                booking_ids,
            )
