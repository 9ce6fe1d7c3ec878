"""
Tests for the booking ledger.
"""

import pytest

from minderbook.domain.exceptions import BookingOverlap, NotFound
from minderbook.domain.models import Booking, BookingStatus
from minderbook.services.ledger import BookingLedger

from conftest import at, span


def make_booking(booking_id, start, end, status=BookingStatus.PENDING, provider="minder", consumer="parent"):
    created = at("2025-03-03 08:00")
    return Booking(
        id=booking_id,
        consumer_id=consumer,
        provider_id=provider,
        range=span(start, end),
        status=status,
        created_at=created,
        updated_at=created,
        children=("c1",),
    )


@pytest.fixture
def ledger(repository):
    return BookingLedger(repository)


class TestBookingLedger:
    """Tests for reads and guarded writes."""

    def test_get_unknown_raises_not_found(self, ledger):
        with pytest.raises(NotFound) as exc_info:
            ledger.get("book_missing")

        assert exc_info.value.details == {"booking_id": "book_missing"}

    def test_add_and_get(self, ledger):
        booking = make_booking("b1", "2025-03-10 10:00", "2025-03-10 12:00")

        ledger.add(booking)

        assert ledger.get("b1") == booking

    def test_add_overlapping_active_booking_rejected(self, ledger):
        """Test the write-time overlap guard that closes the admission race."""
        ledger.add(make_booking("b1", "2025-03-10 10:00", "2025-03-10 12:00"))

        with pytest.raises(BookingOverlap) as exc_info:
            ledger.add(make_booking("b2", "2025-03-10 11:00", "2025-03-10 13:00"))

        assert exc_info.value.booking_ids == ("b1",)
        with pytest.raises(NotFound):
            ledger.get("b2")

    def test_terminal_bookings_may_overlap(self, ledger):
        ledger.add(make_booking("b1", "2025-03-10 10:00", "2025-03-10 12:00", BookingStatus.CANCELLED))
        ledger.add(make_booking("b2", "2025-03-10 10:00", "2025-03-10 12:00"))
        ledger.add(make_booking("b3", "2025-03-10 10:00", "2025-03-10 12:00", BookingStatus.LATE_CANCELLED))

    def test_conflicts_filters_status_and_exclusion(self, ledger):
        ledger.add(make_booking("b1", "2025-03-10 10:00", "2025-03-10 12:00", BookingStatus.CANCELLED))
        ledger.add(make_booking("b2", "2025-03-10 11:00", "2025-03-10 13:00", BookingStatus.CONFIRMED))

        window = span("2025-03-10 09:00", "2025-03-10 14:00")

        assert [b.id for b in ledger.conflicts("minder", window)] == ["b2"]
        assert ledger.conflicts("minder", window, exclude_booking_id="b2") == []
        assert [b.id for b in ledger.conflicts("minder", window, statuses=[BookingStatus.CANCELLED])] == ["b1"]

    def test_update_requires_existing_booking(self, ledger):
        with pytest.raises(NotFound):
            ledger.update(make_booking("b1", "2025-03-10 10:00", "2025-03-10 12:00"))

    def test_update_keeps_own_range(self, ledger):
        booking = ledger.add(make_booking("b1", "2025-03-10 10:00", "2025-03-10 12:00"))

        ledger.update(make_booking("b1", "2025-03-10 10:00", "2025-03-10 12:00", BookingStatus.CONFIRMED))

        assert ledger.get(booking.id).status is BookingStatus.CONFIRMED

    def test_for_provider_and_consumer_sorted(self, ledger):
        ledger.add(make_booking("late", "2025-03-12 10:00", "2025-03-12 12:00"))
        ledger.add(make_booking("early", "2025-03-10 10:00", "2025-03-10 12:00"))
        ledger.add(make_booking("other", "2025-03-11 10:00", "2025-03-11 12:00", consumer="parent-b"))

        assert [b.id for b in ledger.for_provider("minder")] == ["early", "other", "late"]
        assert [b.id for b in ledger.for_consumer("parent")] == ["early", "late"]
        assert [b.id for b in ledger.for_consumer("parent-b", [BookingStatus.CONFIRMED])] == []

    def test_overlapping_includes_every_status(self, ledger):
        ledger.add(make_booking("b1", "2025-03-10 10:00", "2025-03-10 12:00", BookingStatus.COMPLETED))
        ledger.add(make_booking("b2", "2025-03-10 12:00", "2025-03-10 13:00"))

        found = ledger.overlapping("minder", span("2025-03-10 00:00", "2025-03-11 00:00"))

        assert [b.id for b in found] == ["b1", "b2"]
