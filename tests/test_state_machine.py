"""
Tests for the booking lifecycle.
"""

import itertools

import pytest

from minderbook.domain.exceptions import (
    IllegalTransition,
    InvalidRequest,
    NoLongerAvailable,
    PastStart,
    Unauthorized,
)
from minderbook.domain.models import TERMINAL_STATUSES, ActorRole, Booking, BookingAction, BookingStatus
from minderbook.domain.state_machine import TRANSITIONS, BookingStateMachine

from conftest import at, span

ROLE_FOR = {
    BookingAction.ACCEPT: ActorRole.PROVIDER,
    BookingAction.DECLINE: ActorRole.PROVIDER,
    BookingAction.CANCEL: ActorRole.CONSUMER,
    BookingAction.COMPLETE: ActorRole.SYSTEM,
}

EXPECTED = {
    (BookingStatus.PENDING, BookingAction.ACCEPT): BookingStatus.CONFIRMED,
    (BookingStatus.PENDING, BookingAction.DECLINE): BookingStatus.CANCELLED,
    (BookingStatus.PENDING, BookingAction.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.CONFIRMED, BookingAction.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.CONFIRMED, BookingAction.COMPLETE): BookingStatus.COMPLETED,
}


def make_booking(status=BookingStatus.PENDING, booking_id="book_1", start="2025-03-10 10:00", end="2025-03-10 12:00"):
    created = at("2025-03-03 08:00")
    return Booking(
        id=booking_id,
        consumer_id="parent",
        provider_id="minder",
        range=span(start, end),
        status=status,
        created_at=created,
        updated_at=created,
        children=("c1",),
    )


@pytest.fixture
def machine(engine):
    return engine.state_machine


class TestTransitionTable:
    """Every (status, action) cell of the lifecycle."""

    def test_table_matches_lifecycle(self):
        assert TRANSITIONS == EXPECTED

    @pytest.mark.parametrize(
        "status, action", list(itertools.product(BookingStatus, BookingAction))
    )
    def test_every_cell(self, machine, status, action):
        booking = make_booking(status)
        # Completing needs the booking to have ended; everything else happens two days ahead.
        now = at("2025-03-10 13:00") if action is BookingAction.COMPLETE else at("2025-03-08 10:00")

        if (status, action) not in EXPECTED:
            with pytest.raises(IllegalTransition):
                machine.transition(booking, action, ROLE_FOR[action], now, note="not needed")
            return

        updated = machine.transition(booking, action, ROLE_FOR[action], now, note="Sorry, fully booked")

        assert updated.status is EXPECTED[(status, action)]
        assert updated.updated_at == now
        assert updated.id == booking.id
        assert booking.status is status  # the input is never mutated

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda status: status.value))
    def test_terminal_states_have_no_exits(self, status):
        assert not any(BookingStateMachine.can_apply(status, action) for action in BookingAction)


class TestRoles:
    """Tests for role checks."""

    @pytest.mark.parametrize("role", [ActorRole.CONSUMER, ActorRole.SYSTEM])
    def test_only_provider_accepts(self, machine, role):
        with pytest.raises(Unauthorized):
            machine.transition(make_booking(), BookingAction.ACCEPT, role, at("2025-03-08 10:00"))

    def test_only_provider_declines(self, machine):
        with pytest.raises(Unauthorized):
            machine.transition(
                make_booking(), BookingAction.DECLINE, ActorRole.CONSUMER, at("2025-03-08 10:00"), note="no"
            )

    def test_system_cannot_cancel(self, machine):
        with pytest.raises(Unauthorized):
            machine.transition(make_booking(), BookingAction.CANCEL, ActorRole.SYSTEM, at("2025-03-08 10:00"))

    def test_provider_cannot_complete(self, machine):
        with pytest.raises(Unauthorized):
            machine.transition(
                make_booking(BookingStatus.CONFIRMED),
                BookingAction.COMPLETE,
                ActorRole.PROVIDER,
                at("2025-03-10 13:00"),
            )

    def test_illegal_transition_reported_before_role(self, machine):
        with pytest.raises(IllegalTransition):
            machine.transition(
                make_booking(BookingStatus.CANCELLED), BookingAction.ACCEPT, ActorRole.CONSUMER, at("2025-03-08 10:00")
            )


class TestAccept:
    """Tests for re-admission on accept."""

    def test_accept_after_start_passed(self, machine):
        """Test that a request whose start has passed cannot be confirmed."""
        with pytest.raises(NoLongerAvailable) as exc_info:
            machine.transition(make_booking(), BookingAction.ACCEPT, ActorRole.PROVIDER, at("2025-03-10 10:30"))

        assert isinstance(exc_info.value.cause, PastStart)

    def test_accept_conflicting_with_confirmed_booking(self, engine, machine):
        """Test that an accept fails when another booking took the slot."""
        taken = engine.request_booking("other-parent", "minder", span("2025-03-10 11:00", "2025-03-10 13:00"), ["c9"])
        engine.respond_to_booking(taken.bookings[0].id, "minder", "accept")

        with pytest.raises(NoLongerAvailable) as exc_info:
            machine.transition(make_booking(), BookingAction.ACCEPT, ActorRole.PROVIDER, at("2025-03-08 10:00"))

        assert exc_info.value.details["reason"]["code"] == "BOOKING_OVERLAP"
        assert exc_info.value.cause.booking_ids == (taken.bookings[0].id,)

    def test_retrying_accept_fails_identically(self, machine):
        booking = make_booking()
        now = at("2025-03-10 10:30")

        errors = []
        for _ in range(2):
            with pytest.raises(NoLongerAvailable) as exc_info:
                machine.transition(booking, BookingAction.ACCEPT, ActorRole.PROVIDER, now)
            errors.append(exc_info.value.to_dict())

        assert errors[0] == errors[1]


class TestDecline:
    """Tests for declining."""

    @pytest.mark.parametrize("note", [None, "", "   "])
    def test_decline_requires_note(self, machine, note):
        with pytest.raises(InvalidRequest, match="Cancellation note is required"):
            machine.transition(make_booking(), BookingAction.DECLINE, ActorRole.PROVIDER, at("2025-03-08 10:00"), note=note)

    def test_decline_records_note(self, machine):
        now = at("2025-03-08 10:00")

        updated = machine.transition(
            make_booking(), BookingAction.DECLINE, ActorRole.PROVIDER, now, note="  On holiday  "
        )

        assert updated.cancellation_note == "On holiday"
        assert updated.cancelled_at == now


class TestCancellation:
    """Tests for late-cancellation classification."""

    def test_exactly_24_hours_is_not_late(self, machine):
        booking = make_booking(BookingStatus.CONFIRMED)

        updated = machine.transition(booking, BookingAction.CANCEL, ActorRole.CONSUMER, at("2025-03-09 10:00"))

        assert updated.status is BookingStatus.CANCELLED

    def test_23_hours_59_minutes_is_late(self, machine):
        booking = make_booking(BookingStatus.CONFIRMED)

        updated = machine.transition(booking, BookingAction.CANCEL, ActorRole.CONSUMER, at("2025-03-09 10:01"))

        assert updated.status is BookingStatus.LATE_CANCELLED
        assert updated.cancelled_at == at("2025-03-09 10:01")

    def test_provider_cancellation_is_also_classified(self, machine):
        booking = make_booking(BookingStatus.CONFIRMED)

        updated = machine.transition(booking, BookingAction.CANCEL, ActorRole.PROVIDER, at("2025-03-10 08:00"))

        assert updated.status is BookingStatus.LATE_CANCELLED

    def test_pending_never_late_cancelled(self, machine):
        """Test that there is no penalty before the provider accepted."""
        updated = machine.transition(make_booking(), BookingAction.CANCEL, ActorRole.CONSUMER, at("2025-03-10 09:00"))

        assert updated.status is BookingStatus.CANCELLED

    def test_cancel_during_booking_is_late(self, machine):
        booking = make_booking(BookingStatus.CONFIRMED)

        updated = machine.transition(booking, BookingAction.CANCEL, ActorRole.CONSUMER, at("2025-03-10 11:00"))

        assert updated.status is BookingStatus.LATE_CANCELLED

    def test_cancel_after_end_is_illegal(self, machine):
        booking = make_booking(BookingStatus.CONFIRMED)

        with pytest.raises(IllegalTransition, match="already ended"):
            machine.transition(booking, BookingAction.CANCEL, ActorRole.CONSUMER, at("2025-03-10 12:00"))

    def test_optional_note_kept(self, machine):
        updated = machine.transition(
            make_booking(), BookingAction.CANCEL, ActorRole.CONSUMER, at("2025-03-08 10:00"), note="Sick"
        )

        assert updated.cancellation_note == "Sick"


class TestCompletion:
    """Tests for completing bookings."""

    def test_complete_before_end_is_illegal(self, machine):
        with pytest.raises(IllegalTransition, match="before it ends"):
            machine.transition(
                make_booking(BookingStatus.CONFIRMED), BookingAction.COMPLETE, ActorRole.SYSTEM, at("2025-03-10 11:59")
            )

    def test_complete_exactly_at_end(self, machine):
        updated = machine.transition(
            make_booking(BookingStatus.CONFIRMED), BookingAction.COMPLETE, ActorRole.SYSTEM, at("2025-03-10 12:00")
        )

        assert updated.status is BookingStatus.COMPLETED
