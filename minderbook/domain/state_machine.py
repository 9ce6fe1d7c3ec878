"""
Booking lifecycle: the legal status transitions and their guards.
"""

import logging
from dataclasses import replace
from typing import Dict, FrozenSet, Optional, Tuple

from pendulum import DateTime

from .conflict_resolver import ConflictResolver
from .exceptions import IllegalTransition, InvalidRequest, NoLongerAvailable, Unauthorized
from .models import (
    ActorRole,
    Booking,
    BookingAction,
    BookingStatus,
    SchedulingPolicy,
)

logger = logging.getLogger(__name__)


# (current status, action) -> default target status. Anything missing is illegal.
TRANSITIONS: Dict[Tuple[BookingStatus, BookingAction], BookingStatus] = {
    (BookingStatus.PENDING, BookingAction.ACCEPT): BookingStatus.CONFIRMED,
    (BookingStatus.PENDING, BookingAction.DECLINE): BookingStatus.CANCELLED,
    (BookingStatus.PENDING, BookingAction.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.CONFIRMED, BookingAction.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.CONFIRMED, BookingAction.COMPLETE): BookingStatus.COMPLETED,
}

ALLOWED_ROLES: Dict[BookingAction, FrozenSet[ActorRole]] = {
    BookingAction.ACCEPT: frozenset({ActorRole.PROVIDER}),
    BookingAction.DECLINE: frozenset({ActorRole.PROVIDER}),
    BookingAction.CANCEL: frozenset({ActorRole.CONSUMER, ActorRole.PROVIDER}),
    BookingAction.COMPLETE: frozenset({ActorRole.SYSTEM}),
}


class BookingStateMachine:
    """
    Applies actions to bookings.

    Transitions return a new ``Booking``; the caller persists it. Errors are
    never retried here: retrying an identical accept fails identically.
    """

    def __init__(self, resolver: ConflictResolver, policy: SchedulingPolicy):
        self.resolver = resolver
        self.policy = policy

    @staticmethod
    def can_apply(status: BookingStatus, action: BookingAction) -> bool:
        return (status, action) in TRANSITIONS

    def transition(
        self,
        booking: Booking,
        action: BookingAction,
        actor_role: ActorRole,
        now: DateTime,
        note: Optional[str] = None,
    ) -> Booking:
        """
        Apply ``action`` to ``booking`` on behalf of ``actor_role``.

        Raises:
            IllegalTransition: If the action is not legal from the current status
            Unauthorized: If the role may not perform the action
            InvalidRequest: If a decline has no cancellation note
            NoLongerAvailable: If an accept no longer passes admission
        """
        if not self.can_apply(booking.status, action):
            raise IllegalTransition(
                f"Cannot {action.value} a {booking.status.value} booking",
                {"booking_id": booking.id, "status": booking.status.value, "action": action.value},
            )

        if actor_role not in ALLOWED_ROLES[action]:
            raise Unauthorized(
                f"A {actor_role.value} cannot {action.value} a booking",
                {"booking_id": booking.id, "action": action.value},
            )

        if action is BookingAction.ACCEPT:
            return self._accept(booking, now)
        if action is BookingAction.DECLINE:
            return self._decline(booking, now, note)
        if action is BookingAction.CANCEL:
            return self._cancel(booking, now, note)
        return self._complete(booking, now)

    def _accept(self, booking: Booking, now: DateTime) -> Booking:
        # Time may have passed since the request; re-check against everyone else.
        admission = self.resolver.admit(
            booking.provider_id,
            booking.range,
            exclude_booking_id=booking.id,
            now=now,
            is_emergency=booking.is_emergency,
        )
        if not admission.ok:
            logger.info("Booking %s can no longer be confirmed: %s", booking.id, admission.message)
            raise NoLongerAvailable(
                "This time slot is no longer available",
                cause=admission.to_error(),
            )

        return replace(booking, status=BookingStatus.CONFIRMED, updated_at=now)

    def _decline(self, booking: Booking, now: DateTime, note: Optional[str]) -> Booking:
        if not note or not note.strip():
            raise InvalidRequest(
                "Cancellation note is required when declining a booking",
                {"booking_id": booking.id},
            )

        return replace(
            booking,
            status=BookingStatus.CANCELLED,
            cancellation_note=note.strip(),
            cancelled_at=now,
            updated_at=now,
        )

    def _cancel(self, booking: Booking, now: DateTime, note: Optional[str]) -> Booking:
        if now >= booking.range.end:
            raise IllegalTransition(
                "Cannot cancel a booking that has already ended",
                {"booking_id": booking.id, "status": booking.status.value, "action": "cancel"},
            )

        return replace(
            booking,
            status=self.classify_cancellation(booking, now),
            cancellation_note=note.strip() if note and note.strip() else None,
            cancelled_at=now,
            updated_at=now,
        )

    def _complete(self, booking: Booking, now: DateTime) -> Booking:
        if now < booking.range.end:
            raise IllegalTransition(
                "Cannot complete a booking before it ends",
                {"booking_id": booking.id, "status": booking.status.value, "action": "complete"},
            )

        return replace(booking, status=BookingStatus.COMPLETED, updated_at=now)

    def hours_until_start(self, booking: Booking, now: DateTime) -> float:
        return (booking.range.start - now).total_seconds() / 3600

    def classify_cancellation(self, booking: Booking, now: DateTime) -> BookingStatus:
        """
        Return the status a cancellation at ``now`` would produce.

        Only confirmed bookings can be late-cancelled; there is no penalty
        before the provider has accepted.
        """
        if (
            booking.status is BookingStatus.CONFIRMED
            and self.hours_until_start(booking, now) < self.policy.late_cancellation_hours
        ):
            return BookingStatus.LATE_CANCELLED
        return BookingStatus.CANCELLED
