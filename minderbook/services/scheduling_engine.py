"""
Application service for booking and availability scheduling.

The engine is what REST handlers, the CLI and sweep jobs talk to. It wires
the domain logic (admission, lifecycle, recurrence) to the collaborators it
receives through its constructor: a repository, a notification port and an
external calendar. Every admission is followed by its write inside one
provider-scoped transaction. Notification and calendar failures are logged
and recorded, never turned into a failed booking.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pendulum
from pendulum import DateTime

from ..domain.conflict_resolver import Clock, ConflictResolver
from ..domain.exceptions import InvalidRequest, NotFound, SchedulingError, Unauthorized
from ..domain.models import (
    ActorRole,
    AvailabilityBlock,
    AvailabilityKind,
    Booking,
    BookingAction,
    BookingResult,
    BookingStatus,
    CalendarEntry,
    OccurrenceRejection,
    RecurrenceRule,
    SchedulingPolicy,
    TimeRange,
)
from ..domain.recurrence import RecurrenceExpander
from ..domain.state_machine import BookingStateMachine
from .availability import AvailabilityStore
from .ledger import BookingLedger
from .ports import CalendarSyncPort, NotificationEvent, NotificationPort, SchedulingRepository

logger = logging.getLogger(__name__)


BOOKING_CATEGORIES: Dict[BookingStatus, str] = {
    BookingStatus.PENDING: "pending",
    BookingStatus.CONFIRMED: "confirmed",
    BookingStatus.CANCELLED: "cancelled",
    BookingStatus.LATE_CANCELLED: "cancelled",
    BookingStatus.COMPLETED: "completed",
}

STATUS_EVENTS: Dict[BookingStatus, str] = {
    BookingStatus.CONFIRMED: "BOOKING_CONFIRMED",
    BookingStatus.CANCELLED: "BOOKING_CANCELLED",
    BookingStatus.LATE_CANCELLED: "BOOKING_LATE_CANCELLED",
    BookingStatus.COMPLETED: "BOOKING_COMPLETED",
}


@dataclass(frozen=True)
class SyncFailure:
    """An external calendar call that failed and should be retried out-of-band."""
    operation: str  # "push" or "delete"
    owner_id: str
    entry: Optional[CalendarEntry] = None
    external_ref: Optional[str] = None
    error: str = ""


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class SchedulingEngine:
    """
    Orchestrates admission, state transitions and collaborator side effects.
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        *,
        notifier: Optional[NotificationPort] = None,
        calendar: Optional[CalendarSyncPort] = None,
        policy: Optional[SchedulingPolicy] = None,
        clock: Optional[Clock] = None,
        id_factory: Callable[[str], str] = _new_id,
    ) -> None:
        self.policy = policy or SchedulingPolicy()
        self._repository = repository
        self._notifier = notifier
        self._calendar = calendar
        self._clock: Clock = clock or (lambda: pendulum.now(self.policy.timezone))
        self._new_id = id_factory

        self.expander = RecurrenceExpander(self.policy.timezone)
        self.ledger = BookingLedger(repository)
        self.availability = AvailabilityStore(repository, self.ledger, self.expander, self.policy)
        self.resolver = ConflictResolver(self.ledger, self.availability, self.policy, self._clock)
        self.state_machine = BookingStateMachine(self.resolver, self.policy)

        self.sync_failures: List[SyncFailure] = []

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def request_booking(
        self,
        consumer_id: str,
        provider_id: str,
        time_range: TimeRange,
        children: Sequence[str],
        is_emergency: bool = False,
        recurrence_rule: Optional[RecurrenceRule] = None,
    ) -> BookingResult:
        """
        Request care from a provider, once or on a weekly recurrence.

        Every occurrence is admitted and committed on its own: conflicting
        occurrences are reported in ``BookingResult.rejections`` while the
        others are booked. Nothing is dropped silently.

        Raises:
            InvalidRequest: If the request itself is malformed
        """
        if not children:
            raise InvalidRequest("At least one child must be specified")
        if consumer_id == provider_id:
            raise InvalidRequest("Provider and consumer cannot be the same user")

        now = self._clock()
        occurrences = self._occurrences(time_range, recurrence_rule)
        series_id = self._new_id("series") if recurrence_rule is not None else None

        result = BookingResult()
        for occurrence in occurrences:
            with self._repository.transaction(provider_id):
                try:
                    admission = self.resolver.admit(
                        provider_id, occurrence, now=now, is_emergency=is_emergency
                    )
                    if not admission.ok:
                        raise admission.to_error()
                    self.resolver.check_lead_time(occurrence, now=now, is_emergency=is_emergency)

                    booking = self.ledger.add(
                        Booking(
                            id=self._new_id("book"),
                            consumer_id=consumer_id,
                            provider_id=provider_id,
                            range=occurrence,
                            status=BookingStatus.PENDING,
                            created_at=now,
                            updated_at=now,
                            children=tuple(children),
                            is_emergency=is_emergency,
                            recurrence_pattern=recurrence_rule,
                            series_id=series_id,
                        )
                    )
                except SchedulingError as exc:
                    logger.info(
                        "Rejected occurrence %s for provider %s: %s", occurrence, provider_id, exc
                    )
                    result.rejections.append(
                        OccurrenceRejection(
                            range=occurrence,
                            error=exc,
                            date=occurrence.start.in_timezone(self.policy.timezone).date(),
                        )
                    )
                    continue

            result.bookings.append(booking)

        logger.info(
            "Booking request %s -> %s: %d committed, %d rejected",
            consumer_id, provider_id, len(result.bookings), len(result.rejections),
        )

        if result.bookings:
            self._notify(
                provider_id,
                NotificationEvent(
                    type="NEW_BOOKING",
                    title="New Emergency Booking Request" if is_emergency else "New Booking Request",
                    message=f"You have {len(result.bookings)} new booking request(s)",
                    metadata={
                        "booking_ids": [booking.id for booking in result.bookings],
                        "consumer_id": consumer_id,
                        "rejected_dates": [day.isoformat() for day in result.rejected_dates],
                    },
                ),
            )

        return result

    def respond_to_booking(
        self,
        booking_id: str,
        actor_id: str,
        action: Union[BookingAction, str],
        note: Optional[str] = None,
    ) -> Booking:
        """
        Accept or decline a pending booking as its provider.

        Raises:
            InvalidRequest: If the action is neither accept nor decline
            NotFound: If the booking does not exist
            Unauthorized: If ``actor_id`` is not the booking's provider
            IllegalTransition, NoLongerAvailable: From the state machine
        """
        try:
            action = BookingAction(action)
        except ValueError:
            action = None
        if action not in (BookingAction.ACCEPT, BookingAction.DECLINE):
            raise InvalidRequest('Invalid action. Must be either "accept" or "decline".')

        booking = self.ledger.get(booking_id)
        if actor_id != booking.provider_id:
            raise Unauthorized(
                "Only the booking's provider can respond to it", {"booking_id": booking_id}
            )

        updated = self._apply(booking, action, ActorRole.PROVIDER, note)

        if updated.status is BookingStatus.CONFIRMED:
            updated = self._push_booking(updated)

        return updated

    def cancel_booking(self, booking_id: str, actor_id: str, note: Optional[str] = None) -> Booking:
        """
        Cancel a booking as its consumer or provider.

        Confirmed bookings cancelled less than ``late_cancellation_hours``
        before their start become LATE_CANCELLED.

        Raises:
            NotFound: If the booking does not exist
            Unauthorized: If ``actor_id`` is not a party to the booking
            IllegalTransition: If the booking can no longer be cancelled
        """
        booking = self.ledger.get(booking_id)
        role = self._role_of(booking, actor_id)

        updated = self._apply(booking, BookingAction.CANCEL, role, note)

        if updated.external_calendar_ref:
            self._delete_external(updated.provider_id, updated.external_calendar_ref)

        return updated

    def sweep_completions(self, now: Optional[DateTime] = None) -> int:
        """
        Mark every confirmed booking that has ended as COMPLETED.

        Meant to be called periodically by an external scheduler.

        Returns:
            Number of bookings transitioned to COMPLETED
        """
        now = now or self._clock()

        due: Dict[str, List[Booking]] = defaultdict(list)
        for booking in self._repository.load_bookings(statuses=[BookingStatus.CONFIRMED]):
            if booking.range.end <= now:
                due[booking.provider_id].append(booking)

        completed = 0
        for provider_id, bookings in due.items():
            with self._repository.transaction(provider_id):
                for booking in bookings:
                    current = self.ledger.get(booking.id)
                    if current.status is not BookingStatus.CONFIRMED:
                        continue
                    self.ledger.update(
                        self.state_machine.transition(
                            current, BookingAction.COMPLETE, ActorRole.SYSTEM, now
                        )
                    )
                    completed += 1

        logger.info("Completion sweep at %s completed %d booking(s)", now, completed)
        return completed

    def list_bookings(
        self,
        user_id: str,
        statuses: Optional[Iterable[BookingStatus]] = None,
    ) -> List[Booking]:
        """Return the bookings a user takes part in, as consumer or provider."""
        statuses = list(statuses) if statuses is not None else None
        merged = {
            booking.id: booking
            for booking in self.ledger.for_consumer(user_id, statuses)
            + self.ledger.for_provider(user_id, statuses)
        }
        return sorted(merged.values(), key=lambda booking: booking.range.start)

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def declare_availability(
        self,
        provider_id: str,
        time_range: TimeRange,
        kind: Union[AvailabilityKind, str],
        recurrence_rule: Optional[RecurrenceRule] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        """
        Declare an AVAILABLE or UNAVAILABLE block, optionally recurring.

        Returns:
            The new block's id

        Raises:
            OverlappingAvailability: If a block of the same kind overlaps
            BookingOverlap: If an UNAVAILABLE block covers active bookings
        """
        block = AvailabilityBlock(
            id=self._new_id("avail"),
            provider_id=provider_id,
            date=time_range.start.in_timezone(self.policy.timezone).date(),
            range=time_range,
            kind=AvailabilityKind(kind),
            recurrence_rule=recurrence_rule,
            title=title,
            description=description,
        )

        with self._repository.transaction(provider_id):
            self.availability.add_block(block)

        self._push_block(block)
        return block.id

    def update_availability(
        self,
        block_id: str,
        actor_id: str,
        time_range: TimeRange,
        kind: Union[AvailabilityKind, str],
        recurrence_rule: Optional[RecurrenceRule] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> AvailabilityBlock:
        """
        Edit a declared block.

        Raises:
            NotFound: If the block does not exist
            Unauthorized: If ``actor_id`` does not own the block
            BlockInUse: If the edit would orphan an active booking
        """
        existing = self.availability.get(block_id)
        self._require_owner(existing, actor_id)

        edited = AvailabilityBlock(
            id=existing.id,
            provider_id=existing.provider_id,
            date=time_range.start.in_timezone(self.policy.timezone).date(),
            range=time_range,
            kind=AvailabilityKind(kind),
            recurrence_rule=recurrence_rule,
            external_calendar_ref=existing.external_calendar_ref,
            title=title,
            description=description,
        )

        with self._repository.transaction(existing.provider_id):
            self.availability.replace_block(edited)

        return self._push_block(edited)

    def retract_availability(self, block_id: str, actor_id: str) -> None:
        """
        Remove a declared block.

        Raises:
            NotFound: If the block does not exist
            Unauthorized: If ``actor_id`` does not own the block
            BlockInUse: If active bookings depend on an AVAILABLE block
        """
        block = self.availability.get(block_id)
        self._require_owner(block, actor_id)

        with self._repository.transaction(block.provider_id):
            removed = self.availability.remove_block(block_id)

        if removed.external_calendar_ref:
            self._delete_external(removed.provider_id, removed.external_calendar_ref)

    def calendar_events(self, provider_id: str, window: TimeRange) -> List[CalendarEntry]:
        """Return the provider's bookings and availability overlapping ``window``."""
        entries = [self._booking_entry(booking) for booking in self.ledger.overlapping(provider_id, window)]
        entries.extend(self._block_entry(block) for block in self.availability.blocks_between(provider_id, window))
        return sorted(entries, key=lambda entry: (entry.range.start, entry.range.end))

    # ------------------------------------------------------------------
    # External calendar
    # ------------------------------------------------------------------

    def retry_failed_syncs(self) -> int:
        """
        Replay recorded calendar failures once.

        Pushes are rebuilt from the booking or block as it stands now. Entries
        whose booking is no longer active, or whose block was retracted, are
        dropped instead of being recreated.

        Returns:
            Number of calls that succeeded; failures are recorded again
        """
        pending, self.sync_failures = self.sync_failures, []
        succeeded = 0

        for failure in pending:
            if failure.operation == "delete":
                if self._delete_external(failure.owner_id, failure.external_ref):
                    succeeded += 1
                continue

            current = self._current_entry(failure.entry)
            if current is None:
                logger.info("Dropping calendar push for %s: no longer on the calendar", failure.entry.id)
                continue

            entry, external_ref = current
            ref = self._push_external(failure.owner_id, entry, external_ref)
            if ref is None:
                continue
            succeeded += 1
            self._attach_ref(failure.owner_id, entry, ref, external_ref)

        return succeeded

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _occurrences(
        self,
        time_range: TimeRange,
        recurrence_rule: Optional[RecurrenceRule],
    ) -> List[TimeRange]:
        if recurrence_rule is None:
            return [time_range]

        anchor_date = time_range.start.in_timezone(self.policy.timezone).date()
        span = recurrence_rule.horizon_end.toordinal() - anchor_date.toordinal()
        if span > self.policy.max_recurrence_days:
            raise InvalidRequest(
                f"Recurrence horizon may not exceed {self.policy.max_recurrence_days} days",
                {"horizon_end": recurrence_rule.horizon_end.isoformat()},
            )

        occurrences = list(self.expander.expand(recurrence_rule, time_range))
        if not occurrences:
            raise InvalidRequest(
                "The recurrence rule does not produce any occurrence",
                {"horizon_end": recurrence_rule.horizon_end.isoformat()},
            )
        return occurrences

    def _apply(
        self,
        booking: Booking,
        action: BookingAction,
        role: ActorRole,
        note: Optional[str],
    ) -> Booking:
        now = self._clock()

        with self._repository.transaction(booking.provider_id):
            # Re-read inside the transaction; the copy we authorised against may be stale.
            current = self.ledger.get(booking.id)
            updated = self.ledger.update(
                self.state_machine.transition(current, action, role, now, note)
            )

        logger.info(
            "Booking %s: %s -> %s (%s by %s)",
            updated.id, current.status.value, updated.status.value, action.value, role.value,
        )

        recipient = updated.provider_id if role is ActorRole.CONSUMER else updated.consumer_id
        self._notify(recipient, self._status_event(updated, current.status))
        return updated

    def _status_event(self, booking: Booking, previous: BookingStatus) -> NotificationEvent:
        event_type = STATUS_EVENTS.get(booking.status, "BOOKING_UPDATED")
        day = booking.range.start.format("DD.MM.YYYY")
        return NotificationEvent(
            type=event_type,
            title=event_type.replace("_", " ").title(),
            message=f"Your booking for {day} is now {booking.status.value.lower().replace('_', ' ')}.",
            metadata={
                "booking_id": booking.id,
                "previous_status": previous.value,
                "status": booking.status.value,
                "start": booking.range.start.to_iso8601_string(),
                "end": booking.range.end.to_iso8601_string(),
                "cancellation_note": booking.cancellation_note,
            },
        )

    def _role_of(self, booking: Booking, actor_id: str) -> ActorRole:
        if actor_id == booking.consumer_id:
            return ActorRole.CONSUMER
        if actor_id == booking.provider_id:
            return ActorRole.PROVIDER
        raise Unauthorized("Only the parties to a booking can change it", {"booking_id": booking.id})

    @staticmethod
    def _require_owner(block: AvailabilityBlock, actor_id: str) -> None:
        if block.provider_id != actor_id:
            raise Unauthorized(
                "You can only change your own availability", {"block_id": block.id}
            )

    def _notify(self, user_id: str, event: NotificationEvent) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(user_id, event)
        except Exception:  # delivery problems never fail the booking operation
            logger.warning("Failed to notify %s of %s", user_id, event.type, exc_info=True)

    def _booking_entry(self, booking: Booking) -> CalendarEntry:
        children = len(booking.children)
        return CalendarEntry(
            id=booking.id,
            range=booking.range,
            category=BOOKING_CATEGORIES[booking.status],
            title=f"Booking ({children} child{'ren' if children != 1 else ''})",
            booking_id=booking.id,
        )

    def _block_entry(self, block: AvailabilityBlock) -> CalendarEntry:
        default_title = "Available" if block.kind is AvailabilityKind.AVAILABLE else "Unavailable"
        return CalendarEntry(
            id=f"{block.id}:{block.date.isoformat()}",
            range=block.range,
            category=block.kind.value.lower(),
            title=block.title or default_title,
            block_id=block.id,
            recurrence_rule=block.recurrence_rule,
        )

    def _push_booking(self, booking: Booking) -> Booking:
        entry = self._booking_entry(booking)
        ref = self._push_external(booking.provider_id, entry, booking.external_calendar_ref)
        if ref is None:
            return booking
        return self._attach_ref(booking.provider_id, entry, ref, booking.external_calendar_ref) or booking

    def _push_block(self, block: AvailabilityBlock) -> AvailabilityBlock:
        entry = self._block_entry(block)
        ref = self._push_external(block.provider_id, entry, block.external_calendar_ref)
        if ref is None:
            return block
        return self._attach_ref(block.provider_id, entry, ref, block.external_calendar_ref) or block

    def _current_entry(self, entry: CalendarEntry) -> Optional[Tuple[CalendarEntry, Optional[str]]]:
        """Rebuild ``entry`` and its external reference from current state."""
        try:
            if entry.booking_id is not None:
                booking = self.ledger.get(entry.booking_id)
                if booking.is_active:
                    return self._booking_entry(booking), booking.external_calendar_ref
            elif entry.block_id is not None:
                block = self.availability.get(entry.block_id)
                return self._block_entry(block), block.external_calendar_ref
        except NotFound:
            pass
        return None

    def _attach_ref(
        self,
        owner_id: str,
        entry: CalendarEntry,
        ref: str,
        previous_ref: Optional[str],
    ) -> Union[Booking, AvailabilityBlock, None]:
        """
        Store an external reference on the booking or block behind ``entry``.

        The owner is re-read inside its transaction and only the reference is
        written. A booking that stopped being active or a block that was
        retracted while the push was in flight gets its new event deleted.
        """
        with self._repository.transaction(owner_id):
            try:
                if entry.booking_id is not None:
                    if self.ledger.get(entry.booking_id).is_active:
                        return self.ledger.attach_external_ref(entry.booking_id, ref)
                elif entry.block_id is not None:
                    return self.availability.attach_external_ref(entry.block_id, ref)
            except NotFound:
                pass

        logger.info("Calendar event %s outlived %s; removing it", ref, entry.id)
        if ref != previous_ref:
            self._delete_external(owner_id, ref)
        return None

    def _push_external(
        self,
        owner_id: str,
        entry: CalendarEntry,
        external_ref: Optional[str],
    ) -> Optional[str]:
        if self._calendar is None:
            return None
        try:
            return self._calendar.push_event(owner_id, entry, external_ref)
        except Exception as exc:  # best effort: never roll back the core operation
            logger.warning("Calendar push for %s failed: %s", entry.id, exc)
            self.sync_failures.append(
                SyncFailure("push", owner_id, entry=entry, external_ref=external_ref, error=str(exc))
            )
            return None

    def _delete_external(self, owner_id: str, external_ref: str) -> bool:
        if self._calendar is None:
            return False
        try:
            self._calendar.delete_event(owner_id, external_ref)
            return True
        except Exception as exc:  # best effort: never roll back the core operation
            logger.warning("Calendar delete of %s failed: %s", external_ref, exc)
            self.sync_failures.append(
                SyncFailure("delete", owner_id, external_ref=external_ref, error=str(exc))
            )
            return False
