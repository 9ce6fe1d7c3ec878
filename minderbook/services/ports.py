"""
Protocols describing the collaborators the scheduling engine depends on.

The engine receives implementations through its constructor; the adapters
package provides in-memory, file-backed, logging and HTTP versions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ContextManager, Dict, Iterable, List, Optional, Protocol

from ..domain.models import AvailabilityBlock, Booking, BookingStatus, CalendarEntry


class SchedulingRepository(Protocol):
    """
    Storage for bookings and availability blocks.

    ``transaction(provider_id)`` must give serializable isolation for all
    reads and writes of that provider performed inside it. Failures unrelated
    to business rules are raised as ``PersistenceError``.
    """

    def transaction(self, provider_id: str) -> ContextManager[None]:
        """Open a transaction scoped to one provider's calendar."""

    def load_bookings(
        self,
        *,
        provider_id: Optional[str] = None,
        consumer_id: Optional[str] = None,
        statuses: Optional[Iterable[BookingStatus]] = None,
    ) -> List[Booking]:
        """Return bookings matching every given filter."""

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        """Return a booking by id, or None."""

    def save_booking(self, booking: Booking) -> None:
        """Insert or replace a booking."""

    def load_availability(self, provider_id: str) -> List[AvailabilityBlock]:
        """Return every block a provider has declared."""

    def get_block(self, block_id: str) -> Optional[AvailabilityBlock]:
        """Return a block by id, or None."""

    def save_availability(self, block: AvailabilityBlock) -> None:
        """Insert or replace a block."""

    def delete_availability(self, block_id: str) -> None:
        """Delete a block."""


@dataclass(frozen=True)
class NotificationEvent:
    """Something a user should hear about."""
    type: str
    title: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class NotificationPort(Protocol):
    """Fire-and-forget delivery of notifications."""

    def notify(self, user_id: str, event: NotificationEvent) -> None:
        """Deliver ``event`` to ``user_id``."""


class CalendarSyncPort(Protocol):
    """Best-effort mirror of calendar entries in an external calendar."""

    def push_event(
        self,
        owner_id: str,
        entry: CalendarEntry,
        external_ref: Optional[str] = None,
    ) -> str:
        """Create (or update, when ``external_ref`` is given) an event; return its reference."""

    def delete_event(self, owner_id: str, external_ref: str) -> None:
        """Delete a previously pushed event."""
