"""
In-memory repository for bookings and availability.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from ..domain.models import AvailabilityBlock, Booking, BookingStatus

logger = logging.getLogger(__name__)


class InMemoryRepository:
    """
    Dict-backed repository.

    ``transaction(provider_id)`` holds a per-provider lock for its whole body,
    which serialises competing writers for the same calendar inside one
    process, and restores that provider's state if the body raises.
    Subclasses persist state by overriding ``_commit``.
    """

    def __init__(self) -> None:
        self._bookings: Dict[str, Booking] = {}
        self._blocks: Dict[str, AvailabilityBlock] = {}
        self._guard = threading.RLock()
        self._provider_locks: Dict[str, threading.RLock] = {}
        self._local = threading.local()

    @contextmanager
    def transaction(self, provider_id: str) -> Iterator[None]:
        with self._lock_for(provider_id):
            depth = self._depth
            snapshot = self._snapshot(provider_id) if depth == 0 else None
            self._local.depth = depth + 1
            try:
                yield
                if depth == 0:
                    self._commit()
            except BaseException:
                if snapshot is not None:
                    logger.debug("Rolling back transaction for provider %s", provider_id)
                    self._restore(provider_id, snapshot)
                raise
            finally:
                self._local.depth = depth

    def load_bookings(
        self,
        *,
        provider_id: Optional[str] = None,
        consumer_id: Optional[str] = None,
        statuses: Optional[Iterable[BookingStatus]] = None,
    ) -> List[Booking]:
        wanted = set(statuses) if statuses is not None else None
        with self._guard:
            bookings = list(self._bookings.values())
        return [
            booking
            for booking in bookings
            if (provider_id is None or booking.provider_id == provider_id)
            and (consumer_id is None or booking.consumer_id == consumer_id)
            and (wanted is None or booking.status in wanted)
        ]

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._guard:
            return self._bookings.get(booking_id)

    def save_booking(self, booking: Booking) -> None:
        with self._guard:
            self._bookings[booking.id] = booking
        self._autocommit()

    def load_availability(self, provider_id: str) -> List[AvailabilityBlock]:
        with self._guard:
            return [block for block in self._blocks.values() if block.provider_id == provider_id]

    def get_block(self, block_id: str) -> Optional[AvailabilityBlock]:
        with self._guard:
            return self._blocks.get(block_id)

    def save_availability(self, block: AvailabilityBlock) -> None:
        with self._guard:
            self._blocks[block.id] = block
        self._autocommit()

    def delete_availability(self, block_id: str) -> None:
        with self._guard:
            self._blocks.pop(block_id, None)
        self._autocommit()

    def _commit(self) -> None:
        """Hook called after a successful outermost transaction."""

    @property
    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    def _autocommit(self) -> None:
        if self._depth == 0:
            self._commit()

    def _lock_for(self, provider_id: str) -> threading.RLock:
        with self._guard:
            lock = self._provider_locks.get(provider_id)
            if lock is None:
                lock = self._provider_locks[provider_id] = threading.RLock()
            return lock

    def _snapshot(self, provider_id: str) -> Tuple[Dict[str, Booking], Dict[str, AvailabilityBlock]]:
        with self._guard:
            bookings = {k: v for k, v in self._bookings.items() if v.provider_id == provider_id}
            blocks = {k: v for k, v in self._blocks.items() if v.provider_id == provider_id}
        return bookings, blocks

    def _restore(
        self,
        provider_id: str,
        snapshot: Tuple[Dict[str, Booking], Dict[str, AvailabilityBlock]],
    ) -> None:
        bookings, blocks = snapshot
        with self._guard:
            self._bookings = {k: v for k, v in self._bookings.items() if v.provider_id != provider_id}
            self._bookings.update(bookings)
            self._blocks = {k: v for k, v in self._blocks.items() if v.provider_id != provider_id}
            self._blocks.update(blocks)
