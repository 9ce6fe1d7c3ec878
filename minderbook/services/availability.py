"""
The availability store: a provider's declared AVAILABLE/UNAVAILABLE blocks.
"""

import logging
from dataclasses import replace
from typing import Iterator, List

from pendulum import Date

from ..domain.exceptions import (
    BlockInUse,
    BookingOverlap,
    InvalidRange,
    InvalidRequest,
    NotFound,
    OverlappingAvailability,
)
from ..domain.models import (
    AvailabilityBlock,
    AvailabilityKind,
    Booking,
    SchedulingPolicy,
    TimeRange,
    day_range,
)
from ..domain.recurrence import RecurrenceExpander
from .ledger import BookingLedger
from .ports import SchedulingRepository

logger = logging.getLogger(__name__)


class AvailabilityStore:
    """
    Holds declared availability and guards the invariants around it.

    - No two blocks of the same kind may overlap on the same date.
    - An UNAVAILABLE block may not cover an active booking.
    - An AVAILABLE block may not be retracted while an active booking uses it.

    Recurring blocks are stored once and expanded on read, so every check
    considers each of their occurrences.
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        ledger: BookingLedger,
        expander: RecurrenceExpander,
        policy: SchedulingPolicy,
    ):
        self._repository = repository
        self._ledger = ledger
        self._expander = expander
        self._policy = policy

    def get(self, block_id: str) -> AvailabilityBlock:
        block = self._repository.get_block(block_id)
        if block is None:
            raise NotFound(f"Availability block {block_id} not found", {"block_id": block_id})
        return block

    def blocks_covering(self, provider_id: str, day: Date) -> Iterator[AvailabilityBlock]:
        """Yield the occurrences of the provider's blocks that fall on ``day``."""
        for block in self._repository.load_availability(provider_id):
            occurrence = self._expander.occurrence_on(block, day)
            if occurrence is not None:
                yield occurrence

    def blocks_between(self, provider_id: str, window: TimeRange) -> List[AvailabilityBlock]:
        """Return block occurrences overlapping ``window``, sorted by start."""
        occurrences = [
            block
            for day in window.dates(self._policy.timezone)
            for block in self.blocks_covering(provider_id, day)
            if block.range.overlaps(window)
        ]
        return sorted(occurrences, key=lambda block: block.range.start)

    def add_block(self, block: AvailabilityBlock) -> str:
        """
        Declare a new block.

        Raises:
            InvalidRange: If the block does not fit inside its date
            InvalidRequest: If the recurrence horizon is out of bounds
            OverlappingAvailability: If a block of the same kind overlaps
            BookingOverlap: If an UNAVAILABLE block covers an active booking
        """
        self._validate(block)
        self._guard_declaration(block)
        self._repository.save_availability(block)
        logger.info(
            "Provider %s declared %s block %s on %s",
            block.provider_id, block.kind.value, block.id, block.date.isoformat(),
        )
        return block.id

    def replace_block(self, block: AvailabilityBlock) -> AvailabilityBlock:
        """
        Replace an existing block with an edited version.

        Bookings that depended on an AVAILABLE block must still fall inside
        the edited block, otherwise the edit is refused.

        Raises:
            NotFound: If the block does not exist
            BlockInUse: If the edit would orphan an active booking
            plus everything ``add_block`` raises
        """
        existing = self.get(block.id)
        self._validate(block)

        if existing.kind is AvailabilityKind.AVAILABLE:
            orphaned = [
                booking
                for booking in self._dependent_bookings(existing)
                if not self._still_covered(existing, block, booking)
            ]
            if orphaned:
                raise BlockInUse(
                    "Cannot change availability that active bookings depend on",
                    sorted(booking.id for booking in orphaned),
                )

        self._guard_declaration(block)
        self._repository.save_availability(block)
        logger.info("Provider %s updated block %s", block.provider_id, block.id)
        return block

    def remove_block(self, block_id: str) -> AvailabilityBlock:
        """
        Retract a block.

        UNAVAILABLE blocks can always be removed; AVAILABLE blocks only when
        no PENDING/CONFIRMED booking overlaps any of their occurrences.

        Raises:
            NotFound: If the block does not exist
            BlockInUse: If active bookings depend on the block
        """
        block = self.get(block_id)

        if block.kind is AvailabilityKind.AVAILABLE:
            dependents = self._dependent_bookings(block)
            if dependents:
                raise BlockInUse(
                    "Cannot delete availability as there are active bookings in this time slot",
                    sorted(booking.id for booking in dependents),
                )

        self._repository.delete_availability(block_id)
        logger.info("Provider %s retracted block %s", block.provider_id, block_id)
        return block

    def attach_external_ref(self, block_id: str, external_ref: str) -> AvailabilityBlock:
        block = replace(self.get(block_id), external_calendar_ref=external_ref)
        self._repository.save_availability(block)
        return block

    def _validate(self, block: AvailabilityBlock) -> None:
        tz = self._policy.timezone

        if not day_range(block.date, tz).contains(block.range):
            raise InvalidRange(
                f"Availability block {block.range} must lie within {block.date.isoformat()}",
                {"date": block.date.isoformat()},
            )

        rule = block.recurrence_rule
        if rule is None:
            return

        if rule.horizon_end < block.date:
            raise InvalidRequest(
                "Recurrence horizon ends before the first occurrence",
                {"horizon_end": rule.horizon_end.isoformat()},
            )
        if rule.horizon_end.toordinal() - block.date.toordinal() > self._policy.max_recurrence_days:
            raise InvalidRequest(
                f"Recurrence horizon may not exceed {self._policy.max_recurrence_days} days",
                {"horizon_end": rule.horizon_end.isoformat()},
            )

    def _guard_declaration(self, block: AvailabilityBlock) -> None:
        for occurrence in self._expander.occurrences(block):
            clashing = sorted(
                other.id
                for other in self.blocks_covering(block.provider_id, occurrence.date)
                if other.id != block.id
                and other.kind is block.kind
                and other.range.overlaps(occurrence.range)
            )
            if clashing:
                raise OverlappingAvailability(
                    f"Overlapping {block.kind.value} blocks on {occurrence.date.isoformat()}",
                    clashing,
                )

            if block.kind is AvailabilityKind.UNAVAILABLE:
                bookings = self._ledger.conflicts(block.provider_id, occurrence.range)
                if bookings:
                    raise BookingOverlap(
                        "Cannot block this time slot as there are existing bookings",
                        sorted(booking.id for booking in bookings),
                    )

    def _dependent_bookings(self, block: AvailabilityBlock) -> List[Booking]:
        dependents = {}
        for occurrence in self._expander.occurrences(block):
            for booking in self._ledger.conflicts(block.provider_id, occurrence.range):
                dependents[booking.id] = booking
        return list(dependents.values())

    def _still_covered(
        self,
        existing: AvailabilityBlock,
        edited: AvailabilityBlock,
        booking: Booking,
    ) -> bool:
        """Check that the part of ``booking`` the old block covered is still covered."""
        if edited.kind is not AvailabilityKind.AVAILABLE:
            return False

        new_ranges = [occurrence.range for occurrence in self._expander.occurrences(edited)]
        for occurrence in self._expander.occurrences(existing):
            portion = occurrence.range.intersect(booking.range)
            if portion is None:
                continue
            if not any(window.contains(portion) for window in new_ranges):
                return False
        return True
