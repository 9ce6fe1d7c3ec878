"""
Expansion of recurrence rules into concrete occurrences.
"""

from dataclasses import replace
from typing import Iterator

from pendulum import Date, DateTime

from .models import AvailabilityBlock, RecurrenceRule, TimeRange


class RecurrenceExpander:
    """
    Projects an anchor range onto every date a rule selects.

    Expansion is a pure function of its inputs: each call starts again from
    the anchor date, and the sequence always ends at ``rule.horizon_end``.
    """

    def __init__(self, timezone: str):
        self.timezone = timezone

    def expand(self, rule: RecurrenceRule, anchor_range: TimeRange) -> Iterator[TimeRange]:
        """
        Yield one range per matching date between the anchor date and the horizon.

        Each occurrence keeps the anchor's wall-clock start time and its
        duration.
        """
        anchor_start = anchor_range.start.in_timezone(self.timezone)
        duration_seconds = int((anchor_range.end - anchor_range.start).total_seconds())

        current = anchor_start.date()
        while current <= rule.horizon_end:
            if rule.matches(current):
                yield self.project(anchor_start, duration_seconds, current)
            current = current.add(days=1)

    def project(self, anchor_start: DateTime, duration_seconds: int, day: Date) -> TimeRange:
        start = anchor_start.set(year=day.year, month=day.month, day=day.day)
        return TimeRange(start=start, end=start.add(seconds=duration_seconds))

    def occurrence_on(self, block: AvailabilityBlock, day: Date) -> "AvailabilityBlock | None":
        """
        Return the occurrence of ``block`` on ``day``, or None.

        One-off blocks only occur on their own date; recurring blocks occur
        on every matching date from their first date up to the horizon.
        """
        if block.recurrence_rule is None:
            return block if block.date == day else None

        if day < block.date or not block.recurrence_rule.matches(day):
            return None

        if day == block.date:
            return block

        anchor_start = block.range.start.in_timezone(self.timezone)
        duration_seconds = int((block.range.end - block.range.start).total_seconds())
        return _replace_occurrence(block, day, self.project(anchor_start, duration_seconds, day))

    def occurrences(self, block: AvailabilityBlock) -> Iterator[AvailabilityBlock]:
        """Yield every occurrence of a block, the first one included."""
        if block.recurrence_rule is None:
            yield block
            return

        yield block
        for occurrence_range in self.expand(block.recurrence_rule, block.range):
            day = occurrence_range.start.in_timezone(self.timezone).date()
            if day != block.date:
                yield _replace_occurrence(block, day, occurrence_range)


def _replace_occurrence(block: AvailabilityBlock, day: Date, occurrence_range: TimeRange) -> AvailabilityBlock:
    return replace(block, date=day, range=occurrence_range)
