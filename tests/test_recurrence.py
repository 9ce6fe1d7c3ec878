"""
Tests for RecurrenceExpander.
"""

import pendulum

from minderbook.domain.models import AvailabilityBlock, AvailabilityKind, RecurrenceRule
from minderbook.domain.recurrence import RecurrenceExpander

from conftest import TZ, span


def weekly(*days, until="2025-03-19"):
    return RecurrenceRule(days_of_week=frozenset(days), horizon_end=pendulum.parse(until).date())


class TestRecurrenceExpander:
    """Tests for expanding weekly rules."""

    def test_expand_monday_wednesday(self):
        """Test projecting a Monday anchor onto Mondays and Wednesdays."""
        expander = RecurrenceExpander(TZ)
        anchor = span("2025-03-10 10:00", "2025-03-10 12:00")

        occurrences = list(expander.expand(weekly(0, 2), anchor))

        assert occurrences == [
            span("2025-03-10 10:00", "2025-03-10 12:00"),
            span("2025-03-12 10:00", "2025-03-12 12:00"),
            span("2025-03-17 10:00", "2025-03-17 12:00"),
            span("2025-03-19 10:00", "2025-03-19 12:00"),
        ]

    def test_horizon_is_inclusive(self):
        """Test that an occurrence on the horizon date is produced."""
        expander = RecurrenceExpander(TZ)
        anchor = span("2025-03-10 10:00", "2025-03-10 12:00")

        occurrences = list(expander.expand(weekly(0, until="2025-03-17"), anchor))

        assert [o.start.date() for o in occurrences] == [
            pendulum.date(2025, 3, 10),
            pendulum.date(2025, 3, 17),
        ]

    def test_anchor_not_matching_is_skipped(self):
        """Test that the anchor date only counts if the rule selects it."""
        expander = RecurrenceExpander(TZ)
        anchor = span("2025-03-11 10:00", "2025-03-11 12:00")  # Tuesday

        occurrences = list(expander.expand(weekly(0), anchor))

        assert [o.start.date() for o in occurrences] == [pendulum.date(2025, 3, 17)]

    def test_horizon_before_anchor_yields_nothing(self):
        expander = RecurrenceExpander(TZ)
        anchor = span("2025-03-10 10:00", "2025-03-10 12:00")

        assert list(expander.expand(weekly(0, until="2025-03-01"), anchor)) == []

    def test_expansion_is_restartable(self):
        """Test that expanding twice gives the same sequence."""
        expander = RecurrenceExpander(TZ)
        rule = weekly(0, 2, 4)
        anchor = span("2025-03-10 10:00", "2025-03-10 12:00")

        assert list(expander.expand(rule, anchor)) == list(expander.expand(rule, anchor))

    def test_wall_clock_time_kept_across_dst(self):
        """Test that occurrences keep 10:00 local time across the spring change."""
        expander = RecurrenceExpander(TZ)
        anchor = span("2025-03-24 10:00", "2025-03-24 12:00")

        occurrences = list(expander.expand(weekly(0, until="2025-04-07"), anchor))

        assert [o.start.hour for o in occurrences] == [10, 10, 10]
        assert all(o.duration_minutes() == 120 for o in occurrences)

    def test_overnight_duration_preserved(self):
        expander = RecurrenceExpander(TZ)
        anchor = span("2025-03-10 20:00", "2025-03-11 07:00")

        occurrences = list(expander.expand(weekly(0, until="2025-03-17"), anchor))

        assert occurrences[1] == span("2025-03-17 20:00", "2025-03-18 07:00")


class TestBlockOccurrences:
    """Tests for projecting stored blocks onto dates."""

    def make_block(self, rule=None):
        return AvailabilityBlock(
            id="avail_1",
            provider_id="minder",
            date=pendulum.date(2025, 3, 10),
            range=span("2025-03-10 09:00", "2025-03-10 17:00"),
            kind=AvailabilityKind.AVAILABLE,
            recurrence_rule=rule,
        )

    def test_one_off_block_occurs_on_its_date_only(self):
        expander = RecurrenceExpander(TZ)
        block = self.make_block()

        assert expander.occurrence_on(block, pendulum.date(2025, 3, 10)) is block
        assert expander.occurrence_on(block, pendulum.date(2025, 3, 17)) is None

    def test_recurring_block_projected(self):
        expander = RecurrenceExpander(TZ)
        block = self.make_block(weekly(0, 2))

        occurrence = expander.occurrence_on(block, pendulum.date(2025, 3, 12))

        assert occurrence is not None
        assert occurrence.id == "avail_1"
        assert occurrence.date == pendulum.date(2025, 3, 12)
        assert occurrence.range == span("2025-03-12 09:00", "2025-03-12 17:00")

    def test_recurring_block_not_before_first_date(self):
        expander = RecurrenceExpander(TZ)
        block = self.make_block(weekly(0, 2))

        assert expander.occurrence_on(block, pendulum.date(2025, 3, 5)) is None
        assert expander.occurrence_on(block, pendulum.date(2025, 3, 24)) is None

    def test_occurrences_lists_every_date(self):
        expander = RecurrenceExpander(TZ)
        block = self.make_block(weekly(0, 2))

        dates = [occurrence.date for occurrence in expander.occurrences(block)]

        assert dates == [
            pendulum.date(2025, 3, 10),
            pendulum.date(2025, 3, 12),
            pendulum.date(2025, 3, 17),
            pendulum.date(2025, 3, 19),
        ]
