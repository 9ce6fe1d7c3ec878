"""
Shared fixtures for the test suite.
"""

from typing import List, Optional, Tuple

import pendulum
import pytest

from minderbook.adapters.memory_repository import InMemoryRepository
from minderbook.domain.exceptions import CalendarSyncError
from minderbook.domain.models import CalendarEntry, SchedulingPolicy, TimeRange
from minderbook.services.ports import NotificationEvent
from minderbook.services.scheduling_engine import SchedulingEngine

TZ = "Europe/Dublin"


def at(value: str):
    """Parse a local Dublin timestamp."""
    return pendulum.parse(value, tz=TZ)


def span(start: str, end: str) -> TimeRange:
    return TimeRange(start=at(start), end=at(end))


class FakeClock:
    """Scheduling clock the tests can move by hand."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now.add(**kwargs)


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, NotificationEvent]] = []

    def notify(self, user_id: str, event: NotificationEvent) -> None:
        if self.fail:
            raise RuntimeError("mail server unreachable")
        self.sent.append((user_id, event))

    def types_for(self, user_id: str) -> List[str]:
        return [event.type for recipient, event in self.sent if recipient == user_id]


class FakeCalendar:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.pushed: List[Tuple[str, CalendarEntry, Optional[str]]] = []
        self.deleted: List[Tuple[str, str]] = []
        self._counter = 0

    def push_event(self, owner_id: str, entry: CalendarEntry, external_ref: Optional[str] = None) -> str:
        if self.fail:
            raise CalendarSyncError("calendar API returned 503")
        self.pushed.append((owner_id, entry, external_ref))
        if external_ref:
            return external_ref
        self._counter += 1
        return f"evt-{self._counter}"

    def delete_event(self, owner_id: str, external_ref: str) -> None:
        if self.fail:
            raise CalendarSyncError("calendar API returned 503")
        self.deleted.append((owner_id, external_ref))


@pytest.fixture
def clock():
    # Monday morning, one week before the dates most tests book.
    return FakeClock(at("2025-03-03 08:00"))


@pytest.fixture
def policy():
    return SchedulingPolicy(timezone=TZ)


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def engine(repository, notifier, calendar, policy, clock):
    return SchedulingEngine(
        repository,
        notifier=notifier,
        calendar=calendar,
        policy=policy,
        clock=clock,
    )
