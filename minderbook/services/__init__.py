"""
Service layer helpers that orchestrate adapters and domain logic.
"""

from .ports import CalendarSyncPort, NotificationEvent, NotificationPort, SchedulingRepository
from .scheduling_engine import SchedulingEngine

__all__ = [
    "CalendarSyncPort",
    "NotificationEvent",
    "NotificationPort",
    "SchedulingEngine",
    "SchedulingRepository",
]
