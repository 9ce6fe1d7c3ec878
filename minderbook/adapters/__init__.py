"""
Adapters layer - Persistence, notification and external calendar integrations.
"""

from .calendar_sync import HttpCalendarSync
from .json_repository import JsonFileRepository
from .memory_repository import InMemoryRepository
from .notifications import LoggingNotifier

__all__ = ["HttpCalendarSync", "JsonFileRepository", "InMemoryRepository", "LoggingNotifier"]
