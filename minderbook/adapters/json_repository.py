"""
File-backed repository: the in-memory repository persisted as JSON.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import pendulum
from pendulum import Date, DateTime

from ..domain.exceptions import PersistenceError
from ..domain.models import (
    AvailabilityBlock,
    AvailabilityKind,
    Booking,
    BookingStatus,
    RecurrenceFrequency,
    RecurrenceRule,
    TimeRange,
)
from .memory_repository import InMemoryRepository

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class JsonFileRepository(InMemoryRepository):
    """
    Keeps state in memory and writes it to ``path`` after every commit.

    Writes go to a temporary file that replaces the target, so a crash never
    leaves a half-written store behind.
    """

    def __init__(self, path: Path, timezone: str = "Europe/Dublin"):
        super().__init__()
        self.path = Path(path)
        self.timezone = timezone
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug("No data file at %s; starting empty", self.path)
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Could not read data file {self.path}: {exc}") from exc

        try:
            for raw in data.get("bookings", []):
                booking = booking_from_dict(raw, self.timezone)
                self._bookings[booking.id] = booking
            for raw in data.get("availability", []):
                block = block_from_dict(raw, self.timezone)
                self._blocks[block.id] = block
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Malformed data file {self.path}: {exc}") from exc

        logger.debug(
            "Loaded %d bookings and %d blocks from %s",
            len(self._bookings), len(self._blocks), self.path,
        )

    def _commit(self) -> None:
        with self._guard:
            data = {
                "version": SCHEMA_VERSION,
                "bookings": [booking_to_dict(b) for b in self._bookings.values()],
                "availability": [block_to_dict(b) for b in self._blocks.values()],
            }

        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise PersistenceError(f"Could not write data file {self.path}: {exc}") from exc


def _dt(value: Optional[DateTime]) -> Optional[str]:
    return value.to_iso8601_string() if value is not None else None


def _parse_dt(value: Optional[str], timezone: str) -> Optional[DateTime]:
    if value is None:
        return None
    return pendulum.parse(value).in_timezone(timezone)


def _parse_date(value: str) -> Date:
    return pendulum.from_format(value, "YYYY-MM-DD").date()


def rule_to_dict(rule: Optional[RecurrenceRule]) -> Optional[Dict[str, Any]]:
    if rule is None:
        return None
    return {
        "frequency": rule.frequency.value,
        "daysOfWeek": sorted(rule.days_of_week),
        "horizonEnd": rule.horizon_end.isoformat(),
    }


def rule_from_dict(raw: Optional[Dict[str, Any]]) -> Optional[RecurrenceRule]:
    if raw is None:
        return None
    return RecurrenceRule(
        days_of_week=frozenset(raw["daysOfWeek"]),
        horizon_end=_parse_date(raw["horizonEnd"]),
        frequency=RecurrenceFrequency(raw.get("frequency", "WEEKLY")),
    )


def booking_to_dict(booking: Booking) -> Dict[str, Any]:
    return {
        "id": booking.id,
        "consumerId": booking.consumer_id,
        "providerId": booking.provider_id,
        "start": _dt(booking.range.start),
        "end": _dt(booking.range.end),
        "status": booking.status.value,
        "createdAt": _dt(booking.created_at),
        "updatedAt": _dt(booking.updated_at),
        "children": list(booking.children),
        "isEmergency": booking.is_emergency,
        "recurrencePattern": rule_to_dict(booking.recurrence_pattern),
        "seriesId": booking.series_id,
        "cancellationNote": booking.cancellation_note,
        "cancelledAt": _dt(booking.cancelled_at),
        "externalCalendarRef": booking.external_calendar_ref,
    }


def booking_from_dict(raw: Dict[str, Any], timezone: str) -> Booking:
    return Booking(
        id=raw["id"],
        consumer_id=raw["consumerId"],
        provider_id=raw["providerId"],
        range=TimeRange(
            start=_parse_dt(raw["start"], timezone),
            end=_parse_dt(raw["end"], timezone),
        ),
        status=BookingStatus(raw["status"]),
        created_at=_parse_dt(raw["createdAt"], timezone),
        updated_at=_parse_dt(raw["updatedAt"], timezone),
        children=tuple(raw.get("children", [])),
        is_emergency=bool(raw.get("isEmergency", False)),
        recurrence_pattern=rule_from_dict(raw.get("recurrencePattern")),
        series_id=raw.get("seriesId"),
        cancellation_note=raw.get("cancellationNote"),
        cancelled_at=_parse_dt(raw.get("cancelledAt"), timezone),
        external_calendar_ref=raw.get("externalCalendarRef"),
    )


def block_to_dict(block: AvailabilityBlock) -> Dict[str, Any]:
    return {
        "id": block.id,
        "providerId": block.provider_id,
        "date": block.date.isoformat(),
        "start": _dt(block.range.start),
        "end": _dt(block.range.end),
        "type": block.kind.value,
        "recurrenceRule": rule_to_dict(block.recurrence_rule),
        "externalCalendarRef": block.external_calendar_ref,
        "title": block.title,
        "description": block.description,
    }


def block_from_dict(raw: Dict[str, Any], timezone: str) -> AvailabilityBlock:
    return AvailabilityBlock(
        id=raw["id"],
        provider_id=raw["providerId"],
        date=_parse_date(raw["date"]),
        range=TimeRange(
            start=_parse_dt(raw["start"], timezone),
            end=_parse_dt(raw["end"], timezone),
        ),
        kind=AvailabilityKind(raw["type"]),
        recurrence_rule=rule_from_dict(raw.get("recurrenceRule")),
        external_calendar_ref=raw.get("externalCalendarRef"),
        title=raw.get("title"),
        description=raw.get("description"),
    )
