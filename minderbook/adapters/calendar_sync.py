"""
External calendar adapter speaking the Google Calendar v3 REST API.
"""

import logging
from typing import Any, Dict, Optional

import requests

from ..domain.exceptions import CalendarSyncError
from ..domain.models import CalendarEntry, RecurrenceRule

logger = logging.getLogger(__name__)

WEEKDAY_CODES = ["MO", "TU", "WE", "TH", "FR", "SA", "SU"]

# Google Calendar colour ids per entry category.
CATEGORY_COLORS = {
    "available": "10",
    "unavailable": "11",
    "confirmed": "9",
    "pending": "5",
}


class HttpCalendarSync:
    """
    Mirrors calendar entries into one external calendar.

    Uses ``POST /calendars/{id}/events`` to create, ``PUT`` on the event to
    update and ``DELETE`` to remove. Every failure is raised as
    ``CalendarSyncError``; the scheduling engine decides what to do with it.
    """

    def __init__(
        self,
        base_url: str,
        calendar_id: str,
        access_token: str,
        timezone: str = "Europe/Dublin",
        timeout_seconds: float = 10,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.calendar_id = calendar_id
        self.timezone = timezone
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    @property
    def events_url(self) -> str:
        return f"{self.base_url}/calendars/{self.calendar_id}/events"

    def push_event(
        self,
        owner_id: str,
        entry: CalendarEntry,
        external_ref: Optional[str] = None,
    ) -> str:
        """
        Create or update the external event for ``entry``.

        Returns:
            The external event id

        Raises:
            CalendarSyncError: If the API call fails
        """
        payload = self._build_event(owner_id, entry)

        try:
            if external_ref:
                response = self.session.put(
                    f"{self.events_url}/{external_ref}",
                    headers=self.headers,
                    json=payload,
                    timeout=self.timeout_seconds,
                )
            else:
                response = self.session.post(
                    self.events_url,
                    headers=self.headers,
                    json=payload,
                    timeout=self.timeout_seconds,
                )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise CalendarSyncError(f"Failed to push event {entry.id} to external calendar: {e}") from e

        event_id = data.get("id") if isinstance(data, dict) else None
        if not event_id:
            raise CalendarSyncError(f"External calendar returned no event id for {entry.id}")

        logger.debug("Pushed %s to external calendar as %s", entry.id, event_id)
        return event_id

    def delete_event(self, owner_id: str, external_ref: str) -> None:
        """
        Delete an external event. Events that are already gone count as deleted.

        Raises:
            CalendarSyncError: If the API call fails
        """
        try:
            response = self.session.delete(
                f"{self.events_url}/{external_ref}",
                headers=self.headers,
                timeout=self.timeout_seconds,
            )
            if response.status_code in (404, 410):
                logger.debug("External event %s was already deleted", external_ref)
                return
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise CalendarSyncError(f"Failed to delete external event {external_ref}: {e}") from e

    def _build_event(self, owner_id: str, entry: CalendarEntry) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "summary": entry.title,
            "description": f"Childminder {entry.category} time slot",
            "start": {
                "dateTime": entry.range.start.to_iso8601_string(),
                "timeZone": self.timezone,
            },
            "end": {
                "dateTime": entry.range.end.to_iso8601_string(),
                "timeZone": self.timezone,
            },
            "extendedProperties": {
                "private": {"ownerId": owner_id, "entryId": entry.id},
            },
        }

        color = CATEGORY_COLORS.get(entry.category)
        if color:
            event["colorId"] = color

        if entry.recurrence_rule is not None:
            event["recurrence"] = [to_rrule(entry.recurrence_rule)]

        return event


def to_rrule(rule: RecurrenceRule) -> str:
    """Render a recurrence rule as an RFC 5545 RRULE line."""
    days = ",".join(WEEKDAY_CODES[day] for day in sorted(rule.days_of_week))
    until = rule.horizon_end.strftime("%Y%m%d")
    return f"RRULE:FREQ={rule.frequency.value};BYDAY={days};UNTIL={until}"
