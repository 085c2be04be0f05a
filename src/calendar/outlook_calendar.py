"""
Microsoft Outlook calendar integration through the Graph REST API
"""
import logging
import re
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, List, Optional

import requests

from config.settings import Config
from src.calendar.calendar_manager import CalendarProvider
from src.core.errors import CalendarProviderError, ExternalObjectMissing
from src.core.models import CalendarEvent

logger = logging.getLogger(__name__)

GRAPH_DAYS = {
    "MO": "monday", "TU": "tuesday", "WE": "wednesday", "TH": "thursday",
    "FR": "friday", "SA": "saturday", "SU": "sunday",
}
FLEXIBLE_SHOW_AS = ("free", "tentative", "workingElsewhere")


def _parse_graph_datetime(value: Dict[str, str]) -> datetime:
    """Graph returns naive UTC timestamps with 7 fractional digits"""
    stamp = value["dateTime"].split(".")[0]
    return datetime.fromisoformat(stamp).replace(tzinfo=dt_timezone.utc)


def _format_graph_datetime(value: datetime) -> Dict[str, str]:
    return {
        "dateTime": value.astimezone(dt_timezone.utc).strftime("%Y-%m-%dT%H:%M:%S"),
        "timeZone": "UTC"
    }


def graph_recurrence(rrule: str, start: datetime) -> Optional[Dict[str, Any]]:
    """Translate the RRULEs the extractor produces into a Graph patternedRecurrence"""
    freq = re.search(r"FREQ=(\w+)", rrule)
    if not freq:
        return None
    byday = re.search(r"BYDAY=([A-Z,]+)", rrule)
    local_start = start.astimezone(dt_timezone.utc)

    pattern = {"interval": 1}
    frequency = freq.group(1)
    if frequency == "DAILY":
        pattern["type"] = "daily"
    elif frequency == "WEEKLY":
        pattern["type"] = "weekly"
        codes = byday.group(1).split(",") if byday else [list(GRAPH_DAYS)[local_start.weekday()]]
        pattern["daysOfWeek"] = [GRAPH_DAYS[code] for code in codes]
    elif frequency == "MONTHLY":
        pattern.update({"type": "absoluteMonthly", "dayOfMonth": local_start.day})
    elif frequency == "YEARLY":
        pattern.update({"type": "absoluteYearly", "dayOfMonth": local_start.day, "month": local_start.month})
    else:
        return None

    return {
        "pattern": pattern,
        "range": {"type": "noEnd", "startDate": local_start.date().isoformat()}
    }


class OutlookCalendarProvider(CalendarProvider):
    """Outlook / Microsoft 365 calendar via Microsoft Graph"""

    def __init__(self, name: str, access_token: str, timeout: float = None,
                 base_url: str = None, session: requests.Session = None):
        self.config = Config()
        self.name = name
        self.access_token = access_token
        self.timeout = timeout or self.config.PROVIDER_TIMEOUT
        self.base_url = (base_url or self.config.GRAPH_BASE_URL).rstrip("/")
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Prefer": 'outlook.timezone="UTC"'
        }

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"Network error talking to {self.name}: {e}")
            raise CalendarProviderError(f"Outlook unreachable: {e}", provider=self.name) from e
        return response

    def list_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        """Get calendar view entries in a range, following @odata.nextLink"""
        logger.info(f"📅 Fetching events from {self.name}: {start.isoformat()} to {end.isoformat()}")

        url = f"{self.base_url}/me/calendarView"
        params = {
            "startDateTime": start.astimezone(dt_timezone.utc).isoformat(),
            "endDateTime": end.astimezone(dt_timezone.utc).isoformat(),
            "$select": "id,subject,start,end,attendees,showAs,isCancelled,isAllDay",
            "$top": 100
        }

        events = []
        while url:
            response = self._request("GET", url, params=params)
            if response.status_code != 200:
                raise CalendarProviderError(
                    f"Outlook returned {response.status_code}: {response.text[:200]}", provider=self.name
                )
            payload = response.json()
            for item in payload.get("value", []):
                event = self._to_calendar_event(item)
                if event is not None:
                    events.append(event)
            url = payload.get("@odata.nextLink")
            params = None

        logger.info(f"✅ Retrieved {len(events)} events from {self.name}")
        return events

    def _to_calendar_event(self, item: Dict[str, Any]) -> Optional[CalendarEvent]:
        if item.get("isCancelled"):
            return None
        try:
            start = _parse_graph_datetime(item["start"])
            end = _parse_graph_datetime(item["end"])
        except (KeyError, ValueError) as e:
            logger.warning(f"Skipping Outlook event {item.get('id')} with unreadable times: {e}")
            return None

        attendee_count = max(1, len(item.get("attendees") or []))
        flexible = (item.get("isAllDay", False)
                    or item.get("showAs") in FLEXIBLE_SHOW_AS
                    or attendee_count <= 1)
        return CalendarEvent(
            event_id=item.get("id", ""),
            title=item.get("subject") or "Untitled Event",
            start=start,
            end=end,
            source_calendar=self.name,
            flexible=flexible,
            attendee_count=attendee_count
        )

    def create_event(self, title: str, start: datetime, end: datetime, description: str = None,
                     recurrence: str = None, attendees: List[str] = None) -> str:
        body = {
            "subject": title,
            "start": _format_graph_datetime(start),
            "end": _format_graph_datetime(end),
        }
        if description:
            body["body"] = {"contentType": "text", "content": description}
        if recurrence:
            pattern = graph_recurrence(recurrence, start)
            if pattern is None:
                raise CalendarProviderError(f"Unsupported recurrence {recurrence}", provider=self.name)
            body["recurrence"] = pattern
        emails = [a for a in (attendees or []) if "@" in a]
        if emails:
            body["attendees"] = [{"emailAddress": {"address": email}, "type": "required"} for email in emails]

        response = self._request("POST", f"{self.base_url}/me/events", json=body)
        if response.status_code not in (200, 201):
            logger.error(f"❌ Outlook rejected event: {response.status_code} - {response.text[:200]}")
            raise CalendarProviderError(f"Outlook returned {response.status_code}", provider=self.name)

        event_id = response.json()["id"]
        logger.info(f"📅 Event created on {self.name}: {event_id}")
        return event_id

    def cancel_event(self, event_id: str) -> None:
        response = self._request("DELETE", f"{self.base_url}/me/events/{event_id}")
        if response.status_code in (404, 410):
            raise ExternalObjectMissing(f"Event {event_id} no longer exists", provider=self.name)
        if response.status_code not in (200, 204):
            raise CalendarProviderError(f"Outlook returned {response.status_code}", provider=self.name)
        logger.info(f"🗑️ Event {event_id} deleted from {self.name}")
