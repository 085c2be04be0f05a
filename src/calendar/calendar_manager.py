"""
Calendar provider interface and the Google Calendar integration
"""
import logging
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from config.settings import Config
from src.core.errors import CalendarProviderError, ExternalObjectMissing
from src.core.models import CalendarEvent

logger = logging.getLogger(__name__)

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/tasks",
]


def load_google_credentials(token_path: str) -> Credentials:
    """Load pre-authorized Google credentials from a token file"""
    try:
        return Credentials.from_authorized_user_file(token_path, GOOGLE_SCOPES)
    except (OSError, ValueError) as e:
        logger.error(f"❌ Failed to load credentials from {token_path}: {e}")
        raise CalendarProviderError(f"Unusable Google token file {token_path}: {e}") from e


def build_google_service(api: str, version: str, credentials: Credentials, timeout: float):
    """Build a Google API client whose HTTP calls honour a timeout"""
    http = google_auth_httplib2.AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
    return build(api, version, http=http, cache_discovery=False)


def http_status(error: HttpError) -> Optional[int]:
    return getattr(error.resp, "status", None)


class CalendarProvider:
    """Interface every calendar backend implements"""

    name = "calendar"

    def list_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        """Events intersecting [start, end)"""
        raise NotImplementedError

    def create_event(self, title: str, start: datetime, end: datetime, description: str = None,
                     recurrence: str = None, attendees: List[str] = None) -> str:
        """Create an event and return its provider id"""
        raise NotImplementedError

    def cancel_event(self, event_id: str) -> None:
        """Delete an event; ExternalObjectMissing if it is already gone"""
        raise NotImplementedError


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar read/write access for one connected calendar"""

    def __init__(self, name: str, token_path: str = None, credentials: Credentials = None,
                 calendar_id: str = "primary", timeout: float = None, service=None):
        self.config = Config()
        self.name = name
        self.token_path = token_path
        self.calendar_id = calendar_id
        self.timeout = timeout or self.config.PROVIDER_TIMEOUT
        self._credentials = credentials
        self._service = service

    def _get_credentials(self) -> Credentials:
        """Get Google Calendar credentials"""
        if self._credentials is None:
            if not self.token_path:
                raise CalendarProviderError(f"No credentials configured for {self.name}", provider=self.name)
            self._credentials = load_google_credentials(self.token_path)
        return self._credentials

    def _build_calendar_service(self):
        """Build Google Calendar service"""
        if self._service is not None:
            return self._service
        # httplib2 connections are not thread-safe, so every call gets its own client
        return build_google_service("calendar", "v3", self._get_credentials(), self.timeout)

    def list_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        """Get calendar events in a range, following pagination"""
        logger.info(f"📅 Fetching events from {self.name}: {start.isoformat()} to {end.isoformat()}")

        items = []
        page_token = None
        try:
            calendar_service = self._build_calendar_service()
            while True:
                events_result = calendar_service.events().list(
                    calendarId=self.calendar_id,
                    timeMin=start.isoformat(),
                    timeMax=end.isoformat(),
                    singleEvents=True,
                    orderBy='startTime',
                    maxResults=250,
                    pageToken=page_token
                ).execute()
                items.extend(events_result.get('items', []))
                page_token = events_result.get('nextPageToken')
                if not page_token:
                    break
        except HttpError as e:
            logger.error(f"HTTP error getting events from {self.name}: {e}")
            raise CalendarProviderError(f"Google Calendar error: {e}", provider=self.name) from e
        except (OSError, httplib2.HttpLib2Error) as e:
            logger.error(f"Network error getting events from {self.name}: {e}")
            raise CalendarProviderError(f"Google Calendar unreachable: {e}", provider=self.name) from e

        calendar_events = []
        for item in items:
            event = self._to_calendar_event(item)
            if event is not None:
                calendar_events.append(event)

        logger.info(f"✅ Retrieved {len(calendar_events)} events from {self.name}")
        return calendar_events

    def _to_calendar_event(self, item: Dict[str, Any]) -> Optional[CalendarEvent]:
        """Convert a Google event resource, skipping cancelled or declined ones"""
        if item.get('status') == 'cancelled':
            return None

        attendees = item.get('attendees', [])
        for attendee in attendees:
            if attendee.get('self') and attendee.get('responseStatus') == 'declined':
                return None

        start_info = item.get('start', {})
        end_info = item.get('end', {})
        all_day = 'date' in start_info and 'dateTime' not in start_info
        try:
            if all_day:
                tz = ZoneInfo(start_info.get('timeZone') or self.config.DEFAULT_TIMEZONE)
                start = datetime.combine(date.fromisoformat(start_info['date']), time(0), tzinfo=tz)
                end = datetime.combine(date.fromisoformat(end_info['date']), time(0), tzinfo=tz)
            else:
                start = datetime.fromisoformat(start_info['dateTime'])
                end = datetime.fromisoformat(end_info['dateTime'])
        except (KeyError, ValueError) as e:
            logger.warning(f"Skipping event {item.get('id')} with unreadable times: {e}")
            return None

        attendee_count = max(1, len(attendees))
        flexible = all_day or item.get('transparency') == 'transparent' or attendee_count <= 1

        return CalendarEvent(
            event_id=item.get('id', ''),
            title=item.get('summary', 'Untitled Event'),
            start=start,
            end=end,
            source_calendar=self.name,
            flexible=flexible,
            attendee_count=attendee_count
        )

    def create_event(self, title: str, start: datetime, end: datetime, description: str = None,
                     recurrence: str = None, attendees: List[str] = None) -> str:
        """Create a new calendar event"""
        tz_name = getattr(start.tzinfo, 'key', None) or 'UTC'
        event = {
            'summary': title,
            'start': {'dateTime': start.isoformat(), 'timeZone': tz_name},
            'end': {'dateTime': end.isoformat(), 'timeZone': tz_name},
        }
        if description:
            event['description'] = description
        if recurrence:
            event['recurrence'] = [recurrence]
        emails = [a for a in (attendees or []) if '@' in a]
        if emails:
            event['attendees'] = [{'email': email} for email in emails]

        try:
            created_event = self._build_calendar_service().events().insert(
                calendarId=self.calendar_id, body=event
            ).execute()
        except HttpError as e:
            logger.error(f"❌ Failed to create event on {self.name}: {e}")
            raise CalendarProviderError(f"Google Calendar rejected the event: {e}", provider=self.name) from e
        except (OSError, httplib2.HttpLib2Error) as e:
            raise CalendarProviderError(f"Google Calendar unreachable: {e}", provider=self.name) from e

        logger.info(f"📅 Event created on {self.name}: {created_event.get('htmlLink', created_event.get('id'))}")
        return created_event['id']

    def cancel_event(self, event_id: str) -> None:
        """Delete a calendar event"""
        try:
            self._build_calendar_service().events().delete(
                calendarId=self.calendar_id, eventId=event_id
            ).execute()
        except HttpError as e:
            if http_status(e) in (404, 410):
                raise ExternalObjectMissing(f"Event {event_id} no longer exists", provider=self.name) from e
            raise CalendarProviderError(f"Google Calendar refused to delete {event_id}: {e}", provider=self.name) from e
        except (OSError, httplib2.HttpLib2Error) as e:
            raise CalendarProviderError(f"Google Calendar unreachable: {e}", provider=self.name) from e

        logger.info(f"🗑️ Event {event_id} deleted from {self.name}")
