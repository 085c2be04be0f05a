"""
In-memory calendar used in offline mode and in tests
"""
import logging
import threading
import time as time_module
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from src.calendar.calendar_manager import CalendarProvider
from src.core.errors import CalendarProviderError, ExternalObjectMissing
from src.core.models import CalendarEvent, new_id

logger = logging.getLogger(__name__)


class InMemoryCalendarProvider(CalendarProvider):
    """Calendar kept in a dict, with optional simulated latency and failures"""

    def __init__(self, name: str = "memory", events: List[CalendarEvent] = None, latency: float = 0.0,
                 failure: Exception = None, write_failure: Exception = None):
        self.name = name
        self.latency = latency
        self.failure = failure
        self.write_failure = write_failure
        self._events: Dict[str, CalendarEvent] = {}
        self._lock = threading.Lock()
        for event in events or []:
            self._events[event.event_id] = event

    def add_event(self, title: str, start: datetime, end: datetime, flexible: bool = False,
                  attendee_count: int = 2, event_id: str = None) -> CalendarEvent:
        """Seed an existing event"""
        event = CalendarEvent(
            event_id=event_id or f"mem_{new_id()[:12]}",
            title=title,
            start=start,
            end=end,
            source_calendar=self.name,
            flexible=flexible,
            attendee_count=attendee_count
        )
        with self._lock:
            self._events[event.event_id] = event
        return event

    def get_event(self, event_id: str) -> Optional[CalendarEvent]:
        with self._lock:
            return self._events.get(event_id)

    @property
    def events(self) -> List[CalendarEvent]:
        with self._lock:
            return sorted(self._events.values(), key=lambda e: e.start)

    def list_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        if self.latency:
            time_module.sleep(self.latency)
        if self.failure is not None:
            raise self.failure

        with self._lock:
            found = [e for e in self._events.values() if e.start < end and e.end > start]

        logger.info(f"📋 MEMORY: {len(found)} events on {self.name} between {start.isoformat()} and {end.isoformat()}")
        return sorted(found, key=lambda e: e.start)

    def create_event(self, title: str, start: datetime, end: datetime, description: str = None,
                     recurrence: str = None, attendees: List[str] = None) -> str:
        if self.write_failure is not None:
            raise self.write_failure
        event = self.add_event(title, start, end, attendee_count=1 + len(attendees or []))
        logger.info(f"📅 MEMORY: created '{title}' on {self.name} ({event.event_id})")
        return event.event_id

    def cancel_event(self, event_id: str) -> None:
        if self.write_failure is not None:
            raise self.write_failure
        with self._lock:
            if self._events.pop(event_id, None) is None:
                raise ExternalObjectMissing(f"Event {event_id} no longer exists", provider=self.name)
        logger.info(f"🗑️ MEMORY: deleted {event_id} from {self.name}")

    def seed_demo_events(self, now: datetime) -> None:
        """A few realistic meetings over the next days, for the offline demo"""
        day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        for offset in range(1, 4):
            current = day + timedelta(days=offset)
            if current.weekday() >= 5:
                continue
            self.add_event("Team standup", current.replace(hour=9, minute=30),
                           current.replace(hour=9, minute=45), attendee_count=6)
            self.add_event("Project review", current.replace(hour=14), current.replace(hour=15), attendee_count=4)
            self.add_event("Focus time", current.replace(hour=16), current.replace(hour=17),
                           flexible=True, attendee_count=1)
        logger.info(f"📋 MEMORY: seeded {len(self._events)} demo events on {self.name}")


class UnreachableCalendarProvider(InMemoryCalendarProvider):
    """A calendar whose every read fails, for exercising partial conflict checks"""

    def __init__(self, name: str, latency: float = 0.0):
        super().__init__(name=name, latency=latency,
                         failure=CalendarProviderError(f"{name} is unreachable", provider=name))
