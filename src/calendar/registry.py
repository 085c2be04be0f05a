"""
Per-user registry of connected calendars and task stores
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from src.calendar.calendar_manager import CalendarProvider
from src.calendar.task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class CalendarConnection:
    provider: CalendarProvider
    selected: bool = True
    primary: bool = False


@dataclass
class TargetSystem:
    """Where the executor writes for one user"""

    calendar: Optional[CalendarProvider] = None
    tasks: Optional[TaskStore] = None
    calendars_by_name: Dict[str, CalendarProvider] = field(default_factory=dict)

    def find_calendar(self, name: str) -> Optional[CalendarProvider]:
        return self.calendars_by_name.get(name)


class CalendarRegistry:
    """Knows which calendars each user connected, selected for conflict checks, and writes to"""

    def __init__(self, default_timezone: str = "UTC"):
        self.default_timezone = default_timezone
        self._calendars: Dict[str, List[CalendarConnection]] = {}
        self._task_stores: Dict[str, TaskStore] = {}
        self._timezones: Dict[str, str] = {}
        self._lock = threading.Lock()

    def register_calendar(self, user_id: str, provider: CalendarProvider, selected: bool = True,
                          primary: bool = False) -> None:
        with self._lock:
            connections = self._calendars.setdefault(user_id, [])
            connections[:] = [c for c in connections if c.provider.name != provider.name]
            if primary:
                for connection in connections:
                    connection.primary = False
            connections.append(CalendarConnection(provider, selected=selected, primary=primary))
        logger.info(f"🔗 Connected calendar '{provider.name}' for {user_id} "
                    f"(selected={selected}, primary={primary})")

    def register_task_store(self, user_id: str, store: TaskStore) -> None:
        with self._lock:
            self._task_stores[user_id] = store
        logger.info(f"🔗 Connected task store '{store.name}' for {user_id}")

    def set_timezone(self, user_id: str, timezone: str) -> None:
        with self._lock:
            self._timezones[user_id] = timezone

    def timezone_for(self, user_id: str) -> str:
        with self._lock:
            return self._timezones.get(user_id, self.default_timezone)

    def connected_calendars(self, user_id: str) -> List[CalendarProvider]:
        """Calendars selected for conflict checking"""
        with self._lock:
            return [c.provider for c in self._calendars.get(user_id, []) if c.selected]

    def users(self) -> List[str]:
        with self._lock:
            return sorted(set(self._calendars) | set(self._task_stores))

    def target_system(self, user_id: str) -> TargetSystem:
        """Primary calendar (or the first connected one) plus the task store"""
        with self._lock:
            connections = list(self._calendars.get(user_id, []))
            tasks = self._task_stores.get(user_id)

        primary = next((c.provider for c in connections if c.primary), None)
        if primary is None and connections:
            primary = connections[0].provider
        return TargetSystem(
            calendar=primary,
            tasks=tasks,
            calendars_by_name={c.provider.name: c.provider for c in connections}
        )
