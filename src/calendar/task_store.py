"""
Task stores: where tasks and reminders are written
"""
import logging
import threading
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Optional, Tuple

import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.errors import HttpError

from config.settings import Config
from src.calendar.calendar_manager import build_google_service, http_status, load_google_credentials
from src.core.errors import CalendarProviderError, ExternalObjectMissing
from src.core.models import new_id

logger = logging.getLogger(__name__)


class TaskStore:
    """Interface every task backend implements"""

    name = "tasks"

    def create_task(self, title: str, notes: str = None, due: datetime = None,
                    reminder: bool = False) -> Tuple[str, str]:
        """Create a task and return (list_id, task_id)"""
        raise NotImplementedError

    def delete_task(self, list_id: str, task_id: str) -> None:
        """Delete a task; ExternalObjectMissing if it is already gone"""
        raise NotImplementedError


class GoogleTasksStore(TaskStore):
    """Google Tasks, writing to the user's default list"""

    DEFAULT_LIST = "@default"

    def __init__(self, name: str = "google-tasks", token_path: str = None, credentials: Credentials = None,
                 timeout: float = None, service=None):
        self.config = Config()
        self.name = name
        self.token_path = token_path
        self.timeout = timeout or self.config.PROVIDER_TIMEOUT
        self._credentials = credentials
        self._service = service

    def _build_tasks_service(self):
        if self._service is not None:
            return self._service
        if self._credentials is None:
            if not self.token_path:
                raise CalendarProviderError(f"No credentials configured for {self.name}", provider=self.name)
            self._credentials = load_google_credentials(self.token_path)
        return build_google_service("tasks", "v1", self._credentials, self.timeout)

    def create_task(self, title: str, notes: str = None, due: datetime = None,
                    reminder: bool = False) -> Tuple[str, str]:
        body: Dict[str, Any] = {"title": title}
        if notes:
            body["notes"] = notes
        if due is not None:
            # Tasks only keeps the date part of "due"; the time goes into the notes
            body["due"] = due.astimezone(dt_timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
            if reminder:
                stamp = f"Reminder at {due.strftime('%H:%M %Z')}"
                body["notes"] = f"{notes}\n{stamp}" if notes else stamp

        try:
            created = self._build_tasks_service().tasks().insert(tasklist=self.DEFAULT_LIST, body=body).execute()
        except HttpError as e:
            logger.error(f"❌ Failed to create task on {self.name}: {e}")
            raise CalendarProviderError(f"Google Tasks rejected the task: {e}", provider=self.name) from e
        except (OSError, httplib2.HttpLib2Error) as e:
            raise CalendarProviderError(f"Google Tasks unreachable: {e}", provider=self.name) from e

        logger.info(f"✅ Task created on {self.name}: {created['id']}")
        return self.DEFAULT_LIST, created["id"]

    def delete_task(self, list_id: str, task_id: str) -> None:
        try:
            self._build_tasks_service().tasks().delete(tasklist=list_id, task=task_id).execute()
        except HttpError as e:
            if http_status(e) in (404, 410):
                raise ExternalObjectMissing(f"Task {task_id} no longer exists", provider=self.name) from e
            raise CalendarProviderError(f"Google Tasks refused to delete {task_id}: {e}", provider=self.name) from e
        except (OSError, httplib2.HttpLib2Error) as e:
            raise CalendarProviderError(f"Google Tasks unreachable: {e}", provider=self.name) from e

        logger.info(f"🗑️ Task {task_id} deleted from {self.name}")


class InMemoryTaskStore(TaskStore):
    """Task list kept in memory"""

    def __init__(self, name: str = "memory-tasks", list_id: str = "inbox", write_failure: Exception = None):
        self.name = name
        self.list_id = list_id
        self.write_failure = write_failure
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create_task(self, title: str, notes: str = None, due: datetime = None,
                    reminder: bool = False) -> Tuple[str, str]:
        if self.write_failure is not None:
            raise self.write_failure
        task_id = f"task_{new_id()[:12]}"
        with self._lock:
            self.tasks[task_id] = {"title": title, "notes": notes, "due": due, "reminder": reminder}
        logger.info(f"✅ MEMORY: task '{title}' created ({task_id})")
        return self.list_id, task_id

    def delete_task(self, list_id: str, task_id: str) -> None:
        if self.write_failure is not None:
            raise self.write_failure
        with self._lock:
            if list_id != self.list_id or self.tasks.pop(task_id, None) is None:
                raise ExternalObjectMissing(f"Task {task_id} no longer exists", provider=self.name)
        logger.info(f"🗑️ MEMORY: task {task_id} deleted")

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self.tasks.get(task_id)
