"""
Undo Manager - reverses each user's most recent action
"""
import logging
import threading
from datetime import datetime
from typing import Dict, Optional

from src.actions.executor import ActionExecutor
from src.calendar.registry import CalendarRegistry
from src.core.errors import ExecutionFailure, NothingToUndo
from src.core.models import ExecutedAction
from utils.meeting_logger import MeetingLogger

logger = logging.getLogger(__name__)


class UndoManager:
    """Holds one last-action pointer per user; an undo consumes it"""

    def __init__(self, executor: ActionExecutor, registry: CalendarRegistry):
        self.executor = executor
        self.registry = registry
        self._last_actions: Dict[str, ExecutedAction] = {}
        self._lock = threading.Lock()

    def record(self, action: ExecutedAction) -> None:
        """Replace the user's pointer with a newly executed action"""
        with self._lock:
            self._last_actions[action.user_id] = action
        logger.info(f"↩️ Undo pointer for {action.user_id} -> {action.action_id}")

    def last_action(self, user_id: str) -> Optional[ExecutedAction]:
        with self._lock:
            return self._last_actions.get(user_id)

    def undo(self, user_id: str, now: datetime = None) -> ExecutedAction:
        with self._lock:
            action = self._last_actions.pop(user_id, None)
        if action is None:
            raise NothingToUndo(f"No action to undo for {user_id}")

        try:
            reversal = self.executor.reverse(action, self.registry.target_system(user_id), now=now)
        except ExecutionFailure:
            with self._lock:
                # A newer action recorded meanwhile wins
                self._last_actions.setdefault(user_id, action)
            raise

        MeetingLogger.log_undo(action, reversal)
        return reversal
