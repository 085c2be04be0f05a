"""
Action Executor - commits confirmed candidates to the user's calendar or task list
"""
import logging
import threading
from datetime import datetime, timezone as dt_timezone
from typing import Callable, Dict, Optional, Tuple

from src.calendar.registry import TargetSystem
from src.core.errors import CalendarProviderError, ExecutionFailure, ExternalObjectMissing
from src.core.models import REVERSAL, ActionCandidate, ActionKind, ConflictOverride, ExecutedAction, UndoToken
from utils.meeting_logger import MeetingLogger

logger = logging.getLogger(__name__)

LedgerKey = Tuple[str, str, Optional[datetime]]


class ActionExecutor:
    """
    Writes each conversation's action at most once. Re-invoking execute for a
    conversation returns the ExecutedAction recorded the first time. Entries are
    keyed by user, conversation id and the conversation's start time, so a
    reused id never resolves to an older conversation's action.
    """

    def __init__(self):
        self._ledger: Dict[LedgerKey, ExecutedAction] = {}
        self._ledger_lock = threading.Lock()
        self._conversation_locks: Dict[LedgerKey, threading.Lock] = {}

        self.handlers: Dict[ActionKind, Callable[[ActionCandidate, TargetSystem], UndoToken]] = {
            ActionKind.CALENDAR_EVENT: self._create_calendar_event,
            ActionKind.TASK: self._create_task,
            ActionKind.REMINDER: self._create_reminder,
        }
        unhandled = set(ActionKind) - set(self.handlers)
        if unhandled:
            raise TypeError(f"No executor handler for {sorted(kind.value for kind in unhandled)}")

    def execute(self, candidate: ActionCandidate, target_system: TargetSystem, conversation_id: str,
                user_id: str, override: ConflictOverride = None, now: datetime = None,
                started: datetime = None) -> ExecutedAction:
        """Commit a candidate; idempotent per (user, conversation id, started)"""
        key = (user_id, conversation_id, started)
        with self._lock_for(key):
            existing = self.recorded(conversation_id, user_id, started)
            if existing is not None:
                logger.info(f"♻️ Conversation {conversation_id} already executed as {existing.action_id}")
                return existing

            handler = self.handlers.get(candidate.kind)
            if handler is None:
                raise TypeError(f"Unhandled action kind {candidate.kind!r}")

            try:
                undo_token = handler(candidate, target_system)
            except CalendarProviderError as e:
                logger.error(f"❌ Failed to execute {candidate.kind.value} '{candidate.title}': {e}")
                raise ExecutionFailure(f"External write failed: {e}") from e

            action = ExecutedAction.create(
                conversation_id, user_id, candidate, now or datetime.now(dt_timezone.utc),
                undo_token=undo_token,
                conflict_override=override
            )
            with self._ledger_lock:
                self._ledger[key] = action

        MeetingLogger.log_execution(action)
        return action

    def recorded(self, conversation_id: str, user_id: str, started: datetime = None) -> Optional[ExecutedAction]:
        with self._ledger_lock:
            return self._ledger.get((user_id, conversation_id, started))

    def prune(self, before: datetime) -> int:
        """Forget actions executed before the cutoff, and idle locks with them"""
        with self._ledger_lock:
            stale = [key for key, action in self._ledger.items() if action.timestamp < before]
            for key in stale:
                del self._ledger[key]
            for key, lock in list(self._conversation_locks.items()):
                if key in self._ledger or not lock.acquire(blocking=False):
                    continue
                try:
                    del self._conversation_locks[key]
                finally:
                    lock.release()
        if stale:
            logger.info(f"🧹 Pruned {len(stale)} executed actions")
        return len(stale)

    def reverse(self, action: ExecutedAction, target_system: TargetSystem, now: datetime = None) -> ExecutedAction:
        """Delete what an action created; an already-deleted object gives a partial reversal"""
        token = action.undo_token
        if token is None:
            raise ExecutionFailure(f"Action {action.action_id} has no undo token")

        partial, detail = False, None
        try:
            if token.target == "calendar":
                provider = target_system.find_calendar(token.provider)
                if provider is None:
                    raise ExecutionFailure(f"Calendar {token.provider} is no longer connected",
                                           user_message=f"I can't reach {token.provider} anymore to undo that.")
                provider.cancel_event(token.external_id)
            elif token.target == "tasks":
                store = target_system.tasks
                if store is None or store.name != token.provider:
                    raise ExecutionFailure(f"Task store {token.provider} is no longer connected",
                                           user_message=f"I can't reach {token.provider} anymore to undo that.")
                store.delete_task(token.container_id, token.external_id)
            else:
                raise ExecutionFailure(f"Unknown undo target {token.target}")
        except ExternalObjectMissing as e:
            partial = True
            detail = f"'{action.candidate.title}' was already removed from {token.provider}"
            logger.warning(f"⚠️ Partial undo of {action.action_id}: {e}")
        except CalendarProviderError as e:
            logger.error(f"❌ Failed to undo {action.action_id}: {e}")
            raise ExecutionFailure(f"Undo failed: {e}",
                                   user_message="I couldn't undo that right now. Please try again.") from e

        return ExecutedAction.create(
            action.conversation_id, action.user_id, action.candidate, now or datetime.now(dt_timezone.utc),
            kind=REVERSAL,
            reverses=action.action_id,
            partial=partial,
            detail=detail
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _create_calendar_event(self, candidate: ActionCandidate, target_system: TargetSystem) -> UndoToken:
        provider = target_system.calendar
        if provider is None:
            raise ExecutionFailure("No calendar connected", user_message="Connect a calendar first, then try again.")
        time_range = candidate.time_range
        if time_range is None:
            raise ExecutionFailure(f"Event '{candidate.title}' has no start time")

        event_id = provider.create_event(
            candidate.title,
            time_range.start,
            time_range.end,
            description=candidate.description,
            recurrence=candidate.recurrence,
            attendees=candidate.participants
        )
        return UndoToken(target="calendar", provider=provider.name, external_id=event_id)

    def _create_task(self, candidate: ActionCandidate, target_system: TargetSystem) -> UndoToken:
        return self._write_task(candidate, target_system, reminder=False)

    def _create_reminder(self, candidate: ActionCandidate, target_system: TargetSystem) -> UndoToken:
        return self._write_task(candidate, target_system, reminder=True)

    @staticmethod
    def _write_task(candidate: ActionCandidate, target_system: TargetSystem, reminder: bool) -> UndoToken:
        store = target_system.tasks
        if store is None:
            raise ExecutionFailure("No task list connected", user_message="Connect a task list first, then try again.")

        due = candidate.start
        if due is None and candidate.day is not None:
            due = datetime.combine(candidate.day, datetime.min.time(), tzinfo=candidate.tzinfo)
        list_id, task_id = store.create_task(candidate.title, notes=candidate.description, due=due, reminder=reminder)
        return UndoToken(target="tasks", provider=store.name, external_id=task_id, container_id=list_id)

    def _lock_for(self, key: LedgerKey) -> threading.Lock:
        with self._ledger_lock:
            return self._conversation_locks.setdefault(key, threading.Lock())
