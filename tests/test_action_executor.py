"""Tests for ActionExecutor and UndoManager."""

from datetime import date, datetime, time, timedelta, timezone

import pytest

from src.actions.executor import ActionExecutor
from src.actions.undo_manager import UndoManager
from src.calendar.memory_calendar import InMemoryCalendarProvider
from src.calendar.registry import CalendarRegistry, TargetSystem
from src.calendar.task_store import InMemoryTaskStore
from src.core.errors import CalendarProviderError, ExecutionFailure, NothingToUndo
from src.core.models import (
    REVERSAL,
    CalendarEventCandidate,
    ConflictOverride,
    ReminderCandidate,
    TaskCandidate,
)
from tests.conftest import FIXED_NOW, USER


@pytest.fixture
def executor():
    return ActionExecutor()


@pytest.fixture
def target(registry):
    return registry.target_system(USER)


@pytest.fixture
def lunch():
    return CalendarEventCandidate(title="Lunch with Dana", day=date(2026, 10, 16), time_of_day=time(12, 0),
                                  duration_minutes=60, participants=["Dana"])


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestExecute:
    def test_event_is_written_to_the_primary_calendar(self, executor, target, calendar, lunch):
        action = executor.execute(lunch, target, "conv-1", USER, now=FIXED_NOW)

        event = calendar.get_event(action.undo_token.external_id)
        assert event.title == "Lunch with Dana"
        assert event.start == datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)
        assert event.attendee_count == 2
        assert action.undo_token.provider == "work"
        assert action.timestamp == FIXED_NOW

    def test_second_execute_returns_the_recorded_action(self, executor, target, calendar, lunch):
        first = executor.execute(lunch, target, "conv-1", USER)
        second = executor.execute(lunch, target, "conv-1", USER)

        assert second is first
        assert len(calendar.events) == 1

    def test_reused_id_for_a_later_conversation_writes_again(self, executor, target, calendar, lunch):
        first = executor.execute(lunch, target, "conv-1", USER, started=FIXED_NOW)
        second = executor.execute(lunch.with_changes(title="Dentist"), target, "conv-1", USER,
                                  started=FIXED_NOW + timedelta(days=2))

        assert second.action_id != first.action_id
        assert sorted(event.title for event in calendar.events) == ["Dentist", "Lunch with Dana"]

    def test_same_id_from_another_user_writes_again(self, executor, target, calendar, lunch):
        first = executor.execute(lunch, target, "conv-1", USER, started=FIXED_NOW)
        second = executor.execute(lunch, target, "conv-1", "someone@example.com", started=FIXED_NOW)

        assert second is not first
        assert second.user_id == "someone@example.com"
        assert len(calendar.events) == 2

    def test_override_is_kept_on_the_action(self, executor, target, lunch):
        override = ConflictOverride("high", ["Board meeting (work)"], FIXED_NOW)

        action = executor.execute(lunch, target, "conv-1", USER, override=override)

        assert action.conflict_override == override

    def test_task_goes_to_the_task_store(self, executor, target, task_store):
        action = executor.execute(TaskCandidate(title="Renew passport"), target, "conv-1", USER)

        assert action.undo_token.target == "tasks"
        assert task_store.get_task(action.undo_token.external_id)["title"] == "Renew passport"

    def test_reminder_due_time_is_its_start(self, executor, target, task_store):
        reminder = ReminderCandidate(title="Water the plants", day=date(2026, 10, 15), time_of_day=time(18, 0))

        action = executor.execute(reminder, target, "conv-1", USER)

        task = task_store.get_task(action.undo_token.external_id)
        assert task["reminder"] is True
        assert task["due"] == datetime(2026, 10, 15, 18, 0, tzinfo=timezone.utc)

    def test_task_with_only_a_day_is_due_at_midnight(self, executor, target, task_store):
        action = executor.execute(TaskCandidate(title="File taxes", day=date(2026, 10, 20)), target, "conv-1", USER)

        assert task_store.get_task(action.undo_token.external_id)["due"] == datetime(2026, 10, 20, tzinfo=timezone.utc)

    def test_provider_error_becomes_execution_failure(self, executor, lunch):
        broken = InMemoryCalendarProvider(name="work", write_failure=CalendarProviderError("503", provider="work"))

        with pytest.raises(ExecutionFailure):
            executor.execute(lunch, TargetSystem(calendar=broken), "conv-1", USER)
        assert executor.recorded("conv-1", USER) is None

    def test_no_calendar_connected(self, executor, lunch):
        with pytest.raises(ExecutionFailure) as excinfo:
            executor.execute(lunch, TargetSystem(), "conv-1", USER)
        assert "Connect a calendar" in excinfo.value.user_message

    def test_no_task_store_connected(self, executor):
        with pytest.raises(ExecutionFailure):
            executor.execute(TaskCandidate(title="Renew passport"), TargetSystem(), "conv-1", USER)


# ---------------------------------------------------------------------------
# Reversal
# ---------------------------------------------------------------------------


class TestReverse:
    def test_deletes_the_created_event(self, executor, target, calendar, lunch):
        action = executor.execute(lunch, target, "conv-1", USER)

        reversal = executor.reverse(action, target, now=FIXED_NOW)

        assert calendar.events == []
        assert reversal.kind == REVERSAL
        assert reversal.reverses == action.action_id
        assert not reversal.partial

    def test_already_deleted_event_is_partial(self, executor, target, calendar, lunch):
        action = executor.execute(lunch, target, "conv-1", USER)
        calendar.cancel_event(action.undo_token.external_id)

        reversal = executor.reverse(action, target)

        assert reversal.partial
        assert "already removed" in reversal.detail

    def test_disconnected_calendar(self, executor, target, lunch):
        action = executor.execute(lunch, target, "conv-1", USER)

        with pytest.raises(ExecutionFailure):
            executor.reverse(action, TargetSystem())


# ---------------------------------------------------------------------------
# Undo
# ---------------------------------------------------------------------------


class TestUndoManager:
    def test_undo_consumes_the_pointer(self, executor, registry, target, calendar, lunch):
        undo = UndoManager(executor, registry)
        undo.record(executor.execute(lunch, target, "conv-1", USER))

        reversal = undo.undo(USER)

        assert reversal.kind == REVERSAL
        assert calendar.events == []
        with pytest.raises(NothingToUndo):
            undo.undo(USER)

    def test_newest_action_is_undone(self, executor, registry, target, calendar, lunch):
        undo = UndoManager(executor, registry)
        first = executor.execute(lunch, target, "conv-1", USER)
        undo.record(first)
        undo.record(executor.execute(lunch.with_changes(title="Dinner"), target, "conv-2", USER))

        undo.undo(USER)

        assert [event.title for event in calendar.events] == ["Lunch with Dana"]

    def test_failed_undo_keeps_the_pointer(self, executor, lunch):
        calendar = InMemoryCalendarProvider(name="work")
        registry = CalendarRegistry()
        registry.register_calendar(USER, calendar, primary=True)
        undo = UndoManager(executor, registry)
        action = executor.execute(lunch, registry.target_system(USER), "conv-1", USER)
        undo.record(action)
        calendar.write_failure = CalendarProviderError("timeout", provider="work")

        with pytest.raises(ExecutionFailure):
            undo.undo(USER)

        assert undo.last_action(USER) is action

    def test_pointers_are_per_user(self, executor, registry, target, lunch):
        undo = UndoManager(executor, registry)
        undo.record(executor.execute(lunch, target, "conv-1", USER))

        with pytest.raises(NothingToUndo):
            undo.undo("someone@example.com")
        assert undo.last_action(USER) is not None

    def test_task_undo(self, executor, registry, target, task_store):
        undo = UndoManager(executor, registry)
        undo.record(executor.execute(TaskCandidate(title="Renew passport"), target, "conv-1", USER))

        undo.undo(USER)

        assert task_store.tasks == {}


# ---------------------------------------------------------------------------
# Ledger housekeeping
# ---------------------------------------------------------------------------


class TestPrune:
    def test_old_actions_are_forgotten(self, executor, target, lunch):
        executor.execute(lunch, target, "conv-1", USER, now=FIXED_NOW, started=FIXED_NOW)
        executor.execute(lunch, target, "conv-2", USER, now=FIXED_NOW + timedelta(hours=3), started=FIXED_NOW)

        assert executor.prune(FIXED_NOW + timedelta(hours=1)) == 1
        assert executor.recorded("conv-1", USER, FIXED_NOW) is None
        assert executor.recorded("conv-2", USER, FIXED_NOW) is not None

    def test_nothing_to_prune(self, executor):
        assert executor.prune(FIXED_NOW) == 0
