"""Shared fixtures for the Voice Scheduling Assistant test suite.

Scenario tests run the real pipeline against the rule-based intent reader
and in-memory calendars, with the clock pinned to Wednesday 2026-10-14
10:00 UTC so that "Friday" means 2026-10-16.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from config.settings import Config
from src.actions.executor import ActionExecutor
from src.actions.undo_manager import UndoManager
from src.ai_agent.intent_extractor import ExtractionContext, IntentExtractor
from src.ai_agent.rule_based_client import RuleBasedLLMClient
from src.calendar.memory_calendar import InMemoryCalendarProvider
from src.calendar.registry import CalendarRegistry
from src.calendar.task_store import InMemoryTaskStore
from src.scheduler.conflict_detector import ConflictDetector
from src.scheduler.conversation_state import ConversationStore
from src.scheduler.smart_scheduler import SmartScheduler

FIXED_NOW = datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc)
USER = "alex@example.com"


class FakeClock:
    """Callable clock that only moves when a test says so"""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int = 0, hours: int = 0) -> None:
        self.now += timedelta(minutes=minutes, hours=hours)


# ============================================================================
# Clock and context
# ============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def context():
    """Extraction context at the fixed clock, in UTC."""
    return ExtractionContext(now=FIXED_NOW, timezone="UTC")


# ============================================================================
# Calendars and task stores
# ============================================================================


@pytest.fixture
def calendar():
    return InMemoryCalendarProvider(name="work")


@pytest.fixture
def task_store():
    return InMemoryTaskStore()


@pytest.fixture
def registry(calendar, task_store):
    registry = CalendarRegistry(default_timezone="UTC")
    registry.register_calendar(USER, calendar, primary=True)
    registry.register_task_store(USER, task_store)
    return registry


@pytest.fixture
def make_event(calendar):
    """Factory that seeds an event on the fixture calendar.

    Usage:
        make_event("Design review", day=16, start_hour=12, end_hour=13)
    """

    def _create(title: str, day: int, start_hour: int, end_hour: int, start_minute: int = 0,
                end_minute: int = 0, flexible: bool = False, attendee_count: int = 4):
        return calendar.add_event(
            title,
            datetime(2026, 10, day, start_hour, start_minute, tzinfo=timezone.utc),
            datetime(2026, 10, day, end_hour, end_minute, tzinfo=timezone.utc),
            flexible=flexible,
            attendee_count=attendee_count
        )

    return _create


# ============================================================================
# LLM clients
# ============================================================================


@pytest.fixture
def mock_llm_client():
    """LLM client whose parse_transcript answers are set per test."""
    client = Mock()
    client.model_name = "mock"
    return client


def raw_intent(**overrides):
    """A well-formed model answer; override any field"""
    data = {
        "action_type": "calendar_event",
        "title": "Lunch with Dana",
        "description": None,
        "date_text": None,
        "time_text": None,
        "duration_text": None,
        "recurrence_text": None,
        "priority": "normal",
        "participants": [],
        "confidence": 0.9,
        "interpretations": []
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_raw_intent():
    return raw_intent


# ============================================================================
# Scheduler
# ============================================================================


@pytest.fixture
def detector():
    return ConflictDetector(Config(), provider_timeout=2.0, aggregate_timeout=3.0)


@pytest.fixture
def make_scheduler(registry, clock, detector):
    """Factory for a fully wired scheduler.

    Usage:
        scheduler = make_scheduler()
        scheduler = make_scheduler(llm_client=mock_llm_client, contacts={"alex": [...]})
    """

    def _create(llm_client=None, contacts=None, store=None) -> SmartScheduler:
        config = Config()
        executor = ActionExecutor()
        return SmartScheduler(
            extractor=IntentExtractor(llm_client or RuleBasedLLMClient(contacts=contacts or {}), config),
            detector=detector,
            executor=executor,
            undo_manager=UndoManager(executor, registry),
            registry=registry,
            store=store or ConversationStore(config, persist_dir=""),
            config=config,
            clock=clock
        )

    return _create


@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler()
