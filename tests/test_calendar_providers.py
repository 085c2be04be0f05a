"""Tests for the calendar providers, task stores and the per-user registry."""

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import httplib2
import pytest
import requests
from googleapiclient.errors import HttpError

from config.settings import Config
from main import build_registry
from src.calendar.calendar_manager import GoogleCalendarProvider
from src.calendar.memory_calendar import InMemoryCalendarProvider
from src.calendar.outlook_calendar import OutlookCalendarProvider, graph_recurrence
from src.calendar.registry import CalendarRegistry
from src.calendar.task_store import GoogleTasksStore, InMemoryTaskStore
from src.core.errors import CalendarProviderError, ExternalObjectMissing
from tests.conftest import USER


def utc(day, hour, minute=0):
    return datetime(2026, 10, day, hour, minute, tzinfo=timezone.utc)


def http_error(status):
    return HttpError(httplib2.Response({"status": status}), b"{}")


def graph_response(status_code, payload=None):
    response = Mock(status_code=status_code, text="")
    response.json.return_value = payload or {}
    return response


# ---------------------------------------------------------------------------
# Google Calendar
# ---------------------------------------------------------------------------


class TestGoogleCalendarProvider:
    @pytest.fixture
    def service(self):
        return Mock()

    @pytest.fixture
    def provider(self, service):
        return GoogleCalendarProvider(name="google-work", service=service)

    def test_follows_pagination(self, provider, service):
        service.events().list().execute.side_effect = [
            {"items": [{"id": "a", "summary": "Standup",
                        "start": {"dateTime": "2026-10-16T09:00:00+00:00"},
                        "end": {"dateTime": "2026-10-16T09:15:00+00:00"},
                        "attendees": [{"email": "a@x.com"}, {"email": "b@x.com"}]}],
             "nextPageToken": "page-2"},
            {"items": [{"id": "b", "summary": "Lunch",
                        "start": {"dateTime": "2026-10-16T12:00:00+00:00"},
                        "end": {"dateTime": "2026-10-16T13:00:00+00:00"}}]},
        ]

        events = provider.list_events(utc(16, 0), utc(17, 0))

        assert [e.title for e in events] == ["Standup", "Lunch"]
        assert events[0].attendee_count == 2
        assert not events[0].flexible
        assert events[1].flexible
        assert events[0].source_calendar == "google-work"

    def test_skips_cancelled_declined_and_all_day_is_flexible(self, provider, service):
        service.events().list().execute.return_value = {"items": [
            {"id": "x", "status": "cancelled", "start": {"dateTime": "2026-10-16T09:00:00+00:00"},
             "end": {"dateTime": "2026-10-16T10:00:00+00:00"}},
            {"id": "y", "summary": "Declined", "start": {"dateTime": "2026-10-16T09:00:00+00:00"},
             "end": {"dateTime": "2026-10-16T10:00:00+00:00"},
             "attendees": [{"self": True, "responseStatus": "declined"}, {"email": "b@x.com"}]},
            {"id": "z", "summary": "Conference", "start": {"date": "2026-10-16", "timeZone": "UTC"},
             "end": {"date": "2026-10-17"}},
        ]}

        events = provider.list_events(utc(16, 0), utc(17, 0))

        assert [e.title for e in events] == ["Conference"]
        assert events[0].flexible
        assert events[0].start == utc(16, 0)

    def test_read_failure_raises(self, provider, service):
        service.events().list().execute.side_effect = http_error(500)

        with pytest.raises(CalendarProviderError):
            provider.list_events(utc(16, 0), utc(17, 0))

    def test_create_event_body(self, provider, service):
        service.events().insert().execute.return_value = {"id": "evt-1"}

        event_id = provider.create_event("Lunch", utc(16, 12), utc(16, 13), recurrence="RRULE:FREQ=DAILY",
                                         attendees=["Dana", "dana@example.com"])

        assert event_id == "evt-1"
        body = service.events().insert.call_args.kwargs["body"]
        assert body["recurrence"] == ["RRULE:FREQ=DAILY"]
        assert body["attendees"] == [{"email": "dana@example.com"}]
        assert body["start"]["dateTime"] == "2026-10-16T12:00:00+00:00"

    def test_deleting_a_missing_event(self, provider, service):
        service.events().delete().execute.side_effect = http_error(404)

        with pytest.raises(ExternalObjectMissing):
            provider.cancel_event("gone")

    def test_delete_refused(self, provider, service):
        service.events().delete().execute.side_effect = http_error(403)

        with pytest.raises(CalendarProviderError) as excinfo:
            provider.cancel_event("evt-1")
        assert not isinstance(excinfo.value, ExternalObjectMissing)

    def test_no_credentials(self):
        with pytest.raises(CalendarProviderError):
            GoogleCalendarProvider(name="google-work").list_events(utc(16, 0), utc(17, 0))


class TestGoogleTasksStore:
    def test_reminder_time_goes_into_notes(self):
        service = Mock()
        service.tasks().insert().execute.return_value = {"id": "task-1"}
        store = GoogleTasksStore(service=service)

        list_id, task_id = store.create_task("Call mom", due=utc(15, 9), reminder=True)

        assert (list_id, task_id) == ("@default", "task-1")
        body = service.tasks().insert.call_args.kwargs["body"]
        assert body["due"] == "2026-10-15T09:00:00.000Z"
        assert body["notes"] == "Reminder at 09:00 UTC"

    def test_deleting_a_missing_task(self):
        service = Mock()
        service.tasks().delete().execute.side_effect = http_error(410)

        with pytest.raises(ExternalObjectMissing):
            GoogleTasksStore(service=service).delete_task("@default", "task-1")


# ---------------------------------------------------------------------------
# Outlook
# ---------------------------------------------------------------------------


class TestOutlookCalendarProvider:
    @pytest.fixture
    def session(self):
        return Mock()

    @pytest.fixture
    def provider(self, session):
        return OutlookCalendarProvider(name="outlook", access_token="token", base_url="https://graph.test/v1.0/",
                                       session=session)

    def test_follows_next_link(self, provider, session):
        session.request.side_effect = [
            graph_response(200, {"value": [{"id": "1", "subject": "Sync",
                                            "start": {"dateTime": "2026-10-16T09:00:00.0000000"},
                                            "end": {"dateTime": "2026-10-16T10:00:00.0000000"},
                                            "attendees": [{}, {}], "showAs": "busy"}],
                                 "@odata.nextLink": "https://graph.test/v1.0/next"}),
            graph_response(200, {"value": [{"id": "2", "subject": "Hold",
                                            "start": {"dateTime": "2026-10-16T11:00:00.0000000"},
                                            "end": {"dateTime": "2026-10-16T12:00:00.0000000"},
                                            "attendees": [{}, {}], "showAs": "tentative"}]}),
        ]

        events = provider.list_events(utc(16, 0), utc(17, 0))

        assert [(e.title, e.flexible) for e in events] == [("Sync", False), ("Hold", True)]
        assert events[0].start == utc(16, 9)
        first, second = session.request.call_args_list
        assert first.args == ("GET", "https://graph.test/v1.0/me/calendarView")
        assert first.kwargs["headers"]["Authorization"] == "Bearer token"
        assert second.args[1] == "https://graph.test/v1.0/next"
        assert second.kwargs["params"] is None

    def test_error_status_raises(self, provider, session):
        session.request.return_value = graph_response(401)

        with pytest.raises(CalendarProviderError):
            provider.list_events(utc(16, 0), utc(17, 0))

    def test_network_error_raises(self, provider, session):
        session.request.side_effect = requests.ConnectionError("reset")

        with pytest.raises(CalendarProviderError):
            provider.list_events(utc(16, 0), utc(17, 0))

    def test_create_event(self, provider, session):
        session.request.return_value = graph_response(201, {"id": "AAMk"})

        event_id = provider.create_event("Team sync", utc(19, 10), utc(19, 10, 30),
                                         recurrence="RRULE:FREQ=WEEKLY;BYDAY=MO")

        assert event_id == "AAMk"
        body = session.request.call_args.kwargs["json"]
        assert body["start"] == {"dateTime": "2026-10-19T10:00:00", "timeZone": "UTC"}
        assert body["recurrence"]["pattern"]["daysOfWeek"] == ["monday"]

    def test_deleting_a_missing_event(self, provider, session):
        session.request.return_value = graph_response(404)

        with pytest.raises(ExternalObjectMissing):
            provider.cancel_event("AAMk")


class TestGraphRecurrence:
    def test_daily(self):
        assert graph_recurrence("RRULE:FREQ=DAILY", utc(19, 10))["pattern"] == {"interval": 1, "type": "daily"}

    def test_weekly_defaults_to_the_start_day(self):
        pattern = graph_recurrence("RRULE:FREQ=WEEKLY", utc(16, 10))["pattern"]

        assert pattern["daysOfWeek"] == ["friday"]

    def test_monthly(self):
        result = graph_recurrence("RRULE:FREQ=MONTHLY", utc(16, 10))

        assert result["pattern"] == {"interval": 1, "type": "absoluteMonthly", "dayOfMonth": 16}
        assert result["range"] == {"type": "noEnd", "startDate": "2026-10-16"}

    def test_unsupported(self):
        assert graph_recurrence("RRULE:FREQ=HOURLY", utc(16, 10)) is None
        assert graph_recurrence("every so often", utc(16, 10)) is None


# ---------------------------------------------------------------------------
# In-memory stores and registry
# ---------------------------------------------------------------------------


class TestInMemoryStores:
    def test_list_events_is_a_window_query(self):
        calendar = InMemoryCalendarProvider(name="work")
        calendar.add_event("Early", utc(16, 8), utc(16, 9))
        calendar.add_event("Inside", utc(16, 11), utc(16, 12))

        assert [e.title for e in calendar.list_events(utc(16, 9), utc(16, 12))] == ["Inside"]

    def test_cancel_twice(self):
        calendar = InMemoryCalendarProvider(name="work")
        event_id = calendar.create_event("Lunch", utc(16, 12), utc(16, 13))
        calendar.cancel_event(event_id)

        with pytest.raises(ExternalObjectMissing):
            calendar.cancel_event(event_id)

    def test_demo_events_skip_weekends(self):
        calendar = InMemoryCalendarProvider(name="demo")
        calendar.seed_demo_events(utc(15, 8))

        assert {e.start.weekday() for e in calendar.events} == {4}

    def test_task_store_delete_from_other_list(self):
        store = InMemoryTaskStore()
        _, task_id = store.create_task("Buy milk")

        with pytest.raises(ExternalObjectMissing):
            store.delete_task("elsewhere", task_id)


class TestCalendarRegistry:
    def test_primary_calendar_is_the_write_target(self):
        registry = CalendarRegistry()
        work, personal = InMemoryCalendarProvider(name="work"), InMemoryCalendarProvider(name="personal")
        registry.register_calendar(USER, work)
        registry.register_calendar(USER, personal, primary=True)

        target = registry.target_system(USER)

        assert target.calendar is personal
        assert target.find_calendar("work") is work

    def test_first_calendar_without_a_primary(self):
        registry = CalendarRegistry()
        work = InMemoryCalendarProvider(name="work")
        registry.register_calendar(USER, work)

        assert registry.target_system(USER).calendar is work

    def test_unselected_calendars_are_not_checked(self):
        registry = CalendarRegistry()
        registry.register_calendar(USER, InMemoryCalendarProvider(name="work"))
        registry.register_calendar(USER, InMemoryCalendarProvider(name="holidays"), selected=False)

        assert [c.name for c in registry.connected_calendars(USER)] == ["work"]

    def test_reregistering_replaces(self):
        registry = CalendarRegistry()
        registry.register_calendar(USER, InMemoryCalendarProvider(name="work"))
        registry.register_calendar(USER, InMemoryCalendarProvider(name="work"))

        assert len(registry.connected_calendars(USER)) == 1

    def test_timezones(self):
        registry = CalendarRegistry(default_timezone="UTC")
        registry.set_timezone(USER, "Europe/Berlin")

        assert registry.timezone_for(USER) == "Europe/Berlin"
        assert registry.timezone_for("other") == "UTC"
        assert registry.users() == []


class TestBuildRegistry:
    def test_configured_users_are_registered_lowercased(self, tmp_path, monkeypatch):
        monkeypatch.delenv(Config.OUTLOOK_TOKEN_ENV, raising=False)
        (tmp_path / "Alex.google.token").write_text("{}")

        with patch.object(Config, "AVAILABLE_USERS", ["Alex@Example.com"]), \
                patch.object(Config, "CALENDAR_TOKENS_PATH", str(tmp_path)):
            registry = build_registry(offline=False)

        assert registry.users() == ["alex@example.com"]
        target = registry.target_system("alex@example.com")
        assert target.calendar.token_path == str(tmp_path / "Alex.google.token")
        assert target.tasks is not None
