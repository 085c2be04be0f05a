"""Tests for TemporalParser phrase scanning and resolution."""

from datetime import date, datetime, time, timezone

import pytest

from src.ai_agent.temporal_parser import TemporalParser

TODAY = date(2026, 10, 14)  # Wednesday


class TestResolveDate:
    @pytest.mark.parametrize(
        "phrase, expected",
        [
            ("today", date(2026, 10, 14)),
            ("tomorrow", date(2026, 10, 15)),
            ("the day after tomorrow", date(2026, 10, 16)),
            ("friday", date(2026, 10, 16)),
            ("next friday", date(2026, 10, 16)),
            ("wednesday", date(2026, 10, 21)),
            ("next week", date(2026, 10, 19)),
            ("in 3 days", date(2026, 10, 17)),
            ("in two weeks", date(2026, 10, 28)),
            ("October 20", date(2026, 10, 20)),
            ("the 3rd of November", date(2026, 11, 3)),
            ("on the 2nd", date(2026, 11, 2)),
            ("March 1", date(2027, 3, 1)),
        ],
    )
    def test_phrases(self, phrase, expected):
        assert TemporalParser.resolve_date(phrase, TODAY) == expected

    def test_unknown_phrase(self):
        assert TemporalParser.resolve_date("someday", TODAY) is None

    def test_impossible_date(self):
        assert TemporalParser.resolve_date("February 30", TODAY) is None


class TestResolveTime:
    @pytest.mark.parametrize(
        "phrase, expected",
        [
            ("at noon", time(12, 0)),
            ("midnight", time(0, 0)),
            ("3pm", time(15, 0)),
            ("at 9:30 am", time(9, 30)),
            ("12am", time(0, 0)),
            ("at 3", time(15, 0)),
            ("at 10", time(10, 0)),
            ("four o'clock", time(16, 0)),
            ("14:45", time(14, 45)),
            ("3", time(15, 0)),
        ],
    )
    def test_phrases(self, phrase, expected):
        assert TemporalParser.resolve_time(phrase) == expected

    def test_out_of_range(self):
        assert TemporalParser.resolve_time("13pm") is None


class TestResolveDuration:
    @pytest.mark.parametrize(
        "phrase, expected",
        [
            ("1 hour", 60),
            ("for 2 hours", 120),
            ("an hour and a half", 90),
            ("half an hour", 30),
            ("45 minutes", 45),
            ("twenty five minutes", 25),
            ("1 hour 30 minutes", 90),
            ("1.5 hours", 90),
        ],
    )
    def test_phrases(self, phrase, expected):
        assert TemporalParser.resolve_duration(phrase) == expected


class TestRecurrence:
    def test_weekday_rule(self):
        assert TemporalParser.resolve_recurrence("every friday") == "RRULE:FREQ=WEEKLY;BYDAY=FR"

    def test_daily(self):
        assert TemporalParser.resolve_recurrence("daily") == "RRULE:FREQ=DAILY"

    def test_weekdays(self):
        assert TemporalParser.resolve_recurrence("every weekday") == "RRULE:FREQ=WEEKLY;BYDAY=MO,TU,WE,TH,FR"

    def test_first_occurrence_of_weekly_rule(self):
        now = datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc)
        assert TemporalParser.first_occurrence("RRULE:FREQ=WEEKLY;BYDAY=FR", now, time(9, 0)) == date(2026, 10, 16)

    def test_first_occurrence_skips_today_when_time_passed(self):
        now = datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc)
        assert TemporalParser.first_occurrence("RRULE:FREQ=DAILY", now, time(9, 0)) == date(2026, 10, 15)
        assert TemporalParser.first_occurrence("RRULE:FREQ=DAILY", now, time(11, 0)) == date(2026, 10, 14)

    def test_monthly_rule_has_no_fixed_first_day(self):
        now = datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc)
        assert TemporalParser.first_occurrence("RRULE:FREQ=MONTHLY", now, None) is None


class TestScan:
    def test_duration_is_not_read_as_time(self):
        found = TemporalParser.scan("lunch for 2 hours at 3pm")

        assert found["duration"][0] == "for 2 hours"
        assert found["time"][0] == "at 3pm"

    def test_offset(self):
        found = TemporalParser.scan("call the bank in 2 hours")
        now = datetime(2026, 10, 14, 10, 7, 30, tzinfo=timezone.utc)

        assert "duration" not in found
        assert TemporalParser.resolve_offset(found["offset"][0], now) == datetime(2026, 10, 14, 12, 7, tzinfo=timezone.utc)

    def test_all_kinds(self):
        found = TemporalParser.scan("team sync every monday at 10am for 30 minutes")

        assert found["recurrence"][0] == "every monday"
        assert found["time"][0] == "at 10am"
        assert found["duration"][0] == "for 30 minutes"
        assert "date" not in found

    def test_strip_spans(self):
        text = "lunch tomorrow"
        found = TemporalParser.scan(text)
        _, start, end = found["date"]
        assert TemporalParser.strip_spans(text, [(start, end)]).strip() == "lunch"

    @pytest.mark.parametrize("token, expected", [("5", 5.0), ("five", 5.0), ("twenty-five", 25.0), ("half", 0.5)])
    def test_numeric_tokens(self, token, expected):
        assert TemporalParser.parse_numeric_token(token) == expected
