"""
Temporal phrase parsing for the Voice Scheduling Assistant

Finds date, time, duration and recurrence phrases in a transcript and
resolves them against the caller's clock. Nothing here guesses: a phrase
that cannot be resolved yields None.
"""
import re
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple

NUMBER_WORDS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15,
    "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19,
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50, "sixty": 60,
    "ninety": 90, "half": 0.5, "a": 1, "an": 1,
}

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
RRULE_DAYS = ["MO", "TU", "WE", "TH", "FR", "SA", "SU"]

MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11,
    "december": 12, "sept": 9, "jan": 1, "feb": 2, "mar": 3, "apr": 4,
    "jun": 6, "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_TENS = "twenty|thirty|forty|fifty"
_UNITS = "one|two|three|four|five|six|seven|eight|nine"
_WORDS = "|".join(sorted(NUMBER_WORDS, key=len, reverse=True))
NUMBER = rf"\d+(?:\.\d+)?|(?:{_TENS})[- ](?:{_UNITS})|{_WORDS}"
HOUR = r"\d{1,2}|one|two|three|four|five|six|seven|eight|nine|ten|eleven|twelve"
_MONTH_NAMES = "|".join(sorted(MONTHS, key=len, reverse=True))
_WEEKDAY_NAMES = "|".join(WEEKDAYS)

_FLAGS = re.IGNORECASE

OFFSET_PATTERNS = [
    re.compile(rf"\bin\s+(?:(?P<amount>{NUMBER})\s+(?P<unit>minutes?|mins?|hours?|hrs?)|half\s+an\s+hour)\b", _FLAGS),
]

DURATION_PATTERNS = [
    (re.compile(r"\b(?:for\s+)?(?:an?|one)\s+hour\s+and\s+a\s+half\b", _FLAGS), "hour_and_half"),
    (re.compile(r"\b(?:for\s+)?half\s+an?\s+hour\b", _FLAGS), "half_hour"),
    (re.compile(
        rf"\b(?:for\s+)?(?P<hours>{NUMBER})\s*(?:hours?|hrs?)\b"
        rf"(?:\s*(?:and\s+)?(?P<minutes>{NUMBER})\s*(?:minutes?|mins?)\b)?", _FLAGS), "hours"),
    (re.compile(rf"\b(?:for\s+)?(?P<minutes>{NUMBER})\s*(?:minutes?|mins?)\b", _FLAGS), "minutes"),
]

RECURRENCE_PATTERNS = [
    re.compile(rf"\b(?:every\s+(?P<unit>day|weekday|week|month|year|{_WEEKDAY_NAMES})|(?P<adverb>daily|weekly|monthly|yearly))\b", _FLAGS),
]

DATE_PATTERNS = [
    (re.compile(r"\b(?:the\s+)?day\s+after\s+tomorrow\b", _FLAGS), "day_after_tomorrow"),
    (re.compile(r"\b(?:today|tonight|this\s+(?:morning|afternoon|evening))\b", _FLAGS), "today"),
    (re.compile(r"\btomorrow\b", _FLAGS), "tomorrow"),
    (re.compile(r"\bnext\s+week\b", _FLAGS), "next_week"),
    (re.compile(rf"\bin\s+(?P<amount>{NUMBER})\s+(?P<unit>days?|weeks?)\b", _FLAGS), "in_days"),
    (re.compile(rf"\b(?:on\s+)?(?P<month>{_MONTH_NAMES})\.?\s+(?P<day>\d{{1,2}})(?:st|nd|rd|th)?\b", _FLAGS), "month_day"),
    (re.compile(rf"\b(?:on\s+)?(?:the\s+)?(?P<day>\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?(?P<month>{_MONTH_NAMES})\b", _FLAGS), "month_day"),
    (re.compile(r"\bon\s+the\s+(?P<day>\d{1,2})(?:st|nd|rd|th)\b", _FLAGS), "ordinal"),
    (re.compile(r"\b(?:on\s+)?(?P<month>\d{1,2})/(?P<day>\d{1,2})\b", _FLAGS), "month_day"),
    (re.compile(rf"\b(?:(?:next|this|on|coming)\s+)?(?P<weekday>{_WEEKDAY_NAMES})\b", _FLAGS), "weekday"),
]

TIME_PATTERNS = [
    re.compile(r"\b(?:(?:at|around|by)\s+)?(?P<word>noon|midday|midnight)\b", _FLAGS),
    re.compile(rf"\b(?:(?:at|around|by)\s+)?(?P<hour>{HOUR})(?::(?P<minute>\d{{2}}))?\s*(?P<suffix>[ap])\.?\s?m\b\.?", _FLAGS),
    re.compile(rf"\b(?:(?:at|around|by)\s+)?(?P<hour>{HOUR})\s+o'?clock\b", _FLAGS),
    re.compile(r"\b(?:(?:at|around|by)\s+)?(?P<hour>\d{1,2}):(?P<minute>\d{2})\b", _FLAGS),
    re.compile(rf"\b(?:at|around)\s+(?P<hour>{HOUR})\b(?!\s*(?:hours?|hrs?|minutes?|mins?|days?|weeks?|people|/))", _FLAGS),
]

BARE_TIME_PATTERN = re.compile(rf"^\s*(?P<hour>{HOUR})(?::(?P<minute>\d{{2}}))?\s*$", _FLAGS)


class TemporalParser:
    """Stateless helpers for locating and resolving temporal phrases"""

    @staticmethod
    def parse_numeric_token(token: str) -> Optional[float]:
        """Convert '5', '5.5', 'five' or 'twenty five' to a float"""
        try:
            return float(token)
        except (TypeError, ValueError):
            pass
        token = token.strip().lower().replace("-", " ")
        if token in NUMBER_WORDS:
            return float(NUMBER_WORDS[token])
        parts = token.split()
        if len(parts) == 2 and parts[0] in NUMBER_WORDS and parts[1] in NUMBER_WORDS and NUMBER_WORDS[parts[1]] < 10:
            return float(NUMBER_WORDS[parts[0]] + NUMBER_WORDS[parts[1]])
        return None

    # ------------------------------------------------------------------
    # Locating phrases
    # ------------------------------------------------------------------

    @classmethod
    def scan(cls, text: str) -> Dict[str, Tuple[str, int, int]]:
        """Find at most one phrase of each kind.

        Returns a mapping of kind ('offset', 'duration', 'recurrence',
        'date', 'time') to (phrase, start, end). Earlier kinds mask their
        span so a duration like '2 hours' is never read as a time.
        """
        groups = [
            ("offset", OFFSET_PATTERNS),
            ("duration", [pattern for pattern, _ in DURATION_PATTERNS]),
            ("recurrence", RECURRENCE_PATTERNS),
            ("date", [pattern for pattern, _ in DATE_PATTERNS]),
            ("time", TIME_PATTERNS),
        ]
        found = {}
        masked = text
        for kind, patterns in groups:
            for pattern in patterns:
                match = pattern.search(masked)
                if match:
                    phrase = text[match.start():match.end()].strip(" ,")
                    found[kind] = (phrase, match.start(), match.end())
                    masked = masked[:match.start()] + " " * (match.end() - match.start()) + masked[match.end():]
                    break
        return found

    @staticmethod
    def strip_spans(text: str, spans: List[Tuple[int, int]]) -> str:
        """Remove the given character spans from text"""
        for start, end in sorted(spans, reverse=True):
            text = text[:start] + " " + text[end:]
        return text

    # ------------------------------------------------------------------
    # Resolving phrases
    # ------------------------------------------------------------------

    @classmethod
    def resolve_date(cls, phrase: str, today: date) -> Optional[date]:
        """Resolve a date phrase relative to today"""
        if not phrase:
            return None
        for pattern, kind in DATE_PATTERNS:
            match = pattern.search(phrase)
            if not match:
                continue
            if kind == "day_after_tomorrow":
                return today + timedelta(days=2)
            if kind == "today":
                return today
            if kind == "tomorrow":
                return today + timedelta(days=1)
            if kind == "next_week":
                return today + timedelta(days=7 - today.weekday())
            if kind == "in_days":
                amount = cls.parse_numeric_token(match.group("amount"))
                if amount is None:
                    return None
                days = int(amount) * (7 if match.group("unit").lower().startswith("week") else 1)
                return today + timedelta(days=days)
            if kind == "month_day":
                month_token = match.group("month").lower()
                month = int(month_token) if month_token.isdigit() else MONTHS[month_token]
                return cls._next_calendar_date(today, month, int(match.group("day")))
            if kind == "ordinal":
                return cls._next_day_of_month(today, int(match.group("day")))
            if kind == "weekday":
                target = WEEKDAYS.index(match.group("weekday").lower())
                delta = (target - today.weekday()) % 7 or 7
                return today + timedelta(days=delta)
        return None

    @classmethod
    def resolve_time(cls, phrase: str) -> Optional[time]:
        """Resolve a time-of-day phrase"""
        if not phrase:
            return None
        for pattern in TIME_PATTERNS:
            match = pattern.search(phrase)
            if match:
                return cls._time_from_match(match)
        match = BARE_TIME_PATTERN.match(phrase)
        if match:
            return cls._time_from_match(match)
        return None

    @classmethod
    def resolve_offset(cls, phrase: str, now: datetime) -> Optional[datetime]:
        """Resolve 'in 2 hours' style phrases to a moment"""
        if not phrase:
            return None
        for pattern in OFFSET_PATTERNS:
            match = pattern.search(phrase)
            if not match:
                continue
            if not match.group("amount"):
                return now + timedelta(minutes=30)
            amount = cls.parse_numeric_token(match.group("amount"))
            if amount is None:
                return None
            minutes = amount * 60 if match.group("unit").lower().startswith("h") else amount
            return (now + timedelta(minutes=minutes)).replace(second=0, microsecond=0)
        return None

    @classmethod
    def resolve_duration(cls, phrase: str) -> Optional[int]:
        """Resolve a duration phrase to whole minutes"""
        if not phrase:
            return None
        for pattern, kind in DURATION_PATTERNS:
            match = pattern.search(phrase)
            if not match:
                continue
            if kind == "hour_and_half":
                return 90
            if kind == "half_hour":
                return 30
            if kind == "hours":
                hours = cls.parse_numeric_token(match.group("hours"))
                minutes = cls.parse_numeric_token(match.group("minutes")) if match.group("minutes") else 0
                if hours is None or minutes is None:
                    return None
                return int(round(hours * 60 + minutes))
            minutes = cls.parse_numeric_token(match.group("minutes"))
            return int(round(minutes)) if minutes is not None else None
        return None

    @staticmethod
    def resolve_recurrence(phrase: str) -> Optional[str]:
        """Resolve 'every friday' / 'daily' to an RRULE"""
        if not phrase:
            return None
        for pattern in RECURRENCE_PATTERNS:
            match = pattern.search(phrase)
            if not match:
                continue
            unit = (match.group("unit") or match.group("adverb")).lower()
            if unit in ("day", "daily"):
                return "RRULE:FREQ=DAILY"
            if unit == "weekday":
                return "RRULE:FREQ=WEEKLY;BYDAY=MO,TU,WE,TH,FR"
            if unit in ("week", "weekly"):
                return "RRULE:FREQ=WEEKLY"
            if unit in ("month", "monthly"):
                return "RRULE:FREQ=MONTHLY"
            if unit in ("year", "yearly"):
                return "RRULE:FREQ=YEARLY"
            return f"RRULE:FREQ=WEEKLY;BYDAY={RRULE_DAYS[WEEKDAYS.index(unit)]}"
        return None

    @staticmethod
    def first_occurrence(rrule: str, now: datetime, time_of_day: Optional[time]) -> Optional[date]:
        """First date a recurring rule fires on, if the rule pins one down"""
        if not rrule:
            return None
        byday = re.search(r"BYDAY=([A-Z,]+)", rrule)
        if byday:
            codes = byday.group(1).split(",")
        elif "FREQ=DAILY" in rrule:
            codes = RRULE_DAYS
        else:
            return None

        for offset in range(8):
            day = now.date() + timedelta(days=offset)
            if RRULE_DAYS[day.weekday()] not in codes:
                continue
            if offset == 0 and (time_of_day is None or time_of_day <= now.time()):
                continue
            return day
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @classmethod
    def _time_from_match(cls, match) -> Optional[time]:
        groups = match.groupdict()
        word = groups.get("word")
        if word:
            return time(0, 0) if word.lower() == "midnight" else time(12, 0)

        hour_value = cls.parse_numeric_token(groups["hour"])
        if hour_value is None:
            return None
        hour = int(hour_value)
        minute = int(groups.get("minute") or 0)
        suffix = (groups.get("suffix") or "").lower()

        if suffix:
            if not 1 <= hour <= 12:
                return None
            if suffix == "p" and hour < 12:
                hour += 12
            if suffix == "a" and hour == 12:
                hour = 0
        elif 1 <= hour <= 7:
            # Spoken "at 3" almost always means the afternoon
            hour += 12

        if hour > 23 or minute > 59:
            return None
        return time(hour, minute)

    @staticmethod
    def _next_calendar_date(today: date, month: int, day: int) -> Optional[date]:
        for year in (today.year, today.year + 1):
            try:
                candidate = date(year, month, day)
            except ValueError:
                return None
            if candidate >= today:
                return candidate
        return None

    @staticmethod
    def _next_day_of_month(today: date, day: int) -> Optional[date]:
        year, month = today.year, today.month
        for _ in range(12):
            try:
                candidate = date(year, month, day)
                if candidate >= today:
                    return candidate
            except ValueError:
                pass
            month += 1
            if month > 12:
                year, month = year + 1, 1
        return None
