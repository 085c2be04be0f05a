"""
Data model for the voice scheduling pipeline

ActionCandidate is a closed tagged union: every concrete variant declares its
ActionKind and is registered in CANDIDATE_TYPES, which is what the executor
dispatches on.
"""
import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional
from zoneinfo import ZoneInfo

from src.core.errors import ConflictCheckPartial


def new_id() -> str:
    return uuid.uuid4().hex


def iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def format_clock(value: time) -> str:
    """Format a time of day as '3:00 PM'"""
    return value.strftime("%I:%M %p").lstrip("0")


def format_day(value: date) -> str:
    """Format a date as 'Friday, October 16'"""
    return f"{value:%A, %B} {value.day}"


class ActionKind(Enum):
    TASK = "task"
    CALENDAR_EVENT = "calendar_event"
    REMINDER = "reminder"


class Priority(Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


REQUIRED_FIELDS = {
    ActionKind.TASK: ("title",),
    ActionKind.CALENDAR_EVENT: ("title", "date", "start_time"),
    ActionKind.REMINDER: ("title", "date", "start_time"),
}


@dataclass
class TimeRange:
    """Half-open interval [start, end) of timezone-aware datetimes"""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("TimeRange needs timezone-aware datetimes")
        if self.end <= self.start:
            raise ValueError(f"TimeRange end {self.end.isoformat()} must be after start {self.start.isoformat()}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and other.start < self.end

    def overlap_with(self, other: "TimeRange") -> timedelta:
        if not self.overlaps(other):
            return timedelta(0)
        return min(self.end, other.end) - max(self.start, other.start)

    def contains(self, other: "TimeRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "TimeRange":
        return cls(start=parse_datetime(data["start"]), end=parse_datetime(data["end"]))


@dataclass
class ActionCandidate:
    """A structured, not-yet-committed action derived from a transcript"""

    kind: ClassVar[ActionKind]

    title: Optional[str] = None
    description: Optional[str] = None
    day: Optional[date] = None
    time_of_day: Optional[time] = None
    duration_minutes: Optional[int] = None
    duration_defaulted: bool = False
    timezone: str = "UTC"
    recurrence: Optional[str] = None
    priority: Priority = Priority.NORMAL
    participants: List[str] = field(default_factory=list)
    confidence: float = 0.0
    raw_confidence: float = 0.0
    missing_fields: List[str] = field(default_factory=list)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def start(self) -> Optional[datetime]:
        if self.day is None or self.time_of_day is None:
            return None
        return datetime.combine(self.day, self.time_of_day, tzinfo=self.tzinfo)

    @property
    def end(self) -> Optional[datetime]:
        start = self.start
        if start is None or not self.duration_minutes:
            return None
        return start + timedelta(minutes=self.duration_minutes)

    @property
    def is_time_bounded(self) -> bool:
        return self.kind is ActionKind.CALENDAR_EVENT

    @property
    def time_range(self) -> Optional[TimeRange]:
        if self.start is None or self.end is None:
            return None
        return TimeRange(self.start, self.end)

    def needs_clarification(self, threshold: float) -> bool:
        return bool(self.missing_fields) or self.confidence < threshold

    def with_changes(self, **changes) -> "ActionCandidate":
        return replace(self, **changes)

    def rescheduled(self, start: datetime, end: datetime) -> "ActionCandidate":
        """Copy of this candidate moved to a new time range"""
        local_start = start.astimezone(self.tzinfo)
        minutes = int((end - start).total_seconds() // 60)
        return replace(
            self,
            day=local_start.date(),
            time_of_day=local_start.time().replace(tzinfo=None),
            duration_minutes=minutes,
            duration_defaulted=self.duration_defaulted and minutes == self.duration_minutes,
            missing_fields=[f for f in self.missing_fields if f not in ("date", "start_time")]
        )

    def describe(self) -> str:
        """Human-readable preview of the action"""
        title = self.title or "Untitled"
        when = ""
        if self.day is not None:
            when = f" on {format_day(self.day)}"
        if self.kind is ActionKind.CALENDAR_EVENT and self.start and self.end:
            when += f" from {format_clock(self.time_of_day)} to {format_clock(self.end.time())}"
        elif self.time_of_day is not None:
            when += f" at {format_clock(self.time_of_day)}"

        if self.kind is ActionKind.CALENDAR_EVENT:
            text = f"Add '{title}' to your calendar{when}"
        elif self.kind is ActionKind.REMINDER:
            text = f"Remind you to '{title}'{when}"
        else:
            text = f"Add task '{title}'" + (f" due{when}" if when else "")

        if self.participants:
            text += f" with {', '.join(self.participants)}"
        if self.recurrence:
            text += f" (repeats: {self.recurrence})"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "description": self.description,
            "date": self.day.isoformat() if self.day else None,
            "time": self.time_of_day.strftime("%H:%M") if self.time_of_day else None,
            "duration_minutes": self.duration_minutes,
            "duration_defaulted": self.duration_defaulted,
            "timezone": self.timezone,
            "start": iso_or_none(self.start),
            "end": iso_or_none(self.end),
            "recurrence": self.recurrence,
            "priority": self.priority.value,
            "participants": list(self.participants),
            "confidence": self.confidence,
            "raw_confidence": self.raw_confidence,
            "missing_fields": list(self.missing_fields)
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ActionCandidate":
        candidate_type = CANDIDATE_TYPES[ActionKind(data["kind"])]
        return candidate_type(
            title=data.get("title"),
            description=data.get("description"),
            day=date.fromisoformat(data["date"]) if data.get("date") else None,
            time_of_day=time.fromisoformat(data["time"]) if data.get("time") else None,
            duration_minutes=data.get("duration_minutes"),
            duration_defaulted=data.get("duration_defaulted", False),
            timezone=data.get("timezone", "UTC"),
            recurrence=data.get("recurrence"),
            priority=Priority(data.get("priority", "normal")),
            participants=list(data.get("participants", [])),
            confidence=data.get("confidence", 0.0),
            raw_confidence=data.get("raw_confidence", 0.0),
            missing_fields=list(data.get("missing_fields", []))
        )


@dataclass
class TaskCandidate(ActionCandidate):
    kind: ClassVar[ActionKind] = ActionKind.TASK


@dataclass
class CalendarEventCandidate(ActionCandidate):
    kind: ClassVar[ActionKind] = ActionKind.CALENDAR_EVENT


@dataclass
class ReminderCandidate(ActionCandidate):
    kind: ClassVar[ActionKind] = ActionKind.REMINDER


CANDIDATE_TYPES = {
    ActionKind.TASK: TaskCandidate,
    ActionKind.CALENDAR_EVENT: CalendarEventCandidate,
    ActionKind.REMINDER: ReminderCandidate,
}


@dataclass
class AmbiguousResult:
    """Several discrete readings of one transcript"""

    options: List[ActionCandidate]
    question: str = "Which one did you mean?"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "options": [option.to_dict() for option in self.options]
        }


@dataclass
class CalendarEvent:
    """Summary of an existing event on an external calendar"""

    event_id: str
    title: str
    start: datetime
    end: datetime
    source_calendar: str
    flexible: bool = False
    attendee_count: int = 1

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.start, self.end)

    def overlaps_with(self, time_range: TimeRange) -> bool:
        return self.start < time_range.end and self.end > time_range.start

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "source_calendar": self.source_calendar,
            "flexible": self.flexible,
            "attendee_count": self.attendee_count
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalendarEvent":
        return cls(
            event_id=data["id"],
            title=data["title"],
            start=parse_datetime(data["start"]),
            end=parse_datetime(data["end"]),
            source_calendar=data["source_calendar"],
            flexible=data.get("flexible", False),
            attendee_count=data.get("attendee_count", 1)
        )


class Severity(Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)


@dataclass
class SuggestedSlot:
    start: datetime
    end: datetime
    score: float
    reason: str

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.start, self.end)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "score": round(self.score, 2),
            "reason": self.reason
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SuggestedSlot":
        return cls(parse_datetime(data["start"]), parse_datetime(data["end"]), data["score"], data["reason"])


@dataclass
class ConflictReport:
    severity: Severity
    requested: TimeRange
    conflicting_events: List[CalendarEvent] = field(default_factory=list)
    suggested_slots: List[SuggestedSlot] = field(default_factory=list)
    checked_calendars: List[str] = field(default_factory=list)
    unreachable_calendars: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.unreachable_calendars)

    @property
    def is_blocking(self) -> bool:
        return self.severity in (Severity.MEDIUM, Severity.HIGH)

    def partial_warning(self) -> Optional[ConflictCheckPartial]:
        if not self.partial:
            return None
        return ConflictCheckPartial(self.unreachable_calendars)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "requested": self.requested.to_dict(),
            "conflicting_events": [event.to_dict() for event in self.conflicting_events],
            "suggested_slots": [slot.to_dict() for slot in self.suggested_slots],
            "checked_calendars": list(self.checked_calendars),
            "unreachable_calendars": list(self.unreachable_calendars),
            "partial": self.partial
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConflictReport":
        return cls(
            severity=Severity(data["severity"]),
            requested=TimeRange.from_dict(data["requested"]),
            conflicting_events=[CalendarEvent.from_dict(e) for e in data.get("conflicting_events", [])],
            suggested_slots=[SuggestedSlot.from_dict(s) for s in data.get("suggested_slots", [])],
            checked_calendars=list(data.get("checked_calendars", [])),
            unreachable_calendars=list(data.get("unreachable_calendars", []))
        )


@dataclass(frozen=True)
class ConflictOverride:
    """Audit record of a user choosing to keep a conflicting time"""

    severity: str
    conflicting_events: List[str]
    overridden_at: datetime
    reason: Optional[str] = None

    @classmethod
    def from_report(cls, report: ConflictReport, now: datetime, reason: str = None) -> "ConflictOverride":
        return cls(
            severity=report.severity.value,
            conflicting_events=[f"{e.title} ({e.source_calendar})" for e in report.conflicting_events],
            overridden_at=now,
            reason=reason
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "conflicting_events": list(self.conflicting_events),
            "overridden_at": self.overridden_at.isoformat(),
            "reason": self.reason
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConflictOverride":
        return cls(data["severity"], list(data["conflicting_events"]), parse_datetime(data["overridden_at"]), data.get("reason"))


@dataclass(frozen=True)
class UndoToken:
    """What the executor needs to reverse an external write"""

    target: str  # "calendar" or "tasks"
    provider: str
    external_id: str
    container_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "provider": self.provider,
            "external_id": self.external_id,
            "container_id": self.container_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UndoToken":
        return cls(data["target"], data["provider"], data["external_id"], data.get("container_id"))


COMMIT = "commit"
REVERSAL = "reversal"


@dataclass(frozen=True)
class ExecutedAction:
    action_id: str
    timestamp: datetime
    conversation_id: str
    user_id: str
    candidate: ActionCandidate
    kind: str = COMMIT
    undo_token: Optional[UndoToken] = None
    conflict_override: Optional[ConflictOverride] = None
    reverses: Optional[str] = None
    partial: bool = False
    detail: Optional[str] = None

    @classmethod
    def create(cls, conversation_id: str, user_id: str, candidate: ActionCandidate,
               now: datetime, **kwargs) -> "ExecutedAction":
        return cls(
            action_id=new_id(),
            timestamp=now,
            conversation_id=conversation_id,
            user_id=user_id,
            candidate=copy.deepcopy(candidate),
            **kwargs
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.action_id,
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "candidate": self.candidate.to_dict(),
            "undo_token": self.undo_token.to_dict() if self.undo_token else None,
            "conflict_override": self.conflict_override.to_dict() if self.conflict_override else None,
            "reverses": self.reverses,
            "partial": self.partial,
            "detail": self.detail
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutedAction":
        return cls(
            action_id=data["id"],
            timestamp=parse_datetime(data["timestamp"]),
            conversation_id=data["conversation_id"],
            user_id=data["user_id"],
            candidate=ActionCandidate.from_dict(data["candidate"]),
            kind=data.get("kind", COMMIT),
            undo_token=UndoToken.from_dict(data["undo_token"]) if data.get("undo_token") else None,
            conflict_override=ConflictOverride.from_dict(data["conflict_override"]) if data.get("conflict_override") else None,
            reverses=data.get("reverses"),
            partial=data.get("partial", False),
            detail=data.get("detail")
        )
