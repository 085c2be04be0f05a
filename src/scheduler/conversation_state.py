"""
Conversation state machine and the store that owns every VoiceConversation
"""
import copy
import json
import logging
import os
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from config.settings import Config
from src.core.errors import ConversationBusy, ConversationExpired, ConversationNotFound, InvalidTransition
from src.core.models import (
    ActionCandidate,
    ConflictOverride,
    ConflictReport,
    ExecutedAction,
    iso_or_none,
    parse_datetime,
    new_id,
)

logger = logging.getLogger(__name__)

CONVERSATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ConversationState(Enum):
    IDLE = "idle"
    PARSING = "parsing"
    CLARIFYING = "clarifying"
    CONFLICT_CHECKING = "conflict_checking"
    CONFLICT_RESOLUTION = "conflict_resolution"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({ConversationState.EXECUTED, ConversationState.CANCELLED, ConversationState.EXPIRED})


class Trigger(Enum):
    TRANSCRIPT = "transcript"
    NEEDS_CLARIFICATION = "needs_clarification"
    ANSWER = "answer"
    TIME_BOUNDED = "time_bounded"
    UNBOUNDED = "unbounded"
    CONFLICT_FOUND = "conflict_found"
    CONFLICT_FREE = "conflict_free"
    SLOT_SELECTED = "slot_selected"
    REVISE = "revise"
    OVERRIDE = "override"
    CONFIRM = "confirm"
    CANCEL = "cancel"
    EXPIRE = "expire"


S = ConversationState
TRANSITIONS = {
    (S.IDLE, Trigger.TRANSCRIPT): S.PARSING,
    (S.PARSING, Trigger.NEEDS_CLARIFICATION): S.CLARIFYING,
    (S.PARSING, Trigger.TIME_BOUNDED): S.CONFLICT_CHECKING,
    (S.PARSING, Trigger.UNBOUNDED): S.AWAITING_CONFIRMATION,
    (S.CLARIFYING, Trigger.ANSWER): S.PARSING,
    (S.CONFLICT_CHECKING, Trigger.CONFLICT_FOUND): S.CONFLICT_RESOLUTION,
    (S.CONFLICT_CHECKING, Trigger.CONFLICT_FREE): S.AWAITING_CONFIRMATION,
    (S.CONFLICT_RESOLUTION, Trigger.SLOT_SELECTED): S.CONFLICT_CHECKING,
    (S.CONFLICT_RESOLUTION, Trigger.REVISE): S.PARSING,
    (S.CONFLICT_RESOLUTION, Trigger.OVERRIDE): S.AWAITING_CONFIRMATION,
    (S.AWAITING_CONFIRMATION, Trigger.REVISE): S.PARSING,
    (S.AWAITING_CONFIRMATION, Trigger.CONFIRM): S.EXECUTED,
}
for _state in S:
    if not _state.is_terminal:
        TRANSITIONS[(_state, Trigger.CANCEL)] = S.CANCELLED
        TRANSITIONS[(_state, Trigger.EXPIRE)] = S.EXPIRED
del S, _state


def transition(state: ConversationState, trigger: Trigger) -> ConversationState:
    """Next state for a trigger; InvalidTransition when the pair is undefined"""
    try:
        return TRANSITIONS[(state, trigger)]
    except KeyError:
        raise InvalidTransition(state, trigger) from None


@dataclass
class ClarificationOption:
    option_id: str
    label: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.option_id, "label": self.label, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "ClarificationOption":
        return cls(data["id"], data["label"], data["value"])


@dataclass
class ClarificationRequest:
    """An open question. kind is one of field, confirmation, disambiguation, rephrase"""

    question: str
    field: str
    kind: str = "field"
    options: List[ClarificationOption] = field(default_factory=list)

    def find_option(self, option_id: str) -> Optional[ClarificationOption]:
        return next((option for option in self.options if option.option_id == option_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "field": self.field,
            "kind": self.kind,
            "options": [option.to_dict() for option in self.options]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClarificationRequest":
        return cls(
            question=data["question"],
            field=data["field"],
            kind=data.get("kind", "field"),
            options=[ClarificationOption.from_dict(o) for o in data.get("options", [])]
        )


@dataclass
class ClarificationExchange:
    question: str
    field: str
    asked_at: datetime
    answer: Optional[str] = None
    answered_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "field": self.field,
            "asked_at": iso_or_none(self.asked_at),
            "answer": self.answer,
            "answered_at": iso_or_none(self.answered_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClarificationExchange":
        return cls(data["question"], data["field"], parse_datetime(data["asked_at"]),
                   data.get("answer"), parse_datetime(data.get("answered_at")))


@dataclass
class VoiceConversation:
    conversation_id: str
    user_id: str
    timezone: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    state: ConversationState = ConversationState.IDLE
    pending_candidate: Optional[ActionCandidate] = None
    pending_options: List[ActionCandidate] = field(default_factory=list)
    pending_clarification: Optional[ClarificationRequest] = None
    clarification_history: List[ClarificationExchange] = field(default_factory=list)
    last_conflict_report: Optional[ConflictReport] = None
    conflict_override: Optional[ConflictOverride] = None
    executed_action: Optional[ExecutedAction] = None
    last_transcript: Optional[str] = None

    @classmethod
    def new(cls, conversation_id: Optional[str], user_id: str, timezone: str, now: datetime,
            ttl: timedelta) -> "VoiceConversation":
        return cls(
            conversation_id=conversation_id or new_id(),
            user_id=user_id,
            timezone=timezone,
            created_at=now,
            updated_at=now,
            expires_at=now + ttl
        )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def apply(self, trigger: Trigger) -> ConversationState:
        previous = self.state
        self.state = transition(self.state, trigger)
        logger.debug(f"Conversation {self.conversation_id}: {previous.value} -> {self.state.value} ({trigger.value})")
        return self.state

    def ask(self, request: ClarificationRequest, now: datetime) -> None:
        """Record an open question"""
        self.pending_clarification = request
        self.clarification_history.append(ClarificationExchange(request.question, request.field, asked_at=now))

    def record_answer(self, answer: str, now: datetime) -> None:
        if self.clarification_history and self.clarification_history[-1].answer is None:
            self.clarification_history[-1].answer = answer
            self.clarification_history[-1].answered_at = now
        self.pending_clarification = None

    def touch(self, now: datetime, ttl: timedelta) -> None:
        self.updated_at = now
        if not self.is_terminal:
            self.expires_at = now + ttl

    def is_idle_past(self, now: datetime) -> bool:
        return not self.is_terminal and now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "timezone": self.timezone,
            "state": self.state.value,
            "pending_candidate": self.pending_candidate.to_dict() if self.pending_candidate else None,
            "pending_options": [option.to_dict() for option in self.pending_options],
            "pending_clarification": self.pending_clarification.to_dict() if self.pending_clarification else None,
            "clarification_history": [exchange.to_dict() for exchange in self.clarification_history],
            "last_conflict_report": self.last_conflict_report.to_dict() if self.last_conflict_report else None,
            "conflict_override": self.conflict_override.to_dict() if self.conflict_override else None,
            "executed_action": self.executed_action.to_dict() if self.executed_action else None,
            "last_transcript": self.last_transcript,
            "created_at": iso_or_none(self.created_at),
            "updated_at": iso_or_none(self.updated_at),
            "expires_at": iso_or_none(self.expires_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoiceConversation":
        def optional(key, loader):
            return loader(data[key]) if data.get(key) else None

        return cls(
            conversation_id=data["conversation_id"],
            user_id=data["user_id"],
            timezone=data["timezone"],
            state=ConversationState(data["state"]),
            pending_candidate=optional("pending_candidate", ActionCandidate.from_dict),
            pending_options=[ActionCandidate.from_dict(o) for o in data.get("pending_options", [])],
            pending_clarification=optional("pending_clarification", ClarificationRequest.from_dict),
            clarification_history=[ClarificationExchange.from_dict(e) for e in data.get("clarification_history", [])],
            last_conflict_report=optional("last_conflict_report", ConflictReport.from_dict),
            conflict_override=optional("conflict_override", ConflictOverride.from_dict),
            executed_action=optional("executed_action", ExecutedAction.from_dict),
            last_transcript=data.get("last_transcript"),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            expires_at=parse_datetime(data["expires_at"])
        )


class Turn:
    """One turn's working copy of a conversation"""

    def __init__(self, conversation: VoiceConversation, is_new: bool):
        self.conversation = conversation
        self.is_new = is_new
        self._snapshot = copy.deepcopy(conversation)
        self.rolled_back = False

    def rollback(self) -> None:
        """Drop every change made during this turn"""
        self.conversation = copy.deepcopy(self._snapshot)
        self.rolled_back = True


class ConversationStore:
    """
    Owns VoiceConversation objects. One writer per conversation id at a time;
    idle conversations expire after the TTL, terminal ones are purged after
    the retention window.
    """

    def __init__(self, config: Config = None, ttl_minutes: int = None, retention_hours: int = None,
                 turn_wait: float = None, persist_dir: str = None):
        self.config = config or Config()
        self.ttl = timedelta(minutes=ttl_minutes or self.config.CONVERSATION_TTL_MINUTES)
        self.retention = timedelta(hours=retention_hours or self.config.CONVERSATION_RETENTION_HOURS)
        self.turn_wait = self.config.TURN_WAIT_SECONDS if turn_wait is None else turn_wait
        self.persist_dir = persist_dir if persist_dir is not None else (self.config.CONVERSATION_STORE_PATH or None)

        self._conversations: Dict[str, VoiceConversation] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

        if self.persist_dir:
            os.makedirs(self.persist_dir, exist_ok=True)
            self._load_all()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    @contextmanager
    def turn(self, conversation_id: Optional[str], now: datetime, user_id: str = None,
             timezone: str = None, create: bool = False) -> Iterator[Turn]:
        """
        Exclusive access to a working copy of the conversation. The copy is
        saved when the block exits normally and discarded when it raises.
        """
        conversation_id = conversation_id or new_id()
        self._check_id(conversation_id)
        lock = self._lock_for(conversation_id)
        if not self._acquire(lock):
            logger.warning(f"🔒 Conversation {conversation_id} is busy")
            raise ConversationBusy(f"Conversation {conversation_id} is processing another turn")

        try:
            turn = Turn(self._load_for_turn(conversation_id, now, user_id, timezone, create),
                        is_new=conversation_id not in self._conversations)
            yield turn
            turn.conversation.touch(now, self.ttl)
            self._save(turn.conversation)
        finally:
            lock.release()

    def _acquire(self, lock: threading.Lock) -> bool:
        if self.turn_wait and self.turn_wait > 0:
            return lock.acquire(timeout=self.turn_wait)
        return lock.acquire(blocking=False)

    def _load_for_turn(self, conversation_id: str, now: datetime, user_id: Optional[str],
                       timezone: Optional[str], create: bool) -> VoiceConversation:
        with self._guard:
            current = self._conversations.get(conversation_id)

        if current is None:
            if not create:
                raise ConversationNotFound(f"Unknown conversation {conversation_id}")
            logger.info(f"🆕 New conversation {conversation_id} for {user_id}")
            return VoiceConversation.new(conversation_id, user_id, timezone or self.config.DEFAULT_TIMEZONE,
                                         now, self.ttl)

        if current.is_idle_past(now):
            self._expire(current, now)
        if current.state is ConversationState.EXPIRED:
            raise ConversationExpired(f"Conversation {conversation_id} expired")
        return copy.deepcopy(current)

    # ------------------------------------------------------------------
    # Queries and housekeeping
    # ------------------------------------------------------------------

    def get(self, conversation_id: str, now: datetime = None) -> VoiceConversation:
        """Snapshot of a conversation, shown as expired once it has idled past its TTL"""
        with self._guard:
            current = self._conversations.get(conversation_id)
        if current is None:
            raise ConversationNotFound(f"Unknown conversation {conversation_id}")
        snapshot = copy.deepcopy(current)
        if now is not None and snapshot.is_idle_past(now):
            snapshot.state = ConversationState.EXPIRED
        return snapshot

    def __len__(self) -> int:
        with self._guard:
            return len(self._conversations)

    def expire_idle(self, now: datetime) -> int:
        """Expire every idle conversation that nobody is working on"""
        with self._guard:
            candidates = [c for c in self._conversations.values() if c.is_idle_past(now)]

        expired = 0
        for conversation in candidates:
            lock = self._lock_for(conversation.conversation_id)
            if not lock.acquire(blocking=False):
                continue
            try:
                if conversation.is_idle_past(now):
                    self._expire(conversation, now)
                    expired += 1
            finally:
                lock.release()

        if expired:
            logger.info(f"⌛ Expired {expired} idle conversations")
        return expired

    def purge(self, now: datetime) -> int:
        """Forget terminal conversations older than the retention window, skipping any mid-turn"""
        with self._guard:
            candidates = [cid for cid, c in self._conversations.items()
                          if c.is_terminal and c.updated_at + self.retention <= now]

        stale = []
        for conversation_id in candidates:
            lock = self._lock_for(conversation_id)
            if not lock.acquire(blocking=False):
                continue
            try:
                with self._guard:
                    current = self._conversations.get(conversation_id)
                    if current is None or not current.is_terminal or current.updated_at + self.retention > now:
                        continue
                    del self._conversations[conversation_id]
                    self._locks.pop(conversation_id, None)
                path = self._path(conversation_id)
                if path and os.path.exists(path):
                    os.remove(path)
                stale.append(conversation_id)
            finally:
                lock.release()

        if stale:
            logger.info(f"🧹 Purged {len(stale)} finished conversations")
        return len(stale)

    def _expire(self, conversation: VoiceConversation, now: datetime) -> None:
        conversation.apply(Trigger.EXPIRE)
        conversation.pending_clarification = None
        conversation.updated_at = now
        self._save(conversation)
        logger.info(f"⌛ Conversation {conversation.conversation_id} expired")

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _lock_for(self, conversation_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(conversation_id, threading.Lock())

    @staticmethod
    def _check_id(conversation_id: str) -> None:
        if not CONVERSATION_ID_PATTERN.match(conversation_id):
            raise ValueError(f"Invalid conversation id {conversation_id!r}")

    def _path(self, conversation_id: str) -> Optional[str]:
        if not self.persist_dir:
            return None
        return os.path.join(self.persist_dir, f"{conversation_id}.json")

    def _save(self, conversation: VoiceConversation) -> None:
        with self._guard:
            self._conversations[conversation.conversation_id] = conversation

        path = self._path(conversation.conversation_id)
        if path:
            tmp_path = f"{path}.tmp"
            with open(tmp_path, "w") as f:
                json.dump(conversation.to_dict(), f, indent=2)
            os.replace(tmp_path, path)

    def _load_all(self) -> None:
        loaded = 0
        for filename in sorted(os.listdir(self.persist_dir)):
            if not filename.endswith(".json"):
                continue
            path = os.path.join(self.persist_dir, filename)
            try:
                with open(path) as f:
                    conversation = VoiceConversation.from_dict(json.load(f))
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"❌ Skipping unreadable conversation file {path}: {e}")
                continue
            self._conversations[conversation.conversation_id] = conversation
            loaded += 1
        logger.info(f"📂 Loaded {loaded} conversations from {self.persist_dir}")
