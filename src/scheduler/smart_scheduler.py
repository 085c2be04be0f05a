"""
Smart Scheduler - Main orchestrator for the voice scheduling conversation

Drives a VoiceConversation through extraction, clarification, conflict
checking and confirmation. Every turn works on a copy of the conversation;
retryable failures roll the copy back and only the activity timestamp moves.
"""
import logging
from datetime import date, datetime, time, timezone as dt_timezone
from typing import Callable, List, Optional

from config.settings import Config
from src.actions.executor import ActionExecutor
from src.actions.undo_manager import UndoManager
from src.ai_agent.intent_extractor import ExtractionContext, IntentExtractor
from src.calendar.registry import CalendarRegistry
from src.core.errors import (
    AmbiguousInput,
    ConversationClosed,
    ConversationNotFound,
    ExecutionFailure,
    ExtractionFailure,
    InvalidTurn,
    SchedulerError,
)
from src.core.models import ActionCandidate, AmbiguousResult, ConflictOverride, Severity
from src.scheduler import clarifications
from src.scheduler.conflict_detector import ConflictDetector
from src.scheduler.conversation_state import (
    ClarificationRequest,
    ConversationState,
    ConversationStore,
    Trigger,
    VoiceConversation,
)
from src.scheduler.turn_results import (
    Cancelled,
    ConflictDetected,
    Executed,
    Failed,
    NeedsClarification,
    ReadyToConfirm,
    TurnResult,
    UndoResult,
)
from utils.meeting_logger import MeetingLogger

logger = logging.getLogger(__name__)

CLOSED_STATES = (ConversationState.EXECUTED, ConversationState.CANCELLED)


def utc_now() -> datetime:
    return datetime.now(dt_timezone.utc)


class SmartScheduler:
    """
    Main scheduling coordinator that orchestrates the conversation
    """

    def __init__(self, extractor: IntentExtractor, detector: ConflictDetector, executor: ActionExecutor,
                 undo_manager: UndoManager, registry: CalendarRegistry, store: ConversationStore,
                 config: Config = None, clock: Callable[[], datetime] = None):
        self.config = config or Config()
        self.extractor = extractor
        self.detector = detector
        self.executor = executor
        self.undo_manager = undo_manager
        self.registry = registry
        self.store = store
        self.clock = clock or utc_now
        self.threshold = self.config.CONFIDENCE_THRESHOLD

        logger.info("SmartScheduler initialized")

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    def start_or_continue(self, transcript: Optional[str], user_id: str, conversation_id: str = None,
                          timezone: str = None, option_id: str = None) -> TurnResult:
        """Feed one user turn into a new or suspended conversation"""
        now = self.clock()
        timezone = timezone or self.registry.timezone_for(user_id)

        with self.store.turn(conversation_id, now, user_id=user_id, timezone=timezone, create=True) as turn:
            self._check_owner(turn.conversation, user_id)
            self._check_open(turn.conversation)
            try:
                result = self._handle_transcript(turn.conversation, transcript, option_id, now)
            except (ExtractionFailure, ExecutionFailure) as e:
                turn.rollback()
                result = self._failed(turn.conversation, e)

        logger.info(f"💬 Turn on {result.conversation_id}: {result.status} (state {result.state})")
        return result

    def select_slot(self, conversation_id: str, slot_index: int) -> TurnResult:
        """Move the pending event to one of the suggested slots and re-check it"""
        now = self.clock()
        with self.store.turn(conversation_id, now) as turn:
            conversation = turn.conversation
            self._check_open(conversation)
            self._require_state(conversation, ConversationState.CONFLICT_RESOLUTION, "pick a suggested time")
            return self._select_slot(conversation, slot_index, now)

    def override_conflict(self, conversation_id: str, reason: str = None) -> TurnResult:
        """Keep the conflicting time; the override is audited"""
        now = self.clock()
        with self.store.turn(conversation_id, now) as turn:
            conversation = turn.conversation
            self._check_open(conversation)
            self._require_state(conversation, ConversationState.CONFLICT_RESOLUTION, "override a conflict")
            return self._override(conversation, reason, now)

    def confirm(self, conversation_id: str) -> TurnResult:
        """Execute the pending action. Confirming again returns the same result"""
        now = self.clock()
        with self.store.turn(conversation_id, now) as turn:
            conversation = turn.conversation
            if conversation.state is ConversationState.EXECUTED:
                return self._executed(conversation)
            self._check_open(conversation)
            self._require_state(conversation, ConversationState.AWAITING_CONFIRMATION, "confirm")
            try:
                return self._execute(conversation, now)
            except ExecutionFailure as e:
                turn.rollback()
                return self._failed(turn.conversation, e)

    def cancel(self, conversation_id: str) -> None:
        """Abandon a conversation from any non-terminal state"""
        now = self.clock()
        with self.store.turn(conversation_id, now) as turn:
            conversation = turn.conversation
            if conversation.state is ConversationState.CANCELLED:
                return
            self._check_open(conversation)
            self._cancel(conversation)

    def undo_last(self, user_id: str) -> UndoResult:
        """Reverse the user's most recent executed action"""
        reversal = self.undo_manager.undo(user_id, now=self.clock())
        title = reversal.candidate.title
        if reversal.partial:
            message = f"'{title}' was already gone, so there was nothing left to remove."
        else:
            message = f"Undone. I removed '{title}'."
        return UndoResult(reversal=reversal, message=message)

    def get_conversation(self, conversation_id: str) -> VoiceConversation:
        return self.store.get(conversation_id, now=self.clock())

    def expire_idle(self) -> int:
        """Expire idle conversations and purge old finished ones"""
        now = self.clock()
        expired = self.store.expire_idle(now)
        self.store.purge(now)
        self.executor.prune(now - self.store.retention)
        return expired

    # ------------------------------------------------------------------
    # Transcript routing
    # ------------------------------------------------------------------

    def _handle_transcript(self, conversation: VoiceConversation, transcript: Optional[str],
                           option_id: Optional[str], now: datetime) -> TurnResult:
        state = conversation.state
        text = transcript.strip() if transcript else ""

        if state is ConversationState.IDLE:
            if option_id:
                raise InvalidTurn("There is nothing to choose from yet")
            conversation.apply(Trigger.TRANSCRIPT)
            conversation.last_transcript = text
            return self._extract_fresh(conversation, text, now)

        if text and not option_id and clarifications.wants_cancel(text):
            return self._cancel(conversation)

        if state is ConversationState.CLARIFYING:
            return self._answer(conversation, text, option_id, now)
        if state is ConversationState.CONFLICT_RESOLUTION:
            return self._resolve_by_voice(conversation, text, option_id, now)
        if state is ConversationState.AWAITING_CONFIRMATION:
            return self._confirm_by_voice(conversation, option_id or text, now)

        raise InvalidTurn(f"Can't take a new turn while {state.value}")

    def _extract_fresh(self, conversation: VoiceConversation, text: str, now: datetime) -> TurnResult:
        result = self.extractor.extract(text, self._context(conversation, now))

        conversation.pending_candidate = None
        conversation.pending_options = []
        conversation.last_conflict_report = None
        conversation.conflict_override = None

        if isinstance(result, AmbiguousResult):
            conversation.pending_options = result.options
            return self._ask(conversation, clarifications.disambiguation_question(result), now)

        conversation.pending_candidate = result
        return self._advance(conversation, now)

    def _answer(self, conversation: VoiceConversation, text: str, option_id: Optional[str],
                now: datetime) -> TurnResult:
        """Resume a suspended clarification with the user's answer"""
        request = conversation.pending_clarification
        if option_id:
            option = request.find_option(option_id)
            if option is None:
                raise InvalidTurn(f"Unknown option {option_id!r}")
        else:
            option = clarifications.match_option(request, text) if text else None

        conversation.record_answer(option.label if option else text, now)
        conversation.apply(Trigger.ANSWER)

        if request.kind == "rephrase":
            conversation.last_transcript = text
            return self._extract_fresh(conversation, text, now)

        if request.kind == "disambiguation":
            index = int(option.value) if option else self._match_interpretation(conversation.pending_options, text)
            if index is None:
                return self._ask(conversation, request, now)
            conversation.pending_candidate = conversation.pending_options[index]
            conversation.pending_options = []
            return self._advance(conversation, now)

        candidate = conversation.pending_candidate
        if request.kind == "confirmation" and option is not None:
            if option.value == "no":
                conversation.pending_candidate = None
                return self._ask(conversation, clarifications.rephrase_question(), now)
            conversation.pending_candidate = candidate.with_changes(confidence=max(candidate.confidence, self.threshold))
            return self._advance(conversation, now)

        context = self._context(conversation, now)
        if option is not None:
            conversation.pending_candidate = self._apply_option(candidate, request, option.value, context)
            return self._advance(conversation, now)

        fields = list(dict.fromkeys([request.field] + candidate.missing_fields))
        if request.kind == "confirmation":
            fields = ["date", "start_time"]
        try:
            conversation.pending_candidate = self.extractor.parse_clarification(text, candidate, fields, context)
        except AmbiguousInput as e:
            conversation.pending_options = e.result.options
            return self._ask(conversation, clarifications.disambiguation_question(e.result), now)
        return self._advance(conversation, now)

    def _resolve_by_voice(self, conversation: VoiceConversation, text: str, option_id: Optional[str],
                          now: datetime) -> TurnResult:
        """'the second one', 'keep it anyway' or a new time while a conflict is open"""
        if option_id:
            if option_id == "override":
                return self._override(conversation, None, now)
            if not option_id.isdigit():
                raise InvalidTurn(f"Unknown option {option_id!r}")
            return self._select_slot(conversation, int(option_id) - 1, now)

        if clarifications.wants_override(text):
            return self._override(conversation, text, now)
        index = clarifications.parse_ordinal(text)
        if index is not None:
            return self._select_slot(conversation, index - 1, now)
        return self._revise(conversation, text, now)

    def _confirm_by_voice(self, conversation: VoiceConversation, text: str, now: datetime) -> TurnResult:
        if clarifications.is_affirmative(text):
            return self._execute(conversation, now)
        if clarifications.is_negative(text):
            return self._cancel(conversation)
        return self._revise(conversation, text, now)

    def _revise(self, conversation: VoiceConversation, text: str, now: datetime) -> TurnResult:
        """Merge a spoken change ('make it 4pm instead') and start checking again"""
        conversation.apply(Trigger.REVISE)
        conversation.conflict_override = None
        try:
            conversation.pending_candidate = self.extractor.parse_clarification(
                text, conversation.pending_candidate, ["date", "start_time"], self._context(conversation, now)
            )
        except AmbiguousInput as e:
            conversation.pending_options = e.result.options
            return self._ask(conversation, clarifications.disambiguation_question(e.result), now)
        return self._advance(conversation, now)

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def _advance(self, conversation: VoiceConversation, now: datetime) -> TurnResult:
        """From parsing: ask, check conflicts, or go straight to confirmation"""
        candidate = conversation.pending_candidate
        if candidate.needs_clarification(self.threshold):
            today = self._context(conversation, now).local_now.date()
            return self._ask(conversation, clarifications.next_question(candidate, today), now)

        if candidate.is_time_bounded:
            conversation.apply(Trigger.TIME_BOUNDED)
            return self._check(conversation, now)

        conversation.apply(Trigger.UNBOUNDED)
        return self._ready(conversation)

    def _ask(self, conversation: VoiceConversation, request: ClarificationRequest, now: datetime) -> TurnResult:
        conversation.apply(Trigger.NEEDS_CLARIFICATION)
        conversation.ask(request, now)
        logger.info(f"❓ Asking about {request.field}: {request.question}")
        return NeedsClarification(
            conversation_id=conversation.conversation_id,
            state=conversation.state.value,
            question=request.question,
            field=request.field,
            options=list(request.options),
            candidate=conversation.pending_candidate
        )

    def _check(self, conversation: VoiceConversation, now: datetime) -> TurnResult:
        candidate = conversation.pending_candidate
        calendars = self.registry.connected_calendars(conversation.user_id)
        report = self.detector.check_conflicts(
            candidate.time_range, conversation.user_id, calendars, timezone=conversation.timezone, now=now
        )
        conversation.last_conflict_report = report

        if report.is_blocking:
            conversation.apply(Trigger.CONFLICT_FOUND)
            return ConflictDetected(
                conversation_id=conversation.conversation_id,
                state=conversation.state.value,
                report=report,
                message=self._conflict_message(report),
                warnings=self._warnings(conversation)
            )

        conversation.apply(Trigger.CONFLICT_FREE)
        return self._ready(conversation)

    def _select_slot(self, conversation: VoiceConversation, slot_index: int, now: datetime) -> TurnResult:
        slots = conversation.last_conflict_report.suggested_slots
        if not 0 <= slot_index < len(slots):
            raise InvalidTurn(f"No suggested slot {slot_index + 1}",
                              user_message=f"I only have {len(slots)} suggestions. Which one would you like?")

        slot = slots[slot_index]
        conversation.pending_candidate = conversation.pending_candidate.rescheduled(slot.start, slot.end)
        conversation.conflict_override = None
        conversation.apply(Trigger.SLOT_SELECTED)
        logger.info(f"🔁 Slot {slot_index + 1} selected: {slot.start.isoformat()}")
        return self._check(conversation, now)

    def _override(self, conversation: VoiceConversation, reason: Optional[str], now: datetime) -> TurnResult:
        override = ConflictOverride.from_report(conversation.last_conflict_report, now, reason)
        conversation.conflict_override = override
        conversation.apply(Trigger.OVERRIDE)
        MeetingLogger.log_override(conversation.conversation_id, override)
        return self._ready(conversation)

    def _ready(self, conversation: VoiceConversation) -> TurnResult:
        candidate = conversation.pending_candidate
        return ReadyToConfirm(
            conversation_id=conversation.conversation_id,
            state=conversation.state.value,
            preview=candidate.describe(),
            candidate=candidate,
            warnings=self._warnings(conversation)
        )

    def _execute(self, conversation: VoiceConversation, now: datetime) -> TurnResult:
        action = self.executor.execute(
            conversation.pending_candidate,
            self.registry.target_system(conversation.user_id),
            conversation.conversation_id,
            conversation.user_id,
            override=conversation.conflict_override,
            now=now,
            started=conversation.created_at
        )
        conversation.apply(Trigger.CONFIRM)
        conversation.executed_action = action
        self.undo_manager.record(action)
        return self._executed(conversation)

    def _executed(self, conversation: VoiceConversation) -> TurnResult:
        action = conversation.executed_action
        return Executed(
            conversation_id=conversation.conversation_id,
            state=conversation.state.value,
            result=action,
            message=f"Done. {action.candidate.describe()}."
        )

    def _cancel(self, conversation: VoiceConversation) -> TurnResult:
        conversation.apply(Trigger.CANCEL)
        conversation.pending_clarification = None
        logger.info(f"🛑 Conversation {conversation.conversation_id} cancelled")
        return Cancelled(conversation_id=conversation.conversation_id, state=conversation.state.value)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _context(conversation: VoiceConversation, now: datetime) -> ExtractionContext:
        return ExtractionContext(now=now, timezone=conversation.timezone)

    def _apply_option(self, candidate: ActionCandidate, request: ClarificationRequest, value: str,
                      context: ExtractionContext) -> ActionCandidate:
        if request.field == "date":
            candidate = candidate.with_changes(day=date.fromisoformat(value))
        elif request.field == "start_time":
            candidate = candidate.with_changes(time_of_day=time.fromisoformat(value))
        else:
            raise InvalidTurn(f"Options are not supported for {request.field}")
        return self.extractor.finalize(candidate, context)

    @staticmethod
    def _match_interpretation(options: List[ActionCandidate], text: str) -> Optional[int]:
        """Index of the only interpretation whose participant or title the answer names"""
        lowered = text.lower()
        matches = [
            i for i, option in enumerate(options)
            if any(name.lower() in lowered for name in option.participants)
            or (option.title and option.title.lower() in lowered)
        ]
        return matches[0] if len(matches) == 1 else None

    def _warnings(self, conversation: VoiceConversation) -> List[str]:
        warnings = []
        candidate = conversation.pending_candidate
        report = conversation.last_conflict_report

        if report is not None:
            partial = report.partial_warning()
            if partial is not None:
                warnings.append(partial.user_message)
            if report.severity is Severity.LOW:
                titles = ", ".join(e.title for e in report.conflicting_events)
                warnings.append(f"This is right next to {titles}, with little time in between.")
        if conversation.conflict_override is not None:
            titles = ", ".join(conversation.conflict_override.conflicting_events)
            warnings.append(f"This overlaps {titles}. Keeping it as you asked.")
        if candidate is not None and candidate.duration_defaulted:
            warnings.append(f"You didn't say how long, so I assumed {candidate.duration_minutes} minutes.")
        return warnings

    @staticmethod
    def _conflict_message(report) -> str:
        titles = ", ".join(f"'{e.title}'" for e in report.conflicting_events)
        message = f"That overlaps with {titles}."
        if report.suggested_slots:
            message += " I found some free times instead, or you can keep the original time."
        else:
            message += " I couldn't find a free time in the next two weeks. You can keep the original time."
        return message

    @staticmethod
    def _failed(conversation: VoiceConversation, error: SchedulerError) -> TurnResult:
        logger.warning(f"⚠️ Turn failed on {conversation.conversation_id}: {error}")
        return Failed(
            conversation_id=conversation.conversation_id,
            state=conversation.state.value,
            reason=error.user_message,
            error_code=error.code,
            retryable=error.retryable
        )

    @staticmethod
    def _check_owner(conversation: VoiceConversation, user_id: str) -> None:
        if conversation.user_id != user_id:
            raise ConversationNotFound(f"Conversation {conversation.conversation_id} belongs to another user")

    @staticmethod
    def _check_open(conversation: VoiceConversation) -> None:
        if conversation.state in CLOSED_STATES:
            raise ConversationClosed(f"Conversation {conversation.conversation_id} is {conversation.state.value}")

    @staticmethod
    def _require_state(conversation: VoiceConversation, state: ConversationState, action: str) -> None:
        if conversation.state is not state:
            raise InvalidTurn(f"Can't {action} while {conversation.state.value}",
                              user_message=f"There's nothing to {action} right now.")
