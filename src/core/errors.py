"""
Error taxonomy for the Voice Scheduling Assistant

Every error a caller can see derives from SchedulerError and carries an
actionable message for the user plus the HTTP status the API maps it to.
"""
from typing import List, Optional


class SchedulerError(Exception):
    """Base class for all scheduling pipeline errors"""

    code = "scheduler_error"
    retryable = False
    http_status = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str = None, user_message: str = None):
        super().__init__(message or self.default_message)
        self.user_message = user_message or self.default_message

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.user_message,
            "detail": str(self),
            "retryable": self.retryable
        }


class ExtractionFailure(SchedulerError):
    """The language-understanding step produced nothing usable"""

    code = "extraction_failure"
    retryable = True
    http_status = 422
    default_message = "Sorry, I didn't catch that. Could you say it again?"


class AmbiguousInput(SchedulerError):
    """The input has several equally valid readings"""

    code = "ambiguous_input"
    retryable = True
    http_status = 409
    default_message = "That could mean a few different things. Please pick one."

    def __init__(self, result, message: str = None):
        super().__init__(message or f"{len(result.options)} possible interpretations")
        self.result = result


class ConflictCheckPartial(SchedulerError):
    """Some calendars could not be reached during a conflict check"""

    code = "conflict_check_partial"
    retryable = True
    http_status = 200
    default_message = "I couldn't reach all of your calendars, so there may be conflicts I can't see."

    def __init__(self, unreachable: List[str]):
        names = ", ".join(unreachable)
        super().__init__(
            f"Unreachable calendars: {names}",
            user_message=f"I couldn't reach {names}, so there may be conflicts I can't see."
        )
        self.unreachable = list(unreachable)


class ExecutionFailure(SchedulerError):
    """Writing to (or reverting in) the external system failed"""

    code = "execution_failure"
    retryable = True
    http_status = 502
    default_message = "I couldn't save that to your calendar. Please try confirming again."


class ConversationExpired(SchedulerError):
    code = "conversation_expired"
    http_status = 410
    default_message = "This conversation timed out. Please start over with a new request."


class ConversationBusy(SchedulerError):
    code = "conversation_busy"
    retryable = True
    http_status = 409
    default_message = "Still working on your last request. Please wait a moment."


class ConversationClosed(SchedulerError):
    code = "conversation_closed"
    http_status = 409
    default_message = "This conversation is already finished. Please start a new request."


class ConversationNotFound(SchedulerError):
    code = "conversation_not_found"
    http_status = 404
    default_message = "I couldn't find that conversation. Please start a new request."


class InvalidTurn(SchedulerError):
    """The operation does not fit the conversation's current state"""

    code = "invalid_turn"
    http_status = 409
    default_message = "That isn't something I can do right now."


class InvalidTransition(SchedulerError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, state, trigger):
        super().__init__(f"No transition from {state.value} on {trigger.value}")
        self.state = state
        self.trigger = trigger


class NothingToUndo(SchedulerError):
    code = "nothing_to_undo"
    http_status = 404
    default_message = "There's nothing to undo."


class CalendarProviderError(Exception):
    """A calendar provider or task store call failed"""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ExternalObjectMissing(CalendarProviderError):
    """The external object no longer exists"""
