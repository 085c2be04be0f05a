"""
What a conversation turn hands back to the caller
"""
import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from src.core.models import ActionCandidate, ConflictReport, ExecutedAction
from src.scheduler.conversation_state import ClarificationOption


@dataclass
class TurnResult:
    conversation_id: str
    state: str

    status = "turn"

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "conversation_id": self.conversation_id, "state": self.state}


@dataclass
class NeedsClarification(TurnResult):
    question: str = ""
    field: str = ""
    options: List[ClarificationOption] = dataclasses.field(default_factory=list)
    candidate: Optional[ActionCandidate] = None

    status = "needs_clarification"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "question": self.question,
            "field": self.field,
            "options": [option.to_dict() for option in self.options],
            "candidate": self.candidate.to_dict() if self.candidate else None
        })
        return data


@dataclass
class ConflictDetected(TurnResult):
    report: Optional[ConflictReport] = None
    message: str = ""
    warnings: List[str] = dataclasses.field(default_factory=list)

    status = "conflict_detected"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "message": self.message,
            "report": self.report.to_dict() if self.report else None,
            "warnings": list(self.warnings)
        })
        return data


@dataclass
class ReadyToConfirm(TurnResult):
    preview: str = ""
    candidate: Optional[ActionCandidate] = None
    warnings: List[str] = dataclasses.field(default_factory=list)

    status = "ready_to_confirm"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "preview": self.preview,
            "candidate": self.candidate.to_dict() if self.candidate else None,
            "warnings": list(self.warnings)
        })
        return data


@dataclass
class Executed(TurnResult):
    result: Optional[ExecutedAction] = None
    message: str = ""

    status = "executed"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"message": self.message, "result": self.result.to_dict() if self.result else None})
        return data


@dataclass
class Cancelled(TurnResult):
    message: str = "Okay, I've cancelled that."

    status = "cancelled"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["message"] = self.message
        return data


@dataclass
class Failed(TurnResult):
    reason: str = ""
    error_code: str = ""
    retryable: bool = False

    status = "failed"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"reason": self.reason, "error_code": self.error_code, "retryable": self.retryable})
        return data


@dataclass
class UndoResult:
    reversal: ExecutedAction
    message: str

    @property
    def partial(self) -> bool:
        return self.reversal.partial

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "undone",
            "message": self.message,
            "partial": self.partial,
            "reversal": self.reversal.to_dict()
        }
