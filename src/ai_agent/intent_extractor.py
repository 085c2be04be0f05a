"""
Intent extraction: transcript + temporal context -> ActionCandidate

The model only reports the phrases it heard. Dates and times are resolved
here, against the caller's clock, and only from phrases that actually occur
in the transcript.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from zoneinfo import ZoneInfo

from config.settings import Config
from src.ai_agent.llm_client import LLMError, LLMResponseError
from src.ai_agent.temporal_parser import TemporalParser
from src.core.errors import AmbiguousInput, ExtractionFailure
from src.core.models import (
    CANDIDATE_TYPES,
    REQUIRED_FIELDS,
    ActionCandidate,
    ActionKind,
    AmbiguousResult,
    Priority,
)

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("title", "description", "date_text", "time_text", "duration_text", "recurrence_text", "priority")


class InvalidExtraction(ValueError):
    """Model output that does not have the expected structure"""


@dataclass
class ExtractionContext:
    now: datetime
    timezone: str

    def __post_init__(self):
        if self.now.tzinfo is None:
            raise ValueError("ExtractionContext.now must be timezone-aware")
        ZoneInfo(self.timezone)

    @property
    def local_now(self) -> datetime:
        return self.now.astimezone(ZoneInfo(self.timezone))


class IntentExtractor:
    """Turns transcripts into action candidates"""

    def __init__(self, llm_client, config: Config = None):
        self.llm_client = llm_client
        self.config = config or Config()
        self.threshold = self.config.CONFIDENCE_THRESHOLD

    def extract(self, transcript: str, context: ExtractionContext) -> Union[ActionCandidate, AmbiguousResult]:
        """Best candidate for a transcript, or the discrete readings when it is ambiguous"""
        transcript = self._require_text(transcript)
        raw = self._request(transcript, context)

        interpretations = raw["interpretations"]
        if len(interpretations) >= 2:
            options = [
                self._build_candidate(item, transcript, context)
                for item in interpretations[:self.config.MAX_INTERPRETATIONS]
            ]
            logger.info(f"🔀 Ambiguous transcript: {len(options)} interpretations")
            return AmbiguousResult(options=options)

        candidate = self._build_candidate(raw, transcript, context)
        logger.info(f"✅ Extracted {candidate.kind.value} '{candidate.title}' "
                    f"(confidence {candidate.confidence:.2f}, missing {candidate.missing_fields})")
        return candidate

    def parse_clarification(self, answer: str, candidate: ActionCandidate, fields: List[str],
                            context: ExtractionContext) -> ActionCandidate:
        """Merge an answer to a follow-up question into the pending candidate"""
        answer = self._require_text(answer)
        raw = self._request(answer, context, pending_fields=fields)

        interpretations = raw["interpretations"]
        if len(interpretations) >= 2:
            options = [
                self._merge(candidate, item, answer, context, fields)
                for item in interpretations[:self.config.MAX_INTERPRETATIONS]
            ]
            raise AmbiguousInput(AmbiguousResult(options=options))

        return self._merge(candidate, raw, answer, context, fields)

    def finalize(self, candidate: ActionCandidate, context: ExtractionContext,
                 raw_confidence: float = None) -> ActionCandidate:
        """Apply defaults and recompute missing fields and effective confidence"""
        raw_confidence = candidate.raw_confidence if raw_confidence is None else raw_confidence
        changes = {"raw_confidence": raw_confidence}

        if candidate.recurrence and candidate.day is None:
            first = TemporalParser.first_occurrence(candidate.recurrence, context.local_now, candidate.time_of_day)
            if first:
                changes["day"] = first

        if (candidate.kind is ActionKind.CALENDAR_EVENT and candidate.time_of_day is not None
                and not candidate.duration_minutes):
            changes["duration_minutes"] = self.config.DEFAULT_MEETING_DURATION
            changes["duration_defaulted"] = True

        candidate = candidate.with_changes(**changes)
        missing = [name for name in REQUIRED_FIELDS[candidate.kind] if self._is_missing(candidate, name)]

        confidence = raw_confidence
        if missing:
            confidence = min(confidence, self.threshold - 0.01)

        return candidate.with_changes(missing_fields=missing, confidence=max(0.0, confidence))

    # ------------------------------------------------------------------
    # Model round trip
    # ------------------------------------------------------------------

    def _request(self, text: str, context: ExtractionContext, pending_fields: List[str] = None) -> Dict[str, Any]:
        """One model call plus at most one stricter repair attempt"""
        last_error = None
        for strict in (False, True):
            try:
                raw = self.llm_client.parse_transcript(
                    text,
                    context.local_now,
                    context.timezone,
                    pending_fields=pending_fields,
                    strict=strict
                )
                return self._normalize_raw(raw, answer=bool(pending_fields))
            except (LLMResponseError, InvalidExtraction) as e:
                last_error = e
                logger.warning(f"⚠️ Unusable model output ({'repair' if strict else 'first'} attempt): {e}")
            except LLMError as e:
                raise ExtractionFailure(f"Language model unavailable: {e}") from e

        raise ExtractionFailure(f"Unusable model output after repair attempt: {last_error}")

    @staticmethod
    def _normalize_raw(raw: Any, answer: bool = False) -> Dict[str, Any]:
        """Check the model output's structure and coerce it into a predictable shape"""
        if not isinstance(raw, dict):
            raise InvalidExtraction(f"Expected a JSON object, got {type(raw).__name__}")

        normalized = dict(raw)
        action_type = raw.get("action_type")
        valid_types = [kind.value for kind in ActionKind]
        if action_type is None and not answer:
            raise InvalidExtraction("Missing action_type")
        if action_type is not None and action_type not in valid_types:
            raise InvalidExtraction(f"Unknown action_type {action_type!r}")

        for key in TEXT_FIELDS:
            value = raw.get(key)
            if value is not None and not isinstance(value, str):
                raise InvalidExtraction(f"Field {key} must be a string or null")
            normalized[key] = value.strip() if isinstance(value, str) and value.strip() else None

        confidence = raw.get("confidence", 0.0)
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise InvalidExtraction(f"Confidence must be a number, got {confidence!r}")
        normalized["confidence"] = min(1.0, max(0.0, float(confidence)))

        participants = raw.get("participants") or []
        if not isinstance(participants, list) or not all(isinstance(p, str) for p in participants):
            raise InvalidExtraction("Participants must be a list of strings")
        normalized["participants"] = participants

        interpretations = raw.get("interpretations") or []
        if not isinstance(interpretations, list) or not all(isinstance(i, dict) for i in interpretations):
            raise InvalidExtraction("Interpretations must be a list of objects")
        base = {key: value for key, value in normalized.items() if key != "interpretations"}
        normalized["interpretations"] = [
            IntentExtractor._normalize_raw({**base, **item, "interpretations": []}, answer=answer)
            for item in interpretations
        ]
        return normalized

    # ------------------------------------------------------------------
    # Building candidates
    # ------------------------------------------------------------------

    def _build_candidate(self, raw: Dict[str, Any], source: str, context: ExtractionContext) -> ActionCandidate:
        kind = ActionKind(raw["action_type"])
        candidate = CANDIDATE_TYPES[kind](
            title=raw.get("title"),
            description=raw.get("description"),
            timezone=context.timezone,
            priority=self._priority(raw.get("priority")),
            participants=list(raw.get("participants") or []),
            **self._resolve_fields(raw, source, context)
        )
        return self.finalize(candidate, context, raw_confidence=raw["confidence"])

    def _merge(self, candidate: ActionCandidate, raw: Dict[str, Any], answer: str,
               context: ExtractionContext, fields: List[str]) -> ActionCandidate:
        changes = self._resolve_fields(raw, answer, context)
        if "duration_minutes" in changes:
            changes["duration_defaulted"] = False
        if "title" in fields and raw.get("title"):
            changes["title"] = raw["title"]
        if raw.get("participants"):
            changes["participants"] = list(raw["participants"])

        if not changes:
            logger.info("Clarification answer did not fill any field")
            return candidate

        logger.info(f"📝 Clarification filled: {sorted(changes)}")
        raw_confidence = max(candidate.raw_confidence, raw["confidence"])
        return self.finalize(candidate.with_changes(**changes), context, raw_confidence=raw_confidence)

    def _resolve_fields(self, raw: Dict[str, Any], source: str, context: ExtractionContext) -> Dict[str, Any]:
        """Resolve the phrases the model heard into concrete field values"""
        resolved = {}
        local_now = context.local_now

        time_text = self._grounded(raw.get("time_text"), source, "time")
        if time_text:
            moment = TemporalParser.resolve_offset(time_text, local_now)
            if moment is not None:
                resolved["day"] = moment.date()
                resolved["time_of_day"] = moment.time()
            else:
                time_of_day = TemporalParser.resolve_time(time_text)
                if time_of_day is not None:
                    resolved["time_of_day"] = time_of_day

        date_text = self._grounded(raw.get("date_text"), source, "date")
        if date_text and "day" not in resolved:
            day = TemporalParser.resolve_date(date_text, local_now.date())
            if day is not None:
                resolved["day"] = day

        duration_text = self._grounded(raw.get("duration_text"), source, "duration")
        if duration_text:
            minutes = TemporalParser.resolve_duration(duration_text)
            if minutes and self.config.MIN_MEETING_DURATION <= minutes <= self.config.MAX_MEETING_DURATION:
                resolved["duration_minutes"] = minutes
            elif minutes:
                logger.warning(f"⚠️ Ignoring out-of-range duration {minutes} minutes")

        recurrence_text = self._grounded(raw.get("recurrence_text"), source, "recurrence")
        if recurrence_text:
            recurrence = TemporalParser.resolve_recurrence(recurrence_text)
            if recurrence:
                resolved["recurrence"] = recurrence

        return resolved

    @staticmethod
    def _grounded(phrase: Optional[str], source: str, label: str) -> Optional[str]:
        """The phrase, if the user actually said it"""
        if not phrase:
            return None
        if " ".join(phrase.lower().split()) in " ".join(source.lower().split()):
            return phrase
        logger.warning(f"⚠️ Discarding {label} phrase {phrase!r}: not present in what the user said")
        return None

    @staticmethod
    def _is_missing(candidate: ActionCandidate, name: str) -> bool:
        if name == "title":
            return not (candidate.title and candidate.title.strip())
        if name == "date":
            return candidate.day is None
        if name == "start_time":
            return candidate.time_of_day is None
        return False

    @staticmethod
    def _priority(value: Optional[str]) -> Priority:
        try:
            return Priority((value or "normal").lower())
        except ValueError:
            return Priority.NORMAL

    @staticmethod
    def _require_text(text: Optional[str]) -> str:
        if text is None or not text.strip():
            raise ExtractionFailure("Empty transcript", user_message="I didn't hear anything. Could you say that again?")
        return text.strip()
