"""
Rule-based intent reader used when no language model is configured
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from config.settings import Config
from src.ai_agent.temporal_parser import BARE_TIME_PATTERN, MONTHS, WEEKDAYS, TemporalParser

logger = logging.getLogger(__name__)

REMINDER_PATTERN = re.compile(r"\bremind(?:er)?\b", re.IGNORECASE)
TASK_PATTERN = re.compile(r"\b(?:task|to-?do|todo|errand|my list|checklist)\b", re.IGNORECASE)
EVENT_PATTERN = re.compile(
    r"\b(?:meeting|meet|lunch|dinner|breakfast|brunch|coffee|call|appointment|interview|"
    r"sync|standup|session|party|event|class|calendar|schedule|book|demo|review)\b",
    re.IGNORECASE
)

COMMAND_PREFIX = re.compile(
    r"^(?:(?:please|hey|ok|okay|so)\s*,?\s+|(?:can|could|would)\s+you\s+|i\s+(?:need|want|have)\s+to\s+)*"
    r"(?:remind\s+me\s+(?:to|about|that)\s+|remind\s+me\s+|"
    r"(?:add|create|make)\s+(?:a\s+)?(?:task|to-?do|reminder)\s+(?:to\s+|for\s+|called\s+)?|"
    r"set\s+(?:a\s+)?reminder\s+(?:to\s+|for\s+)?|"
    r"schedule\s+|book\s+|set\s+up\s+|setup\s+|add\s+|create\s+|put\s+|plan\s+|make\s+)?"
    r"(?:a\s+|an\s+|the\s+|my\s+)?",
    re.IGNORECASE
)
TRAILING_PHRASE = re.compile(
    r"\s*(?:(?:on|to|in)\s+(?:my|the)\s+(?:calendar|list|to-?do\s+list|tasks)|please|for\s+me)\s*$",
    re.IGNORECASE
)
DANGLING_WORDS = re.compile(r"(?:[\s,]+(?:at|on|for|from|by|and|around))+[\s,.!?]*$", re.IGNORECASE)
PARTICIPANT_PATTERN = re.compile(r"\bwith\s+([A-Z][\w'-]*(?:\s+[A-Z][\w'-]*)?)")

HIGH_PRIORITY_INDICATORS = ["urgent", "asap", "as soon as possible", "important", "high priority", "critical"]
LOW_PRIORITY_INDICATORS = ["low priority", "whenever", "no rush", "sometime"]

_NOT_NAMES = set(WEEKDAYS) | set(MONTHS) | {"today", "tonight", "tomorrow", "next", "this", "me", "my"}


class RuleBasedLLMClient:
    """Offline stand-in for LLMClient that reads intents with regex rules"""

    def __init__(self, contacts: Dict[str, List[str]] = None):
        self.model_name = "rules"
        contacts = Config.CONTACTS if contacts is None else contacts
        self.contacts = {name.lower(): list(people) for name, people in contacts.items()}
        logger.info(f"Initialized rule-based intent reader ({len(self.contacts)} contacts)")

    def parse_transcript(self, transcript: str, now: datetime, timezone: str,
                         pending_fields: List[str] = None, strict: bool = False) -> Dict[str, Any]:
        """Read the raw intent fields of one transcript"""
        text = " ".join(transcript.split())
        found = TemporalParser.scan(text)

        result = {
            "action_type": None,
            "title": None,
            "description": None,
            "date_text": self._phrase(found, "date"),
            "time_text": self._phrase(found, "offset") or self._phrase(found, "time"),
            "duration_text": self._phrase(found, "duration"),
            "recurrence_text": self._phrase(found, "recurrence"),
            "priority": self._detect_priority(text),
            "participants": [],
            "confidence": 0.0,
            "interpretations": []
        }

        if pending_fields:
            return self._parse_answer(text, found, result, pending_fields)

        has_time = bool(result["time_text"])
        action_type, confidence = self._classify(text, has_time)
        title = self._extract_title(text, found)
        participants = self._extract_participants(text)

        result.update({
            "action_type": action_type,
            "title": title,
            "participants": participants,
            "confidence": confidence if title else min(confidence, 0.5)
        })
        result["interpretations"] = self._interpretations(result)

        logger.info(f"🤖 RULES: Parsed transcript -> {action_type} '{title}' "
                    f"(date={result['date_text']}, time={result['time_text']}, duration={result['duration_text']})")
        return result

    def _parse_answer(self, text: str, found: Dict, result: Dict[str, Any],
                      pending_fields: List[str]) -> Dict[str, Any]:
        """Read an answer to a follow-up question"""
        if not result["time_text"] and "start_time" in pending_fields and BARE_TIME_PATTERN.match(text):
            result["time_text"] = text.strip()

        if "title" in pending_fields:
            result["title"] = self._extract_title(text, found)

        filled = any(result[key] for key in ("title", "date_text", "time_text", "duration_text", "recurrence_text"))
        result["confidence"] = 0.9 if filled else 0.3
        return result

    @staticmethod
    def _phrase(found: Dict, kind: str) -> Optional[str]:
        return found[kind][0] if kind in found else None

    @staticmethod
    def _classify(text: str, has_time: bool):
        """Pick the action type and how sure the rules are about it"""
        if REMINDER_PATTERN.search(text):
            return "reminder", 0.9
        if TASK_PATTERN.search(text):
            return "task", 0.9
        if EVENT_PATTERN.search(text):
            return "calendar_event", 0.9
        if has_time:
            return "calendar_event", 0.75
        return "task", 0.5

    @staticmethod
    def _extract_title(text: str, found: Dict) -> Optional[str]:
        """Whatever is left once the command words and temporal phrases are removed"""
        spans = [(start, end) for _, start, end in found.values()]
        title = TemporalParser.strip_spans(text, spans)
        title = " ".join(title.split())
        title = re.sub(r"\s+([,.!?])", r"\1", title)
        title = COMMAND_PREFIX.sub("", title, count=1)

        previous = None
        while previous != title:
            previous = title
            title = TRAILING_PHRASE.sub("", title)
            title = DANGLING_WORDS.sub("", title)
            title = title.strip(" ,.!?")

        if not title:
            return None
        return title[0].upper() + title[1:]

    @staticmethod
    def _extract_participants(text: str) -> List[str]:
        match = PARTICIPANT_PATTERN.search(text)
        if not match:
            return []
        names = []
        for token in match.group(1).split():
            if token.lower() in _NOT_NAMES:
                break
            names.append(token)
        return [" ".join(names)] if names else []

    @staticmethod
    def _detect_priority(text: str) -> str:
        lowered = text.lower()
        for indicator in HIGH_PRIORITY_INDICATORS:
            if indicator in lowered:
                logger.info(f"🚨 RULES: high priority detected: '{indicator}' found")
                return "high"
        for indicator in LOW_PRIORITY_INDICATORS:
            if indicator in lowered:
                return "low"
        return "normal"

    def _interpretations(self, result: Dict[str, Any]) -> List[Dict[str, Any]]:
        """One reading per known contact when a participant's name is shared"""
        if not result["participants"]:
            return []

        name = result["participants"][0]
        people = self.contacts.get(name.lower(), [])
        if len(people) == 1:
            result["participants"] = [people[0]]
            if result["title"]:
                result["title"] = result["title"].replace(name, people[0])
            return []
        if len(people) < 2:
            return []

        logger.info(f"🔀 RULES: '{name}' matches {len(people)} contacts")
        return [
            {
                "participants": [person],
                "title": result["title"].replace(name, person) if result["title"] else None
            }
            for person in people
        ]
