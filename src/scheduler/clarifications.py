"""
Follow-up questions and the reading of short spoken replies
"""
import re
from datetime import date, timedelta
from typing import Optional

from src.core.models import ActionCandidate, AmbiguousResult, format_day
from src.scheduler.conversation_state import ClarificationOption, ClarificationRequest

FIELD_PRIORITY = ("title", "date", "start_time")

TIME_OPTIONS = [("09:00", "9:00 AM"), ("12:00", "12:00 PM"), ("15:00", "3:00 PM"), ("17:00", "5:00 PM")]

ORDINALS = {
    "first": 1, "1st": 1, "one": 1,
    "second": 2, "2nd": 2, "two": 2,
    "third": 3, "3rd": 3, "three": 3,
    "fourth": 4, "4th": 4, "four": 4,
    "fifth": 5, "5th": 5, "five": 5,
}

_YES = re.compile(r"^(?:yes|yeah|yep|yup|sure|ok(?:ay)?|correct|confirm(?:ed)?|do it|go ahead|sounds good|"
                  r"that'?s (?:right|correct)|right|please do)\b", re.IGNORECASE)
_NO = re.compile(r"^(?:no|nope|nah|not really|wrong|that'?s wrong|that'?s not right)\b", re.IGNORECASE)
# whole utterance only, so an answer like "stop by the pharmacy" is still an answer
_CANCEL = re.compile(r"(?:(?:ok(?:ay)?|no|oh|actually)[,\s]+)?(?:please\s+)?"
                     r"(?:cancel|never ?mind|forget (?:it|about it)|stop|don'?t bother)"
                     r"(?:\s+(?:it|that|this))?(?:\s+please)?", re.IGNORECASE)
_OVERRIDE = re.compile(r"\b(?:keep (?:it|that|the original)|proceed anyway|book it anyway|schedule it anyway|"
                       r"anyway|double[- ]book|ignore (?:the )?conflict)\b", re.IGNORECASE)
_ORDINAL_WORDS = "|".join(ORDINALS)
_ORDINAL = re.compile(rf"\b(?:option|number|slot|choice)\s+(\d+|{_ORDINAL_WORDS})\b|\bthe\s+({_ORDINAL_WORDS})(?:\s+one)?\b(?!\s+of\b)",
                      re.IGNORECASE)
_BARE_ORDINAL = re.compile(rf"^\s*(\d+|{_ORDINAL_WORDS})\s*[.!]?\s*$", re.IGNORECASE)


def _normalize(text: str) -> str:
    return " ".join(text.lower().strip(" .!?,").split())


def is_affirmative(text: str) -> bool:
    return bool(_YES.match(_normalize(text)))


def is_negative(text: str) -> bool:
    return bool(_NO.match(_normalize(text)))


def wants_cancel(text: str) -> bool:
    return bool(_CANCEL.fullmatch(_normalize(text)))


def wants_override(text: str) -> bool:
    return bool(_OVERRIDE.search(text))


def parse_ordinal(text: str, allow_bare: bool = True) -> Optional[int]:
    """1-based choice from 'option 2', 'the second one' or a bare '2'"""
    match = _ORDINAL.search(text.strip())
    if not match and allow_bare:
        match = _BARE_ORDINAL.match(text)
    if not match:
        return None
    token = next(group for group in match.groups() if group)
    token = token.lower()
    return int(token) if token.isdigit() else ORDINALS.get(token)


def next_question(candidate: ActionCandidate, today: date) -> ClarificationRequest:
    """The highest-priority missing field, or a yes/no check when nothing is missing"""
    for name in FIELD_PRIORITY:
        if name in candidate.missing_fields:
            return field_question(name, candidate, today)
    return confirmation_question(candidate)


def field_question(name: str, candidate: ActionCandidate, today: date) -> ClarificationRequest:
    subject = f"'{candidate.title}'" if candidate.title else "it"
    if name == "title":
        return ClarificationRequest("What should I call this?", field="title")
    if name == "date":
        tomorrow = today + timedelta(days=1)
        return ClarificationRequest(
            f"What day should I schedule {subject}?",
            field="date",
            options=[
                ClarificationOption("today", f"Today ({format_day(today)})", today.isoformat()),
                ClarificationOption("tomorrow", f"Tomorrow ({format_day(tomorrow)})", tomorrow.isoformat()),
            ]
        )
    if name == "start_time":
        return ClarificationRequest(
            f"What time should {subject} start?",
            field="start_time",
            options=[ClarificationOption(value, label, value) for value, label in TIME_OPTIONS]
        )
    raise ValueError(f"No question for field {name}")


def confirmation_question(candidate: ActionCandidate) -> ClarificationRequest:
    return ClarificationRequest(
        f"Just to check, did you mean: {candidate.describe()}?",
        field="confirmation",
        kind="confirmation",
        options=[ClarificationOption("yes", "Yes", "yes"), ClarificationOption("no", "No", "no")]
    )


def disambiguation_question(result: AmbiguousResult) -> ClarificationRequest:
    return ClarificationRequest(
        result.question,
        field="interpretation",
        kind="disambiguation",
        options=[
            ClarificationOption(str(i), option.describe(), str(i - 1))
            for i, option in enumerate(result.options, 1)
        ]
    )


def rephrase_question() -> ClarificationRequest:
    return ClarificationRequest("Sorry about that. Could you say the whole request again?",
                                field="transcript", kind="rephrase")


def match_option(request: ClarificationRequest, text: str) -> Optional[ClarificationOption]:
    """The option a reply refers to, by id, ordinal or label"""
    if not request.options:
        return None
    option = request.find_option(text.strip())
    if option is not None:
        return option

    if request.kind == "confirmation":
        if is_affirmative(text):
            return request.find_option("yes")
        if is_negative(text):
            return request.find_option("no")
        return None

    normalized = _normalize(text)
    for option in request.options:
        if _normalize(option.label) == normalized:
            return option

    # A bare number is an hour, not a choice, when asking for a time
    index = parse_ordinal(text, allow_bare=request.field != "start_time")
    if index is not None and 1 <= index <= len(request.options):
        return request.options[index - 1]
    return None
