"""
Validation utilities for the Voice Scheduling Assistant API
"""
import re
from typing import Any, Dict, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

MAX_TRANSCRIPT_LENGTH = 2000


class RequestValidator:
    """Validator for incoming API payloads"""

    @staticmethod
    def validate_email(email: str) -> bool:
        """Validate email format"""
        email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
        return bool(re.match(email_pattern, email))

    @staticmethod
    def validate_user_id(user_id: Any) -> bool:
        """User ids are emails or simple handles"""
        if not isinstance(user_id, str) or not user_id.strip():
            return False
        return RequestValidator.validate_email(user_id) or bool(re.match(r'^[A-Za-z0-9._-]{1,64}$', user_id))

    @staticmethod
    def validate_conversation_id(conversation_id: Any) -> bool:
        return isinstance(conversation_id, str) and bool(re.match(r'^[A-Za-z0-9_-]{1,64}$', conversation_id))

    @staticmethod
    def validate_timezone(timezone: Any) -> bool:
        if not isinstance(timezone, str) or not timezone:
            return False
        try:
            ZoneInfo(timezone)
            return True
        except (ZoneInfoNotFoundError, ValueError):
            return False

    @staticmethod
    def validate_turn_request(request_data: Dict[str, Any], require_user: bool = True) -> List[str]:
        """Validate a start/continue payload and return list of errors"""
        if not isinstance(request_data, dict):
            return ["Request body must be a JSON object"]

        errors = []
        if require_user and "user_id" not in request_data:
            errors.append("Missing required field: user_id")
        if "user_id" in request_data and not RequestValidator.validate_user_id(request_data["user_id"]):
            errors.append(f"Invalid user_id: {request_data['user_id']}")

        transcript = request_data.get("transcript")
        option_id = request_data.get("option_id")
        if transcript is None and option_id is None:
            errors.append("Missing required field: transcript")
        if transcript is not None:
            if not isinstance(transcript, str):
                errors.append("'transcript' must be a string")
            elif len(transcript) > MAX_TRANSCRIPT_LENGTH:
                errors.append(f"'transcript' is longer than {MAX_TRANSCRIPT_LENGTH} characters")
        if option_id is not None and not isinstance(option_id, str):
            errors.append("'option_id' must be a string")

        if "conversation_id" in request_data and request_data["conversation_id"] is not None:
            if not RequestValidator.validate_conversation_id(request_data["conversation_id"]):
                errors.append(f"Invalid conversation_id: {request_data['conversation_id']}")

        if request_data.get("timezone") is not None and not RequestValidator.validate_timezone(request_data["timezone"]):
            errors.append(f"Unknown timezone: {request_data['timezone']}")

        return errors

    @staticmethod
    def validate_slot_request(request_data: Dict[str, Any]) -> List[str]:
        if not isinstance(request_data, dict):
            return ["Request body must be a JSON object"]
        if "slot_index" not in request_data:
            return ["Missing required field: slot_index"]
        slot_index = request_data["slot_index"]
        if isinstance(slot_index, bool) or not isinstance(slot_index, int) or slot_index < 0:
            return [f"'slot_index' must be a non-negative integer, got {slot_index!r}"]
        return []

    @staticmethod
    def validate_override_request(request_data: Dict[str, Any]) -> List[str]:
        if not isinstance(request_data, dict):
            return ["Request body must be a JSON object"]
        reason = request_data.get("reason")
        if reason is not None and not isinstance(reason, str):
            return ["'reason' must be a string"]
        return []


class DataSanitizer:
    """Sanitize and clean input data"""

    @staticmethod
    def sanitize_user_id(user_id: str) -> str:
        return user_id.strip().lower()

    @staticmethod
    def sanitize_text(text: str) -> str:
        """Sanitize transcript text"""
        # Remove control characters and markup brackets
        text = re.sub(r'[\x00-\x08\x0b-\x1f\x7f<>]', ' ', text)
        # Remove excessive whitespace
        return re.sub(r'\s+', ' ', text.strip())

    @staticmethod
    def sanitize_request(request_data: Dict[str, Any]) -> Dict[str, Any]:
        """Sanitize a turn request"""
        sanitized = request_data.copy()
        if isinstance(sanitized.get("user_id"), str):
            sanitized["user_id"] = DataSanitizer.sanitize_user_id(sanitized["user_id"])
        for field in ("transcript", "reason"):
            if isinstance(sanitized.get(field), str):
                sanitized[field] = DataSanitizer.sanitize_text(sanitized[field])
        return sanitized
