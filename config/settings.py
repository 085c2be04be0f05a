"""
Configuration settings for the Voice Scheduling Assistant
"""
import os
from typing import Dict, List


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Config:
    # LLM Server Configuration (any OpenAI-compatible endpoint)
    LLM_BASE_URL = os.getenv("SCHEDULER_LLM_BASE_URL", "https://api.openai.com/v1")
    LLM_API_KEY = os.getenv("OPENAI_API_KEY", "")
    DEFAULT_MODEL = os.getenv("SCHEDULER_LLM_MODEL", "gpt-4o-mini")
    LLM_TIMEOUT = float(os.getenv("SCHEDULER_LLM_TIMEOUT", "15"))
    LLM_MAX_RETRIES = 2

    # "openai" talks to the model, "rules" runs the offline rule-based parser
    LLM_BACKEND = os.getenv("SCHEDULER_LLM_BACKEND", "openai")

    MAX_TOKENS = 512
    TEMPERATURE = 0.1
    TOP_P = 0.9

    # Speech to text
    TRANSCRIPTION_MODEL = os.getenv("SCHEDULER_TRANSCRIPTION_MODEL", "whisper-1")

    # Extraction policy
    CONFIDENCE_THRESHOLD = float(os.getenv("SCHEDULER_CONFIDENCE_THRESHOLD", "0.7"))
    MAX_INTERPRETATIONS = 4

    # Known contacts used to spot ambiguous names, e.g. {"alex": ["Alex Kim", "Alex Rivera"]}
    CONTACTS: Dict[str, List[str]] = {}

    # Conversation lifecycle
    CONVERSATION_TTL_MINUTES = int(os.getenv("SCHEDULER_CONVERSATION_TTL_MINUTES", "15"))
    CONVERSATION_RETENTION_HOURS = 24
    TURN_WAIT_SECONDS = float(os.getenv("SCHEDULER_TURN_WAIT_SECONDS", "0"))
    CONVERSATION_STORE_PATH = os.getenv("SCHEDULER_CONVERSATION_STORE_PATH", "")
    EXPIRY_SWEEP_INTERVAL = 60  # seconds

    # Calendar Configuration
    CALENDAR_TOKENS_PATH = os.getenv("SCHEDULER_CALENDAR_TOKENS_PATH", os.path.expanduser("~/.voice-scheduler/tokens"))
    OUTLOOK_TOKEN_ENV = "SCHEDULER_OUTLOOK_ACCESS_TOKEN"
    GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
    DEFAULT_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "UTC")

    # Users with calendar tokens
    AVAILABLE_USERS = _env_list("SCHEDULER_USERS", "")

    # Conflict detection
    PROVIDER_TIMEOUT = float(os.getenv("SCHEDULER_PROVIDER_TIMEOUT", "5"))
    CONFLICT_CHECK_TIMEOUT = float(os.getenv("SCHEDULER_CONFLICT_CHECK_TIMEOUT", "8"))
    MAX_PROVIDER_WORKERS = 5
    SEARCH_HORIZON_DAYS = 14
    MAX_SUGGESTIONS = 3
    MIN_SLOT_STEP_MINUTES = 15
    MIN_BUFFER_MINUTES = int(os.getenv("SCHEDULER_MIN_BUFFER_MINUTES", "0"))
    WORK_HOURS_ONLY = True

    # API Configuration
    API_HOST = "0.0.0.0"
    API_PORT = int(os.getenv("SCHEDULER_API_PORT", "5000"))
    API_TIMEOUT = 10  # seconds

    # Scheduling Configuration
    BUSINESS_HOURS_START = 9  # 9 AM
    BUSINESS_HOURS_END = 18   # 6 PM
    MIN_MEETING_DURATION = 15  # minutes
    MAX_MEETING_DURATION = 480  # 8 hours
    DEFAULT_MEETING_DURATION = 30  # minutes

    # Extraction prompts
    EXTRACTION_PROMPT = """You are a scheduling assistant. Read the spoken request below and return ONLY a valid JSON object.

REQUIRED JSON FORMAT:
{{"action_type": "calendar_event", "title": "Lunch with Dana", "description": null, "date_text": "friday", "time_text": "at noon", "duration_text": "1 hour", "recurrence_text": null, "priority": "normal", "participants": ["Dana"], "confidence": 0.9, "interpretations": []}}

EXTRACTION RULES:
1. action_type is one of: calendar_event (has a time slot), task (a to-do), reminder (a nudge at a moment in time)
2. title: short summary of what the user wants, without the date or time words
3. date_text, time_text, duration_text, recurrence_text: copy the EXACT words the user said, or null if they did not say them
4. NEVER make up a date, time or duration. Leave the field null instead.
5. priority: "high" for urgent, asap, important; "low" for whenever, no rush; otherwise "normal"
6. confidence: a number from 0 to 1 saying how sure you are about the reading
7. interpretations: only when the request has several equally valid readings (for example two different people with the same name), list each reading as an object with the same fields. Otherwise an empty list.
{pending_instructions}
CURRENT TIME: {current_time} ({timezone})

REQUEST: {transcript}

Return ONLY the JSON object (no explanations):"""

    STRICT_EXTRACTION_SUFFIX = """

YOUR PREVIOUS ANSWER COULD NOT BE USED. Respond with one JSON object and nothing else:
no markdown, no code fences, no comments. Use null for unknown values and keep every key from the format above."""

    CLARIFICATION_INSTRUCTIONS = """
The user is answering a follow-up question about: {fields}.
Only fill the fields the answer actually contains; use null for the rest and leave action_type null.
"""

    @classmethod
    def get_model_config(cls, model_name: str = None) -> Dict[str, str]:
        """Get model configuration"""
        return {
            "model": model_name or cls.DEFAULT_MODEL,
            "base_url": cls.LLM_BASE_URL,
            "api_key": cls.LLM_API_KEY,
            "max_tokens": cls.MAX_TOKENS,
            "temperature": cls.TEMPERATURE,
            "top_p": cls.TOP_P
        }

    @classmethod
    def get_token_path(cls, user_id: str, service: str = "google") -> str:
        """Get token file path for a user"""
        if user_id not in cls.AVAILABLE_USERS:
            raise ValueError(f"User {user_id} does not have a calendar token. Available users: {cls.AVAILABLE_USERS}")

        username = user_id.split("@")[0]
        token_file = f"{username}.{service}.token"
        token_path = os.path.join(cls.CALENDAR_TOKENS_PATH, token_file)

        if not os.path.exists(token_path):
            raise FileNotFoundError(f"Token file not found: {token_path}")

        return token_path
