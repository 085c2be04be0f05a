"""
Speech-to-text adapter for voice requests
"""
import logging

from openai import OpenAI, OpenAIError

from config.settings import Config
from src.core.errors import ExtractionFailure

logger = logging.getLogger(__name__)


class SpeechToText:
    """Transcribes recorded audio through the OpenAI audio API"""

    def __init__(self, client: OpenAI = None, model: str = None):
        self.config = Config()
        self.model = model or self.config.TRANSCRIPTION_MODEL
        self.client = client or OpenAI(
            api_key=self.config.LLM_API_KEY or "NULL",
            base_url=self.config.LLM_BASE_URL,
            timeout=self.config.LLM_TIMEOUT,
            max_retries=self.config.LLM_MAX_RETRIES
        )

    def transcribe(self, audio: bytes, filename: str = "audio.webm") -> str:
        if not audio:
            raise ExtractionFailure("Empty audio payload", user_message="I didn't receive any audio. Please try again.")

        try:
            response = self.client.audio.transcriptions.create(model=self.model, file=(filename, audio))
        except OpenAIError as e:
            logger.error(f"❌ Transcription failed: {e}")
            raise ExtractionFailure(f"Transcription failed: {e}") from e

        transcript = (getattr(response, "text", "") or "").strip()
        if not transcript:
            raise ExtractionFailure("Empty transcript from speech service",
                                    user_message="I couldn't make out any words. Could you say that again?")

        logger.info(f"🎙️ Transcribed {len(audio)} bytes -> {transcript[:80]!r}")
        return transcript
