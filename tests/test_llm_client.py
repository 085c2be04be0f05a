"""Tests for the OpenAI-compatible LLM client and the speech-to-text adapter."""

import json
from unittest.mock import Mock

import pytest
from openai import OpenAIError

from src.ai_agent.llm_client import LLMClient, LLMError, LLMResponseError
from src.ai_agent.transcriber import SpeechToText
from src.core.errors import ExtractionFailure
from tests.conftest import FIXED_NOW, raw_intent


def completion(content):
    """Shape of an OpenAI chat completion with one choice"""
    return Mock(choices=[Mock(message=Mock(content=content))])


@pytest.fixture
def openai_client():
    return Mock()


@pytest.fixture
def client(openai_client):
    return LLMClient(model_name="test-model", client=openai_client)


class TestParseTranscript:
    def test_plain_json(self, client, openai_client):
        openai_client.chat.completions.create.return_value = completion(json.dumps(raw_intent()))

        parsed = client.parse_transcript("lunch with Dana", FIXED_NOW, "UTC")

        assert parsed["title"] == "Lunch with Dana"
        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "lunch with Dana" in kwargs["messages"][1]["content"]
        assert "Wednesday 2026-10-14 10:00" in kwargs["messages"][1]["content"]

    def test_code_fenced_json(self, client, openai_client):
        fenced = "```json\n" + json.dumps(raw_intent(title="Standup")) + "\n```"
        openai_client.chat.completions.create.return_value = completion(fenced)

        assert client.parse_transcript("standup", FIXED_NOW, "UTC")["title"] == "Standup"

    def test_json_wrapped_in_prose(self, client, openai_client):
        text = 'Sure! Here you go: {"action_type": "task", "title": "Say {hi}", "confidence": 0.8} Hope that helps.'
        openai_client.chat.completions.create.return_value = completion(text)

        parsed = client.parse_transcript("say hi", FIXED_NOW, "UTC")

        assert parsed == {"action_type": "task", "title": "Say {hi}", "confidence": 0.8}

    def test_no_json_raises_response_error(self, client, openai_client):
        openai_client.chat.completions.create.return_value = completion("I cannot help with that.")

        with pytest.raises(LLMResponseError):
            client.parse_transcript("lunch", FIXED_NOW, "UTC")

    def test_no_choices_raises_response_error(self, client, openai_client):
        openai_client.chat.completions.create.return_value = Mock(choices=[])

        with pytest.raises(LLMResponseError):
            client.parse_transcript("lunch", FIXED_NOW, "UTC")

    def test_transport_error_raises_llm_error(self, client, openai_client):
        openai_client.chat.completions.create.side_effect = OpenAIError("connection reset")

        with pytest.raises(LLMError) as excinfo:
            client.parse_transcript("lunch", FIXED_NOW, "UTC")
        assert not isinstance(excinfo.value, LLMResponseError)

    def test_strict_mode_appends_repair_instructions(self, client, openai_client):
        openai_client.chat.completions.create.return_value = completion(json.dumps(raw_intent()))

        client.parse_transcript("lunch", FIXED_NOW, "UTC", strict=True)

        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert "COULD NOT BE USED" in kwargs["messages"][1]["content"]
        assert kwargs["temperature"] == 0.0

    def test_pending_fields_are_named_in_prompt(self, client, openai_client):
        openai_client.chat.completions.create.return_value = completion(json.dumps(raw_intent()))

        client.parse_transcript("3pm", FIXED_NOW, "UTC", pending_fields=["start_time"])

        prompt = openai_client.chat.completions.create.call_args.kwargs["messages"][1]["content"]
        assert "follow-up question about: start_time" in prompt


class TestSpeechToText:
    def test_transcribes_audio(self):
        openai_client = Mock()
        openai_client.audio.transcriptions.create.return_value = Mock(text=" lunch with Dana friday ")
        transcriber = SpeechToText(client=openai_client, model="whisper-1")

        assert transcriber.transcribe(b"RIFF....", filename="clip.wav") == "lunch with Dana friday"
        kwargs = openai_client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["file"] == ("clip.wav", b"RIFF....")

    def test_empty_audio(self):
        with pytest.raises(ExtractionFailure):
            SpeechToText(client=Mock()).transcribe(b"")

    def test_silence(self):
        openai_client = Mock()
        openai_client.audio.transcriptions.create.return_value = Mock(text="  ")

        with pytest.raises(ExtractionFailure):
            SpeechToText(client=openai_client).transcribe(b"....")

    def test_service_error(self):
        openai_client = Mock()
        openai_client.audio.transcriptions.create.side_effect = OpenAIError("quota exceeded")

        with pytest.raises(ExtractionFailure):
            SpeechToText(client=openai_client).transcribe(b"....")
