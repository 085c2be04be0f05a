"""Tests for the Flask API and its request validators."""

import io
from unittest.mock import Mock

import pytest

from src.ai_agent.llm_client import LLMError
from src.api.flask_server import create_app
from src.core.errors import ExtractionFailure
from utils.validators import DataSanitizer, RequestValidator
from tests.conftest import USER

LUNCH = "lunch with Dana Friday at noon, 1 hour"


@pytest.fixture
def client(scheduler):
    return create_app(scheduler).test_client()


def start(client, transcript=LUNCH, **extra):
    return client.post("/conversations", json=dict({"user_id": USER, "transcript": transcript}, **extra))


# ---------------------------------------------------------------------------
# Conversation endpoints
# ---------------------------------------------------------------------------


class TestConversationEndpoints:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.get_json()["speech_available"] is False

    def test_start_then_confirm(self, client, calendar):
        started = start(client)
        body = started.get_json()

        assert started.status_code == 200
        assert body["status"] == "ready_to_confirm"
        assert body["candidate"]["start"] == "2026-10-16T12:00:00+00:00"

        confirmed = client.post(f"/conversations/{body['conversation_id']}/confirm")
        assert confirmed.status_code == 200
        assert confirmed.get_json()["status"] == "executed"
        assert len(calendar.events) == 1

    def test_clarification_round_trip(self, client):
        asked = start(client, "meeting tomorrow").get_json()
        assert asked["status"] == "needs_clarification"
        assert asked["field"] == "start_time"

        answered = client.post(f"/conversations/{asked['conversation_id']}/turns",
                               json={"user_id": USER, "option_id": "09:00"})

        assert answered.get_json()["status"] == "ready_to_confirm"

    def test_conflict_then_slot(self, client, make_event):
        make_event("Design review", day=16, start_hour=12, end_hour=13)
        conflict = start(client).get_json()
        assert conflict["status"] == "conflict_detected"
        assert conflict["report"]["severity"] == "high"

        picked = client.post(f"/conversations/{conflict['conversation_id']}/select-slot", json={"slot_index": 0})

        assert picked.status_code == 200
        assert picked.get_json()["candidate"]["start"] == conflict["report"]["suggested_slots"][0]["start"]

    def test_override(self, client, make_event):
        make_event("Design review", day=16, start_hour=12, end_hour=13)
        conflict = start(client).get_json()

        response = client.post(f"/conversations/{conflict['conversation_id']}/override",
                               json={"reason": "client only free then"})

        assert response.get_json()["status"] == "ready_to_confirm"

    def test_cancel_and_read_back(self, client):
        asked = start(client, "meeting tomorrow").get_json()
        conversation_id = asked["conversation_id"]

        assert client.delete(f"/conversations/{conversation_id}").status_code == 200
        assert client.get(f"/conversations/{conversation_id}").get_json()["state"] == "cancelled"

    def test_undo(self, client, calendar):
        body = start(client).get_json()
        client.post(f"/conversations/{body['conversation_id']}/confirm")

        response = client.post(f"/users/{USER}/undo")

        assert response.status_code == 200
        assert response.get_json()["status"] == "undone"
        assert calendar.events == []

    def test_status_counts_turns(self, client):
        start(client)

        assert client.get("/status").get_json()["turns_processed"] == 1


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrors:
    def test_missing_body(self, client):
        response = client.post("/conversations")

        assert response.status_code == 400
        assert response.get_json()["error"] == "validation_error"

    def test_invalid_timezone(self, client):
        response = start(client, timezone="Mars/Olympus")

        assert response.status_code == 400
        assert "Unknown timezone" in response.get_json()["message"]

    def test_bad_slot_index(self, client):
        response = client.post("/conversations/abc/select-slot", json={"slot_index": -1})

        assert response.status_code == 400

    def test_unknown_conversation(self, client):
        response = client.get("/conversations/does-not-exist")

        assert response.status_code == 404
        assert response.get_json()["error"] == "conversation_not_found"

    def test_closed_conversation(self, client):
        body = start(client).get_json()
        client.post(f"/conversations/{body['conversation_id']}/confirm")

        response = client.post(f"/conversations/{body['conversation_id']}/turns",
                               json={"user_id": USER, "transcript": "lunch on monday"})

        assert response.status_code == 409
        assert response.get_json()["error"] == "conversation_closed"

    def test_nothing_to_undo(self, client):
        response = client.post(f"/users/{USER}/undo")

        assert response.status_code == 404
        assert response.get_json()["error"] == "nothing_to_undo"

    def test_extraction_failure_is_422(self, make_scheduler, mock_llm_client):
        mock_llm_client.parse_transcript.side_effect = LLMError("model offline")
        client = create_app(make_scheduler(llm_client=mock_llm_client)).test_client()

        response = start(client)

        assert response.status_code == 422
        body = response.get_json()
        assert body["status"] == "failed"
        assert body["retryable"] is True

    def test_unknown_route(self, client):
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.get_json()["error"] == "not_found"

    def test_wrong_method(self, client):
        assert client.get("/conversations").status_code == 405


# ---------------------------------------------------------------------------
# Speech
# ---------------------------------------------------------------------------


class TestTranscribe:
    def test_unavailable_without_transcriber(self, client):
        response = client.post("/transcribe", data=b"....")

        assert response.status_code == 503
        assert response.get_json()["error"] == "speech_unavailable"

    def test_transcript_only(self, scheduler):
        transcriber = Mock()
        transcriber.transcribe.return_value = LUNCH
        client = create_app(scheduler, transcriber).test_client()

        response = client.post("/transcribe", data={"audio": (io.BytesIO(b"RIFF...."), "clip.wav")},
                               content_type="multipart/form-data")

        assert response.get_json() == {"transcript": LUNCH}
        assert transcriber.transcribe.call_args.kwargs["filename"] == "clip.wav"

    def test_transcript_runs_a_turn(self, scheduler):
        transcriber = Mock()
        transcriber.transcribe.return_value = LUNCH
        client = create_app(scheduler, transcriber).test_client()

        response = client.post("/transcribe",
                               data={"audio": (io.BytesIO(b"RIFF...."), "clip.wav"), "user_id": USER},
                               content_type="multipart/form-data")

        body = response.get_json()
        assert response.status_code == 200
        assert body["status"] == "ready_to_confirm"
        assert body["transcript"] == LUNCH

    def test_silence_is_422(self, scheduler):
        transcriber = Mock()
        transcriber.transcribe.side_effect = ExtractionFailure("Empty transcript")
        client = create_app(scheduler, transcriber).test_client()

        response = client.post("/transcribe", data=b"....")

        assert response.status_code == 422
        assert response.get_json()["error"] == "extraction_failure"


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


class TestValidators:
    def test_turn_request_needs_user_and_transcript(self):
        errors = RequestValidator.validate_turn_request({})

        assert "Missing required field: user_id" in errors
        assert "Missing required field: transcript" in errors

    def test_option_id_replaces_transcript(self):
        assert RequestValidator.validate_turn_request({"user_id": USER, "option_id": "1"}) == []

    def test_transcript_length_limit(self):
        errors = RequestValidator.validate_turn_request({"user_id": USER, "transcript": "x" * 5000})

        assert errors and "longer than" in errors[0]

    @pytest.mark.parametrize("user_id, valid", [(USER, True), ("demo", True), ("bad user", False), ("", False)])
    def test_user_ids(self, user_id, valid):
        assert RequestValidator.validate_user_id(user_id) is valid

    def test_slot_index_must_be_an_int(self):
        assert RequestValidator.validate_slot_request({"slot_index": True})
        assert RequestValidator.validate_slot_request({"slot_index": 2}) == []

    def test_sanitizer(self):
        cleaned = DataSanitizer.sanitize_request({"user_id": " Alex@Example.com ", "transcript": "lunch <b>\tfriday"})

        assert cleaned == {"user_id": "alex@example.com", "transcript": "lunch b friday"}
