"""
Flask API server for the Voice Scheduling Assistant
"""
import logging
import signal
import sys
import threading
import time
from datetime import datetime
from threading import Thread
from typing import Any, Dict, List, Tuple

from flask import Flask, g, jsonify, request
from flask_cors import CORS

from config.settings import Config
from src.ai_agent.transcriber import SpeechToText
from src.core.errors import ExecutionFailure, ExtractionFailure, SchedulerError
from src.scheduler.smart_scheduler import SmartScheduler
from src.scheduler.turn_results import Failed, TurnResult
from utils.logger import SchedulerLogger
from utils.validators import DataSanitizer, RequestValidator

logger = logging.getLogger(__name__)

FAILED_TURN_STATUS = {
    ExtractionFailure.code: ExtractionFailure.http_status,
    ExecutionFailure.code: ExecutionFailure.http_status,
}


class SchedulingAPI:
    """
    Flask API server exposing the conversation operations
    """

    def __init__(self, scheduler: SmartScheduler, transcriber: SpeechToText = None):
        self.config = Config()
        self.app = Flask(__name__)
        CORS(self.app)  # Enable CORS for cross-origin requests

        self.scheduler = scheduler
        self.transcriber = transcriber
        self.turns_processed = 0
        self.start_time = time.time()
        self._stop_event = threading.Event()
        self._sweeper = None

        # Setup routes
        self._setup_routes()

        # Setup graceful shutdown
        if threading.current_thread() is threading.main_thread():
            self._setup_signal_handlers()

    def _setup_routes(self):
        """Setup Flask routes"""

        @self.app.before_request
        def start_timer():
            g.started = time.time()

        @self.app.route('/health', methods=['GET'])
        def health_check():
            """Health check endpoint"""
            return jsonify({
                "status": "healthy",
                "timestamp": datetime.now().isoformat(),
                "speech_available": self.transcriber is not None
            })

        @self.app.route('/status', methods=['GET'])
        def get_status():
            """Get server status and statistics"""
            return jsonify({
                "status": "running",
                "turns_processed": self.turns_processed,
                "active_conversations": len(self.scheduler.store),
                "connected_users": self.scheduler.registry.users(),
                "uptime": time.time() - self.start_time
            })

        @self.app.route('/conversations', methods=['POST'])
        def start_conversation():
            """Start a new conversation, or continue one when conversation_id is given"""
            data = request.get_json(silent=True)
            errors = RequestValidator.validate_turn_request(data)
            if errors:
                return self._validation_error(errors)
            data = DataSanitizer.sanitize_request(data)
            return self._run_turn(data.get('conversation_id'), data)

        @self.app.route('/conversations/<conversation_id>/turns', methods=['POST'])
        def continue_conversation(conversation_id):
            data = request.get_json(silent=True)
            errors = self._check_conversation_id(conversation_id) + RequestValidator.validate_turn_request(data)
            if errors:
                return self._validation_error(errors)
            data = DataSanitizer.sanitize_request(data)
            return self._run_turn(conversation_id, data)

        @self.app.route('/conversations/<conversation_id>/select-slot', methods=['POST'])
        def select_slot(conversation_id):
            data = request.get_json(silent=True)
            errors = self._check_conversation_id(conversation_id) + RequestValidator.validate_slot_request(data)
            if errors:
                return self._validation_error(errors)
            result = self.scheduler.select_slot(conversation_id, data['slot_index'])
            return self._turn_response(conversation_id, 'select_slot', data, result)

        @self.app.route('/conversations/<conversation_id>/override', methods=['POST'])
        def override_conflict(conversation_id):
            data = request.get_json(silent=True) or {}
            errors = self._check_conversation_id(conversation_id) + RequestValidator.validate_override_request(data)
            if errors:
                return self._validation_error(errors)
            data = DataSanitizer.sanitize_request(data)
            result = self.scheduler.override_conflict(conversation_id, reason=data.get('reason'))
            return self._turn_response(conversation_id, 'override', data, result)

        @self.app.route('/conversations/<conversation_id>/confirm', methods=['POST'])
        def confirm(conversation_id):
            errors = self._check_conversation_id(conversation_id)
            if errors:
                return self._validation_error(errors)
            result = self.scheduler.confirm(conversation_id)
            return self._turn_response(conversation_id, 'confirm', {}, result)

        @self.app.route('/conversations/<conversation_id>', methods=['DELETE'])
        def cancel(conversation_id):
            errors = self._check_conversation_id(conversation_id)
            if errors:
                return self._validation_error(errors)
            self.scheduler.cancel(conversation_id)
            logger.info(f"🛑 Conversation {conversation_id} cancelled via API")
            return jsonify({"status": "cancelled", "conversation_id": conversation_id, "state": "cancelled"})

        @self.app.route('/conversations/<conversation_id>', methods=['GET'])
        def get_conversation(conversation_id):
            errors = self._check_conversation_id(conversation_id)
            if errors:
                return self._validation_error(errors)
            return jsonify(self.scheduler.get_conversation(conversation_id).to_dict())

        @self.app.route('/users/<user_id>/undo', methods=['POST'])
        def undo_last(user_id):
            if not RequestValidator.validate_user_id(user_id):
                return self._validation_error([f"Invalid user_id: {user_id}"])
            result = self.scheduler.undo_last(DataSanitizer.sanitize_user_id(user_id))
            return jsonify(result.to_dict())

        @self.app.route('/transcribe', methods=['POST'])
        def transcribe():
            """Speech to text; with a user_id the transcript is also fed into the conversation"""
            if self.transcriber is None:
                return jsonify({
                    "error": "speech_unavailable",
                    "message": "Voice input isn't available right now. Please type your request.",
                    "retryable": False
                }), 503

            upload = request.files.get('audio')
            audio = upload.read() if upload else request.get_data()
            filename = upload.filename if upload and upload.filename else 'audio.webm'
            transcript = self.transcriber.transcribe(audio, filename=filename)

            form = {key: value for key, value in request.form.items() if value}
            if 'user_id' not in form:
                return jsonify({"transcript": transcript})

            data = dict(form, transcript=transcript)
            errors = RequestValidator.validate_turn_request(data)
            if errors:
                return self._validation_error(errors)
            data = DataSanitizer.sanitize_request(data)
            response, status = self._run_turn(data.get('conversation_id'), data)
            payload = response.get_json()
            payload['transcript'] = transcript
            return jsonify(payload), status

        @self.app.errorhandler(SchedulerError)
        def scheduler_error(error):
            logger.warning(f"{error.code}: {error}")
            return jsonify(error.to_dict()), error.http_status

        @self.app.errorhandler(404)
        def not_found(error):
            return jsonify({"error": "not_found", "message": "Endpoint not found", "retryable": False}), 404

        @self.app.errorhandler(405)
        def method_not_allowed(error):
            return jsonify({"error": "method_not_allowed", "message": "Method not allowed", "retryable": False}), 405

        @self.app.errorhandler(500)
        def internal_error(error):
            return jsonify({"error": "internal_error", "message": "Internal server error", "retryable": True}), 500

    def _run_turn(self, conversation_id: str, data: Dict[str, Any]) -> Tuple[Any, int]:
        result = self.scheduler.start_or_continue(
            data.get('transcript'),
            data['user_id'],
            conversation_id=conversation_id,
            timezone=data.get('timezone'),
            option_id=data.get('option_id')
        )
        return self._turn_response(result.conversation_id, 'turn', data, result)

    def _turn_response(self, conversation_id: str, operation: str, data: Dict[str, Any],
                       result: TurnResult) -> Tuple[Any, int]:
        payload = result.to_dict()
        self.turns_processed += 1
        elapsed = time.time() - g.get("started", time.time())
        SchedulerLogger.log_turn(conversation_id, operation, data, payload, elapsed)

        status = 200
        if isinstance(result, Failed):
            status = FAILED_TURN_STATUS.get(result.error_code, 500)
        return jsonify(payload), status

    @staticmethod
    def _check_conversation_id(conversation_id: str) -> List[str]:
        if RequestValidator.validate_conversation_id(conversation_id):
            return []
        return [f"Invalid conversation_id: {conversation_id}"]

    @staticmethod
    def _validation_error(errors: List[str]) -> Tuple[Any, int]:
        logger.warning(f"Rejected request: {errors}")
        return jsonify({
            "error": "validation_error",
            "message": "; ".join(errors),
            "details": errors,
            "retryable": False
        }), 400

    def _start_expiry_sweeper(self):
        """Expire idle conversations in the background"""
        def sweep():
            while not self._stop_event.wait(self.config.EXPIRY_SWEEP_INTERVAL):
                try:
                    self.scheduler.expire_idle()
                except Exception as e:
                    logger.error(f"Expiry sweep failed: {e}")

        self._sweeper = Thread(target=sweep, name="conversation-sweeper", daemon=True)
        self._sweeper.start()

    def _setup_signal_handlers(self):
        """Setup graceful shutdown handlers"""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down gracefully...")
            self.shutdown()
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def run(self, host=None, port=None, debug=False):
        """Run the Flask server"""
        host = host or self.config.API_HOST
        port = port or self.config.API_PORT

        self.start_time = time.time()
        self._start_expiry_sweeper()

        logger.info(f"Starting Voice Scheduling API server on {host}:{port}")
        logger.info(f"Speech to text: {'Available' if self.transcriber else 'Not Available'}")

        try:
            self.app.run(
                host=host,
                port=port,
                debug=debug,
                threaded=True,  # Enable threading for concurrent requests
                use_reloader=False  # Disable reloader in production
            )
        except OSError as e:
            logger.error(f"Failed to start server: {e}")
            raise

    def run_background(self, host=None, port=None):
        """Run the Flask server in background thread"""
        def run_server():
            self.run(host, port, debug=False)

        server_thread = Thread(target=run_server, daemon=True)
        server_thread.start()
        logger.info("Flask server started in background")
        return server_thread

    def shutdown(self):
        """Graceful shutdown"""
        logger.info("Shutting down Voice Scheduling API server...")
        self._stop_event.set()


def create_app(scheduler: SmartScheduler, transcriber: SpeechToText = None) -> Flask:
    """Factory function to create Flask app"""
    api = SchedulingAPI(scheduler, transcriber)
    return api.app
