"""
Logging utilities for the Voice Scheduling Assistant
"""
import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict


class SchedulerLogger:
    """Custom logger for the Voice Scheduling Assistant"""

    @staticmethod
    def setup_logging(log_level: str = "INFO", log_file: str = None):
        """Setup logging configuration"""

        # Create formatter
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        # Setup root logger
        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level.upper()))

        # Clear existing handlers
        root_logger.handlers.clear()

        # Console handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        # File handler (if specified)
        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

        # Suppress some noisy loggers
        for noisy in ('urllib3', 'googleapiclient', 'httpx', 'openai'):
            logging.getLogger(noisy).setLevel(logging.WARNING)

        return root_logger

    @staticmethod
    def log_turn(conversation_id: str, operation: str, request_data: Dict[str, Any],
                 result_data: Dict[str, Any], processing_time: float):
        """Log a one-line JSON summary of a conversation turn"""
        logger = logging.getLogger(__name__)

        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "conversation_id": conversation_id,
            "operation": operation,
            "processing_time_seconds": round(processing_time, 3),
            "request_summary": {
                "user_id": request_data.get("user_id"),
                "transcript_chars": len(request_data.get("transcript") or ""),
                "option_id": request_data.get("option_id")
            },
            "result_summary": {
                "status": result_data.get("status"),
                "state": result_data.get("state"),
                "error_code": result_data.get("error_code") or result_data.get("error")
            }
        }

        logger.info(f"Turn processed: {json.dumps(log_entry)}")
