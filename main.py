#!/usr/bin/env python3
"""
Main entry point for the Voice Scheduling Assistant

Runs the HTTP API server, or an interactive console conversation that
drives the same pipeline as the voice front end.
"""

import logging
import os
from datetime import datetime, timezone as dt_timezone

from config.settings import Config
from src.actions.executor import ActionExecutor
from src.actions.undo_manager import UndoManager
from src.ai_agent.intent_extractor import IntentExtractor
from src.ai_agent.llm_client import LLMClient
from src.ai_agent.rule_based_client import RuleBasedLLMClient
from src.ai_agent.transcriber import SpeechToText
from src.api.flask_server import SchedulingAPI
from src.calendar.calendar_manager import GoogleCalendarProvider
from src.calendar.memory_calendar import InMemoryCalendarProvider
from src.calendar.outlook_calendar import OutlookCalendarProvider
from src.calendar.registry import CalendarRegistry
from src.calendar.task_store import GoogleTasksStore, InMemoryTaskStore
from src.core.errors import SchedulerError
from src.scheduler.conflict_detector import ConflictDetector
from src.scheduler.conversation_state import ConversationStore
from src.scheduler.smart_scheduler import SmartScheduler
from src.scheduler.turn_results import ConflictDetected, NeedsClarification
from utils.logger import SchedulerLogger

DEMO_USER = "demo"

logger = logging.getLogger(__name__)


def build_registry(offline: bool) -> CalendarRegistry:
    """Connect every configured user's calendars and task list"""
    config = Config()
    registry = CalendarRegistry(default_timezone=config.DEFAULT_TIMEZONE)

    if offline:
        calendar = InMemoryCalendarProvider(name="demo-calendar")
        calendar.seed_demo_events(datetime.now(dt_timezone.utc))
        registry.register_calendar(DEMO_USER, calendar, primary=True)
        registry.register_task_store(DEMO_USER, InMemoryTaskStore())
        return registry

    outlook_token = os.getenv(config.OUTLOOK_TOKEN_ENV)
    for configured_id in config.AVAILABLE_USERS:
        # API requests arrive with lowercased user ids; token files keep the configured spelling
        user_id = configured_id.lower()
        try:
            registry.register_calendar(
                user_id,
                GoogleCalendarProvider(f"google:{user_id}", token_path=config.get_token_path(configured_id)),
                primary=True
            )
            registry.register_task_store(
                user_id,
                GoogleTasksStore(token_path=config.get_token_path(configured_id))
            )
        except (ValueError, FileNotFoundError) as e:
            logger.warning(f"⚠️ Skipping Google calendar for {user_id}: {e}")

        if outlook_token:
            registry.register_calendar(user_id, OutlookCalendarProvider(f"outlook:{user_id}", outlook_token))

    if not registry.users():
        logger.warning("No calendars connected. Set SCHEDULER_USERS and token files, or run with --offline")
    return registry


def build_scheduler(offline: bool = False) -> SmartScheduler:
    """Wire the pipeline components from Config"""
    config = Config()
    if offline or config.LLM_BACKEND == "rules":
        llm_client = RuleBasedLLMClient()
    else:
        llm_client = LLMClient()

    registry = build_registry(offline)
    executor = ActionExecutor()
    return SmartScheduler(
        extractor=IntentExtractor(llm_client, config),
        detector=ConflictDetector(config),
        executor=executor,
        undo_manager=UndoManager(executor, registry),
        registry=registry,
        store=ConversationStore(config),
        config=config
    )


def run_server(host=None, port=None, offline=False, log_level="INFO"):
    """Run the Flask API server"""
    SchedulerLogger.setup_logging(log_level=log_level)
    logger.info(f"Starting Voice Scheduling Assistant ({'offline' if offline else 'online'})...")

    scheduler = build_scheduler(offline)
    transcriber = None if offline else SpeechToText()

    try:
        api = SchedulingAPI(scheduler, transcriber)
        api.run(host=host, port=port)
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")


def run_chat(user_id=DEMO_USER, offline=True, log_level="WARNING"):
    """Interactive console conversation. 'undo' reverts the last action, 'quit' exits"""
    SchedulerLogger.setup_logging(log_level=log_level)
    scheduler = build_scheduler(offline)
    conversation_id = None

    print("Voice Scheduling Assistant. Say what you'd like to schedule ('undo' or 'quit' also work).")
    while True:
        try:
            text = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if not text:
            continue
        if text.lower() in ("quit", "exit"):
            break

        try:
            if text.lower() == "undo":
                print(scheduler.undo_last(user_id).message)
                continue
            result = scheduler.start_or_continue(text, user_id, conversation_id=conversation_id)
        except SchedulerError as e:
            print(e.user_message)
            conversation_id = None
            continue

        _print_result(result)
        conversation_id = None if result.state in ("executed", "cancelled") else result.conversation_id


def _print_result(result):
    payload = result.to_dict()
    if isinstance(result, NeedsClarification):
        print(result.question)
        for option in result.options:
            print(f"  [{option.option_id}] {option.label}")
    elif isinstance(result, ConflictDetected):
        print(result.message)
        for i, slot in enumerate(result.report.suggested_slots, 1):
            print(f"  {i}. {slot.reason}")
        print("  Or say 'keep it anyway'.")
    elif "preview" in payload:
        print(f"{payload['preview']}. Shall I go ahead?")
    else:
        print(payload.get("message") or payload.get("reason") or payload["status"])

    for warning in payload.get("warnings", []):
        print(f"  ! {warning}")


def main():
    """Main CLI entry point"""
    import argparse

    parser = argparse.ArgumentParser(description='Voice Scheduling Assistant')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Server command
    server_parser = subparsers.add_parser('server', help='Run the HTTP API server')
    server_parser.add_argument('--host', default=None, help='Host to bind to')
    server_parser.add_argument('--port', type=int, default=None, help='Port to bind to')
    server_parser.add_argument('--offline', action='store_true',
                               help='Use the rule-based parser and an in-memory demo calendar')
    server_parser.add_argument('--log-level', default='INFO', help='Logging level')

    # Chat command
    chat_parser = subparsers.add_parser('chat', help='Talk to the assistant in the console')
    chat_parser.add_argument('--user', default=DEMO_USER, help='User id to schedule for')
    chat_parser.add_argument('--online', action='store_true', help='Use the configured model and calendars')
    chat_parser.add_argument('--log-level', default='WARNING', help='Logging level')

    args = parser.parse_args()

    if args.command == 'server':
        run_server(host=args.host, port=args.port, offline=args.offline, log_level=args.log_level)

    elif args.command == 'chat':
        run_chat(user_id=args.user, offline=not args.online, log_level=args.log_level)

    else:
        parser.print_help()


if __name__ == '__main__':
    main()
