"""
Audit logging for conflict checks, overrides, executions and undos
"""
import logging

from src.core.models import ConflictOverride, ConflictReport, ExecutedAction, Severity

logger = logging.getLogger(__name__)


class MeetingLogger:
    """Specialized logger for scheduling decisions"""

    @staticmethod
    def log_conflict_report(user_id: str, report: ConflictReport):
        """Log the outcome of a conflict check"""
        requested = report.requested
        logger.info(f"🗓️  CONFLICT CHECK - {user_id}")
        logger.info(f"   ⏰ Requested: {requested.start.isoformat()} to {requested.end.isoformat()}")
        logger.info(f"   📚 Calendars checked: {', '.join(report.checked_calendars) or 'none'}")

        if report.partial:
            logger.warning(f"   ⚠️  Unreachable calendars: {', '.join(report.unreachable_calendars)}")

        if report.severity is Severity.NONE:
            logger.info(f"   ✅ No conflicts found")
        else:
            icon = "🚨" if report.severity is Severity.HIGH else "⚠️ "
            logger.info(f"   {icon} Severity: {report.severity.value.upper()} "
                        f"({len(report.conflicting_events)} events)")
            for i, event in enumerate(report.conflicting_events, 1):
                kind = "flexible" if event.flexible else "fixed"
                logger.info(f"      {i}. {event.title} [{event.source_calendar}, {kind}]")
                logger.info(f"         Time: {event.start.isoformat()} to {event.end.isoformat()}")

        if report.suggested_slots:
            logger.info(f"   💡 SUGGESTED SLOTS ({len(report.suggested_slots)}):")
            for i, slot in enumerate(report.suggested_slots, 1):
                logger.info(f"      {i}. {slot.start.isoformat()} (score {slot.score:.1f}) - {slot.reason}")
        elif report.severity is not Severity.NONE:
            logger.info(f"   ❌ No free slot found within the search horizon")

    @staticmethod
    def log_override(conversation_id: str, override: ConflictOverride):
        """Log a user's decision to keep a conflicting time"""
        logger.warning(f"🔓 CONFLICT OVERRIDE - conversation {conversation_id}")
        logger.warning(f"   📊 Severity overridden: {override.severity}")
        logger.warning(f"   📋 Conflicting events: {', '.join(override.conflicting_events) or 'none'}")
        if override.reason:
            logger.warning(f"   💭 Reason: {override.reason}")

    @staticmethod
    def log_execution(action: ExecutedAction):
        """Log a committed action"""
        candidate = action.candidate
        logger.info(f"🎯 ACTION EXECUTED - {action.action_id}")
        logger.info(f"   👤 User: {action.user_id} (conversation {action.conversation_id})")
        logger.info(f"   📋 {candidate.kind.value}: {candidate.title}")
        if candidate.start:
            logger.info(f"   ⏰ Start: {candidate.start.isoformat()}")
        if action.undo_token:
            logger.info(f"   🔗 Written to {action.undo_token.provider} as {action.undo_token.external_id}")
        if action.conflict_override:
            logger.warning(f"   ⚠️  Executed over a {action.conflict_override.severity} conflict")

    @staticmethod
    def log_undo(original: ExecutedAction, reversal: ExecutedAction):
        """Log the reversal of an action"""
        logger.info(f"↩️  ACTION UNDONE - {original.action_id} by {reversal.action_id}")
        logger.info(f"   📋 {original.candidate.kind.value}: {original.candidate.title}")
        if reversal.partial:
            logger.warning(f"   ⚠️  Partial undo: {reversal.detail}")
        else:
            logger.info(f"   ✅ External object removed")
