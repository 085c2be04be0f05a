"""
Conflict Detector - checks a requested time range against the user's calendars
"""
import logging
import time as time_module
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import List, Tuple
from zoneinfo import ZoneInfo

from config.settings import Config
from src.calendar.calendar_manager import CalendarProvider
from src.core.errors import CalendarProviderError
from src.core.models import (
    CalendarEvent,
    ConflictReport,
    Severity,
    SuggestedSlot,
    TimeRange,
    format_clock,
    format_day,
)
from utils.meeting_logger import MeetingLogger

logger = logging.getLogger(__name__)


class ProviderTimeout(CalendarProviderError):
    """A calendar answered, but too late to be used"""


class ConflictDetector:
    """
    Fans out to every connected calendar, classifies overlaps and searches
    for free alternatives. Read-only.
    """

    def __init__(self, config: Config = None, provider_timeout: float = None, aggregate_timeout: float = None,
                 max_workers: int = None):
        self.config = config or Config()
        self.provider_timeout = provider_timeout or self.config.PROVIDER_TIMEOUT
        self.aggregate_timeout = aggregate_timeout or self.config.CONFLICT_CHECK_TIMEOUT
        self.max_workers = max_workers or self.config.MAX_PROVIDER_WORKERS
        self.buffer = timedelta(minutes=self.config.MIN_BUFFER_MINUTES)

    def check_conflicts(self, time_range: TimeRange, user_id: str, source_calendars: List[CalendarProvider],
                        timezone: str = None, now: datetime = None) -> ConflictReport:
        """Severity of the overlap with existing events plus ranked free alternatives"""
        if time_range.end <= time_range.start:
            raise ValueError("Requested time range must end after it starts")

        now = now or datetime.now(dt_timezone.utc)
        tz = ZoneInfo(timezone) if timezone else time_range.start.tzinfo
        window = TimeRange(
            time_range.start - self.buffer,
            time_range.start + timedelta(days=self.config.SEARCH_HORIZON_DAYS) + time_range.duration + self.buffer
        )

        logger.info(f"🔍 Checking {time_range.start.isoformat()} - {time_range.end.isoformat()} "
                    f"for {user_id} across {len(source_calendars)} calendars")

        events, checked, unreachable = self._gather_events(source_calendars, window)
        severity, conflicting = self._classify(time_range, events)
        suggestions = self._find_alternative_slots(time_range, events, tz, now)

        report = ConflictReport(
            severity=severity,
            requested=time_range,
            conflicting_events=conflicting,
            suggested_slots=suggestions,
            checked_calendars=checked,
            unreachable_calendars=unreachable
        )
        MeetingLogger.log_conflict_report(user_id, report)
        return report

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _fetch(self, provider: CalendarProvider, window: TimeRange) -> List[CalendarEvent]:
        begun = time_module.monotonic()
        events = provider.list_events(window.start, window.end)
        elapsed = time_module.monotonic() - begun
        if elapsed > self.provider_timeout:
            raise ProviderTimeout(f"{provider.name} took {elapsed:.1f}s", provider=provider.name)
        return events

    def _gather_events(self, providers: List[CalendarProvider],
                       window: TimeRange) -> Tuple[List[CalendarEvent], List[str], List[str]]:
        """Query every provider concurrently; slow or failing ones are reported, not raised"""
        if not providers:
            return [], [], []

        pool = ThreadPoolExecutor(max_workers=min(self.max_workers, len(providers)),
                                  thread_name_prefix="calendar-fetch")
        futures = {pool.submit(self._fetch, provider, window): provider for provider in providers}
        try:
            done, _ = wait(futures, timeout=self.aggregate_timeout)
        finally:
            # Timed-out workers are abandoned rather than joined
            pool.shutdown(wait=False, cancel_futures=True)

        events: List[CalendarEvent] = []
        checked, unreachable = [], []
        for future, provider in futures.items():
            if future not in done:
                logger.warning(f"⏱️ {provider.name} did not answer within {self.aggregate_timeout}s")
                unreachable.append(provider.name)
                continue
            try:
                events.extend(future.result())
                checked.append(provider.name)
            except CalendarProviderError as e:
                logger.warning(f"⚠️ {provider.name} unreachable: {e}")
                unreachable.append(provider.name)
            except Exception as e:
                logger.error(f"❌ Unexpected error reading {provider.name}: {e}")
                unreachable.append(provider.name)

        return events, checked, unreachable

    # ------------------------------------------------------------------
    # Severity
    # ------------------------------------------------------------------

    def _classify(self, requested: TimeRange, events: List[CalendarEvent]) -> Tuple[Severity, List[CalendarEvent]]:
        overall = Severity.NONE
        overlapping, adjacent = [], []

        for event in events:
            severity = self._event_severity(requested, event)
            if severity is Severity.NONE:
                continue
            if severity is Severity.LOW:
                adjacent.append(event)
            else:
                overlapping.append(event)
            if severity.rank > overall.rank:
                overall = severity

        conflicting = overlapping or adjacent
        return overall, sorted(conflicting, key=lambda e: e.start)

    def _event_severity(self, requested: TimeRange, event: CalendarEvent) -> Severity:
        overlap = requested.overlap_with(event.time_range)
        if overlap > timedelta(0):
            if not event.flexible and overlap * 2 > requested.duration:
                return Severity.HIGH
            return Severity.MEDIUM

        if self.buffer > timedelta(0):
            gap_before = requested.start - event.end
            gap_after = event.start - requested.end
            if timedelta(0) <= gap_before < self.buffer or timedelta(0) <= gap_after < self.buffer:
                return Severity.LOW
        return Severity.NONE

    # ------------------------------------------------------------------
    # Alternative slots
    # ------------------------------------------------------------------

    def _find_alternative_slots(self, requested: TimeRange, events: List[CalendarEvent], tz,
                                now: datetime) -> List[SuggestedSlot]:
        """Scan forward from the request and keep the best free slots"""
        duration = requested.duration
        step = max(duration, timedelta(minutes=self.config.MIN_SLOT_STEP_MINUTES))
        horizon = requested.start + timedelta(days=self.config.SEARCH_HORIZON_DAYS)
        busy = [(e.start - self.buffer, e.end + self.buffer) for e in events]

        candidates: List[SuggestedSlot] = []
        start = requested.start + step
        while start < horizon:
            end = start + duration
            if start > now and self._within_work_hours(start, end, tz) and self._is_free(start, end, busy):
                candidates.append(self._score(requested, start, end, events, tz))
            start += step

        candidates.sort(key=lambda slot: (-slot.score, slot.start))
        return candidates[:self.config.MAX_SUGGESTIONS]

    def _within_work_hours(self, start: datetime, end: datetime, tz) -> bool:
        if not self.config.WORK_HOURS_ONLY:
            return True
        local_start = start.astimezone(tz)
        local_end = end.astimezone(tz)
        if local_start.weekday() >= 5 or local_start.date() != (local_end - timedelta(microseconds=1)).date():
            return False
        opens = local_start.replace(hour=self.config.BUSINESS_HOURS_START, minute=0, second=0, microsecond=0)
        closes = local_start.replace(hour=self.config.BUSINESS_HOURS_END, minute=0, second=0, microsecond=0)
        return opens <= local_start and local_end <= closes

    @staticmethod
    def _is_free(start: datetime, end: datetime, busy: List[Tuple[datetime, datetime]]) -> bool:
        return all(not (start < busy_end and busy_start < end) for busy_start, busy_end in busy)

    def _score(self, requested: TimeRange, start: datetime, end: datetime, events: List[CalendarEvent],
               tz) -> SuggestedSlot:
        local_start = start.astimezone(tz)
        same_day = local_start.date() == requested.start.astimezone(tz).date()
        hours_away = (start - requested.start).total_seconds() / 3600

        # Closer is better; a full day away costs about as much as the same-day bonus
        score = 100.0 - hours_away
        if same_day:
            score += 25
        touches_edge = any(e.end == start or e.start == end for e in events)
        if touches_edge:
            score -= 5
        if local_start.minute == 0:
            score += 2

        if same_day:
            reason = f"Free later the same day at {format_clock(local_start.time())}"
        else:
            reason = f"Free on {format_day(local_start.date())} at {format_clock(local_start.time())}"
        if touches_edge:
            reason += " (back-to-back with another event)"
        return SuggestedSlot(start=start, end=end, score=max(0.0, score), reason=reason)
