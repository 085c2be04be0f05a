"""
Utility modules for the Voice Scheduling Assistant
"""

from .logger import SchedulerLogger
from .validators import RequestValidator, DataSanitizer
from .meeting_logger import MeetingLogger

__all__ = ['SchedulerLogger', 'RequestValidator', 'DataSanitizer', 'MeetingLogger']
