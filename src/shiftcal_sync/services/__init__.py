"""Google Calendar service and shared error types."""

from .base import (
    CalendarServiceError,
    AuthenticationError,
    NotConfiguredError,
    InvalidOperationError,
)
from .google import GoogleCalendarService

__all__ = [
    'CalendarServiceError',
    'AuthenticationError',
    'NotConfiguredError',
    'InvalidOperationError',
    'GoogleCalendarService',
]
