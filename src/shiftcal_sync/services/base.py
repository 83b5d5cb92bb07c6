"""Error types shared by the calendar service, the auth layer and the outbox."""

from typing import Optional

from googleapiclient.errors import HttpError


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""
    pass


class NotConfiguredError(AuthenticationError):
    """No OAuth client id/secret is available."""
    pass


class InvalidOperationError(CalendarServiceError):
    """An outbox operation cannot be applied in the current state."""
    pass


def http_status(error: BaseException) -> Optional[int]:
    """Return the HTTP status carried by a Google API error, if any."""
    if isinstance(error, HttpError):
        try:
            return int(error.resp.status)
        except (TypeError, ValueError):
            return None
    for attr in ('status_code', 'status', 'code'):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_not_found(error: BaseException) -> bool:
    return http_status(error) == 404


def is_already_gone(error: BaseException) -> bool:
    """True when a delete target was removed before we got to it."""
    if http_status(error) in (404, 410):
        return True
    return 'deleted' in str(error).lower()
