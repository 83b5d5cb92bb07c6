"""Conversion between local events and Google Calendar event resources."""

import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from dateutil import parser as date_parser
import pytz

from .models import CalendarEvent, RemoteEventSnapshot, normalize_event_type
from .rrule import RRULE_PREFIX, normalize_rrule
from .title_mapper import DEFAULT_EVENT_TYPE, infer_event_metadata, to_google_summary

logger = logging.getLogger(__name__)

EVENT_TYPE_PRIVATE_KEY = "shiftCalendarEventType"
FALLBACK_TIME_ZONE = "Asia/Seoul"
NO_TITLE = "(No title)"


def _zone(name: Optional[str]):
    if not name:
        return None
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        return None


def system_time_zone() -> str:
    """IANA name of the process zone (``TZ``), or the fallback zone."""
    name = os.environ.get('TZ', '').lstrip(':')
    return name if _zone(name) else FALLBACK_TIME_ZONE


def parse_google_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp such as ``updated`` into UTC."""
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return pytz.UTC.localize(parsed)
    return parsed.astimezone(pytz.UTC)


def from_google_event_datetime(value: Optional[Dict[str, Any]]) -> Optional[Tuple[datetime, str]]:
    """Convert a Google ``start``/``end`` object into ``(utc_instant, zone_label)``.

    ``dateTime`` values keep their own offset; ``date`` values are anchored at
    local midnight in the supplied zone, the system zone or ``Asia/Seoul``.
    Returns ``None`` when the value is missing or malformed.
    """
    if not value:
        return None

    supplied_zone = value.get('timeZone')

    if value.get('dateTime'):
        try:
            parsed = date_parser.isoparse(value['dateTime'])
        except (ValueError, OverflowError):
            return None
        if parsed.tzinfo is None:
            tz = _zone(supplied_zone) or pytz.UTC
            parsed = tz.localize(parsed)
        label = supplied_zone or _zone_label(parsed) or 'UTC'
        return parsed.astimezone(pytz.UTC), label

    if value.get('date'):
        zone_name = supplied_zone or system_time_zone()
        tz = _zone(zone_name)
        if tz is None:
            return None
        try:
            day = datetime.strptime(value['date'], '%Y-%m-%d')
        except ValueError:
            return None
        return tz.localize(day).astimezone(pytz.UTC), zone_name

    return None


def _zone_label(parsed: datetime) -> Optional[str]:
    name = parsed.tzname()
    if name and _zone(name):
        return name
    return None


def extract_recurrence_rule(recurrence: Optional[List[str]]) -> Optional[str]:
    """Return the body of the first ``RRULE:`` line."""
    for line in recurrence or []:
        if line.startswith(RRULE_PREFIX):
            return line[len(RRULE_PREFIX):]
    return None


def extract_event_type(item: Dict[str, Any]) -> Optional[str]:
    """The event type stored in private extended properties, or ``None`` if absent."""
    value = ((item.get('extendedProperties') or {}).get('private') or {}).get(EVENT_TYPE_PRIVATE_KEY)
    if not isinstance(value, str) or not value.strip():
        return None
    return normalize_event_type(value)


def to_remote_snapshot(item: Dict[str, Any]) -> Optional[RemoteEventSnapshot]:
    """Map a Google event resource to a snapshot, or ``None`` if it is unusable."""
    google_event_id = item.get('id')
    if not google_event_id:
        return None

    updated = parse_google_timestamp(item.get('updated')) or datetime.now(pytz.UTC)

    if item.get('status') == 'cancelled':
        return RemoteEventSnapshot(
            google_event_id=google_event_id,
            event_type=DEFAULT_EVENT_TYPE,
            start_at_utc=updated,
            end_at_utc=updated,
            time_zone='UTC',
            google_updated_at_utc=updated,
            is_deleted=True,
        )

    start = from_google_event_datetime(item.get('start'))
    end = from_google_event_datetime(item.get('end'))
    if start is None or end is None:
        logger.warning(f"Dropping event {google_event_id} with malformed start/end")
        return None

    original_start = from_google_event_datetime(item.get('originalStartTime'))
    recurring_event_id = item.get('recurringEventId')
    original_start_utc = original_start[0] if original_start else None
    if recurring_event_id and original_start_utc is None:
        original_start_utc = start[0]

    explicit_type = extract_event_type(item)
    event_type, summary, description = infer_event_metadata(
        item.get('summary') or NO_TITLE,
        item.get('description') or "",
        explicit_type or DEFAULT_EVENT_TYPE,
        infer_type=explicit_type is None,
    )

    return RemoteEventSnapshot(
        google_event_id=google_event_id,
        event_type=event_type,
        summary=summary,
        description=description,
        location=item.get('location') or "",
        start_at_utc=start[0],
        end_at_utc=end[0],
        time_zone=start[1],
        attendees=[a['email'] for a in item.get('attendees') or [] if a.get('email')],
        recurrence_rule=extract_recurrence_rule(item.get('recurrence')),
        recurring_event_id=recurring_event_id,
        original_start_time_utc=original_start_utc,
        organizer_email=(item.get('organizer') or {}).get('email'),
        hangout_link=item.get('hangoutLink'),
        google_updated_at_utc=updated,
        is_deleted=False,
    )


def _local_range(event: CalendarEvent) -> Tuple[datetime, datetime, str]:
    zone_name = event.time_zone if _zone(event.time_zone) else 'UTC'
    tz = pytz.timezone(zone_name)
    return event.start_at_utc.astimezone(tz), event.end_at_utc.astimezone(tz), zone_name


def _is_midnight(value: datetime) -> bool:
    return value.hour == 0 and value.minute == 0 and value.second == 0 and value.microsecond == 0


def is_whole_day(event: CalendarEvent) -> bool:
    """Both ends on local midnight and at least one full day apart."""
    start, end, _ = _local_range(event)
    return _is_midnight(start) and _is_midnight(end) and end.date() > start.date()


def _date_endpoints(event: CalendarEvent) -> Tuple[Dict[str, str], Dict[str, str]]:
    start, end, zone_name = _local_range(event)
    start_day = start.date()
    end_day = end.date() if _is_midnight(end) else end.date() + timedelta(days=1)
    if end_day <= start_day:
        end_day = start_day + timedelta(days=1)
    return (
        {'date': start_day.isoformat(), 'timeZone': zone_name},
        {'date': end_day.isoformat(), 'timeZone': zone_name},
    )


def _datetime_endpoints(event: CalendarEvent) -> Tuple[Dict[str, str], Dict[str, str]]:
    start, end, zone_name = _local_range(event)
    return (
        {'dateTime': start.isoformat(timespec='milliseconds'), 'timeZone': zone_name},
        {'dateTime': end.isoformat(timespec='milliseconds'), 'timeZone': zone_name},
    )


def to_google_event_request(event: CalendarEvent) -> Dict[str, Any]:
    """Build the Google insert/patch body for a local event."""
    if is_whole_day(event):
        start, end = _date_endpoints(event)
    else:
        start, end = _datetime_endpoints(event)

    body: Dict[str, Any] = {
        'summary': to_google_summary(event.summary, event.description, event.event_type),
        'start': start,
        'end': end,
        'attendees': [{'email': email} for email in event.attendees],
        'extendedProperties': {
            'private': {EVENT_TYPE_PRIVATE_KEY: event.event_type},
        },
    }
    if event.description:
        body['description'] = event.description
    if event.location:
        body['location'] = event.location
    rule = normalize_rrule(event.recurrence_rule)
    if rule:
        body['recurrence'] = [rule]
    return body


def align_time_shape_with_remote(
    event: CalendarEvent,
    body: Dict[str, Any],
    remote_item: Dict[str, Any]
) -> Dict[str, Any]:
    """Rebuild ``start``/``end`` in the shape (date vs dateTime) the remote item uses.

    An occurrence edit must not flip a series between whole-day and timed.
    """
    remote_start = remote_item.get('start') or {}
    if not remote_start:
        return body

    aligned = dict(body)
    if remote_start.get('date') and not remote_start.get('dateTime'):
        aligned['start'], aligned['end'] = _date_endpoints(event)
    else:
        aligned['start'], aligned['end'] = _datetime_endpoints(event)
    return aligned
