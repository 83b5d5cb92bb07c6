"""RRULE manipulation helpers used for "this and future occurrences" edits."""

from datetime import datetime, timedelta
from typing import Dict, Optional, Union

from dateutil import parser as date_parser
import pytz

RRULE_PREFIX = "RRULE:"

# Keys are serialized in this order; anything else follows alphabetically.
KEY_ORDER = ['FREQ', 'INTERVAL', 'BYDAY', 'BYMONTHDAY', 'BYSETPOS', 'UNTIL', 'COUNT', 'WKST']

UNTIL_FORMAT = "%Y%m%dT%H%M%SZ"


def strip_rrule_prefix(rule: Optional[str]) -> str:
    """Return the rule body without a leading ``RRULE:``."""
    if not rule:
        return ""
    rule = rule.strip()
    if rule.upper().startswith(RRULE_PREFIX):
        return rule[len(RRULE_PREFIX):]
    return rule


def normalize_rrule(rule: Optional[str]) -> Optional[str]:
    """Return the rule as a single ``RRULE:``-prefixed recurrence line."""
    body = strip_rrule_prefix(rule)
    if not body:
        return None
    return f"{RRULE_PREFIX}{body}"


def parse_rrule_segments(rule: Optional[str]) -> Dict[str, str]:
    """Split an RRULE body into an upper-cased key/value mapping.

    Empty segments and segments without ``=`` are ignored.
    """
    segments: Dict[str, str] = {}
    for part in strip_rrule_prefix(rule).split(';'):
        part = part.strip()
        if not part or '=' not in part:
            continue
        key, value = part.split('=', 1)
        key = key.strip().upper()
        value = value.strip()
        if key and value:
            segments[key] = value
    return segments


def serialize_rrule_segments(segments: Dict[str, str]) -> str:
    """Serialize segments back into an RRULE body in canonical key order."""
    ordered = [key for key in KEY_ORDER if key in segments]
    ordered += sorted(key for key in segments if key not in KEY_ORDER)
    return ';'.join(f"{key}={segments[key]}" for key in ordered)


def _to_utc(value: Union[datetime, str]) -> datetime:
    if isinstance(value, str):
        value = date_parser.isoparse(value)
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def format_until_utc(value: Union[datetime, str]) -> str:
    """Format an instant as an RFC 5545 UTC ``UNTIL`` value (``YYYYMMDDTHHMMSSZ``)."""
    return _to_utc(value).strftime(UNTIL_FORMAT)


def parse_until_to_utc(value: Optional[str]) -> Optional[datetime]:
    """Parse an ``UNTIL`` value in date (``YYYYMMDD``) or UTC datetime form."""
    if not value:
        return None
    value = value.strip()
    for fmt in (UNTIL_FORMAT, "%Y%m%dT%H%M%S", "%Y%m%d"):
        try:
            return pytz.UTC.localize(datetime.strptime(value, fmt))
        except ValueError:
            continue
    return None


def _require_freq(segments: Dict[str, str], rule: Optional[str]) -> None:
    if 'FREQ' not in segments:
        raise ValueError(f"Recurrence rule has no FREQ: {rule!r}")


def with_rrule_until(rule: str, until: Union[datetime, str]) -> str:
    """Bound a rule with ``UNTIL``, dropping any ``COUNT``."""
    segments = parse_rrule_segments(rule)
    _require_freq(segments, rule)
    segments.pop('COUNT', None)
    segments['UNTIL'] = format_until_utc(until)
    return serialize_rrule_segments(segments)


def with_rrule_count(rule: str, count: int) -> str:
    """Bound a rule with ``COUNT``, dropping any ``UNTIL``."""
    if count < 1:
        raise ValueError("COUNT must be a positive integer")
    segments = parse_rrule_segments(rule)
    _require_freq(segments, rule)
    segments.pop('UNTIL', None)
    segments['COUNT'] = str(count)
    return serialize_rrule_segments(segments)


def without_rrule_end(rule: str) -> str:
    """Remove both ``UNTIL`` and ``COUNT`` so the rule repeats forever."""
    segments = parse_rrule_segments(rule)
    _require_freq(segments, rule)
    segments.pop('UNTIL', None)
    segments.pop('COUNT', None)
    return serialize_rrule_segments(segments)


def split_rrule_for_future(rule: str, split_start: Union[datetime, str]) -> str:
    """Bound ``rule`` so that its last occurrence is strictly before ``split_start``.

    The returned body ends one second before the split instant. The part of the
    series from ``split_start`` onward is left for the caller to materialize as
    a new series.
    """
    return with_rrule_until(rule, _to_utc(split_start) - timedelta(seconds=1))
