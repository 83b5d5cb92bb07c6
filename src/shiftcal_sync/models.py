"""Data models for calendar synchronization."""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from dataclasses import dataclass, field

from pydantic import BaseModel, Field, TypeAdapter, root_validator, validator
import pytz

from .title_mapper import DEFAULT_EVENT_TYPE

HOLIDAY_EVENT_TYPE = "공휴일"
EVENT_TYPE_MAX_LENGTH = 40


class SyncState(str, Enum):
    """Local event sync state."""

    CLEAN = "CLEAN"  # Matches the last pushed/pulled remote state
    PENDING = "PENDING"  # Local edit waiting in the outbox
    ERROR = "ERROR"  # Outbox job for this event was cancelled


class OutboxOperation(str, Enum):
    """Outbound mutation kinds."""

    CREATE = "CREATE"
    RECUR_ALL = "RECUR_ALL"  # Whole series, or a plain event
    RECUR_THIS = "RECUR_THIS"  # One occurrence only
    RECUR_FUTURE = "RECUR_FUTURE"  # This and all later occurrences
    DELETE = "DELETE"


class OutboxStatus(str, Enum):
    """Outbox job lifecycle."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class SendUpdates(str, Enum):
    """Whether Google notifies attendees about a change."""

    ALL = "all"
    NONE = "none"


class RecurrenceScope(str, Enum):
    """Which part of a recurring series a local edit applies to."""

    THIS = "THIS"
    ALL = "ALL"
    FUTURE = "FUTURE"


class SyncMode(str, Enum):
    """How a sync run pulled remote changes."""

    FULL = "FULL"
    DELTA = "DELTA"
    SKIPPED = "SKIPPED"


def _ensure_utc(v):
    if isinstance(v, datetime):
        if v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v.astimezone(pytz.UTC)
    return v


def normalize_event_type(value: Optional[str]) -> str:
    """Trim an event type, cap its length and fall back to the default type."""
    value = (value or "").strip()[:EVENT_TYPE_MAX_LENGTH]
    return value or DEFAULT_EVENT_TYPE


class RemoteEventSnapshot(BaseModel):
    """Normalized view of one Google Calendar event."""

    google_event_id: str = Field(..., description="Google event ID")
    event_type: str = Field(DEFAULT_EVENT_TYPE, description="Semantic event type")
    summary: str = Field("", description="Event title")
    description: str = Field("", description="Event description")
    location: str = Field("", description="Event location")
    start_at_utc: datetime = Field(..., description="Event start (UTC)")
    end_at_utc: datetime = Field(..., description="Event end (UTC)")
    time_zone: str = Field("UTC", description="IANA time zone label")
    attendees: List[str] = Field(default_factory=list, description="Attendee emails")
    recurrence_rule: Optional[str] = Field(None, description="RRULE body without prefix")
    recurring_event_id: Optional[str] = Field(None, description="Series master ID")
    original_start_time_utc: Optional[datetime] = Field(None, description="Original occurrence start (UTC)")
    organizer_email: Optional[str] = Field(None, description="Organizer email")
    hangout_link: Optional[str] = Field(None, description="Meeting link")
    google_updated_at_utc: datetime = Field(..., description="Remote last modification (UTC)")
    is_deleted: bool = Field(False, description="Whether the remote item is cancelled")

    @validator('start_at_utc', 'end_at_utc', 'original_start_time_utc', 'google_updated_at_utc', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware UTC."""
        return _ensure_utc(v)


class CalendarEvent(BaseModel):
    """Event as stored in the local calendar."""

    local_id: str = Field(..., description="Local event ID")
    google_event_id: Optional[str] = Field(None, description="Google event ID, set after the first push")
    event_type: str = Field(DEFAULT_EVENT_TYPE, description="Semantic event type")
    summary: str = Field("", description="Event title")
    description: str = Field("", description="Event description")
    location: str = Field("", description="Event location")
    start_at_utc: datetime = Field(..., description="Event start (UTC)")
    end_at_utc: datetime = Field(..., description="Event end (UTC)")
    time_zone: str = Field("UTC", description="IANA time zone label")
    attendees: List[str] = Field(default_factory=list, description="Attendee emails")
    recurrence_rule: Optional[str] = Field(None, description="RRULE body without prefix")
    recurring_event_id: Optional[str] = Field(None, description="Series master Google ID")
    original_start_time_utc: Optional[datetime] = Field(None, description="Original occurrence start (UTC)")
    organizer_email: Optional[str] = Field(None, description="Organizer email")
    hangout_link: Optional[str] = Field(None, description="Meeting link")
    google_updated_at_utc: Optional[datetime] = Field(None, description="Last known remote modification")
    local_edited_at_utc: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    sync_state: SyncState = Field(SyncState.CLEAN, description="Sync state")

    @validator(
        'start_at_utc', 'end_at_utc', 'original_start_time_utc',
        'google_updated_at_utc', 'local_edited_at_utc', pre=True
    )
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware UTC."""
        return _ensure_utc(v)

    @root_validator(skip_on_failure=True)
    def occurrence_has_original_start(cls, values):
        """Occurrences of a series must remember which occurrence they replace."""
        if values.get('recurring_event_id') and values.get('original_start_time_utc') is None:
            raise ValueError('original_start_time_utc is required when recurring_event_id is set')
        return values

    def is_occurrence(self) -> bool:
        return bool(self.recurring_event_id)

    def is_recurring_master(self) -> bool:
        return bool(self.recurrence_rule) and not self.recurring_event_id


class EventInput(BaseModel):
    """A local create/update request."""

    local_id: Optional[str] = None
    google_event_id: Optional[str] = None
    event_type: str = DEFAULT_EVENT_TYPE
    summary: str = Field(..., min_length=1)
    description: str = ""
    location: str = ""
    start_at_utc: datetime
    end_at_utc: datetime
    time_zone: str = "UTC"
    attendees: List[str] = Field(default_factory=list)
    recurrence_rule: Optional[str] = None
    recurring_event_id: Optional[str] = None
    original_start_time_utc: Optional[datetime] = None
    send_updates: SendUpdates = SendUpdates.NONE
    recurrence_scope: RecurrenceScope = RecurrenceScope.ALL

    @validator('start_at_utc', 'end_at_utc', 'original_start_time_utc', pre=True)
    def ensure_timezone_aware(cls, v):
        return _ensure_utc(v)

    @validator('summary')
    def strip_summary(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('summary must not be blank')
        return v


# Outbox payloads: one variant per operation, each with only the fields its
# push branch reads.

class _PayloadBase(BaseModel):
    send_updates: SendUpdates = SendUpdates.NONE


class CreatePayload(_PayloadBase):
    operation: Literal['CREATE'] = 'CREATE'


class RecurAllPayload(_PayloadBase):
    operation: Literal['RECUR_ALL'] = 'RECUR_ALL'
    google_event_id: Optional[str] = None


class RecurThisPayload(_PayloadBase):
    operation: Literal['RECUR_THIS'] = 'RECUR_THIS'
    google_event_id: Optional[str] = None
    recurring_event_id: Optional[str] = None
    original_start_time_utc: Optional[datetime] = None

    @validator('original_start_time_utc', pre=True)
    def ensure_timezone_aware(cls, v):
        return _ensure_utc(v)


class RecurFuturePayload(_PayloadBase):
    operation: Literal['RECUR_FUTURE'] = 'RECUR_FUTURE'
    google_event_id: Optional[str] = None
    split_start_utc: datetime

    @validator('split_start_utc', pre=True)
    def ensure_timezone_aware(cls, v):
        return _ensure_utc(v)


class DeletePayload(_PayloadBase):
    operation: Literal['DELETE'] = 'DELETE'
    google_event_id: Optional[str] = None
    recurring_event_id: Optional[str] = None
    original_start_time_utc: Optional[datetime] = None

    @validator('original_start_time_utc', pre=True)
    def ensure_timezone_aware(cls, v):
        return _ensure_utc(v)


OutboxPayload = Annotated[
    Union[CreatePayload, RecurAllPayload, RecurThisPayload, RecurFuturePayload, DeletePayload],
    Field(discriminator='operation'),
]

_payload_adapter = TypeAdapter(OutboxPayload)


def parse_outbox_payload(data: Union[str, bytes, dict]) -> OutboxPayload:
    """Parse a stored payload (JSON text or dict) into its operation variant."""
    if isinstance(data, (str, bytes)):
        return _payload_adapter.validate_json(data)
    return _payload_adapter.validate_python(data)


def dump_outbox_payload(payload: OutboxPayload) -> str:
    return payload.model_dump_json()


class OutboxJob(BaseModel):
    """Outbox job as exposed to callers."""

    id: str
    event_local_id: Optional[str] = None
    operation: OutboxOperation
    payload: OutboxPayload
    status: OutboxStatus = OutboxStatus.QUEUED
    attempts: int = 0
    next_retry_at_utc: datetime
    last_error: Optional[str] = None
    depends_on_outbox_id: Optional[str] = None
    event_summary: Optional[str] = None
    event_type: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime

    @validator('next_retry_at_utc', 'created_at_utc', 'updated_at_utc', pre=True)
    def ensure_timezone_aware(cls, v):
        return _ensure_utc(v)


@dataclass
class SyncPage:
    """One page of pulled remote changes."""

    events: List[RemoteEventSnapshot] = field(default_factory=list)
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None  # Only on the final page


@dataclass
class PushResult:
    """Remote identity after a push; both fields are None when nothing changed remotely."""

    google_event_id: Optional[str] = None
    google_updated_at_utc: Optional[datetime] = None


class CalendarInfo(BaseModel):
    """Writable Google calendar."""

    id: str = Field(..., description="Calendar ID")
    name: str = Field(..., description="Calendar display name")
    is_primary: bool = Field(False, description="Whether this is the primary calendar")
    access_role: str = Field(..., description="owner or writer")


class SelectedCalendar(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None


class ConnectionStatus(BaseModel):
    """OAuth connection state."""

    configured: bool = False
    connected: bool = False
    account_email: Optional[str] = None


class SyncResult(BaseModel):
    """Outcome of one sync run."""

    mode: SyncMode
    pulled_events: int = 0
    pushed_outbox_jobs: int = 0
    outbox_remaining: int = 0


class ForcePushResult(BaseModel):
    enqueued_jobs: int = 0
    processed_jobs: int = 0
    skipped_events: int = 0


class SyncConfiguration(BaseModel):
    """Synchronization configuration."""

    sync_past_years: int = Field(5, ge=0, le=50, description="Years of history in a full pull")
    sync_future_months: int = Field(12, ge=1, le=120, description="Months ahead in a full pull")
    holiday_past_months: int = Field(3, ge=0, le=24, description="Months of past holidays to pull")
    holiday_future_months: int = Field(12, ge=1, le=60, description="Months of future holidays to pull")
    holiday_calendar_id: str = Field(
        "ko.south_korea#holiday@group.v.calendar.google.com",
        description="Public holiday calendar ID"
    )
    default_time_zone: str = Field("Asia/Seoul", description="Zone for events without one")
    sync_interval_minutes: int = Field(5, ge=1, le=1440, description="Daemon sync interval")
    outbox_max_attempts: int = Field(8, ge=1, le=100, description="Attempts before a job is cancelled")
    outbox_retry_delays_seconds: List[int] = Field(
        default=[60, 300, 900, 3600],
        description="Backoff schedule; the last entry repeats"
    )
    outbox_retry_jitter_ratio: float = Field(0.2, ge=0, le=1, description="Maximum added jitter")
    outbox_running_timeout_seconds: int = Field(300, ge=10, description="When a RUNNING job counts as stuck")

    @validator('outbox_retry_delays_seconds')
    def validate_retry_delays(cls, v):
        if not v:
            raise ValueError('at least one retry delay is required')
        if any(delay < 0 for delay in v):
            raise ValueError('retry delays must not be negative')
        return v

    @validator('default_time_zone')
    def validate_time_zone(cls, v):
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown time zone: {v}")
        return v
