"""Database models and operations for the local calendar store and the outbox."""

import json
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Tuple
from uuid import UUID, uuid4

from dateutil.relativedelta import relativedelta
from sqlalchemy import create_engine, Column, String, DateTime, Boolean, Text, Integer, ForeignKey, Index, or_
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import (
    CalendarEvent,
    EventInput,
    OutboxJob,
    OutboxOperation,
    OutboxPayload,
    OutboxStatus,
    RemoteEventSnapshot,
    SelectedCalendar,
    SyncState,
    dump_outbox_payload,
    normalize_event_type,
    parse_outbox_payload,
)
from .rrule import split_rrule_for_future

Base = declarative_base()

ACTIVE_JOB_STATUSES = (OutboxStatus.QUEUED.value, OutboxStatus.RUNNING.value, OutboxStatus.FAILED.value)
DUE_JOB_STATUSES = (OutboxStatus.QUEUED.value, OutboxStatus.FAILED.value)

_UNSET: Any = object()


class GUID(TypeDecorator):
    """UUID stored as 32 hex characters."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, UUID):
            value = UUID(str(value))
        return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, UUID):
            return UUID(value)
        return value


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def to_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC for storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(pytz.UTC).replace(tzinfo=None)


def from_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def _db_now() -> datetime:
    return to_db_datetime(utcnow())


class EventDB(Base):
    """Local calendar event."""

    __tablename__ = 'events'

    local_id = Column(GUID(), primary_key=True, default=uuid4)
    google_event_id = Column(String(1024), nullable=True, unique=True)
    event_type = Column(String(40), nullable=False, default="일반")
    summary = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=True)
    location = Column(Text, nullable=True)
    start_at_utc = Column(DateTime, nullable=False)
    end_at_utc = Column(DateTime, nullable=False)
    time_zone = Column(String(64), nullable=False, default="UTC")
    recurrence_rule = Column(Text, nullable=True)
    recurring_event_id = Column(String(1024), nullable=True, index=True)
    original_start_time_utc = Column(DateTime, nullable=True)
    attendees_json = Column(Text, nullable=True)
    organizer_email = Column(String(320), nullable=True)
    hangout_link = Column(String(1024), nullable=True)
    google_updated_at_utc = Column(DateTime, nullable=True)
    local_edited_at_utc = Column(DateTime, nullable=False, default=_db_now)
    sync_state = Column(String(10), nullable=False, default=SyncState.CLEAN.value)
    is_deleted = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=_db_now)
    updated_at = Column(DateTime, nullable=False, default=_db_now, onupdate=_db_now)

    __table_args__ = (
        Index('idx_events_range', 'is_deleted', 'start_at_utc', 'end_at_utc'),
    )


class OutboxJobDB(Base):
    """Queued local mutation waiting to be pushed to Google."""

    __tablename__ = 'outbox_jobs'

    id = Column(GUID(), primary_key=True, default=uuid4)
    event_local_id = Column(GUID(), ForeignKey('events.local_id', ondelete='SET NULL'), nullable=True, index=True)
    operation = Column(String(20), nullable=False)
    payload_json = Column(Text, nullable=False)
    depends_on_outbox_id = Column(GUID(), ForeignKey('outbox_jobs.id'), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=OutboxStatus.QUEUED.value)
    attempts = Column(Integer, nullable=False, default=0)
    next_retry_at_utc = Column(DateTime, nullable=False, default=_db_now)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=_db_now)
    updated_at = Column(DateTime, nullable=False, default=_db_now, onupdate=_db_now)

    __table_args__ = (
        Index('idx_outbox_due', 'status', 'next_retry_at_utc'),
    )


class SettingDB(Base):
    """Single-row application state."""

    __tablename__ = 'settings'

    id = Column(Integer, primary_key=True, default=1)
    sync_token = Column(Text, nullable=True)
    sync_window_start_utc = Column(DateTime, nullable=False)
    sync_window_end_utc = Column(DateTime, nullable=False)
    account_email = Column(String(320), nullable=True)
    selected_calendar_id = Column(String(1024), nullable=True)
    selected_calendar_summary = Column(String(1024), nullable=True)
    google_client_id = Column(String(255), nullable=True)
    google_client_secret = Column(String(255), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=_db_now, onupdate=_db_now)


def _ensure_end_after_start(start: datetime, end: datetime) -> datetime:
    if end > start:
        return end
    return start + timedelta(hours=1)


def _parse_attendees(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(items, list):
        return []
    emails = []
    for item in items:
        if isinstance(item, str) and item:
            emails.append(item)
        elif isinstance(item, dict) and isinstance(item.get('email'), str) and item['email']:
            emails.append(item['email'])
    return emails


def _dump_attendees(attendees: Iterable[str]) -> str:
    return json.dumps([{'email': email} for email in attendees])


def to_calendar_event(row: EventDB) -> CalendarEvent:
    return CalendarEvent(
        local_id=str(row.local_id),
        google_event_id=row.google_event_id,
        event_type=normalize_event_type(row.event_type),
        summary=row.summary or "",
        description=row.description or "",
        location=row.location or "",
        start_at_utc=from_db_datetime(row.start_at_utc),
        end_at_utc=from_db_datetime(row.end_at_utc),
        time_zone=row.time_zone,
        attendees=_parse_attendees(row.attendees_json),
        recurrence_rule=row.recurrence_rule,
        recurring_event_id=row.recurring_event_id,
        original_start_time_utc=from_db_datetime(row.original_start_time_utc),
        organizer_email=row.organizer_email,
        hangout_link=row.hangout_link,
        google_updated_at_utc=from_db_datetime(row.google_updated_at_utc),
        local_edited_at_utc=from_db_datetime(row.local_edited_at_utc),
        sync_state=SyncState(row.sync_state),
    )


class DatabaseManager:
    """Database manager for the local store."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_uri,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    # Settings

    def ensure_setting(self, session: Session) -> SettingDB:
        """Return the settings row, creating it with the default sync window."""
        setting = session.get(SettingDB, 1)
        if setting is None:
            start, end = self.default_sync_window()
            setting = SettingDB(
                id=1,
                sync_window_start_utc=to_db_datetime(start),
                sync_window_end_utc=to_db_datetime(end),
            )
            session.add(setting)
            session.commit()
        return setting

    def default_sync_window(self, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
        now = now or utcnow()
        config = self.settings.sync_config
        return (
            now - relativedelta(years=config.sync_past_years),
            now + relativedelta(months=config.sync_future_months),
        )

    def get_sync_token(self, session: Session) -> Optional[str]:
        return self.ensure_setting(session).sync_token

    def set_sync_token(self, session: Session, sync_token: Optional[str]) -> None:
        setting = self.ensure_setting(session)
        setting.sync_token = sync_token
        session.commit()

    def get_sync_window(self, session: Session) -> Tuple[datetime, datetime]:
        setting = self.ensure_setting(session)
        return from_db_datetime(setting.sync_window_start_utc), from_db_datetime(setting.sync_window_end_utc)

    def set_sync_window(self, session: Session, start: datetime, end: datetime) -> None:
        setting = self.ensure_setting(session)
        setting.sync_window_start_utc = to_db_datetime(start)
        setting.sync_window_end_utc = to_db_datetime(end)
        session.commit()

    def get_selected_calendar(self, session: Session) -> SelectedCalendar:
        setting = self.ensure_setting(session)
        return SelectedCalendar(id=setting.selected_calendar_id, name=setting.selected_calendar_summary)

    def set_selected_calendar(self, session: Session, calendar_id: str, name: Optional[str] = None) -> bool:
        """Select a calendar; switching calendars drops local events, outbox and sync token.

        Returns:
            True if the calendar changed
        """
        setting = self.ensure_setting(session)
        if setting.selected_calendar_id == calendar_id:
            setting.selected_calendar_summary = name
            session.commit()
            return False

        setting.selected_calendar_id = calendar_id
        setting.selected_calendar_summary = name
        setting.sync_token = None
        session.query(OutboxJobDB).delete(synchronize_session=False)
        session.query(EventDB).delete(synchronize_session=False)
        session.commit()
        return True

    def get_account_email(self, session: Session) -> Optional[str]:
        return self.ensure_setting(session).account_email

    def set_account_email(self, session: Session, account_email: Optional[str]) -> None:
        setting = self.ensure_setting(session)
        setting.account_email = account_email
        session.commit()

    def get_oauth_client_config(self, session: Session) -> Tuple[Optional[str], Optional[str]]:
        setting = self.ensure_setting(session)
        return (setting.google_client_id or None, setting.google_client_secret or None)

    def set_oauth_client_config(self, session: Session, client_id: Optional[str], client_secret: Optional[str]) -> None:
        setting = self.ensure_setting(session)
        setting.google_client_id = (client_id or "").strip() or None
        setting.google_client_secret = (client_secret or "").strip() or None
        session.commit()

    # Events

    def _event_row(self, session: Session, local_id: str) -> Optional[EventDB]:
        try:
            key = UUID(str(local_id))
        except ValueError:
            return None
        return session.get(EventDB, key)

    def list_events(
        self,
        session: Session,
        range_start: Optional[datetime] = None,
        range_end: Optional[datetime] = None
    ) -> List[CalendarEvent]:
        """Non-deleted events overlapping the range, ordered by start."""
        query = session.query(EventDB).filter(EventDB.is_deleted.is_(False))
        if range_start is not None:
            query = query.filter(EventDB.end_at_utc >= to_db_datetime(range_start))
        if range_end is not None:
            query = query.filter(EventDB.start_at_utc <= to_db_datetime(range_end))
        return [to_calendar_event(row) for row in query.order_by(EventDB.start_at_utc).all()]

    def get_event(self, session: Session, local_id: str) -> Optional[CalendarEvent]:
        """Event by local id, including locally deleted ones."""
        row = self._event_row(session, local_id)
        return to_calendar_event(row) if row else None

    def is_event_deleted(self, session: Session, local_id: str) -> bool:
        row = self._event_row(session, local_id)
        return row is None or bool(row.is_deleted)

    def get_event_by_google_id(self, session: Session, google_event_id: str) -> Optional[CalendarEvent]:
        row = session.query(EventDB).filter(
            EventDB.google_event_id == google_event_id,
            EventDB.is_deleted.is_(False),
        ).first()
        return to_calendar_event(row) if row else None

    def save_event(self, session: Session, data: EventInput) -> CalendarEvent:
        """Create or update an event from a local edit; the row becomes PENDING.

        Linkage fields (Google id, series id, original start) are only
        overwritten on update when they were explicitly provided.
        """
        now = _db_now()
        row = self._event_row(session, data.local_id) if data.local_id else None
        if row is None:
            row = EventDB(
                google_event_id=data.google_event_id,
                recurring_event_id=data.recurring_event_id,
                original_start_time_utc=to_db_datetime(data.original_start_time_utc),
            )
            session.add(row)
        else:
            provided = data.model_fields_set
            if 'google_event_id' in provided:
                row.google_event_id = data.google_event_id
            if 'recurring_event_id' in provided:
                row.recurring_event_id = data.recurring_event_id
            if 'original_start_time_utc' in provided:
                row.original_start_time_utc = to_db_datetime(data.original_start_time_utc)

        row.event_type = normalize_event_type(data.event_type)
        row.summary = data.summary
        row.description = data.description or None
        row.location = data.location or None
        row.start_at_utc = to_db_datetime(data.start_at_utc)
        row.end_at_utc = to_db_datetime(_ensure_end_after_start(data.start_at_utc, data.end_at_utc))
        row.time_zone = data.time_zone
        row.recurrence_rule = data.recurrence_rule or None
        row.attendees_json = _dump_attendees(data.attendees)
        row.local_edited_at_utc = now
        row.sync_state = SyncState.PENDING.value
        row.is_deleted = False
        session.commit()
        return to_calendar_event(row)

    def apply_future_split_edit(self, session: Session, data: EventInput) -> Tuple[CalendarEvent, CalendarEvent]:
        """Bound a local series before the edited occurrence and start a new one there.

        Returns:
            ``(bounded_source, new_series)``
        """
        source = self._event_row(session, data.local_id) if data.local_id else None
        if source is None:
            raise ValueError(f"Event not found for future split: {data.local_id}")
        if not source.recurrence_rule:
            raise ValueError("Future split requires a recurring master event")

        now = _db_now()
        source_rule = source.recurrence_rule
        source.recurrence_rule = split_rrule_for_future(source_rule, data.start_at_utc)
        source.local_edited_at_utc = now
        source.sync_state = SyncState.PENDING.value
        source.is_deleted = False

        future = EventDB(
            event_type=normalize_event_type(data.event_type),
            summary=data.summary,
            description=data.description or None,
            location=data.location or None,
            start_at_utc=to_db_datetime(data.start_at_utc),
            end_at_utc=to_db_datetime(_ensure_end_after_start(data.start_at_utc, data.end_at_utc)),
            time_zone=data.time_zone,
            recurrence_rule=data.recurrence_rule or source_rule,
            attendees_json=_dump_attendees(data.attendees),
            organizer_email=source.organizer_email,
            hangout_link=source.hangout_link,
            local_edited_at_utc=now,
            sync_state=SyncState.PENDING.value,
            is_deleted=False,
        )
        session.add(future)
        session.commit()
        return to_calendar_event(source), to_calendar_event(future)

    def bound_series_locally(self, session: Session, local_id: str, split_start: datetime) -> CalendarEvent:
        """End a local series before ``split_start`` and drop its later occurrences."""
        row = self._event_row(session, local_id)
        if row is None or not row.recurrence_rule:
            raise ValueError(f"Recurring event not found: {local_id}")
        row.recurrence_rule = split_rrule_for_future(row.recurrence_rule, split_start)
        row.local_edited_at_utc = _db_now()
        row.sync_state = SyncState.PENDING.value
        session.commit()
        if row.google_event_id:
            self.mark_series_instances_deleted(session, row.google_event_id, since=split_start)
        return to_calendar_event(row)

    def mark_deleted_locally(self, session: Session, local_id: str) -> bool:
        """Soft-delete an event pending its outbox DELETE."""
        row = self._event_row(session, local_id)
        if row is None or row.is_deleted:
            return False
        row.is_deleted = True
        row.local_edited_at_utc = _db_now()
        row.sync_state = SyncState.PENDING.value
        session.commit()
        return True

    def mark_series_instances_deleted(
        self,
        session: Session,
        series_google_id: str,
        since: Optional[datetime] = None
    ) -> int:
        """Soft-delete stored occurrences of a series, optionally only from ``since`` on."""
        query = session.query(EventDB).filter(
            EventDB.recurring_event_id == series_google_id,
            EventDB.is_deleted.is_(False),
        )
        if since is not None:
            query = query.filter(EventDB.start_at_utc >= to_db_datetime(since))
        count = query.update(
            {EventDB.is_deleted: True, EventDB.local_edited_at_utc: _db_now()},
            synchronize_session=False,
        )
        session.commit()
        return count

    def update_series_instances(self, session: Session, series_google_id: str, data: EventInput) -> int:
        """Copy whole-series fields onto stored occurrences."""
        count = session.query(EventDB).filter(
            EventDB.recurring_event_id == series_google_id,
            EventDB.is_deleted.is_(False),
        ).update(
            {
                EventDB.event_type: normalize_event_type(data.event_type),
                EventDB.summary: data.summary,
                EventDB.description: data.description or None,
                EventDB.location: data.location or None,
                EventDB.time_zone: data.time_zone,
                EventDB.local_edited_at_utc: _db_now(),
            },
            synchronize_session=False,
        )
        session.commit()
        return count

    def apply_event_type_to_series(self, session: Session, series_google_id: str, event_type: str) -> int:
        count = session.query(EventDB).filter(
            EventDB.is_deleted.is_(False),
            or_(
                EventDB.recurring_event_id == series_google_id,
                EventDB.google_event_id == series_google_id,
            ),
        ).update({EventDB.event_type: normalize_event_type(event_type)}, synchronize_session=False)
        session.commit()
        return count

    def update_event_sync_state(
        self,
        session: Session,
        local_id: str,
        sync_state: SyncState,
        google_event_id: Optional[str] = _UNSET,
        google_updated_at_utc: Optional[datetime] = _UNSET
    ) -> None:
        row = self._event_row(session, local_id)
        if row is None:
            return
        row.sync_state = sync_state.value
        if google_event_id is not _UNSET:
            row.google_event_id = google_event_id
        if google_updated_at_utc is not _UNSET:
            row.google_updated_at_utc = to_db_datetime(google_updated_at_utc)
        session.commit()

    def touch_event(self, session: Session, local_id: str) -> None:
        """Stamp a local edit time without changing content."""
        row = self._event_row(session, local_id)
        if row is None:
            return
        row.local_edited_at_utc = _db_now()
        session.commit()

    def discard_event(self, session: Session, local_id: str) -> None:
        """Drop a never-pushed event whose CREATE can no longer run."""
        row = self._event_row(session, local_id)
        if row is None:
            return
        row.is_deleted = True
        row.sync_state = SyncState.CLEAN.value
        session.commit()

    def complete_event_push(
        self,
        session: Session,
        local_id: str,
        google_event_id: Optional[str] = None,
        google_updated_at_utc: Optional[datetime] = None
    ) -> None:
        """Record a successful push; the event is CLEAN once no other job is active for it.

        ``google_event_id`` is adopted only when the event has none yet. Any
        other row already holding that id (a pulled copy of the same
        occurrence) is dropped.
        """
        row = self._event_row(session, local_id)
        if row is None:
            return
        if google_event_id and not row.google_event_id:
            duplicates = session.query(EventDB).filter(
                EventDB.google_event_id == google_event_id,
                EventDB.local_id != row.local_id,
            ).all()
            for duplicate in duplicates:
                duplicate.google_event_id = None
                duplicate.is_deleted = True
                duplicate.sync_state = SyncState.CLEAN.value
            session.flush()
            row.google_event_id = google_event_id
        if google_updated_at_utc is not None:
            row.google_updated_at_utc = to_db_datetime(google_updated_at_utc)
        session.commit()
        if self.count_active_jobs(session, local_id) == 0:
            row.sync_state = SyncState.CLEAN.value
            session.commit()

    def mark_event_deleted_by_google(
        self,
        session: Session,
        google_event_id: str,
        google_updated_at_utc: Optional[datetime] = None
    ) -> int:
        values = {EventDB.is_deleted: True, EventDB.sync_state: SyncState.CLEAN.value}
        if google_updated_at_utc is not None:
            values[EventDB.google_updated_at_utc] = to_db_datetime(google_updated_at_utc)
        count = session.query(EventDB).filter(
            EventDB.google_event_id == google_event_id
        ).update(values, synchronize_session=False)
        session.commit()
        return count

    def upsert_remote_event(self, session: Session, snapshot: RemoteEventSnapshot) -> bool:
        """Store a pulled snapshot, keyed by Google id.

        A local edit newer than the remote change wins while it is still
        waiting to be pushed (pending, or queued for a retry after a failed
        push); the outbox pushes it later.

        Returns:
            True if the snapshot was applied
        """
        if snapshot.is_deleted:
            self.mark_event_deleted_by_google(session, snapshot.google_event_id, snapshot.google_updated_at_utc)
            return True

        row = session.query(EventDB).filter(EventDB.google_event_id == snapshot.google_event_id).first()
        if (
            row is not None
            and (
                row.sync_state == SyncState.PENDING.value
                or self.count_active_jobs(session, str(row.local_id)) > 0
            )
            and from_db_datetime(row.local_edited_at_utc) > snapshot.google_updated_at_utc
        ):
            return False

        if row is None:
            row = EventDB(google_event_id=snapshot.google_event_id)
            session.add(row)

        updated = to_db_datetime(snapshot.google_updated_at_utc)
        row.event_type = normalize_event_type(snapshot.event_type)
        row.summary = snapshot.summary
        row.description = snapshot.description or None
        row.location = snapshot.location or None
        row.start_at_utc = to_db_datetime(snapshot.start_at_utc)
        row.end_at_utc = to_db_datetime(snapshot.end_at_utc)
        row.time_zone = snapshot.time_zone
        row.recurrence_rule = snapshot.recurrence_rule
        row.recurring_event_id = snapshot.recurring_event_id
        row.original_start_time_utc = to_db_datetime(snapshot.original_start_time_utc)
        row.attendees_json = _dump_attendees(snapshot.attendees)
        row.organizer_email = snapshot.organizer_email
        row.hangout_link = snapshot.hangout_link
        row.google_updated_at_utc = updated
        row.local_edited_at_utc = updated
        row.sync_state = SyncState.CLEAN.value
        row.is_deleted = False
        session.commit()
        return True

    def upsert_remote_events(self, session: Session, snapshots: Iterable[RemoteEventSnapshot]) -> int:
        return sum(1 for snapshot in snapshots if self.upsert_remote_event(session, snapshot))

    def list_unpushed_events(self, session: Session) -> List[CalendarEvent]:
        rows = session.query(EventDB).filter(
            EventDB.is_deleted.is_(False),
            EventDB.google_event_id.is_(None),
        ).order_by(EventDB.start_at_utc).all()
        return [to_calendar_event(row) for row in rows]

    # Outbox

    def to_outbox_job(self, session: Session, row: OutboxJobDB) -> OutboxJob:
        event = self._event_row(session, row.event_local_id) if row.event_local_id else None
        return OutboxJob(
            id=str(row.id),
            event_local_id=str(row.event_local_id) if row.event_local_id else None,
            operation=OutboxOperation(row.operation),
            payload=parse_outbox_payload(row.payload_json),
            status=OutboxStatus(row.status),
            attempts=row.attempts,
            next_retry_at_utc=from_db_datetime(row.next_retry_at_utc),
            last_error=row.last_error,
            depends_on_outbox_id=str(row.depends_on_outbox_id) if row.depends_on_outbox_id else None,
            event_summary=event.summary if event else None,
            event_type=event.event_type if event else None,
            created_at_utc=from_db_datetime(row.created_at),
            updated_at_utc=from_db_datetime(row.updated_at),
        )

    def create_outbox_job(
        self,
        session: Session,
        event_local_id: Optional[str],
        payload: OutboxPayload,
        depends_on_outbox_id: Optional[str] = None
    ) -> OutboxJobDB:
        job = OutboxJobDB(
            event_local_id=UUID(str(event_local_id)) if event_local_id else None,
            operation=payload.operation,
            payload_json=dump_outbox_payload(payload),
            depends_on_outbox_id=UUID(str(depends_on_outbox_id)) if depends_on_outbox_id else None,
            status=OutboxStatus.QUEUED.value,
            attempts=0,
            next_retry_at_utc=_db_now(),
        )
        session.add(job)
        session.commit()
        return job

    def get_outbox_job(self, session: Session, job_id: str) -> Optional[OutboxJobDB]:
        try:
            key = UUID(str(job_id))
        except ValueError:
            return None
        return session.get(OutboxJobDB, key)

    def find_pending_job(self, session: Session, event_local_id: str) -> Optional[OutboxJobDB]:
        """Oldest QUEUED/FAILED job for an event."""
        return session.query(OutboxJobDB).filter(
            OutboxJobDB.event_local_id == UUID(str(event_local_id)),
            OutboxJobDB.status.in_(DUE_JOB_STATUSES),
        ).order_by(OutboxJobDB.created_at).first()

    def find_next_due_job(self, session: Session, now: Optional[datetime] = None) -> Optional[OutboxJobDB]:
        """Next runnable job whose dependency (if any) is DONE."""
        now = to_db_datetime(now or utcnow())
        candidates = session.query(OutboxJobDB).filter(
            OutboxJobDB.status.in_(DUE_JOB_STATUSES),
            OutboxJobDB.next_retry_at_utc <= now,
        ).order_by(OutboxJobDB.next_retry_at_utc, OutboxJobDB.created_at).all()
        for job in candidates:
            if job.depends_on_outbox_id is None:
                return job
            dependency = session.get(OutboxJobDB, job.depends_on_outbox_id)
            if dependency is not None and dependency.status == OutboxStatus.DONE.value:
                return job
        return None

    def find_dependent_jobs(self, session: Session, job_id: str) -> List[OutboxJobDB]:
        return session.query(OutboxJobDB).filter(
            OutboxJobDB.depends_on_outbox_id == UUID(str(job_id)),
            OutboxJobDB.status.in_(ACTIVE_JOB_STATUSES),
        ).all()

    def count_active_jobs(self, session: Session, event_local_id: Optional[str] = None) -> int:
        query = session.query(OutboxJobDB).filter(OutboxJobDB.status.in_(ACTIVE_JOB_STATUSES))
        if event_local_id is not None:
            query = query.filter(OutboxJobDB.event_local_id == UUID(str(event_local_id)))
        return query.count()

    def list_outbox_jobs(self, session: Session, limit: int = 80, include_completed: bool = False) -> List[OutboxJob]:
        query = session.query(OutboxJobDB)
        if not include_completed:
            query = query.filter(OutboxJobDB.status.in_(ACTIVE_JOB_STATUSES))
        rows = query.order_by(OutboxJobDB.created_at.desc()).limit(limit).all()
        return [self.to_outbox_job(session, row) for row in rows]

    def recover_stuck_jobs(self, session: Session, older_than: datetime) -> int:
        """Turn jobs left RUNNING (e.g. by a crash) back into retryable FAILED jobs."""
        stuck = session.query(OutboxJobDB).filter(
            OutboxJobDB.status == OutboxStatus.RUNNING.value,
            OutboxJobDB.updated_at < to_db_datetime(older_than),
        ).all()
        for job in stuck:
            job.status = OutboxStatus.FAILED.value
            job.attempts += 1
            job.last_error = "Recovered: job was stuck in RUNNING state."
        session.commit()
        return len(stuck)
