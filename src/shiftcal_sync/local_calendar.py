"""Local edit API: applies user edits to the store and queues them for Google."""

import logging
from datetime import datetime
from typing import List, Optional

from .config import Settings
from .database import DatabaseManager
from .models import (
    CalendarEvent,
    CreatePayload,
    DeletePayload,
    EventInput,
    RecurAllPayload,
    RecurFuturePayload,
    RecurThisPayload,
    RecurrenceScope,
    SendUpdates,
    normalize_event_type,
)
from .outbox import OutboxWorker
from .rrule import without_rrule_end

logger = logging.getLogger(__name__)


class LocalCalendar:
    """Calendar edits as the user sees them.

    Every mutation is applied locally first and then queued in the outbox;
    nothing here talks to Google directly.
    """

    def __init__(self, settings: Settings, db_manager: DatabaseManager, outbox: OutboxWorker):
        self.settings = settings
        self.db_manager = db_manager
        self.outbox = outbox
        self.logger = logger.getChild('local')

    def list_events(
        self,
        range_start: Optional[datetime] = None,
        range_end: Optional[datetime] = None
    ) -> List[CalendarEvent]:
        with self.db_manager.get_session() as session:
            return self.db_manager.list_events(session, range_start, range_end)

    def get_event(self, local_id: str) -> Optional[CalendarEvent]:
        with self.db_manager.get_session() as session:
            event = self.db_manager.get_event(session, local_id)
            if event is None or self.db_manager.is_event_deleted(session, local_id):
                return None
            return event

    def upsert_event(self, data: EventInput) -> CalendarEvent:
        """Create or edit an event.

        For events that belong to a series, ``data.recurrence_scope`` picks
        between editing the whole series, this occurrence only, or this and
        following occurrences. Changing the event type always applies to the
        whole series.

        Returns:
            The event the edit produced (the new series for a future split)
        """
        existing = self.get_event(data.local_id) if data.local_id else None
        if existing is None:
            return self._create(data)

        has_recurring_context = bool(
            existing.recurrence_rule or existing.recurring_event_id or data.recurrence_rule
        )
        scope = data.recurrence_scope if has_recurring_context else RecurrenceScope.ALL
        if has_recurring_context and normalize_event_type(data.event_type) != existing.event_type:
            scope = RecurrenceScope.ALL

        if scope == RecurrenceScope.ALL:
            return self._edit_all(existing, data, has_recurring_context)
        if scope == RecurrenceScope.THIS:
            return self._edit_this(existing, data)
        if existing.recurrence_rule and not existing.recurring_event_id:
            return self._split_master(existing, data)
        if existing.recurring_event_id:
            future = self._split_from_occurrence(existing, data)
            if future is not None:
                return future

        with self.db_manager.get_session() as session:
            saved = self.db_manager.save_event(session, data)
        self.outbox.enqueue(saved.local_id, RecurAllPayload(send_updates=data.send_updates))
        return saved

    def _create(self, data: EventInput) -> CalendarEvent:
        with self.db_manager.get_session() as session:
            saved = self.db_manager.save_event(session, data.model_copy(update={'local_id': None}))
        self.outbox.enqueue(saved.local_id, CreatePayload(send_updates=data.send_updates))
        self.logger.info(f"Created local event {saved.local_id}")
        return saved

    def _edit_all(self, existing: CalendarEvent, data: EventInput, has_recurring_context: bool) -> CalendarEvent:
        with self.db_manager.get_session() as session:
            saved = self.db_manager.save_event(session, data)
            if has_recurring_context and saved.recurring_event_id:
                target_id = saved.recurring_event_id
            else:
                target_id = saved.google_event_id or data.google_event_id

            series_id = saved.recurring_event_id or (saved.google_event_id if saved.recurrence_rule else None)
            if has_recurring_context and series_id:
                self.db_manager.update_series_instances(session, series_id, data)
                self.db_manager.apply_event_type_to_series(session, series_id, data.event_type)

        self.outbox.enqueue(
            saved.local_id,
            RecurAllPayload(google_event_id=target_id, send_updates=data.send_updates),
        )
        return saved

    def _edit_this(self, existing: CalendarEvent, data: EventInput) -> CalendarEvent:
        with self.db_manager.get_session() as session:
            if existing.is_recurring_master() and existing.google_event_id:
                # Editing one occurrence through the master row: the change
                # lives in a new override row addressed via the series.
                target = self.db_manager.save_event(session, data.model_copy(update={
                    'local_id': None,
                    'google_event_id': None,
                    'recurrence_rule': None,
                    'recurring_event_id': existing.google_event_id,
                    'original_start_time_utc': data.original_start_time_utc or data.start_at_utc,
                }))
            else:
                target = self.db_manager.save_event(session, data)

        self.outbox.enqueue(target.local_id, RecurThisPayload(
            google_event_id=target.google_event_id,
            recurring_event_id=target.recurring_event_id,
            original_start_time_utc=target.original_start_time_utc,
            send_updates=data.send_updates,
        ))
        return target

    def _split_master(self, existing: CalendarEvent, data: EventInput) -> CalendarEvent:
        with self.db_manager.get_session() as session:
            source, future = self.db_manager.apply_future_split_edit(session, data)

        split_job_id = self.outbox.enqueue(source.local_id, RecurFuturePayload(
            google_event_id=source.google_event_id,
            split_start_utc=data.start_at_utc,
            send_updates=data.send_updates,
        ))
        # A series that never reached Google has nothing to bound remotely.
        self.outbox.enqueue(
            future.local_id,
            CreatePayload(send_updates=data.send_updates),
            depends_on_outbox_id=split_job_id if source.google_event_id else None,
        )
        self.logger.info(f"Split series {source.local_id} at {data.start_at_utc.isoformat()} into {future.local_id}")
        return future

    def _split_from_occurrence(self, existing: CalendarEvent, data: EventInput) -> Optional[CalendarEvent]:
        master_id = existing.recurring_event_id
        split_start = data.start_at_utc

        with self.db_manager.get_session() as session:
            master = self.db_manager.get_event_by_google_id(session, master_id)
            rule = data.recurrence_rule or (master.recurrence_rule if master else None) or existing.recurrence_rule
            if not rule:
                return None

            if master is not None and master.recurrence_rule:
                self.db_manager.bound_series_locally(session, master.local_id, split_start)
                split_owner = master.local_id
            else:
                self.db_manager.mark_series_instances_deleted(session, master_id, since=split_start)
                self.db_manager.touch_event(session, existing.local_id)
                split_owner = existing.local_id

            future = self.db_manager.save_event(session, data.model_copy(update={
                'local_id': None,
                'google_event_id': None,
                'recurring_event_id': None,
                'original_start_time_utc': None,
                'recurrence_rule': without_rrule_end(rule),
            }))

        split_job_id = self.outbox.enqueue(split_owner, RecurFuturePayload(
            google_event_id=master_id,
            split_start_utc=split_start,
            send_updates=data.send_updates,
        ))
        self.outbox.enqueue(
            future.local_id,
            CreatePayload(send_updates=data.send_updates),
            depends_on_outbox_id=split_job_id,
        )
        self.logger.info(f"Split series {master_id} at {split_start.isoformat()} into {future.local_id}")
        return future

    def delete_event(
        self,
        local_id: str,
        scope: RecurrenceScope = RecurrenceScope.ALL,
        send_updates: SendUpdates = SendUpdates.NONE
    ) -> bool:
        """Delete an event, or part of its series.

        Returns:
            False if the event does not exist
        """
        existing = self.get_event(local_id)
        if existing is None:
            return False

        has_recurring_context = bool(existing.recurrence_rule or existing.recurring_event_id)
        if not has_recurring_context:
            scope = RecurrenceScope.ALL

        if scope == RecurrenceScope.ALL:
            return self._delete_all(existing, has_recurring_context, send_updates)
        if scope == RecurrenceScope.THIS:
            return self._delete_this(existing, send_updates)
        return self._delete_future(existing, send_updates)

    def _delete_all(self, existing: CalendarEvent, has_recurring_context: bool, send_updates: SendUpdates) -> bool:
        with self.db_manager.get_session() as session:
            if not self.db_manager.mark_deleted_locally(session, existing.local_id):
                return False
            series_id = existing.recurring_event_id or existing.google_event_id
            if has_recurring_context and series_id:
                self.db_manager.mark_series_instances_deleted(session, series_id)

        self.outbox.enqueue(existing.local_id, DeletePayload(
            google_event_id=existing.recurring_event_id or existing.google_event_id,
            send_updates=send_updates,
        ))
        return True

    def _delete_this(self, existing: CalendarEvent, send_updates: SendUpdates) -> bool:
        original_start = existing.original_start_time_utc or existing.start_at_utc
        if existing.is_recurring_master() and existing.google_event_id:
            # The series row stays; only its first occurrence goes, addressed
            # through the series and detached from the row's own jobs.
            self.outbox.enqueue(None, DeletePayload(
                recurring_event_id=existing.google_event_id,
                original_start_time_utc=original_start,
                send_updates=send_updates,
            ))
            return True

        with self.db_manager.get_session() as session:
            if not self.db_manager.mark_deleted_locally(session, existing.local_id):
                return False

        self.outbox.enqueue(existing.local_id, DeletePayload(
            google_event_id=existing.google_event_id,
            recurring_event_id=existing.recurring_event_id,
            original_start_time_utc=original_start,
            send_updates=send_updates,
        ))
        return True

    def _delete_future(self, existing: CalendarEvent, send_updates: SendUpdates) -> bool:
        if not existing.recurring_event_id:
            # From the first occurrence on is the whole series.
            return self._delete_all(existing, True, send_updates)

        split_start = existing.start_at_utc
        series_id = existing.recurring_event_id

        with self.db_manager.get_session() as session:
            master = self.db_manager.get_event_by_google_id(session, series_id)
            if master is not None and master.recurrence_rule:
                self.db_manager.bound_series_locally(session, master.local_id, split_start)
                owner_id = master.local_id
            else:
                self.db_manager.mark_series_instances_deleted(session, series_id, since=split_start)
                self.db_manager.touch_event(session, existing.local_id)
                owner_id = existing.local_id

        self.outbox.enqueue(owner_id, RecurFuturePayload(
            google_event_id=series_id,
            split_start_utc=split_start,
            send_updates=send_updates,
        ))
        return True
