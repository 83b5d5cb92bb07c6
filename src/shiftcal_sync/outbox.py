"""Outbox worker: pushes queued local mutations to Google in order."""

import logging
import random
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Set

from googleapiclient.errors import HttpError
from sqlalchemy.orm import Session

from .config import Settings
from .database import DatabaseManager, OutboxJobDB, to_db_datetime, utcnow
from .models import (
    OutboxJob,
    OutboxOperation,
    OutboxPayload,
    OutboxStatus,
    SyncState,
    dump_outbox_payload,
    parse_outbox_payload,
)
from .services.base import InvalidOperationError, http_status
from .services.google import GoogleCalendarService

logger = logging.getLogger(__name__)

LOCAL_EVENT_MISSING = "Cancelled: local event not found."
LOCAL_EVENT_DELETED = "Cancelled: local event was deleted."
REMOTE_IS_NEWER = "Cancelled: remote version is newer or equal."
CANCELLED_BY_USER = "Cancelled by user."
SUPERSEDED_BY_DELETE = "Cancelled: event was deleted before it was pushed."


class ErrorKind(str, Enum):
    """How a failed push is handled."""
    TRANSIENT = "TRANSIENT"
    RATE_LIMITED = "RATE_LIMITED"
    PERMANENT = "PERMANENT"


def classify_error(error: Exception) -> ErrorKind:
    if isinstance(error, InvalidOperationError):
        return ErrorKind.PERMANENT
    status = http_status(error)
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (401, 403, 404):
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


class OutboxWorker:
    """Drains the outbox against the selected Google calendar.

    Jobs run one at a time in due order. A job that depends on another only
    runs once that one is DONE, and is cancelled with it.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        google_service: GoogleCalendarService
    ):
        self.settings = settings
        self.db_manager = db_manager
        self.google_service = google_service
        self.is_processing = False
        self.pending_flush = False
        self.logger = logger.getChild('worker')

    @property
    def config(self):
        return self.settings.sync_config

    def next_retry_at(self, attempts: int, now: Optional[datetime] = None) -> datetime:
        """Backoff for the given attempt count, plus up to ``jitter_ratio`` extra."""
        now = now or utcnow()
        delays = self.config.outbox_retry_delays_seconds
        base = delays[min(max(attempts, 1) - 1, len(delays) - 1)]
        jitter = random.uniform(0, base * self.config.outbox_retry_jitter_ratio)
        return now + timedelta(seconds=base + jitter)

    def calendar_selected(self, session: Session) -> bool:
        selected = self.db_manager.get_selected_calendar(session)
        return bool(selected.id or self.settings.google_calendar_id)

    # Enqueueing

    def enqueue(
        self,
        event_local_id: Optional[str],
        payload: OutboxPayload,
        depends_on_outbox_id: Optional[str] = None
    ) -> str:
        """Queue a mutation and mark its event PENDING.

        A second edit of an event whose earlier job has not started yet is
        folded into that job where the result is the same: whole-event edits
        merge, edits of a not-yet-created event ride on its CREATE, and a
        delete replaces a pending edit (or drops a pending CREATE entirely).

        Returns:
            ID of the job that carries the mutation
        """
        with self.db_manager.get_session() as session:
            existing = None
            if event_local_id and depends_on_outbox_id is None:
                existing = self.db_manager.find_pending_job(session, event_local_id)

            if existing is not None:
                job_id = self._coalesce(session, existing, payload)
                if job_id is not None:
                    return job_id

            job = self.db_manager.create_outbox_job(session, event_local_id, payload, depends_on_outbox_id)
            job_id = str(job.id)
            if event_local_id:
                self.db_manager.update_event_sync_state(session, event_local_id, SyncState.PENDING)
            self.logger.debug(f"Enqueued {payload.operation} job {job_id} for event {event_local_id}")
            return job_id

    def _coalesce(self, session: Session, existing: OutboxJobDB, payload: OutboxPayload) -> Optional[str]:
        """Fold ``payload`` into ``existing`` if possible; returns the surviving job id."""
        operation = OutboxOperation(payload.operation)
        existing_operation = OutboxOperation(existing.operation)
        job_id = str(existing.id)
        event_local_id = str(existing.event_local_id)

        if existing_operation == OutboxOperation.RECUR_ALL and operation == OutboxOperation.RECUR_ALL:
            merged = parse_outbox_payload(existing.payload_json).model_dump(mode='json')
            merged.update(payload.model_dump(mode='json', exclude_unset=True))
            self._requeue(session, existing, parse_outbox_payload(merged))
        elif existing_operation == OutboxOperation.CREATE and operation in (
            OutboxOperation.RECUR_ALL,
            OutboxOperation.RECUR_THIS,
        ):
            # The CREATE pushes whatever the local row holds when it runs.
            self._requeue(session, existing, parse_outbox_payload(existing.payload_json))
        elif existing_operation == OutboxOperation.CREATE and operation == OutboxOperation.DELETE:
            self.cancel_job(session, job_id, SUPERSEDED_BY_DELETE)
            self.db_manager.discard_event(session, event_local_id)
            return job_id
        elif existing_operation in (
            OutboxOperation.RECUR_ALL,
            OutboxOperation.RECUR_THIS,
        ) and operation == OutboxOperation.DELETE:
            existing.operation = payload.operation
            self._requeue(session, existing, payload)
        else:
            return None

        self.db_manager.update_event_sync_state(session, event_local_id, SyncState.PENDING)
        self.logger.debug(f"Merged {operation.value} into {existing_operation.value} job {job_id}")
        return job_id

    def _requeue(self, session: Session, job: OutboxJobDB, payload: OutboxPayload) -> None:
        job.payload_json = dump_outbox_payload(payload)
        job.status = OutboxStatus.QUEUED.value
        job.next_retry_at_utc = to_db_datetime(utcnow())
        job.last_error = None
        session.commit()

    # Processing

    async def process_now(self) -> int:
        """Push every due job; concurrent calls only request another pass.

        Returns:
            Number of jobs pushed successfully
        """
        if self.is_processing:
            self.pending_flush = True
            return 0

        self.is_processing = True
        processed = 0
        try:
            while True:
                self.pending_flush = False
                processed += await self._process_due_jobs()
                if not self.pending_flush:
                    break
        finally:
            self.is_processing = False
        return processed

    async def _process_due_jobs(self) -> int:
        with self.db_manager.get_session() as session:
            if not self.calendar_selected(session):
                self.logger.debug("No calendar selected; outbox left untouched")
                return 0
            cutoff = utcnow() - timedelta(seconds=self.config.outbox_running_timeout_seconds)
            recovered = self.db_manager.recover_stuck_jobs(session, cutoff)
            if recovered:
                self.logger.warning(f"Recovered {recovered} outbox jobs stuck in RUNNING")

        processed = 0
        while True:
            with self.db_manager.get_session() as session:
                job = self.db_manager.find_next_due_job(session)
                if job is None:
                    break
                job_id = str(job.id)
                job.status = OutboxStatus.RUNNING.value
                session.commit()

            try:
                if await self._process_job(job_id):
                    processed += 1
            except Exception as e:
                if self._record_failure(job_id, e) == ErrorKind.RATE_LIMITED:
                    self.logger.warning("Google rate limit reached; stopping outbox processing")
                    break

        if processed:
            self.logger.info(f"Pushed {processed} outbox jobs")
        return processed

    async def _process_job(self, job_id: str) -> bool:
        with self.db_manager.get_session() as session:
            job = self.db_manager.get_outbox_job(session, job_id)
            if job is None:
                return False
            payload = parse_outbox_payload(job.payload_json)
            operation = OutboxOperation(payload.operation)
            event_local_id = str(job.event_local_id) if job.event_local_id else None
            event = self.db_manager.get_event(session, event_local_id) if event_local_id else None
            event_deleted = event_local_id is not None and self.db_manager.is_event_deleted(session, event_local_id)

            if operation != OutboxOperation.DELETE:
                if event is None:
                    self.cancel_job(session, job_id, LOCAL_EVENT_MISSING)
                    return False
                if event_deleted and operation != OutboxOperation.RECUR_FUTURE:
                    self.cancel_job(session, job_id, LOCAL_EVENT_DELETED)
                    return False

        remote_id = getattr(payload, 'google_event_id', None)
        if not remote_id and operation == OutboxOperation.RECUR_ALL and event is not None:
            remote_id = event.google_event_id
        if remote_id and event is not None and operation != OutboxOperation.CREATE:
            remote = await self.google_service.fetch_remote_event(remote_id)
            if remote is not None and remote.google_updated_at_utc >= event.local_edited_at_utc:
                with self.db_manager.get_session() as session:
                    self.db_manager.upsert_remote_event(session, remote)
                    self.cancel_job(session, job_id, REMOTE_IS_NEWER)
                self.logger.info(f"Skipped job {job_id}: remote {remote_id} changed after the local edit")
                return False

        result = await self.google_service.push_local_change(payload, event)

        with self.db_manager.get_session() as session:
            job = self.db_manager.get_outbox_job(session, job_id)
            job.status = OutboxStatus.DONE.value
            job.last_error = None
            session.commit()
            if event is not None:
                adopted_id = result.google_event_id
                if operation in (OutboxOperation.DELETE, OutboxOperation.RECUR_FUTURE) \
                        or adopted_id == event.recurring_event_id:
                    adopted_id = None
                self.db_manager.complete_event_push(
                    session,
                    event.local_id,
                    google_event_id=adopted_id,
                    google_updated_at_utc=result.google_updated_at_utc,
                )
        self.logger.debug(f"Job {job_id} ({operation.value}) done")
        return True

    def _record_failure(self, job_id: str, error: Exception) -> ErrorKind:
        kind = classify_error(error)
        message = str(error) or error.__class__.__name__
        max_attempts = self.config.outbox_max_attempts

        with self.db_manager.get_session() as session:
            job = self.db_manager.get_outbox_job(session, job_id)
            if job is None:
                return kind
            attempts = job.attempts + 1

            if kind == ErrorKind.PERMANENT or attempts >= max_attempts:
                if kind == ErrorKind.PERMANENT:
                    reason = f"Permanently failed ({kind.value}): {message}"
                else:
                    reason = f"Permanently failed after {max_attempts} attempts: {message}"
                job.attempts = attempts
                session.commit()
                self.cancel_job(session, job_id, reason, SyncState.ERROR)
                self.logger.error(f"Outbox job {job_id} cancelled: {reason}")
                return kind

            job.status = OutboxStatus.FAILED.value
            job.attempts = attempts
            job.next_retry_at_utc = to_db_datetime(self.next_retry_at(attempts))
            job.last_error = message
            session.commit()
            if job.event_local_id:
                self.db_manager.update_event_sync_state(session, str(job.event_local_id), SyncState.ERROR)

        level = logging.WARNING if isinstance(error, HttpError) else logging.ERROR
        self.logger.log(level, f"Outbox job {job_id} failed (attempt {attempts}, {kind.value}): {message}")
        return kind

    # Cancellation

    def cancel_job(
        self,
        session: Session,
        job_id: str,
        reason: str,
        event_state: SyncState = SyncState.CLEAN,
        visited: Optional[Set[str]] = None
    ) -> None:
        """Cancel a job and, transitively, every active job depending on it.

        The job's event gets ``event_state`` once it has no other active
        job. A dependent CREATE drops its never-pushed event; other
        dependents leave their event in ERROR.
        """
        visited = visited if visited is not None else set()
        if job_id in visited:
            return
        visited.add(job_id)

        job = self.db_manager.get_outbox_job(session, job_id)
        if job is None:
            return
        job.status = OutboxStatus.CANCELLED.value
        job.last_error = reason
        session.commit()

        for dependent in self.db_manager.find_dependent_jobs(session, job_id):
            dependent_id = str(dependent.id)
            if dependent.operation == OutboxOperation.CREATE.value and dependent.event_local_id:
                self.db_manager.discard_event(session, str(dependent.event_local_id))
            self.cancel_job(
                session,
                dependent_id,
                f"Cancelled: dependency {job_id} was cancelled.",
                SyncState.ERROR,
                visited,
            )

        if job.event_local_id:
            event_local_id = str(job.event_local_id)
            if self.db_manager.is_event_deleted(session, event_local_id) and event_state == SyncState.ERROR:
                event_state = SyncState.CLEAN
            if self.db_manager.count_active_jobs(session, event_local_id) == 0:
                self.db_manager.update_event_sync_state(session, event_local_id, event_state)

    def cancel_outbox_job(self, job_id: str) -> bool:
        """Cancel a queued or failed job on request; DONE, CANCELLED and RUNNING jobs are left alone."""
        with self.db_manager.get_session() as session:
            job = self.db_manager.get_outbox_job(session, job_id)
            if job is None or job.status in (
                OutboxStatus.DONE.value,
                OutboxStatus.CANCELLED.value,
                OutboxStatus.RUNNING.value,
            ):
                return False
            self.cancel_job(session, job_id, CANCELLED_BY_USER)
        self.logger.info(f"Outbox job {job_id} cancelled by user")
        return True

    # Queries

    def count_active(self) -> int:
        with self.db_manager.get_session() as session:
            return self.db_manager.count_active_jobs(session)

    def list_jobs(self, limit: int = 80, include_completed: bool = False) -> List[OutboxJob]:
        with self.db_manager.get_session() as session:
            return self.db_manager.list_outbox_jobs(session, limit=limit, include_completed=include_completed)
