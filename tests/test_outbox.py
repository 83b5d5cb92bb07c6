"""Tests for the outbox worker."""

from datetime import datetime, timedelta

import pytest
import pytz

from shiftcal_sync.database import DatabaseManager, to_db_datetime
from shiftcal_sync.models import (
    CreatePayload,
    DeletePayload,
    EventInput,
    OutboxStatus,
    RecurAllPayload,
    RecurFuturePayload,
    RemoteEventSnapshot,
    SyncConfiguration,
    SyncState,
)
from shiftcal_sync.outbox import (
    CANCELLED_BY_USER,
    LOCAL_EVENT_DELETED,
    REMOTE_IS_NEWER,
    SUPERSEDED_BY_DELETE,
    ErrorKind,
    OutboxWorker,
    classify_error,
)
from shiftcal_sync.services import GoogleCalendarService, InvalidOperationError

from fake_google import FakeCalendarApi, http_error, make_settings, timed_item

START = datetime(2024, 5, 6, 0, 0, tzinfo=pytz.UTC)


@pytest.fixture
def api():
    return FakeCalendarApi()


def build_worker(tmp_path, api, **overrides):
    settings = make_settings(tmp_path, **overrides)
    db = DatabaseManager(settings)
    db.init_db()
    with db.get_session() as session:
        db.set_selected_calendar(session, 'cal-1', 'Work')
    service = GoogleCalendarService(settings, db_manager=db)
    service.service = api
    return OutboxWorker(settings, db, service)


@pytest.fixture
def worker(tmp_path, api):
    return build_worker(tmp_path, api)


def new_event(worker, **kwargs):
    values = dict(summary='Shift', start_at_utc=START, end_at_utc=START + timedelta(hours=8))
    values.update(kwargs)
    with worker.db_manager.get_session() as session:
        return worker.db_manager.save_event(session, EventInput(**values))


def job_row(worker, job_id):
    with worker.db_manager.get_session() as session:
        job = worker.db_manager.get_outbox_job(session, job_id)
        return worker.db_manager.to_outbox_job(session, job)


def event_row(worker, local_id):
    with worker.db_manager.get_session() as session:
        return worker.db_manager.get_event(session, local_id)


def test_classify_error():
    assert classify_error(http_error(429)) == ErrorKind.RATE_LIMITED
    assert classify_error(http_error(403)) == ErrorKind.PERMANENT
    assert classify_error(http_error(404)) == ErrorKind.PERMANENT
    assert classify_error(InvalidOperationError('nope')) == ErrorKind.PERMANENT
    assert classify_error(http_error(503)) == ErrorKind.TRANSIENT
    assert classify_error(ConnectionError('reset')) == ErrorKind.TRANSIENT


def test_backoff_schedule(worker):
    now = datetime(2024, 1, 1, tzinfo=pytz.UTC)
    first = worker.next_retry_at(1, now)
    assert timedelta(seconds=60) <= first - now <= timedelta(seconds=72)
    last = worker.next_retry_at(10, now)
    assert timedelta(seconds=3600) <= last - now <= timedelta(seconds=4320)


class TestEnqueue:
    """Coalescing of pending jobs."""

    def test_edit_rides_on_pending_create(self, worker):
        event = new_event(worker)
        create_id = worker.enqueue(event.local_id, CreatePayload())
        assert worker.enqueue(event.local_id, RecurAllPayload()) == create_id
        assert worker.count_active() == 1

    def test_whole_event_edits_merge(self, worker):
        event = new_event(worker, google_event_id='g1')
        first = worker.enqueue(event.local_id, RecurAllPayload(google_event_id='g1'))
        second = worker.enqueue(event.local_id, RecurAllPayload(send_updates='all'))
        assert first == second
        payload = job_row(worker, first).payload
        assert payload.google_event_id == 'g1'
        assert payload.send_updates.value == 'all'

    def test_delete_drops_pending_create(self, worker):
        event = new_event(worker)
        create_id = worker.enqueue(event.local_id, CreatePayload())
        with worker.db_manager.get_session() as session:
            worker.db_manager.mark_deleted_locally(session, event.local_id)

        worker.enqueue(event.local_id, DeletePayload())

        job = job_row(worker, create_id)
        assert job.status == OutboxStatus.CANCELLED
        assert job.last_error == SUPERSEDED_BY_DELETE
        assert worker.count_active() == 0
        assert event_row(worker, event.local_id).sync_state == SyncState.CLEAN

    def test_delete_replaces_pending_edit(self, worker):
        event = new_event(worker, google_event_id='g1')
        job_id = worker.enqueue(event.local_id, RecurAllPayload(google_event_id='g1'))
        assert worker.enqueue(event.local_id, DeletePayload(google_event_id='g1')) == job_id
        job = job_row(worker, job_id)
        assert job.operation.value == 'DELETE'
        assert job.payload.google_event_id == 'g1'

    def test_dependent_jobs_are_never_merged(self, worker):
        event = new_event(worker)
        first = worker.enqueue(event.local_id, CreatePayload())
        second = worker.enqueue(event.local_id, RecurAllPayload(), depends_on_outbox_id=first)
        assert first != second
        assert worker.count_active() == 2


class TestProcessing:
    """Pushing due jobs."""

    @pytest.mark.asyncio
    async def test_create_adopts_google_id(self, worker, api):
        event = new_event(worker)
        job_id = worker.enqueue(event.local_id, CreatePayload())

        assert await worker.process_now() == 1

        assert job_row(worker, job_id).status == OutboxStatus.DONE
        stored = event_row(worker, event.local_id)
        assert stored.google_event_id == 'g1'
        assert stored.sync_state == SyncState.CLEAN
        assert api.items['g1']['summary'] == 'Shift'

    @pytest.mark.asyncio
    async def test_nothing_runs_without_calendar(self, tmp_path, api):
        settings = make_settings(tmp_path)
        db = DatabaseManager(settings)
        db.init_db()
        service = GoogleCalendarService(settings, db_manager=db)
        service.service = api
        worker = OutboxWorker(settings, db, service)
        event = new_event(worker)
        job_id = worker.enqueue(event.local_id, CreatePayload())

        assert await worker.process_now() == 0
        assert job_row(worker, job_id).status == OutboxStatus.QUEUED
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_later(self, worker, api):
        event = new_event(worker)
        job_id = worker.enqueue(event.local_id, CreatePayload())
        api.fail('insert', http_error(503, 'Backend Error'))

        assert await worker.process_now() == 0

        job = job_row(worker, job_id)
        assert job.status == OutboxStatus.FAILED
        assert job.attempts == 1
        assert job.next_retry_at_utc > datetime.now(pytz.UTC) + timedelta(seconds=50)
        assert event_row(worker, event.local_id).sync_state == SyncState.ERROR

        # Not due yet
        assert await worker.process_now() == 0
        assert len(api.calls_of('insert')) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_stops_the_pass(self, worker, api):
        first = new_event(worker, summary='First')
        second = new_event(worker, summary='Second')
        jobs = [
            worker.enqueue(first.local_id, CreatePayload()),
            worker.enqueue(second.local_id, CreatePayload()),
        ]
        api.fail('insert', http_error(429, 'Rate Limit Exceeded'))

        assert await worker.process_now() == 0

        assert len(api.calls_of('insert')) == 1
        statuses = sorted(job_row(worker, job_id).status.value for job_id in jobs)
        assert statuses == ['FAILED', 'QUEUED']

    @pytest.mark.asyncio
    async def test_attempt_limit_cancels(self, tmp_path, api):
        worker = build_worker(tmp_path, api, sync_config=SyncConfiguration(outbox_max_attempts=1))
        event = new_event(worker)
        job_id = worker.enqueue(event.local_id, CreatePayload())
        api.fail('insert', http_error(500))

        await worker.process_now()

        job = job_row(worker, job_id)
        assert job.status == OutboxStatus.CANCELLED
        assert 'after 1 attempts' in job.last_error
        assert event_row(worker, event.local_id).sync_state == SyncState.ERROR

    @pytest.mark.asyncio
    async def test_permanent_failure_cancels_dependents(self, worker, api):
        api.items['m1'] = timed_item('m1', START, recurrence=['RRULE:FREQ=DAILY'])
        with worker.db_manager.get_session() as session:
            worker.db_manager.upsert_remote_event(session, RemoteEventSnapshot(
                google_event_id='m1',
                summary='Series',
                start_at_utc=START,
                end_at_utc=START + timedelta(hours=1),
                recurrence_rule='FREQ=DAILY',
                google_updated_at_utc=START,
            ))
            master = worker.db_manager.get_event_by_google_id(session, 'm1')
            worker.db_manager.touch_event(session, master.local_id)
        follow_up = new_event(worker, summary='New series', recurrence_rule='FREQ=DAILY')

        split_job = worker.enqueue(
            master.local_id,
            RecurFuturePayload(google_event_id='m1', split_start_utc=START + timedelta(days=3)),
        )
        create_job = worker.enqueue(follow_up.local_id, CreatePayload(), depends_on_outbox_id=split_job)
        api.fail('patch', http_error(403, 'Forbidden'))

        await worker.process_now()

        assert job_row(worker, split_job).status == OutboxStatus.CANCELLED
        dependent = job_row(worker, create_job)
        assert dependent.status == OutboxStatus.CANCELLED
        assert split_job in dependent.last_error
        assert event_row(worker, master.local_id).sync_state == SyncState.ERROR
        with worker.db_manager.get_session() as session:
            assert worker.db_manager.is_event_deleted(session, follow_up.local_id)
        assert api.calls_of('insert') == []

    @pytest.mark.asyncio
    async def test_remote_newer_cancels_and_adopts_remote(self, worker, api):
        with worker.db_manager.get_session() as session:
            worker.db_manager.upsert_remote_event(session, RemoteEventSnapshot(
                google_event_id='g1',
                summary='Original',
                start_at_utc=START,
                end_at_utc=START + timedelta(hours=1),
                google_updated_at_utc=START,
            ))
            local = worker.db_manager.get_event_by_google_id(session, 'g1')
        new_event(worker, local_id=local.local_id, summary='Local edit')
        job_id = worker.enqueue(local.local_id, RecurAllPayload(google_event_id='g1'))
        api.items['g1'] = timed_item('g1', START, summary='Remote edit', updated='2099-01-01T00:00:00.000Z')

        assert await worker.process_now() == 0

        job = job_row(worker, job_id)
        assert job.status == OutboxStatus.CANCELLED
        assert job.last_error == REMOTE_IS_NEWER
        assert event_row(worker, local.local_id).summary == 'Remote edit'
        assert api.calls_of('patch') == []

    @pytest.mark.asyncio
    async def test_pull_keeps_edit_waiting_for_retry(self, worker, api):
        with worker.db_manager.get_session() as session:
            worker.db_manager.upsert_remote_event(session, RemoteEventSnapshot(
                google_event_id='g1',
                summary='Old',
                start_at_utc=START,
                end_at_utc=START + timedelta(hours=1),
                google_updated_at_utc=START,
            ))
            local = worker.db_manager.get_event_by_google_id(session, 'g1')
        new_event(worker, local_id=local.local_id, summary='New')
        job_id = worker.enqueue(local.local_id, RecurAllPayload(google_event_id='g1'))
        api.items['g1'] = timed_item('g1', START, summary='Old', updated='2024-05-06T00:00:00.000Z')
        api.fail('patch', http_error(503, 'Backend Error'))

        assert await worker.process_now() == 0
        assert event_row(worker, local.local_id).sync_state == SyncState.ERROR

        with worker.db_manager.get_session() as session:
            applied = worker.db_manager.upsert_remote_event(session, RemoteEventSnapshot(
                google_event_id='g1',
                summary='Old',
                start_at_utc=START,
                end_at_utc=START + timedelta(hours=1),
                google_updated_at_utc=START,
            ))
            job = worker.db_manager.get_outbox_job(session, job_id)
            job.next_retry_at_utc = to_db_datetime(datetime.now(pytz.UTC) - timedelta(seconds=1))
            session.commit()
        assert not applied
        assert event_row(worker, local.local_id).summary == 'New'

        assert await worker.process_now() == 1

        assert job_row(worker, job_id).status == OutboxStatus.DONE
        assert api.items['g1']['summary'] == 'New'
        assert event_row(worker, local.local_id).sync_state == SyncState.CLEAN

    @pytest.mark.asyncio
    async def test_deleted_event_cancels_edit(self, worker, api):
        event = new_event(worker, google_event_id='g1')
        job_id = worker.enqueue(event.local_id, RecurAllPayload(google_event_id='g1'))
        with worker.db_manager.get_session() as session:
            worker.db_manager.mark_deleted_locally(session, event.local_id)

        await worker.process_now()

        assert job_row(worker, job_id).last_error == LOCAL_EVENT_DELETED
        assert api.calls_of('patch') == []

    @pytest.mark.asyncio
    async def test_stuck_running_job_is_recovered(self, worker, api):
        event = new_event(worker)
        job_id = worker.enqueue(event.local_id, CreatePayload())
        with worker.db_manager.get_session() as session:
            job = worker.db_manager.get_outbox_job(session, job_id)
            job.status = OutboxStatus.RUNNING.value
            job.updated_at = to_db_datetime(datetime.now(pytz.UTC) - timedelta(minutes=10))
            session.commit()

        assert await worker.process_now() == 1

        job = job_row(worker, job_id)
        assert job.status == OutboxStatus.DONE
        assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_reentrant_call_only_requests_flush(self, worker):
        worker.is_processing = True
        assert await worker.process_now() == 0
        assert worker.pending_flush


class TestCancel:
    """Manual cancellation."""

    def test_cancel_queued_job(self, worker):
        event = new_event(worker, google_event_id='g1')
        job_id = worker.enqueue(event.local_id, RecurAllPayload(google_event_id='g1'))

        assert worker.cancel_outbox_job(job_id)

        job = job_row(worker, job_id)
        assert job.status == OutboxStatus.CANCELLED
        assert job.last_error == CANCELLED_BY_USER
        assert event_row(worker, event.local_id).sync_state == SyncState.CLEAN
        assert not worker.cancel_outbox_job(job_id)

    def test_cancel_unknown_job(self, worker):
        assert not worker.cancel_outbox_job('missing')

    def test_list_jobs(self, worker):
        event = new_event(worker)
        worker.enqueue(event.local_id, CreatePayload())
        jobs = worker.list_jobs()
        assert [job.operation.value for job in jobs] == ['CREATE']
