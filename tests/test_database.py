"""Tests for the local store."""

from datetime import datetime, timedelta

import pytest
import pytz

from shiftcal_sync.database import DatabaseManager
from shiftcal_sync.models import (
    CreatePayload,
    EventInput,
    OutboxStatus,
    RecurAllPayload,
    RemoteEventSnapshot,
    SyncState,
)

from fake_google import make_settings

START = datetime(2024, 5, 6, 0, 0, tzinfo=pytz.UTC)


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(make_settings(tmp_path))
    manager.init_db()
    return manager


def snapshot(google_event_id='g1', updated=START, **kwargs):
    values = dict(
        google_event_id=google_event_id,
        summary='Remote',
        start_at_utc=START,
        end_at_utc=START + timedelta(hours=1),
        google_updated_at_utc=updated,
    )
    values.update(kwargs)
    return RemoteEventSnapshot(**values)


def event_input(**kwargs):
    values = dict(summary='Local', start_at_utc=START, end_at_utc=START + timedelta(hours=1))
    values.update(kwargs)
    return EventInput(**values)


class TestSettingsRow:
    """Tests for the single settings row."""

    def test_default_window(self, db):
        now = datetime(2024, 6, 15, tzinfo=pytz.UTC)
        start, end = db.default_sync_window(now)
        assert start == datetime(2019, 6, 15, tzinfo=pytz.UTC)
        assert end == datetime(2025, 6, 15, tzinfo=pytz.UTC)

    def test_sync_token_round_trip(self, db):
        with db.get_session() as session:
            assert db.get_sync_token(session) is None
            db.set_sync_token(session, 'token-1')
        with db.get_session() as session:
            assert db.get_sync_token(session) == 'token-1'

    def test_switching_calendar_resets_local_state(self, db):
        with db.get_session() as session:
            assert db.set_selected_calendar(session, 'cal-1', 'Work')
            event = db.save_event(session, event_input())
            db.create_outbox_job(session, event.local_id, CreatePayload())
            db.set_sync_token(session, 'token-1')

            assert not db.set_selected_calendar(session, 'cal-1', 'Work renamed')
            assert db.get_sync_token(session) == 'token-1'

            assert db.set_selected_calendar(session, 'cal-2', 'Home')
            assert db.get_sync_token(session) is None
            assert db.list_events(session) == []
            assert db.count_active_jobs(session) == 0
            assert db.get_selected_calendar(session).name == 'Home'


class TestEvents:
    """Tests for local event rows."""

    def test_save_event_is_pending_and_fixes_end(self, db):
        with db.get_session() as session:
            event = db.save_event(session, event_input(end_at_utc=START))
        assert event.sync_state == SyncState.PENDING
        assert event.end_at_utc == START + timedelta(hours=1)

    def test_update_keeps_linkage_unless_given(self, db):
        with db.get_session() as session:
            event = db.save_event(session, event_input(google_event_id='g1'))
            updated = db.save_event(session, event_input(local_id=event.local_id, summary='Renamed'))
            assert updated.google_event_id == 'g1'
            assert updated.summary == 'Renamed'

            cleared = db.save_event(session, event_input(local_id=event.local_id, google_event_id=None))
            assert cleared.google_event_id is None

    def test_list_events_filters_range_and_deleted(self, db):
        with db.get_session() as session:
            first = db.save_event(session, event_input(summary='First'))
            db.save_event(session, event_input(summary='Later', start_at_utc=START + timedelta(days=10),
                                               end_at_utc=START + timedelta(days=10, hours=1)))
            gone = db.save_event(session, event_input(summary='Gone'))
            db.mark_deleted_locally(session, gone.local_id)

            events = db.list_events(session, START - timedelta(days=1), START + timedelta(days=1))
            assert [e.summary for e in events] == ['First']
            assert db.get_event(session, gone.local_id) is not None
            assert db.is_event_deleted(session, gone.local_id)
            assert db.get_event(session, 'not-a-uuid') is None
            assert db.get_event(session, first.local_id).summary == 'First'

    def test_future_split_bounds_source_and_copies_rule(self, db):
        with db.get_session() as session:
            master = db.save_event(session, event_input(recurrence_rule='FREQ=DAILY'))
            split = START + timedelta(days=3)
            source, future = db.apply_future_split_edit(session, event_input(
                local_id=master.local_id, summary='New', start_at_utc=split, end_at_utc=split + timedelta(hours=1)
            ))
        assert source.recurrence_rule == 'FREQ=DAILY;UNTIL=20240508T235959Z'
        assert future.recurrence_rule == 'FREQ=DAILY'
        assert future.local_id != source.local_id
        assert future.google_event_id is None

    def test_future_split_requires_series(self, db):
        with db.get_session() as session:
            single = db.save_event(session, event_input())
            with pytest.raises(ValueError):
                db.apply_future_split_edit(session, event_input(local_id=single.local_id))

    def test_series_instances_deleted_since(self, db):
        with db.get_session() as session:
            for day in range(3):
                db.upsert_remote_event(session, snapshot(
                    f'm1_{day}',
                    start_at_utc=START + timedelta(days=day),
                    end_at_utc=START + timedelta(days=day, hours=1),
                    recurring_event_id='m1',
                    original_start_time_utc=START + timedelta(days=day),
                ))
            count = db.mark_series_instances_deleted(session, 'm1', since=START + timedelta(days=1))
            assert count == 2
            assert [e.google_event_id for e in db.list_events(session)] == ['m1_0']


class TestRemoteUpsert:
    """Tests for applying pulled snapshots."""

    def test_insert_then_update(self, db):
        with db.get_session() as session:
            assert db.upsert_remote_event(session, snapshot())
            assert db.upsert_remote_event(session, snapshot(summary='Changed', updated=START + timedelta(hours=1)))
            event = db.get_event_by_google_id(session, 'g1')
        assert event.summary == 'Changed'
        assert event.sync_state == SyncState.CLEAN

    def test_tombstone_marks_deleted(self, db):
        with db.get_session() as session:
            db.upsert_remote_event(session, snapshot())
            db.upsert_remote_event(session, snapshot(is_deleted=True))
            assert db.get_event_by_google_id(session, 'g1') is None

    def test_newer_pending_local_edit_wins(self, db):
        with db.get_session() as session:
            db.upsert_remote_event(session, snapshot())
            local = db.get_event_by_google_id(session, 'g1')
            db.save_event(session, event_input(local_id=local.local_id, summary='Local edit'))

            applied = db.upsert_remote_event(session, snapshot(summary='Old remote', updated=START))

            assert not applied
            assert db.get_event(session, local.local_id).summary == 'Local edit'

    def test_upsert_many_counts_applied(self, db):
        with db.get_session() as session:
            assert db.upsert_remote_events(session, [snapshot('a'), snapshot('b')]) == 2


class TestPushCompletion:
    """Tests for recording successful pushes."""

    def test_adopts_remote_id_and_drops_duplicate(self, db):
        with db.get_session() as session:
            db.upsert_remote_event(session, snapshot('g9'))
            pulled = db.get_event_by_google_id(session, 'g9')
            local = db.save_event(session, event_input())

            db.complete_event_push(session, local.local_id, 'g9', START)

            event = db.get_event(session, local.local_id)
            assert event.google_event_id == 'g9'
            assert event.sync_state == SyncState.CLEAN
            assert db.is_event_deleted(session, pulled.local_id)
            assert db.get_event(session, pulled.local_id).google_event_id is None

    def test_stays_pending_while_jobs_remain(self, db):
        with db.get_session() as session:
            local = db.save_event(session, event_input())
            db.create_outbox_job(session, local.local_id, RecurAllPayload())
            db.complete_event_push(session, local.local_id, 'g1', START)
            assert db.get_event(session, local.local_id).sync_state == SyncState.PENDING

    def test_existing_remote_id_is_kept(self, db):
        with db.get_session() as session:
            local = db.save_event(session, event_input(google_event_id='g1'))
            db.complete_event_push(session, local.local_id, 'g2', START)
            assert db.get_event(session, local.local_id).google_event_id == 'g1'


class TestOutboxRows:
    """Tests for outbox queries."""

    def test_due_job_waits_for_dependency(self, db):
        with db.get_session() as session:
            event = db.save_event(session, event_input())
            first = db.create_outbox_job(session, event.local_id, RecurAllPayload())
            second = db.create_outbox_job(session, event.local_id, CreatePayload(), depends_on_outbox_id=str(first.id))
            later = datetime.now(pytz.UTC) + timedelta(seconds=5)

            assert db.find_next_due_job(session, later).id == first.id
            first.status = OutboxStatus.RUNNING.value
            session.commit()
            assert db.find_next_due_job(session, later) is None

            first.status = OutboxStatus.DONE.value
            session.commit()
            assert db.find_next_due_job(session, later).id == second.id
            assert [job.id for job in db.find_dependent_jobs(session, str(first.id))] == [second.id]

    def test_listing_includes_event_summary(self, db):
        with db.get_session() as session:
            event = db.save_event(session, event_input(summary='Night shift'))
            db.create_outbox_job(session, event.local_id, CreatePayload())
            jobs = db.list_outbox_jobs(session)
        assert len(jobs) == 1
        assert jobs[0].event_summary == 'Night shift'
        assert jobs[0].status == OutboxStatus.QUEUED

    def test_recover_stuck_jobs(self, db):
        with db.get_session() as session:
            event = db.save_event(session, event_input())
            job = db.create_outbox_job(session, event.local_id, CreatePayload())
            job.status = OutboxStatus.RUNNING.value
            session.commit()

            assert db.recover_stuck_jobs(session, datetime.now(pytz.UTC) + timedelta(minutes=1)) == 1
            session.refresh(job)
            assert job.status == OutboxStatus.FAILED.value
            assert job.attempts == 1
