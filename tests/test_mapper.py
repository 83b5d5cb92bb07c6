"""Tests for Google event mapping."""

from datetime import datetime

import pytest
import pytz

from shiftcal_sync.mapper import (
    EVENT_TYPE_PRIVATE_KEY,
    NO_TITLE,
    align_time_shape_with_remote,
    from_google_event_datetime,
    is_whole_day,
    to_google_event_request,
    to_remote_snapshot,
)
from shiftcal_sync.models import CalendarEvent

SEOUL = pytz.timezone('Asia/Seoul')


def make_event(start, end, **kwargs):
    return CalendarEvent(
        local_id=kwargs.pop('local_id', 'local-1'),
        summary=kwargs.pop('summary', 'Shift'),
        start_at_utc=start,
        end_at_utc=end,
        time_zone=kwargs.pop('time_zone', 'Asia/Seoul'),
        **kwargs
    )


class TestFromGoogleEventDatetime:

    def test_datetime_keeps_offset_and_zone_label(self):
        utc, label = from_google_event_datetime({'dateTime': '2024-05-06T09:00:00+09:00', 'timeZone': 'Asia/Seoul'})
        assert utc == datetime(2024, 5, 6, 0, 0, tzinfo=pytz.UTC)
        assert label == 'Asia/Seoul'

    def test_date_is_local_midnight(self, monkeypatch):
        monkeypatch.delenv('TZ', raising=False)
        utc, label = from_google_event_datetime({'date': '2024-05-06'})
        assert utc == datetime(2024, 5, 5, 15, 0, tzinfo=pytz.UTC)
        assert label == 'Asia/Seoul'

    def test_malformed_values(self):
        assert from_google_event_datetime(None) is None
        assert from_google_event_datetime({}) is None
        assert from_google_event_datetime({'dateTime': 'yesterday'}) is None
        assert from_google_event_datetime({'date': '2024-05-06', 'timeZone': 'Mars/Olympus'}) is None


class TestToRemoteSnapshot:

    def test_event_type_from_private_property(self):
        snapshot = to_remote_snapshot({
            'id': 'g1',
            'summary': '야간 근무',
            'start': {'dateTime': '2024-05-06T22:00:00+09:00'},
            'end': {'dateTime': '2024-05-07T07:00:00+09:00'},
            'updated': '2024-05-01T00:00:00.000Z',
            'extendedProperties': {'private': {EVENT_TYPE_PRIVATE_KEY: '근무'}},
            'attendees': [{'email': 'a@example.com'}, {'displayName': 'no email'}],
        })
        assert snapshot.event_type == '근무'
        assert snapshot.summary == '야간 근무'
        assert snapshot.attendees == ['a@example.com']
        assert snapshot.google_updated_at_utc == datetime(2024, 5, 1, tzinfo=pytz.UTC)
        assert not snapshot.is_deleted

    def test_cancelled_item_is_a_tombstone(self):
        snapshot = to_remote_snapshot({
            'id': 'g1',
            'status': 'cancelled',
            'summary': '박혜지 대휴',
            'description': 'memo',
            'updated': '2024-05-01T00:00:00Z',
            'extendedProperties': {'private': {EVENT_TYPE_PRIVATE_KEY: '근무'}},
        })
        assert snapshot.is_deleted
        assert snapshot.google_event_id == 'g1'
        assert snapshot.event_type == '일반'
        assert snapshot.summary == ''
        assert snapshot.description == ''
        assert snapshot.time_zone == 'UTC'

    def test_explicit_default_type_skips_title_inference(self):
        snapshot = to_remote_snapshot({
            'id': 'g1',
            'summary': '박혜지 대휴',
            'start': {'date': '2024-05-06', 'timeZone': 'Asia/Seoul'},
            'end': {'date': '2024-05-07', 'timeZone': 'Asia/Seoul'},
            'extendedProperties': {'private': {EVENT_TYPE_PRIVATE_KEY: '일반'}},
        })
        assert snapshot.event_type == '일반'
        assert snapshot.summary == '박혜지 대휴'
        assert snapshot.description == ''

    def test_item_without_id_is_dropped(self):
        assert to_remote_snapshot({'summary': 'x', 'start': {'date': '2024-05-06'}, 'end': {'date': '2024-05-07'}}) is None

    def test_item_with_bad_times_is_dropped(self):
        assert to_remote_snapshot({'id': 'g1', 'start': {'dateTime': 'soon'}, 'end': {}}) is None

    def test_title_inference_and_missing_title(self):
        snapshot = to_remote_snapshot({
            'id': 'g1',
            'summary': '박혜지 연차',
            'start': {'date': '2024-05-06', 'timeZone': 'Asia/Seoul'},
            'end': {'date': '2024-05-07', 'timeZone': 'Asia/Seoul'},
        })
        assert snapshot.event_type == '휴가'
        assert snapshot.description.startswith('휴가대상: 박혜지')

        untitled = to_remote_snapshot({
            'id': 'g2',
            'start': {'date': '2024-05-06', 'timeZone': 'Asia/Seoul'},
            'end': {'date': '2024-05-07', 'timeZone': 'Asia/Seoul'},
        })
        assert untitled.summary == NO_TITLE

    def test_occurrence_without_original_start_uses_start(self):
        snapshot = to_remote_snapshot({
            'id': 'g1_20240506',
            'recurringEventId': 'g1',
            'start': {'dateTime': '2024-05-06T09:00:00Z'},
            'end': {'dateTime': '2024-05-06T10:00:00Z'},
        })
        assert snapshot.recurring_event_id == 'g1'
        assert snapshot.original_start_time_utc == snapshot.start_at_utc

    def test_recurrence_rule_is_stored_without_prefix(self):
        snapshot = to_remote_snapshot({
            'id': 'g1',
            'recurrence': ['EXDATE:20240513T000000Z', 'RRULE:FREQ=WEEKLY;BYDAY=MO'],
            'start': {'dateTime': '2024-05-06T09:00:00Z'},
            'end': {'dateTime': '2024-05-06T10:00:00Z'},
        })
        assert snapshot.recurrence_rule == 'FREQ=WEEKLY;BYDAY=MO'


class TestToGoogleEventRequest:

    def test_whole_day_event_uses_dates(self):
        event = make_event(
            SEOUL.localize(datetime(2024, 5, 6)).astimezone(pytz.UTC),
            SEOUL.localize(datetime(2024, 5, 8)).astimezone(pytz.UTC),
        )
        assert is_whole_day(event)
        body = to_google_event_request(event)
        assert body['start'] == {'date': '2024-05-06', 'timeZone': 'Asia/Seoul'}
        assert body['end'] == {'date': '2024-05-08', 'timeZone': 'Asia/Seoul'}

    def test_timed_event_uses_local_datetimes(self):
        event = make_event(
            SEOUL.localize(datetime(2024, 5, 6, 9)).astimezone(pytz.UTC),
            SEOUL.localize(datetime(2024, 5, 6, 18)).astimezone(pytz.UTC),
            location='본관',
        )
        assert not is_whole_day(event)
        body = to_google_event_request(event)
        assert body['start'] == {'dateTime': '2024-05-06T09:00:00.000+09:00', 'timeZone': 'Asia/Seoul'}
        assert body['location'] == '본관'
        assert 'description' not in body
        assert 'recurrence' not in body

    def test_event_type_and_rule_are_written(self):
        event = make_event(
            datetime(2024, 5, 6, 0, tzinfo=pytz.UTC),
            datetime(2024, 5, 6, 1, tzinfo=pytz.UTC),
            event_type='교육',
            description='교육대상: 홍길동',
            summary='안전교육',
            recurrence_rule='FREQ=MONTHLY',
        )
        body = to_google_event_request(event)
        assert body['extendedProperties']['private'][EVENT_TYPE_PRIVATE_KEY] == '교육'
        assert body['summary'] == '홍길동 안전교육'
        assert body['recurrence'] == ['RRULE:FREQ=MONTHLY']

    def test_event_type_round_trip(self):
        event = make_event(
            datetime(2024, 5, 6, 0, tzinfo=pytz.UTC),
            datetime(2024, 5, 6, 1, tzinfo=pytz.UTC),
            event_type='당직',
        )
        item = dict(to_google_event_request(event), id='g1', updated='2024-05-01T00:00:00Z')
        snapshot = to_remote_snapshot(item)
        assert snapshot.event_type == '당직'
        assert snapshot.start_at_utc == event.start_at_utc
        assert snapshot.end_at_utc == event.end_at_utc

    def test_default_type_with_leave_title_round_trip(self):
        event = make_event(
            datetime(2024, 5, 6, 0, tzinfo=pytz.UTC),
            datetime(2024, 5, 6, 1, tzinfo=pytz.UTC),
            event_type='일반',
            summary='박혜지 대휴',
        )
        item = dict(to_google_event_request(event), id='g1', updated='2024-05-01T00:00:00Z')
        snapshot = to_remote_snapshot(item)
        assert snapshot.event_type == '일반'
        assert snapshot.summary == '박혜지 대휴'


@pytest.mark.parametrize('remote_start, expected_key', [
    ({'date': '2024-05-06'}, 'date'),
    ({'dateTime': '2024-05-06T00:00:00+09:00'}, 'dateTime'),
])
def test_align_time_shape_follows_remote(remote_start, expected_key):
    event = make_event(
        SEOUL.localize(datetime(2024, 5, 6)).astimezone(pytz.UTC),
        SEOUL.localize(datetime(2024, 5, 7)).astimezone(pytz.UTC),
    )
    body = to_google_event_request(event)
    aligned = align_time_shape_with_remote(event, body, {'start': remote_start})
    assert expected_key in aligned['start']
    assert expected_key in aligned['end']
