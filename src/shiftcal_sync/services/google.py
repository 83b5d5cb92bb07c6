"""Google Calendar service: pulls remote changes and applies outbox operations."""

import asyncio
import locale
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import pytz

from .base import InvalidOperationError, is_already_gone, is_not_found
from ..config import Settings
from ..mapper import (
    align_time_shape_with_remote,
    extract_recurrence_rule,
    from_google_event_datetime,
    parse_google_timestamp,
    to_google_event_request,
    to_remote_snapshot,
)
from ..models import (
    HOLIDAY_EVENT_TYPE,
    CalendarEvent,
    CalendarInfo,
    OutboxOperation,
    OutboxPayload,
    PushResult,
    RemoteEventSnapshot,
    SyncPage,
)
from ..rrule import normalize_rrule, split_rrule_for_future

if TYPE_CHECKING:
    from ..auth.oauth import GoogleOAuthManager
    from ..database import DatabaseManager

logger = logging.getLogger(__name__)

# Only the fields the mapper reads.
EVENT_FIELDS = (
    "id,status,summary,description,location,start,end,updated,recurrence,"
    "recurringEventId,originalStartTime,extendedProperties,attendees(email),"
    "organizer(email),hangoutLink"
)
LIST_FIELDS = f"items({EVENT_FIELDS}),nextPageToken,nextSyncToken"

WRITABLE_ROLES = ('owner', 'writer')
OCCURRENCE_MATCH_TOLERANCE = timedelta(milliseconds=1000)


def _to_rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC).isoformat().replace('+00:00', 'Z')


def _to_push_result(item: Optional[Dict[str, Any]]) -> PushResult:
    if not item:
        return PushResult()
    return PushResult(
        google_event_id=item.get('id'),
        google_updated_at_utc=parse_google_timestamp(item.get('updated')),
    )


class GoogleCalendarService:
    """Google Calendar v3 client for one selected calendar."""

    def __init__(
        self,
        settings: Settings,
        auth: Optional["GoogleOAuthManager"] = None,
        db_manager: Optional["DatabaseManager"] = None
    ):
        """Initialize Google Calendar service.

        Args:
            settings: Application settings
            auth: OAuth manager providing authorized credentials
            db_manager: Database manager holding the selected calendar
        """
        self.settings = settings
        self.auth = auth
        self.db_manager = db_manager
        self.service = None
        self.logger = logger.getChild('google')

    async def authenticate(self) -> None:
        """Build the API client from freshly refreshed credentials."""
        creds = await self.auth.get_authorized_client()
        self.service = build('calendar', 'v3', credentials=creds, cache_discovery=False)
        self.logger.debug("Google Calendar client ready")

    async def _get_service(self):
        if self.service is None:
            await self.authenticate()
        return self.service

    async def _execute(self, request) -> Dict[str, Any]:
        """Run a blocking API request in the default executor."""
        return await asyncio.get_event_loop().run_in_executor(None, request.execute)

    def get_calendar_id(self) -> str:
        """Selected calendar, then ``GOOGLE_CALENDAR_ID``, then ``primary``."""
        if self.db_manager is not None:
            with self.db_manager.get_session() as session:
                selected = self.db_manager.get_selected_calendar(session)
            if selected.id and selected.id.strip():
                return selected.id.strip()
        return self.settings.google_calendar_id or 'primary'

    async def list_calendars(self) -> List[CalendarInfo]:
        """Calendars the account can write to, primary first then by name."""
        service = await self._get_service()
        calendars = []
        page_token = None

        while True:
            response = await self._execute(service.calendarList().list(
                maxResults=250,
                minAccessRole='writer',
                showDeleted=False,
                showHidden=False,
                pageToken=page_token,
            ))
            for entry in response.get('items', []):
                calendar_id = (entry.get('id') or '').strip()
                name = (entry.get('summary') or '').strip()
                role = entry.get('accessRole')
                if not calendar_id or not name or role not in WRITABLE_ROLES:
                    continue
                calendars.append(CalendarInfo(
                    id=calendar_id,
                    name=name,
                    is_primary=bool(entry.get('primary', False)),
                    access_role=role,
                ))
            page_token = response.get('nextPageToken')
            if not page_token:
                break

        calendars.sort(key=lambda c: (not c.is_primary, locale.strxfrm(c.name.casefold())))
        return calendars

    async def pull_remote_events(
        self,
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        page_token: Optional[str] = None
    ) -> SyncPage:
        """Pull one page of changes, either incrementally or over a time range.

        Args:
            sync_token: Token from a previous pass (delta mode)
            time_min: Range start (full mode)
            time_max: Range end (full mode)
            page_token: Continuation token from the previous page

        Returns:
            The mapped page; ``next_sync_token`` is only set on the last page
        """
        if sync_token and (time_min or time_max):
            raise ValueError("sync_token cannot be combined with a time range")

        service = await self._get_service()
        calendar_id = self.get_calendar_id()

        params: Dict[str, Any] = {
            'calendarId': calendar_id,
            'singleEvents': True,
            'showDeleted': True,
            'maxResults': 2500,
            'fields': LIST_FIELDS,
        }
        if sync_token:
            params['syncToken'] = sync_token
        else:
            if time_min:
                params['timeMin'] = _to_rfc3339(time_min)
            if time_max:
                params['timeMax'] = _to_rfc3339(time_max)
        if page_token:
            params['pageToken'] = page_token

        response = await self._execute(service.events().list(**params))

        events = []
        for item in response.get('items', []):
            snapshot = to_remote_snapshot(item)
            if snapshot is None:
                self.logger.warning(f"Skipping unmappable event {item.get('id')!r}")
                continue
            events.append(snapshot)

        await self._backfill_master_rules(service, calendar_id, events)

        self.logger.debug(
            f"Pulled {len(events)} events from {calendar_id} "
            f"({'delta' if sync_token else 'full'}, more={bool(response.get('nextPageToken'))})"
        )
        return SyncPage(
            events=events,
            next_page_token=response.get('nextPageToken'),
            next_sync_token=response.get('nextSyncToken'),
        )

    async def _backfill_master_rules(
        self,
        service,
        calendar_id: str,
        events: List[RemoteEventSnapshot]
    ) -> None:
        """Copy the series rule onto occurrences; one lookup per series."""
        master_rules: Dict[str, Optional[str]] = {}
        for event in events:
            if not event.recurring_event_id or event.recurrence_rule or event.is_deleted:
                continue
            series_id = event.recurring_event_id
            if series_id not in master_rules:
                try:
                    master = await self._execute(service.events().get(
                        calendarId=calendar_id,
                        eventId=series_id,
                    ))
                    master_rules[series_id] = extract_recurrence_rule(master.get('recurrence'))
                except Exception as e:
                    self.logger.warning(f"Master lookup failed for series {series_id}: {e}")
                    master_rules[series_id] = None
            if master_rules[series_id]:
                event.recurrence_rule = master_rules[series_id]

    async def pull_holidays(self, time_min: datetime, time_max: datetime) -> List[RemoteEventSnapshot]:
        """Read the public holiday calendar over a range."""
        service = await self._get_service()
        calendar_id = self.settings.sync_config.holiday_calendar_id
        holidays = []
        page_token = None

        while True:
            response = await self._execute(service.events().list(
                calendarId=calendar_id,
                timeMin=_to_rfc3339(time_min),
                timeMax=_to_rfc3339(time_max),
                singleEvents=True,
                showDeleted=False,
                maxResults=250,
                pageToken=page_token,
            ))
            for item in response.get('items', []):
                snapshot = to_remote_snapshot(item)
                if snapshot is None or snapshot.is_deleted:
                    continue
                snapshot.event_type = HOLIDAY_EVENT_TYPE
                holidays.append(snapshot)
            page_token = response.get('nextPageToken')
            if not page_token:
                break

        return holidays

    async def fetch_remote_event(self, google_event_id: str) -> Optional[RemoteEventSnapshot]:
        """Get one event; ``None`` when Google reports it missing."""
        item = await self._get_event_resource(google_event_id)
        if item is None:
            return None
        return to_remote_snapshot(item)

    async def _get_event_resource(self, google_event_id: str) -> Optional[Dict[str, Any]]:
        service = await self._get_service()
        try:
            return await self._execute(service.events().get(
                calendarId=self.get_calendar_id(),
                eventId=google_event_id,
                alwaysIncludeEmail=True,
            ))
        except HttpError as e:
            if is_not_found(e):
                return None
            raise

    async def resolve_occurrence_event_id(
        self,
        recurring_event_id: str,
        original_start_time_utc: datetime
    ) -> Optional[str]:
        """Find the occurrence of a series whose original start matches within one second."""
        service = await self._get_service()
        response = await self._execute(service.events().instances(
            calendarId=self.get_calendar_id(),
            eventId=recurring_event_id,
            showDeleted=False,
            timeMin=_to_rfc3339(original_start_time_utc - timedelta(days=1)),
            timeMax=_to_rfc3339(original_start_time_utc + timedelta(days=1)),
            maxResults=250,
        ))

        for item in response.get('items', []):
            original_start = from_google_event_datetime(item.get('originalStartTime'))
            if original_start is None or not item.get('id'):
                continue
            if abs(original_start[0] - original_start_time_utc) <= OCCURRENCE_MATCH_TOLERANCE:
                return item['id']
        return None

    async def push_local_change(
        self,
        payload: OutboxPayload,
        event: Optional[CalendarEvent]
    ) -> PushResult:
        """Apply one outbox operation to Google Calendar.

        Args:
            payload: Operation variant with its parameters
            event: Current local event, if it still exists

        Returns:
            Remote id and update time, or an empty result when nothing changed

        Raises:
            InvalidOperationError: The operation cannot be applied
            HttpError: Any other Google API failure
        """
        service = await self._get_service()
        calendar_id = self.get_calendar_id()
        operation = OutboxOperation(payload.operation)
        send_updates = payload.send_updates.value
        payload_event_id = getattr(payload, 'google_event_id', None)

        if (
            operation in (OutboxOperation.RECUR_THIS, OutboxOperation.DELETE)
            and not payload_event_id
            and payload.recurring_event_id
            and payload.original_start_time_utc
        ):
            # One occurrence addressed through its series; never fall back to
            # the local row's own id, which may be the series master.
            google_event_id = await self.resolve_occurrence_event_id(
                payload.recurring_event_id,
                payload.original_start_time_utc,
            )
        else:
            google_event_id = payload_event_id or (event.google_event_id if event else None)

        if operation == OutboxOperation.DELETE:
            return await self._delete(service, calendar_id, google_event_id, send_updates)

        if operation == OutboxOperation.RECUR_FUTURE:
            return await self._bound_series(service, calendar_id, google_event_id, payload, send_updates)

        if event is None:
            raise InvalidOperationError(f"Missing local event for outbox operation {operation.value}")

        body = to_google_event_request(event)
        if event.recurring_event_id:
            body.pop('recurrence', None)

        if (
            operation == OutboxOperation.RECUR_ALL
            and google_event_id
            and google_event_id == event.recurring_event_id
        ):
            # Series-wide edit made from one occurrence: its times stay its own.
            body = {key: value for key, value in body.items() if key not in ('start', 'end')}
            response = await self._execute(service.events().patch(
                calendarId=calendar_id,
                eventId=google_event_id,
                sendUpdates=send_updates,
                body=body,
            ))
            self.logger.info(f"Patched series {google_event_id} from occurrence {event.local_id}")
            return _to_push_result(response)

        remote_item = None
        if operation == OutboxOperation.RECUR_ALL and not event.recurrence_rule and google_event_id:
            # Never turn a remote series into a single event by omission.
            remote_item = await self._execute(service.events().get(
                calendarId=calendar_id,
                eventId=google_event_id,
                alwaysIncludeEmail=True,
            ))
            master_rule = extract_recurrence_rule(remote_item.get('recurrence'))
            if master_rule:
                body['recurrence'] = [normalize_rrule(master_rule)]

        if operation == OutboxOperation.CREATE or not google_event_id:
            if operation == OutboxOperation.RECUR_THIS:
                raise InvalidOperationError("Cannot resolve occurrence for a single-occurrence edit")
            response = await self._execute(service.events().insert(
                calendarId=calendar_id,
                sendUpdates=send_updates,
                body=body,
            ))
            self.logger.info(f"Created Google event {response.get('id')}")
            return _to_push_result(response)

        if remote_item is None:
            try:
                remote_item = await self._get_event_resource(google_event_id)
            except Exception as e:
                self.logger.warning(f"Could not fetch {google_event_id} for shape alignment: {e}")
        if remote_item:
            body = align_time_shape_with_remote(event, body, remote_item)

        response = await self._execute(service.events().patch(
            calendarId=calendar_id,
            eventId=google_event_id,
            sendUpdates=send_updates,
            body=body,
        ))
        self.logger.info(f"Patched Google event {google_event_id} ({operation.value})")
        return _to_push_result(response)

    async def _delete(self, service, calendar_id: str, google_event_id: Optional[str], send_updates: str) -> PushResult:
        if not google_event_id:
            return PushResult()
        try:
            await self._execute(service.events().delete(
                calendarId=calendar_id,
                eventId=google_event_id,
                sendUpdates=send_updates,
            ))
        except HttpError as e:
            if not is_already_gone(e):
                raise
            self.logger.info(f"Google event {google_event_id} was already deleted")
        return PushResult(google_event_id=google_event_id, google_updated_at_utc=datetime.now(pytz.UTC))

    async def _bound_series(
        self,
        service,
        calendar_id: str,
        google_event_id: Optional[str],
        payload,
        send_updates: str
    ) -> PushResult:
        if not google_event_id:
            return PushResult()

        master = await self._execute(service.events().get(
            calendarId=calendar_id,
            eventId=google_event_id,
            alwaysIncludeEmail=True,
        ))
        rule = extract_recurrence_rule(master.get('recurrence'))
        if not rule:
            raise InvalidOperationError(
                f"Google event {google_event_id} is not a recurring series; cannot split it"
            )

        bounded = split_rrule_for_future(rule, payload.split_start_utc)
        response = await self._execute(service.events().patch(
            calendarId=calendar_id,
            eventId=google_event_id,
            sendUpdates=send_updates,
            body={'recurrence': [normalize_rrule(bounded)]},
        ))
        self.logger.info(f"Bounded series {google_event_id} before {payload.split_start_utc.isoformat()}")
        return _to_push_result(response)
