"""Sync orchestration: flush the outbox, then pull remote changes."""

import logging
from datetime import datetime
from typing import List, Optional

from dateutil.relativedelta import relativedelta
import httpx
import pytz
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .auth import GoogleOAuthManager
from .config import Settings
from .database import DatabaseManager
from .local_calendar import LocalCalendar
from .mapper import system_time_zone
from .models import (
    CalendarInfo,
    CreatePayload,
    ForcePushResult,
    SelectedCalendar,
    SyncMode,
    SyncResult,
)
from .outbox import OutboxWorker
from .services import GoogleCalendarService
from .services.base import http_status

logger = logging.getLogger(__name__)

SYNC_TOKEN_EXPIRED = 410


def is_sync_token_expired(error: BaseException) -> bool:
    return http_status(error) == SYNC_TOKEN_EXPIRED


def is_transient_sync_error(error: BaseException) -> bool:
    """Network failures and server-side Google errors; worth re-running a pass."""
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    status = http_status(error)
    return status is not None and (status == 429 or status >= 500)


class SyncEngine:
    """Runs sync passes between the local store and the selected Google calendar."""

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        auth: Optional[GoogleOAuthManager] = None,
        google_service: Optional[GoogleCalendarService] = None
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Database manager (created from settings if omitted)
            auth: OAuth manager (created from settings if omitted)
            google_service: Google Calendar service (created if omitted)
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.auth = auth or GoogleOAuthManager(settings, db_manager=self.db_manager)
        self.google_service = google_service or GoogleCalendarService(
            settings, auth=self.auth, db_manager=self.db_manager
        )
        self.outbox = OutboxWorker(settings, self.db_manager, self.google_service)
        self.local_calendar = LocalCalendar(settings, self.db_manager, self.outbox)
        self.logger = logger.getChild('sync_engine')

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        self.logger.debug("Sync engine closed")

    async def initialize(self) -> None:
        """Prepare the local store."""
        self.settings.ensure_directories()
        self.db_manager.init_db()
        with self.db_manager.get_session() as session:
            self.db_manager.ensure_setting(session)
        self.logger.debug("Sync engine initialized")

    def _skipped(self) -> SyncResult:
        return SyncResult(mode=SyncMode.SKIPPED, outbox_remaining=self.outbox.count_active())

    async def run_sync(self) -> SyncResult:
        """One sync pass: push queued local edits, then pull remote changes.

        Returns:
            Pass summary; mode is SKIPPED when Google is not configured,
            not connected, or no calendar is selected
        """
        if not self.auth.is_configured() or not self.auth.is_connected():
            self.logger.info("Google is not connected; sync skipped")
            return self._skipped()

        with self.db_manager.get_session() as session:
            selected = self.db_manager.get_selected_calendar(session)
            sync_token = self.db_manager.get_sync_token(session)
        if not (selected.id or self.settings.google_calendar_id):
            self.logger.info("No calendar selected; sync skipped")
            return self._skipped()

        pushed = await self.outbox.process_now()

        if not sync_token:
            mode = SyncMode.FULL
            pulled = await self._pull_remote(SyncMode.FULL)
        else:
            try:
                mode = SyncMode.DELTA
                pulled = await self._pull_remote(SyncMode.DELTA, sync_token)
            except Exception as e:
                if not is_sync_token_expired(e):
                    raise
                self.logger.warning("Sync token expired; falling back to a full pull")
                with self.db_manager.get_session() as session:
                    self.db_manager.set_sync_token(session, None)
                mode = SyncMode.FULL
                pulled = await self._pull_remote(SyncMode.FULL)

        await self._pull_holidays()

        result = SyncResult(
            mode=mode,
            pulled_events=pulled,
            pushed_outbox_jobs=pushed,
            outbox_remaining=self.outbox.count_active(),
        )
        self.logger.info(
            f"Sync finished ({result.mode.value}): pulled {result.pulled_events}, "
            f"pushed {result.pushed_outbox_jobs}, {result.outbox_remaining} still queued"
        )
        return result

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception(is_transient_sync_error),
        reraise=True
    )
    async def run_sync_with_retry(self) -> SyncResult:
        """``run_sync`` re-run as a whole on transient failures."""
        return await self.run_sync()

    async def _pull_remote(self, mode: SyncMode, sync_token: Optional[str] = None) -> int:
        """Page through remote changes, store them, and keep the final sync token."""
        time_min = time_max = None
        if mode == SyncMode.FULL:
            time_min, time_max = self.db_manager.default_sync_window()
            with self.db_manager.get_session() as session:
                self.db_manager.set_sync_window(session, time_min, time_max)

        pulled = 0
        page_token = None
        next_sync_token = None
        while True:
            page = await self.google_service.pull_remote_events(
                sync_token=sync_token if mode == SyncMode.DELTA else None,
                time_min=time_min,
                time_max=time_max,
                page_token=page_token,
            )
            with self.db_manager.get_session() as session:
                self.db_manager.upsert_remote_events(session, page.events)
            pulled += len(page.events)
            next_sync_token = page.next_sync_token or next_sync_token
            page_token = page.next_page_token
            if not page_token:
                break

        if next_sync_token:
            with self.db_manager.get_session() as session:
                self.db_manager.set_sync_token(session, next_sync_token)
        self.logger.debug(f"{mode.value} pull stored {pulled} events")
        return pulled

    def holiday_window(self, now: Optional[datetime] = None):
        """Holiday range in local time: start of the month N months back to end of the month N months ahead."""
        config = self.settings.sync_config
        zone = pytz.timezone(system_time_zone())
        local_now = (now or datetime.now(pytz.UTC)).astimezone(zone)
        start = (local_now - relativedelta(months=config.holiday_past_months)).replace(
            day=1, hour=0, minute=0, second=0, microsecond=0
        )
        end = (local_now + relativedelta(months=config.holiday_future_months)).replace(
            day=1, hour=0, minute=0, second=0, microsecond=0
        ) + relativedelta(months=1)
        return (
            zone.normalize(start).astimezone(pytz.UTC),
            zone.normalize(end).astimezone(pytz.UTC),
        )

    async def _pull_holidays(self) -> int:
        time_min, time_max = self.holiday_window()
        try:
            holidays = await self.google_service.pull_holidays(time_min, time_max)
        except Exception as e:
            self.logger.error(f"Failed to pull holidays: {e}")
            return 0
        with self.db_manager.get_session() as session:
            self.db_manager.upsert_remote_events(session, holidays)
        return len(holidays)

    async def force_push_all(self) -> ForcePushResult:
        """Queue a CREATE for every live event that never reached Google, then flush."""
        enqueued = 0
        skipped = 0
        with self.db_manager.get_session() as session:
            events = self.db_manager.list_unpushed_events(session)
            active = {event.local_id for event in events
                      if self.db_manager.count_active_jobs(session, event.local_id)}

        for event in events:
            if event.local_id in active:
                skipped += 1
                continue
            self.outbox.enqueue(event.local_id, CreatePayload())
            enqueued += 1

        processed = await self.outbox.process_now()
        self.logger.info(f"Force push queued {enqueued} events, pushed {processed} jobs")
        return ForcePushResult(enqueued_jobs=enqueued, processed_jobs=processed, skipped_events=skipped)

    async def list_calendars(self) -> List[CalendarInfo]:
        return await self.google_service.list_calendars()

    def get_selected_calendar(self) -> SelectedCalendar:
        with self.db_manager.get_session() as session:
            return self.db_manager.get_selected_calendar(session)

    async def select_calendar(self, calendar_id: str) -> CalendarInfo:
        """Select a writable calendar; switching calendars resets the local store.

        Raises:
            ValueError: The calendar is not among the account's writable calendars
        """
        calendars = await self.list_calendars()
        for calendar in calendars:
            if calendar.id == calendar_id:
                break
        else:
            raise ValueError(f"Calendar {calendar_id!r} not found or not writable")

        with self.db_manager.get_session() as session:
            changed = self.db_manager.set_selected_calendar(session, calendar.id, calendar.name)
        if changed:
            self.logger.info(f"Selected calendar {calendar.name} ({calendar.id}); local store reset")
        return calendar
