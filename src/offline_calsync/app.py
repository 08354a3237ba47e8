"""Application facade used by the CLI and the HTTP server."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytz

from .config import Settings
from .database import DatabaseManager
from .event_store import LocalEventStore
from .models import (
    CalendarEvent, ConflictResolution, CredentialStatus, EventDraft, Holiday,
    SyncResult, CONTENT_FIELDS, utcnow,
)
from .scheduler import SyncScheduler, SyncTrigger
from .services import (
    BaseRemoteCalendar, CredentialManager, GoogleCalendarClient, GoogleHolidayFeed,
)
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

SEARCH_WINDOW_START = datetime(2000, 1, 1, tzinfo=pytz.UTC)
SEARCH_WINDOW_END = datetime(2100, 1, 1, tzinfo=pytz.UTC)


class CalendarApp:
    """Wires the store, credentials, remote client and sync engine together.

    Event mutations only touch the local store; each one schedules a
    debounced push when a scheduler is attached.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        credentials: Optional[CredentialManager] = None,
        remote: Optional[BaseRemoteCalendar] = None,
        holiday_feed: Optional[GoogleHolidayFeed] = None,
    ):
        """Initialize the application.

        Args:
            settings: Application settings
            db_manager: Database manager (built from settings if omitted)
            credentials: Credential manager (built from settings if omitted)
            remote: Remote calendar client (Google if omitted)
            holiday_feed: Holiday provider (Google holiday calendars if omitted)
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.credentials = credentials or CredentialManager(settings)
        self.remote = remote or GoogleCalendarClient(settings, self.credentials)
        self.store = LocalEventStore(self.db_manager, settings.google_calendar_id)
        self.engine = SyncEngine(
            settings, self.store, self.remote, self.db_manager, self.credentials
        )
        self.holiday_feed = holiday_feed or GoogleHolidayFeed(self.remote)
        self.scheduler: Optional[SyncScheduler] = None
        self.logger = logger.getChild('app')

    async def __aenter__(self):
        self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()

    def initialize(self) -> None:
        self.settings.ensure_directories()
        self.db_manager.init_db()

    async def cleanup(self) -> None:
        """Stop the scheduler and release the remote client."""
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.remote.close()

    def create_scheduler(self) -> SyncScheduler:
        """Attach a background scheduler that runs passes through this app."""
        self.scheduler = SyncScheduler(
            self.settings, lambda push_only: self.run_sync(push_only=push_only)
        )
        return self.scheduler

    def _local_mutation(self) -> None:
        if self.scheduler is not None:
            self.scheduler.notify_local_mutation()

    # Events

    def list_events(self) -> List[CalendarEvent]:
        return self.store.list()

    def get_event(self, event_id: str) -> CalendarEvent:
        return self.store.require(event_id)

    def list_conflicts(self) -> List[CalendarEvent]:
        return self.store.list_conflicts()

    def create_event(self, draft: EventDraft) -> CalendarEvent:
        """Store a new event locally and schedule a push."""
        event = self.store.create(draft)
        self.logger.info(f"Created event {event.id} '{event.title}'")
        self._local_mutation()
        return event

    def update_event(self, event: CalendarEvent) -> CalendarEvent:
        """Replace the editable fields of a stored event with ``event``'s."""
        return self.edit_event(event.id, event.content())

    def edit_event(self, event_id: str, changes: Dict[str, Any]) -> CalendarEvent:
        """Apply a partial edit to a stored event.

        Args:
            event_id: Event to edit
            changes: Editable field values keyed by field name

        Returns:
            The edited event

        Raises:
            EventNotFound: If the event does not exist or is pending deletion
            ValueError: If a field is unknown or the result is invalid
        """
        unknown = set(changes) - set(CONTENT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown event fields: {', '.join(sorted(unknown))}")
        before = self.store.require(event_id)
        event = self.store.record_local_edit(event_id, changes)
        if event.local_version != before.local_version:
            self.logger.info(f"Updated event {event_id}")
            self._local_mutation()
        return event

    def delete_event(self, event_id: str) -> bool:
        """Delete an event locally and schedule a push.

        Returns:
            True if the event was removed at once, False if it was tombstoned
            pending the remote delete
        """
        removed = self.store.delete(event_id)
        self.logger.info(f"Deleted event {event_id} ({'removed' if removed else 'pending remote delete'})")
        self._local_mutation()
        return removed

    def search_events(
        self,
        query: str,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[CalendarEvent]:
        """Search local events by title, description and location.

        Args:
            query: Whitespace-separated terms, all of which must match
            from_date: Window start (defaults to 2000-01-01)
            to_date: Window end; an end not after the start becomes start + 24h
            limit: Maximum results; out-of-range values use the default limit
        """
        start = from_date or SEARCH_WINDOW_START
        end = to_date or SEARCH_WINDOW_END
        if start.tzinfo is None:
            start = pytz.UTC.localize(start)
        if end.tzinfo is None:
            end = pytz.UTC.localize(end)
        if end <= start:
            end = start + timedelta(hours=24)

        config = self.settings.sync_config
        if limit is None or limit <= 0 or limit > config.search_max_limit:
            limit = config.search_default_limit
        return self.store.search(query, start, end, limit)

    # Sync

    async def run_sync(self, push_only: bool = False, timeout: Optional[float] = None) -> SyncResult:
        """Run one sync pass, capped by the configured timeout.

        A timed-out pass keeps whatever it already persisted and is reported
        as a partial failure.
        """
        if timeout is None:
            timeout = self.settings.sync_config.sync_timeout_seconds
        result = SyncResult(calendar_id=self.store.calendar_id, push_only=push_only)
        try:
            return await asyncio.wait_for(self.engine.sync(push_only, result), timeout)
        except asyncio.TimeoutError:
            result.record_error(f"sync timed out after {timeout:g}s")
            result.completed_at = utcnow()
            self.logger.warning(f"Sync pass timed out after {timeout:g}s")
            return result

    async def resolve_conflict(
        self,
        event_id: str,
        resolution: ConflictResolution,
    ) -> Optional[CalendarEvent]:
        event = await self.engine.resolve_conflict(event_id, resolution)
        if event is not None and event.is_dirty:
            self._local_mutation()
        return event

    def on_focus(self) -> bool:
        """Application regained focus; request a full pass."""
        if self.scheduler is None:
            return False
        return self.scheduler.request(SyncTrigger.FOCUS)

    def request_sync(self, push_only: bool = False) -> bool:
        """Queue a user-requested pass on the background scheduler."""
        if self.scheduler is None:
            return False
        return self.scheduler.request(SyncTrigger.USER, push_only=push_only)

    def get_sync_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        with self.db_manager.get_session() as session:
            sessions = self.db_manager.get_recent_sync_sessions(session, limit)
            return [
                {
                    'id': s.id,
                    'started_at': s.started_at,
                    'completed_at': s.completed_at,
                    'push_only': s.push_only,
                    'full_sync': s.full_sync,
                    'pulled': s.pulled,
                    'pushed': s.pushed,
                    'deleted': s.deleted,
                    'conflicts': s.conflicts,
                    'errors': s.errors,
                    'status': s.status,
                    'error_message': s.error_message,
                }
                for s in sessions
            ]

    # Holidays

    async def list_holidays(self, country_code: str) -> List[Holiday]:
        return await self.holiday_feed.list_holidays(country_code)

    # Authorization

    def get_credential_status(self) -> CredentialStatus:
        return self.credentials.get_status()

    def begin_authorization(self, state: str) -> str:
        return self.credentials.begin_authorization(state)

    async def exchange_authorization_code(self, code: str, state: Optional[str] = None) -> CredentialStatus:
        """Complete authorization and request a post-authorization sync."""
        await self.credentials.exchange_code(code, state)
        if self.scheduler is not None:
            self.scheduler.request(SyncTrigger.AUTHORIZED)
        return self.credentials.get_status()

    async def logout(self) -> None:
        await self.credentials.logout()
