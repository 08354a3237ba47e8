"""Bidirectional sync engine: pull remote changes, then push local ones."""

import asyncio
import logging
from typing import Dict, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .database import DatabaseManager
from .event_store import EventNotFound, InvalidTransition, LocalEventStore
from .models import (
    CalendarEvent, ConflictResolution, RemoteEvent, SyncResult, SyncStatus, utcnow,
)
from .services import (
    AuthenticationError, BaseRemoteCalendar, CalendarServiceError, CredentialManager,
    InvalidSyncToken, RemoteConflict, RemoteNotFound,
)
from .services.google import generate_compliant_event_id

logger = logging.getLogger(__name__)

# Failures scoped to a single item; the pass records them and moves on.
ITEM_ERRORS = (CalendarServiceError, ValueError, SQLAlchemyError)


class SyncEngine:
    """Runs sync passes for one calendar.

    At most one pass (or conflict resolution) runs at a time. A pass
    requested while another is running is dropped, not queued.
    """

    def __init__(
        self,
        settings: Settings,
        store: LocalEventStore,
        remote: BaseRemoteCalendar,
        db_manager: DatabaseManager,
        credentials: Optional[CredentialManager] = None,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            store: Local event store
            remote: Remote calendar client
            db_manager: Database manager used for sync history
            credentials: Credential manager checked before each pass
        """
        self.settings = settings
        self.store = store
        self.remote = remote
        self.db_manager = db_manager
        self.credentials = credentials
        self.calendar_id = store.calendar_id
        self.logger = logger.getChild('sync_engine')
        self._lock = asyncio.Lock()
        # Derived remote id -> local id for creates not yet linked.
        self._pending_inserts: Dict[str, str] = {}

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    async def sync(self, push_only: bool = False, result: Optional[SyncResult] = None) -> SyncResult:
        """Run one sync pass.

        Args:
            push_only: Skip the pull phase
            result: Result object to fill in; lets a caller that cancels the
                pass (e.g. on timeout) still read the counts reached so far

        Returns:
            Sync result with counts and the first error message, if any
        """
        if result is None:
            result = SyncResult(calendar_id=self.calendar_id, push_only=push_only)
        if self._lock.locked():
            self.logger.info("Sync already in progress, dropping request")
            result.skipped = True
            result.error_message = "sync already in progress"
            result.completed_at = utcnow()
            return result

        async with self._lock:
            with self.db_manager.get_session() as session:
                sync_session_id = self.db_manager.create_sync_session(
                    session, self.calendar_id, push_only=push_only
                ).id

            status = 'interrupted'
            self.logger.info(f"Starting sync session {sync_session_id} (push_only={push_only})")
            try:
                await self._run_pass(push_only, result)
                status = 'completed' if result.errors == 0 else 'partial'
            except AuthenticationError as e:
                result.unauthenticated = True
                result.record_error(f"Authentication required: {e}")
                status = 'unauthenticated'
                self.logger.warning(f"Sync session {sync_session_id} aborted: {e}")
            except CalendarServiceError as e:
                result.record_error(f"Sync failed: {e}")
                status = 'failed'
                self.logger.error(f"Sync session {sync_session_id} failed: {e}")
            finally:
                result.completed_at = utcnow()
                with self.db_manager.get_session() as session:
                    self.db_manager.complete_sync_session(session, sync_session_id, result, status=status)

        self.logger.info(
            f"Sync session {sync_session_id} {status}: pulled={result.pulled} pushed={result.pushed} "
            f"deleted={result.deleted} conflicts={result.conflicts} errors={result.errors}"
        )
        return result

    async def _run_pass(self, push_only: bool, result: SyncResult) -> None:
        if self.credentials is not None:
            await self.credentials.ensure_fresh_access_token()
        if not push_only:
            await self._pull(result)
        await self._push(result)

    # Phase 1: pull

    async def _pull(self, result: SyncResult) -> None:
        token = self.store.get_sync_token()
        try:
            await self._pull_listing(token, result)
        except InvalidSyncToken as e:
            self.logger.warning(f"Sync token rejected ({e}), falling back to a full listing")
            self.store.set_sync_token(None)
            await self._pull_listing(None, result)

    async def _pull_listing(self, sync_token: Optional[str], result: SyncResult) -> None:
        """Apply every page of one listing, then advance the sync token.

        The token is only stored when all pages were applied without item
        errors; otherwise the next pass replays from the previous token.
        """
        full_listing = sync_token is None
        if full_listing:
            result.full_sync = True
        errors_before = result.errors
        seen: Set[str] = set()
        page_token: Optional[str] = None
        self._pending_inserts = {
            generate_compliant_event_id(event.id): event.id for event in self.store.list_unlinked()
        }

        while True:
            try:
                page = await self.remote.list_changes(
                    self.calendar_id, sync_token=sync_token, page_token=page_token
                )
            except (InvalidSyncToken, AuthenticationError):
                raise
            except CalendarServiceError as e:
                result.record_error(f"Failed to list remote changes: {e}")
                self.logger.error(f"Pull aborted, keeping previous sync token: {e}")
                return

            for item in page.items:
                seen.add(item.id)
                self._apply_remote_change(item, result)
            if not page.truncated:
                break
            page_token = page.next_page_token

        if full_listing:
            # A full listing is authoritative: linked events it did not
            # return were deleted remotely.
            for remote_id in set(self.store.remote_links()) - seen:
                self._apply_remote_change(RemoteEvent(id=remote_id, status='cancelled'), result)

        if result.errors > errors_before:
            self.logger.warning("Pull finished with errors, keeping previous sync token")
        elif page.next_sync_token:
            self.store.set_sync_token(page.next_sync_token)
            result.sync_token = page.next_sync_token

    def _apply_remote_change(self, item: RemoteEvent, result: SyncResult) -> None:
        try:
            self._apply_remote_item(item, result)
        except AuthenticationError:
            raise
        except ITEM_ERRORS as e:
            result.record_error(f"Failed to apply remote change {item.id}: {e}")
            self.logger.error(f"Failed to apply remote change {item.id}: {e}")

    def _apply_remote_item(self, item: RemoteEvent, result: SyncResult) -> None:
        local = self.store.get_by_remote_id(item.id)

        if local is None:
            if item.deleted:
                return
            pending_id = self._pending_inserts.pop(item.id, None)
            if pending_id is not None and self.store.link_pending_insert(pending_id, item) is not None:
                # Our own insert whose outcome was never recorded.
                return
            self.store.insert_remote(item)
            result.pulled += 1
            return

        if local.sync_status == SyncStatus.CONFLICT:
            # Keep the local side; only remember where the remote went.
            if item.deleted:
                self.store.mark_conflict(local.id, detach_remote=True)
            else:
                self.store.update_remote_metadata(local.id, item.etag, item.updated)
            return

        if local.is_dirty:
            self._apply_to_dirty(local, item, result)
            return

        if item.deleted:
            if self.store.purge(local.id, expected_version=local.local_version):
                result.deleted += 1
            else:
                # Edited locally while we were looking at it.
                self._conflict(local, item, result)
            return

        if item.etag and item.etag == local.remote_etag:
            return
        if self.store.overwrite_from_remote(local.id, item, expected_version=local.local_version):
            result.pulled += 1
        elif self.store.get(local.id) is not None:
            self._conflict(local, item, result)

    def _apply_to_dirty(self, local: CalendarEvent, item: RemoteEvent, result: SyncResult) -> None:
        if item.deleted:
            if local.sync_status == SyncStatus.DELETED:
                # Both sides deleted it.
                if self.store.purge(local.id):
                    result.deleted += 1
                return
            self._conflict(local, item, result)
            return

        if item.etag and item.etag == local.remote_etag:
            # Unchanged since our last push; the local edit is still pending.
            return
        self._conflict(local, item, result)

    def _conflict(self, local: CalendarEvent, item: RemoteEvent, result: SyncResult) -> None:
        if item.deleted:
            self.store.mark_conflict(local.id, detach_remote=True)
        else:
            self.store.mark_conflict(local.id, remote_etag=item.etag, remote_updated_at=item.updated)
        result.conflicts += 1

    # Phase 2: push

    async def _push(self, result: SyncResult) -> None:
        dirty = self.store.list_dirty()
        if dirty:
            self.logger.info(f"Pushing {len(dirty)} local changes")
        for event in dirty:
            try:
                await self._push_event(event, result)
            except AuthenticationError:
                raise
            except ITEM_ERRORS as e:
                result.record_error(f"Failed to push event {event.id}: {e}")
                self.logger.error(f"Failed to push event {event.id}: {e}")

    async def _push_event(self, event: CalendarEvent, result: SyncResult) -> None:
        if event.sync_status == SyncStatus.DELETED:
            await self._push_delete(event, result)
        elif event.is_local_only:
            await self._push_insert(event, result)
        else:
            await self._push_patch(event, result)

    async def _push_insert(self, event: CalendarEvent, result: SyncResult) -> None:
        created = await self.remote.insert_event(self.calendar_id, event)
        stored = self.store.mark_synced(
            event.id, created.id, created.etag, created.updated,
            expected_version=event.local_version,
        )
        if stored is None:
            # Deleted locally while the insert was in flight.
            self.logger.info(f"Event {event.id} was deleted during insert, removing remote copy")
            try:
                await self.remote.delete_event(self.calendar_id, created.id, created.etag)
            except RemoteNotFound:
                pass
            return
        result.pushed += 1

    async def _push_patch(self, event: CalendarEvent, result: SyncResult) -> None:
        try:
            updated = await self.remote.patch_event(
                self.calendar_id, event.remote_event_id, event, expected_etag=event.remote_etag
            )
        except RemoteConflict:
            self.logger.info(f"Remote copy of event {event.id} changed since last pull")
            self.store.mark_conflict(event.id)
            result.conflicts += 1
            return
        except RemoteNotFound:
            self.logger.info(f"Remote copy of event {event.id} was deleted, flagging conflict")
            self.store.mark_conflict(event.id, detach_remote=True)
            result.conflicts += 1
            return

        self.store.mark_synced(
            event.id, updated.id, updated.etag, updated.updated,
            expected_version=event.local_version,
        )
        result.pushed += 1

    async def _push_delete(self, event: CalendarEvent, result: SyncResult) -> None:
        if event.remote_event_id:
            try:
                await self.remote.delete_event(
                    self.calendar_id, event.remote_event_id, expected_etag=event.remote_etag
                )
            except RemoteNotFound:
                self.logger.debug(f"Remote copy of event {event.id} was already gone")
            except RemoteConflict:
                self.logger.info(f"Remote copy of deleted event {event.id} was edited, flagging conflict")
                self.store.mark_conflict(event.id)
                result.conflicts += 1
                return

        if self.store.purge(event.id, expected_version=event.local_version):
            result.deleted += 1

    # Conflict resolution

    async def resolve_conflict(
        self,
        event_id: str,
        resolution: ConflictResolution,
    ) -> Optional[CalendarEvent]:
        """Resolve a conflicted event against the current remote version.

        Args:
            event_id: Conflicted event
            resolution: KEEP_LOCAL re-queues the local version over the
                current remote etag; KEEP_REMOTE adopts the remote version

        Returns:
            The resolved event, or None if it was removed because the remote
            side no longer exists

        Raises:
            EventNotFound: If the event does not exist
            InvalidTransition: If the event is not in conflict
        """
        async with self._lock:
            event = self.store.get(event_id)
            if event is None:
                raise EventNotFound(f"Event {event_id} not found")
            if event.sync_status != SyncStatus.CONFLICT:
                raise InvalidTransition(f"Event {event_id} is not in conflict")

            remote: Optional[RemoteEvent] = None
            if event.remote_event_id:
                if self.credentials is not None:
                    await self.credentials.ensure_fresh_access_token()
                try:
                    remote = await self.remote.get_event(self.calendar_id, event.remote_event_id)
                except RemoteNotFound:
                    remote = None

            resolved = self.store.resolve(event_id, resolution, remote)
            self.logger.info(f"Resolved conflict on event {event_id} with {resolution.value}")
            return resolved
