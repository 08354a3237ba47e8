"""Durable local event store with per-event sync metadata."""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import func, or_

from .database import DatabaseManager, EventDB
from .models import (
    CalendarEvent, ConflictResolution, EventDraft, RemoteEvent, SyncStatus,
    CONTENT_FIELDS, utcnow,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for local store errors."""
    pass


class EventNotFound(StoreError, KeyError):
    """No live event exists with the requested id."""

    def __str__(self) -> str:
        return self.args[0] if self.args else "Event not found"


class InvalidTransition(StoreError, ValueError):
    """A sync status change the state machine does not allow."""
    pass


class LocalEventStore:
    """Keyed event storage for a single calendar.

    Writes are serialized per event id; each write runs in its own database
    transaction, so readers see either the old or the new row, never a mix.
    """

    def __init__(self, db_manager: DatabaseManager, calendar_id: str = 'primary'):
        """Initialize local event store.

        Args:
            db_manager: Database manager
            calendar_id: Remote calendar the stored events belong to
        """
        self.db_manager = db_manager
        self.calendar_id = calendar_id
        self.logger = logger.getChild('store')
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, event_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(event_id, threading.RLock())
        with lock:
            yield

    # Row conversion

    def _to_model(self, row: EventDB) -> CalendarEvent:
        return CalendarEvent(
            id=row.id,
            title=row.title,
            start=row.start,
            end=row.end,
            all_day=row.all_day,
            timezone=row.timezone,
            recurrence=row.recurrence,
            recurrence_custom=row.recurrence_custom,
            location=row.location,
            description=row.description,
            color=row.color,
            alert=row.alert,
            alert_offset=row.alert_offset,
            sync_status=row.sync_status,
            remote_event_id=row.remote_event_id,
            remote_calendar_id=row.remote_calendar_id,
            remote_etag=row.remote_etag,
            remote_updated_at=row.remote_updated_at,
            local_version=row.local_version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _apply_content(self, row: EventDB, content: Dict[str, Any]) -> None:
        for name in CONTENT_FIELDS:
            if name not in content:
                continue
            value = content[name]
            # Enums are stored by value.
            if hasattr(value, 'value'):
                value = value.value
            setattr(row, name, value)

    def _transition(self, row: EventDB, target: SyncStatus) -> None:
        current = SyncStatus(row.sync_status)
        if not current.can_transition_to(target):
            raise InvalidTransition(
                f"Event {row.id} cannot move from {current.value} to {target.value}"
            )
        row.sync_status = target.value

    def _live_row(self, session, event_id: str) -> EventDB:
        row = session.get(EventDB, event_id)
        if row is None or row.sync_status == SyncStatus.DELETED.value:
            raise EventNotFound(f"Event {event_id} not found")
        return row

    # Reads

    def get(self, event_id: str) -> Optional[CalendarEvent]:
        """Get an event by local id, tombstones included."""
        with self.db_manager.get_session() as session:
            row = session.get(EventDB, event_id)
            return self._to_model(row) if row else None

    def require(self, event_id: str) -> CalendarEvent:
        """Get a live (non-tombstoned) event.

        Raises:
            EventNotFound: If the event does not exist or is pending deletion
        """
        with self.db_manager.get_session() as session:
            return self._to_model(self._live_row(session, event_id))

    def get_by_remote_id(self, remote_event_id: str) -> Optional[CalendarEvent]:
        with self.db_manager.get_session() as session:
            row = session.query(EventDB).filter(
                EventDB.remote_calendar_id == self.calendar_id,
                EventDB.remote_event_id == remote_event_id,
            ).first()
            return self._to_model(row) if row else None

    def list(self, include_deleted: bool = False) -> List[CalendarEvent]:
        """Snapshot of stored events ordered by start time."""
        with self.db_manager.get_session() as session:
            query = session.query(EventDB)
            if not include_deleted:
                query = query.filter(EventDB.sync_status != SyncStatus.DELETED.value)
            return [self._to_model(row) for row in query.order_by(EventDB.start, EventDB.id).all()]

    def list_dirty(self) -> List[CalendarEvent]:
        """Events waiting to be pushed: pending creates/edits and tombstones."""
        with self.db_manager.get_session() as session:
            rows = session.query(EventDB).filter(
                EventDB.sync_status.in_([SyncStatus.LOCAL.value, SyncStatus.DELETED.value])
            ).order_by(EventDB.updated_at, EventDB.id).all()
            return [self._to_model(row) for row in rows]

    def list_unlinked(self) -> List[CalendarEvent]:
        """Pending local creates that have no remote counterpart yet."""
        with self.db_manager.get_session() as session:
            rows = session.query(EventDB).filter(
                EventDB.sync_status == SyncStatus.LOCAL.value,
                EventDB.remote_event_id.is_(None),
            ).all()
            return [self._to_model(row) for row in rows]

    def list_conflicts(self) -> List[CalendarEvent]:
        with self.db_manager.get_session() as session:
            rows = session.query(EventDB).filter(
                EventDB.sync_status == SyncStatus.CONFLICT.value
            ).order_by(EventDB.start).all()
            return [self._to_model(row) for row in rows]

    def remote_links(self) -> Dict[str, str]:
        """Map remote event ids to local ids for every linked event."""
        with self.db_manager.get_session() as session:
            rows = session.query(EventDB.remote_event_id, EventDB.id).filter(
                EventDB.remote_calendar_id == self.calendar_id,
                EventDB.remote_event_id.isnot(None),
            ).all()
            return {remote_id: local_id for remote_id, local_id in rows}

    def search(
        self,
        query: str,
        start: datetime,
        end: datetime,
        limit: int,
    ) -> List[CalendarEvent]:
        """Substring search over title, description and location.

        Every whitespace-separated term must match at least one of the three
        fields. Only events starting within ``[start, end]`` are considered.
        """
        with self.db_manager.get_session() as session:
            q = session.query(EventDB).filter(
                EventDB.sync_status != SyncStatus.DELETED.value,
                EventDB.start.between(start, end),
            )
            for term in query.lower().split():
                pattern = f"%{term}%"
                q = q.filter(or_(
                    func.lower(EventDB.title).like(pattern),
                    func.lower(func.coalesce(EventDB.description, '')).like(pattern),
                    func.lower(func.coalesce(EventDB.location, '')).like(pattern),
                ))
            rows = q.order_by(EventDB.start, EventDB.id).limit(limit).all()
            return [self._to_model(row) for row in rows]

    # Local mutations

    def upsert(self, event: CalendarEvent) -> CalendarEvent:
        """Write an event as given, creating the row if needed."""
        with self._locked(event.id):
            with self.db_manager.get_session() as session:
                row = session.get(EventDB, event.id)
                if row is None:
                    row = EventDB(id=event.id, created_at=event.created_at)
                    session.add(row)
                elif row.sync_status != event.sync_status.value:
                    self._transition(row, event.sync_status)
                self._apply_content(row, event.content())
                row.sync_status = event.sync_status.value
                row.remote_event_id = event.remote_event_id
                row.remote_calendar_id = event.remote_calendar_id
                row.remote_etag = event.remote_etag
                row.remote_updated_at = event.remote_updated_at
                row.local_version = event.local_version
                row.updated_at = event.updated_at
                session.commit()
                return self._to_model(row)

    def create(self, draft: EventDraft) -> CalendarEvent:
        """Store a new local-only event pending creation."""
        event = CalendarEvent.from_draft(draft)
        event.local_version = 1
        stored = self.upsert(event)
        self.logger.debug(f"Created local event {stored.id}")
        return stored

    def record_local_edit(self, event_id: str, content: Dict[str, Any]) -> CalendarEvent:
        """Apply a user edit.

        A synced event becomes dirty; a conflicted event keeps its conflict
        flag so the edit never clears an unresolved divergence.

        Raises:
            EventNotFound: If the event does not exist or is pending deletion
        """
        with self._locked(event_id):
            with self.db_manager.get_session() as session:
                row = self._live_row(session, event_id)
                current = self._to_model(row)
                edited = current.model_copy(update=content)
                # Re-run field validation on the merged content.
                edited = CalendarEvent(**edited.model_dump())
                if edited.content_hash() == current.content_hash():
                    return current

                self._apply_content(row, edited.content())
                if row.sync_status == SyncStatus.SYNCED.value:
                    self._transition(row, SyncStatus.LOCAL)
                row.local_version += 1
                row.updated_at = utcnow()
                session.commit()
                return self._to_model(row)

    def delete(self, event_id: str) -> bool:
        """Delete an event on behalf of the user.

        Local-only events are removed at once. Events with a remote
        counterpart are tombstoned until the remote delete is confirmed.

        Returns:
            True if the row was removed, False if it was tombstoned

        Raises:
            EventNotFound: If the event does not exist or is already pending deletion
        """
        with self._locked(event_id):
            with self.db_manager.get_session() as session:
                row = self._live_row(session, event_id)
                if not row.remote_event_id:
                    session.delete(row)
                    session.commit()
                    self.logger.debug(f"Removed local-only event {event_id}")
                    return True

                self._transition(row, SyncStatus.DELETED)
                row.local_version += 1
                row.updated_at = utcnow()
                session.commit()
                self.logger.debug(f"Tombstoned event {event_id}")
                return False

    # Sync engine writes

    def purge(self, event_id: str, expected_version: Optional[int] = None) -> bool:
        """Remove a row for good after the remote side agreed.

        Conflicted rows are never purged, and a row edited since
        ``expected_version`` was read is left alone.

        Returns:
            True if the row was removed
        """
        with self._locked(event_id):
            with self.db_manager.get_session() as session:
                row = session.get(EventDB, event_id)
                if row is None:
                    return False
                if row.sync_status == SyncStatus.CONFLICT.value:
                    return False
                if expected_version is not None and row.local_version != expected_version:
                    return False
                session.delete(row)
                session.commit()
                return True

    def mark_synced(
        self,
        event_id: str,
        remote_event_id: str,
        etag: Optional[str],
        remote_updated_at: Optional[datetime],
        expected_version: Optional[int] = None,
    ) -> Optional[CalendarEvent]:
        """Record a successful push.

        If the event was edited while the push was in flight it stays dirty
        (with the new remote metadata) so the newer edit is pushed next.

        Returns:
            The updated event, or None if the row vanished meanwhile
        """
        with self._locked(event_id):
            with self.db_manager.get_session() as session:
                row = session.get(EventDB, event_id)
                if row is None:
                    return None
                row.remote_event_id = remote_event_id
                row.remote_calendar_id = self.calendar_id
                row.remote_etag = etag
                row.remote_updated_at = remote_updated_at
                edited_meanwhile = (
                    expected_version is not None and row.local_version != expected_version
                )
                if row.sync_status == SyncStatus.LOCAL.value and not edited_meanwhile:
                    self._transition(row, SyncStatus.SYNCED)
                session.commit()
                return self._to_model(row)

    def link_pending_insert(self, event_id: str, remote: RemoteEvent) -> Optional[CalendarEvent]:
        """Attach a remote item created by an earlier, unrecorded insert.

        The row becomes synced when its fields match the remote copy. If it
        was edited after that insert it stays local, now carrying the remote
        etag, so the next push patches the edit.

        Returns:
            The linked event, or None if the row is gone or already linked
        """
        with self._locked(event_id):
            with self.db_manager.get_session() as session:
                row = session.get(EventDB, event_id)
                if row is None or row.remote_event_id is not None:
                    return None
                if row.sync_status != SyncStatus.LOCAL.value:
                    return None
                row.remote_event_id = remote.id
                row.remote_calendar_id = self.calendar_id
                row.remote_etag = remote.etag
                row.remote_updated_at = remote.updated
                current = self._to_model(row)
                if current.content_hash() == CalendarEvent(**remote.content()).content_hash():
                    self._transition(row, SyncStatus.SYNCED)
                session.commit()
                self.logger.info(f"Linked event {event_id} to remote {remote.id}")
                return self._to_model(row)

    def mark_conflict(
        self,
        event_id: str,
        remote_etag: Optional[str] = None,
        remote_updated_at: Optional[datetime] = None,
        detach_remote: bool = False,
    ) -> Optional[CalendarEvent]:
        """Flag a divergence without touching the local field values.

        Args:
            event_id: Local event id
            remote_etag: Latest remote etag, kept for diagnostics and resolution
            remote_updated_at: Latest remote revision time
            detach_remote: Drop the remote link because the remote item is gone

        Returns:
            The updated event, or None if the row vanished meanwhile
        """
        with self._locked(event_id):
            with self.db_manager.get_session() as session:
                row = session.get(EventDB, event_id)
                if row is None:
                    return None
                self._transition(row, SyncStatus.CONFLICT)
                if detach_remote:
                    row.remote_event_id = None
                    row.remote_etag = None
                    row.remote_updated_at = None
                else:
                    if remote_etag is not None:
                        row.remote_etag = remote_etag
                    if remote_updated_at is not None:
                        row.remote_updated_at = remote_updated_at
                session.commit()
                self.logger.info(f"Event {event_id} marked as conflict")
                return self._to_model(row)

    def update_remote_metadata(
        self,
        event_id: str,
        remote_etag: Optional[str],
        remote_updated_at: Optional[datetime],
    ) -> None:
        """Refresh the remembered remote revision without changing status."""
        with self._locked(event_id):
            with self.db_manager.get_session() as session:
                row = session.get(EventDB, event_id)
                if row is None:
                    return
                row.remote_etag = remote_etag
                row.remote_updated_at = remote_updated_at
                session.commit()

    def insert_remote(self, remote: RemoteEvent) -> CalendarEvent:
        """Materialize a remote-origin event as synced."""
        event = CalendarEvent(
            **remote.content(),
            sync_status=SyncStatus.SYNCED,
            remote_event_id=remote.id,
            remote_calendar_id=self.calendar_id,
            remote_etag=remote.etag,
            remote_updated_at=remote.updated,
        )
        return self.upsert(event)

    def overwrite_from_remote(
        self,
        event_id: str,
        remote: RemoteEvent,
        expected_version: Optional[int] = None,
    ) -> Optional[CalendarEvent]:
        """Replace local fields with the remote version and mark synced.

        Returns:
            The updated event, or None if the row vanished or was edited since
            ``expected_version`` was read
        """
        content = remote.content()
        with self._locked(event_id):
            with self.db_manager.get_session() as session:
                row = session.get(EventDB, event_id)
                if row is None:
                    return None
                if expected_version is not None and row.local_version != expected_version:
                    return None
                self._transition(row, SyncStatus.SYNCED)
                self._apply_content(row, content)
                row.remote_event_id = remote.id
                row.remote_calendar_id = self.calendar_id
                row.remote_etag = remote.etag
                row.remote_updated_at = remote.updated
                row.updated_at = utcnow()
                session.commit()
                return self._to_model(row)

    def resolve(
        self,
        event_id: str,
        resolution: ConflictResolution,
        remote: Optional[RemoteEvent],
    ) -> Optional[CalendarEvent]:
        """Leave the conflict state.

        Args:
            event_id: Conflicted event
            resolution: Which side wins
            remote: Current remote version, or None if it no longer exists

        Returns:
            The resolved event, or None if it was removed

        Raises:
            EventNotFound: If the event does not exist
            InvalidTransition: If the event is not in conflict
        """
        with self._locked(event_id):
            with self.db_manager.get_session() as session:
                row = session.get(EventDB, event_id)
                if row is None:
                    raise EventNotFound(f"Event {event_id} not found")
                if row.sync_status != SyncStatus.CONFLICT.value:
                    raise InvalidTransition(f"Event {event_id} is not in conflict")

                if resolution == ConflictResolution.KEEP_REMOTE:
                    if remote is None:
                        session.delete(row)
                        session.commit()
                        return None
                    self._transition(row, SyncStatus.SYNCED)
                    self._apply_content(row, remote.content())
                    row.remote_event_id = remote.id
                    row.remote_calendar_id = self.calendar_id
                else:
                    self._transition(row, SyncStatus.LOCAL)
                    if remote is None:
                        # Recreated remotely on the next push.
                        row.remote_event_id = None
                        row.remote_calendar_id = None

                row.remote_etag = remote.etag if remote else None
                row.remote_updated_at = remote.updated if remote else None
                row.local_version += 1
                row.updated_at = utcnow()
                session.commit()
                return self._to_model(row)

    # Sync token

    def _token_key(self) -> str:
        return f"sync_token:{self.calendar_id}"

    def get_sync_token(self) -> Optional[str]:
        with self.db_manager.get_session() as session:
            return self.db_manager.get_state(session, self._token_key())

    def set_sync_token(self, token: Optional[str]) -> None:
        """Persist the incremental baseline; None forces a full listing next time."""
        with self.db_manager.get_session() as session:
            self.db_manager.set_state(session, self._token_key(), token)

    def count_by_status(self) -> Dict[str, int]:
        with self.db_manager.get_session() as session:
            rows = session.query(EventDB.sync_status, func.count(EventDB.id)).group_by(
                EventDB.sync_status
            ).all()
            counts = {status.value: 0 for status in SyncStatus}
            counts.update({status: count for status, count in rows})
            return counts
