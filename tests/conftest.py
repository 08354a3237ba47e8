"""Shared fixtures: isolated settings, a SQLite store and an in-memory remote."""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from offline_calsync.config import Settings
from offline_calsync.database import DatabaseManager
from offline_calsync.event_store import LocalEventStore
from offline_calsync.models import (
    CalendarEvent, ChangePage, CredentialStatus, EventDraft, RemoteEvent, SyncConfiguration,
)
from offline_calsync.services import (
    BaseRemoteCalendar, InvalidGrant, InvalidSyncToken, RemoteConflict, RemoteNotFound,
)
from offline_calsync.services.google import generate_compliant_event_id
from offline_calsync.sync_engine import SyncEngine


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        google_client_id='x' * 20,
        google_client_secret='y' * 20,
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        sync_config=SyncConfiguration(push_debounce_seconds=0.05),
    )
    values.update(overrides)
    return TestSettings(**values)


def at(day: int, hour: int = 9) -> datetime:
    return datetime(2026, 3, day, hour, tzinfo=pytz.UTC)


def draft(title: str = "Dentist", day: int = 10, hour: int = 9, **fields) -> EventDraft:
    return EventDraft(title=title, start=at(day, hour), end=at(day, hour) + timedelta(hours=1), **fields)


class FakeRemoteCalendar(BaseRemoteCalendar):
    """In-memory calendar with Google-like sync tokens, paging and etags.

    Every write bumps a change sequence; a sync token ``tok-N`` returns the
    items changed after sequence N, including cancelled ones.
    """

    def __init__(self, page_size: int = 50):
        self.page_size = page_size
        self.events: Dict[str, RemoteEvent] = {}
        self.changed_at: Dict[str, int] = {}
        self.seq = 0
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.invalid_tokens: Set[str] = set()
        self.full_listings = 0
        self._counter = 0

    # Remote-side edits, as another client would make them

    def _etag(self) -> str:
        self._counter += 1
        return f'"etag-{self._counter}"'

    def _store(self, event: RemoteEvent) -> RemoteEvent:
        self.seq += 1
        self.events[event.id] = event
        self.changed_at[event.id] = self.seq
        return event

    def add_remote(self, title: str, day: int = 12, hour: int = 10, **fields) -> RemoteEvent:
        self._counter += 1
        return self._store(RemoteEvent(
            id=f"remote{self._counter}",
            etag=self._etag(),
            updated=datetime.now(pytz.UTC),
            title=title,
            start=at(day, hour),
            end=at(day, hour) + timedelta(hours=1),
            **fields,
        ))

    def edit_remote(self, remote_id: str, **changes) -> RemoteEvent:
        current = self.events[remote_id]
        changes.update(etag=self._etag(), updated=datetime.now(pytz.UTC))
        return self._store(current.model_copy(update=changes))

    def delete_remote(self, remote_id: str) -> None:
        self._store(RemoteEvent(id=remote_id, status='cancelled', etag=self._etag()))

    def forget_remote(self, remote_id: str) -> None:
        """Drop an item without leaving a cancelled record (expired history)."""
        self.events.pop(remote_id, None)
        self.changed_at.pop(remote_id, None)

    def live(self) -> List[RemoteEvent]:
        return [e for e in self.events.values() if not e.deleted]

    def current_token(self) -> str:
        return f"tok-{self.seq}"

    def fail(self, operation: str, error: Exception, times: int = 1) -> None:
        self.failures.setdefault(operation, []).extend([error] * times)

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        # Yield like a real network call would.
        await asyncio.sleep(0)
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _existing(self, remote_id: str) -> RemoteEvent:
        event = self.events.get(remote_id)
        if event is None or event.deleted:
            raise RemoteNotFound(f"{remote_id} not found")
        return event

    # BaseRemoteCalendar

    async def list_changes(self, calendar_id, sync_token=None, page_token=None) -> ChangePage:
        await self._enter('list_changes')
        if sync_token is not None:
            if sync_token in self.invalid_tokens or not sync_token.startswith('tok-'):
                raise InvalidSyncToken(f"token {sync_token} expired")
            since = int(sync_token[4:])
            items = [e for e in self.events.values() if self.changed_at[e.id] > since]
        else:
            if page_token is None:
                self.full_listings += 1
            items = self.live()
        items.sort(key=lambda e: self.changed_at[e.id])

        offset = int(page_token) if page_token else 0
        page = items[offset:offset + self.page_size]
        if offset + self.page_size < len(items):
            return ChangePage(items=page, next_page_token=str(offset + self.page_size))
        return ChangePage(items=page, next_sync_token=self.current_token())

    async def get_event(self, calendar_id, remote_id) -> RemoteEvent:
        await self._enter('get_event')
        return self._existing(remote_id)

    async def insert_event(self, calendar_id, event: CalendarEvent) -> RemoteEvent:
        await self._enter('insert_event')
        return self._store(RemoteEvent(
            id=generate_compliant_event_id(event.id),
            etag=self._etag(),
            updated=datetime.now(pytz.UTC),
            **event.content(),
        ))

    async def patch_event(self, calendar_id, remote_id, event, expected_etag) -> RemoteEvent:
        await self._enter('patch_event')
        current = self._existing(remote_id)
        if expected_etag and expected_etag != current.etag:
            raise RemoteConflict(f"{remote_id} etag is {current.etag}, not {expected_etag}")
        return self._store(current.model_copy(update=dict(
            event.content(), etag=self._etag(), updated=datetime.now(pytz.UTC),
        )))

    async def delete_event(self, calendar_id, remote_id, expected_etag) -> None:
        await self._enter('delete_event')
        current = self._existing(remote_id)
        if expected_etag and expected_etag != current.etag:
            raise RemoteConflict(f"{remote_id} etag is {current.etag}, not {expected_etag}")
        self.delete_remote(remote_id)

    async def list_range(self, calendar_id, time_min, time_max) -> List[RemoteEvent]:
        await self._enter('list_range')
        return [
            e for e in self.live()
            if e.start is not None and time_min <= e.start < time_max
        ]


class FakeCredentials:
    """Stands in for CredentialManager without touching Google."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.token_checks = 0
        self.exchanged: List[str] = []
        self.logged_out = False

    async def ensure_fresh_access_token(self) -> str:
        self.token_checks += 1
        if self.error:
            raise self.error
        return "access-token"

    def get_status(self) -> CredentialStatus:
        return CredentialStatus(
            connected=self.error is None and not self.logged_out,
            client_configured=True,
            has_refresh_token=True,
            user_email="user@example.com",
        )

    def begin_authorization(self, state: str) -> str:
        return f"https://accounts.example.com/auth?state={state}"

    async def exchange_code(self, code: str, state: Optional[str] = None):
        if code == "bad":
            raise InvalidGrant("code rejected")
        self.exchanged.append(code)

    async def logout(self) -> None:
        self.logged_out = True


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def store(db_manager):
    return LocalEventStore(db_manager, 'primary')


@pytest.fixture
def remote():
    return FakeRemoteCalendar()


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
def engine(settings, store, remote, db_manager, credentials):
    return SyncEngine(settings, store, remote, db_manager, credentials)
