"""Data models for offline calendar synchronization."""

import hashlib
import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, validator
import pytz


class SyncStatus(str, Enum):
    """Per-event synchronization state.

    ``DELETED`` is the tombstone: the user removed an event that still has a
    remote counterpart, and the remote delete has not been confirmed yet.
    """

    LOCAL = "local"
    SYNCED = "synced"
    CONFLICT = "conflict"
    DELETED = "deleted"

    @property
    def is_dirty(self) -> bool:
        """Whether the event carries local changes not yet reflected remotely."""
        return self in (SyncStatus.LOCAL, SyncStatus.DELETED)

    @property
    def is_tombstone(self) -> bool:
        return self is SyncStatus.DELETED

    def can_transition_to(self, target: "SyncStatus") -> bool:
        """Check whether moving from this state to ``target`` is legal."""
        return target in _TRANSITIONS[self]


_TRANSITIONS: Dict[SyncStatus, FrozenSet[SyncStatus]] = {
    SyncStatus.LOCAL: frozenset({
        SyncStatus.LOCAL, SyncStatus.SYNCED, SyncStatus.CONFLICT, SyncStatus.DELETED,
    }),
    SyncStatus.SYNCED: frozenset({
        SyncStatus.SYNCED, SyncStatus.LOCAL, SyncStatus.CONFLICT, SyncStatus.DELETED,
    }),
    # Leaving CONFLICT is a resolution: adopt remote (SYNCED), re-queue the
    # local side (LOCAL) or delete it (DELETED).
    SyncStatus.CONFLICT: frozenset({
        SyncStatus.CONFLICT, SyncStatus.SYNCED, SyncStatus.LOCAL, SyncStatus.DELETED,
    }),
    # A tombstone is only finalized (row removed) or surfaced as a conflict.
    SyncStatus.DELETED: frozenset({SyncStatus.DELETED, SyncStatus.CONFLICT}),
}


class EventColor(str, Enum):
    """Event palette, keyed by the provider's colorId."""

    LAVENDER = "1"
    SAGE = "2"
    GRAPE = "3"
    FLAMINGO = "4"
    BANANA = "5"
    TANGERINE = "6"
    PEACOCK = "7"
    GRAPHITE = "8"
    BLUEBERRY = "9"
    BASIL = "10"
    TOMATO = "11"

    @property
    def label(self) -> str:
        return self.name.title()


class AlertKind(str, Enum):
    """Reminder presets offered for an event."""

    NONE = "none"
    MINUTES_5 = "5m"
    MINUTES_10 = "10m"
    MINUTES_15 = "15m"
    MINUTES_30 = "30m"
    HOUR_1 = "1h"
    DAY_1 = "1d"
    CUSTOM = "custom"


ALERT_MINUTES: Dict[AlertKind, int] = {
    AlertKind.MINUTES_5: 5,
    AlertKind.MINUTES_10: 10,
    AlertKind.MINUTES_15: 15,
    AlertKind.MINUTES_30: 30,
    AlertKind.HOUR_1: 60,
    AlertKind.DAY_1: 1440,
}


class Recurrence(str, Enum):
    """Recurrence tag. Rules are carried opaquely, never expanded."""

    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class ConflictResolution(str, Enum):
    """Explicit resolutions for an event in the CONFLICT state."""

    KEEP_LOCAL = "keep_local"  # Re-push the local version over the current remote one
    KEEP_REMOTE = "keep_remote"  # Discard local edits and adopt the remote version


CONTENT_FIELDS = (
    'title', 'start', 'end', 'all_day', 'timezone', 'recurrence',
    'recurrence_custom', 'location', 'description', 'color', 'alert',
    'alert_offset',
)


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class EventContent(BaseModel):
    """User-editable event fields shared by drafts and stored events."""

    title: str = Field("", description="Event title")
    start: datetime = Field(..., description="Event start instant")
    end: datetime = Field(..., description="Event end instant")
    all_day: bool = Field(False, description="Whether event is all-day")
    timezone: Optional[str] = Field(None, description="IANA timezone for timed events")
    recurrence: Recurrence = Field(Recurrence.NONE)
    recurrence_custom: Optional[str] = Field(None, description="Custom recurrence rule lines")
    location: Optional[str] = Field(None)
    description: Optional[str] = Field(None)
    color: Optional[EventColor] = Field(None, description="Palette color")
    alert: AlertKind = Field(AlertKind.NONE)
    alert_offset: int = Field(0, ge=0, description="Custom alert offset in minutes")

    @validator('start', 'end', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @validator('end')
    def end_not_before_start(cls, v, values):
        """Ensure end time is not before start time."""
        if 'start' in values and v < values['start']:
            raise ValueError(f"End time ({v}) must not be before start time ({values['start']})")
        return v

    @validator('color', pre=True)
    def blank_color_is_none(cls, v):
        if v == "":
            return None
        return v

    def content(self) -> Dict[str, Any]:
        """Return the user-editable fields as a dictionary."""
        return {name: getattr(self, name) for name in CONTENT_FIELDS}

    def content_hash(self) -> str:
        """Generate content hash for change detection."""
        content = {
            'title': self.title,
            'start': self.start.astimezone(pytz.UTC).isoformat(),
            'end': self.end.astimezone(pytz.UTC).isoformat(),
            'all_day': self.all_day,
            'timezone': self.timezone,
            'recurrence': self.recurrence.value,
            'recurrence_custom': self.recurrence_custom or '',
            'location': self.location or '',
            'description': self.description or '',
            'color': self.color.value if self.color else None,
            'alert': self.alert.value,
            'alert_offset': self.alert_offset,
        }
        content_str = json.dumps(content, sort_keys=True)
        return hashlib.sha256(content_str.encode()).hexdigest()


class EventDraft(EventContent):
    """A new event as entered by the user, before it is stored."""


class CalendarEvent(EventContent):
    """A stored calendar event with its synchronization metadata."""

    id: str = Field(default_factory=lambda: uuid4().hex, description="Stable local identifier")
    sync_status: SyncStatus = Field(SyncStatus.LOCAL)
    remote_event_id: Optional[str] = Field(None, description="Remote counterpart id")
    remote_calendar_id: Optional[str] = Field(None)
    remote_etag: Optional[str] = Field(None, description="Last known remote etag")
    remote_updated_at: Optional[datetime] = Field(None, description="Last known remote revision time")
    local_version: int = Field(0, ge=0, description="Bumped on every local mutation")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @validator('created_at', 'updated_at', 'remote_updated_at', pre=True)
    def ensure_metadata_timezone_aware(cls, v):
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @property
    def is_dirty(self) -> bool:
        return self.sync_status.is_dirty

    @property
    def is_local_only(self) -> bool:
        return not self.remote_event_id

    @classmethod
    def from_draft(cls, draft: EventDraft) -> "CalendarEvent":
        return cls(**draft.content())


class RemoteEvent(BaseModel):
    """An event as reported by the remote calendar.

    Cancelled items carry little more than an id, so the time fields are
    optional here.
    """

    id: str
    status: str = "confirmed"
    etag: Optional[str] = None
    updated: Optional[datetime] = None
    title: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    timezone: Optional[str] = None
    recurrence: Recurrence = Recurrence.NONE
    recurrence_custom: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    color: Optional[EventColor] = None
    alert: AlertKind = AlertKind.NONE
    alert_offset: int = 0

    @validator('start', 'end', 'updated', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @property
    def deleted(self) -> bool:
        return self.status == "cancelled"

    def content(self) -> Dict[str, Any]:
        """Return the fields that are copied onto a local event."""
        if self.start is None or self.end is None:
            raise ValueError(f"Remote event {self.id} has no start/end")
        return {name: getattr(self, name) for name in CONTENT_FIELDS}


@dataclass
class ChangePage:
    """One page of a remote change listing."""

    items: List[RemoteEvent]
    next_sync_token: Optional[str] = None
    next_page_token: Optional[str] = None

    @property
    def truncated(self) -> bool:
        """More pages follow; ``next_sync_token`` is not trustworthy yet."""
        return self.next_page_token is not None


class OAuthCredential(BaseModel):
    """Stored OAuth credential plus the profile of the authorized account."""

    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None
    token_type: str = "Bearer"
    scope: str = ""
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    picture: Optional[str] = None

    @validator('expiry', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    def expires_within(self, margin_seconds: int, now: Optional[datetime] = None) -> bool:
        """Whether the access token expires within ``margin_seconds``.

        A credential without a known expiry is treated as still valid.
        """
        if self.expiry is None:
            return False
        now = now or utcnow()
        return self.expiry <= now + timedelta(seconds=margin_seconds)


class CredentialStatus(BaseModel):
    """Connection status shown to the user."""

    connected: bool = False
    client_configured: bool = False
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    has_refresh_token: bool = False
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    picture: Optional[str] = None


class SyncResult(BaseModel):
    """Outcome of a single sync pass."""

    calendar_id: str = "primary"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(None)
    push_only: bool = Field(False)
    full_sync: bool = Field(False, description="Pull ran as a full listing")
    skipped: bool = Field(False, description="Another pass was already running")
    unauthenticated: bool = Field(False, description="Pass aborted for lack of valid credentials")

    pulled: int = Field(0)
    pushed: int = Field(0)
    deleted: int = Field(0)
    conflicts: int = Field(0)
    errors: int = Field(0)

    sync_token: Optional[str] = Field(None)
    error_message: Optional[str] = Field(None)

    def record_error(self, message: str) -> None:
        """Count an item-scoped failure; the first message is kept for display."""
        self.errors += 1
        if not self.error_message:
            self.error_message = message

    @property
    def ok(self) -> bool:
        return self.errors == 0 and not self.skipped

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class Holiday(BaseModel):
    """Read-only holiday overlay entry; never persisted or synced."""

    title: str
    day: date
    color: EventColor = EventColor.TOMATO


class SyncConfiguration(BaseModel):
    """Sync configuration model."""

    sync_interval_minutes: int = Field(15, ge=1)
    push_debounce_seconds: float = Field(2.0, ge=0)
    sync_timeout_seconds: float = Field(120.0, gt=0)
    token_expiry_margin_seconds: int = Field(60, ge=0)
    page_size: int = Field(250, ge=1, le=2500)
    retry_attempts: int = Field(3, ge=1)
    search_default_limit: int = Field(100, ge=1)
    search_max_limit: int = Field(200, ge=1)
