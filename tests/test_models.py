"""Tests for data models."""

import pytest
from datetime import datetime, timedelta

import pytz

from offline_calsync.models import (
    AlertKind, CalendarEvent, EventColor, EventDraft, OAuthCredential, RemoteEvent,
    SyncResult, SyncStatus,
)


class TestSyncStatus:
    """Tests for the sync status state machine."""

    def test_dirty_states(self):
        """Pending creates/edits and tombstones need a push."""
        assert SyncStatus.LOCAL.is_dirty
        assert SyncStatus.DELETED.is_dirty
        assert not SyncStatus.SYNCED.is_dirty
        assert not SyncStatus.CONFLICT.is_dirty

    def test_conflict_can_be_resolved_either_way(self):
        assert SyncStatus.CONFLICT.can_transition_to(SyncStatus.SYNCED)
        assert SyncStatus.CONFLICT.can_transition_to(SyncStatus.LOCAL)

    def test_tombstone_never_comes_back(self):
        """A tombstone only moves to conflict."""
        assert not SyncStatus.DELETED.can_transition_to(SyncStatus.SYNCED)
        assert not SyncStatus.DELETED.can_transition_to(SyncStatus.LOCAL)
        assert SyncStatus.DELETED.can_transition_to(SyncStatus.CONFLICT)


class TestCalendarEvent:
    """Tests for CalendarEvent model."""

    def test_create_from_draft(self):
        """Test creating a stored event from a user draft."""
        start = datetime(2026, 3, 10, 9, 0, tzinfo=pytz.UTC)
        draft = EventDraft(title="Dentist", start=start, end=start + timedelta(hours=1))

        event = CalendarEvent.from_draft(draft)

        assert event.title == "Dentist"
        assert event.sync_status == SyncStatus.LOCAL
        assert event.is_local_only
        assert len(event.id) == 32
        assert event.alert == AlertKind.NONE

    def test_timezone_validation(self):
        """Naive datetimes are read as UTC."""
        event = CalendarEvent(
            title="Test Event",
            start=datetime(2026, 3, 10, 10, 0, 0),
            end=datetime(2026, 3, 10, 11, 0, 0),
        )

        assert event.start.tzinfo == pytz.UTC
        assert event.end.tzinfo == pytz.UTC
        assert event.created_at.tzinfo is not None

    def test_end_before_start_rejected(self):
        start = datetime.now(pytz.UTC)

        with pytest.raises(ValueError, match="must not be before start time"):
            CalendarEvent(title="Backwards", start=start, end=start - timedelta(hours=1))

    def test_zero_length_event_allowed(self):
        start = datetime.now(pytz.UTC)

        event = CalendarEvent(title="Reminder", start=start, end=start)

        assert event.start == event.end

    def test_blank_color_is_none(self):
        start = datetime.now(pytz.UTC)

        event = CalendarEvent(title="x", start=start, end=start, color="")

        assert event.color is None

    def test_content_hash(self):
        """Content hash ignores ids and sync metadata."""
        start = datetime(2026, 3, 10, 10, 0, 0, tzinfo=pytz.UTC)
        end = datetime(2026, 3, 10, 11, 0, 0, tzinfo=pytz.UTC)

        event1 = CalendarEvent(
            id="a", title="Standup", location="Room 1", start=start, end=end,
            color=EventColor.PEACOCK,
        )
        event2 = CalendarEvent(
            id="b", title="Standup", location="Room 1", start=start, end=end,
            color=EventColor.PEACOCK, sync_status=SyncStatus.SYNCED, remote_etag='"1"',
        )
        event3 = event1.model_copy(update={'color': EventColor.TOMATO})

        assert event1.content_hash() == event2.content_hash()
        assert event1.content_hash() != event3.content_hash()


class TestRemoteEvent:
    """Tests for RemoteEvent model."""

    def test_cancelled_item(self):
        event = RemoteEvent(id="r1", status="cancelled")

        assert event.deleted
        with pytest.raises(ValueError):
            event.content()

    def test_content_copies_user_fields(self):
        start = datetime(2026, 3, 10, 10, 0, tzinfo=pytz.UTC)
        remote = RemoteEvent(id="r1", etag='"e"', title="Lunch", start=start, end=start)

        content = remote.content()

        assert content['title'] == "Lunch"
        assert 'etag' not in content
        assert CalendarEvent(**content).title == "Lunch"


class TestOAuthCredential:
    """Tests for OAuthCredential model."""

    def test_expires_within_margin(self):
        now = datetime(2026, 3, 10, 10, 0, tzinfo=pytz.UTC)
        credential = OAuthCredential(access_token="t", expiry=now + timedelta(seconds=30))

        assert credential.expires_within(60, now=now)
        assert not credential.expires_within(10, now=now)

    def test_unknown_expiry_is_valid(self):
        assert not OAuthCredential(access_token="t").expires_within(60)


class TestSyncResult:
    """Tests for SyncResult model."""

    def test_record_error_keeps_first_message(self):
        result = SyncResult()

        result.record_error("first")
        result.record_error("second")

        assert result.errors == 2
        assert result.error_message == "first"
        assert not result.ok

    def test_duration(self):
        result = SyncResult()
        assert result.duration_seconds is None

        result.completed_at = result.started_at + timedelta(seconds=3)
        assert result.duration_seconds == 3
