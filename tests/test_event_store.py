"""Tests for the local event store."""

from datetime import datetime, timedelta

import pytest
import pytz

from conftest import at, draft
from offline_calsync.event_store import EventNotFound, InvalidTransition
from offline_calsync.models import EventColor, EventDraft, RemoteEvent, SyncStatus


def make_synced(store, title="Synced", remote_id="r1"):
    return store.insert_remote(RemoteEvent(
        id=remote_id,
        etag='"v1"',
        updated=at(1),
        title=title,
        start=at(10),
        end=at(10, 10),
    ))


class TestLocalMutations:
    """User-facing create/edit/delete."""

    def test_create_stores_local_event(self, store):
        event = store.create(draft("Dentist", color=EventColor.SAGE))

        stored = store.get(event.id)
        assert stored.title == "Dentist"
        assert stored.sync_status == SyncStatus.LOCAL
        assert stored.is_local_only
        assert stored.color == EventColor.SAGE
        assert stored.local_version == 1

    def test_datetimes_round_trip_as_aware_utc(self, store):
        tz = pytz.timezone('Asia/Seoul')
        start = tz.localize(datetime(2026, 5, 1, 9, 0))
        event = store.create(EventDraft(title="Seoul call", start=start, end=start + timedelta(hours=2)))

        stored = store.get(event.id)
        assert stored.start.tzinfo is not None
        assert stored.start == start
        assert stored.start.utcoffset() == timedelta(0)

    def test_edit_marks_synced_event_dirty(self, store):
        synced = make_synced(store)

        edited = store.record_local_edit(synced.id, {'title': 'Renamed'})

        assert edited.title == 'Renamed'
        assert edited.sync_status == SyncStatus.LOCAL
        assert edited.local_version == synced.local_version + 1
        assert [e.id for e in store.list_dirty()] == [synced.id]

    def test_edit_keeps_conflict_flag(self, store):
        synced = make_synced(store)
        store.mark_conflict(synced.id, remote_etag='"v2"')

        edited = store.record_local_edit(synced.id, {'location': 'Room 1'})

        assert edited.sync_status == SyncStatus.CONFLICT
        assert edited.location == 'Room 1'
        assert store.list_dirty() == []

    def test_unchanged_edit_is_a_no_op(self, store):
        synced = make_synced(store)

        edited = store.record_local_edit(synced.id, {'title': 'Synced'})

        assert edited.sync_status == SyncStatus.SYNCED
        assert edited.local_version == synced.local_version

    def test_edit_rejects_end_before_start(self, store):
        event = store.create(draft())

        with pytest.raises(ValueError):
            store.record_local_edit(event.id, {'end': event.start - timedelta(hours=1)})
        assert store.get(event.id).end == event.end

    def test_delete_local_only_removes_row(self, store):
        event = store.create(draft())

        assert store.delete(event.id) is True
        assert store.get(event.id) is None

    def test_delete_synced_event_tombstones_it(self, store):
        synced = make_synced(store)

        assert store.delete(synced.id) is False

        tombstone = store.get(synced.id)
        assert tombstone.sync_status == SyncStatus.DELETED
        assert tombstone.remote_event_id == 'r1'
        assert store.list() == []
        assert [e.id for e in store.list(include_deleted=True)] == [synced.id]
        assert [e.id for e in store.list_dirty()] == [synced.id]

    def test_tombstone_cannot_be_edited_or_deleted_again(self, store):
        synced = make_synced(store)
        store.delete(synced.id)

        with pytest.raises(EventNotFound):
            store.record_local_edit(synced.id, {'title': 'Back'})
        with pytest.raises(EventNotFound):
            store.delete(synced.id)

    def test_missing_event_raises(self, store):
        with pytest.raises(EventNotFound):
            store.require('nope')


class TestSyncWrites:
    """Writes issued by the sync engine."""

    def test_mark_synced_after_insert(self, store):
        event = store.create(draft())

        synced = store.mark_synced(event.id, 'r9', '"e1"', at(2), expected_version=event.local_version)

        assert synced.sync_status == SyncStatus.SYNCED
        assert synced.remote_event_id == 'r9'
        assert synced.remote_calendar_id == 'primary'
        assert store.get_by_remote_id('r9').id == event.id

    def test_mark_synced_keeps_newer_edit_dirty(self, store):
        event = store.create(draft())
        store.record_local_edit(event.id, {'title': 'Edited during push'})

        synced = store.mark_synced(event.id, 'r9', '"e1"', at(2), expected_version=event.local_version)

        assert synced.sync_status == SyncStatus.LOCAL
        assert synced.remote_etag == '"e1"'
        assert synced.title == 'Edited during push'

    def test_mark_synced_on_missing_row_returns_none(self, store):
        assert store.mark_synced('gone', 'r1', '"e"', None) is None

    def test_purge_refuses_conflicts_and_stale_versions(self, store):
        synced = make_synced(store)
        assert store.purge(synced.id, expected_version=synced.local_version + 1) is False

        store.mark_conflict(synced.id)
        assert store.purge(synced.id) is False
        assert store.get(synced.id) is not None

    def test_overwrite_from_remote_respects_version_guard(self, store):
        synced = make_synced(store)
        store.record_local_edit(synced.id, {'title': 'Local'})
        newer = RemoteEvent(id='r1', etag='"v2"', title='Remote', start=at(11), end=at(11, 10))

        assert store.overwrite_from_remote(synced.id, newer, expected_version=synced.local_version) is None
        assert store.get(synced.id).title == 'Local'

    def test_tombstone_cannot_become_synced(self, store):
        synced = make_synced(store)
        store.delete(synced.id)
        newer = RemoteEvent(id='r1', etag='"v2"', title='Remote', start=at(11), end=at(11, 10))

        with pytest.raises(InvalidTransition):
            store.overwrite_from_remote(synced.id, newer)

    def test_mark_conflict_can_detach_remote(self, store):
        synced = make_synced(store)

        conflicted = store.mark_conflict(synced.id, detach_remote=True)

        assert conflicted.sync_status == SyncStatus.CONFLICT
        assert conflicted.remote_event_id is None
        assert conflicted.remote_etag is None
        assert store.remote_links() == {}

    def test_sync_token_round_trip(self, store):
        assert store.get_sync_token() is None

        store.set_sync_token('tok-7')
        assert store.get_sync_token() == 'tok-7'

        store.set_sync_token(None)
        assert store.get_sync_token() is None

    def test_count_by_status(self, store):
        store.create(draft())
        make_synced(store)

        counts = store.count_by_status()

        assert counts == {'local': 1, 'synced': 1, 'conflict': 0, 'deleted': 0}


class TestSearch:
    """Substring search over the store."""

    def test_all_terms_must_match(self, store):
        store.create(draft("Team lunch", location="Cafe Blue"))
        store.create(draft("Team review", description="quarterly numbers"))
        store.create(draft("Dentist"))

        found = store.search("team CAFE", at(1), at(28), 10)

        assert [e.title for e in found] == ["Team lunch"]

    def test_window_and_limit(self, store):
        for day in (2, 5, 9, 20):
            store.create(draft(f"Standup {day}", day=day))

        found = store.search("standup", at(4), at(10), 10)
        assert [e.title for e in found] == ["Standup 5", "Standup 9"]

        assert len(store.search("standup", at(1), at(28), 3)) == 3

    def test_tombstones_are_excluded(self, store):
        synced = make_synced(store, title="Board meeting")
        store.delete(synced.id)

        assert store.search("board", at(1), at(28), 10) == []
