"""Tests for the background sync scheduler."""

import asyncio

import pytest

from offline_calsync.models import SyncResult
from offline_calsync.scheduler import SyncScheduler, SyncTrigger


class RecordingSync:
    """Stands in for CalendarApp.run_sync and records each pass."""

    def __init__(self):
        self.calls = []
        self.release = asyncio.Event()
        self.release.set()
        self.started = asyncio.Event()

    async def __call__(self, push_only):
        self.calls.append(push_only)
        self.started.set()
        await self.release.wait()
        return SyncResult(push_only=push_only)


@pytest.fixture
def recorder():
    return RecordingSync()


@pytest.fixture
def scheduler(settings, recorder):
    return SyncScheduler(settings, recorder)


async def settle(seconds=0.1):
    await asyncio.sleep(seconds)


class TestRequests:
    """Collapsing and dropping of sync requests."""

    @pytest.mark.asyncio
    async def test_requests_collapse_into_one_pass(self, scheduler, recorder):
        scheduler.request(SyncTrigger.FOCUS)
        scheduler.request(SyncTrigger.USER)
        scheduler.request(SyncTrigger.TIMER)

        scheduler.start()
        await settle()
        await scheduler.stop()

        assert recorder.calls == [False]
        assert scheduler.last_result is not None
        assert scheduler.last_sync is not None

    @pytest.mark.asyncio
    async def test_full_pass_absorbs_push_only(self, scheduler, recorder):
        scheduler.request(SyncTrigger.MUTATION, push_only=True)
        scheduler.request(SyncTrigger.FOCUS)
        scheduler.request(SyncTrigger.MUTATION, push_only=True)

        scheduler.start()
        await settle()
        await scheduler.stop()

        assert recorder.calls == [False]

    @pytest.mark.asyncio
    async def test_push_only_requests_stay_push_only(self, scheduler, recorder):
        scheduler.request(SyncTrigger.MUTATION, push_only=True)
        scheduler.request(SyncTrigger.MUTATION, push_only=True)

        scheduler.start()
        await settle()
        await scheduler.stop()

        assert recorder.calls == [True]

    @pytest.mark.asyncio
    async def test_requests_during_a_pass_are_dropped(self, scheduler, recorder):
        recorder.release.clear()
        scheduler.start()
        scheduler.request(SyncTrigger.USER)
        await recorder.started.wait()

        assert scheduler.in_flight
        assert scheduler.request(SyncTrigger.FOCUS) is False
        assert not scheduler.has_pending

        recorder.release.set()
        await settle()
        await scheduler.stop()

        assert recorder.calls == [False]
        assert not scheduler.in_flight


class TestDebounce:
    """Local mutations schedule one push-only pass."""

    @pytest.mark.asyncio
    async def test_burst_of_mutations_pushes_once(self, scheduler, recorder):
        scheduler.start()
        loop = asyncio.get_running_loop()

        for _ in range(3):
            # Mutations may come from worker threads.
            await loop.run_in_executor(None, scheduler.notify_local_mutation)
        await settle(0.3)
        await scheduler.stop()

        assert recorder.calls == [True]

    @pytest.mark.asyncio
    async def test_mutation_before_start_is_ignored(self, scheduler, recorder):
        scheduler.notify_local_mutation()

        assert not scheduler.has_pending

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_debounce(self, scheduler, recorder):
        scheduler.debounce_seconds = 0.2
        scheduler.start()
        scheduler.notify_local_mutation()
        await settle(0.05)

        await scheduler.stop()
        await settle(0.3)

        assert recorder.calls == []
