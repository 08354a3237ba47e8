"""Background sync worker: decides when a pass runs."""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from .config import Settings
from .models import SyncResult, utcnow

logger = logging.getLogger(__name__)


class SyncTrigger(str, Enum):
    """Why a sync pass was requested."""

    FOCUS = "focus"
    USER = "user"
    AUTHORIZED = "authorized"
    MUTATION = "mutation"
    TIMER = "timer"


class SyncScheduler:
    """Single worker consuming one pending sync request at a time.

    Requests collapse into a single pending slot; a full pass absorbs a
    pending push-only one. Requests arriving while a pass is running are
    dropped. Local mutations are debounced into one push-only request.
    """

    def __init__(
        self,
        settings: Settings,
        run_sync: Callable[[bool], Awaitable[SyncResult]],
    ):
        """Initialize scheduler.

        Args:
            settings: Application settings
            run_sync: Runs one pass; receives ``push_only``
        """
        self.settings = settings
        self.run_sync = run_sync
        self.logger = logger.getChild('scheduler')
        self.trigger = asyncio.Event()
        self.running = False
        self.sync_task: Optional[asyncio.Task] = None
        self.last_sync: Optional[datetime] = None
        self.last_result: Optional[SyncResult] = None
        self.loop_interval_seconds = settings.sync_config.sync_interval_minutes * 60
        self.debounce_seconds = settings.sync_config.push_debounce_seconds

        self._pending_push_only: Optional[bool] = None
        self._pending_trigger: Optional[SyncTrigger] = None
        self._in_flight = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._debounce_handle: Optional[asyncio.TimerHandle] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def has_pending(self) -> bool:
        return self._pending_push_only is not None

    def start(self) -> None:
        """Start the worker on the running event loop."""
        self._loop = asyncio.get_running_loop()
        self.running = True
        self.sync_task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self.running = False
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        self.trigger.set()
        if self.sync_task:
            await asyncio.wait([self.sync_task], timeout=5)

    def request(self, trigger: SyncTrigger, push_only: bool = False) -> bool:
        """Ask for a sync pass.

        Must be called on the event loop thread.

        Returns:
            False if the request was dropped because a pass is running
        """
        if self._in_flight:
            self.logger.debug(f"Sync in flight, dropping {trigger.value} trigger")
            return False
        if self._pending_push_only is None:
            self._pending_push_only = push_only
        else:
            self._pending_push_only = self._pending_push_only and push_only
        self._pending_trigger = trigger
        self.trigger.set()
        return True

    def notify_local_mutation(self) -> None:
        """Schedule a debounced push-only pass. Safe to call from any thread."""
        if self._loop is None or not self.running:
            return
        self._loop.call_soon_threadsafe(self._restart_debounce)

    def _restart_debounce(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = self._loop.call_later(self.debounce_seconds, self._debounce_elapsed)

    def _debounce_elapsed(self) -> None:
        self._debounce_handle = None
        self.request(SyncTrigger.MUTATION, push_only=True)

    def _take_pending(self):
        push_only, trigger = self._pending_push_only, self._pending_trigger
        self._pending_push_only = None
        self._pending_trigger = None
        if push_only is None:
            return False, SyncTrigger.TIMER
        return push_only, trigger

    async def run(self) -> None:
        self.running = True
        while self.running:
            try:
                # Wait for either trigger or interval timeout
                try:
                    await asyncio.wait_for(self.trigger.wait(), timeout=self.loop_interval_seconds)
                except asyncio.TimeoutError:
                    pass
                finally:
                    self.trigger.clear()
                if not self.running:
                    break

                push_only, trigger = self._take_pending()
                self.logger.info(f"Running {'push-only' if push_only else 'full'} sync ({trigger.value})")
                self._in_flight = True
                try:
                    self.last_result = await self.run_sync(push_only)
                finally:
                    self._in_flight = False
                self.last_sync = utcnow()
            except Exception:
                # Keep the worker alive; the next trigger retries.
                self.logger.exception("Scheduled sync failed")
                await asyncio.sleep(2)
