"""Realtime + poll refresh for one view scope.

Two independent sources request a refresh:

- a change-feed subscription covering the content and configuration
  tables, filtered to the scope id;
- a fallback timer (first tick after ``initial_delay``, then every
  ``poll_interval``) for missed events and dropped sockets.

Both feed a single-slot queue drained by one consumer task, so refresh
callbacks never overlap and bursts of triggers collapse into one
refresh. Triggers are dropped while the view is hidden; becoming visible
again requests one immediate refresh.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import Awaitable, Callable, Sequence

from ..core.realtime import Binding, ChangeEvent, ChangeFeed, Subscription

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[], Awaitable[None]]


class RefreshScheduler:
    """Keep one scope's projection fresh.

    Args:
        feed: Change feed to subscribe to.
        refresh: Coroutine function that re-reads the scope.
        poll_interval: Seconds between fallback polls.
        initial_delay: Seconds before the first poll.
        tables: Tables whose changes trigger a refresh.
        scope_column: Column the subscription filter matches on.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        refresh: RefreshCallback,
        poll_interval: float = 60.0,
        initial_delay: float = 2.0,
        tables: Sequence[str] = ("resources", "sections"),
        scope_column: str = "section_id",
    ) -> None:
        self.feed = feed
        self.refresh = refresh
        self.poll_interval = poll_interval
        self.initial_delay = initial_delay
        self.tables = tuple(tables)
        self.scope_column = scope_column

        self.refresh_count = 0
        self._visible = True
        self._scope_id: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[str] | None = None
        self._subscription: Subscription | None = None
        self._consumer: asyncio.Task | None = None
        self._timer: asyncio.Task | None = None
        self._in_flight: asyncio.Future | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def scope_id(self) -> str | None:
        return self._scope_id

    @property
    def active(self) -> bool:
        return self._subscription is not None

    @property
    def visible(self) -> bool:
        return self._visible

    async def start(self, scope_id: str) -> None:
        """Subscribe to *scope_id*, replacing any previous scope."""
        await self.stop()

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=1)
        self._scope_id = scope_id
        bindings = [
            Binding(table, f"{self.scope_column}=eq.{scope_id}")
            for table in self.tables
        ]
        self._subscription = self.feed.subscribe(
            f"section-{scope_id}", bindings, functools.partial(self._on_change, scope_id)
        )
        self._consumer = asyncio.create_task(self._consume())
        self._timer = asyncio.create_task(self._tick())
        logger.debug("Refresh scheduler started for %s", scope_id)

    async def stop(self) -> None:
        """Unsubscribe and stop the timer.

        A refresh already running is allowed to finish.
        """
        if self._subscription is not None:
            self.feed.unsubscribe(self._subscription)
            self._subscription = None

        for task in (self._timer, self._consumer):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._timer = None
        self._consumer = None

        in_flight, self._in_flight = self._in_flight, None
        if in_flight is not None and not in_flight.done():
            try:
                await in_flight
            except Exception:
                logger.exception("Refresh of %s failed", self._scope_id)

        if self._scope_id is not None:
            logger.debug("Refresh scheduler stopped for %s", self._scope_id)
        self._queue = None
        self._scope_id = None

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def set_visible(self, visible: bool) -> None:
        """Record view visibility; hidden to visible requests a refresh."""
        was_visible = self._visible
        self._visible = visible
        if visible and not was_visible:
            self.trigger("visible")

    def trigger(self, reason: str = "manual") -> bool:
        """Request a refresh. Must be called on the scheduler's loop.

        Returns False when the request was dropped (hidden or stopped).
        """
        if self._queue is None:
            return False
        if not self._visible:
            logger.debug("Refresh (%s) skipped: view hidden", reason)
            return False
        try:
            self._queue.put_nowait(reason)
        except asyncio.QueueFull:
            logger.debug("Refresh (%s) coalesced with a pending one", reason)
        return True

    def _on_change(self, scope_id: str, change: ChangeEvent) -> None:
        # Feed callbacks may arrive on another thread
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._trigger_scope, scope_id, f"realtime:{change.table}")

    def _trigger_scope(self, scope_id: str, reason: str) -> bool:
        if scope_id != self._scope_id:
            logger.debug("Refresh (%s) for stale scope %s dropped", reason, scope_id)
            return False
        return self.trigger(reason)

    async def _tick(self) -> None:
        await asyncio.sleep(self.initial_delay)
        while True:
            self.trigger("poll")
            await asyncio.sleep(self.poll_interval)

    async def _consume(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            reason = await queue.get()
            if not self._visible:
                continue
            logger.debug("Refreshing %s (%s)", self._scope_id, reason)
            self._in_flight = asyncio.ensure_future(self.refresh())
            try:
                await asyncio.shield(self._in_flight)
                self.refresh_count += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Refresh of %s failed", self._scope_id)
