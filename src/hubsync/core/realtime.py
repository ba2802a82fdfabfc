"""Change-feed abstraction for realtime refresh triggers.

``ChangeFeed`` is what ``RefreshScheduler`` subscribes to. A binding
names a table and an optional ``column=eq.value`` row filter, the same
shape the Supabase realtime channel API takes.

``SupabaseChangeFeed`` joins one Supabase Realtime channel per
subscription and listens for ``postgres_changes`` on each binding, so
edits made by other clients reach the scheduler.

``LocalChangeFeed`` is an in-process broadcaster. The repository
publishes its own writes to it, so every scheduler in the same process
sees them without a socket.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

from realtime import AsyncRealtimeClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    """One row change.

    Attributes:
        table: Table the row belongs to.
        event: ``INSERT``, ``UPDATE`` or ``DELETE``.
        record: The new row, or the old row for deletes.
    """

    table: str
    event: str
    record: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Binding:
    table: str
    filter: str | None = None

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if not self.filter:
            return True
        column, _, expr = self.filter.partition("=")
        op, _, value = expr.partition(".")
        if op != "eq":
            raise ValueError(f"Unsupported realtime filter: {self.filter}")
        return str(change.record.get(column)) == value


@dataclass(frozen=True)
class Subscription:
    channel: str
    bindings: tuple[Binding, ...]
    sub_id: int


ChangeCallback = Callable[[ChangeEvent], Any]


class ChangeFeed(ABC):
    """Source of row change notifications."""

    @abstractmethod
    def subscribe(
        self,
        channel: str,
        bindings: list[Binding],
        callback: ChangeCallback,
    ) -> Subscription: ...

    @abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None: ...

    def publish(self, change: ChangeEvent) -> int:
        """Announce a write made by this process.

        Store-backed feeds hear every write from the server, including
        our own, so the default does nothing.
        """
        return 0


class LocalChangeFeed(ChangeFeed):
    """In-process change broadcaster.

    ``publish`` may be called from any thread; callbacks run on the
    publishing thread and must hand off to their own loop themselves.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: dict[int, tuple[Subscription, ChangeCallback]] = {}
        self._ids = itertools.count(1)

    def subscribe(
        self,
        channel: str,
        bindings: list[Binding],
        callback: ChangeCallback,
    ) -> Subscription:
        sub = Subscription(channel, tuple(bindings), next(self._ids))
        with self._lock:
            self._subs[sub.sub_id] = (sub, callback)
        logger.debug("Subscribed %s (%d bindings)", channel, len(bindings))
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subs.pop(subscription.sub_id, None)
        logger.debug("Unsubscribed %s", subscription.channel)

    def subscription_count(self, channel: str | None = None) -> int:
        with self._lock:
            return sum(
                1
                for sub, _ in self._subs.values()
                if channel is None or sub.channel == channel
            )

    def publish(self, change: ChangeEvent) -> int:
        """Deliver *change* to every matching subscription.

        A failing callback is logged and does not stop delivery to the
        others. Returns the number of callbacks invoked.
        """
        with self._lock:
            targets = list(self._subs.values())
        delivered = 0
        for sub, callback in targets:
            if not any(b.matches(change) for b in sub.bindings):
                continue
            delivered += 1
            try:
                callback(change)
            except Exception:
                logger.exception("Change callback for %s failed", sub.channel)
        return delivered


def realtime_url(supabase_url: str) -> str:
    """``https://x.supabase.co`` -> ``wss://x.supabase.co/realtime/v1``."""
    base = supabase_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/realtime/v1"


def change_from_payload(payload: dict) -> ChangeEvent:
    """Build a ``ChangeEvent`` from a ``postgres_changes`` message payload."""
    data = payload.get("data", payload) if isinstance(payload, dict) else {}
    event = str(data.get("type") or data.get("eventType") or "").upper()
    record = data.get("record") or data.get("new") or {}
    if event == "DELETE" or not record:
        record = data.get("old_record") or data.get("old") or record
    return ChangeEvent(
        table=str(data.get("table") or ""),
        event=event,
        record=dict(record) if isinstance(record, dict) else {},
    )


class SupabaseChangeFeed(ChangeFeed):
    """Change feed backed by Supabase Realtime.

    Each subscription joins channel ``<channel>`` and adds one
    ``postgres_changes`` listener per binding (all events, the binding's
    table and row filter, schema ``schema``). Joins and leaves run on the
    loop ``connect`` was awaited on; ``subscribe`` and ``unsubscribe``
    may be called from any thread. A channel that fails to join is
    logged and left to the scheduler's polling.

    Args:
        supabase_url: Project URL (``https://<ref>.supabase.co``).
        api_key: Project API key.
        access_token: Signed-in user's token, so row policies apply.
        schema: Database schema to listen on.
        client_factory: Builds the realtime client; replaceable in tests.
    """

    def __init__(
        self,
        supabase_url: str,
        api_key: str,
        access_token: str | None = None,
        schema: str = "public",
        client_factory: Callable[..., Any] = AsyncRealtimeClient,
    ) -> None:
        self.url = realtime_url(supabase_url)
        self.api_key = api_key
        self.access_token = access_token
        self.schema = schema
        self._client_factory = client_factory
        self._client: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ids = itertools.count(1)
        self._joins: dict[int, Future] = {}
        self._channels: dict[int, Any] = {}

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the socket. Raises whatever the realtime client raises."""
        self._loop = asyncio.get_running_loop()
        self._client = self._client_factory(self.url, token=self.api_key, auto_reconnect=True)
        await self._client.connect()
        if self.access_token:
            await self._client.set_auth(self.access_token)
        logger.info("Realtime connected to %s", self.url)

    async def close(self) -> None:
        """Leave every channel and close the socket."""
        for sub_id in list(self._joins):
            await self._leave(sub_id)
        if self._client is not None:
            try:
                await self._client.close()
            except Exception as e:
                logger.warning("Realtime close failed: %s", e)
            self._client = None
        self._loop = None

    def subscribe(
        self,
        channel: str,
        bindings: list[Binding],
        callback: ChangeCallback,
    ) -> Subscription:
        if self._loop is None or self._client is None:
            raise RuntimeError("SupabaseChangeFeed is not connected")
        sub = Subscription(channel, tuple(bindings), next(self._ids))
        self._joins[sub.sub_id] = asyncio.run_coroutine_threadsafe(
            self._join(sub, callback), self._loop
        )
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self._leave(subscription.sub_id), loop)

    def subscription_count(self) -> int:
        return len(self._joins)

    async def _join(self, sub: Subscription, callback: ChangeCallback) -> None:
        try:
            channel = self._client.channel(sub.channel)
            for binding in sub.bindings:
                channel.on_postgres_changes(
                    "*",
                    table=binding.table,
                    schema=self.schema,
                    filter=binding.filter,
                    callback=functools.partial(self._dispatch, sub.channel, callback),
                )
            await channel.subscribe(functools.partial(self._on_status, sub.channel))
        except Exception as e:
            logger.warning("Realtime subscribe to %s failed: %s", sub.channel, e)
            return
        self._channels[sub.sub_id] = channel
        logger.debug("Subscribed %s (%d bindings)", sub.channel, len(sub.bindings))

    async def _leave(self, sub_id: int) -> None:
        join = self._joins.pop(sub_id, None)
        if join is not None:
            await asyncio.wrap_future(join)
        channel = self._channels.pop(sub_id, None)
        if channel is None:
            return
        try:
            await self._client.remove_channel(channel)
        except Exception as e:
            logger.warning("Realtime unsubscribe failed: %s", e)
            return
        logger.debug("Unsubscribed sub %d", sub_id)

    @staticmethod
    def _dispatch(channel: str, callback: ChangeCallback, payload: Any) -> None:
        try:
            callback(change_from_payload(payload))
        except Exception:
            logger.exception("Change callback for %s failed", channel)

    @staticmethod
    def _on_status(channel: str, status: Any, error: Exception | None = None) -> None:
        if error is not None:
            logger.warning("Realtime channel %s: %s (%s)", channel, status, error)
        else:
            logger.debug("Realtime channel %s: %s", channel, status)
