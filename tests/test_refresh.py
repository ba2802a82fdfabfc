"""Tests for hubsync.sync.refresh.RefreshScheduler."""

import asyncio
import logging

import pytest

from hubsync.core.realtime import ChangeEvent, ChangeFeed, Subscription
from hubsync.sync.refresh import RefreshScheduler


async def _until(predicate, timeout=1.0):
    """Poll *predicate* until true or fail after *timeout* seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.005)


class Recorder:
    """Refresh callback that counts calls and can be held open."""

    def __init__(self):
        self.calls = 0
        self.gate = asyncio.Event()
        self.gate.set()
        self.fail_next = False

    async def __call__(self):
        self.calls += 1
        await self.gate.wait()
        if self.fail_next:
            self.fail_next = False
            raise RuntimeError("refresh exploded")


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
async def scheduler(feed, recorder):
    sched = RefreshScheduler(feed, recorder, poll_interval=60.0, initial_delay=60.0)
    yield sched
    await sched.stop()


class TestSubscriptions:
    async def test_one_subscription_per_scope(self, scheduler, feed):
        await scheduler.start("ops")
        await scheduler.start("hr")
        assert feed.subscription_count() == 1
        assert feed.subscription_count("section-hr") == 1
        assert scheduler.scope_id == "hr"

    async def test_stop_unsubscribes(self, scheduler, feed):
        await scheduler.start("ops")
        await scheduler.stop()
        assert feed.subscription_count() == 0
        assert not scheduler.active
        assert scheduler.trigger() is False

    async def test_stop_without_start(self, feed, recorder):
        await RefreshScheduler(feed, recorder).stop()


class TestTriggers:
    async def test_realtime_change_for_scope(self, scheduler, feed, recorder):
        await scheduler.start("ops")
        feed.publish(ChangeEvent("resources", "INSERT", {"section_id": "ops"}))
        await _until(lambda: scheduler.refresh_count == 1)
        assert recorder.calls == 1

    async def test_change_for_other_scope_ignored(self, scheduler, feed, recorder):
        await scheduler.start("ops")
        feed.publish(ChangeEvent("resources", "INSERT", {"section_id": "hr"}))
        await asyncio.sleep(0.05)
        assert recorder.calls == 0

    async def test_poll_timer(self, feed, recorder):
        sched = RefreshScheduler(feed, recorder, poll_interval=0.01, initial_delay=0.01)
        await sched.start("ops")
        try:
            await _until(lambda: sched.refresh_count >= 2)
        finally:
            await sched.stop()

    async def test_burst_coalesces(self, scheduler, recorder):
        await scheduler.start("ops")
        recorder.gate.clear()
        scheduler.trigger("first")
        await _until(lambda: recorder.calls == 1)

        for _ in range(5):
            assert scheduler.trigger("burst") is True

        recorder.gate.set()
        await _until(lambda: scheduler.refresh_count == 2)
        await asyncio.sleep(0.05)
        assert recorder.calls == 2

    async def test_failed_refresh_does_not_stop_scheduler(self, scheduler, recorder, caplog):
        await scheduler.start("ops")
        recorder.fail_next = True
        with caplog.at_level(logging.ERROR, logger="hubsync.sync.refresh"):
            scheduler.trigger()
            await _until(lambda: recorder.calls == 1)
            await asyncio.sleep(0.01)
        assert "Refresh of ops failed" in caplog.text

        scheduler.trigger()
        await _until(lambda: scheduler.refresh_count == 1)


class TestVisibility:
    async def test_hidden_drops_triggers(self, scheduler, feed, recorder):
        await scheduler.start("ops")
        scheduler.set_visible(False)
        assert scheduler.trigger() is False
        feed.publish(ChangeEvent("sections", "UPDATE", {"section_id": "ops"}))
        await asyncio.sleep(0.05)
        assert recorder.calls == 0

    async def test_becoming_visible_refreshes_once(self, scheduler, recorder):
        await scheduler.start("ops")
        scheduler.set_visible(False)
        scheduler.set_visible(True)
        await _until(lambda: scheduler.refresh_count == 1)
        await asyncio.sleep(0.05)
        assert recorder.calls == 1

    async def test_visible_to_visible_is_not_a_trigger(self, scheduler, recorder):
        await scheduler.start("ops")
        scheduler.set_visible(True)
        await asyncio.sleep(0.05)
        assert recorder.calls == 0


async def test_stop_lets_running_refresh_finish(feed, recorder):
    sched = RefreshScheduler(feed, recorder, initial_delay=60.0)
    await sched.start("ops")
    recorder.gate.clear()
    sched.trigger()
    await _until(lambda: recorder.calls == 1)

    stopping = asyncio.create_task(sched.stop())
    await asyncio.sleep(0.02)
    assert not stopping.done()

    recorder.gate.set()
    await asyncio.wait_for(stopping, 1.0)
    assert sched.scope_id is None


class CapturingFeed(ChangeFeed):
    """Keeps each channel's callback so tests can fire it late."""

    def __init__(self):
        self.callbacks = {}

    def subscribe(self, channel, bindings, callback):
        self.callbacks[channel] = callback
        return Subscription(channel, tuple(bindings), len(self.callbacks))

    def unsubscribe(self, subscription):
        pass


async def test_late_event_from_previous_scope_dropped(recorder):
    feed = CapturingFeed()
    sched = RefreshScheduler(feed, recorder, initial_delay=60.0)
    await sched.start("ops")
    stale = feed.callbacks["section-ops"]
    await sched.start("hr")

    stale(ChangeEvent("resources", "UPDATE", {"section_id": "ops"}))
    await asyncio.sleep(0.05)
    assert recorder.calls == 0

    feed.callbacks["section-hr"](ChangeEvent("resources", "UPDATE", {"section_id": "hr"}))
    await _until(lambda: sched.refresh_count == 1)
    await sched.stop()
