import asyncio

import pytest

from services.timers import AsyncioScheduler, TypingTimerManager


def recorder():
    fired = []

    def on_expire(tag):
        async def callback():
            fired.append(tag)
        return callback

    return fired, on_expire


@pytest.mark.asyncio
async def test_timer_fires_once_after_idle_window(scheduler):
    timers = TypingTimerManager(scheduler, idle_seconds=5)
    fired, on_expire = recorder()

    timers.arm("room", "u1", on_expire("u1"))
    await scheduler.advance(4.9)
    assert fired == []
    await scheduler.advance(0.1)
    assert fired == ["u1"]
    assert not timers.is_pending("room", "u1")

    await scheduler.advance(60)
    assert fired == ["u1"]


@pytest.mark.asyncio
async def test_rearming_restarts_the_window(scheduler):
    timers = TypingTimerManager(scheduler, idle_seconds=5)
    fired, on_expire = recorder()

    timers.arm("room", "u1", on_expire("first"))
    await scheduler.advance(3)
    timers.arm("room", "u1", on_expire("second"))
    await scheduler.advance(3)
    assert fired == []
    await scheduler.advance(2)
    assert fired == ["second"]
    assert len(timers) == 0


@pytest.mark.asyncio
async def test_cancel_and_shutdown(scheduler):
    timers = TypingTimerManager(scheduler, idle_seconds=5)
    fired, on_expire = recorder()

    timers.arm("room", "u1", on_expire("u1"))
    timers.arm("room", "u2", on_expire("u2"))
    timers.arm("other", "u1", on_expire("other"))
    assert timers.cancel("room", "u1") is True
    assert timers.cancel("room", "u1") is False

    timers.shutdown()
    assert len(timers) == 0
    await scheduler.advance(10)
    assert fired == []


@pytest.mark.asyncio
async def test_asyncio_scheduler_runs_and_cancels():
    scheduler = AsyncioScheduler()
    fired = []

    async def callback():
        fired.append("ran")

    scheduler.call_later(0.01, callback)
    cancelled = scheduler.call_later(0.01, callback)
    cancelled.cancel()
    await asyncio.sleep(0.05)

    assert fired == ["ran"]
    assert len(scheduler) == 0
