import asyncio

import pytest

from conftest import wait_for
from wa_relay.scheduler import ReconnectScheduler


class _Recorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, reason):
        self.calls.append((reason, asyncio.get_running_loop().time()))


@pytest.mark.asyncio
async def test_double_schedule_fires_once_at_second_delay():
    rec = _Recorder()
    scheduler = ReconnectScheduler(rec)
    loop = asyncio.get_running_loop()
    started = loop.time()

    scheduler.schedule(20, "first")
    scheduler.schedule(120, "second")
    await asyncio.sleep(0.06)
    assert rec.calls == []
    assert scheduler.pending

    assert await wait_for(lambda: rec.calls)
    await asyncio.sleep(0.05)
    assert len(rec.calls) == 1
    reason, fired_at = rec.calls[0]
    assert reason == "second"
    assert fired_at - started >= 0.1
    assert not scheduler.pending


@pytest.mark.asyncio
async def test_cancel_prevents_firing():
    rec = _Recorder()
    scheduler = ReconnectScheduler(rec)
    scheduler.schedule(10, "x")
    scheduler.cancel()
    assert not scheduler.pending
    assert scheduler.reason is None
    await asyncio.sleep(0.04)
    assert rec.calls == []


@pytest.mark.asyncio
async def test_callback_may_reschedule_itself():
    fired = []
    scheduler = None

    async def callback(reason):
        fired.append(reason)
        if len(fired) == 1:
            scheduler.schedule(5, "again")

    scheduler = ReconnectScheduler(callback)
    scheduler.schedule(5, "once")
    assert await wait_for(lambda: len(fired) == 2)
    assert fired == ["once", "again"]


@pytest.mark.asyncio
async def test_callback_error_is_logged_not_raised(caplog):
    async def callback(reason):
        raise RuntimeError("boom")

    scheduler = ReconnectScheduler(callback)
    scheduler.schedule(0, "x")
    assert await wait_for(lambda: "reconnect_callback_error" in caplog.text)
    assert not scheduler.pending
