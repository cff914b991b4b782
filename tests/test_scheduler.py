"""Tests for the owned periodic task."""

import asyncio

import pytest

from faultline.scheduler import PeriodicTask


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_runs_immediately_then_every_interval():
    """The task runs at once and then every interval."""
    calls = []

    async def tick():
        calls.append(1)

    task = PeriodicTask("ticker", tick, interval=0.01)
    await task.start()
    await _wait_for(lambda: len(calls) >= 3)
    await task.stop()

    assert task.ticks >= 3
    assert not task.is_running


@pytest.mark.asyncio
async def test_concurrent_start_runs_one_loop():
    """Concurrent starts leave exactly one loop running."""
    task = PeriodicTask("once", lambda: asyncio.sleep(0), interval=3600)

    started = await asyncio.gather(task.start(), task.start(), task.start())
    assert sorted(started) == [False, False, True]
    assert task.is_running

    assert await task.stop() is True
    assert await task.stop() is False


@pytest.mark.asyncio
async def test_failing_tick_does_not_end_the_loop():
    """A failing tick is logged and the loop continues."""
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first tick fails")

    task = PeriodicTask("flaky", flaky, interval=0.01)
    await task.start()
    await _wait_for(lambda: len(calls) >= 2)

    assert task.is_running
    await task.stop()


@pytest.mark.asyncio
async def test_restart_after_stop():
    """A stopped task can be started again."""
    task = PeriodicTask("restart", lambda: asyncio.sleep(0), interval=3600)

    assert await task.start() is True
    assert await task.stop() is True
    assert await task.start() is True
    assert task.is_running
    await task.stop()
