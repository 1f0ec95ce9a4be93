"""Tests for APSchedulerTimer — real APScheduler jobs on the event loop."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from src.scheduler.timer import APSchedulerTimer


@pytest.fixture
async def timer() -> APSchedulerTimer:
    t = APSchedulerTimer(timezone="UTC")
    t.start()
    yield t
    t.shutdown()


async def test_start_and_shutdown() -> None:
    t = APSchedulerTimer(timezone="UTC")
    t.start()
    assert t.running is True

    t.shutdown()
    assert t.running is False


async def test_shutdown_when_not_running() -> None:
    # Should not raise
    APSchedulerTimer(timezone="UTC").shutdown()


async def test_fires_callback_at_time(timer: APSchedulerTimer) -> None:
    fired = asyncio.Event()
    seen: list[str] = []

    async def callback(message_id: str) -> None:
        seen.append(message_id)
        fired.set()

    timer.arm("m1", datetime.now(UTC) + timedelta(milliseconds=50), callback, "m1")
    await asyncio.wait_for(fired.wait(), timeout=5)

    assert seen == ["m1"]
    assert timer.job_ids() == []


async def test_past_time_still_fires(timer: APSchedulerTimer) -> None:
    fired = asyncio.Event()

    async def callback() -> None:
        fired.set()

    timer.arm("late", datetime.now(UTC) - timedelta(minutes=5), callback)
    await asyncio.wait_for(fired.wait(), timeout=5)


async def test_cancel_removes_job(timer: APSchedulerTimer) -> None:
    called = False

    async def callback() -> None:
        nonlocal called
        called = True

    handle = timer.arm("m1", datetime.now(UTC) + timedelta(milliseconds=100), callback)
    assert timer.job_ids() == [handle.job_id]

    handle.cancel()
    handle.cancel()  # second cancel is a no-op

    assert timer.job_ids() == []
    await asyncio.sleep(0.2)
    assert called is False


async def test_each_arm_gets_distinct_job(timer: APSchedulerTimer) -> None:
    async def callback() -> None:
        return None

    later = datetime.now(UTC) + timedelta(hours=1)
    first = timer.arm("m1", later, callback)
    second = timer.arm("m1", later, callback)

    assert first.job_id != second.job_id
    first.cancel()
    assert timer.job_ids() == [second.job_id]


async def test_restart_after_shutdown_fires_jobs() -> None:
    t = APSchedulerTimer(timezone="UTC")
    t.start()
    t.shutdown()
    t.start()
    fired = asyncio.Event()

    async def callback() -> None:
        fired.set()

    try:
        t.arm("m1", datetime.now(UTC) + timedelta(milliseconds=50), callback)
        await asyncio.sleep(0.1)
        await asyncio.wait_for(fired.wait(), timeout=5)
        assert t.running is True
    finally:
        t.shutdown()
