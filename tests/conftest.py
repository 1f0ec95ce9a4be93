"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.scheduler.engine import MessageScheduler
from src.scheduler.store import InMemoryMessageStore
from src.transport.base import DeliveryReceipt

START = datetime(2025, 6, 1, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class _ManualJob:
    key: str
    run_at: datetime
    callback: Any
    args: tuple


class _ManualHandle:
    def __init__(self, timer: ManualTimer, job_id: str) -> None:
        self._timer = timer
        self.job_id = job_id

    def cancel(self) -> None:
        self._timer.jobs.pop(self.job_id, None)
        self._timer.cancelled.append(self.job_id)


class ManualTimer:
    """JobTimer that only fires when the test calls ``fire_due``."""

    def __init__(self) -> None:
        self.jobs: dict[str, _ManualJob] = {}
        self.cancelled: list[str] = []
        self.started = False
        self._counter = itertools.count(1)

    def start(self) -> None:
        self.started = True

    def shutdown(self) -> None:
        self.started = False

    def arm(self, key: str, run_at: datetime, callback: Any, *args: Any) -> _ManualHandle:
        job_id = f"{key}:{next(self._counter)}"
        self.jobs[job_id] = _ManualJob(key, run_at, callback, args)
        return _ManualHandle(self, job_id)

    def keys(self) -> list[str]:
        return [job.key for job in self.jobs.values()]

    def run_at(self, key: str) -> datetime:
        return next(job.run_at for job in self.jobs.values() if job.key == key)

    async def fire_due(self, now: datetime) -> int:
        """Run every job due at *now*, each in its own task like APScheduler does."""
        due = sorted(
            ((job_id, job) for job_id, job in self.jobs.items() if job.run_at <= now),
            key=lambda item: item[1].run_at,
        )
        for job_id, job in due:
            self.jobs.pop(job_id, None)
            await asyncio.create_task(job.callback(*job.args))
        return len(due)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timer() -> ManualTimer:
    return ManualTimer()


@pytest.fixture
def transport() -> MagicMock:
    t = MagicMock()
    t.is_ready.return_value = True
    t.send = AsyncMock(
        side_effect=lambda recipient_id, content, attachments: DeliveryReceipt(
            message_id="wamid-1", recipient_id=recipient_id
        )
    )
    return t


@pytest.fixture
def memory_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
async def scheduler(
    memory_store: InMemoryMessageStore,
    transport: MagicMock,
    timer: ManualTimer,
    clock: FakeClock,
) -> MessageScheduler:
    sched = MessageScheduler(
        store=memory_store,
        transport=transport,
        timer=timer,
        grace_seconds=5,
        timezone="UTC",
        clock=clock,
    )
    yield sched
    await sched.shutdown()
