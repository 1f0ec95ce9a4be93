"""MessageScheduler — arms, executes, updates and cancels scheduled messages."""

from __future__ import annotations

import asyncio
import itertools
import logging
import weakref
import zoneinfo
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from src.config import settings
from src.scheduler.errors import StorageError, ValidationError
from src.scheduler.executor import DeliveryExecutor
from src.scheduler.models import (
    MessageStatus,
    ScheduledMessage,
    make_message_id,
    normalize_recurrence,
    utc_now,
)
from src.scheduler.recovery import (
    RecoveryReport,
    find_broken_chains,
    recover_pending_messages,
)
from src.scheduler.recurrence import next_occurrence
from src.scheduler.timer import APSchedulerTimer

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.scheduler.store import MessageStore
    from src.scheduler.timer import JobTimer, TimerHandle
    from src.transport.base import MessageTransport

logger = logging.getLogger(__name__)


class _TaskHandle:
    """TimerHandle for the near-immediate path (an asyncio task)."""

    def __init__(self, task: asyncio.Task) -> None:
        self._task = task

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()


@dataclass
class _Armed:
    token: int
    handle: TimerHandle
    run_at: datetime


class MessageScheduler:
    """Owns the pending-jobs map and drives each message through its lifecycle.

    ``pending -> sent | failed | canceled`` (``expired`` is never assigned:
    overdue messages are delivered late instead).  A message due within the
    grace window is executed on the event loop right away; anything later
    gets a one-shot timer.  Both paths share the same map entry and the same
    execute path.

    Each message id has its own ``asyncio.Lock``; execute, update and cancel
    take it, so a cancel racing a timer fire is resolved by whichever gets the
    lock first.  Every arm carries a token so a fire from a superseded arm
    is ignored.

    Args:
        store: MessageStore for persistence.
        transport: MessageTransport used to deliver.
        timer: JobTimer for deferred execution (default: APSchedulerTimer).
        grace_seconds: The grace window; defaults to settings.
        timezone: IANA timezone for naive input times and recurrence.
        clock: Callable returning the current aware datetime (for tests).
    """

    def __init__(
        self,
        store: MessageStore,
        transport: MessageTransport,
        timer: JobTimer | None = None,
        *,
        grace_seconds: float | None = None,
        timezone: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._timezone = timezone or settings.scheduler_timezone
        self._tz = zoneinfo.ZoneInfo(self._timezone)
        self._timer = timer or APSchedulerTimer(self._timezone)
        if grace_seconds is None:
            grace_seconds = settings.scheduler_grace_seconds
        self._grace = timedelta(seconds=grace_seconds)
        self._clock = clock or utc_now
        self._executor = DeliveryExecutor(transport, store)

        self._jobs: dict[str, _Armed] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._inflight: set[asyncio.Task] = set()
        self._tokens = itertools.count(1)
        self._running = False
        self._last_recovery: RecoveryReport | None = None

    @property
    def running(self) -> bool:
        return self._running

    def pending_job_ids(self) -> list[str]:
        """IDs of messages that currently have a timer or queued execution."""
        return sorted(self._jobs)

    # -- Lifecycle -------------------------------------------------------------

    async def initialize_scheduler(self) -> RecoveryReport:
        """Re-arm every pending message from the store and start the timer.

        Recurring messages that were sent but never got their next occurrence
        have it created here.  Call once at process start; later calls return
        the first report until ``shutdown()``.
        """
        if self._running and self._last_recovery is not None:
            logger.warning("Scheduler already initialised; skipping recovery")
            return self._last_recovery

        broken = await find_broken_chains(self._store)
        report = await recover_pending_messages(
            self._store,
            self._arm,
            now=self._clock(),
            grace=self._grace,
        )
        resumed = 0
        for message in broken:
            try:
                await self._schedule_successor(message)
            except StorageError:
                logger.exception("Could not resume recurrence of %s", message.id)
            else:
                resumed += 1
        report = replace(report, resumed_chains=resumed)
        self._timer.start()
        self._running = True
        self._last_recovery = report
        logger.info(
            "Scheduler started with %d pending message(s) (tz=%s, grace=%ss)",
            report.total,
            self._timezone,
            self._grace.total_seconds(),
        )
        return report

    async def shutdown(self, *, wait: bool = True) -> None:
        """Disarm all timers and stop. Pending records stay pending in the store."""
        for message_id in list(self._jobs):
            self._disarm(message_id)
        self._timer.shutdown()
        self._running = False
        if wait:
            await self.wait_idle()
        logger.info("Scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait until no delivery is in progress or queued for immediate run."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # -- Operations ------------------------------------------------------------

    async def schedule_message(
        self,
        recipient_id: Any,
        content: str,
        attachments: list[str] | None = None,
        scheduled_time: datetime | str | None = None,
        recurrence: Any = None,
    ) -> ScheduledMessage:
        """Validate, persist as pending, and arm a new message."""
        fields = self._validated_fields(recipient_id, content, attachments, scheduled_time)
        message = ScheduledMessage(
            id=make_message_id(),
            recurrence=normalize_recurrence(recurrence),
            status=MessageStatus.PENDING,
            **fields,
        )
        await self._store.insert(message)
        self._arm(message)
        logger.info(
            "Scheduled message %s for %s at %s (recurrence=%s)",
            message.id,
            message.recipient_id,
            message.scheduled_time.isoformat(),
            message.recurrence,
        )
        return message

    async def update_scheduled_message(
        self,
        message_id: str,
        recipient_id: Any,
        content: str,
        attachments: list[str] | None,
        scheduled_time: datetime | str | None,
        recurrence: Any,
    ) -> ScheduledMessage | None:
        """Replace a pending message's snapshot and re-arm it.

        Returns None if the id is unknown.  Raises ValidationError for bad
        input or when the message has already left ``pending``.
        """
        async with self._lock_for(message_id):
            existing = await self._store.get(message_id)
            if existing is None:
                return None
            if not existing.is_pending:
                msg = (
                    f"Scheduled message {message_id} is {existing.status}"
                    " and can no longer be updated"
                )
                raise ValidationError(msg)

            fields = self._validated_fields(recipient_id, content, attachments, scheduled_time)
            self._disarm(message_id)
            try:
                updated = await self._store.update(
                    message_id,
                    recurrence=normalize_recurrence(recurrence),
                    status=MessageStatus.PENDING,
                    last_error=None,
                    **fields,
                )
            except StorageError:
                self._arm(existing)
                raise
            if updated is None:
                return None
            self._arm(updated)

        logger.info(
            "Updated scheduled message %s (now %s, recurrence=%s)",
            message_id,
            updated.scheduled_time.isoformat(),
            updated.recurrence,
        )
        return updated

    async def cancel_scheduled_message(self, message_id: str) -> ScheduledMessage | None:
        """Cancel a pending message. Terminal messages are returned unchanged."""
        async with self._lock_for(message_id):
            existing = await self._store.get(message_id)
            if existing is None:
                return None
            if not existing.is_pending:
                logger.info(
                    "Scheduled message %s already %s; nothing to cancel",
                    message_id,
                    existing.status,
                )
                return existing

            canceled = await self._store.update(message_id, status=MessageStatus.CANCELED)
            self._disarm(message_id)

        logger.info("Canceled scheduled message %s", message_id)
        return canceled

    async def list_scheduled_messages(self) -> list[ScheduledMessage]:
        """All messages, every status, ordered by scheduled time."""
        return await self._store.list_all()

    async def get_scheduled_message(self, message_id: str) -> ScheduledMessage | None:
        return await self._store.get(message_id)

    # -- Arming ----------------------------------------------------------------

    def _arm(self, message: ScheduledMessage) -> None:
        """Register execution for a pending message, replacing any earlier arm."""
        self._disarm(message.id)
        token = next(self._tokens)

        if message.scheduled_time <= self._clock() + self._grace:
            task = asyncio.get_running_loop().create_task(
                self._run(message.id, token),
                name=f"deliver-{message.id}",
            )
            self._track(task)
            handle: TimerHandle = _TaskHandle(task)
            logger.info(
                "Scheduled message %s is due (%s); delivering now",
                message.id,
                message.scheduled_time.isoformat(),
            )
        else:
            handle = self._timer.arm(
                message.id, message.scheduled_time, self._run, message.id, token
            )
            logger.debug("Armed timer for %s at %s", message.id, message.scheduled_time)

        self._jobs[message.id] = _Armed(token=token, handle=handle, run_at=message.scheduled_time)

    def _disarm(self, message_id: str) -> bool:
        armed = self._jobs.pop(message_id, None)
        if armed is None:
            return False
        armed.handle.cancel()
        return True

    def _lock_for(self, message_id: str) -> asyncio.Lock:
        lock = self._locks.get(message_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[message_id] = lock
        return lock

    def _track(self, task: asyncio.Task | None) -> None:
        if task is None:
            return
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    # -- Execution -------------------------------------------------------------

    async def _run(self, message_id: str, token: int) -> None:
        """Timer / immediate callback. Never raises."""
        self._track(asyncio.current_task())
        async with self._lock_for(message_id):
            armed = self._jobs.get(message_id)
            if armed is None or armed.token != token:
                logger.debug("Ignoring stale fire for %s (token %d)", message_id, token)
                return
            del self._jobs[message_id]
            try:
                await self._execute(message_id)
            except Exception:
                logger.exception("Execution of scheduled message %s aborted", message_id)

    async def _execute(self, message_id: str) -> None:
        message = await self._store.get(message_id)
        if message is None:
            logger.warning("Scheduled message not found: %s", message_id)
            return
        if not message.is_pending:
            logger.info("Skipping scheduled message %s (status=%s)", message_id, message.status)
            return

        result = await self._executor.deliver(message)
        if result is None:
            logger.warning("Scheduled message %s disappeared during delivery", message_id)
            return
        if result.status is MessageStatus.SENT and result.is_recurring:
            await self._schedule_successor(result)

    async def _schedule_successor(self, message: ScheduledMessage) -> ScheduledMessage | None:
        """Insert and arm the next occurrence of a sent recurring message."""
        next_time = next_occurrence(
            message.scheduled_time, message.recurrence, self._clock(), self._tz
        )
        if next_time is None:
            return None
        successor = ScheduledMessage(
            id=make_message_id(),
            recipient_id=message.recipient_id,
            content=message.content,
            attachments=list(message.attachments),
            scheduled_time=next_time,
            recurrence=message.recurrence,
            status=MessageStatus.PENDING,
            parent_id=message.id,
        )
        await self._store.insert(successor)
        self._arm(successor)
        logger.info(
            "Created %s occurrence %s of %s at %s",
            message.recurrence,
            successor.id,
            message.id,
            next_time.isoformat(),
        )
        return successor

    # -- Validation ------------------------------------------------------------

    def _validated_fields(
        self,
        recipient_id: Any,
        content: Any,
        attachments: Any,
        scheduled_time: Any,
    ) -> dict[str, Any]:
        if recipient_id is None or not str(recipient_id).strip():
            msg = "recipient_id is required"
            raise ValidationError(msg)
        if not isinstance(content, str) or not content.strip():
            msg = "content is required"
            raise ValidationError(msg)
        return {
            "recipient_id": str(recipient_id).strip(),
            "content": content,
            "attachments": self._validated_attachments(attachments),
            "scheduled_time": self._resolve_time(scheduled_time),
        }

    @staticmethod
    def _validated_attachments(attachments: Any) -> list[str]:
        if attachments is None:
            return []
        if isinstance(attachments, str) or not isinstance(attachments, list | tuple):
            msg = "attachments must be a list of media references"
            raise ValidationError(msg)
        if not all(isinstance(a, str) and a.strip() for a in attachments):
            msg = "attachments must be non-empty strings"
            raise ValidationError(msg)
        return list(attachments)

    def _resolve_time(self, value: Any) -> datetime:
        """Missing means now; naive values are read in the scheduler timezone."""
        if value is None:
            return self._clock().astimezone(UTC)
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value)
            except ValueError as exc:
                msg = f"scheduled_time is not an ISO 8601 datetime: {value!r}"
                raise ValidationError(msg) from exc
        if not isinstance(value, datetime):
            msg = f"scheduled_time must be a datetime, got {type(value).__name__}"
            raise ValidationError(msg)
        if value.tzinfo is None:
            value = value.replace(tzinfo=self._tz)
        return value.astimezone(UTC)
