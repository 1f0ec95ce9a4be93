"""Startup recovery — re-arm every message still pending in the store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.scheduler.models import MessageStatus

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime, timedelta

    from src.scheduler.models import ScheduledMessage
    from src.scheduler.store import MessageStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryReport:
    """What startup recovery found.

    ``overdue`` records were due while the process was down and are delivered
    late; ``deferred`` ones got a timer.  ``resumed_chains`` counts recurring
    messages whose next occurrence had to be recreated.
    """

    overdue: int = 0
    deferred: int = 0
    oldest_overdue: datetime | None = None
    resumed_chains: int = 0

    @property
    def total(self) -> int:
        return self.overdue + self.deferred


async def recover_pending_messages(
    store: MessageStore,
    arm: Callable[[ScheduledMessage], None],
    *,
    now: datetime,
    grace: timedelta,
) -> RecoveryReport:
    """Load pending messages and pass each one to *arm* exactly once."""
    pending = await store.list_by_status(MessageStatus.PENDING)

    seen: set[str] = set()
    overdue = 0
    deferred = 0
    oldest: datetime | None = None

    for message in pending:
        if message.id in seen:
            continue
        seen.add(message.id)

        if message.scheduled_time <= now + grace:
            overdue += 1
            if oldest is None or message.scheduled_time < oldest:
                oldest = message.scheduled_time
        else:
            deferred += 1
        arm(message)

    if overdue:
        logger.info(
            "Recovered %d overdue message(s), oldest due at %s; delivering late",
            overdue,
            oldest.isoformat() if oldest else "?",
        )
    logger.info("Recovered %d pending message(s) (%d deferred)", overdue + deferred, deferred)
    return RecoveryReport(overdue=overdue, deferred=deferred, oldest_overdue=oldest)


async def find_broken_chains(store: MessageStore) -> list[ScheduledMessage]:
    """Sent recurring messages that never got a successor record.

    A chain breaks when the process stops, or the store fails, between
    marking an occurrence sent and inserting the next one.  Any child,
    whatever its status, counts as a successor.
    """
    records = await store.list_all()
    parents = {m.parent_id for m in records if m.parent_id}
    broken = [
        m
        for m in records
        if m.status is MessageStatus.SENT and m.is_recurring and m.id not in parents
    ]
    if broken:
        logger.warning("Found %d recurring message(s) without a next occurrence", len(broken))
    return broken
