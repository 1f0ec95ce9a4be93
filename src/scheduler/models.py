"""ScheduledMessage data model."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class Recurrence(StrEnum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class MessageStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.PENDING


def normalize_recurrence(value: Any) -> Recurrence:
    """Coerce *value* to a Recurrence. Unknown values become ``Recurrence.NONE``."""
    if isinstance(value, Recurrence):
        return value
    if value is None:
        return Recurrence.NONE
    try:
        return Recurrence(str(value).strip().lower())
    except ValueError:
        logger.warning("Unknown recurrence %r, treating as 'none'", value)
        return Recurrence.NONE


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class ScheduledMessage:
    """One occurrence of a message to deliver at ``scheduled_time``.

    Attributes:
        id: Unique identifier (UUID hex), stable for the record's lifetime.
        recipient_id: Opaque contact/group reference owned by the transport.
        content: Message body, handed to the transport untouched.
        scheduled_time: Timezone-aware instant at which delivery is attempted.
            A naive value is taken as UTC, the zone rows are stored in.
            MessageScheduler reads naive caller input in its own timezone
            and converts it before a record is built.
        attachments: Ordered opaque media references.
        recurrence: ``none``, ``daily``, ``weekly`` or ``monthly``.
        status: ``pending`` until it reaches a terminal status.
        created_at: ISO 8601 timestamp, immutable.
        parent_id: The occurrence that spawned this one in a recurrence chain.
        last_error: Failure reason recorded alongside ``status=failed``.
        updated_at: ISO 8601 timestamp of the last write.
    """

    id: str
    recipient_id: str
    content: str
    scheduled_time: datetime
    attachments: list[str] = field(default_factory=list)
    recurrence: Recurrence = Recurrence.NONE
    status: MessageStatus = MessageStatus.PENDING
    created_at: str = ""
    parent_id: str | None = None
    last_error: str | None = None
    updated_at: str | None = None

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = utc_now().isoformat()
        self.recurrence = normalize_recurrence(self.recurrence)
        self.status = MessageStatus(self.status)
        if self.scheduled_time.tzinfo is None:
            self.scheduled_time = self.scheduled_time.replace(tzinfo=UTC)
        self.attachments = list(self.attachments)

    # -- Convenience properties ------------------------------------------------

    @property
    def is_pending(self) -> bool:
        return self.status is MessageStatus.PENDING

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not Recurrence.NONE

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``scheduled_messages`` column order."""
        return (
            self.id,
            self.recipient_id,
            self.content,
            json.dumps(self.attachments),
            self.scheduled_time.astimezone(UTC).isoformat(),
            self.recurrence.value,
            self.status.value,
            self.created_at,
            self.parent_id,
            self.last_error,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> ScheduledMessage:
        """Deserialize from a SQLite row tuple."""
        return cls(
            id=row[0],
            recipient_id=row[1],
            content=row[2],
            attachments=json.loads(row[3]) if row[3] else [],
            scheduled_time=datetime.fromisoformat(row[4]),
            recurrence=row[5],
            status=row[6],
            created_at=row[7],
            parent_id=row[8],
            last_error=row[9],
            updated_at=row[10],
        )


def make_message_id() -> str:
    """Generate a new scheduled message ID."""
    return uuid.uuid4().hex
