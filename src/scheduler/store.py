"""Message stores — aiosqlite-backed and in-memory CRUD for scheduled messages."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import aiosqlite

from src.config import settings
from src.scheduler.errors import StorageError
from src.scheduler.models import MessageStatus, ScheduledMessage, utc_now

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS scheduled_messages (
    id TEXT PRIMARY KEY,
    recipient_id TEXT NOT NULL,
    content TEXT NOT NULL,
    attachments TEXT NOT NULL DEFAULT '[]',
    scheduled_time TEXT NOT NULL,
    recurrence TEXT NOT NULL DEFAULT 'none',
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    parent_id TEXT,
    last_error TEXT,
    updated_at TEXT
)
"""

_CREATE_STATUS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_scheduled_messages_status
    ON scheduled_messages (status, scheduled_time)
"""

_COLUMNS = (
    "id, recipient_id, content, attachments, scheduled_time, recurrence,"
    " status, created_at, parent_id, last_error, updated_at"
)

# Fields a caller may change through update(); id and created_at are fixed.
UPDATABLE_FIELDS = frozenset(
    {
        "recipient_id",
        "content",
        "attachments",
        "scheduled_time",
        "recurrence",
        "status",
        "last_error",
        "updated_at",
    }
)


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        msg = f"Cannot update field(s): {', '.join(sorted(unknown))}"
        raise ValueError(msg)


def _apply(message: ScheduledMessage, fields: dict[str, Any]) -> ScheduledMessage:
    updated = replace(message, **fields)
    if "updated_at" not in fields:
        updated.updated_at = utc_now().isoformat()
    return updated


@runtime_checkable
class MessageStore(Protocol):
    """Persistence operations the scheduler relies on."""

    async def insert(self, message: ScheduledMessage) -> ScheduledMessage:
        """Persist a new record and return it."""
        ...

    async def update(self, message_id: str, **fields: Any) -> ScheduledMessage | None:
        """Change fields of an existing record. Returns None if the id is unknown."""
        ...

    async def get(self, message_id: str) -> ScheduledMessage | None:
        ...

    async def list_all(self) -> list[ScheduledMessage]:
        ...

    async def list_by_status(self, status: MessageStatus) -> list[ScheduledMessage]:
        ...

    async def delete(self, message_id: str) -> bool:
        ...


class SQLiteMessageStore:
    """Persists scheduled messages in SQLite.

    Singleton accessed via ``SQLiteMessageStore.instance()``.  Pass an explicit
    *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).  Every
    ``aiosqlite`` failure surfaces as :class:`StorageError`.
    """

    _instance: SQLiteMessageStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    @classmethod
    def instance(cls) -> SQLiteMessageStore:
        """Return the shared store instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.execute(_CREATE_STATUS_INDEX)
            await db.commit()
            self._initialised = True
        return db

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            db = await self._connect()
        except (aiosqlite.Error, OSError) as exc:
            msg = f"Cannot open message store at {self._db_path}: {exc}"
            raise StorageError(msg) from exc
        try:
            yield db
        except aiosqlite.Error as exc:
            msg = f"Message store operation failed: {exc}"
            raise StorageError(msg) from exc
        finally:
            await db.close()

    # -- CRUD ------------------------------------------------------------------

    async def insert(self, message: ScheduledMessage) -> ScheduledMessage:
        """Insert a new record. Returns the same message object."""
        async with self._connection() as db:
            await db.execute(
                f"INSERT INTO scheduled_messages ({_COLUMNS})"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                message.to_row(),
            )
            await db.commit()
        logger.info("Stored scheduled message %s (status=%s)", message.id, message.status)
        return message

    async def update(self, message_id: str, **fields: Any) -> ScheduledMessage | None:
        """Read-modify-write one record inside a single transaction."""
        _check_fields(fields)
        async with self._connection() as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM scheduled_messages WHERE id = ?", (message_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                await db.rollback()
                return None
            updated = _apply(ScheduledMessage.from_row(row), fields)
            await db.execute(
                """
                UPDATE scheduled_messages
                SET recipient_id = ?, content = ?, attachments = ?, scheduled_time = ?,
                    recurrence = ?, status = ?, created_at = ?, parent_id = ?,
                    last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (*updated.to_row()[1:], message_id),
            )
            await db.commit()
        logger.debug("Updated scheduled message %s: %s", message_id, sorted(fields))
        return updated

    async def get(self, message_id: str) -> ScheduledMessage | None:
        """Fetch a record by ID, or None if not found."""
        async with self._connection() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM scheduled_messages WHERE id = ?", (message_id,)
            )
            row = await cursor.fetchone()
        return ScheduledMessage.from_row(row) if row else None

    async def list_all(self) -> list[ScheduledMessage]:
        async with self._connection() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM scheduled_messages ORDER BY scheduled_time, created_at"
            )
            rows = await cursor.fetchall()
        return [ScheduledMessage.from_row(row) for row in rows]

    async def list_by_status(self, status: MessageStatus) -> list[ScheduledMessage]:
        async with self._connection() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM scheduled_messages WHERE status = ?"
                " ORDER BY scheduled_time, created_at",
                (MessageStatus(status).value,),
            )
            rows = await cursor.fetchall()
        return [ScheduledMessage.from_row(row) for row in rows]

    async def delete(self, message_id: str) -> bool:
        """Physically remove a record. Returns True if a row was deleted."""
        async with self._connection() as db:
            cursor = await db.execute(
                "DELETE FROM scheduled_messages WHERE id = ?", (message_id,)
            )
            await db.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted scheduled message %s", message_id)
        return deleted


class InMemoryMessageStore:
    """Dict-backed store. Records do not survive the process.

    Returned records are copies, so callers cannot mutate stored state.
    """

    def __init__(self) -> None:
        self._records: dict[str, ScheduledMessage] = {}

    async def insert(self, message: ScheduledMessage) -> ScheduledMessage:
        if message.id in self._records:
            msg = f"Duplicate scheduled message id: {message.id}"
            raise StorageError(msg)
        self._records[message.id] = replace(message)
        return message

    async def update(self, message_id: str, **fields: Any) -> ScheduledMessage | None:
        _check_fields(fields)
        current = self._records.get(message_id)
        if current is None:
            return None
        updated = _apply(current, fields)
        self._records[message_id] = updated
        return replace(updated)

    async def get(self, message_id: str) -> ScheduledMessage | None:
        record = self._records.get(message_id)
        return replace(record) if record else None

    async def list_all(self) -> list[ScheduledMessage]:
        records = sorted(
            self._records.values(), key=lambda m: (m.scheduled_time, m.created_at)
        )
        return [replace(m) for m in records]

    async def list_by_status(self, status: MessageStatus) -> list[ScheduledMessage]:
        wanted = MessageStatus(status)
        return [m for m in await self.list_all() if m.status is wanted]

    async def delete(self, message_id: str) -> bool:
        return self._records.pop(message_id, None) is not None
