"""Scheduled message system — models, persistence, timers, delivery and recovery."""

from src.scheduler.engine import MessageScheduler
from src.scheduler.errors import SchedulerError, StorageError, TransportError, ValidationError
from src.scheduler.executor import DeliveryExecutor
from src.scheduler.models import MessageStatus, Recurrence, ScheduledMessage
from src.scheduler.recovery import RecoveryReport, find_broken_chains, recover_pending_messages
from src.scheduler.store import InMemoryMessageStore, MessageStore, SQLiteMessageStore
from src.scheduler.timer import APSchedulerTimer, JobTimer

__all__ = [
    "APSchedulerTimer",
    "DeliveryExecutor",
    "InMemoryMessageStore",
    "JobTimer",
    "MessageScheduler",
    "MessageStatus",
    "MessageStore",
    "Recurrence",
    "RecoveryReport",
    "SQLiteMessageStore",
    "ScheduledMessage",
    "SchedulerError",
    "StorageError",
    "TransportError",
    "ValidationError",
    "find_broken_chains",
    "recover_pending_messages",
]
