"""Scheduler service entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import TYPE_CHECKING

from src.config import settings
from src.scheduler.engine import MessageScheduler
from src.scheduler.store import SQLiteMessageStore
from src.transport.dry_run import DryRunTransport

if TYPE_CHECKING:
    from src.scheduler.store import MessageStore
    from src.transport.base import MessageTransport

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level, logging.INFO),
)
logger = logging.getLogger(__name__)


def build_scheduler(
    store: MessageStore | None = None,
    transport: MessageTransport | None = None,
) -> MessageScheduler:
    """Create the scheduler with the configured store and transport."""
    if transport is None:
        if not settings.transport_dry_run:
            msg = (
                "No message transport configured. Set TRANSPORT_DRY_RUN=true or "
                "construct MessageScheduler with a MessageTransport."
            )
            raise RuntimeError(msg)
        transport = DryRunTransport()
    return MessageScheduler(
        store=store or SQLiteMessageStore.instance(),
        transport=transport,
    )


async def serve(
    scheduler: MessageScheduler | None = None,
    stop_event: asyncio.Event | None = None,
    *,
    install_signal_handlers: bool = True,
) -> None:
    """Run recovery, then keep timers alive until SIGINT/SIGTERM or *stop_event*."""
    scheduler = scheduler or build_scheduler()
    stop = stop_event or asyncio.Event()

    if install_signal_handlers:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, stop.set)

    report = await scheduler.initialize_scheduler()
    logger.info(
        "Serving: %d overdue and %d deferred message(s) recovered",
        report.overdue,
        report.deferred,
    )
    try:
        await stop.wait()
    finally:
        await scheduler.shutdown()


def main() -> None:
    """Start the scheduler service."""
    logger.info("Starting message scheduler (db=%s)...", settings.database_path)
    asyncio.run(serve())


if __name__ == "__main__":
    main()
