"""DeliveryExecutor — performs one send attempt and records the outcome."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.scheduler.errors import TransportError
from src.scheduler.models import MessageStatus

if TYPE_CHECKING:
    from src.scheduler.models import ScheduledMessage
    from src.scheduler.store import MessageStore
    from src.transport.base import MessageTransport

logger = logging.getLogger(__name__)


class DeliveryExecutor:
    """Sends a scheduled message through the transport.

    A failed attempt is terminal: the record is marked ``failed`` with the
    error text and nothing is retried.  Transport errors never escape
    :meth:`deliver`; store errors do.

    Args:
        transport: MessageTransport used for the actual send.
        store: MessageStore for status updates.
    """

    def __init__(self, transport: MessageTransport, store: MessageStore) -> None:
        self._transport = transport
        self._store = store

    async def deliver(self, message: ScheduledMessage) -> ScheduledMessage | None:
        """Attempt delivery and return the updated record (None if it vanished)."""
        logger.info(
            "Delivering scheduled message %s to %s (recurrence=%s, %d attachment(s))",
            message.id,
            message.recipient_id,
            message.recurrence,
            len(message.attachments),
        )
        try:
            await self._send(message)
        except Exception as exc:
            logger.exception("Delivery failed for scheduled message %s", message.id)
            return await self._store.update(
                message.id,
                status=MessageStatus.FAILED,
                last_error=str(exc) or type(exc).__name__,
            )

        logger.info("Scheduled message %s sent", message.id)
        return await self._store.update(message.id, status=MessageStatus.SENT, last_error=None)

    async def _send(self, message: ScheduledMessage) -> None:
        if not self._transport.is_ready():
            msg = "Transport is not ready"
            raise TransportError(msg)
        receipt = await self._transport.send(
            message.recipient_id,
            message.content,
            list(message.attachments),
        )
        logger.debug("Transport receipt for %s: %s", message.id, receipt)
