"""DryRunTransport — logs deliveries instead of sending them."""

from __future__ import annotations

import logging
import uuid

from src.scheduler.errors import TransportError
from src.transport.base import DeliveryReceipt

logger = logging.getLogger(__name__)


class DryRunTransport:
    """A transport that accepts every send while ``ready`` is True.

    Used when no real chat connection is wired in.  Receipts are kept in
    ``sent`` so the outcome can be inspected.
    """

    def __init__(self, *, ready: bool = True) -> None:
        self.ready = ready
        self.sent: list[DeliveryReceipt] = []

    def is_ready(self) -> bool:
        return self.ready

    async def send(
        self,
        recipient_id: str,
        content: str,
        attachments: list[str],
    ) -> DeliveryReceipt:
        if not self.ready:
            msg = "Transport is not connected"
            raise TransportError(msg)
        receipt = DeliveryReceipt(message_id=uuid.uuid4().hex, recipient_id=recipient_id)
        self.sent.append(receipt)
        logger.info(
            "[dry-run] Delivered to %s (%d chars, %d attachment(s))",
            recipient_id,
            len(content),
            len(attachments),
        )
        return receipt
