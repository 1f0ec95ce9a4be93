"""MessageTransport protocol — interface to whatever actually delivers messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class DeliveryReceipt:
    """Acknowledgement returned by a successful send."""

    message_id: str
    recipient_id: str
    sent_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@runtime_checkable
class MessageTransport(Protocol):
    """Protocol that all transports must satisfy.

    Recipient resolution belongs to the transport: ``recipient_id`` is passed
    through untouched.  Any exception raised by :meth:`send` counts as a
    failed delivery; :class:`src.scheduler.errors.TransportError` is the
    preferred type.
    """

    def is_ready(self) -> bool:
        """Whether a send attempt may be made now."""
        ...

    async def send(
        self,
        recipient_id: str,
        content: str,
        attachments: list[str],
    ) -> DeliveryReceipt:
        """Deliver *content* (and *attachments*) to *recipient_id*."""
        ...
