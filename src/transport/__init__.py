"""Transport abstraction layer — the boundary to the chat account."""

from src.transport.base import DeliveryReceipt, MessageTransport
from src.transport.dry_run import DryRunTransport

__all__ = [
    "DeliveryReceipt",
    "DryRunTransport",
    "MessageTransport",
]
