"""Realtime subsystem - webhook listeners, push buffers and connection lifecycle."""

from src.realtime.buffer import ItemBuffer
from src.realtime.connection_manager import ConnectionManager
from src.realtime.webhook import WebhookListener, compute_signature, verify_signature

__all__ = [
    "ConnectionManager",
    "ItemBuffer",
    "WebhookListener",
    "compute_signature",
    "verify_signature",
]
