"""Telegram chats via the Bot API."""

from src.ingestion.adapters.telegram.adapter import TelegramAdapter as Adapter
from src.ingestion.adapters.telegram.adapter import metadata

__all__ = ["Adapter", "metadata"]
