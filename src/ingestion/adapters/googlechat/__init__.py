"""Google Chat spaces via a service account."""

from src.ingestion.adapters.googlechat.adapter import GoogleChatAdapter as Adapter
from src.ingestion.adapters.googlechat.adapter import metadata

__all__ = ["Adapter", "metadata"]
