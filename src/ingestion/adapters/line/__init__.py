"""LINE Messaging API webhook."""

from src.ingestion.adapters.line.adapter import LineAdapter as Adapter
from src.ingestion.adapters.line.adapter import metadata

__all__ = ["Adapter", "metadata"]
