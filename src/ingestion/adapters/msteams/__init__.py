"""Microsoft Teams channels via Graph delta queries."""

from src.ingestion.adapters.msteams.adapter import MSTeamsAdapter as Adapter
from src.ingestion.adapters.msteams.adapter import metadata

__all__ = ["Adapter", "metadata"]
