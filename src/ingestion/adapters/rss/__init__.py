"""RSS/Atom feeds."""

from src.ingestion.adapters.rss.adapter import RssAdapter as Adapter
from src.ingestion.adapters.rss.adapter import metadata

__all__ = ["Adapter", "metadata"]
