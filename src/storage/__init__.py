"""Storage layer for dedup keys, adapter state and poll history."""

from src.storage.database import Database, close_database, get_database
from src.storage.repository import IngestRepository

__all__ = ["Database", "close_database", "get_database", "IngestRepository"]
