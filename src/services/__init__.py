"""Services that orchestrate ingestion."""

from src.services.ingestion_service import CycleReport, IngestionService

__all__ = ["CycleReport", "IngestionService"]
