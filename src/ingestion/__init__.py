"""Data ingestion module - adapter contract, schemas, filters and delivery."""

from src.ingestion.schemas import (
    Attachment,
    FilterCondition,
    IngestItem,
    PollResult,
    TestResult,
    ValidationResult,
)

__all__ = [
    "Attachment",
    "FilterCondition",
    "IngestItem",
    "PollResult",
    "TestResult",
    "ValidationResult",
]
