"""Sources: configured integration instances and their file-backed provider."""

from src.sources.schemas import SourceConfig, SourcesFile
from src.sources.service import SourceConfigProvider, parse_sources, validate_source

__all__ = [
    "SourceConfig",
    "SourceConfigProvider",
    "SourcesFile",
    "parse_sources",
    "validate_source",
]
