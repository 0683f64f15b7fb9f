"""Source configuration provider with mtime-based reload and validation."""

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from src.config.settings import get_settings
from src.ingestion.errors import ConfigurationError
from src.ingestion.filters import validate_filter
from src.sources.schemas import SourceConfig, SourcesFile

logger = logging.getLogger(__name__)


def parse_sources(raw: dict[str, Any]) -> list[SourceConfig]:
    """
    Parse and validate the contents of ``integrations.json``.

    Raises:
        ConfigurationError: On a malformed file, a missing id/type or a duplicate id
    """
    try:
        parsed = SourcesFile.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"integrations file is malformed: {e}") from e

    sources: list[SourceConfig] = []
    seen: set[str] = set()
    for index, entry in enumerate(parsed.sources):
        source_id = entry.get("id")
        if not source_id:
            raise ConfigurationError(f'sources[{index}] must have an "id"')
        if source_id in seen:
            raise ConfigurationError(f"Duplicate source id: {source_id}")
        seen.add(source_id)
        if not entry.get("type"):
            raise ConfigurationError(f'Source {source_id} must have a "type" field')

        try:
            sources.append(SourceConfig.model_validate(entry))
        except ValidationError as e:
            raise ConfigurationError(f"Source {source_id} is invalid: {e}") from e

    return sources


class SourceConfigProvider:
    """
    Cached access to the JSON source configuration.

    The file is re-read only when its mtime changes. A reload that fails
    keeps serving the last good configuration, so a half-written edit never
    stops running sources.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path or get_settings().sources_file).expanduser()
        self._cached: list[SourceConfig] | None = None
        self._cached_mtime: float | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> list[SourceConfig]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.error("Source config not found: %s", self._path)
            return []
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{self._path} is not valid JSON: {e}") from e
        return parse_sources(raw)

    def get_sources(self, force_reload: bool = False) -> list[SourceConfig]:
        """All configured sources, reloading when the file changed."""
        try:
            mtime = self._path.stat().st_mtime
        except FileNotFoundError:
            mtime = None

        if not force_reload and self._cached is not None and mtime == self._cached_mtime:
            return self._cached

        try:
            sources = self._load()
        except ConfigurationError as e:
            if self._cached is not None:
                logger.warning("Config reload failed, using cached: %s", e)
                return self._cached
            raise

        self._cached = sources
        self._cached_mtime = mtime
        return sources

    def enabled_sources(self) -> list[SourceConfig]:
        return [s for s in self.get_sources() if s.enabled]

    def get_source(self, source_id: str) -> SourceConfig | None:
        for source in self.get_sources():
            if source.id == source_id:
                return source
        return None


def _check_type(field_type: str, value: Any) -> bool:
    if field_type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if field_type == "boolean":
        return isinstance(value, bool)
    if field_type in ("string", "secret", "select"):
        return isinstance(value, str)
    if field_type == "multiselect":
        return isinstance(value, list)
    return True


def validate_source(source: SourceConfig, plugin: Any) -> list[str]:
    """
    Validate a source against its plugin's declared config and item fields.

    ``plugin`` is a ``LoadedPlugin``; its adapter's own ``validate`` runs last.

    Returns:
        List of error strings, empty when valid
    """
    errors: list[str] = []
    metadata = plugin.metadata

    for field_def in metadata.config_fields:
        value = source.settings.get(field_def.key, field_def.default)
        if value is None or value == "":
            if field_def.required:
                errors.append(f'"{field_def.key}" is required')
            continue
        if not _check_type(field_def.type, value):
            errors.append(f'"{field_def.key}" must be of type {field_def.type}')
            continue
        if field_def.options is not None:
            allowed = {opt.value for opt in field_def.options}
            chosen = value if isinstance(value, list) else [value]
            for v in chosen:
                if v not in allowed:
                    errors.append(f'"{field_def.key}" has invalid option "{v}"')

    errors.extend(validate_filter(source.filter, metadata.item_fields))

    if not errors:
        result = plugin.adapter_class().validate(source)
        if not result.valid:
            errors.append(result.error or "adapter rejected configuration")

    return errors
