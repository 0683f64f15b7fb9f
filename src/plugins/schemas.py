"""Plugin metadata schema and adapter class checks."""

import inspect
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.ingestion.filters import validate_filter
from src.ingestion.schemas import FilterCondition

TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
SEMVER_PATTERN = re.compile(r"^\d+\.\d+\.\d+")

ConfigFieldType = Literal["string", "number", "boolean", "secret", "select", "multiselect"]
ItemFieldType = Literal["string", "enum", "number", "boolean"]


class SelectOption(BaseModel):
    value: str
    label: str


class ConfigField(BaseModel):
    """A source setting the adapter expects, rendered by config editors."""

    model_config = ConfigDict(populate_by_name=True)

    key: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    type: ConfigFieldType
    required: bool = False
    default: Any = None
    options: list[SelectOption] | None = None
    placeholder: str | None = None
    help_text: str | None = Field(default=None, alias="helpText")

    @model_validator(mode="after")
    def require_options_for_select(self) -> "ConfigField":
        if self.type in ("select", "multiselect") and self.options is None:
            raise ValueError(f'options is required for type "{self.type}"')
        return self


class ItemField(BaseModel):
    """A filterable property the adapter sets on ``IngestItem.fields``."""

    key: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    type: ItemFieldType
    values: list[str] | None = None

    @model_validator(mode="after")
    def require_values_for_enum(self) -> "ItemField":
        if self.type == "enum" and self.values is None:
            raise ValueError('values is required for type "enum"')
        return self


class PluginMetadata(BaseModel):
    """
    Declarative description every plugin exports as ``metadata``.

    Accepts both snake_case and the camelCase keys used in plugin manifests
    (``configFields``, ``itemFields``, ``defaultFilter``).
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    author: str | None = None
    config_fields: list[ConfigField] = Field(..., alias="configFields")
    item_fields: list[ItemField] = Field(..., alias="itemFields")
    default_filter: list[FilterCondition] | None = Field(
        default=None, alias="defaultFilter"
    )
    supports_realtime: bool = Field(default=False, alias="supportsRealtime")
    supports_send: bool = Field(default=False, alias="supportsSend")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if not TYPE_PATTERN.match(v):
            raise ValueError(
                f'type must be lowercase alphanumeric with hyphens/underscores (got "{v}")'
            )
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not SEMVER_PATTERN.match(v):
            raise ValueError(f'version must be semver (e.g. "1.0.0"), got "{v}"')
        return v

    @model_validator(mode="after")
    def validate_default_filter(self) -> "PluginMetadata":
        errors = validate_filter(self.default_filter, self.item_fields, label="defaultFilter")
        if errors:
            raise ValueError("; ".join(errors))
        return self


def validate_adapter_class(adapter_cls: Any) -> list[str]:
    """Return errors when ``adapter_cls`` is not a usable adapter class."""
    if not inspect.isclass(adapter_cls):
        return ["Adapter export must be a class"]

    errors = []
    for method in ("poll", "test"):
        impl = getattr(adapter_cls, method, None)
        if impl is None or not callable(impl):
            errors.append(f"adapter must implement {method}()")
        elif getattr(impl, "__isabstractmethod__", False):
            errors.append(f"adapter must implement {method}()")
    return errors
