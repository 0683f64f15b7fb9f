"""Plugins: adapter discovery, metadata validation and override rules."""

from src.plugins.loader import LoadedPlugin, PluginInfo, PluginRegistry, load_plugin
from src.plugins.schemas import (
    ConfigField,
    ItemField,
    PluginMetadata,
    SelectOption,
    validate_adapter_class,
)

__all__ = [
    "ConfigField",
    "ItemField",
    "LoadedPlugin",
    "PluginInfo",
    "PluginMetadata",
    "PluginRegistry",
    "SelectOption",
    "load_plugin",
    "validate_adapter_class",
]
