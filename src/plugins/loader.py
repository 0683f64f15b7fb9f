"""
Plugin registry: discovers built-in and user adapter plugins.

A plugin is a directory holding an ``__init__.py`` that exports:

    metadata = {...}      # PluginMetadata fields (camelCase keys accepted)
    Adapter = MyAdapter   # BaseAdapter subclass implementing poll() and test()

Built-in plugins live in ``src/ingestion/adapters/``; user plugins live in
``USER_PLUGIN_DIR``. Both roots are scanned in that order into one ordered
map keyed by plugin type, so a user plugin replaces a built-in of the same
type. A plugin that fails to import or validate is recorded with its error
and skipped; it never aborts discovery.
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any

from pydantic import ValidationError

from src.config.settings import get_settings
from src.ingestion.errors import PluginLoadError
from src.plugins.schemas import PluginMetadata, validate_adapter_class

logger = logging.getLogger(__name__)

BUILTIN_DIR = Path(__file__).resolve().parent.parent / "ingestion" / "adapters"
BUILTIN_PACKAGE = "src.ingestion.adapters"
USER_MODULE_PREFIX = "ingest_user_plugins"
ENTRY_MODULE = "__init__.py"


@dataclass(frozen=True)
class LoadedPlugin:
    """A validated plugin ready to instantiate adapters from."""

    metadata: PluginMetadata
    adapter_class: type
    path: Path
    is_builtin: bool

    @property
    def type(self) -> str:
        return self.metadata.type

    @property
    def supports_realtime(self) -> bool:
        return self.metadata.supports_realtime or bool(
            getattr(self.adapter_class, "supports_realtime", False)
        )

    @property
    def supports_send(self) -> bool:
        return self.metadata.supports_send or bool(
            getattr(self.adapter_class, "supports_send", False)
        )


@dataclass(frozen=True)
class PluginInfo:
    """Inventory entry for one plugin directory, loaded or not."""

    directory: str
    path: str
    is_builtin: bool
    status: str  # loaded, failed, overridden
    type: str | None = None
    name: str | None = None
    description: str | None = None
    version: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _list_plugin_dirs(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    try:
        return sorted(
            p
            for p in root.iterdir()
            if p.is_dir() and not p.name.startswith((".", "_"))
        )
    except OSError as e:
        logger.warning(f"Failed to read plugin directory {root}: {e}")
        return []


def _import_plugin_module(path: Path, is_builtin: bool) -> ModuleType:
    entry = path / ENTRY_MODULE
    if not entry.is_file():
        raise PluginLoadError(str(path), [f"no {ENTRY_MODULE} found"])

    if is_builtin:
        module_name = f"{BUILTIN_PACKAGE}.{path.name}"
        try:
            return importlib.import_module(module_name)
        except Exception as e:
            raise PluginLoadError(str(path), [f"import failed: {e}"]) from e

    module_name = f"{USER_MODULE_PREFIX}.{path.name}"
    spec = importlib.util.spec_from_file_location(
        module_name, entry, submodule_search_locations=[str(path)]
    )
    if spec is None or spec.loader is None:
        raise PluginLoadError(str(path), ["cannot create import spec"])

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        raise PluginLoadError(str(path), [f"import failed: {e}"]) from e
    return module


def _format_validation_errors(exc: ValidationError) -> list[str]:
    errors = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"]) or "metadata"
        errors.append(f"{location}: {err['msg']}")
    return errors


def load_plugin(path: Path, is_builtin: bool = False) -> LoadedPlugin:
    """
    Import and validate one plugin directory.

    Raises:
        PluginLoadError: If the module cannot be imported or fails validation
    """
    module = _import_plugin_module(path, is_builtin)

    raw_metadata = getattr(module, "metadata", None)
    if raw_metadata is None:
        raise PluginLoadError(str(path), ["no 'metadata' export"])

    try:
        if isinstance(raw_metadata, PluginMetadata):
            metadata = raw_metadata
        else:
            metadata = PluginMetadata.model_validate(raw_metadata)
    except ValidationError as e:
        raise PluginLoadError(str(path), _format_validation_errors(e)) from e

    adapter_class = getattr(module, "Adapter", None)
    if adapter_class is None:
        raise PluginLoadError(str(path), ["no 'Adapter' export"])

    class_errors = validate_adapter_class(adapter_class)
    if class_errors:
        raise PluginLoadError(str(path), class_errors)

    return LoadedPlugin(
        metadata=metadata,
        adapter_class=adapter_class,
        path=path,
        is_builtin=is_builtin,
    )


class PluginRegistry:
    """
    Ordered registry of loaded plugins.

    Usage:
        registry = PluginRegistry()
        registry.discover()
        plugin = registry.get("slack")
        adapter = plugin.adapter_class()
    """

    def __init__(
        self,
        builtin_dir: Path | None = None,
        user_dir: Path | None = None,
    ):
        self._builtin_dir = builtin_dir or BUILTIN_DIR
        self._user_dir = Path(user_dir or get_settings().user_plugin_dir).expanduser()
        self._plugins: dict[str, LoadedPlugin] = {}
        self._inventory: list[PluginInfo] = []
        self._discovered = False

    def discover(self) -> dict[str, LoadedPlugin]:
        """Scan both roots; built-ins first, user plugins override on collision."""
        plugins: dict[str, LoadedPlugin] = {}
        inventory: list[PluginInfo] = []

        for root, is_builtin in ((self._builtin_dir, True), (self._user_dir, False)):
            for path in _list_plugin_dirs(root):
                try:
                    plugin = load_plugin(path, is_builtin=is_builtin)
                except PluginLoadError as e:
                    logger.warning(f"Skipping plugin {path}: {'; '.join(e.errors)}")
                    inventory.append(
                        PluginInfo(
                            directory=path.name,
                            path=str(path),
                            is_builtin=is_builtin,
                            status="failed",
                            error="; ".join(e.errors),
                        )
                    )
                    continue

                meta = plugin.metadata
                previous = plugins.get(meta.type)
                if previous is not None and previous.is_builtin != is_builtin:
                    logger.info(f'User plugin "{meta.type}" overrides built-in (from {path})')
                elif previous is not None:
                    logger.warning(
                        f'Duplicate plugin type "{meta.type}": {path} replaces {previous.path}'
                    )
                plugins[meta.type] = plugin
                inventory.append(
                    PluginInfo(
                        directory=path.name,
                        path=str(path),
                        is_builtin=is_builtin,
                        status="loaded",
                        type=meta.type,
                        name=meta.name,
                        description=meta.description,
                        version=meta.version,
                    )
                )
                kind = "built-in" if is_builtin else "user"
                logger.info(f"Loaded {kind} plugin: {meta.type} ({meta.name} v{meta.version})")

        # Mark built-ins shadowed by a user plugin
        active_paths = {str(p.path) for p in plugins.values()}
        self._inventory = [
            PluginInfo(**{**info.to_dict(), "status": "overridden"})
            if info.status == "loaded" and info.path not in active_paths
            else info
            for info in inventory
        ]
        self._plugins = plugins
        self._discovered = True
        return dict(plugins)

    def _ensure_discovered(self) -> None:
        if not self._discovered:
            self.discover()

    def get(self, plugin_type: str) -> LoadedPlugin | None:
        self._ensure_discovered()
        return self._plugins.get(plugin_type)

    @property
    def plugins(self) -> dict[str, LoadedPlugin]:
        self._ensure_discovered()
        return dict(self._plugins)

    def installed(self) -> list[PluginInfo]:
        """Every scanned plugin directory with its load status."""
        self._ensure_discovered()
        return list(self._inventory)

    @property
    def failed(self) -> list[PluginInfo]:
        return [p for p in self.installed() if p.status == "failed"]

    def reset(self) -> None:
        """Forget discovery results (useful for testing)."""
        self._plugins = {}
        self._inventory = []
        self._discovered = False
