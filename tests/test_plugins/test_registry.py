"""Tests for plugin discovery, overrides and metadata validation."""

import logging
import textwrap

import pytest
from pydantic import ValidationError

from src.ingestion.base_adapter import BaseAdapter
from src.ingestion.errors import PluginLoadError
from src.plugins.loader import PluginRegistry, load_plugin
from src.plugins.schemas import PluginMetadata, validate_adapter_class

BUILTIN_TYPES = {"rss", "slack", "telegram", "msteams", "googlechat", "line"}

PLUGIN_SOURCE = textwrap.dedent(
    """
    from src.ingestion.base_adapter import BaseAdapter
    from src.ingestion.schemas import PollResult, TestResult

    metadata = {{
        "type": "{type}",
        "name": "{name}",
        "description": "Custom plugin",
        "version": "{version}",
        "configFields": [],
        "itemFields": [],
    }}


    class Adapter(BaseAdapter):
        async def poll(self, source, state, get_secret):
            return PollResult(items=[], state=state)

        async def test(self, source, get_secret):
            return TestResult(ok=True, message="ok")
    """
)


def _metadata(**overrides):
    data = {
        "type": "custom",
        "name": "Custom",
        "description": "Custom plugin",
        "version": "1.0.0",
        "configFields": [],
        "itemFields": [],
    }
    data.update(overrides)
    return data


@pytest.fixture
def user_dir(tmp_path):
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def write_plugin(user_dir):
    """Create a user plugin directory and return its path."""

    def _write(directory, type="custom", name="Custom", version="1.0.0", source=None):
        plugin_dir = user_dir / directory
        plugin_dir.mkdir()
        body = source or PLUGIN_SOURCE.format(type=type, name=name, version=version)
        (plugin_dir / "__init__.py").write_text(body, encoding="utf-8")
        return plugin_dir

    return _write


class TestDiscovery:
    """Tests for scanning the built-in and user plugin roots."""

    def test_builtin_adapters_load(self, tmp_path):
        registry = PluginRegistry(user_dir=tmp_path / "missing")

        plugins = registry.discover()

        assert set(plugins) == BUILTIN_TYPES
        assert all(p.is_builtin for p in plugins.values())
        assert registry.failed == []
        assert plugins["line"].supports_realtime
        assert plugins["slack"].supports_send
        assert not plugins["rss"].supports_realtime

    def test_user_plugin_overrides_builtin(self, user_dir, write_plugin):
        write_plugin("my-rss", type="rss", name="Better RSS", version="2.0.0")
        registry = PluginRegistry(user_dir=user_dir)

        plugin = registry.get("rss")

        assert not plugin.is_builtin
        assert plugin.metadata.name == "Better RSS"
        statuses = {(i.directory, i.status) for i in registry.installed()}
        assert ("rss", "overridden") in statuses
        assert ("my-rss", "loaded") in statuses

    def test_override_is_logged(self, user_dir, write_plugin, caplog):
        write_plugin("my-rss", type="rss", name="Better RSS")

        with caplog.at_level(logging.INFO, logger="src.plugins.loader"):
            PluginRegistry(user_dir=user_dir).discover()

        assert 'User plugin "rss" overrides built-in' in caplog.text

    def test_duplicate_within_one_root_is_not_an_override(
        self, tmp_path, user_dir, write_plugin, caplog
    ):
        write_plugin("alpha", type="dup", name="Alpha")
        write_plugin("beta", type="dup", name="Beta")
        registry = PluginRegistry(builtin_dir=tmp_path / "none", user_dir=user_dir)

        with caplog.at_level(logging.INFO, logger="src.plugins.loader"):
            plugins = registry.discover()

        assert plugins["dup"].metadata.name == "Beta"
        assert "overrides built-in" not in caplog.text
        assert 'Duplicate plugin type "dup"' in caplog.text

    def test_failed_plugin_is_recorded_and_skipped(self, tmp_path, user_dir, write_plugin):
        write_plugin("good")
        write_plugin("broken", source="raise RuntimeError('boom')\n")
        write_plugin("bad-version", type="other", version="one")
        registry = PluginRegistry(builtin_dir=tmp_path / "none", user_dir=user_dir)

        plugins = registry.discover()

        assert list(plugins) == ["custom"]
        failed = {info.directory: info.error for info in registry.failed}
        assert "import failed: boom" in failed["broken"]
        assert "version" in failed["bad-version"]

    def test_hidden_and_private_dirs_are_skipped(self, tmp_path, user_dir, write_plugin):
        write_plugin(".hidden")
        write_plugin("_private")
        (user_dir / "notes.txt").write_text("not a plugin")
        registry = PluginRegistry(builtin_dir=tmp_path / "none", user_dir=user_dir)

        assert registry.discover() == {}
        assert registry.installed() == []

    def test_directory_without_entry_module(self, tmp_path, user_dir):
        (user_dir / "empty").mkdir()
        registry = PluginRegistry(builtin_dir=tmp_path / "none", user_dir=user_dir)

        [info] = registry.installed()

        assert info.status == "failed"
        assert "no __init__.py found" in info.error

    def test_reset_forces_rediscovery(self, tmp_path, user_dir, write_plugin):
        registry = PluginRegistry(builtin_dir=tmp_path / "none", user_dir=user_dir)
        assert registry.plugins == {}

        write_plugin("late")
        assert registry.plugins == {}
        registry.reset()
        assert set(registry.plugins) == {"custom"}


class TestLoadPlugin:
    def test_missing_adapter_export(self, user_dir, write_plugin):
        path = write_plugin(
            "no-adapter",
            source=f"metadata = {_metadata()!r}\n",
        )

        with pytest.raises(PluginLoadError) as exc_info:
            load_plugin(path)

        assert exc_info.value.errors == ["no 'Adapter' export"]


class TestPluginMetadata:
    """Tests for metadata validation rules."""

    def test_camel_case_keys(self):
        metadata = PluginMetadata.model_validate(
            _metadata(supportsRealtime=True, defaultFilter=None)
        )
        assert metadata.supports_realtime is True
        assert metadata.config_fields == []

    @pytest.mark.parametrize("bad_type", ["Slack", "9lives", "has space", ""])
    def test_type_pattern(self, bad_type):
        with pytest.raises(ValidationError):
            PluginMetadata.model_validate(_metadata(type=bad_type))

    def test_semver(self):
        with pytest.raises(ValidationError, match="semver"):
            PluginMetadata.model_validate(_metadata(version="v1"))
        assert PluginMetadata.model_validate(_metadata(version="1.2.3-beta")).version == "1.2.3-beta"

    def test_required_fields(self):
        data = _metadata()
        del data["itemFields"]
        with pytest.raises(ValidationError):
            PluginMetadata.model_validate(data)

    def test_select_requires_options(self):
        field = {"key": "region", "label": "Region", "type": "select"}
        with pytest.raises(ValidationError, match="options is required"):
            PluginMetadata.model_validate(_metadata(configFields=[field]))

    def test_enum_requires_values(self):
        field = {"key": "status", "label": "Status", "type": "enum"}
        with pytest.raises(ValidationError, match="values is required"):
            PluginMetadata.model_validate(_metadata(itemFields=[field]))

    def test_default_filter_checked_against_item_fields(self):
        data = _metadata(
            itemFields=[{"key": "status", "label": "Status", "type": "enum", "values": ["ok"]}],
            defaultFilter=[{"field": "priority", "operator": "equals", "value": "high"}],
        )
        with pytest.raises(ValidationError, match="does not match any declared item field"):
            PluginMetadata.model_validate(data)


class TestValidateAdapterClass:
    def test_not_a_class(self):
        assert validate_adapter_class(object()) == ["Adapter export must be a class"]

    def test_abstract_methods_reported(self):
        errors = validate_adapter_class(BaseAdapter)
        assert "adapter must implement poll()" in errors
        assert "adapter must implement test()" in errors

    def test_plain_class_without_methods(self):
        class Empty:
            pass

        assert len(validate_adapter_class(Empty)) == 2
