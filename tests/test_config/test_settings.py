"""Tests for environment-driven settings."""

from src.config.settings import Settings, get_settings


class TestSettings:
    def test_defaults(self, test_settings):
        assert test_settings.poll_stagger_seconds == 2.0
        assert test_settings.max_backoff_seconds == 3600.0
        assert test_settings.task_stream_name == "ingest_tasks"
        assert not test_settings.is_production

    def test_api_key_list(self):
        assert Settings(api_keys=" k1, ,k2 ").api_key_list == ["k1", "k2"]
        assert Settings(api_keys=None).api_key_list == []

    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SOURCES_FILE", str(tmp_path / "sources.json"))
        monkeypatch.setenv("POLL_TIMEOUT_SECONDS", "30")
        get_settings.cache_clear()
        try:
            settings = get_settings()
            assert settings.sources_file == tmp_path / "sources.json"
            assert settings.poll_timeout_seconds == 30.0
        finally:
            get_settings.cache_clear()
