"""Tests for item schemas, results, secrets and adapter helpers."""

import asyncio
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from src.config.settings import get_settings
from src.ingestion.base_adapter import BaseAdapter, clean_text, stable_hash, truncate
from src.ingestion.errors import (
    ConfigurationError,
    CursorExpiredError,
    SecretNotFoundError,
    TransientSourceError,
)
from src.ingestion.result import Err, Ok
from src.ingestion.schemas import IngestItem
from src.ingestion.secrets import get_secret
from src.sources.schemas import SourceConfig


class TestIngestItem:
    def test_defaults(self):
        item = IngestItem(id="rss-abc")

        assert item.title == "(untitled)"
        assert item.description == ""
        assert item.attachments == []
        assert item.fields == {}
        assert item.timestamp.tzinfo is not None

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            IngestItem(id="")

    def test_naive_timestamp_is_utc(self):
        item = IngestItem(id="x", timestamp=datetime(2026, 1, 2, 3, 4, 5))
        assert item.timestamp.tzinfo == timezone.utc


class TestResult:
    def test_ok(self):
        result = Ok([1, 2])
        assert result.ok
        assert result.value == [1, 2]

    def test_err_message(self):
        assert Err(TransientSourceError("timeout")).message == "timeout"

    def test_err_message_falls_back_to_type_name(self):
        result = Err(TimeoutError())
        assert not result.ok
        assert result.message == "TimeoutError"


class TestErrors:
    def test_configuration_error_collects_details(self):
        error = ConfigurationError("bad source", errors=['"url" is required'])
        assert error.errors == ['"url" is required']
        assert ConfigurationError("x").errors == []

    def test_cursor_expired_is_transient(self):
        error = CursorExpiredError("delta link gone", resource="C1")
        assert isinstance(error, TransientSourceError)
        assert error.resource == "C1"

    def test_missing_secret_is_transient(self):
        assert issubclass(SecretNotFoundError, TransientSourceError)


class TestSecrets:
    """Tests for named secret lookup."""

    @pytest.fixture(autouse=True)
    def _fresh_settings(self, monkeypatch):
        monkeypatch.delenv("SECRET_COMMAND", raising=False)
        monkeypatch.delenv("SECRET_COMMAND_TIMEOUT_SECONDS", raising=False)
        get_settings.cache_clear()
        yield
        get_settings.cache_clear()

    @pytest.mark.asyncio
    async def test_env_var_lookup(self, monkeypatch):
        monkeypatch.setenv("INGEST_SECRET_SLACK_BOT_TOKEN", "xoxb-123")
        assert await get_secret("slack-bot.token") == "xoxb-123"

    @pytest.mark.asyncio
    async def test_missing_secret(self):
        with pytest.raises(SecretNotFoundError, match="INGEST_SECRET_NOPE"):
            await get_secret("nope")

    @pytest.mark.asyncio
    async def test_blank_secret_is_missing(self, monkeypatch):
        monkeypatch.setenv("INGEST_SECRET_EMPTY", "   ")
        with pytest.raises(SecretNotFoundError):
            await get_secret("empty")

    @pytest.mark.asyncio
    async def test_secret_command(self, monkeypatch):
        monkeypatch.setenv("SECRET_COMMAND", "echo")
        get_settings.cache_clear()
        assert await get_secret("github") == "github"

    @pytest.mark.asyncio
    async def test_secret_command_failure(self, monkeypatch):
        monkeypatch.setenv("SECRET_COMMAND", "false")
        get_settings.cache_clear()
        with pytest.raises(SecretNotFoundError, match="exited with 1"):
            await get_secret("github")

    @pytest.mark.asyncio
    async def test_secret_command_not_found(self, monkeypatch):
        monkeypatch.setenv("SECRET_COMMAND", "/nonexistent/secret-tool")
        get_settings.cache_clear()
        with pytest.raises(SecretNotFoundError, match="Failed to get secret"):
            await get_secret("github")

    @pytest.mark.asyncio
    async def test_secret_command_timeout(self, monkeypatch):
        monkeypatch.setenv("SECRET_COMMAND", "sh -c 'sleep 5'")
        monkeypatch.setenv("SECRET_COMMAND_TIMEOUT_SECONDS", "0.2")
        get_settings.cache_clear()
        with pytest.raises(SecretNotFoundError, match="timed out"):
            await get_secret("github")

    @pytest.mark.asyncio
    async def test_slow_command_does_not_block_event_loop(self, monkeypatch):
        monkeypatch.setenv("SECRET_COMMAND", "sh -c 'sleep 0.5; echo $0'")
        get_settings.cache_clear()
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        task = asyncio.create_task(ticker())
        try:
            assert await get_secret("github") == "github"
        finally:
            task.cancel()

        assert ticks > 10


class TestAdapterHelpers:
    def test_truncate_keeps_first_line(self):
        assert truncate("Deploy failed\nstack trace") == "Deploy failed"

    def test_truncate_long_line(self):
        title = truncate("x" * 200, 20)
        assert len(title) == 20
        assert title.endswith("...")

    def test_clean_text(self):
        assert clean_text("  a\n\n b\x00 ") == "a b"

    def test_stable_hash(self):
        assert stable_hash("https://example.com/a") == stable_hash("https://example.com/a")
        assert stable_hash("a") != stable_hash("b")
        assert len(stable_hash("a")) == 16

    def test_required_setting(self):
        class Minimal(BaseAdapter):
            type = "minimal"

            async def poll(self, source, state, get_secret):
                raise NotImplementedError

            async def test(self, source, get_secret):
                raise NotImplementedError

        adapter = Minimal()
        source = SourceConfig(id="m", type="minimal", settings={"url": "https://x"})

        assert adapter.required_setting(source, "url") == "https://x"
        with pytest.raises(ConfigurationError, match='"token"'):
            adapter.required_setting(source, "token")
        assert adapter.validate(source).valid
