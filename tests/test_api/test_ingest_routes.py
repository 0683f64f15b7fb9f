"""Tests for the ingestion and plugin endpoints."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from src.api.auth import verify_api_key
from src.config.settings import get_settings
from src.ingestion.errors import ConfigurationError, StoreUnavailableError
from src.ingestion.schemas import IngestItem, SendResult, TestResult
from src.services.ingestion_service import CycleReport

POLL_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestStats:
    def test_lists_configured_and_stored_sources(self, client, mock_repo):
        mock_repo.all_source_stats.return_value = [
            {"source_id": "src-a", "total_items": 3, "last_ingested": POLL_AT},
            {"source_id": "removed", "total_items": 9, "last_ingested": POLL_AT},
        ]
        mock_repo.last_poll.return_value = {"poll_at": POLL_AT, "error": "timeout"}

        resp = client.get("/ingest/stats")

        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 3
        by_id = {s["source_id"]: s for s in data["sources"]}
        assert by_id["src-a"]["total_items"] == 3
        assert by_id["src-a"]["last_error"] == "timeout"
        assert by_id["src-b"]["enabled"] is False
        assert by_id["src-b"]["total_items"] == 0
        assert by_id["removed"]["type"] is None

    def test_store_unavailable(self, client, mock_repo):
        mock_repo.all_source_stats.side_effect = StoreUnavailableError("pool closed")

        resp = client.get("/ingest/stats")

        assert resp.status_code == 503
        assert resp.json()["detail"] == "pool closed"


class TestPollsAndItems:
    def test_recent_polls(self, client, mock_repo):
        mock_repo.recent_polls.return_value = [
            {
                "id": 1,
                "source_id": "src-a",
                "poll_at": POLL_AT,
                "items_found": 4,
                "items_new": 1,
                "error": None,
                "duration_ms": 210,
            }
        ]

        resp = client.get("/ingest/src-a/polls", params={"limit": 5})

        assert resp.status_code == 200
        assert resp.json()["polls"][0]["items_new"] == 1
        mock_repo.recent_polls.assert_awaited_once_with("src-a", limit=5)

    def test_unknown_source(self, client):
        resp = client.get("/ingest/nope/polls")

        assert resp.status_code == 404
        assert resp.json()["detail"] == "Source not found: nope"

    def test_recent_items(self, client, mock_repo):
        mock_repo.recent_items.return_value = [
            {"item_id": "msg-1", "task_id": "task-1", "title": "Disk full", "ingested_at": POLL_AT}
        ]
        mock_repo.item_count.return_value = 17

        resp = client.get("/ingest/src-a/items")

        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 17
        assert data["items"][0]["item_id"] == "msg-1"

    def test_limit_bounds(self, client):
        assert client.get("/ingest/src-a/items", params={"limit": 0}).status_code == 422


class TestManualCycles:
    """Tests for the poll, test and send triggers."""

    def test_trigger_poll(self, client, mock_service):
        mock_service.poll_source = AsyncMock(
            return_value=CycleReport(source_id="src-a", found=2, new=1, filtered=1, duration_ms=30)
        )

        resp = client.post("/ingest/src-a/poll")

        assert resp.status_code == 200
        assert resp.json() == {
            "source_id": "src-a",
            "found": 2,
            "filtered": 1,
            "duplicates": 0,
            "new": 1,
            "replies": 0,
            "error": None,
            "duration_ms": 30,
        }

    def test_adapter_failure_is_reported_not_raised(self, client, mock_service):
        mock_service.poll_source = AsyncMock(
            return_value=CycleReport(source_id="src-a", error="invalid_auth")
        )

        resp = client.post("/ingest/src-a/poll")

        assert resp.status_code == 200
        assert resp.json()["error"] == "invalid_auth"

    def test_invalid_source_config(self, client, mock_service):
        mock_service.poll_source = AsyncMock(
            side_effect=ConfigurationError("Source src-a is invalid", ['"url" is required'])
        )

        resp = client.post("/ingest/src-a/poll")

        assert resp.status_code == 422
        assert resp.json()["detail"] == 'Source src-a is invalid; "url" is required'

    def test_poll_store_unavailable(self, client, mock_service):
        mock_service.poll_source = AsyncMock(side_effect=StoreUnavailableError("db gone"))

        assert client.post("/ingest/src-a/poll").status_code == 503

    def test_test_source(self, client, mock_service):
        mock_service.test_source = AsyncMock(
            return_value=TestResult(
                ok=True,
                message="Connected",
                sample_items=[IngestItem(id="msg-1", title="Hello", timestamp=POLL_AT)],
            )
        )

        resp = client.post("/ingest/src-a/test")

        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["sample_items"][0]["id"] == "msg-1"

    def test_send_message(self, client, mock_service):
        mock_service.send_message = AsyncMock(
            return_value=SendResult(ok=True, message_id="200.000000")
        )

        resp = client.post(
            "/ingest/src-a/send",
            json={"target": "C1", "message": "ack", "thread_id": "100.0"},
        )

        assert resp.status_code == 200
        assert resp.json()["message_id"] == "200.000000"
        mock_service.send_message.assert_awaited_once_with(
            "src-a", "C1", "ack", thread_id="100.0"
        )

    def test_send_requires_message(self, client):
        assert client.post("/ingest/src-a/send", json={"target": "C1"}).status_code == 422


class TestPlugins:
    def test_list_plugins(self, client):
        resp = client.get("/plugins")

        assert resp.status_code == 200
        data = resp.json()
        assert data["loaded"] == 1
        assert data["failed"] == 0
        assert data["plugins"][0]["type"] == "scripted"


class TestAuth:
    def test_missing_key_rejected_when_keys_configured(self, app, monkeypatch):
        monkeypatch.setenv("API_KEYS", "k1,k2")
        get_settings.cache_clear()
        del app.dependency_overrides[verify_api_key]
        try:
            with TestClient(app) as c:
                missing = c.get("/plugins")
                wrong = c.get("/plugins", headers={"X-API-KEY": "nope"})
                ok = c.get("/plugins", headers={"X-API-KEY": "k2"})
        finally:
            get_settings.cache_clear()

        assert missing.status_code == 401
        assert wrong.json()["detail"] == "Invalid API key"
        assert ok.status_code == 200

    def test_request_id_header(self, client):
        resp = client.get("/plugins", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
