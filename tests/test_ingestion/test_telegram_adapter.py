"""Tests for the Telegram bot adapter."""

import httpx
import pytest

from src.ingestion.adapters.telegram import Adapter as TelegramAdapter
from src.ingestion.adapters.telegram.adapter import format_author
from src.sources.schemas import SourceConfig

BOT = "https://api.telegram.org/bot123:abc"
CHAT_ID = -1001234567890


@pytest.fixture
def tg_source():
    return SourceConfig.model_validate(
        {"id": "tg-alerts", "type": "telegram", "secretName": "tg-bot", "chat_id": str(CHAT_ID)}
    )


async def _secret(name):
    return "123:abc"


def _message(message_id, **extra):
    return {
        "message_id": message_id,
        "date": 1772366400,
        "chat": {"id": CHAT_ID, "type": "supergroup"},
        "from": {"id": 42, "username": "alice"},
        **extra,
    }


def _get_file(request):
    file_id = request.url.params["file_id"]
    return httpx.Response(200, json={"ok": True, "result": {"file_path": f"photos/{file_id}.jpg"}})


class TestTelegramPoll:
    """Tests for update offsets and media group merging."""

    @pytest.mark.asyncio
    async def test_album_is_merged_into_one_item(self, tg_source, respx_mock):
        updates = respx_mock.get(f"{BOT}/getUpdates").mock(
            return_value=httpx.Response(
                200,
                json={
                    "ok": True,
                    "result": [
                        {"update_id": 10, "message": _message(1, text="server down")},
                        {
                            "update_id": 11,
                            "message": _message(
                                2,
                                media_group_id="g1",
                                caption="screenshots",
                                photo=[{"file_id": "small"}, {"file_id": "p1"}],
                            ),
                        },
                        {
                            "update_id": 12,
                            "message": _message(
                                3, media_group_id="g1", photo=[{"file_id": "p2"}]
                            ),
                        },
                        {
                            "update_id": 13,
                            "message": {**_message(4, text="elsewhere"), "chat": {"id": 5}},
                        },
                    ],
                },
            )
        )
        respx_mock.get(f"{BOT}/getFile").mock(side_effect=_get_file)

        result = await TelegramAdapter().poll(tg_source, {"offset": 10}, _secret)

        assert [i.id for i in result.items] == [f"tg-1-{CHAT_ID}", "tg-group-g1"]
        album = result.items[1]
        assert album.description == "screenshots"
        assert album.fields == {"chat_type": "supergroup", "has_media": True, "media_grouped": True}
        assert [a.url for a in album.attachments] == [
            "https://api.telegram.org/file/bot123:abc/photos/p1.jpg",
            "https://api.telegram.org/file/bot123:abc/photos/p2.jpg",
        ]
        assert result.state["offset"] == 14
        assert updates.calls.last.request.url.params["offset"] == "10"

    @pytest.mark.asyncio
    async def test_no_updates_keeps_offset(self, tg_source, respx_mock):
        respx_mock.get(f"{BOT}/getUpdates").mock(
            return_value=httpx.Response(200, json={"ok": True, "result": []})
        )

        result = await TelegramAdapter().poll(tg_source, {"offset": 7}, _secret)

        assert result.items == []
        assert result.state["offset"] == 7

    @pytest.mark.asyncio
    async def test_send_reply(self, tg_source, respx_mock):
        route = respx_mock.post(f"{BOT}/sendMessage").mock(
            return_value=httpx.Response(200, json={"ok": True, "result": {"message_id": 99}})
        )

        result = await TelegramAdapter().send(tg_source, "", "ack", _secret, thread_id="1")

        assert result.ok
        assert result.message_id == f"tg-99-{CHAT_ID}"
        assert b'"reply_parameters"' in route.calls.last.request.content

    @pytest.mark.asyncio
    async def test_send_rejects_non_numeric_thread_id(self, tg_source, respx_mock):
        # No routes: any request would fail the test
        result = await TelegramAdapter().send(tg_source, "", "ack", _secret, thread_id="abc")

        assert not result.ok
        assert "thread_id must be a message id" in result.error
        assert not respx_mock.calls


class TestFormatAuthor:
    def test_prefers_username(self):
        assert format_author({"username": "alice", "first_name": "Alice"}) == "@alice"

    def test_falls_back_to_names(self):
        assert format_author({"first_name": "Alice", "last_name": "Liddell"}) == "Alice Liddell"

    def test_missing(self):
        assert format_author(None) is None
