"""Tests for the Slack adapter."""

import json

import httpx
import pytest

from src.ingestion.adapters.slack import Adapter as SlackAdapter
from src.ingestion.errors import TransientSourceError
from src.ingestion.http_client import HTTPClient
from src.ingestion.schemas import TrackedThread
from src.sources.schemas import SourceConfig

API = "https://slack.com/api"

# Lookup routes are shared across tests that only hit some of them
pytestmark = pytest.mark.respx(assert_all_called=False)


@pytest.fixture
def slack_source():
    return SourceConfig.model_validate(
        {"id": "slack-ops", "type": "slack", "secretName": "slack-bot", "channel": "C1"}
    )


async def _secret(name):
    return "xoxb-test"


def _ok(**payload):
    return httpx.Response(200, json={"ok": True, **payload})


@pytest.fixture
def users(respx_mock):
    respx_mock.get(f"{API}/users.info", params={"user": "U1"}).mock(
        return_value=_ok(user={"name": "alice", "profile": {"display_name": "Alice"}})
    )
    return respx_mock.get(f"{API}/users.info", params={"user": "U2"}).mock(
        return_value=httpx.Response(200, json={"ok": False, "error": "user_not_found"})
    )


class TestFormatText:
    """Tests for Slack mrkdwn conversion."""

    @pytest.mark.asyncio
    async def test_mentions_channels_and_links(self, users):
        adapter = SlackAdapter()

        async with HTTPClient() as client:
            text = await adapter.format_text(
                client,
                "<@U1> see <#C9|ops> and <https://x.io|docs> <https://y.io>",
                "xoxb-test",
            )

        assert text == "@Alice see #ops and [docs](https://x.io) https://y.io"

    @pytest.mark.asyncio
    async def test_failed_lookup_is_cached(self, users):
        adapter = SlackAdapter()

        async with HTTPClient() as client:
            first = await adapter.format_text(client, "hi <@U2>", "xoxb-test")
            second = await adapter.format_text(client, "bye <@U2>", "xoxb-test")

        assert first == "hi @U2"
        assert second == "bye @U2"
        assert users.call_count == 1


class TestSlackPoll:
    @pytest.mark.asyncio
    async def test_poll_skips_bots_and_joins(self, slack_source, users, respx_mock):
        respx_mock.get(f"{API}/auth.test").mock(
            return_value=_ok(url="https://acme.slack.com/", user="bot", team="Acme")
        )
        history = respx_mock.get(f"{API}/conversations.history").mock(
            return_value=_ok(
                messages=[
                    {"ts": "1712345679.000200", "user": "U1", "text": "deploy failed"},
                    {"ts": "1712345679.000300", "subtype": "bot_message", "text": "ci bot"},
                    {"ts": "1712345679.000400", "subtype": "channel_join", "user": "U1"},
                ]
            )
        )

        result = await SlackAdapter().poll(
            slack_source, {"oldest": "1712345678.000100"}, _secret
        )

        [item] = result.items
        assert item.id == "slack-1712345679.000200"
        assert item.author == "Alice"
        assert item.thread_key == "1712345679.000200"
        assert item.permalink == "https://acme.slack.com/archives/C1/p1712345679000200"
        assert item.fields["channel"] == "C1"
        assert result.state["oldest"] == "1712345679.000400"

        request = history.calls.last.request
        assert request.url.params["oldest"] == "1712345678.000100"
        assert request.headers["Authorization"] == "Bearer xoxb-test"

    @pytest.mark.asyncio
    async def test_api_error_fails_the_poll(self, slack_source, respx_mock):
        respx_mock.get(f"{API}/conversations.history").mock(
            return_value=httpx.Response(200, json={"ok": False, "error": "invalid_auth"})
        )

        with pytest.raises(TransientSourceError, match="invalid_auth"):
            await SlackAdapter().poll(slack_source, {"oldest": "1.0"}, _secret)

    @pytest.mark.asyncio
    async def test_replies_after_cursor(self, slack_source, users, respx_mock):
        respx_mock.get(f"{API}/conversations.replies").mock(
            return_value=_ok(
                messages=[
                    {"ts": "100.000000", "user": "U1", "text": "parent"},
                    {"ts": "101.000000", "user": "U1", "text": "old reply"},
                    {"ts": "102.000000", "user": "U1", "text": "new reply"},
                ]
            )
        )
        thread = TrackedThread(
            source_id="slack-ops",
            parent_item_id="slack-100.000000",
            parent_ts="100.000000",
            task_id="task-1",
            last_reply_ts="101.000000",
        )

        [result] = await SlackAdapter().poll_replies(slack_source, [thread], _secret)

        assert [r.text for r in result.replies] == ["new reply"]
        assert result.replies[0].author == "Alice"

    @pytest.mark.asyncio
    async def test_send_in_thread(self, slack_source, respx_mock):
        route = respx_mock.post(f"{API}/chat.postMessage").mock(
            return_value=_ok(ts="200.000000")
        )

        result = await SlackAdapter().send(slack_source, "", "ack", _secret, thread_id="100.0")

        assert result.ok
        assert result.message_id == "200.000000"
        body = json.loads(route.calls.last.request.content)
        assert body == {"channel": "C1", "text": "ack", "thread_ts": "100.0"}


def test_validate_requires_channel():
    source = SourceConfig(id="s", type="slack", secret_name="bot")
    result = SlackAdapter().validate(source)
    assert not result.valid
    assert "channel" in result.error
