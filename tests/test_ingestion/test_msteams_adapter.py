"""Tests for the Microsoft Teams delta-query adapter."""

import httpx
import pytest

from src.ingestion.adapters.msteams import Adapter as MSTeamsAdapter
from src.ingestion.adapters.msteams.adapter import html_to_text, parse_channel_ids
from src.sources.schemas import SourceConfig

TOKEN_URL = "https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token"
GRAPH = "https://graph.microsoft.com/v1.0"
BASELINE_C1 = f"{GRAPH}/teams/team-1/channels/C1/messages/delta"
BASELINE_C2 = f"{GRAPH}/teams/team-1/channels/C2/messages/delta"
EXPIRED_LINK = f"{GRAPH}/expired-delta-c1"


def _message(message_id, text, **extra):
    return {
        "id": message_id,
        "messageType": "message",
        "createdDateTime": "2026-03-01T10:00:00Z",
        "body": {"contentType": "html", "content": f"<p>{text}</p>"},
        "from": {"user": {"id": "u-1", "displayName": "Alice"}},
        **extra,
    }


@pytest.fixture
def teams_source():
    return SourceConfig.model_validate(
        {
            "id": "teams-ops",
            "type": "msteams",
            "secretName": "teams-secret",
            "client_id": "client-1",
            "tenant_id": "tenant-1",
            "team_id": "team-1",
            "channel_ids": "C1, C2",
        }
    )


@pytest.fixture
def token_route(respx_mock):
    return respx_mock.post(TOKEN_URL).mock(
        return_value=httpx.Response(200, json={"access_token": "graph-token", "expires_in": 3600})
    )


async def _secret(name):
    assert name == "teams-secret"
    return "s3cret"


class TestHelpers:
    def test_parse_channel_ids(self):
        assert parse_channel_ids(" C1, ,C2 ") == ["C1", "C2"]

    def test_html_to_text_keeps_breaks(self):
        assert html_to_text("<p>line one<br>line&nbsp;two</p>") == "line one\nline two"

    def test_validate_requires_secret_name(self, teams_source):
        source = teams_source.model_copy(update={"secret_name": None})
        result = MSTeamsAdapter().validate(source)
        assert not result.valid
        assert "secret_name" in result.error


class TestMessageToItem:
    def test_message_fields(self):
        item = MSTeamsAdapter().message_to_item(
            _message("m1", "Deploy failed", importance="high", reactions=[{}, {}]),
            "C1",
        )

        assert item.id == "teams-m1"
        assert item.title == "Deploy failed"
        assert item.author == "Alice"
        assert item.fields["importance"] == "high"
        assert item.fields["reaction_count"] == 2
        assert item.origin.channel_id == "C1"

    def test_system_messages_are_skipped(self):
        message = _message("m2", "x", messageType="systemEventMessage")
        assert MSTeamsAdapter().message_to_item(message, "C1") is None

    def test_attachments(self):
        message = _message(
            "m3",
            "see file",
            attachments=[
                {"contentUrl": "https://files/a.png", "contentType": "image/png", "name": "a.png"},
                {"contentUrl": "https://files/b.pdf", "contentType": "reference", "name": "b.pdf"},
            ],
        )

        item = MSTeamsAdapter().message_to_item(message, "C1")

        assert [a.type for a in item.attachments] == ["image", "file"]
        assert item.fields["has_attachments"] is True


class TestDeltaPolling:
    """Tests for delta-link pagination and expiry recovery."""

    @pytest.mark.asyncio
    async def test_baseline_then_incremental(self, teams_source, token_route, respx_mock):
        respx_mock.get(BASELINE_C1).mock(
            return_value=httpx.Response(
                200,
                json={
                    "value": [_message("m1", "first")],
                    "@odata.nextLink": f"{GRAPH}/page2-c1",
                },
            )
        )
        respx_mock.get(f"{GRAPH}/page2-c1").mock(
            return_value=httpx.Response(
                200,
                json={"value": [_message("m2", "second")], "@odata.deltaLink": f"{GRAPH}/delta-c1"},
            )
        )
        respx_mock.get(BASELINE_C2).mock(
            return_value=httpx.Response(200, json={"value": [], "@odata.deltaLink": f"{GRAPH}/delta-c2"})
        )
        adapter = MSTeamsAdapter()

        result = await adapter.poll(teams_source, {}, _secret)

        assert [i.id for i in result.items] == ["teams-m1", "teams-m2"]
        assert result.state["delta_links"] == {
            "C1": f"{GRAPH}/delta-c1",
            "C2": f"{GRAPH}/delta-c2",
        }

        delta = respx_mock.get(f"{GRAPH}/delta-c1").mock(
            return_value=httpx.Response(200, json={"value": [], "@odata.deltaLink": f"{GRAPH}/delta-c1b"})
        )
        respx_mock.get(f"{GRAPH}/delta-c2").mock(
            return_value=httpx.Response(200, json={"value": [], "@odata.deltaLink": f"{GRAPH}/delta-c2"})
        )

        second = await adapter.poll(teams_source, result.state, _secret)

        assert second.items == []
        assert delta.called
        assert second.state["delta_links"]["C1"] == f"{GRAPH}/delta-c1b"
        # Token is reused until it nears expiry
        assert token_route.call_count == 1

    @pytest.mark.asyncio
    async def test_expired_delta_link_resets_to_baseline(self, teams_source, token_route, respx_mock):
        expired = respx_mock.get(EXPIRED_LINK).mock(return_value=httpx.Response(410))
        baseline = respx_mock.get(BASELINE_C1).mock(
            return_value=httpx.Response(
                200,
                json={"value": [_message("m9", "after reset")], "@odata.deltaLink": f"{GRAPH}/fresh"},
            )
        )
        respx_mock.get(f"{GRAPH}/delta-c2").mock(
            return_value=httpx.Response(200, json={"value": [], "@odata.deltaLink": f"{GRAPH}/delta-c2"})
        )
        state = {"delta_links": {"C1": EXPIRED_LINK, "C2": f"{GRAPH}/delta-c2"}}

        result = await MSTeamsAdapter().poll(teams_source, state, _secret)

        assert expired.call_count == 1
        assert baseline.call_count == 1
        assert [i.id for i in result.items] == ["teams-m9"]
        assert result.state["delta_links"]["C1"] == f"{GRAPH}/fresh"


    @pytest.mark.asyncio
    async def test_expiry_mid_pagination_restarts_without_duplicates(
        self, teams_source, token_route, respx_mock
    ):
        stored = f"{GRAPH}/delta-c1"
        respx_mock.get(stored).mock(
            return_value=httpx.Response(
                200,
                json={
                    "value": [_message("m1", "first")],
                    "@odata.nextLink": f"{GRAPH}/page2-c1",
                },
            )
        )
        expired_page = respx_mock.get(f"{GRAPH}/page2-c1").mock(return_value=httpx.Response(410))
        baseline = respx_mock.get(BASELINE_C1).mock(
            return_value=httpx.Response(
                200,
                json={
                    "value": [_message("m1", "first"), _message("m2", "second")],
                    "@odata.deltaLink": f"{GRAPH}/fresh-c1",
                },
            )
        )
        respx_mock.get(f"{GRAPH}/delta-c2").mock(
            return_value=httpx.Response(200, json={"value": [], "@odata.deltaLink": f"{GRAPH}/delta-c2"})
        )
        state = {"delta_links": {"C1": stored, "C2": f"{GRAPH}/delta-c2"}}

        result = await MSTeamsAdapter().poll(teams_source, state, _secret)

        assert expired_page.call_count == 1
        assert baseline.call_count == 1
        assert [i.id for i in result.items] == ["teams-m1", "teams-m2"]
        assert result.state["delta_links"]["C1"] == f"{GRAPH}/fresh-c1"
    @pytest.mark.asyncio
    async def test_second_410_skips_channel_without_looping(self, teams_source, token_route, respx_mock):
        respx_mock.get(EXPIRED_LINK).mock(return_value=httpx.Response(410))
        baseline = respx_mock.get(BASELINE_C1).mock(return_value=httpx.Response(410))
        respx_mock.get(BASELINE_C2).mock(
            return_value=httpx.Response(
                200,
                json={"value": [_message("m5", "other channel")], "@odata.deltaLink": f"{GRAPH}/delta-c2"},
            )
        )
        state = {"delta_links": {"C1": EXPIRED_LINK}}

        result = await MSTeamsAdapter().poll(teams_source, state, _secret)

        assert baseline.call_count == 1
        assert [i.id for i in result.items] == ["teams-m5"]
        assert "C1" not in result.state["delta_links"]
        assert result.state["delta_links"]["C2"] == f"{GRAPH}/delta-c2"

    @pytest.mark.asyncio
    async def test_token_request_carries_client_credentials(self, teams_source, token_route, respx_mock):
        respx_mock.get(BASELINE_C1).mock(return_value=httpx.Response(200, json={"value": []}))
        respx_mock.get(BASELINE_C2).mock(return_value=httpx.Response(200, json={"value": []}))

        await MSTeamsAdapter().poll(teams_source, {}, _secret)

        body = token_route.calls.last.request.content.decode()
        assert "grant_type=client_credentials" in body
        assert "client_secret=s3cret" in body
