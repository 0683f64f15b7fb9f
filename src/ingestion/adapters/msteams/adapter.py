"""
Microsoft Teams adapter using Graph API delta queries.

Each configured channel keeps its own delta link in the adapter state.
A poll follows ``@odata.nextLink`` pages until Graph hands back a
``@odata.deltaLink`` or the page cap is reached. The delta link is only
stored once pagination for that channel completes, so an interrupted
pass is repeated on the next cycle and duplicates are dropped by the
dedup store.

A 410 Gone means the stored delta link expired. The channel is reset to a
fresh baseline within the same cycle; a second 410 in a row gives up on
that channel until the next poll.
"""

import logging
import re
from typing import Any

from bs4 import BeautifulSoup

from src.ingestion.base_adapter import BaseAdapter, GetSecret, truncate
from src.ingestion.cache import TTLCache, cache_key
from src.ingestion.errors import CursorExpiredError, TransientSourceError
from src.ingestion.http_client import HTTPClient, HTTPClientError
from src.ingestion.schemas import (
    Attachment,
    IngestItem,
    ItemOrigin,
    PollResult,
    TestResult,
    ValidationResult,
    make_attachment,
)

logger = logging.getLogger(__name__)

GRAPH_BASE = "https://graph.microsoft.com/v1.0"
LOGIN_BASE = "https://login.microsoftonline.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
MAX_PAGES = 10
DELTA_LINKS_KEY = "delta_links"

metadata = {
    "type": "msteams",
    "name": "Microsoft Teams",
    "description": "Ingest messages from Microsoft Teams channels via Graph API",
    "version": "1.0.0",
    "config_fields": [
        {
            "key": "client_id",
            "label": "Application (Client) ID",
            "type": "string",
            "required": True,
            "placeholder": "xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx",
            "help_text": "Azure AD app registration client ID",
        },
        {
            "key": "tenant_id",
            "label": "Tenant ID",
            "type": "string",
            "required": True,
            "placeholder": "xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx",
            "help_text": "Azure AD tenant ID",
        },
        {
            "key": "team_id",
            "label": "Team ID",
            "type": "string",
            "required": True,
            "help_text": "Microsoft Teams team ID",
        },
        {
            "key": "channel_ids",
            "label": "Channel IDs",
            "type": "string",
            "required": True,
            "placeholder": "19:xxx@thread.tacv2, 19:yyy@thread.tacv2",
            "help_text": "Comma-separated Teams channel IDs",
        },
    ],
    "item_fields": [
        {"key": "sender", "label": "Sender", "type": "string"},
        {"key": "channel_name", "label": "Channel", "type": "string"},
        {"key": "has_attachments", "label": "Has Attachments", "type": "boolean"},
        {
            "key": "importance",
            "label": "Importance",
            "type": "enum",
            "values": ["normal", "high", "urgent"],
        },
        {"key": "reaction_count", "label": "Reactions", "type": "number"},
    ],
}


def html_to_text(html_content: str) -> str:
    """Plain text from a Teams HTML message body, keeping line breaks."""
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(["p", "div"]):
        block.append("\n")
    text = soup.get_text().replace("\xa0", " ")
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def parse_channel_ids(value: str) -> list[str]:
    return [c.strip() for c in (value or "").split(",") if c.strip()]


def message_body(message: dict[str, Any]) -> str:
    body = message.get("body") or {}
    content = body.get("content") or ""
    if body.get("contentType") == "html":
        return html_to_text(content)
    return content


class MSTeamsAdapter(BaseAdapter):
    """
    Teams adapter authenticating with the OAuth2 client-credentials grant.

    The client secret is read from ``source.secret_name``. Access tokens are
    cached until five minutes before they expire.

    State:
        delta_links: {channel_id: delta link} for incremental fetching
    """

    type = "msteams"

    def __init__(self, rate_limit: int = 60):
        super().__init__(rate_limit=rate_limit)
        self._tokens: TTLCache[str] = TTLCache()

    def validate(self, source: Any) -> ValidationResult:
        settings = source.settings
        if not settings.get("client_id"):
            return ValidationResult(valid=False, error="client_id is required (Azure AD application ID)")
        if not source.secret_name:
            return ValidationResult(valid=False, error="secret_name is required (Azure AD client secret)")
        if not settings.get("tenant_id"):
            return ValidationResult(valid=False, error="tenant_id is required (Azure AD tenant ID)")
        if not settings.get("team_id"):
            return ValidationResult(valid=False, error="team_id is required (Teams team ID)")
        if not parse_channel_ids(settings.get("channel_ids", "")):
            return ValidationResult(valid=False, error="channel_ids is required (comma-separated channel IDs)")
        return ValidationResult(valid=True)

    async def acquire_token(
        self,
        client: HTTPClient,
        source: Any,
        get_secret: GetSecret,
    ) -> str:
        tenant_id = self.required_setting(source, "tenant_id")
        client_id = self.required_setting(source, "client_id")

        async def fetch() -> tuple[str, float]:
            response = await client.post(
                f"{LOGIN_BASE}/{tenant_id}/oauth2/v2.0/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": client_id,
                    "client_secret": await get_secret(source.secret_name),
                    "scope": GRAPH_SCOPE,
                },
            )
            data = response.json()
            logger.debug(f"Acquired Graph token for tenant {tenant_id}")
            return data["access_token"], float(data.get("expires_in", 3600))

        return await self._tokens.get_or_refresh(cache_key(tenant_id, client_id), fetch)

    def message_to_item(self, message: dict[str, Any], channel_id: str) -> IngestItem | None:
        # System events (member added, topic changed, ...) are skipped
        if message.get("messageType", "message") != "message":
            return None

        body = message_body(message)
        raw_attachments = message.get("attachments") or []
        if not body and not raw_attachments:
            return None

        attachments: list[Attachment] = []
        for att in raw_attachments:
            if att.get("contentUrl"):
                kind = "image" if (att.get("contentType") or "").startswith("image/") else "file"
                attachments.append(make_attachment(att["contentUrl"], kind, att.get("name")))
        for hosted in message.get("hostedContents") or []:
            content_type = hosted.get("contentType") or ""
            if hosted.get("contentBytes") and content_type.startswith("image/"):
                attachments.append(
                    make_attachment(f"data:{content_type};base64,{hosted['contentBytes']}", "image")
                )

        sender_info = message.get("from") or {}
        sender = (
            (sender_info.get("user") or {}).get("displayName")
            or (sender_info.get("application") or {}).get("displayName")
            or "unknown"
        )

        extra: dict[str, Any] = {}
        if message.get("createdDateTime"):
            extra["timestamp"] = message["createdDateTime"]

        return IngestItem(
            id=f"teams-{message['id']}",
            title=truncate(body, 200) or "Teams message",
            description=body,
            author=sender,
            attachments=attachments,
            permalink=message.get("webUrl"),
            fields={
                "sender": sender,
                "channel_name": channel_id,
                "has_attachments": bool(attachments),
                "importance": message.get("importance") or "normal",
                "reaction_count": len(message.get("reactions") or []),
            },
            origin=ItemOrigin(
                adapter_type="msteams",
                channel_id=channel_id,
                sender_id=(sender_info.get("user") or {}).get("id"),
                thread_id=message["id"],
            ),
            **extra,
        )

    async def poll_channel(
        self,
        client: HTTPClient,
        token: str,
        team_id: str,
        channel_id: str,
        delta_links: dict[str, str],
    ) -> list[IngestItem]:
        """
        Fetch one channel's changes, updating ``delta_links`` in place.

        Raises:
            CursorExpiredError: If a fresh baseline is also rejected
        """
        baseline = f"{GRAPH_BASE}/teams/{team_id}/channels/{channel_id}/messages/delta"
        url: str | None = delta_links.get(channel_id) or baseline
        reset = False
        pages = 0
        items: list[IngestItem] = []

        while url and pages < MAX_PAGES:
            pages += 1
            await self._rate_limiter.acquire()
            try:
                response = await client.get(url, headers={"Authorization": f"Bearer {token}"})
            except HTTPClientError as e:
                if e.status_code != 410:
                    raise
                if reset:
                    raise CursorExpiredError(
                        f"delta baseline rejected for channel {channel_id}",
                        resource=channel_id,
                    ) from e
                logger.warning(f"msteams: delta token expired for channel {channel_id}, resetting")
                delta_links.pop(channel_id, None)
                # The baseline replays everything, including pages already read
                items.clear()
                url = baseline
                reset = True
                continue

            data = response.json()
            for message in data.get("value") or []:
                item = self.message_to_item(message, channel_id)
                if item is not None:
                    items.append(item)

            if data.get("@odata.nextLink"):
                url = data["@odata.nextLink"]
            else:
                if data.get("@odata.deltaLink"):
                    delta_links[channel_id] = data["@odata.deltaLink"]
                url = None

        if url:
            logger.info(f"msteams: page cap reached for channel {channel_id}, continuing next cycle")
        return items

    async def poll(
        self,
        source: Any,
        state: dict[str, Any],
        get_secret: GetSecret,
    ) -> PollResult:
        team_id = self.required_setting(source, "team_id")
        channels = parse_channel_ids(self.required_setting(source, "channel_ids"))
        delta_links = dict(state.get(DELTA_LINKS_KEY) or {})
        items: list[IngestItem] = []

        async with self.http_client() as client:
            token = await self.acquire_token(client, source, get_secret)
            for channel_id in channels:
                try:
                    items.extend(
                        await self.poll_channel(client, token, team_id, channel_id, delta_links)
                    )
                except TransientSourceError as e:
                    # One failing channel does not fail the others
                    logger.warning(f"msteams: failed to poll channel {channel_id}: {e}")

        return PollResult(items=items, state={**state, DELTA_LINKS_KEY: delta_links})

    async def test(self, source: Any, get_secret: GetSecret) -> TestResult:
        validation = self.validate(source)
        if not validation.valid:
            return TestResult(ok=False, message=validation.error or "invalid config")

        team_id = source.settings["team_id"]
        channels = parse_channel_ids(source.settings["channel_ids"])
        try:
            async with self.http_client() as client:
                token = await self.acquire_token(client, source, get_secret)
                headers = {"Authorization": f"Bearer {token}"}
                team = (await client.get(f"{GRAPH_BASE}/teams/{team_id}", headers=headers)).json()
                recent = (
                    await client.get(
                        f"{GRAPH_BASE}/teams/{team_id}/channels/{channels[0]}/messages",
                        params={"$top": 3},
                        headers=headers,
                    )
                ).json()
        except TransientSourceError as e:
            return TestResult(ok=False, message=f"Connection failed: {e}")

        messages = recent.get("value") or []
        samples = [
            item
            for message in messages[:3]
            if (item := self.message_to_item(message, channels[0])) is not None
        ]
        return TestResult(
            ok=True,
            message=(
                f'Connected to team "{team.get("displayName")}". Testing {len(channels)} '
                f"channel(s). First channel has {len(messages)} recent messages."
            ),
            sample_items=samples,
        )
