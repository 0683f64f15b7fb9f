"""
Slack channel adapter.

Polls ``conversations.history`` with an ``oldest`` timestamp cursor, turns
Slack mrkdwn into readable text, tracks thread replies through
``conversations.replies`` and can post messages back with
``chat.postMessage``.
"""

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

from src.ingestion.base_adapter import BaseAdapter, GetSecret, truncate
from src.ingestion.cache import TTLCache
from src.ingestion.errors import TransientSourceError
from src.ingestion.http_client import HTTPClient
from src.ingestion.schemas import (
    Attachment,
    IngestItem,
    ItemOrigin,
    PollResult,
    Reply,
    SendResult,
    TestResult,
    ThreadReplies,
    TrackedThread,
    ValidationResult,
    make_attachment,
)

logger = logging.getLogger(__name__)

API_BASE = "https://slack.com/api"
USER_NAME_TTL_SECONDS = 24 * 3600.0
# Failed lookups are not retried for this long
FAILED_LOOKUP_TTL_SECONDS = 600.0
SKIPPED_SUBTYPES = {"channel_join", "channel_leave", "channel_topic"}

USER_MENTION = re.compile(r"<@(U[A-Z0-9]+)>")
CHANNEL_REF = re.compile(r"<#[A-Z0-9]+\|([^>]+)>")
LABELED_LINK = re.compile(r"<(https?://[^|>]+)\|([^>]+)>")
BARE_LINK = re.compile(r"<(https?://[^>]+)>")

metadata = {
    "type": "slack",
    "name": "Slack",
    "description": "Ingest messages from Slack channels",
    "version": "1.0.0",
    "supports_send": True,
    "config_fields": [
        {
            "key": "channel",
            "label": "Channel ID",
            "type": "string",
            "required": True,
            "placeholder": "C0123ABCDEF",
            "help_text": "Slack channel ID (not the channel name)",
        },
        {
            "key": "include_bots",
            "label": "Include Bot Messages",
            "type": "boolean",
            "default": False,
            "help_text": "Whether to ingest messages from bots",
        },
    ],
    "item_fields": [
        {"key": "channel", "label": "Channel", "type": "string"},
        {"key": "is_thread", "label": "Is Thread", "type": "boolean"},
        {"key": "has_attachments", "label": "Has Attachments", "type": "boolean"},
        {"key": "author_name", "label": "Author", "type": "string"},
    ],
}


def ts_to_datetime(ts: str) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def file_attachments(message: dict[str, Any]) -> list[Attachment]:
    attachments = []
    for f in message.get("files") or []:
        url = f.get("url_private_download") or f.get("url_private")
        if not url:
            continue
        kind = "image" if (f.get("mimetype") or "").startswith("image/") else "file"
        attachments.append(make_attachment(url, kind, f.get("name")))
    return attachments


class SlackAdapter(BaseAdapter):
    """
    Slack adapter using a bot token.

    The token is read from the secret named by ``source.secret_name``.

    State:
        oldest: ts of the newest message seen; starts at "now" on the
            first poll so channel history is not replayed
    """

    type = "slack"
    supports_send = True

    def __init__(self, rate_limit: int = 50):
        super().__init__(rate_limit=rate_limit)
        self._user_names: TTLCache[str] = TTLCache(default_ttl=USER_NAME_TTL_SECONDS)
        self._failed_lookups: TTLCache[bool] = TTLCache(default_ttl=FAILED_LOOKUP_TTL_SECONDS)
        self._team_url: str | None = None

    def validate(self, source: Any) -> ValidationResult:
        if not source.secret_name:
            return ValidationResult(valid=False, error="secret_name is required (Slack bot token)")
        if not source.settings.get("channel"):
            return ValidationResult(
                valid=False,
                error="channel is required (Slack channel ID, e.g. C0123ABCDEF)",
            )
        return ValidationResult(valid=True)

    async def _token(self, source: Any, get_secret: GetSecret) -> str:
        if not source.secret_name:
            raise TransientSourceError(f"{source.id}: no secret_name configured")
        return await get_secret(source.secret_name)

    async def _call(
        self,
        client: HTTPClient,
        method: str,
        token: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """GET a Web API method and unwrap Slack's ``ok`` envelope."""
        await self._rate_limiter.acquire()
        response = await client.get(
            f"{API_BASE}/{method}",
            params=params,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = response.json()
        if not data.get("ok"):
            raise TransientSourceError(f"Slack API error in {method}: {data.get('error')}")
        return data

    async def resolve_user_name(self, client: HTTPClient, user_id: str, token: str) -> str:
        name, hit = self._user_names.get(user_id)
        if hit:
            return name
        _, recently_failed = self._failed_lookups.get(user_id)
        if recently_failed:
            return user_id

        try:
            data = await self._call(client, "users.info", token, {"user": user_id})
        except TransientSourceError as e:
            logger.warning(f"users.info failed for {user_id}: {e}")
            self._failed_lookups.put(user_id, True)
            return user_id

        user = data.get("user") or {}
        profile = user.get("profile") or {}
        name = profile.get("display_name") or user.get("real_name") or user.get("name") or user_id
        self._user_names.put(user_id, name)
        return name

    async def team_url(self, client: HTTPClient, token: str) -> str | None:
        if self._team_url:
            return self._team_url
        try:
            data = await self._call(client, "auth.test", token)
        except TransientSourceError:
            return None
        if data.get("url"):
            self._team_url = data["url"].rstrip("/")
        return self._team_url

    async def format_text(self, client: HTTPClient, text: str, token: str) -> str:
        """
        Convert Slack mrkdwn to readable text.

            <@U123>       -> @DisplayName
            <#C123|name>  -> #name
            <url|label>   -> [label](url)
            <url>         -> url
        """
        if not text:
            return text
        for user_id in dict.fromkeys(USER_MENTION.findall(text)):
            name = await self.resolve_user_name(client, user_id, token)
            text = text.replace(f"<@{user_id}>", f"@{name}")
        text = CHANNEL_REF.sub(r"#\1", text)
        text = LABELED_LINK.sub(r"[\2](\1)", text)
        return BARE_LINK.sub(r"\1", text)

    async def _message_to_item(
        self,
        client: HTTPClient,
        message: dict[str, Any],
        source: Any,
        token: str,
    ) -> IngestItem | None:
        text = message.get("text") or ""
        attachments = file_attachments(message)
        if not text and not attachments:
            return None

        channel = source.settings["channel"]
        ts = message["ts"]
        user_id = message.get("user")
        author_name = await self.resolve_user_name(client, user_id, token) if user_id else ""
        formatted = await self.format_text(client, text, token)
        is_thread = bool(message.get("thread_ts") and message.get("reply_count", 0) > 0)

        permalink = None
        base_url = await self.team_url(client, token)
        if base_url:
            permalink = f"{base_url}/archives/{channel}/p{ts.replace('.', '')}"

        return IngestItem(
            id=f"slack-{ts}",
            title=truncate(formatted, 200) or "Slack message",
            description=formatted,
            author=author_name or user_id,
            timestamp=ts_to_datetime(ts),
            attachments=attachments,
            permalink=permalink,
            thread_key=ts,
            fields={
                "channel": channel,
                "is_thread": is_thread,
                "has_attachments": bool(attachments),
                "author_name": author_name,
            },
            origin=ItemOrigin(
                adapter_type="slack",
                channel_id=channel,
                sender_id=user_id,
                thread_id=ts,
                metadata={"has_thread": is_thread},
            ),
        )

    async def poll(
        self,
        source: Any,
        state: dict[str, Any],
        get_secret: GetSecret,
    ) -> PollResult:
        token = await self._token(source, get_secret)
        channel = self.required_setting(source, "channel")
        include_bots = bool(source.settings.get("include_bots", False))
        oldest = state.get("oldest") or f"{time.time():.6f}"

        items: list[IngestItem] = []
        newest = oldest
        async with self.http_client() as client:
            data = await self._call(
                client,
                "conversations.history",
                token,
                {"channel": channel, "oldest": oldest, "limit": 100, "inclusive": "false"},
            )

            for message in data.get("messages") or []:
                ts = message.get("ts")
                if not ts:
                    continue
                if float(ts) > float(newest):
                    newest = ts

                subtype = message.get("subtype")
                if subtype == "bot_message" and not include_bots:
                    continue
                if subtype in SKIPPED_SUBTYPES:
                    continue

                item = await self._message_to_item(client, message, source, token)
                if item is not None:
                    items.append(item)

        return PollResult(items=items, state={**state, "oldest": newest})

    async def poll_replies(
        self,
        source: Any,
        threads: list[TrackedThread],
        get_secret: GetSecret,
    ) -> list[ThreadReplies]:
        token = await self._token(source, get_secret)
        channel = self.required_setting(source, "channel")
        results = []

        async with self.http_client() as client:
            for thread in threads:
                params: dict[str, Any] = {"channel": channel, "ts": thread.parent_ts, "limit": 100}
                if thread.last_reply_ts:
                    params["oldest"] = thread.last_reply_ts
                    params["inclusive"] = "false"

                try:
                    data = await self._call(client, "conversations.replies", token, params)
                except TransientSourceError as e:
                    # One failing thread does not stop the others
                    logger.warning(f"{source.id}: replies for {thread.parent_ts} failed: {e}")
                    continue

                replies = []
                for message in data.get("messages") or []:
                    ts = message.get("ts")
                    if not ts or ts == thread.parent_ts:
                        continue
                    if thread.last_reply_ts and float(ts) <= float(thread.last_reply_ts):
                        continue
                    user_id = message.get("user")
                    author = (
                        await self.resolve_user_name(client, user_id, token)
                        if user_id
                        else "unknown"
                    )
                    replies.append(
                        Reply(
                            ts=ts,
                            text=await self.format_text(client, message.get("text") or "", token),
                            author=author,
                            timestamp=ts_to_datetime(ts),
                            attachments=file_attachments(message),
                        )
                    )

                if replies:
                    results.append(ThreadReplies(thread=thread, replies=replies))

        return results

    async def send(
        self,
        source: Any,
        target: str,
        message: str,
        get_secret: GetSecret,
        thread_id: str | None = None,
    ) -> SendResult:
        token = await self._token(source, get_secret)
        body: dict[str, Any] = {"channel": target or source.settings.get("channel"), "text": message}
        if thread_id:
            body["thread_ts"] = thread_id

        async with self.http_client() as client:
            await self._rate_limiter.acquire()
            response = await client.post(
                f"{API_BASE}/chat.postMessage",
                headers={"Authorization": f"Bearer {token}"},
                json_body=body,
            )
        data = response.json()
        if not data.get("ok"):
            return SendResult(ok=False, error=f"Slack API error: {data.get('error')}")
        return SendResult(ok=True, message_id=data.get("ts"))

    async def test(self, source: Any, get_secret: GetSecret) -> TestResult:
        validation = self.validate(source)
        if not validation.valid:
            return TestResult(ok=False, message=validation.error or "invalid config")

        try:
            token = await get_secret(source.secret_name)
            async with self.http_client() as client:
                auth = await self._call(client, "auth.test", token)
                history = await self._call(
                    client,
                    "conversations.history",
                    token,
                    {"channel": source.settings["channel"], "limit": 3},
                )
                samples = []
                for message in (history.get("messages") or [])[:3]:
                    item = await self._message_to_item(client, message, source, token)
                    if item is not None:
                        samples.append(item)
        except TransientSourceError as e:
            return TestResult(ok=False, message=f"Connection failed: {e}")

        count = len(history.get("messages") or [])
        return TestResult(
            ok=True,
            message=(
                f"Connected as {auth.get('user')} to team {auth.get('team')}. "
                f"Channel has {count} recent messages."
            ),
            sample_items=samples,
        )
