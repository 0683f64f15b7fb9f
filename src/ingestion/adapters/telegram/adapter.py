"""
Telegram bot adapter.

Uses ``getUpdates`` long polling with a zero timeout and the update
``offset`` as cursor. Photos sent together as an album arrive as separate
messages sharing a ``media_group_id``; they are merged into one item.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from src.ingestion.base_adapter import BaseAdapter, GetSecret, truncate
from src.ingestion.errors import TransientSourceError
from src.ingestion.http_client import HTTPClient
from src.ingestion.schemas import (
    Attachment,
    IngestItem,
    ItemOrigin,
    PollResult,
    SendResult,
    TestResult,
    ValidationResult,
    make_attachment,
)

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"
CHAT_TYPES = ["private", "group", "supergroup", "channel"]

metadata = {
    "type": "telegram",
    "name": "Telegram",
    "description": "Ingest messages from Telegram chats via bot API",
    "version": "1.0.0",
    "supports_send": True,
    "config_fields": [
        {
            "key": "chat_id",
            "label": "Chat ID",
            "type": "string",
            "required": True,
            "placeholder": "-1001234567890",
            "help_text": "Telegram chat ID (group, channel, or user)",
        },
    ],
    "item_fields": [
        {"key": "chat_type", "label": "Chat Type", "type": "enum", "values": CHAT_TYPES},
        {"key": "has_media", "label": "Has Media", "type": "boolean"},
        {"key": "media_grouped", "label": "Media Grouped", "type": "boolean"},
    ],
}


def format_author(sender: dict[str, Any] | None) -> str | None:
    if not sender:
        return None
    if sender.get("username"):
        return f"@{sender['username']}"
    return " ".join(p for p in (sender.get("first_name"), sender.get("last_name")) if p) or None


def _origin(message: dict[str, Any]) -> ItemOrigin:
    sender = message.get("from") or {}
    return ItemOrigin(
        adapter_type="telegram",
        channel_id=str(message["chat"]["id"]),
        sender_id=str(sender["id"]) if sender.get("id") else None,
        thread_id=str(message["message_id"]),
        metadata={"chat_type": message["chat"].get("type", "private")},
    )


class TelegramAdapter(BaseAdapter):
    """
    Telegram adapter using a bot token from ``source.secret_name``.

    State:
        offset: next update id to request
    """

    type = "telegram"
    supports_send = True

    def __init__(self, rate_limit: int = 30):
        super().__init__(rate_limit=rate_limit)

    def validate(self, source: Any) -> ValidationResult:
        if not source.secret_name:
            return ValidationResult(valid=False, error="secret_name is required (Telegram bot token)")
        if not source.settings.get("chat_id"):
            return ValidationResult(valid=False, error="chat_id is required")
        return ValidationResult(valid=True)

    async def _call(
        self,
        client: HTTPClient,
        token: str,
        method: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        await self._rate_limiter.acquire()
        url = f"{API_BASE}/bot{token}/{method}"
        if json_body is not None:
            response = await client.post(url, json_body=json_body)
        else:
            response = await client.get(url, params=params)
        data = response.json()
        if not data.get("ok"):
            raise TransientSourceError(f"Telegram API error in {method}: {data.get('description')}")
        return data.get("result")

    async def _file_url(self, client: HTTPClient, token: str, file_id: str) -> str | None:
        try:
            result = await self._call(client, token, "getFile", {"file_id": file_id})
        except TransientSourceError as e:
            logger.warning(f"getFile failed for {file_id}: {e}")
            return None
        if not result or not result.get("file_path"):
            return None
        return f"{API_BASE}/file/bot{token}/{result['file_path']}"

    async def _message_attachments(
        self,
        client: HTTPClient,
        token: str,
        message: dict[str, Any],
    ) -> list[Attachment]:
        attachments = []
        photos = message.get("photo") or []
        if photos:
            # Last size is the largest
            url = await self._file_url(client, token, photos[-1]["file_id"])
            if url:
                attachments.append(make_attachment(url, "image"))
        document = message.get("document")
        if document:
            url = await self._file_url(client, token, document["file_id"])
            if url:
                attachments.append(make_attachment(url, "file", document.get("file_name")))
        return attachments

    async def _message_to_item(
        self,
        client: HTTPClient,
        token: str,
        message: dict[str, Any],
    ) -> IngestItem | None:
        text = message.get("text") or message.get("caption") or ""
        if not text and not message.get("photo") and not message.get("document"):
            return None

        attachments = await self._message_attachments(client, token, message)
        chat = message["chat"]
        return IngestItem(
            id=f"tg-{message['message_id']}-{chat['id']}",
            title=truncate(text, 200) or "Telegram message",
            description=text,
            author=format_author(message.get("from")),
            timestamp=datetime.fromtimestamp(message["date"], tz=timezone.utc),
            attachments=attachments,
            fields={
                "chat_type": chat.get("type", "private"),
                "has_media": any(
                    message.get(k) for k in ("photo", "document", "video", "audio")
                ),
                "media_grouped": False,
            },
            origin=_origin(message),
        )

    async def _media_group_to_item(
        self,
        client: HTTPClient,
        token: str,
        messages: list[dict[str, Any]],
    ) -> IngestItem:
        first = messages[0]
        text = "\n".join(m["caption"] for m in messages if m.get("caption"))
        attachments: list[Attachment] = []
        for message in messages:
            attachments.extend(await self._message_attachments(client, token, message))

        return IngestItem(
            id=f"tg-group-{first['media_group_id']}",
            title=truncate(text, 200) or "Telegram media group",
            description=text,
            author=format_author(first.get("from")),
            timestamp=datetime.fromtimestamp(first["date"], tz=timezone.utc),
            attachments=attachments,
            fields={
                "chat_type": first["chat"].get("type", "private"),
                "has_media": True,
                "media_grouped": True,
            },
            origin=_origin(first),
        )

    async def poll(
        self,
        source: Any,
        state: dict[str, Any],
        get_secret: GetSecret,
    ) -> PollResult:
        token = await get_secret(source.secret_name)
        chat_id = str(self.required_setting(source, "chat_id"))
        offset = int(state.get("offset", 0))

        items: list[IngestItem] = []
        new_offset = offset
        media_groups: dict[str, list[dict[str, Any]]] = {}

        async with self.http_client() as client:
            updates = await self._call(
                client,
                token,
                "getUpdates",
                {
                    "offset": offset,
                    "limit": 100,
                    "timeout": 0,
                    "allowed_updates": '["message"]',
                },
            )

            for update in updates or []:
                new_offset = max(new_offset, update["update_id"] + 1)
                message = update.get("message")
                if not message or str(message["chat"]["id"]) != chat_id:
                    continue

                group_id = message.get("media_group_id")
                if group_id:
                    media_groups.setdefault(group_id, []).append(message)
                    continue

                item = await self._message_to_item(client, token, message)
                if item is not None:
                    items.append(item)

            for messages in media_groups.values():
                items.append(await self._media_group_to_item(client, token, messages))

        return PollResult(items=items, state={**state, "offset": new_offset})

    async def send(
        self,
        source: Any,
        target: str,
        message: str,
        get_secret: GetSecret,
        thread_id: str | None = None,
    ) -> SendResult:
        if thread_id and not thread_id.lstrip("-").isdigit():
            return SendResult(
                ok=False, error=f"Telegram send: thread_id must be a message id, got {thread_id!r}"
            )

        token = await get_secret(source.secret_name)
        chat_id = target or source.settings.get("chat_id")
        body: dict[str, Any] = {"chat_id": chat_id, "text": message}
        if thread_id:
            body["reply_parameters"] = {"message_id": int(thread_id)}

        async with self.http_client() as client:
            try:
                result = await self._call(client, token, "sendMessage", json_body=body)
            except TransientSourceError as e:
                return SendResult(ok=False, error=str(e))

        message_id = result.get("message_id") if result else None
        return SendResult(
            ok=True,
            message_id=f"tg-{message_id}-{chat_id}" if message_id else None,
        )

    async def test(self, source: Any, get_secret: GetSecret) -> TestResult:
        validation = self.validate(source)
        if not validation.valid:
            return TestResult(ok=False, message=validation.error or "invalid config")

        try:
            token = await get_secret(source.secret_name)
            async with self.http_client() as client:
                bot = await self._call(client, token, "getMe")
        except TransientSourceError as e:
            return TestResult(ok=False, message=f"Connection failed: {e}")

        return TestResult(
            ok=True,
            message=f"Connected to bot @{bot.get('username')} ({bot.get('first_name')})",
        )
