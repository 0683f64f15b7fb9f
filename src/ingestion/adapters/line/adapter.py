"""
LINE Messaging API adapter.

LINE only pushes: events arrive at a webhook signed with the channel
secret (base64 HMAC-SHA256 in ``x-line-signature``). The listener is
started by ``connect``. Verified events are converted to items and either
dispatched live or buffered until the next ``poll`` drains them.
"""

import json
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from src.config.settings import get_settings
from src.ingestion.base_adapter import (
    BaseAdapter,
    GetSecret,
    RealtimeCallbacks,
    stable_hash,
    truncate,
)
from src.ingestion.cache import TTLCache
from src.ingestion.errors import TransientSourceError
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
from src.realtime.buffer import ItemBuffer
from src.realtime.webhook import WebhookListener, verify_signature

logger = logging.getLogger(__name__)

API_BASE = "https://api.line.me/v2"
DATA_API = "https://api-data.line.me/v2"
DEFAULT_WEBHOOK_PORT = 3400
DEFAULT_WEBHOOK_PATH = "/webhook"
SIGNATURE_HEADER = "x-line-signature"
NAME_CACHE_TTL_SECONDS = 6 * 3600.0
MESSAGE_TYPES = ["text", "image", "video", "sticker", "audio", "file", "location"]

metadata = {
    "type": "line",
    "name": "LINE",
    "description": "Ingest messages from LINE via Messaging API webhook",
    "version": "1.0.0",
    "supports_realtime": True,
    "supports_send": True,
    "config_fields": [
        {
            "key": "channel_access_token_secret",
            "label": "Channel Access Token Secret",
            "type": "secret",
            "required": True,
            "help_text": "Name of the secret containing the LINE channel access token",
        },
        {
            "key": "channel_secret_secret",
            "label": "Channel Secret Secret",
            "type": "secret",
            "required": True,
            "help_text": "Name of the secret containing the channel secret used to verify webhook signatures",
        },
        {
            "key": "webhook_port",
            "label": "Webhook Port",
            "type": "number",
            "default": DEFAULT_WEBHOOK_PORT,
            "help_text": f"HTTP port for receiving LINE webhook events (default: {DEFAULT_WEBHOOK_PORT})",
        },
        {
            "key": "webhook_path",
            "label": "Webhook Path",
            "type": "string",
            "default": DEFAULT_WEBHOOK_PATH,
            "placeholder": DEFAULT_WEBHOOK_PATH,
            "help_text": "URL path for the webhook endpoint",
        },
    ],
    "item_fields": [
        {"key": "sender", "label": "Sender ID", "type": "string"},
        {"key": "sender_name", "label": "Sender Name", "type": "string"},
        {"key": "is_group", "label": "Is Group", "type": "boolean"},
        {"key": "group_name", "label": "Group Name", "type": "string"},
        {"key": "message_type", "label": "Message Type", "type": "enum", "values": MESSAGE_TYPES},
    ],
}


def _webhook_port(source: Any) -> Any:
    return source.settings.get("webhook_port") or DEFAULT_WEBHOOK_PORT


def _webhook_path(source: Any) -> str:
    return source.settings.get("webhook_path") or DEFAULT_WEBHOOK_PATH


class LineAdapter(BaseAdapter):
    """
    LINE adapter backed by a webhook listener.

    The listener, the item buffer and the name caches belong to this
    instance; ``disconnect`` releases all of them.
    """

    type = "line"
    supports_realtime = True
    supports_send = True

    def __init__(self, rate_limit: int = 60):
        super().__init__(rate_limit=rate_limit)
        self.buffer = ItemBuffer(adapter_type="line")
        self._listener: WebhookListener | None = None
        self._callbacks: RealtimeCallbacks | None = None
        self._channel_secret = ""
        self._access_token = ""
        self._profile_names: TTLCache[str] = TTLCache(default_ttl=NAME_CACHE_TTL_SECONDS)
        self._group_names: TTLCache[str] = TTLCache(default_ttl=NAME_CACHE_TTL_SECONDS)

    @property
    def listening(self) -> bool:
        return self._listener is not None and self._listener.running

    def validate(self, source: Any) -> ValidationResult:
        if not source.settings.get("channel_access_token_secret"):
            return ValidationResult(valid=False, error="channel_access_token_secret is required")
        if not source.settings.get("channel_secret_secret"):
            return ValidationResult(valid=False, error="channel_secret_secret is required")
        port = _webhook_port(source)
        if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
            return ValidationResult(valid=False, error="webhook_port must be between 1 and 65535")
        return ValidationResult(valid=True)

    # Webhook

    def verify_request(self, body: bytes, headers: Mapping[str, str]) -> None:
        verify_signature(
            self._channel_secret,
            body,
            headers.get(SIGNATURE_HEADER),
            encoding="base64",
        )

    async def handle_body(self, body: bytes) -> None:
        payload = json.loads(body.decode("utf-8"))
        await self.process_events(payload.get("events") or [])

    async def process_events(self, events: list[dict[str, Any]]) -> list[IngestItem]:
        items = []
        for event in events:
            if event.get("type") != "message":
                continue
            try:
                item = await self.event_to_item(event)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"LINE event processing error: {e}")
                continue
            if item is not None:
                items.append(item)

        if not items:
            return items

        callbacks = self._callbacks
        if callbacks is not None and callbacks.on_items is not None:
            await callbacks.on_items(items)
        else:
            self.buffer.extend(items)
        return items

    def build_listener(self, source: Any) -> WebhookListener:
        return WebhookListener(
            adapter_type=self.type,
            path=_webhook_path(source),
            port=_webhook_port(source),
            verify=self.verify_request,
            handle=self.handle_body,
            host=get_settings().webhook_host,
        )

    # Event conversion

    async def event_to_item(self, event: dict[str, Any]) -> IngestItem | None:
        message = event.get("message")
        if not message:
            return None

        origin = event.get("source") or {}
        is_group = origin.get("type") in ("group", "room")
        sender_id = origin.get("userId") or ""
        sender_name = await self.profile_name(sender_id, origin)
        group_name = ""
        if is_group and origin.get("groupId"):
            group_name = await self.group_name(origin["groupId"])

        message_type = message.get("type") or "text"
        attachments: list[Attachment] = []
        if message_type == "text":
            text = message.get("text") or ""
        elif message_type in ("image", "video", "audio", "file"):
            attachments.append(
                make_attachment(
                    f"{DATA_API}/bot/message/{message['id']}/content",
                    "image" if message_type == "image" else "file",
                    message.get("fileName"),
                )
            )
            text = message.get("text") or ""
        elif message_type == "sticker":
            text = f"[Sticker: {message.get('packageId')}/{message.get('stickerId')}]"
        elif message_type == "location":
            text = (
                f"[Location: {message.get('title') or ''} {message.get('address') or ''} "
                f"({message.get('latitude')}, {message.get('longitude')})]"
            )
        else:
            return None

        if not text and not attachments:
            return None

        timestamp = (
            datetime.fromtimestamp(event["timestamp"] / 1000, tz=timezone.utc)
            if event.get("timestamp")
            else datetime.now(timezone.utc)
        )
        channel_id = origin.get("groupId") or origin.get("roomId") or sender_id

        return IngestItem(
            id=f"line-{message['id']}",
            title=truncate(text, 200) or f"LINE {message_type}",
            description=text,
            hash=stable_hash(f"{message['id']}:{sender_id}:{text[:200]}"),
            author=sender_name or sender_id or None,
            timestamp=timestamp,
            attachments=attachments,
            fields={
                "sender": sender_id,
                "sender_name": sender_name,
                "is_group": is_group,
                "group_name": group_name,
                "message_type": message_type,
            },
            origin=ItemOrigin(
                adapter_type="line",
                channel_id=channel_id or None,
                sender_id=sender_id or None,
                metadata={"source_type": origin.get("type")},
            ),
        )

    async def _api_get(self, url: str) -> dict[str, Any]:
        await self._rate_limiter.acquire()
        async with self.http_client(timeout=10) as client:
            response = await client.get(url, headers={"Authorization": f"Bearer {self._access_token}"})
        return response.json()

    async def profile_name(self, user_id: str, origin: dict[str, Any]) -> str:
        if not user_id:
            return ""
        name, hit = self._profile_names.get(user_id)
        if hit:
            return name

        if origin.get("groupId"):
            url = f"{API_BASE}/bot/group/{origin['groupId']}/member/{user_id}"
        elif origin.get("roomId"):
            url = f"{API_BASE}/bot/room/{origin['roomId']}/member/{user_id}"
        else:
            url = f"{API_BASE}/bot/profile/{user_id}"

        try:
            name = (await self._api_get(url)).get("displayName") or ""
        except TransientSourceError as e:
            logger.debug(f"LINE profile lookup failed for {user_id}: {e}")
            return ""
        if name:
            self._profile_names.put(user_id, name)
        return name

    async def group_name(self, group_id: str) -> str:
        name, hit = self._group_names.get(group_id)
        if hit:
            return name
        try:
            name = (await self._api_get(f"{API_BASE}/bot/group/{group_id}/summary")).get("groupName") or ""
        except TransientSourceError as e:
            logger.debug(f"LINE group lookup failed for {group_id}: {e}")
            return ""
        if name:
            self._group_names.put(group_id, name)
        return name

    # Poll / realtime lifecycle

    async def poll(
        self,
        source: Any,
        state: dict[str, Any],
        get_secret: GetSecret,
    ) -> PollResult:
        if not self.listening:
            logger.debug(f"{source.id}: LINE listener not running, nothing buffered")
        items = self.buffer.drain()
        return PollResult(
            items=items,
            state={**state, "last_poll_at": datetime.now(timezone.utc).isoformat()},
        )

    async def connect(
        self,
        source: Any,
        get_secret: GetSecret,
        callbacks: RealtimeCallbacks,
    ) -> None:
        self._callbacks = callbacks
        if self.listening:
            return

        try:
            self._access_token = await get_secret(source.settings["channel_access_token_secret"])
            self._channel_secret = await get_secret(source.settings["channel_secret_secret"])
            self._listener = self.build_listener(source)
            await self._listener.start()
        except Exception:
            self._callbacks = None
            self._listener = None
            raise

    async def disconnect(self) -> None:
        self._callbacks = None
        if self._listener is not None:
            await self._listener.stop()
            self._listener = None
        self._profile_names.clear()
        self._group_names.clear()
        self.buffer.clear()
        self._access_token = ""
        self._channel_secret = ""

    async def send(
        self,
        source: Any,
        target: str,
        message: str,
        get_secret: GetSecret,
        thread_id: str | None = None,
    ) -> SendResult:
        if not target:
            return SendResult(ok=False, error="LINE send: target user, group or room id is required")
        token = self._access_token or await get_secret(source.settings["channel_access_token_secret"])

        async with self.http_client(timeout=10) as client:
            try:
                await client.post(
                    f"{API_BASE}/bot/message/push",
                    headers={"Authorization": f"Bearer {token}"},
                    json_body={"to": target, "messages": [{"type": "text", "text": message}]},
                )
            except TransientSourceError as e:
                return SendResult(ok=False, error=f"LINE push message failed: {e}")
        return SendResult(ok=True)

    async def test(self, source: Any, get_secret: GetSecret) -> TestResult:
        validation = self.validate(source)
        if not validation.valid:
            return TestResult(ok=False, message=validation.error or "invalid config")

        try:
            token = await get_secret(source.settings["channel_access_token_secret"])
            async with self.http_client(timeout=10) as client:
                response = await client.get(
                    f"{API_BASE}/bot/info",
                    headers={"Authorization": f"Bearer {token}"},
                )
        except TransientSourceError as e:
            return TestResult(ok=False, message=f"LINE test failed: {e}")

        bot = response.json()
        return TestResult(
            ok=True,
            message=(
                f'Connected to LINE bot "{bot.get("displayName")}" ({bot.get("userId")}). '
                f"Point the webhook URL at port {_webhook_port(source)}{_webhook_path(source)}"
            ),
        )
