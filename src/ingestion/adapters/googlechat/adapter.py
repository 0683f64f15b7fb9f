"""
Google Chat adapter authenticating as a service account.

The service account key (JSON content or a path to the key file) is read
from the secret named by ``source.secret_name``. A signed RS256 assertion
is exchanged for an access token, which is cached until five minutes
before it expires.

Each space is read in ``createTime`` order with a per-space cursor, so a
page cap that interrupts a pass still leaves a correct cursor behind.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from google.auth import crypt, jwt

from src.ingestion.base_adapter import BaseAdapter, GetSecret, stable_hash, truncate
from src.ingestion.cache import TTLCache
from src.ingestion.errors import TransientSourceError
from src.ingestion.http_client import HTTPClient
from src.ingestion.schemas import (
    IngestItem,
    ItemOrigin,
    PollResult,
    TestResult,
    ValidationResult,
    make_attachment,
)

logger = logging.getLogger(__name__)

API_BASE = "https://chat.googleapis.com/v1"
TOKEN_URL = "https://oauth2.googleapis.com/token"
SCOPE = "https://www.googleapis.com/auth/chat.messages.readonly"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600
PAGE_SIZE = 1000
MAX_PAGES = 10
CURSORS_KEY = "cursors"

metadata = {
    "type": "googlechat",
    "name": "Google Chat",
    "description": "Ingest messages from Google Chat spaces via service account",
    "version": "1.0.0",
    "config_fields": [
        {
            "key": "space_ids",
            "label": "Space IDs",
            "type": "string",
            "required": True,
            "placeholder": "spaces/AAAA1234,spaces/BBBB5678",
            "help_text": "Comma-separated space resource names. The Chat app must be added to each space.",
        },
        {
            "key": "include_bot_messages",
            "label": "Include Bot Messages",
            "type": "boolean",
            "default": False,
            "help_text": "Whether to ingest messages from Chat apps and bots",
        },
    ],
    "item_fields": [
        {"key": "sender", "label": "Sender", "type": "string"},
        {"key": "space_name", "label": "Space", "type": "string"},
        {"key": "is_thread", "label": "Is Thread Reply", "type": "boolean"},
        {"key": "has_attachments", "label": "Has Attachments", "type": "boolean"},
    ],
}


def parse_space_ids(value: str) -> list[str]:
    return [s.strip() for s in (value or "").split(",") if s.strip()]


def parse_credentials(secret_value: str) -> dict[str, Any]:
    """Service account key from inline JSON or a key file path."""
    text = secret_value.strip()
    try:
        if text.startswith("{"):
            return json.loads(text)
        return json.loads(Path(text).expanduser().read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise TransientSourceError(f"Unreadable service account credentials: {e}") from e


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def message_to_item(message: dict[str, Any], space_id: str) -> IngestItem | None:
    text = message.get("text") or message.get("formattedText") or ""
    raw_attachments = message.get("attachment") or []
    if not text and not raw_attachments:
        return None

    attachments = [
        make_attachment(
            att.get("downloadUri") or att.get("thumbnailUri") or "",
            "image" if (att.get("contentType") or "").startswith("image/") else "file",
            att.get("contentName"),
        )
        for att in raw_attachments
    ]

    sender = message.get("sender") or {}
    sender_name = sender.get("displayName") or sender.get("name") or "unknown"
    name = message.get("name") or ""
    message_id = name.rsplit("/", 1)[-1]

    # Top-level messages start a thread whose id equals the message id
    thread_name = (message.get("thread") or {}).get("name") or ""
    thread_id = thread_name.rsplit("/", 1)[-1] if thread_name else ""
    is_reply = bool(thread_id and message_id and thread_id != message_id)

    extra: dict[str, Any] = {}
    if message.get("createTime"):
        extra["timestamp"] = message["createTime"]

    return IngestItem(
        id=f"gchat-{message_id}",
        title=truncate(text, 200) or "Google Chat message",
        description=text,
        hash=stable_hash(f"{name}{text[:200]}"),
        author=sender_name,
        attachments=attachments,
        fields={
            "sender": sender_name,
            "space_name": space_id,
            "is_thread": is_reply,
            "has_attachments": bool(attachments),
        },
        origin=ItemOrigin(
            adapter_type="googlechat",
            channel_id=space_id,
            sender_id=sender.get("name"),
            thread_id=thread_name or None,
        ),
        **extra,
    )


class GoogleChatAdapter(BaseAdapter):
    """
    Google Chat adapter.

    State:
        cursors: {space_id: createTime of the newest message seen}; starts
            at "now" so space history is not replayed
    """

    type = "googlechat"

    def __init__(self, rate_limit: int = 60):
        super().__init__(rate_limit=rate_limit)
        self._tokens: TTLCache[str] = TTLCache()

    def validate(self, source: Any) -> ValidationResult:
        if not source.secret_name:
            return ValidationResult(valid=False, error="secret_name is required (service account JSON key)")
        spaces = parse_space_ids(source.settings.get("space_ids", ""))
        if not spaces:
            return ValidationResult(valid=False, error="At least one space ID is required")
        for space in spaces:
            if not space.startswith("spaces/"):
                return ValidationResult(
                    valid=False,
                    error=f'Invalid space ID "{space}": must start with "spaces/" (e.g. spaces/AAAA1234)',
                )
        return ValidationResult(valid=True)

    def build_assertion(self, credentials: dict[str, Any], now: int | None = None) -> str:
        """Signed RS256 JWT asserting the service account identity."""
        try:
            signer = crypt.RSASigner.from_service_account_info(credentials)
        except (KeyError, ValueError) as e:
            raise TransientSourceError(f"Invalid service account key: {e}") from e
        issued_at = int(now if now is not None else time.time())
        payload = {
            "iss": credentials["client_email"],
            "scope": SCOPE,
            "aud": TOKEN_URL,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
        }
        return jwt.encode(signer, payload).decode("ascii")

    async def access_token(self, client: HTTPClient, credentials: dict[str, Any]) -> str:
        async def fetch() -> tuple[str, float]:
            response = await client.post(
                TOKEN_URL,
                data={
                    "grant_type": JWT_BEARER_GRANT,
                    "assertion": self.build_assertion(credentials),
                },
            )
            data = response.json()
            if data.get("error"):
                raise TransientSourceError(
                    f"OAuth error: {data.get('error_description') or data['error']}"
                )
            return data["access_token"], float(data.get("expires_in", 3600))

        return await self._tokens.get_or_refresh(credentials.get("client_email", "default"), fetch)

    async def poll_space(
        self,
        client: HTTPClient,
        token: str,
        space_id: str,
        since: str,
        include_bots: bool,
    ) -> tuple[list[IngestItem], str]:
        """Messages created after ``since``, plus the new cursor."""
        items: list[IngestItem] = []
        newest = since
        page_token: str | None = None

        for _ in range(MAX_PAGES):
            params: dict[str, Any] = {
                "pageSize": PAGE_SIZE,
                "orderBy": "createTime asc",
                "filter": f'createTime > "{since}"',
            }
            if page_token:
                params["pageToken"] = page_token

            await self._rate_limiter.acquire()
            response = await client.get(
                f"{API_BASE}/{space_id}/messages",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
            data = response.json()

            for message in data.get("messages") or []:
                created = message.get("createTime")
                if created and _parse_time(created) > _parse_time(newest):
                    newest = created
                if not include_bots and (message.get("sender") or {}).get("type") == "BOT":
                    continue
                item = message_to_item(message, space_id)
                if item is not None:
                    items.append(item)

            page_token = data.get("nextPageToken")
            if not page_token:
                break
        else:
            logger.info(f"googlechat: page cap reached for {space_id}, continuing next cycle")

        return items, newest

    async def poll(
        self,
        source: Any,
        state: dict[str, Any],
        get_secret: GetSecret,
    ) -> PollResult:
        credentials = parse_credentials(await get_secret(source.secret_name))
        spaces = parse_space_ids(self.required_setting(source, "space_ids"))
        include_bots = bool(source.settings.get("include_bot_messages", False))
        cursors = dict(state.get(CURSORS_KEY) or {})
        now = _rfc3339(datetime.now(timezone.utc))

        items: list[IngestItem] = []
        async with self.http_client() as client:
            token = await self.access_token(client, credentials)
            for space_id in spaces:
                space_items, cursors[space_id] = await self.poll_space(
                    client, token, space_id, cursors.get(space_id) or now, include_bots
                )
                items.extend(space_items)

        return PollResult(items=items, state={**state, CURSORS_KEY: cursors})

    async def test(self, source: Any, get_secret: GetSecret) -> TestResult:
        validation = self.validate(source)
        if not validation.valid:
            return TestResult(ok=False, message=validation.error or "invalid config")

        samples: list[IngestItem] = []
        space_names = []
        try:
            credentials = parse_credentials(await get_secret(source.secret_name))
            async with self.http_client() as client:
                token = await self.access_token(client, credentials)
                headers = {"Authorization": f"Bearer {token}"}
                for space_id in parse_space_ids(source.settings["space_ids"]):
                    space = (await client.get(f"{API_BASE}/{space_id}", headers=headers)).json()
                    space_names.append(space.get("displayName") or space_id)
                    recent = await client.get(
                        f"{API_BASE}/{space_id}/messages",
                        params={"pageSize": 3},
                        headers=headers,
                    )
                    for message in (recent.json().get("messages") or [])[:3]:
                        item = message_to_item(message, space_id)
                        if item is not None:
                            samples.append(item)
        except TransientSourceError as e:
            return TestResult(ok=False, message=f"Connection failed: {e}")

        return TestResult(
            ok=True,
            message=f"Connected as {credentials.get('client_email')}. Spaces: {', '.join(space_names)}.",
            sample_items=samples,
        )
