"""
Task-creation boundary.

Accepted items leave the engine through a ``TaskCreator``. The default
implementation publishes them to a Redis Stream where the work-item service
picks them up; the Redis message id doubles as the work-item id that thread
tracking later appends replies to.
"""

import json
import logging
from types import TracebackType
from typing import Protocol, runtime_checkable

import redis.asyncio as redis

from src.config.settings import get_settings
from src.ingestion.schemas import Attachment, IngestItem, Reply
from src.observability.tracing import inject_trace_context
from src.sources.schemas import SourceConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class TaskCreator(Protocol):
    """Consumer of accepted items."""

    async def create(
        self,
        source: SourceConfig,
        item: IngestItem,
        attachments: list[Attachment],
    ) -> str | None:
        """Create a work item and return its id, or None when creation failed."""
        ...

    async def append_replies(
        self,
        source: SourceConfig,
        task_id: str,
        replies: list[Reply],
    ) -> bool:
        """Append thread replies to an existing work item."""
        ...


def build_description(item: IngestItem, attachments: list[Attachment]) -> str:
    """Render the work-item body from an item and its downloaded attachments."""
    parts: list[str] = []

    if item.author:
        parts.append(f"From: {item.author}")
    if item.description:
        parts.append(item.description)

    if attachments:
        parts.append("")
        parts.append("Attachments:")
        for att in attachments:
            if att.local_path:
                parts.append(f"- {att.local_path}")
            elif att.error:
                parts.append(f"- {att.error}")
            elif att.url:
                parts.append(f"- {att.url}")

    if item.permalink:
        parts.append("")
        parts.append(f"[View original]({item.permalink})")

    parts.append(f"Source: {item.timestamp.isoformat()}")
    return "\n".join(parts)


class StreamTaskCreator:
    """
    Redis Streams publisher for accepted items.

    Messages carry a ``kind`` field (``task`` or ``reply``) and a JSON
    ``data`` payload.

    Usage:
        async with StreamTaskCreator() as creator:
            task_id = await creator.create(source, item, attachments)
    """

    def __init__(
        self,
        redis_url: str | None = None,
        stream_name: str | None = None,
        max_stream_length: int | None = None,
        client: redis.Redis | None = None,
    ):
        settings = get_settings()

        self._redis_url = redis_url or str(settings.redis_url)
        self._stream_name = stream_name or settings.task_stream_name
        self._max_stream_length = max_stream_length or settings.task_stream_max_length
        self._redis: redis.Redis | None = client

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        logger.info(f"Connected to Redis, task stream={self._stream_name}")

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None
            logger.info("Redis connection closed")

    async def __aenter__(self) -> "StreamTaskCreator":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def redis(self) -> redis.Redis:
        """Get Redis client, raising if not connected."""
        if self._redis is None:
            raise RuntimeError("Not connected to Redis. Call connect() first.")
        return self._redis

    async def _publish(self, kind: str, payload: dict) -> str:
        fields = {"kind": kind, "data": json.dumps(payload, default=str)}
        fields.update(inject_trace_context())
        message_id = await self.redis.xadd(
            name=self._stream_name,
            fields=fields,
            maxlen=self._max_stream_length,
            approximate=True,  # More efficient trimming
        )
        return str(message_id)

    async def create(
        self,
        source: SourceConfig,
        item: IngestItem,
        attachments: list[Attachment],
    ) -> str | None:
        payload = {
            "source_id": source.id,
            "source_type": source.type,
            "project": source.project,
            "title": item.title,
            "description": build_description(item, attachments),
            "item": item.model_dump(mode="json"),
            "attachments": [a.model_dump(mode="json") for a in attachments],
        }
        try:
            task_id = await self._publish("task", payload)
        except redis.RedisError as e:
            logger.error(f"[{source.id}] task creation failed: {e}")
            return None

        logger.info(f"[{source.id}] created task {task_id}: {item.title[:60]}")
        return task_id

    async def append_replies(
        self,
        source: SourceConfig,
        task_id: str,
        replies: list[Reply],
    ) -> bool:
        if not replies:
            return False
        payload = {
            "source_id": source.id,
            "project": source.project,
            "task_id": task_id,
            "replies": [r.model_dump(mode="json") for r in replies],
        }
        try:
            await self._publish("reply", payload)
        except redis.RedisError as e:
            logger.error(f"[{source.id}] appending replies to {task_id} failed: {e}")
            return False
        return True

    async def health_check(self) -> bool:
        """Check if Redis connection is healthy."""
        try:
            await self.redis.ping()
            return True
        except (redis.RedisError, RuntimeError):
            return False
