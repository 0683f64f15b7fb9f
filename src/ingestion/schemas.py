"""
Canonical item schema for the ingestion engine.

CRITICAL: Every adapter MUST emit IngestItem instances. The scheduler, the
filter engine, the dedup store and the task-creation boundary all depend on
these field names.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class FilterOperator(str, Enum):
    """Operators understood by the filter engine."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"


class FilterCondition(BaseModel):
    """One predicate over an item field. Conditions in a list are AND-combined."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    field: str = Field(..., min_length=1)
    operator: FilterOperator
    value: Any = Field(...)


class Attachment(BaseModel):
    """A file referenced by an item, optionally already saved locally."""

    url: str | None = None
    type: str = "file"
    filename: str | None = None
    local_path: str | None = None
    error: str | None = None


def make_attachment(url: str, type: str = "image", filename: str | None = None) -> Attachment:
    """Shorthand used by adapters when building attachment lists."""
    return Attachment(url=url, type=type, filename=filename)


class ItemOrigin(BaseModel):
    """Where an item came from, kept for routing replies back to the platform."""

    adapter_type: str
    channel_id: str | None = None
    sender_id: str | None = None
    thread_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class IngestItem(BaseModel):
    """
    CANONICAL ITEM SCHEMA

    ``id`` must be unique within its source and stable across polls; it is
    the dedup key together with the source id.
    """

    id: str = Field(
        ...,
        min_length=1,
        description="Unique ID within the source, conventionally {type}-{native_id}",
        examples=["slack-1712345678.000100", "rss-a1b2c3d4e5f67890"],
    )
    title: str = Field(default="(untitled)", description="Short human-readable title")
    description: str = Field(default="", description="Full message body")
    hash: str | None = Field(
        default=None,
        description="Content fingerprint carried for downstream dedup only",
    )
    author: str | None = None
    timestamp: datetime = Field(
        default_factory=_utc_now,
        description="UTC timestamp of the message on the platform",
    )
    attachments: list[Attachment] = Field(default_factory=list)
    fields: dict[str, Any] = Field(
        default_factory=dict,
        description="Adapter-declared filterable properties",
    )

    permalink: str | None = None
    origin: ItemOrigin | None = None
    thread_key: str | None = Field(
        default=None,
        description="Platform thread key used to track replies to this item",
    )

    @field_validator("title")
    @classmethod
    def normalize_title(cls, v: str) -> str:
        v = " ".join(v.split())
        return v or "(untitled)"

    @field_validator("timestamp")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class PollResult(BaseModel):
    """Return value of ``Adapter.poll``: new items plus the next opaque state."""

    items: list[IngestItem] = Field(default_factory=list)
    state: dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    valid: bool
    error: str | None = None


class TestResult(BaseModel):
    """Outcome of a connectivity test. Never mutates persisted state."""

    __test__ = False  # not a pytest test class

    ok: bool
    message: str
    sample_items: list[IngestItem] = Field(default_factory=list)


class TrackedThread(BaseModel):
    """A row of the thread_replies table handed to ``poll_replies``."""

    source_id: str
    parent_item_id: str
    parent_ts: str
    task_id: str
    last_reply_ts: str | None = None
    reply_count: int = 0
    active: bool = True
    updated_at: datetime | None = Field(
        default=None, description="Last activity: registration or the latest appended reply"
    )


class Reply(BaseModel):
    ts: str = Field(..., description="Platform cursor value for this reply")
    text: str
    author: str | None = None
    timestamp: datetime | None = None
    attachments: list[Attachment] = Field(default_factory=list)


class ThreadReplies(BaseModel):
    thread: TrackedThread
    replies: list[Reply]


class SendResult(BaseModel):
    ok: bool
    message_id: str | None = None
    error: str | None = None


ConnectionStatus = Literal[
    "connecting", "connected", "disconnecting", "disconnected", "reconnecting"
]
