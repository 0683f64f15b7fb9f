"""
Pydantic models for API requests and responses.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error response model."""

    detail: str = Field(..., description="Error message")
    error_type: str | None = Field(default=None, description="Error type")


# ── Health ──────────────────────────────────────────────────────


class ComponentHealth(BaseModel):
    """Health status of a single infrastructure component."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Component status")
    latency_ms: float | None = Field(default=None, description="Check latency in milliseconds")
    details: dict[str, Any] | None = Field(default=None, description="Additional details")


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "degraded", "unhealthy"] = Field(
        ..., description="Overall service status"
    )
    plugins_loaded: int = Field(default=0, description="Number of loaded plugins")
    plugins_failed: int = Field(default=0, description="Number of plugins that failed to load")
    sources_enabled: int = Field(default=0, description="Number of enabled sources")
    components: dict[str, ComponentHealth] = Field(
        default_factory=dict, description="Per-component health"
    )
    version: str = Field(default="0.1.0", description="Service version")


# ── Plugins ─────────────────────────────────────────────────────


class PluginItem(BaseModel):
    """One plugin directory from the inventory."""

    directory: str
    path: str
    is_builtin: bool
    status: str = Field(..., description="loaded, failed or overridden")
    type: str | None = None
    name: str | None = None
    description: str | None = None
    version: str | None = None
    error: str | None = None


class PluginsResponse(BaseModel):
    """Plugin inventory response."""

    plugins: list[PluginItem]
    loaded: int
    failed: int


# ── Ingestion ───────────────────────────────────────────────────


class SourceStats(BaseModel):
    """Acceptance counters for one source."""

    source_id: str
    type: str | None = None
    enabled: bool | None = None
    total_items: int = 0
    last_ingested: datetime | None = None
    last_poll_at: datetime | None = None
    last_error: str | None = None


class StatsResponse(BaseModel):
    """Per-source ingestion statistics."""

    sources: list[SourceStats]
    total: int


class PollLogEntry(BaseModel):
    """One row of the poll log."""

    id: int
    source_id: str
    poll_at: datetime
    items_found: int
    items_new: int
    error: str | None = None
    duration_ms: int | None = None


class PollLogResponse(BaseModel):
    source_id: str
    polls: list[PollLogEntry]


class IngestedItemRecord(BaseModel):
    """An accepted item as recorded in the dedup store."""

    item_id: str
    item_hash: str | None = None
    task_id: str | None = None
    title: str | None = None
    origin_adapter_type: str | None = None
    origin_channel_id: str | None = None
    origin_sender_id: str | None = None
    origin_thread_id: str | None = None
    ingested_at: datetime


class ItemsResponse(BaseModel):
    source_id: str
    items: list[IngestedItemRecord]
    total: int = Field(..., description="Total accepted items for the source")


class CycleReportResponse(BaseModel):
    """Outcome of a manually triggered poll cycle."""

    source_id: str
    found: int
    filtered: int
    duplicates: int
    new: int
    replies: int
    error: str | None = None
    duration_ms: int


class SampleItem(BaseModel):
    id: str
    title: str
    author: str | None = None
    timestamp: datetime | None = None


class SourceTestResponse(BaseModel):
    """Result of a connectivity test."""

    ok: bool
    message: str
    sample_items: list[SampleItem] = Field(default_factory=list)


class SendRequest(BaseModel):
    """Message to post back to a source's platform."""

    target: str = Field(default="", description="Channel, chat or user id; empty uses the source default")
    message: str = Field(..., min_length=1, max_length=10_000)
    thread_id: str | None = Field(default=None, description="Reply inside this thread")


class SendResponse(BaseModel):
    ok: bool
    message_id: str | None = None
    error: str | None = None
