"""Data models for the sources module."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.ingestion.schemas import FilterCondition

SourceMode = Literal["auto", "poll", "realtime"]


class SourceConfig(BaseModel):
    """
    One configured integration instance (a Slack channel, an RSS feed, ...).

    Immutable for the duration of a poll cycle. Adapter-specific keys may be
    given either under ``settings`` or at the top level of the JSON entry;
    unknown top-level keys are folded into ``settings``.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    enabled: bool = True
    project: str | None = None
    mode: SourceMode = "auto"
    poll_interval: int = Field(default=60, ge=1, alias="pollInterval")
    filter: list[FilterCondition] | None = None
    track_replies: bool = Field(default=True, alias="trackReplies")
    max_tracked_threads: int = Field(default=50, ge=0, alias="maxTrackedThreads")
    # 0 keeps threads active forever
    thread_max_idle_hours: float = Field(default=72.0, ge=0, alias="threadMaxIdleHours")
    stale_timeout: int = Field(default=300, ge=0, alias="staleTimeout")
    download_attachments: bool = Field(default=True, alias="downloadAttachments")
    secret_name: str | None = Field(default=None, alias="secretName")
    settings: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def collect_adapter_settings(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        known: set[str] = set()
        for name, info in cls.model_fields.items():
            known.add(name)
            if info.alias:
                known.add(info.alias)

        settings = dict(data.get("settings") or {})
        extras = {k: v for k, v in data.items() if k not in known}
        if not extras:
            return data

        for key, value in extras.items():
            settings.setdefault(key, value)
        cleaned = {k: v for k, v in data.items() if k in known}
        cleaned["settings"] = settings
        return cleaned


class SourcesFile(BaseModel):
    """Top-level shape of ``integrations.json``."""

    version: int = 1
    sources: list[dict[str, Any]] = Field(default_factory=list)
