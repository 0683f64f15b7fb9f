"""Slack channels via the Web API."""

from src.ingestion.adapters.slack.adapter import SlackAdapter as Adapter
from src.ingestion.adapters.slack.adapter import metadata

__all__ = ["Adapter", "metadata"]
