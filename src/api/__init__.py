"""
FastAPI admin service.

Provides REST API for operating the ingestion engine:
- GET /health - Store, task sink and plugin health
- GET /plugins - Plugin inventory
- /ingest/... - Per-source stats, poll history and manual cycles
"""

from src.api.app import create_app

__all__ = ["create_app"]
