"""Shared fixtures for API tests."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from src.api.app import create_app
from src.api.auth import verify_api_key
from src.api.dependencies import (
    get_config_provider,
    get_ingestion_service,
    get_registry,
    get_repository,
)
from src.sources.service import SourceConfigProvider


@pytest.fixture
def mock_repo():
    """Mock IngestRepository."""
    repo = AsyncMock()
    repo.all_source_stats = AsyncMock(return_value=[])
    repo.last_poll = AsyncMock(return_value=None)
    repo.recent_polls = AsyncMock(return_value=[])
    repo.recent_items = AsyncMock(return_value=[])
    repo.item_count = AsyncMock(return_value=0)
    return repo


@pytest.fixture
def mock_service():
    """Mock IngestionService."""
    return AsyncMock()


@pytest.fixture
def provider(write_sources):
    return SourceConfigProvider(
        write_sources(
            {"id": "src-a", "type": "scripted"},
            {"id": "src-b", "type": "scripted", "enabled": False},
        )
    )


@pytest.fixture
def app(mock_repo, mock_service, provider, fake_registry):
    app = create_app()

    app.dependency_overrides[verify_api_key] = lambda: "test-key"
    app.dependency_overrides[get_repository] = lambda: mock_repo
    app.dependency_overrides[get_ingestion_service] = lambda: mock_service
    app.dependency_overrides[get_config_provider] = lambda: provider
    app.dependency_overrides[get_registry] = lambda: fake_registry

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """FastAPI TestClient with dependency overrides."""
    with TestClient(app) as c:
        yield c
