"""Fixtures for ingestion service tests."""

import pytest

from src.ingestion.downloader import AttachmentDownloader
from src.services.ingestion_service import IngestionService
from src.sources.service import SourceConfigProvider


async def _resolve_secret(name):
    return f"{name}-value"


@pytest.fixture
def build_service(fake_repository, fake_task_creator, fake_registry, write_sources, tmp_path):
    """Build an IngestionService over the in-memory fakes and a sources file."""

    def _build(*sources, repository=None, **kwargs) -> IngestionService:
        provider = SourceConfigProvider(write_sources(*sources))
        return IngestionService(
            repository=repository or fake_repository,
            task_creator=fake_task_creator,
            registry=fake_registry,
            config_provider=provider,
            get_secret=_resolve_secret,
            downloader=AttachmentDownloader(base_dir=tmp_path / "files"),
            **kwargs,
        )

    return _build
