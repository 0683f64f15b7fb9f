"""
Dependency injection for FastAPI endpoints.
"""

from src.ingestion.tasks import StreamTaskCreator
from src.plugins.loader import PluginRegistry
from src.services.ingestion_service import IngestionService
from src.sources.service import SourceConfigProvider
from src.storage.database import Database, close_database
from src.storage.database import get_database as _get_global_database
from src.storage.repository import IngestRepository

# Global instances (initialized on first request)
_registry: PluginRegistry | None = None
_config_provider: SourceConfigProvider | None = None
_task_creator: StreamTaskCreator | None = None
_ingestion_service: IngestionService | None = None


async def get_database() -> Database:
    return await _get_global_database()


async def get_repository() -> IngestRepository:
    return IngestRepository(await get_database())


def get_registry() -> PluginRegistry:
    """Get the plugin registry, discovering plugins on first use."""
    global _registry

    if _registry is None:
        _registry = PluginRegistry()
        _registry.discover()

    return _registry


def get_config_provider() -> SourceConfigProvider:
    global _config_provider

    if _config_provider is None:
        _config_provider = SourceConfigProvider()

    return _config_provider


async def get_ingestion_service() -> IngestionService:
    """
    Get ingestion service instance for one-off cycles.

    The service is never started here; the scheduler loop runs in the
    ``run`` CLI process. Manual polls share the same dedup store, so a
    source polled from both places still accepts each item once.
    """
    global _ingestion_service, _task_creator

    if _ingestion_service is None:
        if _task_creator is None:
            _task_creator = StreamTaskCreator()
            await _task_creator.connect()

        _ingestion_service = IngestionService(
            repository=await get_repository(),
            task_creator=_task_creator,
            registry=get_registry(),
            config_provider=get_config_provider(),
        )

    return _ingestion_service


async def cleanup_dependencies() -> None:
    """Clean up global dependencies on shutdown."""
    global _registry, _config_provider, _task_creator, _ingestion_service

    _ingestion_service = None
    _registry = None
    _config_provider = None

    if _task_creator is not None:
        await _task_creator.close()
        _task_creator = None

    await close_database()
