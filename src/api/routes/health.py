"""
Health check endpoint with infrastructure checks.
"""

import time

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter, Depends

from src.api.dependencies import get_config_provider, get_database, get_registry
from src.api.models import ComponentHealth, HealthResponse
from src.config.settings import get_settings
from src.ingestion.errors import ConfigurationError, StoreUnavailableError
from src.plugins.loader import PluginRegistry
from src.sources.service import SourceConfigProvider
from src.storage.database import Database

router = APIRouter()
logger = structlog.get_logger(__name__)


async def _check_database(db: Database) -> ComponentHealth:
    """Check database connectivity and measure latency."""
    start = time.perf_counter()
    healthy = await db.health_check()
    latency_ms = (time.perf_counter() - start) * 1000
    return ComponentHealth(
        status="healthy" if healthy else "unhealthy",
        latency_ms=round(latency_ms, 2),
    )


async def _check_redis() -> ComponentHealth:
    """Check the task-stream Redis and measure latency."""
    start = time.perf_counter()
    client = aioredis.from_url(str(get_settings().redis_url))
    try:
        await client.ping()
        status = "healthy"
        details = None
    except (aioredis.RedisError, OSError) as e:
        status = "unhealthy"
        details = {"error": str(e)}
    finally:
        await client.aclose()
    latency_ms = (time.perf_counter() - start) * 1000
    return ComponentHealth(status=status, latency_ms=round(latency_ms, 2), details=details)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description="Check the health of the engine's store, task sink and plugins.",
)
async def health_check(
    registry: PluginRegistry = Depends(get_registry),
    provider: SourceConfigProvider = Depends(get_config_provider),
) -> HealthResponse:
    """
    Status logic:
    - unhealthy: database is down (the engine cannot run without it)
    - degraded: Redis is down or a plugin failed to load
    - healthy: all components operational
    """
    components: dict[str, ComponentHealth] = {}

    try:
        db = await get_database()
        components["database"] = await _check_database(db)
    except StoreUnavailableError as e:
        components["database"] = ComponentHealth(status="unhealthy", details={"error": str(e)})

    components["redis"] = await _check_redis()

    try:
        sources_enabled = len(provider.enabled_sources())
    except ConfigurationError as e:
        logger.warning("Source config unreadable", error=str(e))
        sources_enabled = 0

    failed = registry.failed
    if components["database"].status == "unhealthy":
        status = "unhealthy"
    elif components["redis"].status == "unhealthy" or failed:
        status = "degraded"
    else:
        status = "healthy"

    return HealthResponse(
        status=status,
        plugins_loaded=len(registry.plugins),
        plugins_failed=len(failed),
        sources_enabled=sources_enabled,
        components=components,
    )
