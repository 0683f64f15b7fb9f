"""Ingestion endpoints: per-source stats, poll history and manual triggers."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.api.auth import verify_api_key
from src.api.dependencies import get_config_provider, get_ingestion_service, get_repository
from src.api.models import (
    CycleReportResponse,
    ErrorResponse,
    IngestedItemRecord,
    ItemsResponse,
    PollLogEntry,
    PollLogResponse,
    SampleItem,
    SendRequest,
    SendResponse,
    SourceStats,
    SourceTestResponse,
    StatsResponse,
)
from src.ingestion.errors import ConfigurationError, StoreUnavailableError
from src.services.ingestion_service import IngestionService
from src.sources.service import SourceConfigProvider
from src.storage.repository import IngestRepository

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/ingest")


def _require_known_source(provider: SourceConfigProvider, source_id: str) -> None:
    try:
        known = provider.get_source(source_id) is not None
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    if not known:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Source not found: {source_id}",
        )


def _store_unavailable(e: StoreUnavailableError) -> HTTPException:
    logger.error("Store unavailable", error=str(e))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get(
    "/stats",
    response_model=StatsResponse,
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Per-source ingestion statistics",
)
async def ingest_stats(
    api_key: str = Depends(verify_api_key),
    provider: SourceConfigProvider = Depends(get_config_provider),
    repo: IngestRepository = Depends(get_repository),
) -> StatsResponse:
    """Accepted-item counts for every configured source plus any with stored items."""
    try:
        counts = {row["source_id"]: row for row in await repo.all_source_stats()}
        configured = {source.id: source for source in provider.get_sources()}

        stats = []
        for source_id in sorted(configured.keys() | counts.keys()):
            source = configured.get(source_id)
            row = counts.get(source_id, {})
            last = await repo.last_poll(source_id)
            stats.append(
                SourceStats(
                    source_id=source_id,
                    type=source.type if source else None,
                    enabled=source.enabled if source else None,
                    total_items=row.get("total_items", 0),
                    last_ingested=row.get("last_ingested"),
                    last_poll_at=last["poll_at"] if last else None,
                    last_error=last["error"] if last else None,
                )
            )
    except StoreUnavailableError as e:
        raise _store_unavailable(e)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return StatsResponse(sources=stats, total=len(stats))


@router.get(
    "/{source_id}/polls",
    response_model=PollLogResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Recent poll cycles for a source",
)
async def source_polls(
    source_id: str,
    limit: int = Query(default=10, ge=1, le=200),
    api_key: str = Depends(verify_api_key),
    provider: SourceConfigProvider = Depends(get_config_provider),
    repo: IngestRepository = Depends(get_repository),
) -> PollLogResponse:
    _require_known_source(provider, source_id)
    try:
        polls = await repo.recent_polls(source_id, limit=limit)
    except StoreUnavailableError as e:
        raise _store_unavailable(e)
    return PollLogResponse(source_id=source_id, polls=[PollLogEntry(**p) for p in polls])


@router.get(
    "/{source_id}/items",
    response_model=ItemsResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Recently accepted items for a source",
)
async def source_items(
    source_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    api_key: str = Depends(verify_api_key),
    provider: SourceConfigProvider = Depends(get_config_provider),
    repo: IngestRepository = Depends(get_repository),
) -> ItemsResponse:
    _require_known_source(provider, source_id)
    try:
        items = await repo.recent_items(source_id, limit=limit)
        total = await repo.item_count(source_id)
    except StoreUnavailableError as e:
        raise _store_unavailable(e)
    return ItemsResponse(
        source_id=source_id,
        items=[IngestedItemRecord(**item) for item in items],
        total=total,
    )


@router.post(
    "/{source_id}/poll",
    response_model=CycleReportResponse,
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
    summary="Run one poll cycle now",
)
async def trigger_poll(
    source_id: str,
    api_key: str = Depends(verify_api_key),
    provider: SourceConfigProvider = Depends(get_config_provider),
    service: IngestionService = Depends(get_ingestion_service),
) -> CycleReportResponse:
    """A failing adapter is reported in ``error``; only store loss is a 503."""
    _require_known_source(provider, source_id)
    try:
        report = await service.poll_source(source_id)
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="; ".join([str(e), *e.errors]),
        )
    except StoreUnavailableError as e:
        raise _store_unavailable(e)

    logger.info("Manual poll completed", source_id=source_id, new=report.new, error=report.error)
    return CycleReportResponse(**report.to_dict())


@router.post(
    "/{source_id}/test",
    response_model=SourceTestResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Test a source's credentials and connectivity",
)
async def test_source(
    source_id: str,
    api_key: str = Depends(verify_api_key),
    provider: SourceConfigProvider = Depends(get_config_provider),
    service: IngestionService = Depends(get_ingestion_service),
) -> SourceTestResponse:
    _require_known_source(provider, source_id)
    result = await service.test_source(source_id)
    return SourceTestResponse(
        ok=result.ok,
        message=result.message,
        sample_items=[
            SampleItem(id=item.id, title=item.title, author=item.author, timestamp=item.timestamp)
            for item in result.sample_items
        ],
    )


@router.post(
    "/{source_id}/send",
    response_model=SendResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Post a message back through a source",
)
async def send_message(
    source_id: str,
    request: SendRequest,
    api_key: str = Depends(verify_api_key),
    provider: SourceConfigProvider = Depends(get_config_provider),
    service: IngestionService = Depends(get_ingestion_service),
) -> SendResponse:
    _require_known_source(provider, source_id)
    try:
        result = await service.send_message(
            source_id, request.target, request.message, thread_id=request.thread_id
        )
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="; ".join([str(e), *e.errors]),
        )
    return SendResponse(**result.model_dump())
