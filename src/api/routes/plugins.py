"""Plugin inventory endpoint."""

from fastapi import APIRouter, Depends

from src.api.auth import verify_api_key
from src.api.dependencies import get_registry
from src.api.models import ErrorResponse, PluginItem, PluginsResponse
from src.plugins.loader import PluginRegistry

router = APIRouter()


@router.get(
    "/plugins",
    response_model=PluginsResponse,
    responses={401: {"model": ErrorResponse}},
    summary="List installed plugins",
    description="Every built-in and user plugin directory with its load status.",
)
async def list_plugins(
    api_key: str = Depends(verify_api_key),
    registry: PluginRegistry = Depends(get_registry),
) -> PluginsResponse:
    inventory = registry.installed()
    return PluginsResponse(
        plugins=[PluginItem(**info.to_dict()) for info in inventory],
        loaded=sum(1 for info in inventory if info.status == "loaded"),
        failed=sum(1 for info in inventory if info.status == "failed"),
    )
