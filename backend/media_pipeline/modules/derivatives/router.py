"""API router for derivative sets and read-through media access."""

from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse

from media_pipeline.core.errors import to_http_exception
from media_pipeline.dependencies import get_gateway, get_orchestrator
from media_pipeline.modules.derivatives.errors import (
    InvalidBaseIdError,
    StorageError,
)
from media_pipeline.modules.derivatives.gateway import StorageGateway
from media_pipeline.modules.derivatives.orchestrator import PipelineOrchestrator
from media_pipeline.modules.derivatives.schemas import (
    AssetDerivativeSetResponse,
    DeleteReportResponse,
    ErrorResponse,
)

router = APIRouter(tags=["derivatives"])


@router.get(
    "/assets/{base_id}/derivatives",
    response_model=AssetDerivativeSetResponse,
    responses={400: {"model": ErrorResponse}},
)
async def get_asset_derivatives(
    base_id: str,
    gateway: StorageGateway = Depends(get_gateway),
) -> AssetDerivativeSetResponse:
    """Resolve the URLs of an asset's derivative set without touching storage."""
    try:
        return AssetDerivativeSetResponse.from_set(gateway.describe(base_id))
    except InvalidBaseIdError as e:
        raise to_http_exception(e)


@router.delete(
    "/assets/{base_id}",
    response_model=DeleteReportResponse,
    status_code=status.HTTP_200_OK,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def delete_asset(
    base_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> DeleteReportResponse:
    """Delete every derivative of an asset.

    Missing keys count as already deleted; per-key failures are reported in
    the body rather than failing the request.
    """
    try:
        report = await orchestrator.remove(base_id)
    except (InvalidBaseIdError, StorageError) as e:
        raise to_http_exception(e)
    return DeleteReportResponse.from_report(report)


@router.get(
    "/media/{key:path}",
    response_class=StreamingResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_media(
    key: str,
    gateway: StorageGateway = Depends(get_gateway),
) -> StreamingResponse:
    """Stream a stored object."""
    try:
        stream = await gateway.open_stream(key)
    except StorageError as e:
        raise to_http_exception(e)

    headers = {"Content-Length": str(stream.length)}
    if key.startswith(f"{gateway.planner.folder}/"):
        headers["Cache-Control"] = gateway.cache_control
    return StreamingResponse(stream.chunks, media_type=stream.content_type, headers=headers)
