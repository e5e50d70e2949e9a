"""API router for the two-phase upload protocol."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status

from media_pipeline.core.errors import PipelineError, to_http_exception
from media_pipeline.core.storage import LocalStorage
from media_pipeline.dependencies import get_gateway, get_upload_coordinator
from media_pipeline.modules.derivatives.gateway import StorageGateway
from media_pipeline.modules.derivatives.schemas import AssetDerivativeSetResponse, ErrorResponse
from media_pipeline.modules.uploads.errors import InvalidUploadSignature, PayloadTooLarge
from media_pipeline.modules.uploads.schemas import (
    FinalizeRequest,
    FinalizeResponse,
    IntentRequest,
    IntentResponse,
)
from media_pipeline.modules.uploads.service import UploadCoordinator, normalize_content_type

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])


@router.post(
    "/intents",
    response_model=IntentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={413: {"model": ErrorResponse}, 415: {"model": ErrorResponse}},
)
async def create_upload_intent(
    data: IntentRequest,
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> IntentResponse:
    """Issue a short-lived URL the client uploads the raw bytes to."""
    try:
        intent = await coordinator.issue(data.file_name, data.content_type, data.size)
    except PipelineError as e:
        raise to_http_exception(e)

    return IntentResponse(
        upload_id=intent.upload_id,
        upload_url=intent.upload_url,
        upload_key=intent.key,
        expires_at=intent.expires_at,
        method=intent.method,
        headers=intent.headers,
        max_size=intent.max_size,
    )


@router.put(
    "/local/{key:path}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={403: {"model": ErrorResponse}, 413: {"model": ErrorResponse}},
)
async def put_local_upload(
    key: str,
    request: Request,
    content_type: str = Query(...),
    expires: int = Query(...),
    signature: str = Query(...),
    gateway: StorageGateway = Depends(get_gateway),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> Response:
    """Data plane for the local storage backend; S3 clients upload to S3 directly."""
    backend = gateway.storage.backend
    if not isinstance(backend, LocalStorage):
        return Response(status_code=status.HTTP_404_NOT_FOUND)

    max_size = coordinator.max_upload_bytes
    declared_length: Optional[str] = request.headers.get("content-length")
    if declared_length and declared_length.isdigit() and int(declared_length) > max_size:
        raise to_http_exception(PayloadTooLarge(f"Upload exceeds the {max_size} byte limit"))

    if normalize_content_type(request.headers.get("content-type", "")) != content_type:
        raise to_http_exception(InvalidUploadSignature("Content-Type does not match the signed upload"))
    if not backend.verify_upload(key, content_type, expires, signature):
        raise to_http_exception(InvalidUploadSignature("Upload URL is invalid or expired"))

    body = await request.body()
    if len(body) > max_size:
        raise to_http_exception(PayloadTooLarge(f"Upload exceeds the {max_size} byte limit"))

    try:
        await gateway.put_raw(key, body, content_type)
    except PipelineError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/finalize",
    response_model=FinalizeResponse,
    responses={
        201: {"model": FinalizeResponse},
        202: {"model": FinalizeResponse},
        409: {"model": ErrorResponse},
        410: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
    },
)
async def finalize_upload(
    data: FinalizeRequest,
    response: Response,
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> FinalizeResponse:
    """Confirm an upload and start processing.

    Answers 202 when processing continues in the background, 201 with the
    derivative set when it ran inline.
    """
    try:
        result = await coordinator.finalize(
            data.upload_id,
            data.upload_key,
            metadata=data.metadata.model_dump(),
        )
    except PipelineError as e:
        raise to_http_exception(e)

    if result.derivatives is None:
        response.status_code = status.HTTP_202_ACCEPTED
        derivatives = None
    else:
        response.status_code = status.HTTP_201_CREATED
        derivatives = AssetDerivativeSetResponse.from_set(result.derivatives)

    return FinalizeResponse(
        accepted=result.accepted,
        upload_id=result.upload_id,
        base_id=result.base_id,
        task_id=result.task_id,
        derivatives=derivatives,
        metadata=data.metadata,
    )
