"""Celery tasks for out-of-band derivative processing."""

import asyncio
import logging
from typing import Any, Optional

from celery import Task

from media_pipeline.core.celery_app import celery_app
from media_pipeline.core.logging import get_correlation_id, log_error, log_warning, set_correlation_id
from media_pipeline.core.retry import RETRY_CONFIGS, RetryConfig
from media_pipeline.modules.derivatives.errors import PersistError, StorageError
from media_pipeline.modules.derivatives.schemas import AssetDerivativeSetResponse

logger = logging.getLogger(__name__)


class IngestTask(Task):
    """Base task for ingestion with exponential backoff on transient faults."""

    abstract = True
    max_retries = 3
    retry_config_name: str = "ingest"

    @property
    def retry_config(self) -> RetryConfig:
        return RETRY_CONFIGS.get(self.retry_config_name, RETRY_CONFIGS["default"])

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        base_id = args[0] if args else kwargs.get("base_id")
        log_error(logger, f"Background ingestion of {base_id} failed", exc, base_id=base_id, task_id=task_id)

    def on_retry(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        base_id = args[0] if args else kwargs.get("base_id")
        log_warning(
            logger,
            f"Retrying ingestion of {base_id} (attempt {self.request.retries + 1}): {exc}",
            base_id=base_id,
            task_id=task_id,
        )


def is_retryable(error: Exception) -> bool:
    """Persist failures (rolled back) and transient storage faults are worth another run."""
    if isinstance(error, PersistError):
        return True
    return isinstance(error, StorageError) and error.transient


@celery_app.task(bind=True, base=IngestTask, name="derivatives.process_upload")
def process_upload_task(
    self: IngestTask,
    base_id: str,
    raw_key: str,
    correlation_id: Optional[str] = None,
) -> dict:
    """Ingest a finalized upload.

    Args:
        base_id: Asset identifier (the upload id)
        raw_key: Storage key of the raw upload

    Returns:
        dict: The derivative set, serialized
    """
    if correlation_id:
        set_correlation_id(correlation_id)

    try:
        return asyncio.run(_process_upload_async(base_id, raw_key))
    except Exception as e:
        if is_retryable(e) and self.request.retries < self.max_retries:
            delay = self.retry_config.calculate_delay(self.request.retries + 1)
            raise self.retry(exc=e, countdown=delay)
        raise


async def _process_upload_async(base_id: str, raw_key: str) -> dict:
    from media_pipeline.dependencies import get_orchestrator

    derivative_set = await get_orchestrator().ingest_upload(base_id, raw_key)
    return {
        "status": "completed",
        "base_id": base_id,
        "derivatives": AssetDerivativeSetResponse.from_set(derivative_set).model_dump(
            mode="json", by_alias=True
        ),
    }


def enqueue_processing(base_id: str, raw_key: str) -> str:
    """Hand a finalized upload to a worker. Returns the Celery task id."""
    result = process_upload_task.apply_async(
        args=[base_id, raw_key],
        kwargs={"correlation_id": get_correlation_id()},
    )
    return result.id
