"""FastAPI dependency providers.

Each provider builds its component once per process; tests replace them with
``app.dependency_overrides``.
"""

from functools import lru_cache

from media_pipeline.core.config import settings
from media_pipeline.core.storage import Storage
from media_pipeline.modules.derivatives.gateway import StorageGateway
from media_pipeline.modules.derivatives.orchestrator import PipelineOrchestrator
from media_pipeline.modules.derivatives.pipeline import TranscodePipeline
from media_pipeline.modules.derivatives.planner import DerivativePlanner
from media_pipeline.modules.uploads.service import UploadCoordinator
from media_pipeline.modules.uploads.store import IntentStore


@lru_cache
def get_storage() -> Storage:
    return Storage()


@lru_cache
def get_planner() -> DerivativePlanner:
    return DerivativePlanner(encodings=settings.DERIVATIVE_ENCODINGS)


@lru_cache
def get_gateway() -> StorageGateway:
    return StorageGateway(get_storage(), get_planner())


@lru_cache
def get_pipeline() -> TranscodePipeline:
    return TranscodePipeline()


@lru_cache
def get_orchestrator() -> PipelineOrchestrator:
    return PipelineOrchestrator(get_pipeline(), get_gateway())


@lru_cache
def get_intent_store() -> IntentStore:
    return IntentStore()


@lru_cache
def get_upload_coordinator() -> UploadCoordinator:
    return UploadCoordinator(get_gateway(), get_orchestrator(), get_intent_store())


def shutdown_dependencies() -> None:
    """Stop the worker pool and forget every cached component."""
    if get_pipeline.cache_info().currsize:
        get_pipeline().shutdown(wait=False)
    for provider in (
        get_storage,
        get_planner,
        get_gateway,
        get_pipeline,
        get_orchestrator,
        get_intent_store,
        get_upload_coordinator,
    ):
        provider.cache_clear()
