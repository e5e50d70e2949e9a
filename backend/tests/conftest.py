"""Shared fixtures: a local object store under tmp_path and a WebP-only stack."""

import pytest

from media_pipeline.core.storage import LocalStorage, Storage, StorageConfig
from media_pipeline.modules.derivatives.gateway import StorageGateway
from media_pipeline.modules.derivatives.models import Encoding
from media_pipeline.modules.derivatives.orchestrator import PipelineOrchestrator
from media_pipeline.modules.derivatives.pipeline import TranscodePipeline
from media_pipeline.modules.derivatives.planner import DerivativePlanner

from support import FaultyBackend, local_config, make_gateway, make_image


@pytest.fixture
def storage_config(tmp_path) -> StorageConfig:
    return local_config(tmp_path / "store")


@pytest.fixture
def storage(storage_config) -> Storage:
    return Storage(storage_config)


@pytest.fixture
def faulty_backend(storage_config) -> FaultyBackend:
    return FaultyBackend(LocalStorage(storage_config))


@pytest.fixture
def faulty_storage(storage_config, faulty_backend) -> Storage:
    return Storage(storage_config, backend=faulty_backend)


@pytest.fixture
def planner() -> DerivativePlanner:
    """Full tier table, WebP only, so tests do not depend on an AVIF encoder."""
    return DerivativePlanner(encodings=[Encoding.WEBP], folder="photo-app-images")


@pytest.fixture
def gateway(storage, planner) -> StorageGateway:
    return make_gateway(storage, planner)


@pytest.fixture
def pipeline():
    pipeline = TranscodePipeline(max_workers=2, timeout_seconds=60)
    yield pipeline
    pipeline.shutdown()


@pytest.fixture
def orchestrator(pipeline, gateway) -> PipelineOrchestrator:
    return PipelineOrchestrator(pipeline, gateway)


@pytest.fixture
def photo() -> bytes:
    return make_image(640, 480)
