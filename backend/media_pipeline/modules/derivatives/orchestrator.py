"""Pipeline orchestrator.

Runs one ingestion through Decoding -> Encoding -> Persisting -> Complete.
Any failure moves it to Failed; a failure while persisting first rolls back
whatever was already written, so a caller never receives a partial set.
"""

import asyncio
import logging
import time
from typing import Optional, Sequence

from media_pipeline.core.logging import log_error, log_info, log_warning
from media_pipeline.core.metrics import INGEST_STAGE_DURATION_SECONDS, INGEST_TOTAL
from media_pipeline.core.tracing import add_span_attributes, create_span, record_exception
from media_pipeline.modules.derivatives.errors import (
    IngestError,
    PersistError,
    StorageError,
)
from media_pipeline.modules.derivatives.gateway import StorageGateway
from media_pipeline.modules.derivatives.models import (
    AssetDerivativeSet,
    DeleteReport,
    DerivativeDescriptor,
    DerivativeSpec,
    EncodedDerivative,
    IngestState,
)
from media_pipeline.modules.derivatives.pipeline import TranscodePipeline
from media_pipeline.modules.derivatives.planner import DerivativePlanner, validate_base_id, validate_plan

logger = logging.getLogger(__name__)


class IngestionRun:
    """State and stage timings of one ingestion attempt."""

    def __init__(self, base_id: str):
        self.base_id = base_id
        self.state: Optional[IngestState] = None
        self.history: list[IngestState] = []
        self._stage_started = time.perf_counter()

    def transition(self, state: IngestState) -> None:
        now = time.perf_counter()
        if self.state in (IngestState.DECODING, IngestState.ENCODING, IngestState.PERSISTING):
            INGEST_STAGE_DURATION_SECONDS.labels(stage=self.state.value).observe(now - self._stage_started)
        self._stage_started = now
        self.state = state
        self.history.append(state)
        add_span_attributes({"ingest.state": state.value})
        log_info(logger, f"Ingestion {self.base_id} -> {state.value}", base_id=self.base_id, state=state.value)


class PipelineOrchestrator:
    """Ingests and removes derivative sets."""

    def __init__(
        self,
        pipeline: TranscodePipeline,
        gateway: StorageGateway,
        planner: Optional[DerivativePlanner] = None,
    ):
        self.pipeline = pipeline
        self.gateway = gateway
        self.planner = planner or gateway.planner

    async def ingest(
        self,
        base_id: str,
        source_bytes: bytes,
        plan: Optional[Sequence[DerivativeSpec]] = None,
    ) -> AssetDerivativeSet:
        """Transcode and persist every derivative of an asset.

        Args:
            base_id: Asset identifier, unique per ingestion
            source_bytes: Encoded source image
            plan: Derivatives to produce (defaults to the planner's full plan)

        Returns:
            AssetDerivativeSet: Every planned derivative, in plan order

        Raises:
            TranscodeError: If decoding or encoding fails (nothing was written)
            PersistError: If storing fails (written derivatives were rolled back)
        """
        validate_base_id(base_id)
        specs = list(self.planner.plan() if plan is None else plan)
        validate_plan(specs)
        run = IngestionRun(base_id)

        with create_span(
            "derivatives.ingest",
            attributes={"asset.base_id": base_id, "asset.derivative_count": len(specs)},
        ):
            try:
                with create_span("derivatives.transcode"):
                    encoded = await self.pipeline.generate(source_bytes, specs, on_state=run.transition)

                run.transition(IngestState.PERSISTING)
                with create_span("derivatives.persist"):
                    descriptors = await self._persist(base_id, encoded, specs)
            except IngestError as e:
                run.transition(IngestState.FAILED)
                record_exception(e)
                INGEST_TOTAL.labels(outcome=e.code).inc()
                e.base_id = base_id
                log_error(logger, f"Ingestion {base_id} failed: {e.message}", e, base_id=base_id, code=e.code)
                raise

            run.transition(IngestState.COMPLETE)
            INGEST_TOTAL.labels(outcome="complete").inc()
            return AssetDerivativeSet(base_id=base_id, derivatives=descriptors)

    async def _persist(
        self,
        base_id: str,
        encoded: list[EncodedDerivative],
        specs: list[DerivativeSpec],
    ) -> list[DerivativeDescriptor]:
        results = await asyncio.gather(
            *(self.gateway.put_derivative(base_id, derivative) for derivative in encoded),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if not failures:
            return list(results)

        failed_keys = [
            self.planner.key(base_id, derivative.spec.tier, derivative.spec.encoding)
            for derivative, result in zip(encoded, results)
            if isinstance(result, BaseException)
        ]
        for failure in failures:
            if not isinstance(failure, Exception):
                raise failure

        rollback_complete = await self._rollback(base_id, specs)
        first = failures[0]
        message = first.message if isinstance(first, StorageError) else str(first)
        raise PersistError(
            f"Failed to store {len(failures)} of {len(encoded)} derivatives: {message}",
            base_id=base_id,
            failed_keys=failed_keys,
            rollback_complete=rollback_complete,
        ) from first

    async def _rollback(self, base_id: str, specs: list[DerivativeSpec]) -> bool:
        """Best-effort removal of a half-written set. Returns True if nothing was left behind."""
        try:
            report = await self.gateway.delete_asset_derivatives(base_id, specs)
        except StorageError as e:
            log_error(logger, f"Rollback of {base_id} could not reach storage", e, base_id=base_id)
            return False

        if report.has_errors:
            log_warning(
                logger,
                f"Rollback of {base_id} left {len(report.errors)} object(s) behind",
                base_id=base_id,
                keys=[o.key for o in report.errors],
            )
            return False
        log_info(logger, f"Rolled back {len(report.deleted)} derivative(s) of {base_id}", base_id=base_id)
        return True

    async def ingest_upload(
        self,
        base_id: str,
        raw_key: str,
        plan: Optional[Sequence[DerivativeSpec]] = None,
    ) -> AssetDerivativeSet:
        """Ingest a raw upload from storage, then delete the raw object.

        Raw cleanup is best-effort: a failure there is logged and the
        derivative set is still returned.
        """
        try:
            source = await self.gateway.get(raw_key)
        except StorageError as e:
            INGEST_TOTAL.labels(outcome=e.code).inc()
            raise

        derivatives = await self.ingest(base_id, source.data, plan)

        try:
            await self.gateway.delete(raw_key)
        except StorageError as e:
            log_warning(logger, f"Could not delete raw upload {raw_key}: {e.message}", base_id=base_id, key=raw_key)
        return derivatives

    async def remove(
        self,
        base_id: str,
        plan: Optional[Sequence[DerivativeSpec]] = None,
    ) -> DeleteReport:
        """Delete an asset's full derivative set."""
        validate_base_id(base_id)
        with create_span("derivatives.remove", attributes={"asset.base_id": base_id}):
            report = await self.gateway.delete_asset_derivatives(base_id, plan)
        log_info(
            logger,
            f"Removed derivatives of {base_id}",
            base_id=base_id,
            deleted=len(report.deleted),
            not_found=len(report.not_found),
            errors=len(report.errors),
        )
        return report

