"""Upload coordinator.

Issues scoped write credentials so raw bytes go straight to storage, then
turns a finalize call into an ingestion, inline or on a background worker.
"""

import logging
import os
import re
import secrets
import time
from datetime import timedelta
from typing import Callable, Iterable, Optional

from media_pipeline.core.config import settings
from media_pipeline.core.errors import PipelineError, StorageError
from media_pipeline.core.logging import log_info, log_warning
from media_pipeline.core.metrics import FINALIZE_TOTAL, UPLOAD_INTENTS_TOTAL
from media_pipeline.modules.derivatives.gateway import StorageGateway
from media_pipeline.modules.derivatives.orchestrator import PipelineOrchestrator
from media_pipeline.modules.uploads.errors import (
    InvalidUploadRequest,
    PayloadTooLarge,
    UnknownOrExpiredIntent,
    UnsupportedMediaType,
    UploadNotReceived,
)
from media_pipeline.modules.uploads.models import FinalizeResult, UploadIntent
from media_pipeline.modules.uploads.store import IntentStore

logger = logging.getLogger(__name__)

UPLOAD_ID_PATTERN = re.compile(r"^image-\d+-[a-z0-9]{8}$")
_EXTENSION_PATTERN = re.compile(r"^[a-z0-9]{1,5}$")

# Content-type subtypes whose conventional extension differs
_SUBTYPE_EXTENSIONS = {
    "jpeg": "jpg",
    "svg+xml": "svg",
}

Dispatcher = Callable[[str, str], str]


def generate_upload_id() -> str:
    """``image-<epoch millis>-<8 hex chars>``; also used as the asset base id."""
    return f"image-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def normalize_content_type(content_type: str) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def extension_for(file_name: str, content_type: str) -> str:
    """Pick a raw-object extension from the file name, else the content type."""
    ext = os.path.splitext(file_name or "")[1].lstrip(".").lower()
    if _EXTENSION_PATTERN.match(ext):
        return ext

    subtype = normalize_content_type(content_type).partition("/")[2]
    subtype = _SUBTYPE_EXTENSIONS.get(subtype, subtype)
    if _EXTENSION_PATTERN.match(subtype):
        return subtype
    return "bin"


def _default_dispatcher(base_id: str, raw_key: str) -> str:
    from media_pipeline.modules.derivatives.tasks import enqueue_processing

    return enqueue_processing(base_id, raw_key)


class UploadCoordinator:
    """Drives the issue/finalize handshake."""

    def __init__(
        self,
        gateway: StorageGateway,
        orchestrator: PipelineOrchestrator,
        store: IntentStore,
        dispatcher: Optional[Dispatcher] = None,
        processing_mode: Optional[str] = None,
        max_upload_bytes: Optional[int] = None,
        accepted_content_types: Optional[Iterable[str]] = None,
        url_ttl_seconds: Optional[int] = None,
        raw_folder: Optional[str] = None,
        id_factory: Callable[[], str] = generate_upload_id,
    ):
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.store = store
        self.dispatcher = dispatcher or _default_dispatcher
        self.processing_mode = processing_mode or settings.PROCESSING_MODE
        self.max_upload_bytes = max_upload_bytes or settings.MAX_UPLOAD_BYTES
        self.accepted_content_types = frozenset(
            normalize_content_type(ct)
            for ct in (accepted_content_types or settings.ACCEPTED_CONTENT_TYPES)
        )
        self.url_ttl_seconds = url_ttl_seconds or settings.UPLOAD_URL_TTL_SECONDS
        self.raw_folder = (raw_folder or settings.RAW_UPLOAD_FOLDER).strip("/")
        self.id_factory = id_factory

    def raw_key(self, upload_id: str, file_name: str, content_type: str) -> str:
        return f"{self.raw_folder}/{upload_id}.{extension_for(file_name, content_type)}"

    def validate(self, content_type: str, size: int) -> str:
        """Check the declared type and size; returns the normalized type.

        Raises:
            UnsupportedMediaType: If the type is not an accepted image type
            PayloadTooLarge: If size exceeds the ceiling
        """
        normalized = normalize_content_type(content_type)
        if normalized not in self.accepted_content_types:
            raise UnsupportedMediaType(f"Content type not accepted: {content_type or '<empty>'}")
        if not isinstance(size, int) or size <= 0:
            raise InvalidUploadRequest("Declared size must be a positive integer")
        if size > self.max_upload_bytes:
            raise PayloadTooLarge(
                f"Declared size {size} exceeds the {self.max_upload_bytes} byte limit"
            )
        return normalized

    async def issue(self, file_name: str, content_type: str, size: int) -> UploadIntent:
        """Issue an upload intent with a presigned write URL.

        Validation happens before any id, key or credential is generated.
        """
        try:
            content_type = self.validate(content_type, size)
        except PipelineError as e:
            UPLOAD_INTENTS_TOTAL.labels(outcome="rejected").inc()
            log_info(logger, f"Upload intent rejected: {e.message}", code=e.code)
            raise

        upload_id = self.id_factory()
        key = self.raw_key(upload_id, file_name, content_type)
        presigned = await self.gateway.presign_upload(key, content_type, self.url_ttl_seconds)

        intent = self.store.issue(UploadIntent(
            upload_id=upload_id,
            key=key,
            content_type=content_type,
            max_size=self.max_upload_bytes,
            declared_size=size,
            file_name=file_name,
            upload_url=presigned.url,
            expires_at=self.store.now() + timedelta(seconds=self.url_ttl_seconds),
            method=presigned.method,
            headers=presigned.headers,
        ))
        UPLOAD_INTENTS_TOTAL.labels(outcome="issued").inc()
        log_info(logger, f"Issued upload intent {upload_id}", upload_id=upload_id, key=key)
        return intent

    async def finalize(
        self,
        upload_id: str,
        key: str,
        metadata: Optional[dict] = None,
    ) -> FinalizeResult:
        """Resolve an intent and start processing the uploaded bytes.

        Failures a retry could get past return the intent to the store, so
        the same finalize call can be repeated until the intent expires.

        Raises:
            UnknownOrExpiredIntent: If the intent cannot be resolved
            UploadNotReceived: If nothing was uploaded under the key yet
            PayloadTooLarge: If the uploaded object exceeds the intent's ceiling
            IngestError: In sync mode, if ingestion fails
        """
        if not upload_id or not UPLOAD_ID_PATTERN.match(upload_id):
            FINALIZE_TOTAL.labels(outcome="rejected").inc()
            raise UnknownOrExpiredIntent(f"Malformed upload id: {upload_id!r}")

        try:
            intent = self.store.resolve(upload_id, key)
        except UnknownOrExpiredIntent:
            FINALIZE_TOTAL.labels(outcome="rejected").inc()
            raise

        try:
            info = await self.gateway.head(intent.key)
        except Exception:
            self.store.release(intent)
            FINALIZE_TOTAL.labels(outcome="failed").inc()
            raise

        if info is None:
            self.store.release(intent)
            FINALIZE_TOTAL.labels(outcome="rejected").inc()
            raise UploadNotReceived(f"No object uploaded under {intent.key} yet")

        if info.length > intent.max_size:
            await self._discard_oversized(intent, info.length)
            FINALIZE_TOTAL.labels(outcome="rejected").inc()
            raise PayloadTooLarge(
                f"Uploaded object is {info.length} bytes; limit is {intent.max_size}"
            )

        base_id = intent.upload_id
        if self.processing_mode == "background":
            try:
                task_id = self.dispatcher(base_id, intent.key)
            except Exception:
                self.store.release(intent)
                FINALIZE_TOTAL.labels(outcome="failed").inc()
                raise
            FINALIZE_TOTAL.labels(outcome="accepted").inc()
            log_info(logger, f"Queued processing of {base_id}", base_id=base_id, task_id=task_id)
            return FinalizeResult(
                accepted=True,
                upload_id=upload_id,
                base_id=base_id,
                task_id=task_id,
                metadata=metadata,
            )

        try:
            derivatives = await self.orchestrator.ingest_upload(base_id, intent.key)
        except PipelineError as e:
            if not e.permanent:
                self.store.release(intent)
            FINALIZE_TOTAL.labels(outcome="failed").inc()
            log_warning(logger, f"Finalize of {upload_id} failed: {e.message}", upload_id=upload_id, code=e.code)
            raise

        FINALIZE_TOTAL.labels(outcome="completed").inc()
        return FinalizeResult(
            accepted=True,
            upload_id=upload_id,
            base_id=base_id,
            derivatives=derivatives,
            metadata=metadata,
        )

    async def _discard_oversized(self, intent: UploadIntent, size: int) -> None:
        """Best-effort delete of a raw upload that broke its size ceiling."""
        log_warning(
            logger,
            f"Upload {intent.upload_id} is {size} bytes, over its {intent.max_size} byte limit",
            upload_id=intent.upload_id,
            key=intent.key,
        )
        try:
            await self.gateway.delete(intent.key)
        except StorageError as e:
            log_warning(
                logger,
                f"Could not delete oversized upload {intent.key}: {e.message}",
                upload_id=intent.upload_id,
                key=intent.key,
            )
