"""Ingestion and storage lifecycle errors."""

from typing import Optional

from media_pipeline.core.errors import (
    ObjectNotFoundError,
    PipelineError,
    StorageError,
    StorageUnavailableError,
)

__all__ = [
    "PipelineError",
    "IngestError",
    "TranscodeError",
    "DecodeError",
    "TranscodeTimeout",
    "PersistError",
    "InvalidPlanError",
    "InvalidBaseIdError",
    "StorageError",
    "StorageUnavailableError",
    "ObjectNotFoundError",
    "PartialDeleteError",
]


class IngestError(PipelineError):
    """Ingestion of an asset failed; nothing from it is left referenced."""

    code = "ingest_failed"
    status_code = 500

    def __init__(self, message: str, base_id: Optional[str] = None):
        super().__init__(message)
        self.base_id = base_id


class TranscodeError(IngestError):
    """Decoding or encoding failed."""

    code = "transcode_failed"
    status_code = 422


class DecodeError(TranscodeError):
    """Source bytes are corrupt or not a supported image. Retrying never helps."""

    code = "decode_failed"
    permanent = True


class TranscodeTimeout(TranscodeError):
    """The asset exceeded its processing budget.

    Callers may retry the whole ingestion once with a fresh base id.
    """

    code = "transcode_timeout"
    status_code = 504


class PersistError(IngestError):
    """Storing a derivative failed; already written derivatives were rolled back."""

    code = "persist_failed"
    status_code = 502

    def __init__(
        self,
        message: str,
        base_id: Optional[str] = None,
        failed_keys: Optional[list[str]] = None,
        rollback_complete: bool = True,
    ):
        super().__init__(message, base_id=base_id)
        self.failed_keys = failed_keys or []
        self.rollback_complete = rollback_complete


class InvalidPlanError(PipelineError):
    """A derivative plan or tier profile is malformed."""

    code = "invalid_plan"
    status_code = 400
    permanent = True


class PartialDeleteError(StorageError):
    """Some keys of a fan-out delete failed after retries.

    Reported through ``DeleteReport.partial_error`` and logged; never raised
    out of the delete call itself.
    """

    code = "partial_delete"
    status_code = 207

    def __init__(self, base_id: str, failed_keys: list[str]):
        super().__init__(
            f"{len(failed_keys)} derivative(s) of {base_id} could not be deleted",
            transient=True,
        )
        self.base_id = base_id
        self.failed_keys = failed_keys


class InvalidBaseIdError(PipelineError):
    """A base id cannot be used to build storage keys."""

    code = "invalid_base_id"
    status_code = 400
    permanent = True
