"""Base error types shared by every module.

Each error carries a stable ``code`` for API bodies and logs, the HTTP
``status_code`` routers answer with, and whether retrying can ever help.
"""

from typing import Optional

from fastapi import HTTPException


class PipelineError(Exception):
    """Base exception for media pipeline errors."""

    code: str = "pipeline_error"
    status_code: int = 500
    permanent: bool = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class StorageError(PipelineError):
    """An object store operation failed.

    ``transient`` marks faults worth retrying (throttling, 5xx, dropped
    connections); authorization or malformed-request faults are not.
    """

    code = "storage_error"
    status_code = 502

    def __init__(self, message: str, key: Optional[str] = None, transient: bool = True):
        super().__init__(message)
        self.key = key
        self.transient = transient


class StorageUnavailableError(StorageError):
    """The object store cannot be reached at all."""

    code = "storage_unavailable"
    status_code = 503


class ObjectNotFoundError(StorageError):
    """The requested key does not exist."""

    code = "object_not_found"
    status_code = 404

    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}", key=key, transient=False)


def to_http_exception(error: PipelineError) -> HTTPException:
    """Translate a pipeline error into the API's ``{code, message}`` error body."""
    return HTTPException(status_code=error.status_code, detail=error.to_dict())
