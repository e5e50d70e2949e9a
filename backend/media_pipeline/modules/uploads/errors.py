"""Upload protocol errors."""

from media_pipeline.core.errors import PipelineError


class UploadError(PipelineError):
    """Base exception for upload protocol errors."""

    code = "upload_error"
    status_code = 400


class InvalidUploadRequest(UploadError):
    code = "invalid_upload_request"
    status_code = 400
    permanent = True


class UnsupportedMediaType(UploadError):
    """Declared content type is not an accepted image type."""

    code = "unsupported_media_type"
    status_code = 415
    permanent = True


class PayloadTooLarge(UploadError):
    """Declared or actual size exceeds the configured ceiling."""

    code = "payload_too_large"
    status_code = 413
    permanent = True


class UnknownOrExpiredIntent(UploadError):
    """Finalize referenced an intent that is unknown, consumed or expired.

    The caller has to restart the upload flow.
    """

    code = "unknown_or_expired_intent"
    status_code = 410
    permanent = True


class UploadNotReceived(UploadError):
    """Finalize was called before the bytes reached storage."""

    code = "upload_not_received"
    status_code = 409


class InvalidUploadSignature(UploadError):
    code = "invalid_upload_signature"
    status_code = 403
    permanent = True
