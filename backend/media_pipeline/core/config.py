"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

import os
import secrets
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


def _default_workers() -> int:
    return max(1, (os.cpu_count() or 2) // 2)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Media Derivative Pipeline"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # Signs local-backend upload URLs; set explicitly when running more than one process
    SECRET_KEY: str = Field(default_factory=lambda: secrets.token_urlsafe(32))

    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Tracing
    TRACING_ENABLED: bool = True
    TRACING_CONSOLE_EXPORT: bool = False

    # Storage Configuration
    # STORAGE_BACKEND: local, s3, minio
    STORAGE_BACKEND: str = "local"

    # Local Storage (when STORAGE_BACKEND=local)
    LOCAL_STORAGE_PATH: str = "./storage"

    # S3/MinIO/Compatible Storage (when STORAGE_BACKEND=s3 or minio)
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_USE_SSL: bool = True

    # CDN Configuration (optional, for any backend)
    CDN_DOMAIN: Optional[str] = None
    CDN_ENABLED: bool = False

    # Key space
    RAW_UPLOAD_FOLDER: str = "photo-app-raw"
    DERIVATIVE_FOLDER: str = "photo-app-images"

    # Upload constraints
    MAX_UPLOAD_BYTES: int = Field(default=25 * 1024 * 1024, gt=0)
    UPLOAD_URL_TTL_SECONDS: int = Field(default=300, ge=60, le=3600)
    ACCEPTED_CONTENT_TYPES: list[str] = [
        "image/jpeg",
        "image/png",
        "image/webp",
        "image/gif",
        "image/bmp",
        "image/tiff",
        "image/avif",
    ]

    # Derivatives
    DERIVATIVE_CACHE_CONTROL: str = "public, max-age=31536000, immutable"
    DERIVATIVE_ENCODINGS: list[str] = ["webp", "avif"]
    MAX_IMAGE_PIXELS: int = 100_000_000

    # Worker pool
    TRANSCODE_WORKERS: int = Field(default_factory=_default_workers, ge=1)
    TRANSCODE_TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)

    # Storage retry (transient faults only)
    STORAGE_RETRY_ATTEMPTS: int = Field(default=3, ge=1, le=10)
    STORAGE_RETRY_INITIAL_DELAY: float = 0.2
    STORAGE_RETRY_MAX_DELAY: float = 2.0
    STORAGE_RETRY_BACKOFF: float = 2.0

    # Processing: sync returns derivatives from finalize, background hands off to Celery
    PROCESSING_MODE: Literal["sync", "background"] = "sync"

    # Redis (Celery broker/result backend)
    REDIS_URL: str = "redis://localhost:6379/0"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
