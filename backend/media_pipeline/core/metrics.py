"""Prometheus metrics for the derivative pipeline.

Exposes HTTP, upload, ingestion and storage metrics on a private registry.
"""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

REGISTRY = CollectorRegistry()

# Multiprocess mode (e.g. gunicorn workers)
if "PROMETHEUS_MULTIPROC_DIR" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "media_pipeline_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Upload Metrics
# ============================================
UPLOAD_INTENTS_TOTAL = Counter(
    "upload_intents_total",
    "Upload intents by outcome (issued, rejected)",
    ["outcome"],
    registry=REGISTRY,
)

FINALIZE_TOTAL = Counter(
    "upload_finalize_total",
    "Finalize calls by outcome (completed, accepted, rejected, failed)",
    ["outcome"],
    registry=REGISTRY,
)


# ============================================
# Ingestion Metrics
# ============================================
INGEST_TOTAL = Counter(
    "ingest_total",
    "Ingestions by final state",
    ["outcome"],
    registry=REGISTRY,
)

INGEST_STAGE_DURATION_SECONDS = Histogram(
    "ingest_stage_duration_seconds",
    "Duration of each ingestion stage in seconds",
    ["stage"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=REGISTRY,
)

DERIVATIVES_GENERATED_TOTAL = Counter(
    "derivatives_generated_total",
    "Derivatives encoded by tier and encoding",
    ["tier", "encoding"],
    registry=REGISTRY,
)

TRANSCODE_JOBS_IN_PROGRESS = Gauge(
    "transcode_jobs_in_progress",
    "Transcode jobs currently running on the worker pool",
    registry=REGISTRY,
)


# ============================================
# Storage Metrics
# ============================================
STORAGE_OPERATIONS_TOTAL = Counter(
    "storage_operations_total",
    "Storage gateway operations by outcome",
    ["operation", "outcome"],
    registry=REGISTRY,
)

DELETE_OUTCOMES_TOTAL = Counter(
    "storage_delete_outcomes_total",
    "Per-key delete outcomes (deleted, not_found, error)",
    ["status"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
