"""Celery application for background ingestion.

Used when ``PROCESSING_MODE`` is ``background``; finalize then enqueues
``derivatives.process_upload`` on the ``ingest`` queue.
"""

from celery import Celery

from media_pipeline.core.config import settings

celery_app = Celery(
    "media_pipeline",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

# One asset is a transcode plus a fetch and a persist round trip
_INGEST_SOFT_LIMIT = int(settings.TRANSCODE_TIMEOUT_SECONDS * 2)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    result_expires=24 * 3600,
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_soft_time_limit=_INGEST_SOFT_LIMIT,
    task_time_limit=_INGEST_SOFT_LIMIT + 30,
    task_routes={"derivatives.*": {"queue": "ingest"}},
    # Transcoding is CPU heavy; never hold more than one asset per worker
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.autodiscover_tasks(["media_pipeline.modules.derivatives"])
