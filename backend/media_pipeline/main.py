"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from media_pipeline.core.config import settings
from media_pipeline.core.logging import setup_logging
from media_pipeline.core.metrics import get_content_type, get_metrics, set_app_info
from media_pipeline.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from media_pipeline.core.tracing import setup_tracing, shutdown_tracing
from media_pipeline.dependencies import shutdown_dependencies
from media_pipeline.modules.derivatives.router import router as derivatives_router
from media_pipeline.modules.uploads.router import router as uploads_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    shutdown_dependencies()
    shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Media Derivative Pipeline API

Ingests photographs and serves a fixed matrix of derivatives
(thumbnail, small, regular, original) x (WebP, AVIF).

* **Uploads** - presigned upload intents and the finalize handshake
* **Derivatives** - derivative lookup and fan-out deletion
* **Media** - read-through access to stored objects
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health check endpoints"},
        {"name": "uploads", "description": "Upload intents, local data plane and finalize"},
        {"name": "derivatives", "description": "Derivative sets, deletion and media access"},
    ],
)

setup_logging(
    level=settings.LOG_LEVEL if not settings.DEBUG else "DEBUG",
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

if settings.TRACING_ENABLED:
    setup_tracing(
        service_name=settings.PROJECT_NAME,
        service_version=settings.VERSION,
        environment=settings.ENVIRONMENT,
        enable_console_export=settings.TRACING_CONSOLE_EXPORT,
    )

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint.

    Returns:
        dict: Health status with "healthy" or "unhealthy" value.
    """
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(uploads_router, prefix=settings.API_V1_PREFIX)
app.include_router(derivatives_router, prefix=settings.API_V1_PREFIX)
