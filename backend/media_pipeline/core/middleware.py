"""HTTP middleware: request metrics, correlation ids, tracing and access logs."""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from media_pipeline.core.logging import clear_correlation_id, get_correlation_id, log_error, set_correlation_id
from media_pipeline.core.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)
from media_pipeline.core.tracing import add_span_attributes, create_span, record_exception

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Storage keys and asset ids would explode label cardinality
_ROUTE_TEMPLATES = (
    (re.compile(r"/media/.+$"), "/media/{key}"),
    (re.compile(r"/uploads/local/.+$"), "/uploads/local/{key}"),
    (re.compile(r"/assets/[^/]+"), "/assets/{base_id}"),
)

request_logger = logging.getLogger("media_pipeline.requests")


def route_template(path: str) -> str:
    for pattern, template in _ROUTE_TEMPLATES:
        path = pattern.sub(template, path)
    return path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts requests and observes latency per method and route template."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        labels = {"method": request.method, "endpoint": route_template(request.url.path)}
        in_progress = HTTP_REQUESTS_IN_PROGRESS.labels(**labels)
        in_progress.inc()
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUEST_DURATION_SECONDS.labels(**labels).observe(time.perf_counter() - started)
            HTTP_REQUESTS_TOTAL.labels(status_code=str(status_code), **labels).inc()
            in_progress.dec()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Adopts the caller's ``X-Correlation-ID`` or mints one, and echoes it back."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or uuid.uuid4().hex
        set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response


class TracingMiddleware(BaseHTTPMiddleware):
    """Opens a server span per request, named after the route template."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        route = route_template(request.url.path)
        with create_span(
            f"{request.method} {route}",
            attributes={
                "http.method": request.method,
                "http.route": route,
                "url.path": request.url.path,
                "correlation_id": get_correlation_id(),
            },
            kind=trace.SpanKind.SERVER,
        ):
            try:
                response = await call_next(request)
            except Exception as e:
                record_exception(e)
                raise
            add_span_attributes({"http.status_code": response.status_code})
            return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access-log line per request, with status and duration."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        context = {
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }
        try:
            response = await call_next(request)
        except Exception as e:
            log_error(
                request_logger,
                f"{request.method} {request.url.path} failed",
                e,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                **context,
            )
            raise

        request_logger.info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                **context,
            },
        )
        return response
