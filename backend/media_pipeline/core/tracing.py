"""OpenTelemetry tracing.

Each HTTP request gets a server span; an ingestion opens
``derivatives.ingest`` with ``derivatives.transcode`` and
``derivatives.persist`` nested below it. Spans are exported to the console
when enabled; without ``setup_tracing`` every call here is a no-op.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "media_pipeline"

_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    enable_console_export: bool = False,
) -> None:
    """Install a tracer provider for the process.

    Args:
        service_name: ``service.name`` resource attribute
        service_version: ``service.version`` resource attribute
        environment: ``deployment.environment`` resource attribute
        enable_console_export: Print finished spans to stdout
    """
    global _provider

    _provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    }))
    if enable_console_export:
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(_provider)
    set_global_textmap(TraceContextTextMapPropagator())
    logger.info(f"Tracing enabled for {service_name} {service_version} ({environment})")


def current_trace_ids() -> dict[str, str]:
    """``trace_id``/``span_id`` of the active span, empty outside of one."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return {}
    return {
        "trace_id": format(context.trace_id, "032x"),
        "span_id": format(context.span_id, "016x"),
    }


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict[str, Any]] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    tracer = trace.get_tracer(INSTRUMENTATION_NAME)
    with tracer.start_as_current_span(name, kind=kind, attributes=_clean(attributes)) as span:
        yield span


def add_span_attributes(attributes: dict[str, Any]) -> None:
    """Set attributes on the active span, skipping None values."""
    span = trace.get_current_span()
    for key, value in _clean(attributes).items():
        span.set_attribute(key, value)


def record_exception(error: BaseException) -> None:
    """Attach ``error`` to the active span and mark the span failed."""
    span = trace.get_current_span()
    span.record_exception(error)
    code = getattr(error, "code", None)
    if isinstance(code, str):
        span.set_attribute("error.code", code)
    span.set_status(Status(StatusCode.ERROR, str(error)))


def shutdown_tracing() -> None:
    """Flush pending spans."""
    global _provider

    if _provider is not None:
        _provider.shutdown()
        _provider = None


def _clean(attributes: Optional[dict[str, Any]]) -> dict[str, Any]:
    return {k: v for k, v in (attributes or {}).items() if v is not None}
