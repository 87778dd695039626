"""
OpenTelemetry tracing.

The engine opens a ``dispatch`` span per run and every executed job gets an
``execute_job`` span; scheduler submissions and watchdog passes have their
own spans. Spans are exported only when ``JOBFARM_OTEL_ENABLED`` is set,
otherwise the API's no-op tracer absorbs them.
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.trace import Tracer

from jobfarm.config import Settings, get_settings

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "jobfarm"
SERVICE_VERSION_VALUE = "1.0.0"

_tracer: Tracer | None = None


def _build_provider(settings: Settings, console: bool) -> TracerProvider:
    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                SERVICE_VERSION: SERVICE_VERSION_VALUE,
            }
        )
    )

    if settings.otel_enabled:
        try:
            exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
        except Exception:
            logger.exception(
                "Cannot create OTLP exporter; spans will not be exported",
                extra={"endpoint": settings.otel_exporter_otlp_endpoint},
            )
        else:
            provider.add_span_processor(BatchSpanProcessor(exporter))

    if console:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    return provider


def setup_tracing(enable_console_export: bool = False) -> Tracer:
    """
    Install the tracer provider and return the jobfarm tracer.

    Args:
        enable_console_export: Also print finished spans to stdout.
    """
    global _tracer

    settings = get_settings()
    if settings.otel_enabled or enable_console_export:
        trace.set_tracer_provider(_build_provider(settings, enable_console_export))

    _tracer = trace.get_tracer(INSTRUMENTATION_NAME, SERVICE_VERSION_VALUE)
    return _tracer


def get_tracer() -> Tracer:
    """Get the jobfarm tracer, setting tracing up on first use."""
    if _tracer is None:
        return setup_tracing()
    return _tracer


def create_span(name: str, **attributes: Any) -> Any:
    """
    Start a span as the current span.

    Primitive attribute values are kept as-is, others are stringified and
    ``None`` values are dropped.

    Returns:
        A context manager for the span.
    """
    attrs = {
        key: value if isinstance(value, (bool, int, float, str)) else str(value)
        for key, value in attributes.items()
        if value is not None
    }
    return get_tracer().start_as_current_span(name, attributes=attrs)
