"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobfarm.observability.logging import bind_context, clear_context, setup_logging
from jobfarm.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobfarm.observability.tracing import create_span, get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_context",
    "clear_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "create_span",
]
