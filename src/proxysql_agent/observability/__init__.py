"""
Observability for the ProxySQL agent.

Provides structured logging and optional OpenTelemetry tracing.
"""

from proxysql_agent.observability.logging import StructuredFormatter, configure_logging
from proxysql_agent.observability.tracing import (
    add_span_event,
    configure_tracing,
    get_tracer,
    shutdown_tracing,
    trace_span,
    traced,
)

__all__ = [
    "StructuredFormatter",
    "add_span_event",
    "configure_logging",
    "configure_tracing",
    "get_tracer",
    "shutdown_tracing",
    "trace_span",
    "traced",
]
