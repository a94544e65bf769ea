"""
OpenTelemetry tracing for the ProxySQL agent.

Tracing is off unless `otel.enabled` is set; with it off every span comes from
the API's no-op tracer, so instrumented code pays almost nothing.
"""

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import SpanKind, Status, StatusCode

from proxysql_agent import __version__
from proxysql_agent.core.config import OtelConfig

logger = logging.getLogger(__name__)

TRACER_NAME = "proxysql-agent"

_tracer_provider: TracerProvider | None = None


def configure_tracing(config: OtelConfig) -> TracerProvider | None:
    """
    Configure OpenTelemetry tracing.

    Returns:
        Configured TracerProvider or None if disabled
    """
    global _tracer_provider

    if not config.enabled:
        logger.debug("OpenTelemetry tracing disabled")
        return None

    if _tracer_provider is not None:
        logger.debug("TracerProvider already configured")
        return _tracer_provider

    resource = Resource.create({
        SERVICE_NAME: config.service_name,
        SERVICE_VERSION: __version__,
    })

    exporter = OTLPSpanExporter(endpoint=config.endpoint, insecure=config.insecure)
    if config.insecure:
        logger.warning("OTLP exporter using insecure connection")

    _tracer_provider = TracerProvider(resource=resource)
    _tracer_provider.add_span_processor(BatchSpanProcessor(exporter))

    if config.console:
        _tracer_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(_tracer_provider)

    logger.info(
        "OpenTelemetry tracing configured",
        extra={"extra_fields": {"endpoint": config.endpoint, "insecure": config.insecure}},
    )
    return _tracer_provider


def get_tracer(name: str = TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the global provider (no-op when unconfigured)."""
    return trace.get_tracer_provider().get_tracer(name, __version__)


def shutdown_tracing() -> None:
    """Shutdown tracing and flush pending spans."""
    global _tracer_provider

    if _tracer_provider is not None:
        logger.info("Shutting down OpenTelemetry tracer")
        _tracer_provider.shutdown()
        _tracer_provider = None


def traced(
    name: str | None = None,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: dict | None = None,
):
    """
    Decorator to trace async functions.

    Example:
        @traced("reconcile.join")
        async def join(self, member):
            ...
    """

    def decorator(func: Callable) -> Callable:
        span_name = name or f"{func.__module__}.{func.__name__}"

        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            tracer = get_tracer()

            with tracer.start_as_current_span(span_name, kind=kind) as span:
                if attributes:
                    for k, v in attributes.items():
                        span.set_attribute(k, str(v))

                span.set_attribute("code.function", func.__name__)
                span.set_attribute("code.namespace", func.__module__)

                try:
                    result = await func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        return wrapper

    return decorator


@asynccontextmanager
async def trace_span(name: str, kind: SpanKind = SpanKind.INTERNAL, **attributes):
    """
    Context manager for tracing code blocks.

    Example:
        async with trace_span("shutdown.sequence", identity="proxysql-0"):
            await run_steps()
    """
    tracer = get_tracer()

    with tracer.start_as_current_span(name, kind=kind) as span:
        for k, v in attributes.items():
            span.set_attribute(k, str(v))

        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise
        else:
            span.set_status(Status(StatusCode.OK))


def add_span_event(name: str, attributes: dict | None = None) -> None:
    """Add event to the current active span."""
    span = trace.get_current_span()
    if span.is_recording():
        attrs = {k: str(v) for k, v in (attributes or {}).items()}
        span.add_event(name, attributes=attrs)
