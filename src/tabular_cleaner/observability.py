"""
OpenTelemetry tracing and structlog logging setup.
"""

import logging
import sys
from typing import Optional

import structlog
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)

logger = structlog.get_logger(__name__)


def setup_observability(
    service_name: str = "tabular-cleaner",
    console_export: bool = False,
    exporter: Optional[SpanExporter] = None,
) -> TracerProvider:
    """
    Configure OpenTelemetry tracing for cleaning passes.

    The global tracer provider can only be installed once per process; when
    an SDK provider is already in place the exporters are added to it instead.

    Args:
        service_name: Name of the service for tracing
        console_export: Whether to print finished spans to stdout
        exporter: Extra span exporter, flushed synchronously (e.g. in-memory for tests)

    Returns:
        The active SDK TracerProvider
    """
    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        provider = current
    else:
        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        trace.set_tracer_provider(provider)

    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    if exporter is not None:
        provider.add_span_processor(SimpleSpanProcessor(exporter))

    logger.debug(
        "tracing_configured",
        service_name=service_name,
        console_export=console_export,
        reused_provider=provider is current,
    )
    return provider


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog on top of stdlib logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        json_output: Render JSON lines instead of the console format
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level, force=True)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
