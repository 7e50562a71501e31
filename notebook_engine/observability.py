import sys
import logging
import os
from typing import Optional

import structlog

# OpenTelemetry imports
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource

_configured = False


def add_otel_trace_info(logger, method_name, event_dict):
    """
    A structlog processor to add OpenTelemetry trace and span IDs to logs.
    """
    span = trace.get_current_span()
    if span != trace.INVALID_SPAN:
        event_dict['trace_id'] = f"0x{span.get_span_context().trace_id:032x}"
        event_dict['span_id'] = f"0x{span.get_span_context().span_id:016x}"
    return event_dict


def _configure_tracing():
    otel_endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not otel_endpoint:
        return
    resource = Resource(attributes={"service.name": "notebook-engine"})
    provider = TracerProvider(resource=resource)
    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=otel_endpoint))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    print(f"[OTEL] Tracing enabled. Exporting to {otel_endpoint}", file=sys.stderr)


def configure_logging(level: str = "INFO", json_output: Optional[bool] = None):
    """
    Configures structured logging on stderr with OpenTelemetry integration.

    Args:
        level: Minimum stdlib log level name
        json_output: Force JSON (True) or console (False) rendering;
            defaults to console on a TTY and JSON otherwise
    """
    global _configured
    if not _configured:
        _configure_tracing()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        add_otel_trace_info,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output is None:
        json_output = not sys.stderr.isatty()
    if json_output:
        processors = shared_processors + [structlog.processors.JSONRenderer()]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (jupyter_client, traitlets) to the same stream
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())

    _configured = True
    return structlog.get_logger()


def get_logger(name=None):
    return structlog.get_logger(name)


def get_tracer(name=None):
    """Returns an OpenTelemetry tracer instance."""
    return trace.get_tracer(name if name else __name__)
