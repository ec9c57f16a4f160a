"""Logging configuration with OpenTelemetry integration.

Configures Python logging to include trace context. Records are also
forwarded to the OpenTelemetry logger provider by the handler that
``init_telemetry`` installs, so every record goes both to the console and to
the telemetry pipeline.
"""

from __future__ import annotations

import logging

from opentelemetry import trace

LOG_FORMAT = (
    "%(asctime)s %(levelname)s [%(name)s] "
    "[trace_id=%(otelTraceID)s span_id=%(otelSpanID)s] "
    "%(message)s"
)


class TraceContextFilter(logging.Filter):
    """Attach the current trace and span IDs to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.otelTraceID = f"{context.trace_id:032x}"
            record.otelSpanID = f"{context.span_id:016x}"
        else:
            record.otelTraceID = "0" * 32
            record.otelSpanID = "0" * 16
        return True


class OTelFormatter(logging.Formatter):
    """Formatter that tolerates records which bypassed ``TraceContextFilter``."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "otelTraceID"):
            record.otelTraceID = "0" * 32
        if not hasattr(record, "otelSpanID"):
            record.otelSpanID = "0" * 16
        return super().format(record)


def configure_otel_logging(log_level: str = "INFO") -> logging.Handler:
    """Configure console logging with trace correlation.

    Only adds a handler, does not remove existing handlers.

    Args:
        log_level: Logging level (default: INFO).

    Returns:
        The console handler that was added to the root logger.
    """
    handler = logging.StreamHandler()
    handler.addFilter(TraceContextFilter())
    handler.setFormatter(OTelFormatter(LOG_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.addHandler(handler)
    return handler
