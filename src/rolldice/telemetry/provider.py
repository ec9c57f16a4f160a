"""OpenTelemetry provider bootstrap.

Builds the propagator, tracer, meter and logger providers in that order,
publishes each one globally and registers its teardown with a
:class:`ShutdownRegistry`. If any step fails, everything registered so far is
shut down and the failure is reported together with any rollback errors.

Environment variables (override file configuration):
- OTEL_SDK_DISABLED: "true" disables telemetry entirely
- OTEL_SERVICE_NAME: service name resource attribute
- OTEL_TRACES_EXPORTER / OTEL_METRICS_EXPORTER / OTEL_LOGS_EXPORTER:
  "otlp" (default), "console" or "none"
- OTEL_EXPORTER_OTLP_ENDPOINT: base OTLP endpoint
- OTEL_EXPORTER_OTLP_PROTOCOL: "http/protobuf" (default) or "grpc"
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from opentelemetry import metrics, trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import (
    BatchLogRecordProcessor,
    ConsoleLogRecordExporter,
    LogRecordExporter,
)
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import (
    SERVICE_INSTANCE_ID,
    SERVICE_NAME,
    SERVICE_VERSION,
    Resource,
)
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from ..exceptions import CombinedError, ConstructionError, DeadlineExceededError, TeardownError
from .shutdown import Deadline, ShutdownRegistry, Teardown

logger = logging.getLogger(__name__)

EXPORTER_KINDS = ("otlp", "console", "none")
OTLP_PROTOCOLS = ("http/protobuf", "grpc")

_SIGNAL_PATHS = {"traces": "v1/traces", "metrics": "v1/metrics", "logs": "v1/logs"}


@dataclass
class TelemetryConfig:
    """Settings for the telemetry pipelines of the service."""

    enabled: bool = True
    service_name: str = "dice"
    service_version: str = "1.0.0"
    service_instance_id: str = "abcdef12345"
    resource_attributes: dict[str, str] = field(default_factory=dict)
    otlp_endpoint: str | None = None
    otlp_protocol: str = "http/protobuf"
    traces_exporter: str = "otlp"
    metrics_exporter: str = "otlp"
    logs_exporter: str = "otlp"
    # Seconds (SDK default is 5s)
    span_batch_timeout: float = 1.0
    metric_export_interval: float = 60.0
    log_level: str = "DEBUG"
    shutdown_timeout: float = 10.0

    def with_env_overrides(self) -> "TelemetryConfig":
        """Apply OTEL_* environment variables on top of this configuration."""
        disabled = os.getenv("OTEL_SDK_DISABLED", "").strip().lower()
        if disabled in ("true", "1", "yes"):
            self.enabled = False

        service_name = os.getenv("OTEL_SERVICE_NAME")
        if service_name:
            self.service_name = service_name

        for signal in ("traces", "metrics", "logs"):
            value = os.getenv(f"OTEL_{signal.upper()}_EXPORTER")
            if value:
                setattr(self, f"{signal}_exporter", value.strip().lower())

        endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        if endpoint:
            self.otlp_endpoint = endpoint.strip()

        protocol = os.getenv("OTEL_EXPORTER_OTLP_PROTOCOL")
        if protocol:
            self.otlp_protocol = protocol.strip().lower()
        return self

    def check_validity(self) -> None:
        for signal in ("traces", "metrics", "logs"):
            kind = getattr(self, f"{signal}_exporter")
            if kind not in EXPORTER_KINDS:
                raise ValueError(
                    f"Unsupported {signal} exporter '{kind}'. "
                    f"Expected one of: {', '.join(EXPORTER_KINDS)}."
                )
        if self.otlp_protocol not in OTLP_PROTOCOLS:
            raise ValueError(
                f"Unsupported OTLP protocol '{self.otlp_protocol}'. "
                f"Expected one of: {', '.join(OTLP_PROTOCOLS)}."
            )
        if self.span_batch_timeout <= 0 or self.metric_export_interval <= 0:
            raise ValueError("Export intervals must be positive.")


@dataclass
class TelemetryProviders:
    """Providers built by :func:`init_telemetry` and the registry that owns them."""

    resource: Resource
    registry: ShutdownRegistry = field(default_factory=ShutdownRegistry)
    tracer_provider: TracerProvider | None = None
    meter_provider: MeterProvider | None = None
    logger_provider: LoggerProvider | None = None
    log_handler: logging.Handler | None = None

    def shutdown(self, deadline: Deadline | None = None) -> None:
        """Shut down every provider. Safe to call more than once."""
        self.registry.shutdown(deadline)


_STATE: dict[str, TelemetryProviders | None] = {"providers": None}


def build_propagator() -> CompositePropagator:
    """W3C trace context and baggage, in that order."""
    return CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()])


def build_resource(config: TelemetryConfig) -> Resource:
    attributes = {
        SERVICE_NAME: config.service_name,
        SERVICE_VERSION: config.service_version,
        SERVICE_INSTANCE_ID: config.service_instance_id,
    }
    attributes.update(config.resource_attributes)
    return Resource.create(attributes)


def _use_grpc(config: TelemetryConfig) -> bool:
    return config.otlp_protocol == "grpc"


def _http_endpoint(config: TelemetryConfig, signal: str) -> str | None:
    if not config.otlp_endpoint:
        return None
    return f"{config.otlp_endpoint.rstrip('/')}/{_SIGNAL_PATHS[signal]}"


def _build_span_exporter(config: TelemetryConfig) -> SpanExporter | None:
    if config.traces_exporter == "none":
        return None
    if config.traces_exporter == "console":
        return ConsoleSpanExporter()
    if _use_grpc(config):
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        return OTLPSpanExporter(endpoint=config.otlp_endpoint)
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
        OTLPSpanExporter as HTTPSpanExporter,
    )

    return HTTPSpanExporter(endpoint=_http_endpoint(config, "traces"))


def _build_metric_exporter(config: TelemetryConfig) -> MetricExporter | None:
    if config.metrics_exporter == "none":
        return None
    if config.metrics_exporter == "console":
        return ConsoleMetricExporter()
    if _use_grpc(config):
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

        return OTLPMetricExporter(endpoint=config.otlp_endpoint)
    from opentelemetry.exporter.otlp.proto.http.metric_exporter import (
        OTLPMetricExporter as HTTPMetricExporter,
    )

    return HTTPMetricExporter(endpoint=_http_endpoint(config, "metrics"))


def _build_log_exporter(config: TelemetryConfig) -> LogRecordExporter | None:
    if config.logs_exporter == "none":
        return None
    if config.logs_exporter == "console":
        return ConsoleLogRecordExporter()
    if _use_grpc(config):
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter

        return OTLPLogExporter(endpoint=config.otlp_endpoint)
    from opentelemetry.exporter.otlp.proto.http._log_exporter import (
        OTLPLogExporter as HTTPLogExporter,
    )

    return HTTPLogExporter(endpoint=_http_endpoint(config, "logs"))


def build_tracer_provider(config: TelemetryConfig, resource: Resource) -> TracerProvider:
    """Tracer provider with a batching span processor."""
    tracer_provider = TracerProvider(resource=resource, shutdown_on_exit=False)
    exporter = _build_span_exporter(config)
    if exporter is not None:
        tracer_provider.add_span_processor(
            BatchSpanProcessor(
                exporter,
                schedule_delay_millis=config.span_batch_timeout * 1000,
            )
        )
    return tracer_provider


def build_meter_provider(config: TelemetryConfig, resource: Resource) -> MeterProvider:
    """Meter provider with a periodic exporting reader."""
    exporter = _build_metric_exporter(config)
    readers = []
    if exporter is not None:
        readers.append(
            PeriodicExportingMetricReader(
                exporter,
                export_interval_millis=config.metric_export_interval * 1000,
            )
        )
    return MeterProvider(resource=resource, metric_readers=readers, shutdown_on_exit=False)


def build_logger_provider(config: TelemetryConfig, resource: Resource) -> LoggerProvider:
    """Logger provider with a batching log record processor."""
    logger_provider = LoggerProvider(resource=resource, shutdown_on_exit=False)
    exporter = _build_log_exporter(config)
    if exporter is not None:
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(exporter))
    return logger_provider


def _not_sdk_internal(record: logging.LogRecord) -> bool:
    # SDK diagnostics must not be fed back into the pipeline that emitted them.
    return not record.name.startswith("opentelemetry")


def _install_log_bridge(logger_provider: LoggerProvider, log_level: str) -> logging.Handler:
    """Forward stdlib logging records to the logger provider.

    Records below ``log_level`` are dropped before they reach the provider.
    """
    level = getattr(logging, log_level.upper(), logging.DEBUG)
    handler = LoggingHandler(level=level, logger_provider=logger_provider)
    handler.addFilter(_not_sdk_internal)
    logging.getLogger().addHandler(handler)
    return handler


def _flush_then_shutdown(name: str, provider: TracerProvider | LoggerProvider) -> Teardown:
    def teardown(deadline: Deadline) -> None:
        if deadline.expired:
            # Unflushed data is dropped but the worker threads still stop.
            provider.shutdown()
            raise DeadlineExceededError(name, cancelled=deadline.cancelled)
        flushed = provider.force_flush(deadline.remaining_millis())
        provider.shutdown()
        if flushed is False:
            raise TeardownError(name, "flush did not complete before the deadline")

    teardown.__qualname__ = name
    return teardown


def _meter_teardown(provider: MeterProvider) -> Teardown:
    def teardown(deadline: Deadline) -> None:
        if deadline.expired:
            provider.shutdown(timeout_millis=0)
            raise DeadlineExceededError("meter provider", cancelled=deadline.cancelled)
        provider.shutdown(timeout_millis=deadline.remaining_millis())

    teardown.__qualname__ = "meter provider"
    return teardown


def _logger_teardown(provider: LoggerProvider, handler: logging.Handler) -> Teardown:
    shutdown_provider = _flush_then_shutdown("logger provider", provider)

    def teardown(deadline: Deadline) -> None:
        logging.getLogger().removeHandler(handler)
        shutdown_provider(deadline)

    teardown.__qualname__ = "logger provider"
    return teardown


def _construction_failed(
    signal: str,
    exc: Exception,
    registry: ShutdownRegistry,
    deadline: Deadline | None,
    timeout: float,
) -> CombinedError:
    """Roll back already registered providers after ``signal`` failed to build."""
    if deadline is None:
        deadline = Deadline.after(timeout)
    error = ConstructionError(signal, exc)
    error.__cause__ = exc
    errors: list[Exception] = [error]
    try:
        registry.shutdown(deadline)
    except CombinedError as rollback:
        errors.extend(rollback.exceptions)
    logger.error("Telemetry initialization failed while building %s provider", signal)
    return CombinedError("telemetry initialization failed", errors)


def init_telemetry(
    config: TelemetryConfig | None = None,
    *,
    deadline: Deadline | None = None,
) -> TelemetryProviders:
    """Build and globally register the telemetry providers.

    Args:
        config: Telemetry settings. Defaults to ``TelemetryConfig()``.
        deadline: Deadline for rolling back partially built providers.
            Defaults to ``config.shutdown_timeout`` from the moment the
            rollback starts.

    Returns:
        The constructed providers. Call ``shutdown`` on them (or
        :func:`shutdown_telemetry`) before the process exits.

    Raises:
        CombinedError: If a provider could not be built. Contains the
            ``ConstructionError`` and any errors raised while shutting down
            the providers that had already been registered.
    """
    current = _STATE["providers"]
    # Providers from a disabled init hold nothing and may be replaced.
    if current is not None and current.tracer_provider is not None and not current.registry.drained:
        logger.warning("Telemetry already initialized; reusing existing providers")
        return current

    config = config or TelemetryConfig()
    config.check_validity()

    providers = TelemetryProviders(resource=build_resource(config))
    _STATE["providers"] = providers
    if not config.enabled:
        logger.info("Telemetry disabled for service %s", config.service_name)
        return providers

    registry = providers.registry
    set_global_textmap(build_propagator())

    try:
        tracer_provider = build_tracer_provider(config, providers.resource)
    except Exception as exc:
        _STATE["providers"] = None
        raise _construction_failed(
            "traces", exc, registry, deadline, config.shutdown_timeout
        ) from exc
    registry.register(_flush_then_shutdown("tracer provider", tracer_provider))
    trace.set_tracer_provider(tracer_provider)
    providers.tracer_provider = tracer_provider

    try:
        meter_provider = build_meter_provider(config, providers.resource)
    except Exception as exc:
        _STATE["providers"] = None
        raise _construction_failed(
            "metrics", exc, registry, deadline, config.shutdown_timeout
        ) from exc
    registry.register(_meter_teardown(meter_provider))
    metrics.set_meter_provider(meter_provider)
    providers.meter_provider = meter_provider

    try:
        logger_provider = build_logger_provider(config, providers.resource)
    except Exception as exc:
        _STATE["providers"] = None
        raise _construction_failed(
            "logs", exc, registry, deadline, config.shutdown_timeout
        ) from exc
    handler = _install_log_bridge(logger_provider, config.log_level)
    registry.register(_logger_teardown(logger_provider, handler))
    set_logger_provider(logger_provider)
    providers.logger_provider = logger_provider
    providers.log_handler = handler

    logger.info("OpenTelemetry configured for service %s", config.service_name)
    return providers


def shutdown_telemetry(deadline: Deadline | None = None) -> None:
    """Shut down the providers created by :func:`init_telemetry`.

    Raises:
        CombinedError: If any provider failed to shut down.
    """
    providers = _STATE["providers"]
    _STATE["providers"] = None
    if providers is None:
        return
    providers.shutdown(deadline)
