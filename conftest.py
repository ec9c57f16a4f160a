import contextlib
import logging

import pytest
from opentelemetry import trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter


def _reset_once(holder) -> None:
    if holder is None:
        return
    with contextlib.suppress(AttributeError):
        holder._done = False


def _reset_otel_globals() -> None:
    """Forget globally registered providers so each test can install its own."""
    from opentelemetry._logs import _internal as logs_internal
    from opentelemetry.metrics import _internal as metrics_internal

    from rolldice.telemetry import metrics as dice_metrics
    from rolldice.telemetry import provider, tracing

    _reset_once(getattr(trace, "_TRACER_PROVIDER_SET_ONCE", None))
    _reset_once(getattr(metrics_internal, "_METER_PROVIDER_SET_ONCE", None))
    _reset_once(getattr(logs_internal, "_LOGGER_PROVIDER_SET_ONCE", None))
    trace._TRACER_PROVIDER = None
    metrics_internal._METER_PROVIDER = None
    logs_internal._LOGGER_PROVIDER = None

    proxy = getattr(metrics_internal, "_PROXY_METER_PROVIDER", None)
    if proxy is not None:
        with contextlib.suppress(AttributeError):
            proxy._real_meter_provider = None
        meters = getattr(proxy, "_meters", None)
        if hasattr(meters, "clear"):
            meters.clear()

    tracing._tracers.clear()
    dice_metrics._meters.clear()
    dice_metrics.DiceMetrics._instance = None
    dice_metrics.ResourceMetricsCollector._instance = None
    provider._STATE["providers"] = None


@pytest.fixture(autouse=True)
def otel_globals(monkeypatch):
    """Isolate OpenTelemetry global state and OTEL_* environment between tests."""
    for name in (
        "OTEL_SDK_DISABLED",
        "OTEL_SERVICE_NAME",
        "OTEL_TRACES_EXPORTER",
        "OTEL_METRICS_EXPORTER",
        "OTEL_LOGS_EXPORTER",
        "OTEL_EXPORTER_OTLP_ENDPOINT",
        "OTEL_EXPORTER_OTLP_PROTOCOL",
    ):
        monkeypatch.delenv(name, raising=False)
    root_handlers = list(logging.getLogger().handlers)
    _reset_otel_globals()
    yield
    from rolldice.telemetry import provider

    state = provider._STATE["providers"]
    if state is not None:
        with contextlib.suppress(Exception):
            state.shutdown()
    logging.getLogger().handlers[:] = root_handlers
    _reset_otel_globals()


@pytest.fixture
def span_exporter():
    """Globally registered tracer provider exporting to memory."""
    from opentelemetry.propagate import set_global_textmap

    from rolldice.telemetry.provider import build_propagator

    exporter = InMemorySpanExporter()
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(tracer_provider)
    set_global_textmap(build_propagator())
    yield exporter
    tracer_provider.shutdown()


@pytest.fixture
def metric_reader():
    """Globally registered meter provider read from memory."""
    from opentelemetry import metrics

    reader = InMemoryMetricReader()
    meter_provider = MeterProvider(metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)
    yield reader
    meter_provider.shutdown()
