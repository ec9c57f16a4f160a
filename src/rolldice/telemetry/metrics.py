"""Metrics utilities for the dice service.

Provides meter access, the service's metric instruments and observable
gauges for process resources.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable

import psutil
from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Meter, Observation
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

from .shutdown import Deadline, ShutdownRegistry

logger = logging.getLogger(__name__)

# Module-level meter cache
_meters: dict[str, Meter] = {}


def get_meter(name: str = "rolldice") -> Meter:
    """Get a meter instance by name.

    Args:
        name: Instrumentation scope name (typically module name).
    """
    if name not in _meters:
        _meters[name] = metrics.get_meter(name)
    return _meters[name]


class DiceMetrics:
    """Metric instruments recorded by the HTTP handlers."""

    _instance: "DiceMetrics | None" = None
    _lock = threading.Lock()

    def __init__(self, meter: Meter | None = None):
        meter = meter or get_meter("rolldice")

        self.rolls = meter.create_counter(
            "dice.rolls",
            description="The number of rolls by roll value",
            unit="{roll}",
        )

    def record_roll(self, value: int) -> None:
        self.rolls.add(1, {"roll.value": value})

    @classmethod
    def get_instance(cls) -> "DiceMetrics":
        """Get the singleton metrics instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance


def get_metrics() -> DiceMetrics:
    return DiceMetrics.get_instance()


class ResourceMetricsCollector:
    """Reports CPU and memory usage through observable gauges.

    The gauges are sampled by the meter provider's reader on every
    collection; nothing runs in the background here.
    """

    _instance: "ResourceMetricsCollector | None" = None
    _lock = threading.Lock()

    def __init__(self, meter: Meter | None = None):
        self._process = psutil.Process()
        self._setup_metrics(meter or get_meter("rolldice.resources"))

    def _setup_metrics(self, meter: Meter) -> None:
        meter.create_observable_gauge(
            "rolldice.resource.cpu.utilization_percent",
            callbacks=[self._cpu_utilization_callback],
            description="CPU utilization percentage",
            unit="%",
        )
        meter.create_observable_gauge(
            "rolldice.resource.memory.used_bytes",
            callbacks=[self._memory_used_callback],
            description="Memory used in bytes",
            unit="By",
        )
        meter.create_observable_gauge(
            "rolldice.resource.memory.utilization_percent",
            callbacks=[self._memory_utilization_callback],
            description="Memory utilization percentage",
            unit="%",
        )
        meter.create_observable_gauge(
            "rolldice.resource.process.memory_used_bytes",
            callbacks=[self._process_memory_callback],
            description="Process memory usage in bytes",
            unit="By",
        )

    def _cpu_utilization_callback(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(psutil.cpu_percent(interval=None))

    def _memory_used_callback(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(psutil.virtual_memory().used)

    def _memory_utilization_callback(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(psutil.virtual_memory().percent)

    def _process_memory_callback(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(self._process.memory_info().rss)

    @classmethod
    def start(cls) -> "ResourceMetricsCollector":
        """Start the resource metrics collector."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance


CPU_GAUGE_ATTRIBUTES = {"label": "value", "env-prod": True}


def cpu_usage_callback(options: CallbackOptions) -> Iterable[Observation]:
    """Observe system CPU usage, tagged with one attribute of each type."""
    yield Observation(int(psutil.cpu_percent(interval=None)), CPU_GAUGE_ATTRIBUTES)


def register_cpu_gauge(meter: Meter) -> None:
    meter.create_observable_gauge(
        "cpuUsage",
        callbacks=[cpu_usage_callback],
        description="CPU Usage in %",
    )


def run_cpu_gauge_demo(endpoint: str | None = None, timeout: float = 10.0) -> None:
    """Export a single ``cpuUsage`` observation over OTLP/gRPC.

    Builds a dedicated meter provider, registers the gauge and shuts the
    provider down, which collects and exports once.

    Raises:
        CombinedError: If the provider failed to shut down.
    """
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

    exporter = OTLPMetricExporter(endpoint=endpoint, insecure=True)
    meter_provider = MeterProvider(
        metric_readers=[PeriodicExportingMetricReader(exporter)],
        shutdown_on_exit=False,
    )
    registry = ShutdownRegistry()

    def shutdown_meter_provider(deadline: Deadline) -> None:
        meter_provider.shutdown(timeout_millis=deadline.remaining_millis())

    registry.register(shutdown_meter_provider)

    register_cpu_gauge(meter_provider.get_meter("rolldice.metrics.cpu_gauge"))
    logger.info("Exporting cpuUsage gauge to %s", endpoint or "the default OTLP endpoint")
    registry.shutdown(Deadline.after(timeout))
