"""OpenTelemetry integration for the dice service.

This module provides observability through Traces, Metrics, and Logs.
"""

from __future__ import annotations

from .provider import TelemetryConfig, TelemetryProviders, init_telemetry, shutdown_telemetry
from .shutdown import Deadline, ShutdownRegistry

__all__ = [
    "Deadline",
    "ShutdownRegistry",
    "TelemetryConfig",
    "TelemetryProviders",
    "init_telemetry",
    "shutdown_telemetry",
]
