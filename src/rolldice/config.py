"""Configuration helpers for the dice service."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .telemetry import TelemetryConfig


@dataclass
class AppConfig:
    """Runtime configuration for the HTTP service."""

    host: str = "0.0.0.0"
    port: int = 8080
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)

    def check_validity(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError(f"Port must be between 1 and 65535, got {self.port}.")
        self.telemetry.check_validity()


def _telemetry_from_mapping(data: dict[str, Any]) -> TelemetryConfig:
    known = {item.name for item in fields(TelemetryConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown telemetry settings: {', '.join(unknown)}")
    return TelemetryConfig(**data)


def load_yaml_config(config_path: Path) -> AppConfig:
    """Load an AppConfig from a YAML file.

    The file may contain ``host``, ``port`` and a ``telemetry`` mapping whose
    keys match :class:`TelemetryConfig` fields. Missing keys keep their
    defaults.
    """
    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping.")

    config = AppConfig()
    if "host" in data:
        config.host = str(data["host"])
    if "port" in data:
        config.port = int(data["port"])
    telemetry = data.get("telemetry") or {}
    if not isinstance(telemetry, dict):
        raise ValueError("'telemetry' must be a mapping.")
    config.telemetry = _telemetry_from_mapping(telemetry)
    return config
