"""Command line utilities for the dice service."""

from __future__ import annotations

import logging
from pathlib import Path

import typer
import uvicorn

from .config import AppConfig, load_yaml_config
from .exceptions import CombinedError, join_errors
from .server import create_root_app
from .telemetry import Deadline, init_telemetry, shutdown_telemetry
from .telemetry.logging import configure_otel_logging
from .telemetry.metrics import ResourceMetricsCollector, run_cpu_gauge_demo

app = typer.Typer(help="Roll dice over HTTP with OpenTelemetry instrumentation.")
logger = logging.getLogger("rolldice")

_HOST_OPTION = typer.Option(None, "--host", help="Interface to bind (default 0.0.0.0)")
_PORT_OPTION = typer.Option(None, "--port", "-p", help="Port to bind (default 8080)")
_LOG_LEVEL_OPTION = typer.Option("debug", "--log-level", help="Console and uvicorn log level")
_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    help="Path to a YAML configuration file",
)
_ENDPOINT_OPTION = typer.Option(
    None,
    "--endpoint",
    help="OTLP gRPC endpoint. Defaults to localhost:4317.",
)


def _build_config(
    config_path: Path | None,
    host: str | None,
    port: int | None,
) -> AppConfig:
    config = load_yaml_config(config_path) if config_path is not None else AppConfig()
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    config.telemetry.with_env_overrides()
    try:
        config.check_validity()
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    return config


def _report(error: CombinedError) -> None:
    logger.error("%s", error.message)
    for exc in error.exceptions:
        logger.error("  %s", exc)


def _serve(config: AppConfig, log_level: str) -> None:
    """Run uvicorn until it is interrupted (SIGINT/SIGTERM)."""
    uvicorn.run(
        create_root_app(config),
        host=config.host,
        port=config.port,
        log_level=log_level.lower(),
    )


@app.command()
def serve(
    host: str | None = _HOST_OPTION,
    port: int | None = _PORT_OPTION,
    log_level: str = _LOG_LEVEL_OPTION,
    config_path: Path | None = _CONFIG_OPTION,
) -> None:
    """Start the HTTP server. Telemetry is flushed and shut down when it stops."""
    config = _build_config(config_path, host, port)
    configure_otel_logging(log_level)

    try:
        init_telemetry(config.telemetry)
    except CombinedError as exc:
        _report(exc)
        raise typer.Exit(code=1) from exc
    ResourceMetricsCollector.start()

    serve_error: Exception | None = None
    try:
        logger.info("HTTP server is listening on %s:%s", config.host, config.port)
        _serve(config, log_level)
    except SystemExit as exc:
        # uvicorn exits the process when it cannot start (e.g. port in use).
        serve_error = RuntimeError(f"HTTP server exited with status {exc.code}")
    except Exception as exc:
        serve_error = exc

    shutdown_error: CombinedError | None = None
    try:
        shutdown_telemetry(Deadline.after(config.telemetry.shutdown_timeout))
    except CombinedError as exc:
        shutdown_error = exc

    error = join_errors(serve_error, shutdown_error, message="rolldice exited with errors")
    if error is not None:
        _report(error)
        raise typer.Exit(code=1)


@app.command("cpu-gauge")
def cpu_gauge(
    endpoint: str | None = _ENDPOINT_OPTION,
    log_level: str = _LOG_LEVEL_OPTION,
) -> None:
    """Export one cpuUsage gauge observation over OTLP/gRPC and exit."""
    configure_otel_logging(log_level)
    try:
        run_cpu_gauge_demo(endpoint)
    except CombinedError as exc:
        _report(exc)
        raise typer.Exit(code=1) from exc


def main() -> None:
    app()


if __name__ == "__main__":
    main()
