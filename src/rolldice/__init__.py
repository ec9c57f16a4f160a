"""HTTP dice roller instrumented with OpenTelemetry traces, metrics and logs."""

__version__ = "1.0.0"
