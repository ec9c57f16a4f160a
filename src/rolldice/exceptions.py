"""Error types raised while bootstrapping and tearing down telemetry."""

from __future__ import annotations

from typing import Iterable


class TelemetryError(Exception):
    """Base class for telemetry lifecycle errors."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ConstructionError(TelemetryError):
    """A provider for one signal could not be constructed."""

    def __init__(self, signal: str, reason: BaseException | str):
        super().__init__(f"Failed to construct {signal} provider: {reason}")
        self.signal = signal


class TeardownError(TelemetryError):
    """A registered teardown operation failed."""

    def __init__(self, name: str, reason: BaseException | str):
        super().__init__(f"Failed to shut down {name}: {reason}")
        self.name = name


class DeadlineExceededError(TeardownError):
    """The shutdown deadline expired (or was cancelled) before a teardown ran."""

    def __init__(self, name: str, cancelled: bool = False):
        reason = "context canceled" if cancelled else "deadline exceeded"
        super().__init__(name, reason)
        self.cancelled = cancelled


class CombinedError(ExceptionGroup):
    """One or more independent telemetry failures reported together."""

    def derive(self, excs):
        return CombinedError(self.message, excs)


def _flatten(errors: Iterable[Exception | None]) -> list[Exception]:
    flat: list[Exception] = []
    for error in errors:
        if error is None:
            continue
        if isinstance(error, CombinedError):
            flat.extend(_flatten(error.exceptions))
        else:
            flat.append(error)
    return flat


def join_errors(
    *errors: Exception | None,
    message: str = "telemetry errors",
) -> CombinedError | None:
    """Combine errors into a single ``CombinedError``.

    ``None`` entries are dropped and nested ``CombinedError`` values are
    flattened so every underlying error is a direct member of the result.

    Returns:
        The combined error, or None if there was nothing to combine.
    """
    flat = _flatten(errors)
    if not flat:
        return None
    return CombinedError(message, flat)
