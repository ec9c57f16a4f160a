"""Aggregated shutdown of telemetry providers.

Each provider that is successfully constructed registers one teardown
operation here. ``ShutdownRegistry.shutdown`` runs all of them exactly once,
in registration order, and reports every failure together.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from ..exceptions import DeadlineExceededError, TeardownError, TelemetryError, join_errors

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_MILLIS = 30_000


class Deadline:
    """Deadline and cancellation signal handed to every teardown operation."""

    def __init__(self, expires_at: float | None = None):
        self._expires_at = expires_at
        self._cancelled = threading.Event()

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(time.monotonic() + seconds)

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        if self.cancelled:
            return True
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None if unbounded."""
        if self.cancelled:
            return 0.0
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def remaining_millis(self, default: int = _DEFAULT_TIMEOUT_MILLIS) -> int:
        """Remaining time in milliseconds, in the form the SDK flush calls take."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return int(remaining * 1000)

    def check(self, what: str) -> None:
        """Raise ``DeadlineExceededError`` if no time is left for ``what``."""
        if self.expired:
            raise DeadlineExceededError(what, cancelled=self.cancelled)


Teardown = Callable[[Deadline], None]


def _teardown_name(teardown: Teardown) -> str:
    return getattr(teardown, "__qualname__", None) or repr(teardown)


class ShutdownRegistry:
    """Ordered collection of teardown operations, drained exactly once.

    The registry starts open. The first call to :meth:`shutdown` takes every
    registered operation and moves the registry to the drained state; later
    calls run nothing and return successfully. Teardowns run in the order
    they were registered, not in reverse.
    """

    def __init__(self) -> None:
        self._teardowns: list[Teardown] = []
        self._drained = False
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._teardowns)

    @property
    def drained(self) -> bool:
        return self._drained

    def register(self, teardown: Teardown) -> None:
        """Append a teardown operation.

        Raises:
            TelemetryError: If the registry has already been drained.
        """
        with self._lock:
            if self._drained:
                raise TelemetryError("Cannot register a teardown after shutdown")
            self._teardowns.append(teardown)

    def shutdown(self, deadline: Deadline | None = None) -> None:
        """Run every registered teardown, continuing past failures.

        Args:
            deadline: Deadline passed to each teardown. Defaults to no deadline.

        Raises:
            CombinedError: If one or more teardowns failed. Each failure is a
                ``TeardownError`` member of the group.
        """
        with self._lock:
            teardowns, self._teardowns = self._teardowns, []
            self._drained = True

        if deadline is None:
            deadline = Deadline.never()

        errors: list[Exception] = []
        for teardown in teardowns:
            try:
                teardown(deadline)
            except TeardownError as exc:
                errors.append(exc)
            except Exception as exc:
                error = TeardownError(_teardown_name(teardown), exc)
                error.__cause__ = exc
                errors.append(error)

        if errors:
            logger.debug("%d of %d teardowns failed", len(errors), len(teardowns))
        error = join_errors(*errors, message="telemetry shutdown failed")
        if error is not None:
            raise error
