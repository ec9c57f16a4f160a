"""Tracing utilities for the dice service.

Provides tracer access and context propagation utilities.
"""

from __future__ import annotations

import functools
import inspect
from typing import Any, Callable, TypeVar

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.propagate import extract, inject
from opentelemetry.trace import Span, StatusCode, Tracer

F = TypeVar("F", bound=Callable[..., Any])

# Module-level tracer cache
_tracers: dict[str, Tracer] = {}


def get_tracer(name: str = "rolldice") -> Tracer:
    """Get a tracer instance by name.

    Tracers obtained before ``init_telemetry`` runs are proxies that start
    delegating to the real provider once it is registered.

    Args:
        name: Instrumentation scope name (typically module name).
    """
    if name not in _tracers:
        _tracers[name] = trace.get_tracer(name)
    return _tracers[name]


def traced(
    name: str | None = None,
    tracer_name: str = "rolldice",
    attributes: dict[str, Any] | None = None,
) -> Callable[[F], F]:
    """Decorator to trace a function.

    Args:
        name: Span name. Defaults to function name.
        tracer_name: Name of the tracer to use.
        attributes: Static attributes to add to the span.

    Returns:
        Decorated function.
    """

    def decorator(func: F) -> F:
        span_name = name or func.__name__

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            tracer = get_tracer(tracer_name)
            with tracer.start_as_current_span(span_name, record_exception=False) as span:
                if attributes:
                    span.set_attributes(attributes)
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(StatusCode.ERROR)
                    raise

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            tracer = get_tracer(tracer_name)
            with tracer.start_as_current_span(span_name, record_exception=False) as span:
                if attributes:
                    span.set_attributes(attributes)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(StatusCode.ERROR)
                    raise

        if inspect.iscoroutinefunction(func):
            return async_wrapper  # type: ignore
        return sync_wrapper  # type: ignore

    return decorator


def inject_context(carrier: dict[str, str]) -> None:
    """Inject current trace context and baggage into a carrier dict.

    Uses the globally registered propagator, so outgoing requests carry
    ``traceparent`` and ``baggage`` headers.

    Args:
        carrier: Dictionary to inject context into.
    """
    inject(carrier)


def extract_context(carrier: dict[str, str]) -> Context:
    """Extract trace context from a carrier dict.

    Args:
        carrier: Dictionary containing trace context.
    """
    return extract(carrier)


def get_current_span() -> Span:
    """Get the current active span (a non-recording span if none is active)."""
    return trace.get_current_span()
