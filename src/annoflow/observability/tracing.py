from __future__ import annotations

"""
annoflow.observability.tracing
==============================

OpenTelemetry instrumentation.

- `span()` opens a span around a block (task instances, compile, collect).
  Without a configured tracer provider the OpenTelemetry API hands out
  non-recording spans, so instrumentation costs next to nothing.
- `trace()` decorates a sync or async callable with a span.
- `setup_tracing()` installs an SDK tracer provider, optionally exporting
  through a caller-supplied span exporter.
"""

import functools
import inspect
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar, cast

from opentelemetry import trace as _otel_trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

from ..core.logging import get_logger

__all__ = ["setup_tracing", "span", "trace"]

_log = get_logger("observability.tracing")
_F = TypeVar("_F", bound=Callable[..., Any])


def setup_tracing(*, service_name: str = "annoflow", exporter: SpanExporter | None = None) -> TracerProvider:
    """Configure the global tracer provider; returns it so callers can flush/shutdown."""
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    _otel_trace.set_tracer_provider(provider)
    _log.info("tracing configured", event="tracing.setup", service=service_name, exporter=type(exporter).__name__)
    return provider


@contextmanager
def span(name: str, **attributes: Any) -> Iterator[Any]:
    tracer = _otel_trace.get_tracer("annoflow")
    attrs = {k: str(v) for k, v in attributes.items() if v is not None}
    with tracer.start_as_current_span(name, attributes=attrs) as s:
        yield s


def trace(name: str) -> Callable[[_F], _F]:
    """Decorator: run the sync or async callable inside a span named `name`."""

    def _decorator(func: _F) -> _F:
        tracer = _otel_trace.get_tracer("annoflow")

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args: Any, **kwargs: Any):  # type: ignore[misc]
                with tracer.start_as_current_span(name):
                    return await func(*args, **kwargs)

            return cast(_F, _aw)

        @functools.wraps(func)
        def _sw(*args: Any, **kwargs: Any):  # type: ignore[misc]
            with tracer.start_as_current_span(name):
                return func(*args, **kwargs)

        return cast(_F, _sw)

    return _decorator
