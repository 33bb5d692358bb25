from __future__ import annotations

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from annoflow.observability.tracing import setup_tracing, span, trace

pytestmark = pytest.mark.unit


@pytest.fixture(scope="module")
def spans():
    exporter = InMemorySpanExporter()
    provider = setup_tracing(service_name="annoflow-test", exporter=exporter)

    def finished():
        provider.force_flush()
        return exporter.get_finished_spans()

    yield finished
    provider.shutdown()


@trace("test.sync")
def _sync(x: int) -> int:
    return x + 1


@trace("test.async")
async def _async(x: int) -> int:
    with span("test.inner", node="blast_nr", key=None):
        return x * 2


@pytest.mark.asyncio
async def test_trace_wraps_sync_and_async_callables(spans):
    assert _sync(1) == 2
    assert await _async(3) == 6
    assert _async.__name__ == "_async"

    by_name = {s.name: s for s in spans()}
    assert {"test.sync", "test.async", "test.inner"} <= set(by_name)
    inner = by_name["test.inner"]
    assert inner.parent is not None
    assert inner.parent.span_id == by_name["test.async"].context.span_id
    # None attributes are dropped, the rest are stringified
    assert dict(inner.attributes) == {"node": "blast_nr"}
    assert by_name["test.sync"].resource.attributes["service.name"] == "annoflow-test"
