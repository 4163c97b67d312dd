"""Tests for telemetry initialisation and the memory_span wrapper."""

from __future__ import annotations

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from memoria.core.telemetry import init_telemetry, memory_span

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    """Fully reset the OpenTelemetry global tracer provider state."""
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None


@pytest.fixture(autouse=True)
def otel_provider():
    """Set up an in-memory TracerProvider for every test, then tear down."""
    _reset_otel_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_otel_global_state()


class TestInitTelemetry:
    def test_noop_without_endpoint(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        tracer = init_telemetry("memoria-test")
        assert tracer is not None


class TestMemorySpanContextManager:
    def test_name_and_attributes(self, otel_provider):
        with memory_span("retrieval.stage", stage="basic", skipped=None):
            pass
        (span,) = otel_provider.get_finished_spans()
        assert span.name == "memoria.retrieval.stage"
        assert span.attributes["memoria.stage"] == "basic"
        assert "memoria.skipped" not in span.attributes

    def test_error_recorded_and_reraised(self, otel_provider):
        with pytest.raises(RuntimeError):
            with memory_span("store"):
                raise RuntimeError("boom")
        (span,) = otel_provider.get_finished_spans()
        assert span.status.status_code == trace.StatusCode.ERROR
        assert span.events[0].name == "exception"

    def test_span_is_current_inside(self, otel_provider):
        with memory_span("store") as span:
            assert trace.get_current_span() is span
        assert trace.get_current_span() is not span


class TestMemorySpanDecorator:
    async def test_wraps_coroutine(self, otel_provider):
        @memory_span("batch.store_many", operation="store")
        async def work(x):
            return x * 2

        assert await work(21) == 42
        (span,) = otel_provider.get_finished_spans()
        assert span.name == "memoria.batch.store_many"
        assert span.attributes["memoria.operation"] == "store"

    async def test_each_call_gets_its_own_span(self, otel_provider):
        @memory_span("op")
        async def work():
            return None

        await work()
        await work()
        spans = otel_provider.get_finished_spans()
        assert len(spans) == 2
        assert spans[0].context.span_id != spans[1].context.span_id
