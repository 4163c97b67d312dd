"""Tracing for memoria: OTLP export setup and the ``memory_span`` helper.

Spans are always created through the global OTel API, so they cost nothing
until a real provider is installed by :func:`init_telemetry`.
"""

from __future__ import annotations

import functools
import logging
import os
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "memoria"
_SPAN_PREFIX = "memoria."

_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Export spans over OTLP/gRPC when ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set.

    The provider is installed once per process; repeated calls (several
    agents in one process, or CLI commands in tests) keep the first one.

    Args:
        service_name: ``service.name`` resource attribute, e.g.
            ``"memoria-assistant"``.

    Returns:
        A tracer for *service_name*; a no-op tracer when export is off.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.debug("No OTLP endpoint configured; memoria spans are not exported")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        logger.debug("Span export already set up; %s shares the existing provider", service_name)
        return trace.get_tracer(service_name)

    # the exporter comes from the optional ``otlp`` extra
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Exporting memoria spans for %s to %s", service_name, endpoint)
    return trace.get_tracer(service_name)


class memory_span:
    """Span named ``memoria.<name>`` around a memory operation.

    Keyword arguments become ``memoria.<key>`` attributes; None values are
    skipped.  An exception leaving the block marks the span ERROR and is
    recorded on it, then propagates unchanged.

    Works as a context manager::

        with memory_span("retrieval.stage", stage="basic") as span:
            span.set_attribute("memoria.results", len(found))

    and as a decorator for coroutine functions::

        @memory_span("batch.store_many")
        async def store_many(self, items): ...
    """

    def __init__(self, name: str, **attributes: Any) -> None:
        self._name = name
        self._attributes = attributes
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        span = trace.get_tracer(_TRACER_NAME).start_span(_SPAN_PREFIX + self._name)
        for key, value in self._attributes.items():
            if value is not None:
                span.set_attribute(_SPAN_PREFIX + key, value)
        self._span = span
        self._token = trace.context_api.attach(trace.set_span_in_context(span))
        return span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        span, self._span = self._span, None
        if span is None:
            return
        if exc_val is not None:
            span.set_status(trace.StatusCode.ERROR, str(exc_val))
            span.record_exception(exc_val)
        span.end()
        token, self._token = self._token, None
        if token is not None:
            trace.context_api.detach(token)

    def __call__(self, func):  # noqa: ANN001, ANN204
        name, attributes = self._name, self._attributes

        @functools.wraps(func)
        async def _traced(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            # a fresh instance per call keeps concurrent invocations apart
            with memory_span(name, **attributes):
                return await func(*args, **kwargs)

        return _traced
