"""OpenTelemetry metrics instruments for the memory engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around and recordings are silent no-ops
until a real provider is installed.

Instruments
-----------
  memoria.retrieval.stage_total   Counter  (label: stage)
      Retrieval calls answered by each cascade stage.

  memoria.retrieval.failures_total  Counter  (label: stage)
      Cascade stages that raised and were skipped.

  memoria.cache.events_total      Counter  (label: event=hit|miss|eviction|expiration)
      Cache lookups and removals.

  memoria.batch.items_total       Counter  (labels: operation, outcome=success|failure)
      Items processed by bulk operations.

  memoria.batch.duration_ms       Histogram (label: operation)
      Wall time of bulk operations.

All instruments carry an ``agent`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "memoria"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise the global no-op provider
    is used.

    Args:
        service_name: Service name reported on exported metrics.

    Returns:
        A Meter instance bound to the global MeterProvider.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


class MemoryMetrics:
    """Lazily created instruments for one agent.

    Typical usage::

        _metrics = MemoryMetrics(agent_name="assistant")
        _metrics.retrieval_stage("learning_enhanced")
        _metrics.cache_event("hit")
    """

    def __init__(self, agent_name: str = "memoria") -> None:
        self._attrs = {"agent": agent_name}
        self.__stage_total: metrics.Counter | None = None
        self.__stage_failures: metrics.Counter | None = None
        self.__cache_events: metrics.Counter | None = None
        self.__batch_items: metrics.Counter | None = None
        self.__batch_duration: metrics.Histogram | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _stage_total(self) -> metrics.Counter:
        if self.__stage_total is None:
            self.__stage_total = get_meter().create_counter(
                name="memoria.retrieval.stage_total",
                description="Retrieval calls answered by each cascade stage",
                unit="calls",
            )
        return self.__stage_total

    @property
    def _stage_failures(self) -> metrics.Counter:
        if self.__stage_failures is None:
            self.__stage_failures = get_meter().create_counter(
                name="memoria.retrieval.failures_total",
                description="Cascade stages that raised and were skipped",
                unit="failures",
            )
        return self.__stage_failures

    @property
    def _cache_events(self) -> metrics.Counter:
        if self.__cache_events is None:
            self.__cache_events = get_meter().create_counter(
                name="memoria.cache.events_total",
                description="Cache hits, misses, evictions and expirations",
                unit="events",
            )
        return self.__cache_events

    @property
    def _batch_items(self) -> metrics.Counter:
        if self.__batch_items is None:
            self.__batch_items = get_meter().create_counter(
                name="memoria.batch.items_total",
                description="Items processed by bulk operations",
                unit="items",
            )
        return self.__batch_items

    @property
    def _batch_duration(self) -> metrics.Histogram:
        if self.__batch_duration is None:
            self.__batch_duration = get_meter().create_histogram(
                name="memoria.batch.duration_ms",
                description="Wall time of bulk operations in milliseconds",
                unit="ms",
            )
        return self.__batch_duration

    # -- recording helpers ----------------------------------------------------

    def retrieval_stage(self, stage: str) -> None:
        """Record that *stage* produced the final retrieval result."""
        self._stage_total.add(1, {**self._attrs, "stage": stage})

    def retrieval_stage_failed(self, stage: str) -> None:
        self._stage_failures.add(1, {**self._attrs, "stage": stage})

    def cache_event(self, event: str) -> None:
        self._cache_events.add(1, {**self._attrs, "event": event})

    def batch_items(self, operation: str, successful: int, failed: int) -> None:
        """Record the per-item outcome counts of one bulk operation."""
        if successful:
            self._batch_items.add(
                successful, {**self._attrs, "operation": operation, "outcome": "success"}
            )
        if failed:
            self._batch_items.add(
                failed, {**self._attrs, "operation": operation, "outcome": "failure"}
            )

    def record_batch_duration(self, operation: str, duration_ms: float) -> None:
        self._batch_duration.record(duration_ms, {**self._attrs, "operation": operation})
