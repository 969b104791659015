"""Engine metrics: Prometheus collectors mirrored into OpenTelemetry instruments.

Each metric is declared once through ``MetricBridge``. Updates reach the
Prometheus collector immediately and an OTel instrument created on first use,
so a host may install its meter provider after terrasearch is imported.
"""

from __future__ import annotations

from collections.abc import Sequence
from contextlib import contextmanager
from dataclasses import dataclass
import time
from typing import TYPE_CHECKING, Any

from opentelemetry import metrics as otel_metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, generate_latest


if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.metrics import Meter
    from opentelemetry.sdk.metrics.export import MetricReader


LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0)

_COLLECTOR_TYPES = {"counter": Counter, "histogram": Histogram, "gauge": Gauge}

_meter_holder: dict[str, Any] = {"meter": None, "provider": None}


def init_metrics(
    service_name: str = "terrasearch",
    resource_attributes: dict[str, str] | None = None,
    metric_readers: Sequence[MetricReader] | None = None,
) -> MeterProvider:
    """Install the process-wide meter provider; later calls return the first one."""
    existing = _meter_holder["provider"]
    if existing is not None:
        return existing

    resource = Resource.create({"service.name": service_name, **(resource_attributes or {})})
    provider = MeterProvider(resource=resource, metric_readers=list(metric_readers or ()))
    otel_metrics.set_meter_provider(provider)
    _meter_holder.update(provider=provider, meter=provider.get_meter("terrasearch"))
    return provider


def _meter() -> Meter:
    if _meter_holder["meter"] is None:
        init_metrics()
    return _meter_holder["meter"]


@dataclass(frozen=True)
class _BoundMetric:
    bridge: MetricBridge
    labels: dict[str, str]

    def inc(self, amount: float = 1.0) -> None:
        self.bridge.inc(self.labels, amount)

    def observe(self, value: float) -> None:
        self.bridge.observe(self.labels, value)

    def set(self, value: float) -> None:
        self.bridge.set(self.labels, value)


class MetricBridge:
    """One metric exposed as a Prometheus collector and as an OTel instrument of the same name."""

    def __init__(
        self,
        kind: str,
        name: str,
        documentation: str,
        labelnames: Sequence[str],
        *,
        buckets: Sequence[float] | None = None,
        registry: CollectorRegistry | None = REGISTRY,
    ) -> None:
        if kind not in _COLLECTOR_TYPES:
            raise ValueError(f"Unknown metric kind: {kind}")
        self.kind = kind
        self.name = name
        self.documentation = documentation
        options: dict[str, Any] = {"registry": registry}
        if buckets is not None:
            options["buckets"] = tuple(buckets)
        self.prometheus = _COLLECTOR_TYPES[kind](name, documentation, list(labelnames), **options)
        self._instrument: Any = None

    def labels(self, **labels: str) -> _BoundMetric:
        return _BoundMetric(self, labels)

    def _otel(self) -> Any:
        if self._instrument is None:
            meter = _meter()
            create = {
                "counter": meter.create_counter,
                "histogram": meter.create_histogram,
                "gauge": meter.create_gauge,
            }[self.kind]
            self._instrument = create(self.name, description=self.documentation)
        return self._instrument

    def inc(self, labels: dict[str, str], amount: float = 1.0) -> None:
        self.prometheus.labels(**labels).inc(amount)
        self._otel().add(amount, labels)

    def observe(self, labels: dict[str, str], value: float) -> None:
        self.prometheus.labels(**labels).observe(value)
        self._otel().record(value, labels)

    def set(self, labels: dict[str, str], value: float) -> None:
        self.prometheus.labels(**labels).set(value)
        self._otel().set(value, labels)


SEARCH_LATENCY = MetricBridge(
    "histogram",
    "terrasearch_search_latency_seconds",
    "Storage search latency",
    ["index"],
    buckets=LATENCY_BUCKETS,
)
SEARCH_REQUESTS = MetricBridge(
    "counter",
    "terrasearch_search_requests_total",
    "Searches served by the engine, by outcome (ok, cached, error)",
    ["index", "status"],
)
INDEXED_DOCUMENTS = MetricBridge(
    "counter",
    "terrasearch_indexed_documents_total",
    "Documents written or rejected by the indexer",
    ["index", "status"],
)
CACHE_EVENTS = MetricBridge(
    "counter",
    "terrasearch_cache_events_total",
    "Query cache hits, misses, writes, evictions, invalidations, bypasses and errors",
    ["event"],
)
STORAGE_ERRORS = MetricBridge(
    "counter",
    "terrasearch_storage_errors_total",
    "SQLite failures surfaced as StorageError",
    ["operation"],
)
INDEX_DOC_COUNT = MetricBridge(
    "gauge",
    "terrasearch_index_document_count",
    "Documents stored per index, refreshed when stats are read",
    ["index"],
)


@contextmanager
def track_latency(histogram: MetricBridge, **labels: str) -> Generator[None, None, None]:
    """Observe the block's wall time, including when it raises."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


def get_metrics(registry: CollectorRegistry = REGISTRY) -> bytes:
    """Prometheus text exposition, for hosts that serve a metrics endpoint."""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
