"""Logging, trace context, metrics and tracing for terrasearch operations."""

from terrasearch.observability.context import (
    bind_index,
    get_trace_context,
    index_scope,
    set_trace_context,
    trace_context,
)
from terrasearch.observability.logging import (
    JsonFormatter,
    PlainFormatter,
    configure_logging,
    configure_logging_from_settings,
)
from terrasearch.observability.metrics import (
    CACHE_EVENTS,
    INDEX_DOC_COUNT,
    INDEXED_DOCUMENTS,
    SEARCH_LATENCY,
    SEARCH_REQUESTS,
    STORAGE_ERRORS,
    MetricBridge,
    get_metrics,
    get_metrics_content_type,
    init_metrics,
    track_latency,
)
from terrasearch.observability.tracing import create_span, get_tracer, index_span, init_tracing


__all__ = [
    "CACHE_EVENTS",
    "INDEXED_DOCUMENTS",
    "INDEX_DOC_COUNT",
    "SEARCH_LATENCY",
    "SEARCH_REQUESTS",
    "STORAGE_ERRORS",
    "JsonFormatter",
    "MetricBridge",
    "PlainFormatter",
    "bind_index",
    "configure_logging",
    "configure_logging_from_settings",
    "create_span",
    "get_metrics",
    "get_metrics_content_type",
    "get_trace_context",
    "get_tracer",
    "index_scope",
    "index_span",
    "init_metrics",
    "init_tracing",
    "set_trace_context",
    "trace_context",
    "track_latency",
]
