"""OpenTelemetry spans around engine operations.

Spans are named ``terrasearch.<operation>``. While a span is open its id is
mirrored into the log context, so JSON log lines can be joined with traces.
Hosts that already configured OpenTelemetry need not call ``init_tracing``;
spans then go to their global provider.
"""

from __future__ import annotations

from collections.abc import Mapping
from contextlib import contextmanager
import logging
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import SpanKind, Status, StatusCode

from terrasearch.observability.context import index_scope, update_span_id


if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span, Tracer

logger = logging.getLogger(__name__)

SPAN_PREFIX = "terrasearch."
INSTRUMENTATION_NAME = "terrasearch"

_tracer_holder: dict[str, Tracer | None] = {"tracer": None}


def init_tracing(
    service_name: str = "terrasearch",
    resource_attributes: dict[str, str] | None = None,
    provider: TracerProvider | None = None,
) -> TracerProvider:
    """Route engine spans to ``provider``, or to a new global provider tagged with ``service_name``."""
    if provider is None:
        provider = TracerProvider(resource=Resource.create({"service.name": service_name, **(resource_attributes or {})}))
        trace.set_tracer_provider(provider)
    _tracer_holder["tracer"] = provider.get_tracer(INSTRUMENTATION_NAME)
    logger.debug("Tracing initialized for service: %s", service_name)
    return provider


def get_tracer() -> Tracer:
    tracer = _tracer_holder["tracer"]
    if tracer is None:
        tracer = _tracer_holder["tracer"] = trace.get_tracer(INSTRUMENTATION_NAME)
    return tracer


def _span_attributes(attributes: Mapping[str, Any] | None) -> dict[str, Any]:
    # OTel drops None values with a warning; skip them up front.
    return {key: value for key, value in (attributes or {}).items() if value is not None}


@contextmanager
def create_span(
    name: str,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: Mapping[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Open a span, mirror its id into the log context and mark it failed when the block raises."""
    with get_tracer().start_as_current_span(
        name,
        kind=kind,
        attributes=_span_attributes(attributes),
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        span_context = span.get_span_context()
        if span_context.is_valid:
            update_span_id(format(span_context.span_id, "016x"))
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise


@contextmanager
def index_span(operation: str, index: str, **attributes: Any) -> Generator[Span, None, None]:
    """``terrasearch.<operation>`` span on one index; log records inside it carry the index."""
    span_attributes = {f"{SPAN_PREFIX}{key}": value for key, value in attributes.items()}
    span_attributes[f"{SPAN_PREFIX}index"] = index
    with index_scope(index, operation), create_span(SPAN_PREFIX + operation, attributes=span_attributes) as span:
        yield span
