"""Per-operation log context.

A ``ContextVar`` carries the trace and span ids that ``JsonFormatter`` stamps
on each record, plus the index (and operation) currently being worked on.
Every thread and asyncio task sees its own copy.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
import secrets


trace_context: ContextVar[dict | None] = ContextVar("terrasearch_trace_context", default=None)


def new_trace_id() -> str:
    return secrets.token_hex(16)


def new_span_id() -> str:
    return secrets.token_hex(8)


def get_trace_context() -> dict:
    """Current context; the first call in a fresh context starts a new trace."""
    current = trace_context.get()
    if current and current.get("trace_id"):
        return current
    current = {"trace_id": new_trace_id(), "span_id": new_span_id()}
    trace_context.set(current)
    return current


def set_trace_context(trace_id: str, span_id: str, **extra: object) -> None:
    trace_context.set({"trace_id": trace_id, "span_id": span_id, **extra})


def update_span_id(span_id: str) -> None:
    trace_context.set({**get_trace_context(), "span_id": span_id})


def bind_index(index_name: str) -> None:
    """Tag the remaining records of this context with ``index_name``."""
    trace_context.set({**get_trace_context(), "index": index_name})


@contextmanager
def index_scope(index_name: str, operation: str | None = None) -> Iterator[dict]:
    """Bind ``index_name`` for the block only; the outer context is restored on exit."""
    scoped = {**get_trace_context(), "index": index_name}
    if operation:
        scoped["operation"] = operation
    token = trace_context.set(scoped)
    try:
        yield scoped
    finally:
        trace_context.reset(token)
