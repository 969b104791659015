"""Services layered on top of storage."""

from .query_cache import QueryCache


__all__ = [
    "QueryCache",
]
