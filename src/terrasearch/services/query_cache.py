"""Persistent query result cache stored in a SQLite table.

The cache is best-effort: every persistence failure is counted, logged and
turned into a miss or a no-op, so it can only ever affect latency, never the
correctness of a search.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
import hashlib
import logging
import random
import sqlite3
import threading
import time
from typing import Any

import orjson
from pydantic import BaseModel

from terrasearch.config import Settings
from terrasearch.domain.models import QueryOptions
from terrasearch.exceptions import CacheError, StorageError
from terrasearch.observability.metrics import CACHE_EVENTS
from terrasearch.search.connection import SqliteConnection
from terrasearch.search.schema import validate_identifier


logger = logging.getLogger(__name__)

RELEVANT_KEYS = (
    "query",
    "filters",
    "limit",
    "offset",
    "sort",
    "language",
    "geoFilters",
    "field_weights",
    "fields",
    "fuzzy",
    "fuzziness",
    "boost",
    "unique_by_route",
    "facets",
)
EVICTION_KEEP_RATIO = 0.8

_CACHE_FAILURES = (sqlite3.Error, StorageError, CacheError)
_STAT_FOR_EVENT = {
    "hit": "hits",
    "miss": "misses",
    "write": "writes",
    "eviction": "evictions",
    "invalidation": "invalidations",
    "error": "errors",
}


def normalize_params(params: QueryOptions | Mapping[str, Any] | None) -> dict[str, Any]:
    """Cache-relevant query parameters with a stable key order."""
    if params is None:
        return {}
    if isinstance(params, QueryOptions):
        params = params.cache_params()
    source = dict(params)
    if "geoFilters" not in source and "geo_filters" in source:
        source["geoFilters"] = source["geo_filters"]
    return {key: source[key] for key in sorted(RELEVANT_KEYS) if source.get(key) is not None}


def query_signature(params: QueryOptions | Mapping[str, Any] | None) -> str:
    """Deterministic hash of the normalized parameters."""
    payload = orjson.dumps(normalize_params(params), option=orjson.OPT_SORT_KEYS, default=str)
    return hashlib.sha256(payload).hexdigest()


def _wants_bypass(params: QueryOptions | Mapping[str, Any] | None) -> bool:
    if isinstance(params, QueryOptions):
        return params.bypass_cache
    return bool(params and params.get("bypass_cache"))


class QueryCache:
    """Size- and TTL-bounded result cache keyed by ``(index, query signature)``.

    Args:
        connection: Shared ``SqliteConnection`` or a raw ``sqlite3.Connection``
        table_name: Cache table, validated with the identifier grammar
        ttl: Default time to live in seconds
        max_size: Maximum number of rows after any write
        enabled: When False every operation is a no-op
        cleanup_probability: Chance that a ``get`` purges expired rows first
        clock: Returns the current time in seconds
        random_source: Drives the cleanup draw
    """

    def __init__(
        self,
        connection: SqliteConnection | sqlite3.Connection,
        *,
        table_name: str = "_query_cache",
        ttl: float = 300,
        max_size: int = 1000,
        enabled: bool = True,
        cleanup_probability: float = 0.01,
        clock: Callable[[], float] = time.time,
        random_source: random.Random | None = None,
    ):
        self.table = validate_identifier(table_name, kind="cache table")
        self.default_ttl = ttl
        self.max_size = max_size
        self.enabled = enabled
        self.cleanup_probability = cleanup_probability
        self._clock = clock
        self._random = random_source or random.Random()
        self._shared = connection if isinstance(connection, SqliteConnection) else None
        self._raw = None if isinstance(connection, SqliteConnection) else connection
        self._raw_lock = threading.RLock()
        self._stats_lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "writes": 0, "evictions": 0, "invalidations": 0, "errors": 0}

        if self.enabled:
            try:
                self._initialize_table()
            except _CACHE_FAILURES as e:
                self._record("error")
                self.enabled = False
                logger.warning("Query cache disabled, table setup failed: %s", e, extra={"table": self.table})

    @classmethod
    def from_settings(
        cls,
        connection: SqliteConnection | sqlite3.Connection,
        settings: Settings,
        **kwargs: Any,
    ) -> QueryCache:
        return cls(
            connection,
            table_name=settings.cache_table_name,
            ttl=settings.cache_ttl,
            max_size=settings.cache_max_size,
            enabled=settings.cache_enabled,
            cleanup_probability=settings.cache_cleanup_probability,
            **kwargs,
        )

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._shared is not None:
            with self._shared.connection() as conn:
                yield conn
        else:
            with self._raw_lock, self._raw:
                yield self._raw

    def _initialize_table(self) -> None:
        table = self.table
        with self._connection() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    cache_key TEXT PRIMARY KEY,
                    index_name TEXT NOT NULL,
                    query_hash TEXT NOT NULL,
                    result_data TEXT NOT NULL,
                    result_count INTEGER,
                    expires_at REAL NOT NULL,
                    created_at REAL NOT NULL,
                    hit_count INTEGER NOT NULL DEFAULT 0,
                    last_accessed REAL NOT NULL
                )
                """
            )
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_expires ON {table}(expires_at)")
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_index ON {table}(index_name)")
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_accessed ON {table}(last_accessed)")

    def _record(self, event: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        stat = _STAT_FOR_EVENT.get(event)
        if stat is not None:
            with self._stats_lock:
                self._stats[stat] += amount
        CACHE_EVENTS.labels(event=event).inc(amount)

    def _fail(self, operation: str, error: Exception) -> None:
        self._record("error")
        logger.warning("Query cache %s failed: %s", operation, error, extra={"table": self.table})

    @staticmethod
    def cache_key(index_name: str, params: QueryOptions | Mapping[str, Any] | None) -> str:
        return f"{index_name}:{query_signature(params)}"

    def get(self, index_name: str, params: QueryOptions | Mapping[str, Any] | None) -> Any | None:
        """Cached payload for a query, or None on miss, expiry, bypass or failure."""
        if not self.enabled:
            return None
        if _wants_bypass(params):
            CACHE_EVENTS.labels(event="bypass").inc()
            return None

        key = self.cache_key(index_name, params)
        try:
            if self._random.random() < self.cleanup_probability:
                self.clean_expired()
            now = self._clock()
            with self._connection() as conn:
                row = conn.execute(
                    f"SELECT result_data FROM {self.table} WHERE cache_key = ? AND expires_at > ?",
                    (key, now),
                ).fetchone()
                if row is None:
                    self._record("miss")
                    return None
                conn.execute(
                    f"UPDATE {self.table} SET hit_count = hit_count + 1, last_accessed = ? WHERE cache_key = ?",
                    (now, key),
                )
            payload = orjson.loads(row[0])
        except (*_CACHE_FAILURES, orjson.JSONDecodeError) as e:
            self._fail("get", e)
            return None
        self._record("hit")
        return payload

    @staticmethod
    def _serialize(results: Any) -> tuple[str, int]:
        if isinstance(results, BaseModel):
            results = results.model_dump(mode="json", by_alias=True)
        try:
            data = orjson.dumps(results, default=str).decode("utf-8")
        except TypeError as e:
            raise CacheError(f"Cannot serialize results: {e}") from e
        count = len(results.get("results") or []) if isinstance(results, Mapping) else 0
        return data, count

    def set(
        self,
        index_name: str,
        params: QueryOptions | Mapping[str, Any] | None,
        results: Any,
        ttl: float | None = None,
    ) -> bool:
        """Store results, evicting least-recently-accessed rows first when full."""
        if not self.enabled:
            return False
        signature = query_signature(params)
        key = f"{index_name}:{signature}"
        ttl = self.default_ttl if ttl is None else ttl
        try:
            data, count = self._serialize(results)
            now = self._clock()
            with self._connection() as conn:
                self._enforce_max_size(conn)
                conn.execute(
                    f"""
                    INSERT OR REPLACE INTO {self.table}
                        (cache_key, index_name, query_hash, result_data, result_count,
                         expires_at, created_at, hit_count, last_accessed)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (key, index_name, signature, data, count, now + ttl, now, now),
                )
        except _CACHE_FAILURES as e:
            self._fail("set", e)
            return False
        self._record("write")
        return True

    def _enforce_max_size(self, conn: sqlite3.Connection) -> None:
        count = conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]
        if count < self.max_size:
            return
        keep = int(self.max_size * EVICTION_KEEP_RATIO)
        cursor = conn.execute(
            f"""
            DELETE FROM {self.table} WHERE cache_key IN (
                SELECT cache_key FROM {self.table}
                ORDER BY last_accessed ASC, created_at ASC
                LIMIT ?
            )
            """,
            (count - keep,),
        )
        self._record("eviction", cursor.rowcount)
        logger.debug("Evicted %d cache rows", cursor.rowcount, extra={"table": self.table})

    def _delete(self, operation: str, sql: str, params: tuple[Any, ...] = ()) -> int:
        if not self.enabled:
            return 0
        try:
            with self._connection() as conn:
                deleted = conn.execute(sql, params).rowcount
        except _CACHE_FAILURES as e:
            self._fail(operation, e)
            return 0
        self._record("invalidation", deleted)
        return deleted

    def invalidate(self, index_name: str) -> int:
        """Drop every entry of an index; call after writes to it."""
        return self._delete("invalidate", f"DELETE FROM {self.table} WHERE index_name = ?", (index_name,))

    def invalidate_by_query(self, index_name: str, pattern: str) -> int:
        """Drop entries of an index whose signature hash contains ``pattern``."""
        escaped = pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return self._delete(
            "invalidate_by_query",
            f"DELETE FROM {self.table} WHERE index_name = ? AND query_hash LIKE ? ESCAPE '\\'",
            (index_name, f"%{escaped}%"),
        )

    def clear(self) -> int:
        return self._delete("clear", f"DELETE FROM {self.table}")

    def clean_expired(self) -> int:
        if not self.enabled:
            return 0
        try:
            with self._connection() as conn:
                return conn.execute(f"DELETE FROM {self.table} WHERE expires_at <= ?", (self._clock(),)).rowcount
        except _CACHE_FAILURES as e:
            self._fail("clean_expired", e)
            return 0

    def hit_rate(self) -> float:
        with self._stats_lock:
            hits, misses = self._stats["hits"], self._stats["misses"]
        total = hits + misses
        return round(hits / total * 100, 2) if total else 0.0

    def get_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            stats: dict[str, Any] = dict(self._stats)
        stats["enabled"] = self.enabled
        stats["hit_rate"] = self.hit_rate()
        stats["config"] = {"ttl": self.default_ttl, "max_size": self.max_size, "table": self.table}
        if not self.enabled:
            return stats
        try:
            with self._connection() as conn:
                row = conn.execute(
                    f"""
                    SELECT COUNT(*), COALESCE(SUM(hit_count), 0), COALESCE(AVG(hit_count), 0),
                           COALESCE(SUM(result_count), 0), MIN(created_at), MAX(created_at),
                           COALESCE(AVG(? - created_at), 0)
                    FROM {self.table}
                    """,
                    (self._clock(),),
                ).fetchone()
        except _CACHE_FAILURES as e:
            self._fail("stats", e)
            stats["error"] = str(e)
            return stats
        stats.update(
            {
                "cache_entries": int(row[0]),
                "total_hits_db": int(row[1]),
                "avg_hits_per_entry": float(row[2]),
                "total_cached_results": int(row[3]),
                "oldest_entry": row[4],
                "newest_entry": row[5],
                "avg_age_seconds": float(row[6]),
            }
        )
        return stats
