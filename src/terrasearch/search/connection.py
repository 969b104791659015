"""Shared SQLite connection for one storage instance.

A single ``sqlite3.Connection`` opened with ``check_same_thread=False`` is
shared by every thread of the host and serialized through a re-entrant lock.
The connection runs in autocommit mode; ``transaction()`` issues explicit
``BEGIN``/``COMMIT``/``ROLLBACK`` and nests through savepoints so DDL and
DML of a migration commit or roll back together.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import itertools
import logging
from pathlib import Path
import sqlite3
import threading

import orjson

from terrasearch.exceptions import StorageError
from terrasearch.geo import GeoBounds, GeoPoint, distance, distance_to_bounds, is_valid_coordinate
from terrasearch.search.sqlite_pragmas import apply_connection_pragmas


logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


def geo_distance_sql(
    from_lat: float | None,
    from_lng: float | None,
    lat: float | None,
    lng: float | None,
    bounds_json: str | None,
) -> float | None:
    """``geo_distance()`` SQL function: meters from a point to a row's geo or geo_bounds."""
    if from_lat is None or from_lng is None or not is_valid_coordinate(from_lat, from_lng):
        return None
    origin = GeoPoint(from_lat, from_lng)
    if lat is not None and lng is not None:
        return distance(origin, GeoPoint(lat, lng))
    if bounds_json:
        raw = orjson.loads(bounds_json)
        return distance_to_bounds(origin, GeoBounds(**raw))
    return None


def geo_in_bounds_sql(
    lat: float | None,
    lng: float | None,
    bounds_json: str | None,
    min_lat: float,
    max_lat: float,
    min_lng: float,
    max_lng: float,
) -> int:
    """``geo_in_bounds()`` SQL function: 1 when a row's geo (or else geo_bounds) meets the query box.

    Dateline-crossing rows are indexed as a full longitude band, so the R-tree
    match alone is not exact.
    """
    query = GeoBounds(min_lat, max_lat, min_lng, max_lng)
    if lat is not None and lng is not None:
        return int(query.contains(GeoPoint(lat, lng)))
    if bounds_json:
        return int(query.intersects(GeoBounds(**orjson.loads(bounds_json))))
    return 0


class SqliteConnection:
    """Lock-guarded shared connection with transaction helpers."""

    def __init__(self, path: str | Path = MEMORY_PATH, *, busy_timeout_ms: int = 5000):
        self.path = str(path)
        self._lock = threading.RLock()
        self._depth = 0
        self._savepoints = itertools.count()
        try:
            self._conn = sqlite3.connect(
                self.path,
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            apply_connection_pragmas(
                self._conn,
                file_backed=self.path != MEMORY_PATH,
                busy_timeout_ms=busy_timeout_ms,
            )
            self._conn.create_function("geo_distance", 5, geo_distance_sql, deterministic=True)
            self._conn.create_function("geo_in_bounds", 7, geo_in_bounds_sql, deterministic=True)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open SQLite database {self.path}: {e}") from e
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock and yield the raw connection."""
        with self._lock:
            if self._closed:
                raise StorageError("Connection is closed")
            yield self._conn

    @contextmanager
    def transaction(self, *, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Run the block atomically; nested calls become savepoints."""
        with self.connection() as conn:
            if self._depth == 0:
                conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
                savepoint = None
            else:
                savepoint = f"sp_{next(self._savepoints)}"
                conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield conn
            except BaseException:
                self._depth -= 1
                if savepoint is None:
                    conn.execute("ROLLBACK")
                else:
                    conn.execute(f"ROLLBACK TO {savepoint}")
                    conn.execute(f"RELEASE {savepoint}")
                raise
            self._depth -= 1
            if savepoint is None:
                conn.execute("COMMIT")
            else:
                conn.execute(f"RELEASE {savepoint}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            try:
                self._conn.close()
            except sqlite3.Error:
                logger.warning("Error while closing SQLite connection %s", self.path, exc_info=True)
            self._closed = True
