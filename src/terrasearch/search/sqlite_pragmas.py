"""Shared SQLite PRAGMA helpers for consistent performance tuning."""

from __future__ import annotations

import sqlite3


def apply_connection_pragmas(
    conn: sqlite3.Connection,
    *,
    file_backed: bool,
    busy_timeout_ms: int | None = 5000,
    cache_size_kb: int = -65536,
    mmap_size_bytes: int = 134217728,
    temp_store: str = "MEMORY",
    query_only: bool = False,
) -> None:
    """Apply PRAGMAs shared by every terrasearch connection.

    WAL and mmap only make sense for database files; in-memory databases
    keep SQLite's defaults for those.
    """
    if busy_timeout_ms is not None:
        conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    if file_backed:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(f"PRAGMA mmap_size = {int(mmap_size_bytes)}")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA cache_size = {int(cache_size_kb)}")
    conn.execute(f"PRAGMA temp_store = {temp_store}")
    if query_only:
        conn.execute("PRAGMA query_only = 1")


def apply_optimize_pragmas(conn: sqlite3.Connection) -> None:
    """Refresh planner statistics after bulk changes."""
    conn.execute("PRAGMA optimize")
