"""SQLite storage engine: FTS5 full-text indices with an R-tree spatial side table.

Each index owns a small family of tables::

    {name}            documents (authoritative in external-content mode)
    {name}_fts        FTS5 index, embedded or ``content='{name}'``
    {name}_fts_vocab  fts5vocab view over the FTS index (term statistics)
    {name}_spatial    R-tree keyed by the document rowid
    {name}_meta       schema mode, ranking mode and field configuration

All values are bound as parameters. Identifiers interpolated into SQL are
validated by ``terrasearch.search.schema`` first.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from contextlib import contextmanager
import logging
from pathlib import Path
import sqlite3
import time
from typing import Any

import orjson

from terrasearch.config import Settings, get_settings
from terrasearch.domain.models import Document, ProcessedDocument, QueryOptions, facet_reference
from terrasearch.exceptions import IndexNotFoundError, SchemaError, StorageError
from terrasearch.geo import GeoBounds, GeoPoint
from terrasearch.observability.metrics import INDEX_DOC_COUNT, SEARCH_LATENCY, STORAGE_ERRORS, track_latency
from terrasearch.search.analyzers import Analyzer, TextAnalyzer
from terrasearch.search.connection import MEMORY_PATH, SqliteConnection
from terrasearch.search.indexing_utils import to_processed
from terrasearch.search.query_builder import QueryBuilder, QueryPlan, column_expression
from terrasearch.search.schema import (
    RESERVED_SUFFIXES,
    IndexLayout,
    normalize_field_config,
    validate_index_name,
)
from terrasearch.search.scoring import order_rows, rank_in_application
from terrasearch.search.sqlite_pragmas import apply_optimize_pragmas


logger = logging.getLogger(__name__)

_BASE_COLUMNS = (
    "id",
    "content",
    "metadata",
    "language",
    "type",
    "timestamp",
    "indexed_at",
    "parent_id",
    "geo_lat",
    "geo_lng",
    "geo_bounds",
)

Box = tuple[float, float, float, float]


def _spatial_box(geo: GeoPoint | None, bounds: GeoBounds | None) -> Box | None:
    """R-tree entry ``(minX, maxX, minY, maxY)``; the point wins over bounds.

    Dateline-crossing bounds are stored as a full longitude band. Queries
    re-check such rows with ``geo_distance()`` and ``geo_in_bounds()``.
    """
    if geo is not None:
        return (geo.lng, geo.lng, geo.lat, geo.lat)
    if bounds is not None:
        if bounds.crosses_antimeridian:
            return (-180.0, 180.0, bounds.min_lat, bounds.max_lat)
        return (bounds.min_lng, bounds.max_lng, bounds.min_lat, bounds.max_lat)
    return None


def _box_from_columns(lat: float | None, lng: float | None, bounds_json: str | None) -> Box | None:
    geo = GeoPoint(lat, lng) if lat is not None and lng is not None else None
    bounds = GeoBounds(**orjson.loads(bounds_json)) if bounds_json else None
    return _spatial_box(geo, bounds)


def _dumps(value: Any) -> str:
    return orjson.dumps(value, default=str).decode("utf-8")


class SqliteStorage:
    """Storage engine managing every index of one SQLite database."""

    def __init__(
        self,
        db_path: str | Path = MEMORY_PATH,
        *,
        settings: Settings | None = None,
        analyzer: Analyzer | None = None,
        connection: SqliteConnection | None = None,
    ):
        self.settings = settings or get_settings()
        self.analyzer = analyzer or TextAnalyzer()
        self._db = connection or SqliteConnection(db_path, busy_timeout_ms=self.settings.busy_timeout_ms)
        self._layouts: dict[str, IndexLayout] = {}
        self._default_schema_mode = "external" if self.settings.external_content else "embedded"

    @property
    def connection(self) -> SqliteConnection:
        """Shared connection, exposed for diagnostics and tests."""
        return self._db

    def close(self) -> None:
        self._layouts.clear()
        self._db.close()

    @contextmanager
    def _guard(self, operation: str, index: str | None, error_cls: type[StorageError | SchemaError] = StorageError):
        """Re-raise backing-engine failures as typed errors."""
        try:
            yield
        except sqlite3.Error as e:
            STORAGE_ERRORS.labels(operation=operation).inc()
            logger.error(
                "%s failed for index %s: %s",
                operation,
                index,
                e,
                extra={"index": index, "operation": operation},
            )
            raise error_cls(f"{operation} failed for index {index}: {e}") from e

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    @staticmethod
    def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
        row = conn.execute("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)).fetchone()
        return row is not None

    def _index_exists(self, conn: sqlite3.Connection, name: str) -> bool:
        return self._table_exists(conn, name) and self._table_exists(conn, f"{name}_fts")

    def index_exists(self, name: str) -> bool:
        validate_index_name(name)
        with self._guard("index_exists", name), self._db.connection() as conn:
            return self._index_exists(conn, name)

    def _read_layout(self, conn: sqlite3.Connection, name: str) -> IndexLayout:
        meta_table = f"{name}_meta"
        if self._table_exists(conn, meta_table):
            meta = {row["key"]: row["value"] for row in conn.execute(f"SELECT key, value FROM {meta_table}")}
            return IndexLayout.from_meta(name, meta)
        fts_columns = [row["name"] for row in conn.execute(f"PRAGMA table_info({name}_fts)")]
        document_columns = [row["name"] for row in conn.execute(f"PRAGMA table_info({name})")]
        return IndexLayout.infer(name, fts_columns, document_columns)

    def _load_layout(self, name: str) -> IndexLayout:
        validate_index_name(name)
        layout = self._layouts.get(name)
        if layout is not None:
            return layout
        with self._guard("load_layout", name), self._db.connection() as conn:
            if not self._index_exists(conn, name):
                raise IndexNotFoundError(name)
            layout = self._read_layout(conn, name)
        self._layouts[name] = layout
        return layout

    def get_layout(self, name: str) -> IndexLayout:
        """Layout of an existing index; raises ``IndexNotFoundError``."""
        return self._load_layout(name)

    def create_index(
        self,
        name: str,
        field_config: Mapping[str, Any] | None = None,
        *,
        schema_mode: str | None = None,
        ranking_mode: str | None = None,
        spatial: bool = True,
    ) -> IndexLayout:
        """Create every table of an index. Existing indices are returned unchanged."""
        validate_index_name(name)
        layout = IndexLayout(
            name,
            schema_mode or self._default_schema_mode,  # type: ignore[arg-type]
            ranking_mode or self.settings.ranking_mode,  # type: ignore[arg-type]
            normalize_field_config(field_config),
        )
        with self._guard("create_index", name, SchemaError), self._db.transaction() as conn:
            if self._index_exists(conn, name):
                existing = self._read_layout(conn, name)
                self._layouts[name] = existing
                logger.debug("Index %s already exists", name, extra={"index": name})
                return existing
            conn.execute(layout.document_table_sql())
            for statement in layout.document_indexes_sql():
                conn.execute(statement)
            conn.execute(layout.fts_table_sql())
            self._create_vocab(conn, layout)
            if spatial:
                conn.execute(layout.spatial_table_sql())
            self._write_meta(conn, layout)
        self._layouts[name] = layout
        logger.info(
            "Created index %s",
            name,
            extra={"index": name, "schema_mode": layout.schema_mode, "ranking_mode": layout.ranking_mode},
        )
        return layout

    @staticmethod
    def _create_vocab(conn: sqlite3.Connection, layout: IndexLayout) -> None:
        conn.execute(
            f"CREATE VIRTUAL TABLE IF NOT EXISTS {layout.vocab_table} USING fts5vocab('{layout.fts_table}', 'row')"
        )

    @staticmethod
    def _write_meta(conn: sqlite3.Connection, layout: IndexLayout) -> None:
        conn.execute(layout.meta_table_sql())
        conn.executemany(
            f"INSERT OR REPLACE INTO {layout.meta_table} (key, value) VALUES (?, ?)",
            layout.meta_rows(),
        )

    def drop_index(self, name: str) -> bool:
        """Drop every table of an index. Returns False when it did not exist."""
        validate_index_name(name)
        with self._guard("drop_index", name, SchemaError), self._db.transaction() as conn:
            if not self._table_exists(conn, name) and not self._table_exists(conn, f"{name}_fts"):
                self._layouts.pop(name, None)
                return False
            for table in (f"{name}_fts_vocab", f"{name}_fts", f"{name}_spatial", f"{name}_meta", name):
                conn.execute(f"DROP TABLE IF EXISTS {table}")
        self._layouts.pop(name, None)
        logger.info("Dropped index %s", name, extra={"index": name})
        return True

    def ensure_spatial_table_exists(self, name: str) -> bool:
        """Create the spatial table of an index if missing. Returns True when created."""
        layout = self._load_layout(name)
        with self._guard("ensure_spatial", name, SchemaError), self._db.transaction() as conn:
            if self._table_exists(conn, layout.spatial_table):
                return False
            conn.execute(layout.spatial_table_sql())
        logger.info("Created missing spatial table for %s", name, extra={"index": name})
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _row_values(self, layout: IndexLayout, doc: ProcessedDocument) -> dict[str, Any]:
        metadata = dict(doc.metadata)
        if doc.is_chunk:
            metadata.setdefault("is_chunk", True)
            metadata.setdefault("chunk_index", doc.chunk_index)
        values: dict[str, Any] = {
            "id": doc.id,
            "content": _dumps(doc.content),
            "metadata": _dumps(metadata),
            "language": doc.language,
            "type": doc.type,
            "timestamp": doc.timestamp,
            "indexed_at": doc.indexed_at if doc.indexed_at is not None else int(time.time()),
            "parent_id": doc.parent_id,
            "geo_lat": doc.geo.lat if doc.geo else None,
            "geo_lng": doc.geo.lng if doc.geo else None,
            "geo_bounds": _dumps(doc.geo_bounds.to_dict()) if doc.geo_bounds else None,
        }
        return values

    @staticmethod
    def _text_values(layout: IndexLayout, doc: ProcessedDocument) -> list[str | None]:
        if layout.ranking_mode == "boosted":
            return [doc.searchable_text or ""]
        return [doc.search_fields.get(name) for name in layout.indexed_fields]

    def _upsert(self, conn: sqlite3.Connection, layout: IndexLayout, doc: ProcessedDocument) -> None:
        values = self._row_values(layout, doc)
        text_values = self._text_values(layout, doc)
        text_columns = layout.text_columns
        column_list = ", ".join(text_columns)
        text_placeholders = ", ".join("?" for _ in text_columns)

        if layout.is_external:
            values.update(zip(text_columns, text_values))
            existing = conn.execute(
                f"SELECT doc_id, {column_list} FROM {layout.name} WHERE id = ?", (doc.id,)
            ).fetchone()
            if existing is not None:
                rowid = existing["doc_id"]
                self._fts_external_delete(conn, layout, rowid, [existing[column] for column in text_columns])
                assignments = ", ".join(f"{column} = ?" for column in values)
                conn.execute(
                    f"UPDATE {layout.name} SET {assignments} WHERE doc_id = ?",
                    [*values.values(), rowid],
                )
            else:
                rowid = self._insert_row(conn, layout.name, values)
            conn.execute(
                f"INSERT INTO {layout.fts_table} (rowid, {column_list}) VALUES (?, {text_placeholders})",
                [rowid, *text_values],
            )
        else:
            existing = conn.execute(f"SELECT rowid FROM {layout.name} WHERE id = ?", (doc.id,)).fetchone()
            if existing is not None:
                rowid = existing[0]
                assignments = ", ".join(f"{column} = ?" for column in values)
                conn.execute(f"UPDATE {layout.name} SET {assignments} WHERE rowid = ?", [*values.values(), rowid])
            else:
                rowid = self._insert_row(conn, layout.name, values)
            conn.execute(f"DELETE FROM {layout.fts_table} WHERE id = ?", (doc.id,))
            conn.execute(
                f"INSERT INTO {layout.fts_table} (id, {column_list}) VALUES (?, {text_placeholders})",
                [doc.id, *text_values],
            )

        self._write_spatial(conn, layout, rowid, _spatial_box(doc.geo, doc.geo_bounds))

    @staticmethod
    def _insert_row(conn: sqlite3.Connection, table: str, values: Mapping[str, Any]) -> int:
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        cursor = conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(values.values()))
        return int(cursor.lastrowid)

    @staticmethod
    def _fts_external_delete(
        conn: sqlite3.Connection,
        layout: IndexLayout,
        rowid: int,
        old_values: Sequence[Any],
    ) -> None:
        # External-content FTS5 needs the previously indexed values to drop their postings.
        columns = ", ".join(layout.text_columns)
        placeholders = ", ".join("?" for _ in old_values)
        conn.execute(
            f"INSERT INTO {layout.fts_table} ({layout.fts_table}, rowid, {columns}) VALUES ('delete', ?, {placeholders})",
            [rowid, *old_values],
        )

    def _write_spatial(self, conn: sqlite3.Connection, layout: IndexLayout, rowid: int, box: Box | None) -> None:
        has_table = self._table_exists(conn, layout.spatial_table)
        if box is not None and not has_table:
            conn.execute(layout.spatial_table_sql())
            has_table = True
        if not has_table:
            return
        conn.execute(f"DELETE FROM {layout.spatial_table} WHERE id = ?", (rowid,))
        if box is not None:
            conn.execute(
                f"INSERT INTO {layout.spatial_table} (id, minX, maxX, minY, maxY) VALUES (?, ?, ?, ?, ?)",
                (rowid, *box),
            )

    def insert(self, name: str, document: Document | Mapping[str, Any]) -> None:
        """Upsert one document keyed by ``id``."""
        self.insert_batch(name, [document])

    def insert_batch(
        self,
        name: str,
        documents: Iterable[Document | Mapping[str, Any]],
        *,
        replace_children: bool = False,
    ) -> int:
        """Upsert documents in a single transaction; any failure rolls back the whole batch.

        With ``replace_children`` the existing chunk documents of every
        non-chunk document in the batch are removed first, so a re-indexed
        document never keeps stale chunks.
        """
        layout = self._load_layout(name)
        rows = [to_processed(document, layout.fields, self.analyzer) for document in documents]
        if not rows:
            return 0
        with self._guard("insert", name), self._db.transaction() as conn:
            if replace_children:
                for parent_id in {row.id for row in rows if not row.is_chunk}:
                    self._delete_children(conn, layout, parent_id)
            for row in rows:
                self._upsert(conn, layout, row)
        logger.debug("Upserted %d documents into %s", len(rows), name, extra={"index": name})
        return len(rows)

    def update(self, name: str, doc_id: str, document: Document | Mapping[str, Any]) -> None:
        """Replace a stored document (and its full-text and spatial entries)."""
        if isinstance(document, Document):
            document = document.model_copy(update={"id": doc_id})
        else:
            document = {**document, "id": doc_id}
        self.insert_batch(name, [document])

    def _delete_row(self, conn: sqlite3.Connection, layout: IndexLayout, doc_id: str) -> bool:
        if layout.is_external:
            column_list = ", ".join(layout.text_columns)
            existing = conn.execute(
                f"SELECT doc_id, {column_list} FROM {layout.name} WHERE id = ?", (doc_id,)
            ).fetchone()
            if existing is None:
                return False
            rowid = existing["doc_id"]
            self._fts_external_delete(conn, layout, rowid, [existing[column] for column in layout.text_columns])
            conn.execute(f"DELETE FROM {layout.name} WHERE doc_id = ?", (rowid,))
        else:
            existing = conn.execute(f"SELECT rowid FROM {layout.name} WHERE id = ?", (doc_id,)).fetchone()
            if existing is None:
                return False
            rowid = existing[0]
            conn.execute(f"DELETE FROM {layout.fts_table} WHERE id = ?", (doc_id,))
            conn.execute(f"DELETE FROM {layout.name} WHERE rowid = ?", (rowid,))
        self._write_spatial(conn, layout, rowid, None)
        return True

    def delete(self, name: str, doc_id: str) -> bool:
        """Remove a document row with its full-text and spatial entries."""
        layout = self._load_layout(name)
        with self._guard("delete", name), self._db.transaction() as conn:
            return self._delete_row(conn, layout, doc_id)

    def _delete_children(self, conn: sqlite3.Connection, layout: IndexLayout, parent_id: str) -> int:
        child_ids = [
            row[0] for row in conn.execute(f"SELECT id FROM {layout.name} WHERE parent_id = ?", (parent_id,))
        ]
        for child_id in child_ids:
            self._delete_row(conn, layout, child_id)
        return len(child_ids)

    def delete_children(self, name: str, parent_id: str) -> int:
        """Remove every chunk document of ``parent_id``."""
        layout = self._load_layout(name)
        with self._guard("delete_children", name), self._db.transaction() as conn:
            return self._delete_children(conn, layout, parent_id)

    def get_document(self, name: str, doc_id: str) -> dict[str, Any] | None:
        layout = self._load_layout(name)
        columns = ", ".join(f"d.{column}" for column in _BASE_COLUMNS)
        with self._guard("get_document", name), self._db.connection() as conn:
            row = conn.execute(f"SELECT {columns} FROM {layout.name} d WHERE d.id = ?", (doc_id,)).fetchone()
        return self._result_row(row, score=None, with_distance=False) if row is not None else None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _builder(self, layout: IndexLayout) -> QueryBuilder:
        return QueryBuilder(
            layout,
            self.analyzer,  # type: ignore[arg-type]
            default_distance_weight=self.settings.distance_weight,
            default_decay_k=self.settings.distance_decay_k,
        )

    def explain(self, name: str, options: QueryOptions | Mapping[str, Any] | str | None = None) -> QueryPlan:
        """Query plan that ``search`` would execute, without running it."""
        return self._builder(self._load_layout(name)).build(QueryOptions.from_input(options))

    @staticmethod
    def _result_row(row: sqlite3.Row, *, score: float | None, with_distance: bool) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": row["id"],
            "score": score if score is not None else 0.0,
            "document": orjson.loads(row["content"]) if row["content"] else {},
            "metadata": orjson.loads(row["metadata"]) if row["metadata"] else {},
            "language": row["language"],
            "type": row["type"],
            "timestamp": row["timestamp"],
            "indexed_at": row["indexed_at"],
            "parent_id": row["parent_id"],
        }
        if row["geo_lat"] is not None and row["geo_lng"] is not None:
            result["geo"] = {"lat": row["geo_lat"], "lng": row["geo_lng"]}
        if row["geo_bounds"]:
            result["geo_bounds"] = orjson.loads(row["geo_bounds"])
        if with_distance:
            result["distance"] = row["distance"]
        return result

    def _execute_plan(self, name: str, plan: QueryPlan) -> tuple[list[dict[str, Any]], int]:
        with self._guard("search", name), track_latency(SEARCH_LATENCY, index=name), self._db.connection() as conn:
            rows = conn.execute(plan.sql, plan.params).fetchall()
            total = conn.execute(plan.count_sql, plan.count_params).fetchone()[0]

        with_distance = plan.distance_origin is not None
        results = [
            self._result_row(row, score=-row["text_rank"] if row["text_rank"] else 0.0, with_distance=with_distance)
            for row in rows
        ]
        if plan.application_ranking:
            results = rank_in_application(results, plan)[plan.offset : plan.offset + plan.limit]
        return results, int(total)

    def search(self, name: str, options: QueryOptions | Mapping[str, Any] | str | None = None) -> dict[str, Any]:
        """Ranked, filtered, paginated search over one index.

        Returns ``{"results", "total", "search_time"}`` with ``search_time`` in
        milliseconds and ``total`` the filtered count independent of ``limit``.
        """
        start = time.perf_counter()
        plan = self.explain(name, options)
        results, total = self._execute_plan(name, plan)
        logger.debug(
            "Search on %s returned %d of %d",
            name,
            len(results),
            total,
            extra={"index": name, "candidate_limit": plan.candidate_limit},
        )
        return {
            "results": results,
            "total": total,
            "search_time": round((time.perf_counter() - start) * 1000, 2),
        }

    def count(self, name: str, options: QueryOptions | Mapping[str, Any] | str | None = None) -> int:
        plan = self.explain(name, options)
        with self._guard("count", name), self._db.connection() as conn:
            return int(conn.execute(plan.count_sql, plan.count_params).fetchone()[0])

    def facets(
        self,
        name: str,
        options: QueryOptions | Mapping[str, Any] | str | None = None,
    ) -> dict[str, list[dict[str, Any]]]:
        """Value counts per requested facet over every row the query matches.

        Values are ordered by count, then value; null values are skipped.
        """
        options = QueryOptions.from_input(options)
        if not options.facets:
            return {}
        plan = self.explain(name, options)
        facets: dict[str, list[dict[str, Any]]] = {}
        with self._guard("facets", name), self._db.connection() as conn:
            for field, settings in options.facets.items():
                expr, expr_params = column_expression(facet_reference(field))
                rows = conn.execute(
                    f"SELECT value, COUNT(*) AS hits FROM (SELECT {expr} AS value {plan.source_sql}) "
                    "WHERE value IS NOT NULL GROUP BY value HAVING COUNT(*) >= ? "
                    "ORDER BY hits DESC, value ASC LIMIT ?",
                    [*expr_params, *plan.count_params, settings.min_count, settings.limit],
                ).fetchall()
                facets[field] = [{"value": row["value"], "count": row["hits"]} for row in rows]
        return facets

    def search_multiple(
        self,
        names: Sequence[str],
        options: QueryOptions | Mapping[str, Any] | str | None = None,
    ) -> dict[str, Any]:
        """Search several indices and merge them into one ranked page.

        Each index is asked for its first ``offset + limit`` rows so the merged
        page is exact; ``total`` is the sum of every index's filtered count.
        Missing indices are skipped.
        """
        start = time.perf_counter()
        options = QueryOptions.from_input(options)
        window = options.model_copy(update={"limit": options.offset + options.limit, "offset": 0})

        merged: list[dict[str, Any]] = []
        total = 0
        searched: list[str] = []
        order: list[tuple[str, str]] = [("_score", "desc")]
        for name in names:
            try:
                plan = self.explain(name, window)
            except IndexNotFoundError:
                logger.warning("Skipping missing index %s in multi-index search", name, extra={"index": name})
                continue
            results, index_total = self._execute_plan(name, plan)
            for row in results:
                row["_index"] = name
            if not searched:
                order = plan.order
            merged.extend(results)
            total += index_total
            searched.append(name)

        ordered = order_rows(merged, [*order, ("_index", "asc"), ("id", "asc")])
        return {
            "results": ordered[options.offset : options.offset + options.limit],
            "total": total,
            "search_time": round((time.perf_counter() - start) * 1000, 2),
            "indices_searched": searched,
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def optimize(self, name: str, *, vacuum: bool = False) -> None:
        """Merge FTS segments, refresh planner statistics and optionally VACUUM."""
        layout = self._load_layout(name)
        with self._guard("optimize", name), self._db.transaction() as conn:
            conn.execute(f"INSERT INTO {layout.fts_table} ({layout.fts_table}) VALUES ('optimize')")
        with self._guard("optimize", name), self._db.connection() as conn:
            apply_optimize_pragmas(conn)
            if vacuum:
                conn.execute("VACUUM")
        if vacuum and not layout.is_external:
            # VACUUM may renumber implicit rowids, which key the spatial rows.
            self.rebuild_spatial(name)
        logger.info("Optimized index %s", name, extra={"index": name, "vacuum": vacuum})

    def rebuild_fts(self, name: str) -> None:
        """Rebuild the full-text index from its content source."""
        layout = self._load_layout(name)
        with self._guard("rebuild_fts", name), self._db.transaction() as conn:
            conn.execute(f"INSERT INTO {layout.fts_table} ({layout.fts_table}) VALUES ('rebuild')")

    def rebuild_spatial(self, name: str) -> int:
        """Repopulate the spatial table from the stored geo columns."""
        layout = self._load_layout(name)
        count = 0
        with self._guard("rebuild_spatial", name), self._db.transaction() as conn:
            conn.execute(layout.spatial_table_sql())
            conn.execute(f"DELETE FROM {layout.spatial_table}")
            rows = conn.execute(
                f"SELECT {layout.rowid_column} AS row_key, geo_lat, geo_lng, geo_bounds FROM {layout.name} "
                "WHERE geo_lat IS NOT NULL OR geo_bounds IS NOT NULL"
            ).fetchall()
            for row in rows:
                box = _box_from_columns(row["geo_lat"], row["geo_lng"], row["geo_bounds"])
                if box is None:
                    continue
                conn.execute(
                    f"INSERT INTO {layout.spatial_table} (id, minX, maxX, minY, maxY) VALUES (?, ?, ?, ?, ?)",
                    (row["row_key"], *box),
                )
                count += 1
        return count

    def migrate_to_external_content(self, name: str) -> bool:
        """Convert an embedded-content index to external content in one transaction.

        Document ids and content survive; the full-text index is rebuilt from
        the new document table and the spatial table is recreated empty, so
        geo documents must be upserted again afterwards.

        Returns False when the index already uses external content.
        """
        layout = self._load_layout(name)
        if layout.is_external:
            logger.info("Index %s already uses external content", name, extra={"index": name})
            return False

        target = layout.with_mode("external")
        staging = f"{name}_migrating"
        text_columns = target.text_columns
        base_columns = ", ".join(_BASE_COLUMNS)
        base_select = ", ".join(f"d.{column}" for column in _BASE_COLUMNS)
        text_list = ", ".join(text_columns)

        with self._guard("migrate", name, SchemaError), self._db.transaction() as conn:
            conn.execute(f"DROP TABLE IF EXISTS {staging}")
            conn.execute(target.document_table_sql(staging))
            conn.execute(
                f"INSERT INTO {staging} ({base_columns}, {text_list}) "
                f"SELECT {base_select}, {', '.join(f'f.{column}' for column in text_columns)} "
                f"FROM {layout.fts_table} f JOIN {name} d ON d.id = f.id ORDER BY d.rowid"
            )
            conn.execute(
                f"INSERT INTO {staging} ({base_columns}) "
                f"SELECT {base_select} FROM {name} d WHERE d.id NOT IN (SELECT id FROM {staging}) ORDER BY d.rowid"
            )
            migrated = conn.execute(f"SELECT COUNT(*) FROM {staging}").fetchone()[0]

            for table in (layout.vocab_table, layout.fts_table, layout.spatial_table, name):
                conn.execute(f"DROP TABLE IF EXISTS {table}")
            conn.execute(f"ALTER TABLE {staging} RENAME TO {name}")
            for statement in target.document_indexes_sql():
                conn.execute(statement)
            conn.execute(target.fts_table_sql())
            conn.execute(f"INSERT INTO {target.fts_table} ({target.fts_table}) VALUES ('rebuild')")
            self._create_vocab(conn, target)
            conn.execute(target.spatial_table_sql())
            self._write_meta(conn, target)

        self._layouts[name] = target
        logger.info(
            "Migrated index %s to external content",
            name,
            extra={"index": name, "documents": migrated},
        )
        return True

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_index_stats(self, name: str) -> dict[str, Any]:
        layout = self._load_layout(name)
        with self._guard("stats", name), self._db.connection() as conn:
            document_count = conn.execute(f"SELECT COUNT(*) FROM {name}").fetchone()[0]
            chunk_count = conn.execute(f"SELECT COUNT(*) FROM {name} WHERE parent_id IS NOT NULL").fetchone()[0]
            languages = {
                row[0]: row[1]
                for row in conn.execute(
                    f"SELECT language, COUNT(*) FROM {name} WHERE language IS NOT NULL GROUP BY language"
                )
            }
            types = {row[0]: row[1] for row in conn.execute(f"SELECT type, COUNT(*) FROM {name} GROUP BY type")}
            spatial_count = None
            if self._table_exists(conn, layout.spatial_table):
                spatial_count = conn.execute(f"SELECT COUNT(*) FROM {layout.spatial_table}").fetchone()[0]

        INDEX_DOC_COUNT.labels(index=name).set(document_count)
        return {
            "name": name,
            "document_count": document_count,
            "chunk_count": chunk_count,
            "languages": languages,
            "types": types,
            "spatial_count": spatial_count,
            "schema_mode": layout.schema_mode,
            "ranking_mode": layout.ranking_mode,
            "fields": {field: settings.model_dump() for field, settings in layout.fields.items()},
        }

    def _index_names(self) -> list[str]:
        with self._guard("list_indices", None), self._db.connection() as conn:
            tables = {
                row[0]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
                )
            }
        return sorted(
            table
            for table in tables
            if f"{table}_fts" in tables and not table.lower().endswith(RESERVED_SUFFIXES)
        )

    def list_indices(self) -> list[dict[str, Any]]:
        """Every index in the database with a short stats summary."""
        summaries = []
        for name in self._index_names():
            stats = self.get_index_stats(name)
            summaries.append(
                {
                    "name": name,
                    "document_count": stats["document_count"],
                    "schema_mode": stats["schema_mode"],
                    "ranking_mode": stats["ranking_mode"],
                    "has_spatial": stats["spatial_count"] is not None,
                }
            )
        return summaries

    def get_indexed_terms(
        self,
        name: str | None = None,
        min_frequency: int = 2,
        limit: int = 10000,
    ) -> dict[str, int]:
        """Indexed terms with their document frequency, most frequent first.

        Without ``name`` the frequencies are summed over every index. Unknown
        indices yield an empty mapping.
        """
        if name is not None:
            try:
                names = [self._load_layout(name).name]
            except IndexNotFoundError:
                logger.debug("No terms for missing index %s", name, extra={"index": name})
                return {}
        else:
            names = self._index_names()

        totals: dict[str, int] = {}
        for index_name in names:
            layout = self._load_layout(index_name)
            with self._guard("indexed_terms", index_name), self._db.connection() as conn:
                if not self._table_exists(conn, layout.vocab_table):
                    self._create_vocab(conn, layout)
                rows = conn.execute(
                    f"SELECT term, doc FROM {layout.vocab_table} WHERE doc >= ? ORDER BY doc DESC, term ASC LIMIT ?",
                    (min_frequency, limit),
                ).fetchall()
            for term, frequency in rows:
                totals[term] = totals.get(term, 0) + int(frequency)

        ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))[:limit]
        return dict(ranked)
