"""Document indexing pipeline for a single index.

The indexer turns application documents into storage rows: it keeps the
configured fields, derives the full-text values (including the boost-repeated
token stream of single-column indices), splits long ``content`` text into
chunk documents and writes everything through ``SqliteStorage``. Writes are
either immediate or buffered until ``batch_size`` documents are queued.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Any

from terrasearch.config import Settings
from terrasearch.domain.models import Document, ProcessedDocument
from terrasearch.exceptions import IndexingError, TerraSearchError
from terrasearch.observability.metrics import INDEXED_DOCUMENTS
from terrasearch.search.analyzers import Analyzer
from terrasearch.search.chunking import chunk_text
from terrasearch.search.indexing_utils import build_searchable_text, field_text, stored_content
from terrasearch.search.schema import validate_index_name
from terrasearch.search.sqlite_storage import SqliteStorage


logger = logging.getLogger(__name__)

CHUNKED_FIELD = "content"


@dataclass(frozen=True)
class BatchResult:
    """Outcome of an ``index_batch`` or ``rebuild`` run."""

    total: int
    indexed: int
    failed: int
    errors: tuple[dict[str, str | None], ...] = field(default_factory=tuple)


def chunk_id(parent_id: str, index: int) -> str:
    return f"{parent_id}#chunk{index}"


class Indexer:
    """Indexes documents into one named index of a ``SqliteStorage``."""

    def __init__(
        self,
        storage: SqliteStorage,
        index_name: str,
        *,
        settings: Settings | None = None,
        analyzer: Analyzer | None = None,
        field_config: Mapping[str, Any] | None = None,
        on_write: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = settings or storage.settings
        self.storage = storage
        self.index_name = validate_index_name(index_name)
        self.analyzer = analyzer or storage.analyzer
        self.batch_size = settings.batch_size
        self.auto_flush = settings.auto_flush
        self.chunk_size = settings.chunk_size
        self.chunk_overlap = settings.chunk_overlap
        self._on_write = on_write
        self._clock = clock
        self._queue: list[list[ProcessedDocument]] = []
        self._lock = threading.RLock()
        self._ensure_index(field_config)

    def _ensure_index(self, field_config: Mapping[str, Any] | None) -> None:
        if self.storage.index_exists(self.index_name):
            self.storage.ensure_spatial_table_exists(self.index_name)
        else:
            self.storage.create_index(self.index_name, field_config)
        self.layout = self.storage.get_layout(self.index_name)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_document(self, document: Document | Mapping[str, Any]) -> list[ProcessedDocument]:
        """Storage rows for one document: the parent first, then its chunks.

        Raises:
            IndexingError: wrapping any validation or analysis failure
        """
        raw_id = document.get("id") if isinstance(document, Mapping) else getattr(document, "id", None)
        try:
            return self._process(Document.from_input(document))
        except Exception as e:
            raise IndexingError(
                f"Failed to process document {raw_id!r}: {e}",
                document_id=str(raw_id) if raw_id is not None else None,
            ) from e

    def _process(self, doc: Document) -> list[ProcessedDocument]:
        fields = self.layout.fields
        content = stored_content(doc.content, fields)
        texts: dict[str, str] = {}
        for name, settings in fields.items():
            if settings.index and (text := field_text(doc.content.get(name))):
                texts[name] = text

        metadata = dict(doc.metadata)
        indexed_at = int(self._clock())
        main_text = doc.content.get(CHUNKED_FIELD)
        chunks = []
        if isinstance(main_text, str) and len(main_text) > self.chunk_size:
            chunks = chunk_text(main_text, self.chunk_size, self.chunk_overlap)
            metadata["chunked"] = True
            metadata["chunks"] = len(chunks)

        parent = ProcessedDocument(
            id=doc.id,
            content=content,
            metadata=metadata,
            language=doc.language,
            type=doc.type,
            timestamp=doc.timestamp,
            geo=doc.geo,
            geo_bounds=doc.geo_bounds,
            indexed_at=indexed_at,
            search_fields=texts,
            searchable_text=build_searchable_text(texts, fields, self.analyzer, doc.language),
        )
        rows = [parent]

        for index, chunk in enumerate(chunks):
            chunk_texts = dict(texts)
            if CHUNKED_FIELD in texts:
                chunk_texts[CHUNKED_FIELD] = chunk.text
            rows.append(
                ProcessedDocument(
                    id=chunk_id(doc.id, index),
                    content={**content, CHUNKED_FIELD: chunk.text},
                    metadata={
                        **metadata,
                        "chunk_index": index,
                        "is_chunk": True,
                        "parent_route": content.get("route", ""),
                    },
                    language=doc.language,
                    type=doc.type,
                    timestamp=doc.timestamp,
                    geo=doc.geo,
                    geo_bounds=doc.geo_bounds,
                    indexed_at=indexed_at,
                    parent_id=doc.id,
                    chunk_index=index,
                    is_chunk=True,
                    search_fields=chunk_texts,
                    searchable_text=build_searchable_text(chunk_texts, fields, self.analyzer, doc.language),
                )
            )
        return rows

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _notify(self) -> None:
        if self._on_write is not None:
            self._on_write(self.index_name)

    def _write(self, groups: list[list[ProcessedDocument]]) -> tuple[int, list[dict[str, str | None]]]:
        """Write document groups in batches, isolating failures per document."""
        written = 0
        errors: list[dict[str, str | None]] = []
        for start in range(0, len(groups), self.batch_size):
            batch = groups[start : start + self.batch_size]
            try:
                self.storage.insert_batch(
                    self.index_name,
                    [row for group in batch for row in group],
                    replace_children=True,
                )
                written += len(batch)
                continue
            except TerraSearchError as e:
                logger.warning(
                    "Batch write to %s failed, retrying documents individually: %s",
                    self.index_name,
                    e,
                    extra={"index": self.index_name, "batch_size": len(batch)},
                )
            for group in batch:
                try:
                    self.storage.insert_batch(self.index_name, group, replace_children=True)
                    written += 1
                except TerraSearchError as e:
                    errors.append({"id": group[0].id, "error": str(e)})
        if written:
            INDEXED_DOCUMENTS.labels(index=self.index_name, status="success").inc(written)
            self._notify()
        if errors:
            INDEXED_DOCUMENTS.labels(index=self.index_name, status="failed").inc(len(errors))
        return written, errors

    def index(self, document: Document | Mapping[str, Any]) -> None:
        """Index one document, immediately or through the batch buffer."""
        rows = self.process_document(document)
        doc_id = rows[0].id
        if self.auto_flush:
            try:
                self.storage.insert_batch(self.index_name, rows, replace_children=True)
            except TerraSearchError as e:
                INDEXED_DOCUMENTS.labels(index=self.index_name, status="failed").inc()
                logger.error("Failed to index document %s: %s", doc_id, e, extra={"index": self.index_name})
                raise IndexingError(f"Failed to index document {doc_id!r}: {e}", document_id=doc_id) from e
            INDEXED_DOCUMENTS.labels(index=self.index_name, status="success").inc()
            self._notify()
            logger.debug("Indexed document %s", doc_id, extra={"index": self.index_name, "rows": len(rows)})
            return

        with self._lock:
            self._queue.append(rows)
            should_flush = len(self._queue) >= self.batch_size
        if should_flush:
            self.flush()

    def index_batch(self, documents: Iterable[Document | Mapping[str, Any]]) -> BatchResult:
        """Index many documents; a failing document never aborts the others."""
        groups: list[list[ProcessedDocument]] = []
        errors: list[dict[str, str | None]] = []
        total = 0
        for document in documents:
            total += 1
            try:
                groups.append(self.process_document(document))
            except IndexingError as e:
                errors.append({"id": e.document_id, "error": str(e)})

        written, write_errors = self._write(groups)
        errors.extend(write_errors)
        if errors:
            logger.warning(
                "Some documents failed to index into %s",
                self.index_name,
                extra={"index": self.index_name, "errors": errors[:20]},
            )
        logger.info(
            "Batch indexed into %s",
            self.index_name,
            extra={"index": self.index_name, "total": total, "success": written, "failed": len(errors)},
        )
        return BatchResult(total=total, indexed=written, failed=len(errors), errors=tuple(errors))

    def flush(self) -> int:
        """Write every buffered document. Returns how many were written."""
        with self._lock:
            groups, self._queue = self._queue, []
        if not groups:
            return 0
        written, errors = self._write(groups)
        for error in errors:
            logger.error(
                "Dropped buffered document %s: %s",
                error["id"],
                error["error"],
                extra={"index": self.index_name},
            )
        return written

    def update(self, document: Document | Mapping[str, Any]) -> None:
        """Replace an existing document; the input must carry an ``id``."""
        doc_id = document.get("id") if isinstance(document, Mapping) else getattr(document, "id", None)
        if doc_id is None or doc_id == "":
            raise IndexingError("Document must have an id for update")
        rows = self.process_document(document)
        try:
            self.storage.insert_batch(self.index_name, rows, replace_children=True)
        except TerraSearchError as e:
            raise IndexingError(f"Failed to update document {doc_id!r}: {e}", document_id=str(doc_id)) from e
        self._notify()
        logger.debug("Updated document %s", doc_id, extra={"index": self.index_name})

    def delete(self, doc_id: str) -> bool:
        """Delete a document and its chunks."""
        try:
            self.storage.delete_children(self.index_name, doc_id)
            deleted = self.storage.delete(self.index_name, doc_id)
        except TerraSearchError as e:
            raise IndexingError(f"Failed to delete document {doc_id!r}: {e}", document_id=doc_id) from e
        self._notify()
        return deleted

    def clear(self) -> None:
        """Drop and recreate the index with the same layout, discarding the buffer."""
        layout = self.layout
        try:
            self.storage.drop_index(self.index_name)
            self.storage.create_index(
                self.index_name,
                dict(layout.fields),
                schema_mode=layout.schema_mode,
                ranking_mode=layout.ranking_mode,
            )
        except TerraSearchError as e:
            raise IndexingError(f"Failed to clear index {self.index_name}: {e}") from e
        with self._lock:
            self._queue = []
        self.layout = self.storage.get_layout(self.index_name)
        self._notify()
        logger.info("Cleared index %s", self.index_name, extra={"index": self.index_name})

    def rebuild(self, documents: Iterable[Document | Mapping[str, Any]]) -> BatchResult:
        self.clear()
        result = self.index_batch(documents)
        self.optimize()
        return result

    def optimize(self, *, vacuum: bool = False) -> None:
        """Flush the buffer, then compact the full-text index."""
        self.flush()
        try:
            self.storage.optimize(self.index_name, vacuum=vacuum)
        except TerraSearchError as e:
            raise IndexingError(f"Failed to optimize index {self.index_name}: {e}") from e

    def get_stats(self) -> dict[str, Any]:
        stats = self.storage.get_index_stats(self.index_name)
        stats["pending"] = self.pending
        return stats
