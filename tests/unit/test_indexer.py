"""Unit tests for the document indexing pipeline."""

import pytest

from terrasearch.config import Settings
from terrasearch.exceptions import IndexingError
from terrasearch.search.indexer import BatchResult, Indexer, chunk_id


LONG_CONTENT = " ".join(f"Paragraph {i} describes the roastery and its espresso blends." for i in range(12))


@pytest.fixture
def chunk_settings() -> Settings:
    return Settings(
        _env_file=None,
        chunk_size=200,
        chunk_overlap=40,
        batch_size=2,
        cache_cleanup_probability=0.0,
        log_json=False,
    )


@pytest.fixture
def writes() -> list[str]:
    return []


@pytest.fixture
def indexer(storage, chunk_settings, writes, clock):
    return Indexer(storage, "places", settings=chunk_settings, on_write=writes.append, clock=clock)


@pytest.fixture
def buffered(storage, chunk_settings):
    settings = chunk_settings.model_copy(update={"auto_flush": False})
    return Indexer(storage, "places", settings=settings)


@pytest.mark.unit
class TestIndexing:
    """Tests for single-document indexing."""

    def test_index_creates_missing_index(self, storage, indexer):
        assert storage.index_exists("places")
        assert indexer.layout.name == "places"

    def test_index_document(self, storage, indexer, writes, clock):
        indexer.index({"id": "roastery", "content": {"title": "Small roastery", "content": "Espresso daily."}})
        doc = storage.get_document("places", "roastery")
        assert doc["document"] == {"title": "Small roastery", "content": "Espresso daily."}
        assert doc["indexed_at"] == int(clock())
        assert writes == ["places"]

    def test_unconfigured_fields_are_not_stored(self, storage, indexer):
        indexer.index({"id": "roastery", "content": {"title": "Roastery", "secret": "hidden"}})
        assert "secret" not in storage.get_document("places", "roastery")["document"]

    def test_invalid_document_raises(self, indexer):
        with pytest.raises(IndexingError) as exc_info:
            indexer.index({"id": "broken", "content": {"title": "Nowhere"}, "geo": {"lat": 120, "lng": 0}})
        assert exc_info.value.document_id == "broken"

    def test_update_requires_id(self, indexer):
        with pytest.raises(IndexingError):
            indexer.update({"content": {"title": "No id"}})

    def test_update_replaces_document(self, storage, indexer):
        indexer.index({"id": "roastery", "content": {"title": "Roastery"}})
        indexer.update({"id": "roastery", "content": {"title": "Tea room"}})
        assert storage.get_document("places", "roastery")["document"]["title"] == "Tea room"
        assert storage.count("places", "roastery") == 0


@pytest.mark.unit
class TestChunking:
    """Tests for splitting long content into chunk documents."""

    def test_long_content_is_chunked(self, storage, indexer):
        indexer.index({"id": "guide", "content": {"title": "Roastery guide", "content": LONG_CONTENT, "route": "/g"}})
        parent = storage.get_document("places", "guide")
        chunks = parent["metadata"]["chunks"]
        assert parent["metadata"]["chunked"] is True
        assert chunks > 1
        assert storage.get_index_stats("places")["chunk_count"] == chunks

        first = storage.get_document("places", chunk_id("guide", 0))
        assert first["parent_id"] == "guide"
        assert first["metadata"]["is_chunk"] is True
        assert first["metadata"]["chunk_index"] == 0
        assert first["metadata"]["parent_route"] == "/g"
        assert len(first["document"]["content"]) <= 200
        assert first["document"]["title"] == "Roastery guide"

    def test_short_content_is_not_chunked(self, storage, indexer):
        indexer.index({"id": "note", "content": {"content": "Short note."}})
        assert storage.get_index_stats("places")["chunk_count"] == 0
        assert "chunked" not in storage.get_document("places", "note")["metadata"]

    def test_reindexing_shorter_content_drops_stale_chunks(self, storage, indexer):
        indexer.index({"id": "guide", "content": {"content": LONG_CONTENT}})
        indexer.index({"id": "guide", "content": {"content": "Now it is short."}})
        assert storage.get_index_stats("places")["chunk_count"] == 0
        assert storage.get_document("places", chunk_id("guide", 0)) is None

    def test_delete_removes_chunks(self, storage, indexer, writes):
        indexer.index({"id": "guide", "content": {"content": LONG_CONTENT}})
        assert indexer.delete("guide") is True
        assert storage.count("places") == 0
        assert indexer.delete("guide") is False
        assert writes == ["places", "places", "places"]


@pytest.mark.unit
class TestBatches:
    """Tests for batch and buffered indexing."""

    def test_index_batch_reports_failures(self, storage, indexer):
        result = indexer.index_batch(
            [
                {"id": "a", "content": {"title": "Alpha cafe"}},
                {"id": "b", "content": {"title": "Broken"}, "geo": {"lat": 0, "lng": 500}},
                {"id": "c", "content": {"title": "Gamma cafe"}},
            ]
        )
        assert isinstance(result, BatchResult)
        assert (result.total, result.indexed, result.failed) == (3, 2, 1)
        assert result.errors[0]["id"] == "b"
        assert storage.count("places", "cafe") == 2

    def test_index_batch_spans_several_writes(self, storage, indexer, writes):
        documents = [{"id": f"doc{i}", "content": {"title": f"Cafe {i}"}} for i in range(5)]
        result = indexer.index_batch(documents)
        assert result.indexed == 5
        assert storage.count("places") == 5
        assert writes == ["places"]

    def test_buffer_flushes_at_batch_size(self, storage, buffered):
        buffered.index({"id": "a", "content": {"title": "Alpha"}})
        assert buffered.pending == 1
        assert storage.count("places") == 0

        buffered.index({"id": "b", "content": {"title": "Beta"}})
        assert buffered.pending == 0
        assert storage.count("places") == 2

    def test_manual_flush(self, storage, buffered):
        buffered.index({"id": "a", "content": {"title": "Alpha"}})
        assert buffered.flush() == 1
        assert buffered.flush() == 0
        assert storage.count("places") == 1

    def test_optimize_flushes_buffer(self, storage, buffered):
        buffered.index({"id": "a", "content": {"title": "Alpha"}})
        buffered.optimize()
        assert storage.count("places") == 1


@pytest.mark.unit
class TestMaintenance:
    """Tests for clear, rebuild and stats."""

    def test_clear_keeps_layout(self, storage, chunk_settings):
        indexer = Indexer(storage, "notes", settings=chunk_settings, field_config={"title": 2.0, "body": 1.0})
        indexer.index({"id": "a", "content": {"title": "Alpha", "body": "Text"}})
        indexer.clear()
        assert storage.count("notes") == 0
        assert list(storage.get_layout("notes").fields) == ["title", "body"]

    def test_clear_discards_buffer(self, buffered, storage):
        buffered.index({"id": "a", "content": {"title": "Alpha"}})
        buffered.clear()
        assert buffered.pending == 0
        assert buffered.flush() == 0

    def test_rebuild(self, storage, indexer):
        indexer.index({"id": "old", "content": {"title": "Old"}})
        result = indexer.rebuild([{"id": "new", "content": {"title": "New"}}])
        assert result.indexed == 1
        assert storage.get_document("places", "old") is None
        assert storage.get_document("places", "new") is not None

    def test_stats_include_pending(self, buffered):
        buffered.index({"id": "a", "content": {"title": "Alpha"}})
        stats = buffered.get_stats()
        assert stats["pending"] == 1
        assert stats["document_count"] == 0
