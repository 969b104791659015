"""End-to-end tests against an on-disk database.

These exercise what in-memory unit tests cannot: state surviving a
reopen, WAL-mode file handles and concurrent readers sharing one engine.

Run with: uv run pytest -m integration
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from terrasearch.config import Settings
from terrasearch.search.sqlite_storage import SqliteStorage
from terrasearch.search_engine import SearchEngine


PARIS = {"lat": 48.8566, "lng": 2.3522}


@pytest.fixture
def disk_settings(tmp_path):
    return Settings(
        _env_file=None,
        db_path=str(tmp_path / "search.db"),
        cache_cleanup_probability=0.0,
        log_json=False,
    )


@pytest.fixture
def open_engine(disk_settings, clock):
    engines = []

    def _open() -> SearchEngine:
        engine = SearchEngine(disk_settings, clock=clock)
        engines.append(engine)
        return engine

    yield _open
    for engine in engines:
        engine.close()


def _ids(results) -> list[str]:
    return [hit.id for hit in results.results]


@pytest.mark.integration
class TestPersistence:
    """Indexed data and cached results survive closing the engine."""

    def test_documents_survive_reopen(self, open_engine, place_documents):
        with open_engine() as engine:
            result = engine.index_batch("places", place_documents)
            assert result.indexed == 5

        reopened = open_engine()
        results = reopened.search("places", "coffee")
        assert results.total == 4
        assert _ids(results)[0] == "coffee-guide"
        assert reopened.get_stats("places")["index"]["spatial_count"] == 4

    def test_cache_survives_reopen(self, open_engine, place_documents):
        with open_engine() as engine:
            engine.index_batch("places", place_documents)
            first = engine.search("places", "bakery")

        cached = open_engine().search("places", "bakery")
        assert cached.from_cache is True
        assert _ids(cached) == _ids(first)

    def test_geo_queries_after_reopen(self, open_engine, place_documents):
        with open_engine() as engine:
            engine.index_batch("places", place_documents)

        reopened = open_engine()
        near = reopened.search("places", {"geoFilters": {"near": {"point": PARIS, "radius": 1000, "units": "km"}}})
        assert _ids(near) == ["paris-cafe", "london-pub", "berlin-bakery"]
        sorted_hits = reopened.search(
            "places", {"query": "coffee", "geoFilters": {"distance_sort": {"from": PARIS}}}
        )
        assert _ids(sorted_hits)[-1] == "coffee-guide"
        assert sorted_hits.results[-1].distance is None

    def test_dropped_index_stays_dropped(self, open_engine, place_documents):
        with open_engine() as engine:
            engine.index_batch("places", place_documents)
            assert engine.drop_index("places") is True

        assert open_engine().get_stats()["indices"] == []


@pytest.mark.integration
class TestMigration:
    """Upgrading an embedded index in place on disk."""

    def test_migrate_embedded_index(self, disk_settings, open_engine, place_documents):
        legacy = SqliteStorage(disk_settings.db_path, settings=disk_settings)
        legacy.create_index("legacy", schema_mode="embedded")
        legacy.insert_batch("legacy", place_documents)
        before = sorted(row["id"] for row in legacy.search("legacy", "coffee")["results"])
        legacy.close()

        with open_engine() as engine:
            assert engine.migrate_to_external_content("legacy") is True
            assert engine.migrate_to_external_content("legacy") is False
            assert engine.storage.rebuild_spatial("legacy") == 4

        reopened = open_engine()
        stats = reopened.get_stats("legacy")["index"]
        assert stats["schema_mode"] == "external"
        assert stats["document_count"] == 5
        assert stats["spatial_count"] == 4
        assert sorted(_ids(reopened.search("legacy", "coffee"))) == before


@pytest.mark.integration
class TestConcurrency:
    """Threads sharing one engine over a file database."""

    def test_concurrent_searches(self, open_engine, place_documents):
        engine = open_engine()
        engine.index_batch("places", place_documents)
        queries = ["coffee", "bread", "pub", "beach", "croissants"] * 8

        with ThreadPoolExecutor(max_workers=8) as pool:
            totals = list(pool.map(lambda query: engine.search("places", query).total, queries))

        assert totals[:5] == [4, 1, 1, 1, 1]
        assert totals == totals[:5] * 8

    def test_writes_interleaved_with_reads(self, open_engine, place_documents):
        engine = open_engine()
        engine.index_batch("places", place_documents)

        def write(i: int) -> None:
            engine.index("places", {"id": f"extra-{i}", "content": {"title": f"Coffee stand {i}"}})

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(write, range(10)))
            list(pool.map(lambda _: engine.search("places", "coffee"), range(10)))

        engine.flush()
        assert engine.search("places", "coffee", bypass_cache=True).total == 14
