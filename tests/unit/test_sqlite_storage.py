"""Unit tests for the SQLite FTS5 / R-tree storage engine."""

from __future__ import annotations

import pytest

from terrasearch.exceptions import IndexNotFoundError, InvalidIdentifierError, SchemaError, StorageError
from terrasearch.search.sqlite_storage import SqliteStorage


PARIS = {"lat": 48.8566, "lng": 2.3522}
BERLIN = {"lat": 52.52, "lng": 13.405}


def _ids(response) -> list[str]:
    return [row["id"] for row in response["results"]]


@pytest.mark.unit
class TestIndexLifecycle:
    """Tests for creating, inspecting and dropping indices."""

    def test_create_index_builds_every_table(self, storage):
        layout = storage.create_index("places")
        assert layout.schema_mode == "external"
        assert layout.ranking_mode == "weighted"
        with storage.connection.connection() as conn:
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        assert {"places", "places_fts", "places_fts_vocab", "places_spatial", "places_meta"} <= tables

    def test_create_is_idempotent(self, storage):
        storage.create_index("places", {"title": 2.0})
        layout = storage.create_index("places", {"body": 1.0})
        assert list(layout.fields) == ["title"]

    @pytest.mark.parametrize("name", ["bad-name", "1places", "places_fts", "sqlite_master", "", "x" * 65])
    def test_invalid_names_rejected(self, storage, name):
        with pytest.raises(InvalidIdentifierError):
            storage.create_index(name)

    def test_invalid_field_config(self, storage):
        with pytest.raises(SchemaError):
            storage.create_index("places", {"title": {"boost": -1}})

    def test_drop_index(self, places):
        assert places.drop_index("places") is True
        assert places.drop_index("places") is False
        assert not places.index_exists("places")

    def test_missing_index_raises_storage_error(self, storage):
        with pytest.raises(IndexNotFoundError) as exc_info:
            storage.search("nowhere", "coffee")
        assert isinstance(exc_info.value, StorageError)
        assert exc_info.value.index_name == "nowhere"

    def test_layout_survives_reopen(self, tmp_path, settings):
        db_path = tmp_path / "search.db"
        first = SqliteStorage(db_path, settings=settings)
        first.create_index("notes", {"title": 4.0, "body": 1.0}, ranking_mode="boosted")
        first.close()

        second = SqliteStorage(db_path, settings=settings)
        layout = second.get_layout("notes")
        second.close()
        assert layout.ranking_mode == "boosted"
        assert layout.fields["title"].boost == 4.0


@pytest.mark.unit
class TestDocuments:
    """Tests for upsert, update and delete."""

    def test_get_document(self, places):
        doc = places.get_document("places", "paris-cafe")
        assert doc["document"]["title"] == "Cozy cafe in Paris"
        assert doc["metadata"]["rating"] == 4.5
        assert doc["geo"] == {"lat": 48.8606, "lng": 2.3376}
        assert places.get_document("places", "missing") is None

    def test_upsert_replaces_text(self, places):
        places.insert("places", {"id": "paris-cafe", "content": {"title": "Tea house in Paris"}})
        assert "paris-cafe" not in _ids(places.search("places", "croissants"))
        assert _ids(places.search("places", "tea")) == ["paris-cafe"]
        assert places.count("places") == 5

    def test_update_forces_id(self, places):
        places.update("places", "london-pub", {"id": "ignored", "content": {"title": "Gin bar"}})
        assert places.get_document("places", "ignored") is None
        assert _ids(places.search("places", "gin")) == ["london-pub"]

    def test_delete_removes_text_and_spatial_rows(self, places):
        assert places.delete("places", "paris-cafe") is True
        assert places.delete("places", "paris-cafe") is False
        assert "paris-cafe" not in _ids(places.search("places", "coffee"))
        near = places.search("places", {"geoFilters": {"near": {"point": PARIS, "radius": 10, "units": "km"}}})
        assert near["total"] == 0
        assert places.get_index_stats("places")["spatial_count"] == 3

    def test_invalid_document_fails_whole_batch(self, places):
        with pytest.raises(ValueError):
            places.insert_batch(
                "places",
                [
                    {"id": "new-one", "content": {"title": "New place"}},
                    {"id": "bad", "content": {"title": "Bad"}, "geo": {"lat": 200, "lng": 0}},
                ],
            )
        assert places.get_document("places", "new-one") is None

    def test_delete_children(self, places):
        places.insert_batch(
            "places",
            [
                {"id": "guide#chunk0", "content": {"content": "part one"}},
            ],
        )
        with places.connection.transaction() as conn:
            conn.execute("UPDATE places SET parent_id = 'coffee-guide' WHERE id = 'guide#chunk0'")
        assert places.delete_children("places", "coffee-guide") == 1
        assert places.get_document("places", "guide#chunk0") is None


@pytest.mark.unit
class TestTextSearch:
    """Tests for ranked full-text queries."""

    def test_title_matches_rank_first(self, places):
        response = places.search("places", "coffee")
        assert response["total"] == 4
        assert _ids(response)[0] == "coffee-guide"
        scores = [row["score"] for row in response["results"]]
        assert scores == sorted(scores, reverse=True)
        assert all(score > 0 for score in scores)

    def test_stemming(self, places):
        assert _ids(places.search("places", "brewing")) == ["coffee-guide"]

    def test_total_is_independent_of_limit(self, places):
        first = places.search("places", {"query": "coffee", "limit": 2})
        second = places.search("places", {"query": "coffee", "limit": 2, "offset": 2})
        assert first["total"] == second["total"] == 4
        assert len(first["results"]) == len(second["results"]) == 2
        assert not set(_ids(first)) & set(_ids(second))

    def test_search_time_reported(self, places):
        assert places.search("places", "coffee")["search_time"] >= 0

    def test_filters(self, places):
        response = places.search("places", {"query": "coffee", "filters": {"type": "place"}})
        assert sorted(_ids(response)) == ["london-pub", "paris-cafe"]

    def test_metadata_filters(self, places):
        response = places.search(
            "places",
            {"filters": [{"field": "metadata.rating", "operator": ">=", "value": 4.5}], "sort": {"id": "asc"}},
        )
        assert _ids(response) == ["berlin-bakery", "fiji-resort", "paris-cafe"]

    def test_contains_on_json_array(self, places):
        response = places.search(
            "places",
            {"filters": [{"field": "metadata.tags", "operator": "contains", "value": "breakfast"}]},
        )
        assert sorted(_ids(response)) == ["berlin-bakery", "paris-cafe"]

    def test_sort_by_timestamp(self, places):
        response = places.search("places", {"query": "coffee", "sort": {"timestamp": "desc"}})
        assert _ids(response) == ["coffee-guide", "berlin-bakery", "london-pub", "paris-cafe"]

    def test_language_filter(self, places):
        assert places.search("places", {"query": "coffee", "language": "de"})["total"] == 0

    def test_field_restriction(self, places):
        assert _ids(places.search("places", {"query": "coffee", "fields": ["title"]})) == ["coffee-guide"]

    def test_field_weight_rerank(self, places):
        response = places.search("places", {"query": "bread", "field_weights": {"content": 5.0}})
        assert _ids(response) == ["berlin-bakery"]
        assert response["results"][0]["score"] > 0

    def test_count(self, places):
        assert places.count("places", "coffee") == 4
        assert places.count("places") == 5


@pytest.mark.unit
class TestGeoSearch:
    """Tests for radius, bounds and distance queries."""

    def test_near_radius(self, places):
        response = places.search("places", {"geoFilters": {"near": {"point": PARIS, "radius": 5, "units": "km"}}})
        assert _ids(response) == ["paris-cafe"]
        assert response["results"][0]["distance"] < 5000

    def test_near_orders_by_distance(self, places):
        london = {"lat": 51.5072, "lng": -0.1276}
        response = places.search("places", {"geoFilters": {"near": {"point": london, "radius": 500, "units": "km"}}})
        assert _ids(response) == ["london-pub", "paris-cafe"]
        distances = [row["distance"] for row in response["results"]]
        assert distances == sorted(distances)

    def test_near_combined_with_text(self, places):
        response = places.search(
            "places",
            {"query": "bread", "geoFilters": {"near": {"point": BERLIN, "radius": 50, "units": "km"}}},
        )
        assert _ids(response) == ["berlin-bakery"]

    def test_bounds(self, places):
        bounds = {"min_lat": 45.0, "max_lat": 55.0, "min_lng": -5.0, "max_lng": 15.0}
        response = places.search("places", {"geoFilters": {"bounds": bounds}})
        assert sorted(_ids(response)) == ["berlin-bakery", "london-pub", "paris-cafe"]

    def test_antimeridian_bounds(self, places):
        bounds = {"min_lat": -20.0, "max_lat": -15.0, "min_lng": 175.0, "max_lng": -175.0}
        assert _ids(places.search("places", {"geoFilters": {"bounds": bounds}})) == ["fiji-resort"]

    def test_dateline_area_outside_far_bounds(self, places):
        bounds = {"min_lat": -18.0, "max_lat": -16.5, "min_lng": 0.0, "max_lng": 10.0}
        response = places.search("places", {"geoFilters": {"bounds": bounds}})
        assert _ids(response) == []
        assert response["total"] == 0
        assert places.count("places", {"geoFilters": {"bounds": bounds}}) == 0

    def test_dateline_area_matches_eastern_part(self, places):
        bounds = {"min_lat": -18.0, "max_lat": -17.0, "min_lng": -179.5, "max_lng": -178.0}
        assert _ids(places.search("places", {"geoFilters": {"bounds": bounds}})) == ["fiji-resort"]

    def test_dateline_area_near(self, places):
        east = {"point": {"lat": -17.0, "lng": -179.5}, "radius": 100, "units": "km"}
        far = {"point": {"lat": -17.0, "lng": 5.0}, "radius": 100, "units": "km"}
        assert _ids(places.search("places", {"geoFilters": {"near": east}})) == ["fiji-resort"]
        assert _ids(places.search("places", {"geoFilters": {"near": far}})) == []

    def test_distance_sort_puts_missing_geo_last(self, places):
        response = places.search(
            "places",
            {"query": "coffee", "geoFilters": {"distance_sort": {"from": PARIS, "direction": "asc"}}},
        )
        assert _ids(response) == ["paris-cafe", "london-pub", "berlin-bakery", "coffee-guide"]
        assert response["results"][-1]["distance"] is None

    def test_distance_to_area_document(self, places):
        response = places.search(
            "places",
            {"query": "beach", "geoFilters": {"distance_sort": {"from": {"lat": -17.0, "lng": 178.0}}}},
        )
        assert response["results"][0]["distance"] == 0.0

    def test_full_proximity_blend(self, places):
        response = places.search(
            "places",
            {
                "query": "coffee",
                "geoFilters": {"near": {"point": BERLIN, "radius": 2000, "units": "km"}, "distance_weight": 1.0},
            },
        )
        assert _ids(response) == ["berlin-bakery", "paris-cafe", "london-pub"]
        assert response["results"][0]["score"] == pytest.approx(1.0, rel=1e-3)

    def test_spatial_table_recreated_on_demand(self, storage):
        storage.create_index("plain", spatial=False)
        assert storage.get_index_stats("plain")["spatial_count"] is None
        storage.insert("plain", {"id": "a", "content": {"title": "Somewhere"}, "geo": PARIS})
        assert storage.get_index_stats("plain")["spatial_count"] == 1

    def test_ensure_spatial_table(self, storage):
        storage.create_index("plain", spatial=False)
        assert storage.ensure_spatial_table_exists("plain") is True
        assert storage.ensure_spatial_table_exists("plain") is False


@pytest.mark.unit
class TestFacets:
    """Tests for value counts over a query's matches."""

    def test_counts_over_whole_index(self, places):
        facets = places.facets("places", {"facets": ["type"]})
        assert facets == {
            "type": [
                {"value": "place", "count": 3},
                {"value": "article", "count": 1},
                {"value": "shop", "count": 1},
            ]
        }

    def test_counts_follow_query_and_filters(self, places):
        facets = places.facets("places", {"query": "coffee", "filters": {"type": "place"}, "facets": ["type"]})
        assert facets["type"] == [{"value": "place", "count": 2}]

    def test_counts_are_not_limited_to_the_page(self, places):
        facets = places.facets("places", {"query": "coffee", "limit": 1, "facets": ["type"]})
        assert sum(entry["count"] for entry in facets["type"]) == 4

    def test_bare_name_reads_content_field(self, places):
        facets = places.facets("places", {"query": "bakery", "facets": ["title"]})
        assert facets["title"] == [{"value": "Berlin bakery", "count": 1}]

    def test_limit_and_min_count(self, places):
        facets = places.facets(
            "places",
            {"facets": {"type": {"limit": 1}, "metadata.rating": {"min_count": 2}}},
        )
        assert facets["type"] == [{"value": "place", "count": 3}]
        assert facets["metadata.rating"] == []

    def test_geo_restricted_counts(self, places):
        bounds = {"min_lat": 45.0, "max_lat": 55.0, "min_lng": -5.0, "max_lng": 15.0}
        facets = places.facets("places", {"geoFilters": {"bounds": bounds}, "facets": ["type"]})
        assert facets["type"] == [{"value": "place", "count": 2}, {"value": "shop", "count": 1}]

    def test_no_facets_requested(self, places):
        assert places.facets("places", "coffee") == {}


@pytest.mark.unit
class TestMultiIndexSearch:
    """Tests for merged searches across indices."""

    def test_results_are_tagged_and_merged(self, places):
        places.create_index("articles")
        places.insert("articles", {"id": "espresso", "content": {"title": "Espresso and coffee"}})
        response = places.search_multiple(["places", "articles", "missing"], {"query": "coffee", "limit": 10})
        assert response["indices_searched"] == ["places", "articles"]
        assert response["total"] == 5
        assert {row["_index"] for row in response["results"]} == {"places", "articles"}
        scores = [row["score"] for row in response["results"]]
        assert scores == sorted(scores, reverse=True)

    def test_pagination_over_merged_results(self, places):
        places.create_index("articles")
        places.insert("articles", {"id": "espresso", "content": {"title": "Espresso and coffee"}})
        full = places.search_multiple(["places", "articles"], {"query": "coffee", "limit": 5})
        page = places.search_multiple(["places", "articles"], {"query": "coffee", "limit": 2, "offset": 2})
        assert _ids(page) == _ids(full)[2:4]


@pytest.mark.unit
class TestModes:
    """Tests for embedded content, boosted ranking and migration."""

    def test_embedded_index_search(self, storage, place_documents):
        storage.create_index("legacy", schema_mode="embedded")
        storage.insert_batch("legacy", place_documents)
        assert storage.search("legacy", "coffee")["total"] == 4
        storage.insert("legacy", {"id": "paris-cafe", "content": {"title": "Tea house"}})
        assert storage.search("legacy", "coffee")["total"] == 3

    def test_boosted_index_search(self, storage, place_documents):
        storage.create_index("boosted", ranking_mode="boosted")
        storage.insert_batch("boosted", place_documents)
        assert _ids(storage.search("boosted", "brewing")) == ["coffee-guide"]
        assert storage.search("boosted", "coffee")["total"] == 4

    def test_migrate_to_external_content(self, storage, place_documents):
        storage.create_index("legacy", schema_mode="embedded")
        storage.insert_batch("legacy", place_documents)

        assert storage.migrate_to_external_content("legacy") is True
        assert storage.migrate_to_external_content("legacy") is False

        layout = storage.get_layout("legacy")
        assert layout.schema_mode == "external"
        assert storage.count("legacy") == 5
        assert _ids(storage.search("legacy", "brewing")) == ["coffee-guide"]
        assert storage.get_document("legacy", "paris-cafe")["document"]["title"] == "Cozy cafe in Paris"

        assert storage.get_index_stats("legacy")["spatial_count"] == 0
        assert storage.rebuild_spatial("legacy") == 4
        near = storage.search("legacy", {"geoFilters": {"near": {"point": PARIS, "radius": 5, "units": "km"}}})
        assert _ids(near) == ["paris-cafe"]

    def test_migrated_index_accepts_updates(self, storage, place_documents):
        storage.create_index("legacy", schema_mode="embedded")
        storage.insert_batch("legacy", place_documents)
        storage.migrate_to_external_content("legacy")
        storage.insert("legacy", {"id": "coffee-guide", "content": {"title": "Tea guide"}})
        assert "coffee-guide" not in _ids(storage.search("legacy", "brewing"))
        assert _ids(storage.search("legacy", "tea")) == ["coffee-guide"]


@pytest.mark.unit
class TestMaintenance:
    """Tests for optimize, rebuild and diagnostics."""

    def test_optimize_keeps_results(self, places):
        places.optimize("places", vacuum=True)
        assert places.search("places", "coffee")["total"] == 4

    def test_optimize_embedded_with_vacuum_keeps_spatial(self, storage, place_documents):
        storage.create_index("legacy", schema_mode="embedded")
        storage.insert_batch("legacy", place_documents)
        storage.delete("legacy", "paris-cafe")
        storage.optimize("legacy", vacuum=True)
        london = {"lat": 51.5072, "lng": -0.1276}
        near = storage.search("legacy", {"geoFilters": {"near": {"point": london, "radius": 10, "units": "km"}}})
        assert _ids(near) == ["london-pub"]

    def test_rebuild_fts(self, places):
        places.rebuild_fts("places")
        assert places.search("places", "coffee")["total"] == 4

    def test_index_stats(self, places):
        stats = places.get_index_stats("places")
        assert stats["document_count"] == 5
        assert stats["chunk_count"] == 0
        assert stats["types"] == {"article": 1, "place": 3, "shop": 1}
        assert stats["languages"] == {"en": 5}
        assert stats["spatial_count"] == 4

    def test_list_indices(self, places):
        places.create_index("articles")
        names = [entry["name"] for entry in places.list_indices()]
        assert names == ["articles", "places"]

    def test_indexed_terms(self, places):
        terms = places.get_indexed_terms("places", min_frequency=3)
        assert terms
        assert all(frequency >= 3 for frequency in terms.values())
        assert max(terms.values()) == 4

    def test_indexed_terms_for_missing_index(self, storage):
        assert storage.get_indexed_terms("missing") == {}
