"""Shared test fixtures and configuration."""

from __future__ import annotations

import os
import random

import pytest

from terrasearch.config import Settings, get_settings
from terrasearch.search.sqlite_storage import SqliteStorage
from terrasearch.search_engine import SearchEngine


class ManualClock:
    """Deterministic clock for TTL and timestamp assertions."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Drop TERRASEARCH_* variables so tests never see the host configuration."""
    for key in list(os.environ):
        if key.upper().startswith("TERRASEARCH_"):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, cache_cleanup_probability=0.0, log_json=False)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def storage(settings):
    store = SqliteStorage(settings=settings)
    yield store
    store.close()


@pytest.fixture
def engine(settings, clock, rng):
    search_engine = SearchEngine(settings, clock=clock, random_source=rng)
    yield search_engine
    search_engine.close()


@pytest.fixture
def place_documents() -> list[dict]:
    """Small corpus with points, a dateline-crossing area and one document without geo."""
    return [
        {
            "id": "paris-cafe",
            "content": {
                "title": "Cozy cafe in Paris",
                "content": "Fresh coffee and croissants near the Louvre.",
                "route": "/places/paris-cafe",
            },
            "type": "place",
            "language": "en",
            "timestamp": 1_700_000_100,
            "metadata": {"rating": 4.5, "tags": ["cafe", "breakfast"]},
            "geo": {"lat": 48.8606, "lng": 2.3376},
        },
        {
            "id": "london-pub",
            "content": {
                "title": "Historic pub in London",
                "content": "Real ale and coffee by the Thames.",
                "route": "/places/london-pub",
            },
            "type": "place",
            "language": "en",
            "timestamp": 1_700_000_200,
            "metadata": {"rating": 4.1, "tags": ["pub"]},
            "geo": {"lat": 51.5072, "lng": -0.1276},
        },
        {
            "id": "berlin-bakery",
            "content": {
                "title": "Berlin bakery",
                "content": "Bread, pretzels and strong coffee every morning.",
                "route": "/places/berlin-bakery",
            },
            "type": "shop",
            "language": "en",
            "timestamp": 1_700_000_300,
            "metadata": {"rating": 4.8, "tags": ["bakery", "breakfast"]},
            "geo": {"lat": 52.52, "lng": 13.405},
        },
        {
            "id": "coffee-guide",
            "content": {
                "title": "Coffee brewing guide",
                "content": "How to brew coffee with a French press.",
                "route": "/articles/coffee-guide",
            },
            "type": "article",
            "language": "en",
            "timestamp": 1_700_000_400,
            "metadata": {"rating": 3.9},
        },
        {
            "id": "fiji-resort",
            "content": {
                "title": "Island resort",
                "content": "Beach huts on the dateline.",
                "route": "/places/fiji-resort",
            },
            "type": "place",
            "language": "en",
            "timestamp": 1_700_000_500,
            "metadata": {"rating": 4.9},
            "geo_bounds": {"min_lat": -18.5, "max_lat": -16.0, "min_lng": 177.0, "max_lng": -179.0},
        },
    ]


@pytest.fixture
def places(storage, place_documents):
    """Storage with the ``places`` index populated."""
    storage.create_index("places")
    storage.insert_batch("places", place_documents)
    return storage
