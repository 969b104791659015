"""terrasearch: embeddable SQLite full-text and geographic search."""

from terrasearch.config import Settings, get_settings
from terrasearch.domain.models import Document, QueryOptions, SearchHit, SearchResults
from terrasearch.exceptions import (
    CacheError,
    IndexingError,
    IndexNotFoundError,
    InvalidIdentifierError,
    SchemaError,
    StorageError,
    TerraSearchError,
    ValidationError,
)
from terrasearch.geo import GeoBounds, GeoPoint
from terrasearch.search.indexer import BatchResult, Indexer
from terrasearch.search.sqlite_storage import SqliteStorage
from terrasearch.search_engine import SearchEngine
from terrasearch.services.query_cache import QueryCache


__version__ = "0.1.0"

__all__ = [
    "BatchResult",
    "CacheError",
    "Document",
    "GeoBounds",
    "GeoPoint",
    "IndexNotFoundError",
    "Indexer",
    "IndexingError",
    "InvalidIdentifierError",
    "QueryCache",
    "QueryOptions",
    "SchemaError",
    "SearchEngine",
    "SearchHit",
    "SearchResults",
    "Settings",
    "SqliteStorage",
    "StorageError",
    "TerraSearchError",
    "ValidationError",
    "__version__",
    "get_settings",
]
