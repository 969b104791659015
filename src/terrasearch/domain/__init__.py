"""Domain layer: documents, query options and result models validated with Pydantic.

Nothing here touches SQLite; storage and search modules consume these models.
"""

from terrasearch.domain.models import (
    DEFAULT_FIELDS,
    DistanceSort,
    Document,
    FacetOptions,
    FacetValue,
    FieldSettings,
    Filter,
    GeoFilters,
    NearFilter,
    ProcessedDocument,
    QueryOptions,
    SearchHit,
    SearchResults,
)


__all__ = [
    "DEFAULT_FIELDS",
    "DistanceSort",
    "Document",
    "FacetOptions",
    "FacetValue",
    "FieldSettings",
    "Filter",
    "GeoFilters",
    "NearFilter",
    "ProcessedDocument",
    "QueryOptions",
    "SearchHit",
    "SearchResults",
]
