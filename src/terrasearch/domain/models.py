"""Domain models for documents, field configuration, query options and results.

Value objects follow the same conventions everywhere:
- Input models coerce loose application input (dicts, shorthands) once, at the boundary
- Result models are immutable (frozen=True)
- ``from_input`` helpers convert pydantic failures into ``terrasearch.ValidationError``
"""

from __future__ import annotations

from collections.abc import Mapping
import re
import time
from typing import Any, Literal
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from terrasearch.exceptions import ValidationError
from terrasearch.geo import GeoBounds, GeoPoint, normalize_unit, parse_bounds, parse_point, to_meters


SortDirection = Literal["asc", "desc"]

FILTER_OPERATORS = frozenset({"=", "!=", ">", "<", ">=", "<=", "in", "not_in", "contains", "exists"})
DOCUMENT_COLUMNS = frozenset({"id", "type", "language", "timestamp", "indexed_at", "parent_id"})
_JSON_PATH_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*$")


def _wrap_validation(model: type[BaseModel], data: Any, what: str) -> Any:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {what}: {exc.errors(include_url=False)}") from exc


def validate_field_reference(field: str) -> str:
    """Accept a document column, ``metadata.<path>`` or ``content.<path>``."""
    if field in DOCUMENT_COLUMNS:
        return field
    prefix, _, path = field.partition(".")
    if prefix in {"metadata", "content"} and _JSON_PATH_RE.match(path):
        return field
    raise ValueError(f"Unsupported field reference: {field!r}")


class FieldSettings(BaseModel):
    """How one content field is stored and weighted."""

    model_config = ConfigDict(frozen=True)

    boost: float = Field(default=1.0, ge=0.0)
    store: bool = True
    index: bool = True


DEFAULT_FIELDS: dict[str, FieldSettings] = {
    "title": FieldSettings(boost=3.0),
    "content": FieldSettings(boost=1.0),
    "excerpt": FieldSettings(boost=2.0),
    "tags": FieldSettings(boost=2.5),
    "category": FieldSettings(boost=2.0),
    "author": FieldSettings(boost=1.5),
    "url": FieldSettings(boost=0.0, index=False),
    "route": FieldSettings(boost=0.0, index=False),
}


class Document(BaseModel):
    """Application document as accepted by the indexer and storage."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1)
    content: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    language: str | None = None
    type: str = "default"
    timestamp: int = Field(default_factory=lambda: int(time.time()))
    geo: GeoPoint | None = None
    geo_bounds: GeoBounds | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value: Any) -> Any:
        return value or "default"

    @field_validator("geo", mode="before")
    @classmethod
    def _parse_geo(cls, value: Any) -> GeoPoint | None:
        if value is None:
            return None
        point = parse_point(value)
        if point is None:
            raise ValueError(f"malformed geo point: {value!r}")
        return point

    @field_validator("geo_bounds", mode="before")
    @classmethod
    def _parse_geo_bounds(cls, value: Any) -> GeoBounds | None:
        if value is None:
            return None
        bounds = parse_bounds(value)
        if bounds is None:
            raise ValueError(f"malformed geo bounds: {value!r}")
        return bounds

    @classmethod
    def from_input(cls, data: Any) -> Document:
        if isinstance(data, cls):
            return data
        if isinstance(data, BaseModel):
            data = data.model_dump()
        return _wrap_validation(cls, data, "document")


class ProcessedDocument(Document):
    """Storage-ready row produced by the indexer (or derived by storage itself).

    ``search_fields`` holds the raw text per indexed field, ``searchable_text``
    the analyzed, boost-repeated token stream used by single-column indices.
    """

    indexed_at: int | None = None
    parent_id: str | None = None
    chunk_index: int | None = None
    is_chunk: bool = False
    search_fields: dict[str, str] = Field(default_factory=dict)
    searchable_text: str | None = None


class Filter(BaseModel):
    """Single ``field operator value`` predicate."""

    model_config = ConfigDict(frozen=True)

    field: str
    operator: str = "="
    value: Any = None

    @field_validator("field")
    @classmethod
    def _check_field(cls, value: str) -> str:
        return validate_field_reference(value)

    @field_validator("operator", mode="before")
    @classmethod
    def _check_operator(cls, value: Any) -> str:
        operator = str(value).strip().lower()
        if operator == "==":
            operator = "="
        if operator not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {value!r}")
        return operator

    @model_validator(mode="after")
    def _check_value(self) -> Filter:
        if self.operator in {"in", "not_in"} and not isinstance(self.value, (list, tuple)):
            raise ValueError(f"Operator {self.operator!r} expects a list value")
        return self


class NearFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    point: GeoPoint
    radius: float = Field(gt=0)
    units: str = "m"

    @field_validator("point", mode="before")
    @classmethod
    def _parse_point(cls, value: Any) -> GeoPoint:
        point = parse_point(value)
        if point is None:
            raise ValueError(f"malformed geo point: {value!r}")
        return point

    @field_validator("units")
    @classmethod
    def _check_units(cls, value: str) -> str:
        return normalize_unit(value)

    @property
    def radius_meters(self) -> float:
        return to_meters(self.radius, self.units)


class DistanceSort(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: GeoPoint = Field(alias="from")
    direction: SortDirection = "asc"

    @field_validator("from_", mode="before")
    @classmethod
    def _parse_origin(cls, value: Any) -> GeoPoint:
        point = parse_point(value)
        if point is None:
            raise ValueError(f"malformed geo point: {value!r}")
        return point

    @field_validator("direction", mode="before")
    @classmethod
    def _lower_direction(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class GeoFilters(BaseModel):
    """Geographic constraints and ranking knobs for one query.

    ``distance_weight`` > 0 blends proximity into the score; ``distance_sort``
    orders by distance regardless of score. The two are independent.
    """

    model_config = ConfigDict(frozen=True)

    near: NearFilter | None = None
    bounds: GeoBounds | None = None
    distance_sort: DistanceSort | None = None
    distance_weight: float | None = Field(default=None, ge=0.0, le=1.0)
    decay_k: float | None = Field(default=None, gt=0.0)

    @field_validator("bounds", mode="before")
    @classmethod
    def _parse_bounds(cls, value: Any) -> GeoBounds | None:
        if value is None:
            return None
        bounds = parse_bounds(value)
        if bounds is None:
            raise ValueError(f"malformed geo bounds: {value!r}")
        return bounds

    @property
    def origin(self) -> GeoPoint | None:
        """Reference point for distances: the near center, else the distance sort origin."""
        if self.near is not None:
            return self.near.point
        if self.distance_sort is not None:
            return self.distance_sort.from_
        return None


def facet_reference(name: str) -> str:
    """Field reference for a facet; a bare name like ``title`` means ``content.title``."""
    try:
        return validate_field_reference(name)
    except ValueError:
        if _JSON_PATH_RE.match(name):
            return f"content.{name}"
        raise


class FacetOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit: int = Field(default=10, ge=1)
    min_count: int = Field(default=1, ge=1)


class QueryOptions(BaseModel):
    """Every option a search accepts. ``geoFilters`` and ``geo_filters`` are both accepted."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    query: str = ""
    filters: list[Filter] = Field(default_factory=list)
    limit: int = Field(default=20, ge=0)
    offset: int = Field(default=0, ge=0)
    sort: dict[str, SortDirection] = Field(default_factory=dict)
    language: str | None = None
    geo_filters: GeoFilters | None = Field(default=None, alias="geoFilters")
    field_weights: dict[str, float] = Field(default_factory=dict)
    fields: list[str] = Field(default_factory=list)
    fuzzy: bool = False
    fuzziness: int | None = Field(default=None, ge=0, le=3)
    boost: dict[str, float] = Field(default_factory=dict)
    unique_by_route: bool = False
    field_weight_candidate_cap: int | None = Field(default=None, ge=1)
    bypass_cache: bool = False
    min_score: float = Field(default=0.0, ge=0.0)
    highlight: bool = True
    highlight_length: int | None = Field(default=None, ge=20)
    facets: dict[str, FacetOptions] = Field(default_factory=dict)
    expanded_terms: list[str] = Field(default_factory=list, exclude=True)

    @field_validator("query", mode="before")
    @classmethod
    def _none_query(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("filters", mode="before")
    @classmethod
    def _expand_filter_shorthand(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, Mapping):
            expanded = []
            for field, condition in value.items():
                if isinstance(condition, Mapping) and "operator" in condition:
                    expanded.append({"field": field, **condition})
                elif isinstance(condition, (list, tuple)):
                    expanded.append({"field": field, "operator": "in", "value": list(condition)})
                else:
                    expanded.append({"field": field, "operator": "=", "value": condition})
            return expanded
        return value

    @field_validator("sort", mode="before")
    @classmethod
    def _normalize_sort(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, Mapping):
            return {key: str(direction).lower() for key, direction in value.items()}
        return value

    @field_validator("sort")
    @classmethod
    def _check_sort_fields(cls, value: dict[str, str]) -> dict[str, str]:
        for field in value:
            if field not in {"_score", "distance"}:
                validate_field_reference(field)
        return value

    @field_validator("field_weights", "boost")
    @classmethod
    def _non_negative_weights(cls, value: dict[str, float]) -> dict[str, float]:
        for field, weight in value.items():
            if weight < 0:
                raise ValueError(f"Weight for {field!r} must be non-negative")
        return value

    @field_validator("facets", mode="before")
    @classmethod
    def _expand_facet_shorthand(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, (list, tuple)):
            return {name: {} for name in value}
        if isinstance(value, Mapping):
            return {name: {} if options is None else options for name, options in value.items()}
        return value

    @field_validator("facets")
    @classmethod
    def _check_facet_fields(cls, value: dict[str, FacetOptions]) -> dict[str, FacetOptions]:
        for name in value:
            facet_reference(name)
        return value

    @classmethod
    def from_input(cls, data: Any = None, **overrides: Any) -> QueryOptions:
        if isinstance(data, cls) and not overrides:
            return data
        if isinstance(data, cls):
            payload: dict[str, Any] = data.model_dump(by_alias=True, exclude_none=True, exclude_unset=True)
        elif isinstance(data, str):
            payload = {"query": data}
        elif data is None:
            payload = {}
        elif isinstance(data, Mapping):
            payload = dict(data)
        else:
            raise ValidationError(f"Unsupported query options type: {type(data).__name__}")
        payload.update(overrides)
        return _wrap_validation(cls, payload, "query options")

    @property
    def distance_origin(self) -> GeoPoint | None:
        return self.geo_filters.origin if self.geo_filters else None

    def cache_params(self) -> dict[str, Any]:
        """JSON-safe view used to derive the query cache signature."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SearchHit(BaseModel):
    """One ranked result."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    score: float
    document: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    language: str | None = None
    type: str = "default"
    timestamp: int | None = None
    distance: float | None = None
    highlights: dict[str, str] | None = None
    raw_score: float | None = None
    index: str | None = Field(default=None, alias="_index")


class FacetValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: Any
    count: int


class SearchResults(BaseModel):
    """Page of results plus the filtered total."""

    model_config = ConfigDict(frozen=True)

    results: list[SearchHit] = Field(default_factory=list)
    total: int = 0
    search_time: float = 0.0
    query: str = ""
    from_cache: bool = False
    facets: dict[str, list[FacetValue]] = Field(default_factory=dict)
