"""Translate ``QueryOptions`` into parameterized SQL over one index layout.

The builder decides between two execution paths:

* SQL ranking: ordering, distance filtering and pagination all run inside
  SQLite (bm25 column weights plus the ``geo_distance()`` function).
* Application ranking: SQL only selects candidates; re-scoring, proximity
  blending, ordering and pagination happen in Python (see ``scoring``). Used
  when a field-weight override or a text/distance blend is requested.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
import logging
from typing import Any

from terrasearch.domain.models import DOCUMENT_COLUMNS, Filter, QueryOptions
from terrasearch.exceptions import ValidationError
from terrasearch.geo import GeoBounds, GeoPoint, bounding_box
from terrasearch.search.analyzers import TextAnalyzer
from terrasearch.search.schema import IndexLayout, field_column


logger = logging.getLogger(__name__)

CANDIDATE_MULTIPLIER = 20
MIN_CANDIDATES = 400

_COMPARISON_OPERATORS = {"=", "!=", ">", "<", ">=", "<="}
_SELECT_COLUMNS = (
    "d.id, d.content, d.metadata, d.language, d.type, d.timestamp, d.indexed_at, d.parent_id, "
    "d.geo_lat, d.geo_lng, d.geo_bounds"
)
_DISTANCE_EXPR = "geo_distance(?, ?, d.geo_lat, d.geo_lng, d.geo_bounds)"
_IN_BOUNDS_EXPR = "geo_in_bounds(d.geo_lat, d.geo_lng, d.geo_bounds, ?, ?, ?, ?)"


def candidate_limit_for(limit: int, cap: int | None) -> int:
    """Rows fetched before a field-weight re-rank: the explicit cap, else ``max(limit * 20, 400)``."""
    if cap is not None:
        return cap
    return max(limit * CANDIDATE_MULTIPLIER, MIN_CANDIDATES)


def quote_term(term: str) -> str:
    """FTS5 string literal for one term."""
    return '"' + term.replace('"', '""') + '"'


def build_match_expression(
    terms: Sequence[str],
    extra_terms: Sequence[str] = (),
    columns: Sequence[str] = (),
) -> str | None:
    """``("a b" OR "a" OR "b")`` for several terms, ``"a"`` for one, None for none.

    ``extra_terms`` are vocabulary entries (already stemmed) and are matched as
    prefixes, since stemming a stem again may not give back the same token.
    """
    if not terms:
        return None
    if len(terms) == 1:
        parts = [quote_term(terms[0])]
    else:
        parts = [quote_term(" ".join(terms)), *(quote_term(term) for term in terms)]
    parts.extend(quote_term(term) + "*" for term in extra_terms)
    expression = parts[0] if len(parts) == 1 else "(" + " OR ".join(parts) + ")"
    if columns:
        expression = "{" + " ".join(columns) + "} : " + expression
    return expression


def bounds_clause(bounds: GeoBounds) -> tuple[str, list[float]]:
    """R-tree intersection with ``bounds``; antimeridian boxes become two OR'ed boxes."""
    clauses = []
    params: list[float] = []
    for box in bounds.split():
        clauses.append("(s.minX <= ? AND s.maxX >= ? AND s.minY <= ? AND s.maxY >= ?)")
        params.extend([box.max_lng, box.min_lng, box.max_lat, box.min_lat])
    return "(" + " OR ".join(clauses) + ")", params


def column_expression(field_ref: str) -> tuple[str, list[Any]]:
    """SQL expression (and its params) for a validated field reference."""
    if field_ref in DOCUMENT_COLUMNS:
        return f"d.{field_ref}", []
    prefix, _, path = field_ref.partition(".")
    return f"json_extract(d.{prefix}, ?)", [f"$.{path}"]


def filter_clause(flt: Filter) -> tuple[str, list[Any]]:
    expr, params = column_expression(flt.field)
    operator = flt.operator
    if operator in _COMPARISON_OPERATORS:
        if flt.value is None and operator in {"=", "!="}:
            return f"{expr} IS {'NOT ' if operator == '!=' else ''}NULL", params
        return f"{expr} {operator} ?", [*params, _bindable(flt.value)]
    if operator in {"in", "not_in"}:
        values = [_bindable(value) for value in flt.value]
        if not values:
            return ("0" if operator == "in" else "1"), []
        placeholders = ", ".join("?" for _ in values)
        keyword = "IN" if operator == "in" else "NOT IN"
        return f"{expr} {keyword} ({placeholders})", [*params, *values]
    if operator == "exists":
        present = flt.value is None or bool(flt.value)
        return f"{expr} IS {'NOT ' if present else ''}NULL", params
    if operator == "contains":
        like = "%" + str(flt.value).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        if flt.field in DOCUMENT_COLUMNS:
            return f"{expr} LIKE ? ESCAPE '\\'", [like]
        prefix, _, path = flt.field.partition(".")
        clause = (
            f"({expr} LIKE ? ESCAPE '\\' OR EXISTS "
            f"(SELECT 1 FROM json_each(d.{prefix}, ?) WHERE json_each.value = ?))"
        )
        return clause, [*params, like, f"$.{path}", _bindable(flt.value)]
    raise ValidationError(f"Unsupported filter operator: {operator!r}")


def _bindable(value: Any) -> Any:
    if isinstance(value, (str, int, float)) or value is None:
        return value
    return str(value)


@dataclass
class QueryPlan:
    """Everything needed to execute (and inspect) one search."""

    sql: str
    params: list[Any]
    count_sql: str
    count_params: list[Any]
    limit: int
    offset: int
    terms: list[str] = field(default_factory=list)
    match_expression: str | None = None
    candidate_limit: int | None = None
    field_rerank: bool = False
    field_weights: dict[str, float] = field(default_factory=dict)
    blend_weight: float = 0.0
    decay_k: float = 0.0001
    distance_origin: GeoPoint | None = None
    order: list[tuple[str, str]] = field(default_factory=list)
    source_sql: str = ""

    @property
    def application_ranking(self) -> bool:
        return self.field_rerank or self.blend_weight > 0


class QueryBuilder:
    """Builds ``QueryPlan`` objects for one index."""

    def __init__(
        self,
        layout: IndexLayout,
        analyzer: TextAnalyzer,
        *,
        default_distance_weight: float = 0.0,
        default_decay_k: float = 0.0001,
    ):
        self.layout = layout
        self.analyzer = analyzer
        self.default_distance_weight = default_distance_weight
        self.default_decay_k = default_decay_k

    def query_terms(self, options: QueryOptions) -> list[str]:
        if not options.query.strip():
            return []
        if self.layout.ranking_mode == "boosted":
            terms = self.analyzer.analyze(options.query, options.language)
            if not terms:
                terms = [self.analyzer.stem(token, options.language) for token in self.analyzer.tokenize(options.query)]
            return terms
        return self.analyzer.query_terms(options.query, options.language)

    def effective_weights(self, options: QueryOptions) -> dict[str, float]:
        weights = {}
        for name in self.layout.indexed_fields:
            base = options.field_weights.get(name, self.layout.fields[name].boost)
            weights[name] = base * options.boost.get(name, 1.0)
        return weights

    def has_weight_override(self, options: QueryOptions) -> bool:
        for name, weight in options.field_weights.items():
            settings = self.layout.fields.get(name)
            if settings is None or settings.boost != weight:
                return True
        return False

    def _match_columns(self, options: QueryOptions) -> list[str]:
        if not options.fields:
            return []
        if self.layout.ranking_mode == "boosted":
            logger.debug("Field restriction ignored for boosted index %s", self.layout.name)
            return []
        unknown = [name for name in options.fields if name not in self.layout.indexed_fields]
        if unknown:
            raise ValidationError(f"Fields not indexed in {self.layout.name}: {unknown}")
        return [field_column(name) for name in options.fields]

    def build(self, options: QueryOptions) -> QueryPlan:
        layout = self.layout
        terms = self.query_terms(options)
        match_expression = build_match_expression(terms, options.expanded_terms, self._match_columns(options))
        has_text = match_expression is not None

        geo = options.geo_filters
        origin = options.distance_origin
        field_weights = self.effective_weights(options)
        field_rerank = has_text and self.has_weight_override(options)
        blend_weight = 0.0
        decay_k = self.default_decay_k
        if origin is not None:
            blend_weight = geo.distance_weight if geo.distance_weight is not None else self.default_distance_weight
            decay_k = geo.decay_k or self.default_decay_k

        select_params: list[Any] = []
        where: list[str] = []
        where_params: list[Any] = []

        if has_text:
            weights = ", ".join(repr(float(weight)) for weight in layout.column_weights(field_weights))
            rank_expr = f"bm25({layout.fts_table}, {weights})"
            from_sql = f"{layout.fts_table} f JOIN {layout.name} d ON {layout.fts_join}"
            where.append(f"{layout.fts_table} MATCH ?")
            where_params.append(match_expression)
        else:
            rank_expr = "0.0"
            from_sql = f"{layout.name} d"

        columns = f"{_SELECT_COLUMNS}, {rank_expr} AS text_rank"
        if origin is not None:
            columns += f", {_DISTANCE_EXPR} AS distance"
            select_params.extend([origin.lat, origin.lng])

        if geo is not None and (geo.near is not None or geo.bounds is not None):
            from_sql += f" JOIN {layout.spatial_table} s ON s.id = d.{layout.rowid_column}"
            if geo.near is not None:
                radius = geo.near.radius_meters
                clause, params = bounds_clause(bounding_box(geo.near.point, radius))
                where.append(clause)
                where_params.extend(params)
                where.append(f"{_DISTANCE_EXPR} <= ?")
                where_params.extend([geo.near.point.lat, geo.near.point.lng, radius])
            if geo.bounds is not None:
                clause, params = bounds_clause(geo.bounds)
                where.append(clause)
                where_params.extend(params)
                where.append(f"{_IN_BOUNDS_EXPR} = 1")
                where_params.extend([geo.bounds.min_lat, geo.bounds.max_lat, geo.bounds.min_lng, geo.bounds.max_lng])

        if options.language:
            where.append("d.language = ?")
            where_params.append(options.language)

        for flt in options.filters:
            clause, params = filter_clause(flt)
            where.append(clause)
            where_params.extend(params)

        where_sql = f" WHERE {' AND '.join(where)}" if where else ""
        order = self._order(options, has_text=has_text, origin=origin)

        plan = QueryPlan(
            sql="",
            params=[],
            count_sql=f"SELECT COUNT(*) FROM {from_sql}{where_sql}",
            source_sql=f"FROM {from_sql}{where_sql}",
            count_params=list(where_params),
            limit=options.limit,
            offset=options.offset,
            terms=terms,
            match_expression=match_expression,
            field_rerank=field_rerank,
            field_weights=field_weights,
            blend_weight=blend_weight,
            decay_k=decay_k,
            distance_origin=origin,
            order=order,
        )

        if plan.application_ranking:
            # Candidates come out in text relevance order; scoring reorders them.
            order_sql = " ORDER BY text_rank ASC, d.id ASC" if has_text else " ORDER BY d.id ASC"
            order_params: list[Any] = []
            if field_rerank:
                plan.candidate_limit = candidate_limit_for(options.limit, options.field_weight_candidate_cap)
            limit_params = [plan.candidate_limit if plan.candidate_limit is not None else -1, 0]
        else:
            order_sql, order_params = self._order_sql(order)
            limit_params = [options.limit, options.offset]

        plan.sql = f"SELECT {columns} FROM {from_sql}{where_sql}{order_sql} LIMIT ? OFFSET ?"
        plan.params = [*select_params, *where_params, *order_params, *limit_params]
        logger.debug(
            "Built query plan for %s",
            layout.name,
            extra={
                "index": layout.name,
                "match": match_expression,
                "application_ranking": plan.application_ranking,
                "candidate_limit": plan.candidate_limit,
            },
        )
        return plan

    def _order(self, options: QueryOptions, *, has_text: bool, origin: GeoPoint | None) -> list[tuple[str, str]]:
        order: list[tuple[str, str]] = []
        geo = options.geo_filters
        if origin is not None:
            if geo is not None and geo.distance_sort is not None:
                order.append(("distance", geo.distance_sort.direction))
            elif "distance" in options.sort:
                order.append(("distance", options.sort["distance"]))
        for key, direction in options.sort.items():
            if key == "distance":
                continue
            order.append((key, direction))
        if not order:
            if has_text or origin is None:
                order.append(("_score", "desc"))
            else:
                order.append(("distance", "asc"))
        return order

    def _order_sql(self, order: list[tuple[str, str]]) -> tuple[str, list[Any]]:
        parts: list[str] = []
        params: list[Any] = []
        for key, direction in order:
            if key == "_score":
                parts.append(f"text_rank {'ASC' if direction == 'desc' else 'DESC'}")
            elif key == "distance":
                parts.append(f"distance IS NULL, distance {direction.upper()}")
            else:
                expr, expr_params = column_expression(key)
                parts.append(f"{expr} {direction.upper()}")
                params.extend(expr_params)
        parts.append("d.id ASC")
        return " ORDER BY " + ", ".join(parts), params
