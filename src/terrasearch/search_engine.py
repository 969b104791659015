"""High-level search engine: query cache in front of storage, indexers behind it.

``SearchEngine`` is the entry point applications embed. It owns one storage
instance (one SQLite database), a query cache stored in the same database and
one ``Indexer`` per index. Every write through an indexer invalidates the
cached results of that index.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
import logging
import random
import time
from typing import Any

from terrasearch.config import Settings, get_settings
from terrasearch.domain.models import Document, FacetOptions, QueryOptions, SearchHit, SearchResults
from terrasearch.exceptions import TerraSearchError
from terrasearch.observability.metrics import SEARCH_REQUESTS
from terrasearch.observability.tracing import create_span, index_span
from terrasearch.search.analyzers import TextAnalyzer
from terrasearch.search.fuzzy import expand_terms, find_fuzzy_matches
from terrasearch.search.indexer import BatchResult, Indexer
from terrasearch.search.schema import IndexLayout
from terrasearch.search.snippet import build_smart_snippet
from terrasearch.search.sqlite_storage import SqliteStorage
from terrasearch.services.query_cache import QueryCache


logger = logging.getLogger(__name__)

MAX_FUZZY_EXPANSIONS = 5
FUZZY_VOCABULARY_LIMIT = 10000


def _route_of(row: Mapping[str, Any]) -> str:
    route = row.get("document", {}).get("route") or row.get("metadata", {}).get("parent_route")
    return route if isinstance(route, str) else ""


def unique_by_route(rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep the first row per ``document.route``; rows without a route are kept as-is."""
    seen: set[str] = set()
    unique: list[dict[str, Any]] = []
    for row in rows:
        route = _route_of(row)
        if route:
            if route in seen:
                continue
            seen.add(route)
        unique.append(row)
    return unique


def _cacheable(options: QueryOptions) -> bool:
    # The cache signature ignores presentation options, so only default presentation is cached.
    return options.min_score == 0 and options.highlight and options.highlight_length is None


def normalize_scores(scores: Sequence[float]) -> list[float]:
    """Scale scores to 0..100 relative to the best one."""
    top = max(scores, default=0.0)
    if top <= 0:
        return [0.0 for _ in scores]
    return [round(score / top * 100, 1) for score in scores]


def merge_facets(
    per_index: Sequence[Mapping[str, Sequence[Mapping[str, Any]]]],
    requested: Mapping[str, FacetOptions],
) -> dict[str, list[dict[str, Any]]]:
    """Sum facet counts of several indices, then apply each facet's min_count and limit."""
    merged: dict[str, list[dict[str, Any]]] = {}
    for field, settings in requested.items():
        counts: Counter = Counter()
        for facets in per_index:
            for entry in facets.get(field, ()):
                counts[entry["value"]] += entry["count"]
        ranked = sorted(counts.items(), key=lambda item: (-item[1], str(item[0])))
        merged[field] = [
            {"value": value, "count": count} for value, count in ranked if count >= settings.min_count
        ][: settings.limit]
    return merged


class SearchEngine:
    """Facade over storage, indexers and the query cache."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        storage: SqliteStorage | None = None,
        cache: QueryCache | None = None,
        analyzer: TextAnalyzer | None = None,
        clock: Callable[[], float] = time.time,
        random_source: random.Random | None = None,
    ):
        self.settings = settings or get_settings()
        self.analyzer = analyzer or TextAnalyzer()
        self.storage = storage or SqliteStorage(self.settings.db_path, settings=self.settings, analyzer=self.analyzer)
        self.cache = cache or QueryCache.from_settings(
            self.storage.connection,
            self.settings,
            clock=clock,
            random_source=random_source,
        )
        self._clock = clock
        self._indexers: dict[str, Indexer] = {}

    def close(self) -> None:
        for indexer in self._indexers.values():
            indexer.flush()
        self._indexers.clear()
        self.storage.close()

    def __enter__(self) -> SearchEngine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Index management
    # ------------------------------------------------------------------

    def create_index(self, name: str, field_config: Mapping[str, Any] | None = None, **kwargs: Any) -> IndexLayout:
        layout = self.storage.create_index(name, field_config, **kwargs)
        self.cache.invalidate(name)
        return layout

    def drop_index(self, name: str) -> bool:
        self._indexers.pop(name, None)
        dropped = self.storage.drop_index(name)
        self.cache.invalidate(name)
        return dropped

    def get_indexer(self, name: str, field_config: Mapping[str, Any] | None = None) -> Indexer:
        """Indexer for ``name``, creating the index on first use."""
        indexer = self._indexers.get(name)
        if indexer is None:
            indexer = Indexer(
                self.storage,
                name,
                settings=self.settings,
                analyzer=self.analyzer,
                field_config=field_config,
                on_write=self.cache.invalidate,
                clock=self._clock,
            )
            self._indexers[name] = indexer
        return indexer

    def index(self, name: str, document: Document | Mapping[str, Any]) -> None:
        self.get_indexer(name).index(document)

    def index_batch(self, name: str, documents: Iterable[Document | Mapping[str, Any]]) -> BatchResult:
        with index_span("index_batch", name) as span:
            result = self.get_indexer(name).index_batch(documents)
            span.set_attribute("terrasearch.indexed", result.indexed)
            span.set_attribute("terrasearch.failed", result.failed)
        return result

    def update(self, name: str, document: Document | Mapping[str, Any]) -> None:
        self.get_indexer(name).update(document)

    def delete(self, name: str, doc_id: str) -> bool:
        return self.get_indexer(name).delete(doc_id)

    def flush(self, name: str | None = None) -> int:
        names = [name] if name is not None else list(self._indexers)
        return sum(self.get_indexer(index_name).flush() for index_name in names)

    def optimize(self, name: str, *, vacuum: bool = False) -> None:
        with index_span("optimize", name, vacuum=vacuum):
            if name in self._indexers:
                self._indexers[name].optimize(vacuum=vacuum)
            else:
                self.storage.optimize(name, vacuum=vacuum)

    def migrate_to_external_content(self, name: str) -> bool:
        with index_span("migrate", name):
            migrated = self.storage.migrate_to_external_content(name)
        if migrated:
            self._indexers.pop(name, None)
            self.cache.invalidate(name)
        return migrated

    def get_stats(self, name: str | None = None) -> dict[str, Any]:
        stats: dict[str, Any] = {"cache": self.cache.get_stats()}
        if name is not None:
            stats["index"] = self.storage.get_index_stats(name)
        else:
            stats["indices"] = self.storage.list_indices()
        return stats

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _prepare(self, options: Any, overrides: Mapping[str, Any]) -> QueryOptions:
        options = QueryOptions.from_input(options, **overrides)
        limit = options.limit if "limit" in options.model_fields_set else self.settings.default_limit
        limit = min(limit, self.settings.max_limit)
        if limit != options.limit:
            options = options.model_copy(update={"limit": limit})
        return options

    def _with_fuzzy_terms(self, names: Sequence[str], options: QueryOptions) -> QueryOptions:
        if not options.fuzzy or not options.query.strip():
            return options
        vocabulary: dict[str, int] = {}
        for name in names:
            vocabulary.update(
                self.storage.get_indexed_terms(
                    name,
                    min_frequency=self.settings.fuzzy_min_frequency,
                    limit=FUZZY_VOCABULARY_LIMIT,
                )
            )
        terms = self.analyzer.query_terms(options.query, options.language)
        expanded = expand_terms(
            terms,
            list(vocabulary),
            fuzziness=options.fuzziness,
            max_expansions=MAX_FUZZY_EXPANSIONS,
        )
        if expanded:
            logger.debug("Fuzzy expansion", extra={"terms": terms, "expanded": expanded})
        return options.model_copy(update={"expanded_terms": expanded})

    def _highlights(self, document: Mapping[str, Any], terms: Sequence[str], length: int) -> dict[str, str]:
        highlights = {}
        for field, value in document.items():
            if not isinstance(value, str):
                continue
            snippet = build_smart_snippet(value, terms, max_chars=length)
            if snippet:
                highlights[field] = snippet
        return highlights

    def _to_hits(self, rows: Sequence[dict[str, Any]], options: QueryOptions) -> list[SearchHit]:
        rows = [row for row in rows if row["score"] >= options.min_score]
        scores = normalize_scores([row["score"] for row in rows])
        terms: list[str] = []
        if options.highlight and options.query.strip():
            terms = [*self.analyzer.query_terms(options.query, options.language), *options.expanded_terms]
        length = options.highlight_length or self.settings.highlight_length

        hits = []
        for row, score in zip(rows, scores, strict=True):
            hits.append(
                SearchHit.model_validate(
                    {
                        "id": row["id"],
                        "score": score,
                        "raw_score": row["score"],
                        "document": row["document"],
                        "metadata": row["metadata"],
                        "language": row["language"],
                        "type": row["type"],
                        "timestamp": row["timestamp"],
                        "distance": row.get("distance"),
                        "highlights": self._highlights(row["document"], terms, length) if options.highlight else None,
                        "_index": row.get("_index"),
                    }
                )
            )
        return hits

    def _all_rows(self, name: str, options: QueryOptions) -> list[dict[str, Any]]:
        """Every matching row in rank order, fetched ``max_limit`` rows at a time."""
        window = self.settings.max_limit
        rows: list[dict[str, Any]] = []
        while True:
            page = options.model_copy(update={"limit": window, "offset": len(rows)})
            response = self.storage.search(name, page)
            rows.extend(response["results"])
            if not response["results"] or len(rows) >= response["total"]:
                return rows

    def _run(self, name: str, options: QueryOptions) -> SearchResults:
        start = time.perf_counter()
        storage_options = self._with_fuzzy_terms([name], options)
        if options.unique_by_route:
            rows = unique_by_route(self._all_rows(name, storage_options))
            total = len(rows)
            rows = rows[options.offset : options.offset + options.limit]
        else:
            response = self.storage.search(name, storage_options)
            rows, total = response["results"], response["total"]
        return SearchResults(
            results=self._to_hits(rows, storage_options),
            total=total,
            search_time=round((time.perf_counter() - start) * 1000, 2),
            query=options.query,
            facets=self.storage.facets(name, storage_options),
        )

    def search(self, name: str, options: Any = None, **overrides: Any) -> SearchResults:
        """Cached, ranked search over one index.

        ``options`` is a query string, a mapping of query options or a
        ``QueryOptions``; keyword overrides are merged on top.
        """
        options = self._prepare(options, overrides)
        with index_span("search", name, query=options.query):
            cacheable = _cacheable(options)
            cached = self.cache.get(name, options) if cacheable else None
            if cached is not None:
                SEARCH_REQUESTS.labels(index=name, status="cached").inc()
                return SearchResults.model_validate({**cached, "from_cache": True})
            try:
                results = self._run(name, options)
            except TerraSearchError:
                SEARCH_REQUESTS.labels(index=name, status="error").inc()
                raise
            SEARCH_REQUESTS.labels(index=name, status="ok").inc()
            if cacheable:
                self.cache.set(name, options, results)
        logger.info(
            "Search completed",
            extra={"index": name, "results": len(results.results), "total": results.total},
        )
        return results

    def search_multiple(self, names: Sequence[str], options: Any = None, **overrides: Any) -> SearchResults:
        """Merged search over several indices; each hit carries its source index."""
        options = self._prepare(options, overrides)
        with create_span("terrasearch.search_multiple", attributes={"terrasearch.indices": ",".join(names)}):
            existing = [name for name in names if self.storage.index_exists(name)]
            storage_options = self._with_fuzzy_terms(existing, options)
            response = self.storage.search_multiple(names, storage_options)
            facets: dict[str, list[dict[str, Any]]] = {}
            if options.facets:
                # Per-index lists are uncapped so the merged counts are exact.
                uncapped = storage_options.model_copy(
                    update={"facets": {field: FacetOptions(limit=self.settings.max_limit) for field in options.facets}}
                )
                facets = merge_facets([self.storage.facets(name, uncapped) for name in existing], options.facets)
        return SearchResults(
            results=self._to_hits(response["results"], storage_options),
            total=response["total"],
            search_time=response["search_time"],
            query=options.query,
            facets=facets,
        )

    def suggest(self, name: str, term: str, *, limit: int = 10) -> list[dict[str, Any]]:
        """Titles of documents matching ``term`` as a prefix or through a close indexed spelling.

        Returns ``{"text", "score"}`` entries, best first, one per distinct title.
        """
        tokens = self.analyzer.query_terms(term)
        if not tokens:
            return []
        vocabulary = self.storage.get_indexed_terms(
            name,
            min_frequency=self.settings.fuzzy_min_frequency,
            limit=FUZZY_VOCABULARY_LIMIT,
        )
        expansions = list(tokens)
        for token in tokens:
            expansions.extend(match for match, _ in find_fuzzy_matches(token, vocabulary)[:MAX_FUZZY_EXPANSIONS])
        options = QueryOptions(
            query=term,
            limit=min(limit * 3, self.settings.max_limit),
            expanded_terms=list(dict.fromkeys(expansions)),
        )
        with index_span("suggest", name, term=term):
            rows = self.storage.search(name, options)["results"]

        suggestions: list[dict[str, Any]] = []
        seen: set[str] = set()
        for row, score in zip(rows, normalize_scores([row["score"] for row in rows]), strict=True):
            title = row["document"].get("title")
            if not isinstance(title, str) or not title or title in seen:
                continue
            seen.add(title)
            suggestions.append({"text": title, "score": score})
        logger.debug("Suggestions for %r", term, extra={"index": name, "suggestions": len(suggestions)})
        return suggestions[:limit]

    def count(self, name: str, options: Any = None, **overrides: Any) -> int:
        options = self._prepare(options, overrides)
        return self.storage.count(name, self._with_fuzzy_terms([name], options))
