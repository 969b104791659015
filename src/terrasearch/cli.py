"""Command line maintenance tool for terrasearch databases."""

from __future__ import annotations

import argparse
from collections.abc import Sequence
import logging
from pathlib import Path
import sys
from typing import Any

import orjson

from terrasearch.config import Settings
from terrasearch.exceptions import TerraSearchError
from terrasearch.observability.logging import configure_logging, configure_logging_from_settings
from terrasearch.search_engine import SearchEngine


logger = logging.getLogger(__name__)


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="terrasearch",
        description="Inspect and maintain terrasearch SQLite indices",
    )
    parser.add_argument(
        "--db",
        help="Path to the SQLite database (defaults to TERRASEARCH_DB_PATH)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Log level for diagnostics written to stderr (default: WARNING); TERRASEARCH_LOG_JSON selects JSON or plain lines",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List indices with document counts")

    stats = subparsers.add_parser("stats", help="Show statistics for one index")
    stats.add_argument("index")

    search = subparsers.add_parser("search", help="Run a query against one index")
    search.add_argument("index")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=10, help="Maximum results to print")
    search.add_argument("--fuzzy", action="store_true", help="Expand terms with close indexed spellings")

    load = subparsers.add_parser("index", help="Index documents from a JSON Lines file")
    load.add_argument("index")
    load.add_argument("file", type=Path, help="File with one JSON document per line")

    optimize = subparsers.add_parser("optimize", help="Merge full-text segments and refresh planner statistics")
    optimize.add_argument("index")
    optimize.add_argument("--vacuum", action="store_true", help="Also VACUUM the database file")

    migrate = subparsers.add_parser("migrate", help="Convert an index to external-content storage")
    migrate.add_argument("index")
    migrate.add_argument(
        "--rebuild-spatial",
        action="store_true",
        help="Repopulate the spatial table from stored geo columns after migrating",
    )

    terms = subparsers.add_parser("terms", help="Print indexed terms with document frequencies")
    terms.add_argument("index")
    terms.add_argument("--min-frequency", type=int, default=2)
    terms.add_argument("--limit", type=int, default=100)

    drop = subparsers.add_parser("drop", help="Drop an index and all of its tables")
    drop.add_argument("index")

    subparsers.add_parser("clear-cache", help="Remove every cached query result")
    return parser


def _print_json(payload: Any) -> None:
    sys.stdout.write(orjson.dumps(payload, option=orjson.OPT_INDENT_2, default=str).decode("utf-8"))
    sys.stdout.write("\n")


def _read_documents(path: Path) -> list[dict[str, Any]]:
    documents = []
    with path.open("rb") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                documents.append(orjson.loads(line))
            except orjson.JSONDecodeError as exc:
                raise ValueError(f"{path}:{line_number}: invalid JSON ({exc})") from exc
    return documents


def _run(engine: SearchEngine, args: argparse.Namespace) -> Any:
    storage = engine.storage
    if args.command == "list":
        return storage.list_indices()
    if args.command == "stats":
        return engine.get_stats(args.index)
    if args.command == "search":
        results = engine.search(args.index, args.query, limit=args.limit, fuzzy=args.fuzzy)
        return results.model_dump(mode="json", by_alias=True)
    if args.command == "index":
        result = engine.index_batch(args.index, _read_documents(args.file))
        return {"total": result.total, "indexed": result.indexed, "failed": result.failed, "errors": result.errors}
    if args.command == "optimize":
        engine.optimize(args.index, vacuum=args.vacuum)
        return {"index": args.index, "optimized": True, "vacuum": args.vacuum}
    if args.command == "migrate":
        migrated = engine.migrate_to_external_content(args.index)
        payload: dict[str, Any] = {"index": args.index, "migrated": migrated}
        if migrated and args.rebuild_spatial:
            payload["spatial_rows"] = storage.rebuild_spatial(args.index)
        elif migrated:
            logger.warning("Spatial table of %s is empty; upsert geo documents again or use --rebuild-spatial", args.index)
        return payload
    if args.command == "terms":
        storage.get_layout(args.index)
        return storage.get_indexed_terms(args.index, min_frequency=args.min_frequency, limit=args.limit)
    if args.command == "drop":
        return {"index": args.index, "dropped": engine.drop_index(args.index)}
    if args.command == "clear-cache":
        return {"removed": engine.cache.clear()}
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, json_output=False, stream=sys.stderr)

    overrides = {"log_level": args.log_level}
    if args.db:
        overrides["db_path"] = args.db
    try:
        settings = Settings(**overrides)
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1
    # TERRASEARCH_LOG_JSON picks the stderr format once settings are known.
    configure_logging_from_settings(settings, stream=sys.stderr)

    engine = SearchEngine(settings)
    try:
        payload = _run(engine, args)
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        return 1
    except (TerraSearchError, ValueError) as exc:
        logger.error("%s", exc)
        return 1
    finally:
        engine.close()

    _print_json(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
