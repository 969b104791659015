"""Index layout: identifier safety, field configuration and generated DDL.

Every identifier that ends up interpolated into SQL (index names, field
names, the cache table) passes ``validate_identifier`` first. Values are
always bound as parameters.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import re
from typing import Any, Literal

import orjson

from terrasearch.domain.models import DEFAULT_FIELDS, FieldSettings
from terrasearch.exceptions import InvalidIdentifierError, SchemaError


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")
RESERVED_SUFFIXES = ("_fts", "_spatial", "_meta", "_vocab", "_migrating")
BOOSTED_TEXT_COLUMN = "search_text"

SchemaMode = Literal["embedded", "external"]
RankingMode = Literal["weighted", "boosted"]


def validate_identifier(name: Any, *, kind: str = "identifier") -> str:
    """Return ``name`` if it matches the identifier grammar, else raise."""
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise InvalidIdentifierError(f"Invalid {kind} name: {name!r}")
    return name


def validate_index_name(name: Any) -> str:
    validate_identifier(name, kind="index")
    lowered = name.lower()
    if lowered.startswith("sqlite_") or lowered.endswith(RESERVED_SUFFIXES):
        raise InvalidIdentifierError(f"Index name {name!r} collides with a reserved table name")
    return name


def normalize_field_config(config: Mapping[str, Any] | None) -> dict[str, FieldSettings]:
    """Coerce a field configuration into ``{name: FieldSettings}``.

    Accepts ``FieldSettings`` instances, mappings, or a bare number as boost
    shorthand. ``None`` yields the default document fields.
    """
    if config is None:
        return dict(DEFAULT_FIELDS)
    fields: dict[str, FieldSettings] = {}
    for name, settings in config.items():
        validate_identifier(name, kind="field")
        if isinstance(settings, FieldSettings):
            fields[name] = settings
        elif isinstance(settings, (int, float)) and not isinstance(settings, bool):
            fields[name] = FieldSettings(boost=float(settings))
        elif isinstance(settings, Mapping):
            try:
                fields[name] = FieldSettings.model_validate(dict(settings))
            except ValueError as exc:
                raise SchemaError(f"Invalid settings for field {name!r}: {exc}") from exc
        else:
            raise SchemaError(f"Invalid settings for field {name!r}: {settings!r}")
    if not any(settings.index for settings in fields.values()):
        raise SchemaError("At least one field must be indexed")
    return fields


def field_column(field_name: str) -> str:
    return f"f_{field_name}"


@dataclass(frozen=True)
class IndexLayout:
    """Tables, columns and DDL that make up one index."""

    name: str
    schema_mode: SchemaMode = "external"
    ranking_mode: RankingMode = "weighted"
    fields: Mapping[str, FieldSettings] = field(default_factory=lambda: dict(DEFAULT_FIELDS))

    def __post_init__(self) -> None:
        validate_index_name(self.name)

    @property
    def fts_table(self) -> str:
        return f"{self.name}_fts"

    @property
    def spatial_table(self) -> str:
        return f"{self.name}_spatial"

    @property
    def meta_table(self) -> str:
        return f"{self.name}_meta"

    @property
    def vocab_table(self) -> str:
        return f"{self.name}_fts_vocab"

    @property
    def is_external(self) -> bool:
        return self.schema_mode == "external"

    @property
    def indexed_fields(self) -> list[str]:
        return [name for name, settings in self.fields.items() if settings.index]

    @property
    def text_columns(self) -> list[str]:
        """FTS text columns, in declaration order."""
        if self.ranking_mode == "boosted":
            return [BOOSTED_TEXT_COLUMN]
        return [field_column(name) for name in self.indexed_fields]

    @property
    def fts_columns(self) -> list[str]:
        """Every FTS column, including the unindexed id of embedded tables."""
        if self.is_external:
            return self.text_columns
        return ["id", *self.text_columns]

    @property
    def tokenizer(self) -> str:
        # Boosted text is already stemmed by the analyzer.
        return "unicode61" if self.ranking_mode == "boosted" else "porter unicode61"

    @property
    def rowid_column(self) -> str:
        return "doc_id" if self.is_external else "rowid"

    @property
    def fts_join(self) -> str:
        """Join predicate between the FTS alias ``f`` and document alias ``d``."""
        return "d.doc_id = f.rowid" if self.is_external else "d.id = f.id"

    def column_weights(self, overrides: Mapping[str, float] | None = None) -> list[float]:
        """bm25 weights aligned with ``fts_columns``."""
        if self.ranking_mode == "boosted":
            weights = [1.0]
        else:
            overrides = overrides or {}
            weights = [
                float(overrides.get(name, self.fields[name].boost)) for name in self.indexed_fields
            ]
        return weights if self.is_external else [0.0, *weights]

    def document_table_sql(self, table: str | None = None) -> str:
        table = table or self.name
        if self.is_external:
            key_columns = "doc_id INTEGER PRIMARY KEY,\n    id TEXT UNIQUE NOT NULL,"
            text_columns = "".join(f",\n    {column} TEXT" for column in self.text_columns)
        else:
            key_columns = "id TEXT PRIMARY KEY,"
            text_columns = ""
        return (
            f"CREATE TABLE IF NOT EXISTS {table} (\n"
            f"    {key_columns}\n"
            "    content TEXT NOT NULL,\n"
            "    metadata TEXT NOT NULL DEFAULT '{}',\n"
            "    language TEXT,\n"
            "    type TEXT NOT NULL DEFAULT 'default',\n"
            "    timestamp INTEGER,\n"
            "    indexed_at INTEGER,\n"
            "    parent_id TEXT,\n"
            "    geo_lat REAL,\n"
            "    geo_lng REAL,\n"
            f"    geo_bounds TEXT{text_columns}\n"
            ")"
        )

    def document_indexes_sql(self) -> list[str]:
        return [
            f"CREATE INDEX IF NOT EXISTS idx_{self.name}_{column} ON {self.name}({column})"
            for column in ("type", "language", "timestamp", "parent_id")
        ]

    def fts_table_sql(self) -> str:
        columns = ", ".join(f"{column} UNINDEXED" if column == "id" else column for column in self.fts_columns)
        options = f"tokenize='{self.tokenizer}'"
        if self.is_external:
            options = f"content='{self.name}', content_rowid='doc_id', {options}"
        return f"CREATE VIRTUAL TABLE IF NOT EXISTS {self.fts_table} USING fts5({columns}, {options})"

    def spatial_table_sql(self) -> str:
        return f"CREATE VIRTUAL TABLE IF NOT EXISTS {self.spatial_table} USING rtree(id, minX, maxX, minY, maxY)"

    def meta_table_sql(self) -> str:
        return f"CREATE TABLE IF NOT EXISTS {self.meta_table} (key TEXT PRIMARY KEY, value TEXT NOT NULL)"

    def meta_rows(self) -> list[tuple[str, str]]:
        fields = {name: settings.model_dump() for name, settings in self.fields.items()}
        return [
            ("schema_mode", self.schema_mode),
            ("ranking_mode", self.ranking_mode),
            ("fields", orjson.dumps(fields).decode()),
        ]

    def with_mode(self, schema_mode: SchemaMode) -> IndexLayout:
        return IndexLayout(self.name, schema_mode, self.ranking_mode, dict(self.fields))

    @classmethod
    def from_meta(cls, name: str, meta: Mapping[str, str]) -> IndexLayout:
        try:
            raw_fields = orjson.loads(meta["fields"])
            return cls(
                name=name,
                schema_mode=meta.get("schema_mode", "embedded"),  # type: ignore[arg-type]
                ranking_mode=meta.get("ranking_mode", "weighted"),  # type: ignore[arg-type]
                fields={key: FieldSettings.model_validate(value) for key, value in raw_fields.items()},
            )
        except (KeyError, orjson.JSONDecodeError, ValueError) as exc:
            raise SchemaError(f"Corrupt layout metadata for index {name!r}") from exc

    @classmethod
    def infer(cls, name: str, fts_columns: list[str], document_columns: list[str]) -> IndexLayout:
        """Reconstruct the layout of an index created without a meta table."""
        schema_mode: SchemaMode = "external" if "doc_id" in document_columns else "embedded"
        text_columns = [column for column in fts_columns if column != "id"]
        if text_columns == [BOOSTED_TEXT_COLUMN]:
            return cls(name, schema_mode, "boosted", {"content": FieldSettings()})
        fields = {
            column[2:]: DEFAULT_FIELDS.get(column[2:], FieldSettings())
            for column in text_columns
            if column.startswith("f_")
        }
        if not fields:
            raise SchemaError(f"Cannot infer field layout for index {name!r}")
        return cls(name, schema_mode, "weighted", fields)
