"""Shared helpers for turning document content into full-text column values."""

from __future__ import annotations

from collections.abc import Mapping
import math
from typing import Any

from terrasearch.domain.models import Document, FieldSettings, ProcessedDocument
from terrasearch.search.analyzers import Analyzer


def field_text(value: Any) -> str | None:
    """Text representation of a content value, None when it is not textual."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        parts = [field_text(item) for item in value]
        joined = " ".join(part for part in parts if part)
        return joined or None
    return None


def boost_repetitions(boost: float) -> int:
    """How many times a field's tokens are repeated in the boosted stream."""
    if boost <= 0:
        return 0
    return max(1, math.ceil(boost))


def build_searchable_text(
    texts: Mapping[str, str],
    fields: Mapping[str, FieldSettings],
    analyzer: Analyzer,
    language: str | None = None,
) -> str:
    """Analyzed tokens of every indexed field, each repeated proportionally to its boost."""
    parts: list[str] = []
    for name, settings in fields.items():
        text = texts.get(name)
        if not settings.index or not text:
            continue
        tokens = analyzer.analyze(text, language)
        if not tokens:
            continue
        segment = " ".join(tokens)
        parts.extend([segment] * boost_repetitions(settings.boost))
    return " ".join(parts)


def stored_content(content: Mapping[str, Any], fields: Mapping[str, FieldSettings]) -> dict[str, Any]:
    """Content restricted to the configured fields with ``store`` enabled."""
    return {name: value for name, value in content.items() if name in fields and fields[name].store}


def to_processed(
    document: Document | Mapping[str, Any],
    fields: Mapping[str, FieldSettings],
    analyzer: Analyzer,
) -> ProcessedDocument:
    """Derive a storage-ready document for callers that bypass the indexer.

    Documents that already went through the indexer keep their precomputed
    ``search_fields`` and ``searchable_text``.
    """
    if isinstance(document, ProcessedDocument) and document.search_fields:
        return document
    doc = Document.from_input(document)
    texts = {}
    for name, settings in fields.items():
        if not settings.index:
            continue
        text = field_text(doc.content.get(name))
        if text:
            texts[name] = text
    payload = doc.model_dump()
    if isinstance(document, ProcessedDocument):
        payload.update(document.model_dump(include={"indexed_at", "parent_id", "chunk_index", "is_chunk"}))
    payload["content"] = stored_content(doc.content, fields)
    payload["search_fields"] = texts
    payload["searchable_text"] = build_searchable_text(texts, fields, analyzer, doc.language)
    return ProcessedDocument.model_validate(payload)
