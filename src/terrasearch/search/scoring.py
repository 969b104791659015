"""Application-layer ranking: field-weighted re-scoring, proximity blending, ordering.

Rows are plain dicts as produced by ``SqliteStorage`` (``score`` holds the
positive text relevance, ``distance`` meters when a reference point exists).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
import re
from typing import Any

from terrasearch.search.query_builder import QueryPlan


PHRASE_MATCH_BONUS = 15.0
EXACT_FIELD_BONUS = 50.0
NEAR_EXACT_FIELD_BONUS = 30.0
PRIMARY_FIELD_WEIGHT = 2.5
BASE_SCORE_FLOOR = 0.3

_PUNCTUATION_RE = re.compile(r"[^\w\s]")


def _field_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value.lower()
    if isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
        return " ".join(value).lower()
    return None


def field_weighted_score(
    terms: Sequence[str],
    content: Mapping[str, Any],
    weights: Mapping[str, float],
    base_score: float,
) -> float:
    """Re-score one candidate from where the query terms occur.

    The best single field wins: an exact phrase in a field is worth far more
    than scattered terms, and primary fields (weight >= 2.5) whose whole value
    equals the phrase get an extra bonus, with longer values penalized.
    Documents matching no weighted field keep ``base_score``.
    """
    lowered = [term.lower() for term in terms if term]
    if not lowered:
        return base_score
    phrase = " ".join(lowered) if len(lowered) > 1 else None

    best = 0.0
    for field_name, weight in weights.items():
        text = _field_text(content.get(field_name))
        if text is None or weight <= 0:
            continue

        score = 0.0
        matched = 0
        if phrase is not None and phrase in text:
            score = PHRASE_MATCH_BONUS
            matched = len(lowered)
            if weight >= PRIMARY_FIELD_WEIGHT:
                if text == phrase:
                    score += EXACT_FIELD_BONUS
                elif _PUNCTUATION_RE.sub("", text).strip() == phrase:
                    score += NEAR_EXACT_FIELD_BONUS
                elif len(text) > len(phrase):
                    score *= 1.0 - min(0.5, (len(text) - len(phrase)) / 100.0)
        else:
            for term in lowered:
                if term in text:
                    matched += 1
                    score += 2.0 if weight >= PRIMARY_FIELD_WEIGHT and text == term else 1.0

        if matched:
            multi_term_bonus = matched**1.5 if matched > 1 else 1.0
            best = max(best, score * weight * multi_term_bonus)

    if best > 0:
        return base_score * (BASE_SCORE_FLOOR + best)
    return base_score


def proximity_score(distance_meters: float | None, decay_k: float) -> float:
    """Distance decay in [0, 1]: ``1 / (1 + k * d)``; 0 when the distance is unknown."""
    if distance_meters is None:
        return 0.0
    return 1.0 / (1.0 + decay_k * max(0.0, distance_meters))


def blend_score(text_score: float, proximity: float, distance_weight: float) -> float:
    return text_score * (1.0 - distance_weight) + proximity * distance_weight


def sort_value(row: Mapping[str, Any], key: str) -> Any:
    if key == "_score":
        return row.get("score")
    if key == "distance":
        return row.get("distance")
    prefix, _, path = key.partition(".")
    if not path:
        return row.get(key)
    current: Any = row.get("document" if prefix == "content" else prefix)
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _comparable(value: Any) -> tuple[int, Any]:
    if isinstance(value, bool):
        return (0, int(value))
    if isinstance(value, (int, float)):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return (2, str(value))


def order_rows(rows: Iterable[dict[str, Any]], order: Sequence[tuple[str, str]]) -> list[dict[str, Any]]:
    """Stable multi-key sort; missing values always sort last."""
    ordered = list(rows)
    for key, direction in reversed(order):
        present = [row for row in ordered if sort_value(row, key) is not None]
        missing = [row for row in ordered if sort_value(row, key) is None]
        present.sort(key=lambda row: _comparable(sort_value(row, key)), reverse=direction == "desc")
        ordered = present + missing
    return ordered


def rank_in_application(rows: list[dict[str, Any]], plan: QueryPlan) -> list[dict[str, Any]]:
    """Apply re-scoring and blending to every candidate, then order them (no pagination)."""
    if plan.field_rerank:
        for row in rows:
            row["score"] = field_weighted_score(plan.terms, row["document"], plan.field_weights, row["score"])

    if plan.blend_weight > 0:
        top = max((row["score"] for row in rows), default=0.0)
        for row in rows:
            text_score = row["score"] / top if top > 0 else 0.0
            proximity = proximity_score(row.get("distance"), plan.decay_k)
            row["score"] = blend_score(text_score, proximity, plan.blend_weight)

    return order_rows(rows, [*plan.order, ("id", "asc")])
