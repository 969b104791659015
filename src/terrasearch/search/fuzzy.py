"""Typo-tolerant query expansion.

Query terms are compared against the index vocabulary (``fts5vocab`` terms)
by Levenshtein distance. The allowed distance grows with term length unless
the caller passes an explicit ``fuzziness``:

- 1-2 chars: exact only
- 3-5 chars: one edit
- 6+ chars: two edits
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence


def levenshtein_distance(s1: str, s2: str, max_distance: int | None = None) -> int:
    """Number of single-character insertions, deletions or substitutions turning s1 into s2.

    When ``max_distance`` is given the computation stops as soon as every
    cell of the current row exceeds it and returns ``max_distance + 1``.

    >>> levenshtein_distance("kitten", "sitting")
    3
    """
    if not s1:
        return len(s2)
    if not s2:
        return len(s1)

    if len(s1) > len(s2):
        s1, s2 = s2, s1
    short_len = len(s1)

    if max_distance is not None and len(s2) - short_len > max_distance:
        return max_distance + 1

    previous = list(range(short_len + 1))
    for row, char2 in enumerate(s2, start=1):
        current = [row] + [0] * short_len
        for col, char1 in enumerate(s1, start=1):
            current[col] = min(
                previous[col] + 1,
                current[col - 1] + 1,
                previous[col - 1] + (char1 != char2),
            )
        if max_distance is not None and min(current) > max_distance:
            return max_distance + 1
        previous = current

    return previous[short_len]


def get_max_edit_distance(term_length: int) -> int:
    """Length-based default edit budget."""
    if term_length <= 2:
        return 0
    if term_length <= 5:
        return 1
    return 2


def find_fuzzy_matches(
    query_term: str,
    vocabulary: Iterable[str],
    max_distance: int | None = None,
) -> list[tuple[str, int]]:
    """Vocabulary terms within the edit budget of ``query_term``.

    Returns ``(term, distance)`` pairs, closest first then alphabetical.
    An exact match has distance 0.
    """
    if not query_term:
        return []

    needle = query_term.lower()
    budget = get_max_edit_distance(len(needle)) if max_distance is None else max(0, max_distance)

    matches: list[tuple[str, int]] = []
    for term in vocabulary:
        candidate = term.lower()
        if abs(len(candidate) - len(needle)) > budget:
            continue
        edits = 0 if candidate == needle else levenshtein_distance(needle, candidate, budget)
        if edits <= budget:
            matches.append((term, edits))

    matches.sort(key=lambda pair: (pair[1], pair[0].lower()))
    return matches


def expand_terms(
    terms: Sequence[str],
    vocabulary: Sequence[str],
    *,
    fuzziness: int | None = None,
    max_expansions: int = 5,
) -> list[str]:
    """Vocabulary variants for ``terms`` that are not already part of the query.

    At most ``max_expansions`` variants are kept per term, closest first.
    """
    seen = {term.lower() for term in terms}
    expansions: list[str] = []
    for term in terms:
        variants = [match for match, edits in find_fuzzy_matches(term, vocabulary, fuzziness) if edits > 0]
        for variant in variants[:max_expansions]:
            lowered = variant.lower()
            if lowered not in seen:
                seen.add(lowered)
                expansions.append(variant)
    return expansions
