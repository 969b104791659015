"""Highlight snippets for search results.

A snippet is cut around the first matching term, widened to the nearest
sentence boundaries when they are close, and trimmed to ``max_chars``.
Matched terms are wrapped in ``<mark>`` tags (or ``[[...]]`` in plain style).
"""

from __future__ import annotations

from collections.abc import Sequence
import re


SENTENCE_END_PATTERN = re.compile(r"[.!?]\s+")
WORD_BOUNDARY_PATTERN = re.compile(r"\s+")


def find_sentence_start(text: str, position: int, max_lookback: int = 200) -> int:
    """Start of the sentence holding ``position``, or a word boundary inside the lookback window."""
    if position <= 0:
        return 0

    window_start = max(0, position - max_lookback)
    window = text[window_start:position]

    sentence_ends = list(SENTENCE_END_PATTERN.finditer(window))
    if sentence_ends:
        return window_start + sentence_ends[-1].end()

    if window_start == 0:
        return 0

    quarter = len(window) // 4
    for gap in WORD_BOUNDARY_PATTERN.finditer(window):
        if gap.start() >= quarter:
            return window_start + gap.end()
    return window_start


def find_sentence_end(text: str, position: int, max_lookahead: int = 200) -> int:
    """End of the sentence holding ``position``, or a word boundary inside the lookahead window."""
    if position >= len(text):
        return len(text)

    window_end = min(len(text), position + max_lookahead)
    window = text[position:window_end]

    sentence_end = SENTENCE_END_PATTERN.search(window)
    if sentence_end:
        return position + sentence_end.end()

    if window_end == len(text):
        return window_end

    three_quarters = (len(window) * 3) // 4
    for gap in reversed(list(WORD_BOUNDARY_PATTERN.finditer(window))):
        if gap.start() <= three_quarters:
            return position + gap.start()
    return window_end


def extract_sentence_snippet(
    text: str,
    match_position: int,
    match_length: int,
    max_chars: int = 300,
    surrounding_context: int = 100,
) -> str:
    if not text:
        return ""

    start = find_sentence_start(text, max(0, match_position - surrounding_context), surrounding_context)
    end = find_sentence_end(
        text, min(len(text), match_position + match_length + surrounding_context), surrounding_context
    )

    if end - start > max_chars:
        center = match_position + match_length // 2
        start = max(0, center - max_chars // 2)
        end = min(len(text), start + max_chars)

    return text[start:end].strip()


def highlight_terms(
    snippet: str,
    terms: Sequence[str],
    style: str = "html",
    max_highlights: int = 5,
) -> str:
    """Wrap up to ``max_highlights`` non-overlapping term occurrences."""
    if not snippet or not terms:
        return snippet

    spans: list[tuple[int, int]] = []
    for term in terms:
        if len(term) < 2:
            continue
        pattern = re.compile(rf"\b{re.escape(term)}\w*", re.IGNORECASE)
        spans.extend((match.start(), match.end()) for match in pattern.finditer(snippet))

    # Earliest first, longer match wins on ties.
    spans.sort(key=lambda span: (span[0], span[0] - span[1]))
    chosen: list[tuple[int, int]] = []
    for start, end in spans:
        if any(start < chosen_end and end > chosen_start for chosen_start, chosen_end in chosen):
            continue
        chosen.append((start, end))
        if len(chosen) >= max_highlights:
            break

    open_tag, close_tag = ("<mark>", "</mark>") if style == "html" else ("[[", "]]")
    result = snippet
    for start, end in sorted(chosen, reverse=True):
        result = f"{result[:start]}{open_tag}{result[start:end]}{close_tag}{result[end:]}"
    return result


def build_smart_snippet(
    text: str,
    terms: Sequence[str],
    max_chars: int = 300,
    surrounding_context: int = 100,
    style: str = "html",
) -> str | None:
    """Highlighted snippet around the earliest matching term, or None when no term occurs."""
    if not text or not terms:
        return None

    lowered = text.lower()
    best_position = -1
    best_term = ""
    for term in terms:
        if not term:
            continue
        position = lowered.find(term.lower())
        if position != -1 and (best_position == -1 or position < best_position):
            best_position = position
            best_term = term

    if best_position == -1:
        return None

    snippet = extract_sentence_snippet(
        text,
        best_position,
        len(best_term),
        max_chars=max_chars,
        surrounding_context=surrounding_context,
    )
    return highlight_terms(snippet, terms, style=style)
