"""Sentence-boundary chunking of long text with overlapping tails.

Chunks are exact, contiguous slices of the input. Chunk ``n`` starts with the
last ``overlap`` characters of chunk ``n - 1``, so dropping those leading
characters from every chunk but the first reconstructs the original text.
"""

from __future__ import annotations

from dataclasses import dataclass
import re


_SENTENCE_BREAK_RE = re.compile(r"[.!?]+\s+")


@dataclass(frozen=True, slots=True)
class Chunk:
    text: str
    start: int
    end: int
    overlap: int = 0


def sentence_spans(text: str) -> list[tuple[int, int]]:
    """``(start, end)`` offsets of each sentence, trailing whitespace included."""
    spans: list[tuple[int, int]] = []
    start = 0
    for match in _SENTENCE_BREAK_RE.finditer(text):
        spans.append((start, match.end()))
        start = match.end()
    if start < len(text):
        spans.append((start, len(text)))
    return spans


def _split_span(text: str, start: int, end: int, max_len: int) -> list[tuple[int, int]]:
    """Break one oversized span at whitespace into pieces of at most ``max_len``."""
    pieces: list[tuple[int, int]] = []
    while end - start > max_len:
        cut = start + max_len
        while cut > start and not text[cut - 1].isspace():
            cut -= 1
        if cut == start:
            cut = start + max_len
        pieces.append((start, cut))
        start = cut
    pieces.append((start, end))
    return pieces


def _overlap_start(text: str, prev_start: int, prev_end: int, overlap: int) -> int:
    """Word-aligned start of the tail carried into the next chunk."""
    candidate = max(prev_end - overlap, prev_start + 1)
    for position in range(candidate, prev_end):
        if text[position - 1].isspace() and not text[position].isspace():
            return position
    return prev_end


def chunk_text(text: str, chunk_size: int = 1000, overlap: int = 100) -> list[Chunk]:
    """Greedily pack sentences into chunks of at most ``chunk_size`` characters.

    Args:
        text: Text to split
        chunk_size: Maximum characters per chunk, overlap included
        overlap: Maximum characters repeated from the tail of the previous chunk

    Returns:
        A single chunk when the text already fits, otherwise the ordered chunks.
    """
    if chunk_size <= 0 or overlap < 0 or overlap >= chunk_size:
        raise ValueError(f"Invalid chunking parameters: chunk_size={chunk_size}, overlap={overlap}")
    if len(text) <= chunk_size:
        return [Chunk(text, 0, len(text), 0)]

    max_piece = chunk_size - overlap
    spans: list[tuple[int, int]] = []
    for start, end in sentence_spans(text):
        spans.extend(_split_span(text, start, end, max_piece))

    chunks: list[Chunk] = []
    chunk_start = 0
    chunk_end = 0
    index = 0
    while index < len(spans):
        _, span_end = spans[index]
        if chunk_end > chunk_start and span_end - chunk_start > chunk_size:
            chunks.append(Chunk(text[chunk_start:chunk_end], chunk_start, chunk_end, _carried(chunks, chunk_start)))
            next_start = _overlap_start(text, chunk_start, chunk_end, overlap) if overlap else chunk_end
            chunk_start = next_start
            continue
        chunk_end = span_end
        index += 1
    chunks.append(Chunk(text[chunk_start:chunk_end], chunk_start, chunk_end, _carried(chunks, chunk_start)))
    return chunks


def _carried(chunks: list[Chunk], start: int) -> int:
    if not chunks:
        return 0
    return chunks[-1].end - start
