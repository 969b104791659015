"""Unit tests for sentence-boundary chunking."""

import pytest

from terrasearch.search.chunking import chunk_text, sentence_spans


def _reconstruct(chunks):
    return chunks[0].text + "".join(chunk.text[chunk.overlap :] for chunk in chunks[1:])


@pytest.fixture
def long_text() -> str:
    return " ".join(f"Sentence number {i} talks about coffee and bread." for i in range(60))


@pytest.mark.unit
class TestChunkText:
    """Tests for chunk_text."""

    def test_short_text_is_one_chunk(self):
        chunks = chunk_text("Short text.", chunk_size=100, overlap=10)
        assert len(chunks) == 1
        assert chunks[0].text == "Short text."
        assert chunks[0].overlap == 0

    @pytest.mark.parametrize(("size", "overlap"), [(0, 0), (100, -1), (100, 100), (100, 150)])
    def test_invalid_parameters(self, size, overlap):
        with pytest.raises(ValueError):
            chunk_text("text", chunk_size=size, overlap=overlap)

    def test_chunks_respect_size(self, long_text):
        chunks = chunk_text(long_text, chunk_size=200, overlap=40)
        assert len(chunks) > 1
        assert all(len(chunk.text) <= 200 for chunk in chunks)

    def test_chunks_are_exact_slices(self, long_text):
        for chunk in chunk_text(long_text, chunk_size=200, overlap=40):
            assert chunk.text == long_text[chunk.start : chunk.end]

    def test_dropping_overlap_reconstructs_text(self, long_text):
        chunks = chunk_text(long_text, chunk_size=200, overlap=40)
        assert _reconstruct(chunks) == long_text
        assert all(0 < chunk.overlap <= 40 for chunk in chunks[1:])

    def test_chunks_end_on_sentence_boundaries(self, long_text):
        chunks = chunk_text(long_text, chunk_size=200, overlap=0)
        assert all(chunk.text.rstrip().endswith(".") for chunk in chunks)
        assert "".join(chunk.text for chunk in chunks) == long_text

    def test_unbroken_text_is_hard_split(self):
        text = "x" * 500
        chunks = chunk_text(text, chunk_size=100, overlap=10)
        assert all(len(chunk.text) <= 100 for chunk in chunks)
        assert _reconstruct(chunks) == text


@pytest.mark.unit
def test_sentence_spans_cover_text():
    text = "One. Two! Three? Four"
    spans = sentence_spans(text)
    assert [text[start:end] for start, end in spans] == ["One. ", "Two! ", "Three? ", "Four"]
