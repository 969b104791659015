"""Unit tests for the text analyzers."""

import pytest

from terrasearch.search.analyzers import (
    RegexTokenizer,
    TextAnalyzer,
    lowercase_filter,
    normalize_text,
    number_filter,
    run_pipeline,
    stem_english,
)


@pytest.fixture
def analyzer() -> TextAnalyzer:
    return TextAnalyzer()


@pytest.mark.unit
class TestTextAnalyzer:
    """Tests for the default analyzer pipeline."""

    def test_tokenize_lowercases_and_keeps_contractions(self, analyzer):
        assert analyzer.tokenize("Don't PANIC, it's fine") == ["don't", "panic", "it's", "fine"]

    def test_analyze_removes_stopwords_and_stems(self, analyzer):
        assert analyzer.analyze("The runners are running quickly") == ["runner", "runn", "quick"]

    def test_non_english_is_not_stemmed(self, analyzer):
        assert analyzer.analyze("les cafés sont ouverts", "french") == ["cafés", "ouverts"]

    def test_query_terms_keep_surface_forms(self, analyzer):
        assert analyzer.query_terms("the brewing guides") == ["brewing", "guides"]

    def test_query_of_only_stopwords_falls_back_to_tokens(self, analyzer):
        assert analyzer.query_terms("the and") == ["the", "and"]

    def test_custom_stopwords(self, analyzer):
        analyzer.add_custom_stopword("Coffee")
        assert "coffee" not in analyzer.analyze("coffee shop")
        analyzer.remove_custom_stopword("coffee")
        assert analyzer.analyze("coffee shop") == ["coffee", "shop"]

    def test_disable_stopwords(self):
        assert TextAnalyzer(disable_stopwords=True, apply_stemming=False).analyze("the cat") == ["the", "cat"]

    def test_extract_keywords_ranks_frequent_terms(self, analyzer):
        keywords = analyzer.extract_keywords("coffee coffee coffee tea", limit=2)
        assert keywords[0]["word"] == "coffee"
        assert keywords[0]["frequency"] == 3


@pytest.mark.unit
class TestNormalization:
    """Tests for unicode normalization helpers."""

    def test_smart_punctuation_and_whitespace(self):
        assert normalize_text("\u201cHi\u201d  there\u200b ") == '"Hi" there'

    def test_stem_english(self):
        assert stem_english("Roasts") == "roast"
        assert stem_english("organization") == "organize"
        assert stem_english("bread") == "bread"
        assert stem_english("is") == "is"


@pytest.mark.unit
class TestPipeline:
    """Tests for the tokenizer and token filters."""

    def test_positions_renumbered_after_filtering(self):
        tokens = run_pipeline("Route 66 opens 9.5 miles", RegexTokenizer(), [lowercase_filter, number_filter])
        assert [(token.text, token.position) for token in tokens] == [("route", 0), ("opens", 1), ("miles", 2)]
        assert tokens[1].start_char == 9

    def test_remove_numbers_option(self):
        assert TextAnalyzer(remove_numbers=True).tokenize("42 cafes in 2024") == ["cafes", "in"]

    def test_min_token_length(self):
        assert TextAnalyzer(min_token_length=3).tokenize("a to tea shop") == ["tea", "shop"]
