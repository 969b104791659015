"""Unit tests for fuzzy matching / typo correction."""

import pytest

from terrasearch.search.fuzzy import expand_terms, find_fuzzy_matches, get_max_edit_distance, levenshtein_distance


@pytest.mark.unit
class TestLevenshteinDistance:
    """Tests for levenshtein_distance function."""

    def test_identical_strings(self):
        assert levenshtein_distance("hello", "hello") == 0

    def test_empty_strings(self):
        assert levenshtein_distance("", "") == 0
        assert levenshtein_distance("abc", "") == 3
        assert levenshtein_distance("", "abc") == 3

    def test_single_edits(self):
        assert levenshtein_distance("cat", "cats") == 1
        assert levenshtein_distance("cats", "cat") == 1
        assert levenshtein_distance("cat", "bat") == 1

    def test_multiple_edits(self):
        assert levenshtein_distance("kitten", "sitting") == 3

    def test_early_exit_caps_result(self):
        assert levenshtein_distance("restaurant", "cafe", max_distance=2) == 3


@pytest.mark.unit
class TestGetMaxEditDistance:
    """Tests for the length-based edit budget."""

    def test_budget_grows_with_length(self):
        assert get_max_edit_distance(2) == 0
        assert get_max_edit_distance(3) == 1
        assert get_max_edit_distance(5) == 1
        assert get_max_edit_distance(6) == 2


@pytest.mark.unit
class TestFindFuzzyMatches:
    """Tests for vocabulary matching."""

    def test_closest_first(self):
        vocabulary = ["pizza", "piazza", "pizzas", "pasta"]
        matches = find_fuzzy_matches("pizza", vocabulary)
        assert matches[0] == ("pizza", 0)
        assert ("pizzas", 1) in matches
        assert ("piazza", 1) in matches
        assert all(term != "pasta" for term, _ in matches)

    def test_short_terms_are_exact_only(self):
        assert find_fuzzy_matches("at", ["an", "at"]) == [("at", 0)]

    def test_explicit_fuzziness_overrides_budget(self):
        assert find_fuzzy_matches("cafe", ["cake"], max_distance=0) == []
        assert find_fuzzy_matches("cafe", ["cake"], max_distance=1) == [("cake", 1)]


@pytest.mark.unit
class TestExpandTerms:
    """Tests for query expansion."""

    def test_returns_only_new_variants(self):
        assert expand_terms(["restaurnt"], ["restaurant", "restaurnt", "resort"]) == ["restaurant"]

    def test_limits_expansions_per_term(self):
        vocabulary = ["bake", "bike", "cake", "lake", "make", "rake", "take"]
        assert len(expand_terms(["jake"], vocabulary, max_expansions=3)) == 3

    def test_no_duplicates_across_terms(self):
        assert expand_terms(["bred", "brad"], ["bread"]) == ["bread"]
