"""Text analysis shared by indexing and querying.

``RegexTokenizer`` splits text into positioned tokens and filters rewrite the
stream. ``TextAnalyzer`` runs that pipeline and adds stopword removal and
English stemming behind ``analyze(text, language) -> list[str]``, the call the
indexer and query builder make.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, replace
import re
from typing import Any, Protocol
import unicodedata


@dataclass
class Token:
    text: str
    position: int
    start_char: int
    end_char: int


class Analyzer(Protocol):
    """Anything that turns a field value into index terms."""

    def analyze(self, text: str, language: str | None = None) -> list[str]:  # pragma: no cover - interface
        ...


class TokenFilter(Protocol):
    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:  # pragma: no cover - interface
        ...


class RegexTokenizer:
    """Words, keeping inner apostrophes and hyphens (``o'clock``, ``t-shirt``)."""

    def __init__(self, pattern: str = r"\w+(?:['-]\w+)*") -> None:
        self.pattern = re.compile(pattern)

    def __call__(self, text: str) -> Iterator[Token]:
        for position, match in enumerate(self.pattern.finditer(text)):
            yield Token(match.group(0), position, match.start(), match.end())


def lowercase_filter(tokens: Iterable[Token]) -> Iterator[Token]:
    for token in tokens:
        yield token if token.text.islower() else replace(token, text=token.text.lower())


def number_filter(tokens: Iterable[Token]) -> Iterator[Token]:
    """Drop integers and decimals such as ``42`` or ``3.5``."""
    for token in tokens:
        if not token.text.replace(".", "", 1).isdigit():
            yield token


def run_pipeline(text: str, tokenizer: RegexTokenizer, filters: Sequence[TokenFilter]) -> list[Token]:
    """Tokenize ``text`` and apply ``filters`` in order; positions are renumbered afterwards."""
    stream: Iterable[Token] = tokenizer(text)
    for token_filter in filters:
        stream = token_filter(stream)
    return [replace(token, position=index) for index, token in enumerate(stream)]


STOPWORDS: dict[str, frozenset[str]] = {
    "english": frozenset(
        """a about above after again against all am an and any are as at be because been before being
        below between both but by can did do does doing down during each few for from further had has
        have having he her here hers him his how i if in into is it its itself just me more most my no
        nor not now of off on once only or other our ours out over own same she should so some such than
        that the their theirs them then there these they this those through to too under until up very
        was we were what when where which while who whom why will with would you your yours""".split()
    ),
    "french": frozenset(
        """au aux avec ce ces dans de des du elle en et eux il je la le les leur lui ma mais me mes moi
        mon ne nos notre nous on ou par pas pour qu que qui sa se ses son sur ta te tes toi ton tu un une
        vos votre vous sont est""".split()
    ),
    "german": frozenset(
        """aber als am an auch auf aus bei bin bis da das dass dein dem den der des die dies dieser doch
        dort du durch ein eine einem einen einer eines er es für hier ich ihr ihre im in ist ja kann mein
        mit nach nicht nun oder sein sich sie sind und unter vom von vor was wenn wer wie wir wird zu zum
        zur über""".split()
    ),
    "spanish": frozenset(
        """a al algo como con contra cual cuando de del desde donde durante e el ella ellas ellos en
        entre era es esa ese eso esta este esto estos fue ha hasta hay la las le les lo los me mi mis muy
        más nada ni no nos o otra otro para pero por porque que quien se sin sobre son su sus también te
        tu un una uno y ya""".split()
    ),
}

DEFAULT_LANGUAGE = "english"

# Tried in order; the first suffix that leaves a stem of two or more letters wins.
_STEM_RULES: tuple[tuple[str, str], ...] = (
    ("ization", "ize"),
    ("ational", "ate"),
    ("fulness", "ful"),
    ("ousness", "ous"),
    ("iveness", "ive"),
    ("tional", "tion"),
    ("biliti", "ble"),
    ("lessli", "less"),
    ("entli", "ent"),
    ("enci", "ence"),
    ("anci", "ance"),
    ("izer", "ize"),
    ("abli", "able"),
    ("alli", "al"),
    ("ator", "ate"),
    ("alism", "al"),
    ("aliti", "al"),
    ("ousli", "ous"),
    ("ration", "rate"),
    ("ation", "ate"),
    ("ness", ""),
    ("ment", ""),
    ("able", ""),
    ("ible", ""),
    ("ingly", ""),
    ("edly", ""),
    ("ing", ""),
    ("ed", ""),
    ("ly", ""),
    ("es", ""),
    ("s", ""),
)

_PUNCTUATION_FOLDS = str.maketrans(
    {
        "\u201c": '"',
        "\u201d": '"',
        "\u2018": "'",
        "\u2019": "'",
        "\u2026": "...",
        "\u00a0": " ",
    }
)
_INVISIBLE_RE = re.compile("[\u200b-\u200f\u2060\ufeff]")
_WHITESPACE_RE = re.compile(r"\s+")


def stem_english(word: str) -> str:
    """Light suffix stripping: ``roasts`` -> ``roast``, ``organization`` -> ``organize``."""
    lower = word.lower()
    for suffix, replacement in _STEM_RULES:
        if lower.endswith(suffix) and len(lower) - len(suffix) >= 2:
            return lower[: -len(suffix)] + replacement
    return lower


def normalize_text(text: str) -> str:
    """NFC-normalize, fold curly quotes, strip zero-width characters and squeeze whitespace."""
    text = unicodedata.normalize("NFC", text).translate(_PUNCTUATION_FOLDS)
    return _WHITESPACE_RE.sub(" ", _INVISIBLE_RE.sub("", text)).strip()


class TextAnalyzer:
    """Default analyzer: normalize, tokenize, lowercase, drop stopwords, stem.

    Stemming only applies to English; other languages keep their surface
    forms but still get language-specific stopword removal.
    """

    def __init__(
        self,
        *,
        custom_stopwords: Iterable[str] | None = None,
        disable_stopwords: bool = False,
        apply_stemming: bool = True,
        remove_numbers: bool = False,
        min_token_length: int = 1,
    ) -> None:
        self.custom_stopwords: set[str] = {word.lower() for word in custom_stopwords or ()}
        self.disable_stopwords = disable_stopwords
        self.apply_stemming = apply_stemming
        self.min_token_length = min_token_length
        self._tokenizer = RegexTokenizer()
        self._filters: list[TokenFilter] = [lowercase_filter]
        if remove_numbers:
            self._filters.append(number_filter)

    def tokenize(self, text: str) -> list[str]:
        tokens = run_pipeline(normalize_text(text), self._tokenizer, self._filters)
        return [token.text for token in tokens if len(token.text) >= self.min_token_length]

    def get_stopwords(self, language: str | None = None) -> frozenset[str]:
        base = STOPWORDS.get((language or DEFAULT_LANGUAGE).lower(), STOPWORDS[DEFAULT_LANGUAGE])
        if self.custom_stopwords:
            return base | self.custom_stopwords
        return base

    def remove_stop_words(self, tokens: Sequence[str], language: str | None = None) -> list[str]:
        if self.disable_stopwords:
            return list(tokens)
        stopwords = self.get_stopwords(language)
        return [token for token in tokens if token.lower() not in stopwords]

    def stem(self, word: str, language: str | None = None) -> str:
        if not self.apply_stemming or (language or DEFAULT_LANGUAGE).lower() != DEFAULT_LANGUAGE:
            return word.lower()
        return stem_english(word)

    def normalize(self, text: str) -> str:
        return normalize_text(text)

    def analyze(self, text: str, language: str | None = None) -> list[str]:
        tokens = self.remove_stop_words(self.tokenize(text), language)
        return [self.stem(token, language) for token in tokens]

    def query_terms(self, text: str, language: str | None = None) -> list[str]:
        """Tokens for a full-text query: stopwords removed, surface forms kept.

        Falls back to every token when the query consists solely of stopwords.
        """
        tokens = self.tokenize(text)
        filtered = self.remove_stop_words(tokens, language)
        return filtered or tokens

    def extract_keywords(self, text: str, limit: int = 10) -> list[dict[str, Any]]:
        """Most significant analyzed terms, scored by frequency and length."""
        frequencies = Counter(self.analyze(text))
        total = sum(frequencies.values()) or 1
        keywords = [
            {
                "word": word,
                "frequency": count,
                "score": round((count / total) * 100 + min(len(word), 12) * 0.5, 4),
            }
            for word, count in frequencies.most_common(limit)
        ]
        keywords.sort(key=lambda item: item["score"], reverse=True)
        return keywords

    def add_custom_stopword(self, word: str) -> None:
        self.custom_stopwords.add(word.lower())

    def remove_custom_stopword(self, word: str) -> None:
        self.custom_stopwords.discard(word.lower())
