"""Language detection and corpus-language resolution.

Detection is a lightweight indicator count: each supported language has a
list of lexical anchors (articles, interrogatives, planning terms) and the
language with the most hits wins, provided it reaches two hits.
"""

import re
from typing import Optional

DEFAULT_QUERY_LANGUAGE = "en"
MIN_INDICATOR_MATCHES = 2

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "ca": "Catalan",
    "es": "Spanish",
    "pt": "Portuguese",
    "de": "German",
}

# Corpus language by municipality country code
COUNTRY_LANGUAGES: dict[str, str] = {
    "ES": "ca",
    "PT": "pt",
    "DE": "de",
}


def _compile(patterns: list[str]) -> list[re.Pattern[str]]:
    return [re.compile(p) for p in patterns]


# Declaration order resolves ties
LANGUAGE_INDICATORS: dict[str, list[re.Pattern[str]]] = {
    "ca": _compile(
        [
            r"\bquin[eas]?\b",
            r"\bqual\b",
            r"\bcom\b",
            r"\bpots?\b",
            r"\bsón\b",
            r"\bés\b",
            r"\bels?\b",
            r"\bla[s]?\b",
            r"\bd'",
            r"\balçad[ae]s?\b",
            r"\baparcament\b",
            r"\bqualificació\b",
            r"\bnormativa\b",
            r"\bsòl\b",
        ]
    ),
    "es": _compile(
        [
            r"\bqué\b",
            r"\bcómo\b",
            r"\bcuál\b",
            r"\bdónde\b",
            r"\bson\b",
            r"\balturas?\b",
            r"\baparcamiento\b",
            r"\bcalificación\b",
            r"\bnormativa\b",
            r"\bsuelo\b",
        ]
    ),
    "pt": _compile(
        [
            r"\bquais\b",
            r"\bcomo\b",
            r"\bonde\b",
            r"\bsão\b",
            r"\bnão\b",
            r"\bestacionamento\b",
            r"\bqualificação\b",
            r"\bregulamento\b",
            r"\bsolo\b",
            r"\bconstrução\b",
        ]
    ),
    "de": _compile(
        [
            r"\bwie\b",
            r"\bwelche[rsmn]?\b",
            r"\bist\b",
            r"\bsind\b",
            r"\bdie\b",
            r"\bder\b",
            r"\bdas\b",
            r"\bhöhe\b",
            r"\bparkplatz\b",
            r"\bbebauungsplan\b",
            r"\bgrundstück\b",
        ]
    ),
}


def count_indicators(text: str) -> dict[str, int]:
    """Count matching indicator patterns per language (each pattern once)."""
    lowered = text.lower()
    return {
        language: sum(1 for pattern in patterns if pattern.search(lowered))
        for language, patterns in LANGUAGE_INDICATORS.items()
    }


def detect_language(text: str) -> str:
    """Detect the language of a question.

    Returns:
        The language with the most indicator hits if it has at least two,
        otherwise English.
    """
    best_language = DEFAULT_QUERY_LANGUAGE
    best_count = MIN_INDICATOR_MATCHES - 1
    for language, count in count_indicators(text).items():
        if count > best_count:
            best_language, best_count = language, count
    return best_language


def corpus_language_for(
    municipality_id: int,
    country: Optional[str],
    overrides: dict[int, str],
    default: str,
) -> str:
    """Resolve the document corpus language for a municipality.

    Explicit per-municipality overrides win, then the country mapping, then
    the default corpus language.
    """
    if municipality_id in overrides:
        return overrides[municipality_id]
    if country and country.upper() in COUNTRY_LANGUAGES:
        return COUNTRY_LANGUAGES[country.upper()]
    return default


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)
