"""Rule-based query classification.

Assigns each question a query type and a suggested retrieval depth. Rules
are evaluated in priority order: code lookup, comparative, complex, simple.
"""

import re

from planning_qa.knowledge.models import QueryClassification, QueryType

# Suggested retrieval depth per query type
CODE_LOOKUP_TOP_K = 7
COMPARATIVE_TOP_K = 10
COMPLEX_TOP_K = 7
SIMPLE_TOP_K = 5

COMPLEX_LENGTH_THRESHOLD = 100

# Alphanumeric zoning codes: "20a1", "13c2", "15b". Measurements and
# ordinals ("10m", "500m2", "2nd") are not codes.
_NOT_A_CODE_SUFFIX = r"(?:st|nd|rd|th|m|m2|m3|cm|mm|km|ha|kg|h|min|s)\b"
_DIGIT_LETTER_CODE = re.compile(
    rf"\b\d+(?!\d|{_NOT_A_CODE_SUFFIX})[a-z]+\d*\b", re.IGNORECASE
)

# Uppercase zoning codes: "ZR12", "ZR12A", "RU22", "A1B" (case-sensitive)
_UPPERCASE_CODE = re.compile(r"\b[A-Z]+\d+[A-Z]*\b")

# Keyword followed by a token containing a digit: "code 15b", "clau:20a1", "zone 15-B"
_KEYWORD_CODE = re.compile(
    r"\b(?:code|codi|c[oó]digo|clau|qualificaci[oó]|calificaci[oó]n|zona|zone)"
    r"[\s:]+[\w\-]*\d[\w\-]*",
    re.IGNORECASE,
)

_COMPARATIVE = re.compile(
    r"compar|differ|versus|\bvs\.|\bentre\b|distinci[oó]|diferenc|difer[eè]ncia|"
    r"unterschied|vergleich",
    re.IGNORECASE,
)

_CLAUSE_SEPARATORS = re.compile(r"[,;]")


def has_code_pattern(question: str) -> bool:
    """Check whether the question references a zoning code or reference."""
    return bool(
        _DIGIT_LETTER_CODE.search(question)
        or _UPPERCASE_CODE.search(question)
        or _KEYWORD_CODE.search(question)
    )


def is_comparative(question: str) -> bool:
    return bool(_COMPARATIVE.search(question))


def is_complex(question: str) -> bool:
    """Long questions, or questions with two or more clause separators."""
    if len(question) > COMPLEX_LENGTH_THRESHOLD:
        return True
    return len(_CLAUSE_SEPARATORS.split(question)) > 2


def classify(question: str) -> QueryClassification:
    """Classify a question and suggest how many chunks to retrieve.

    Args:
        question: Raw question text.

    Returns:
        QueryClassification. The first matching rule wins, so a question
        with both a code and comparison vocabulary is a code lookup.
    """
    if has_code_pattern(question):
        return QueryClassification(
            query_type=QueryType.CODE_LOOKUP, suggested_top_k=CODE_LOOKUP_TOP_K
        )

    if is_comparative(question):
        return QueryClassification(
            query_type=QueryType.COMPARATIVE, suggested_top_k=COMPARATIVE_TOP_K
        )

    if is_complex(question):
        return QueryClassification(query_type=QueryType.COMPLEX, suggested_top_k=COMPLEX_TOP_K)

    return QueryClassification(query_type=QueryType.SIMPLE, suggested_top_k=SIMPLE_TOP_K)
