"""Trade category inference from Polymarket market tags.

Priority: sports > politics > economic > crypto > other.
"""
from __future__ import annotations

from typing import Iterable

SPORTS_KEYWORDS = (
    "sports", "sport", "nfl", "nba", "nhl", "mlb", "mls", "soccer", "football",
    "basketball", "baseball", "hockey", "tennis", "golf", "games",
)
POLITICS_KEYWORDS = (
    "politics", "political", "election", "elections", "president", "presidential",
)
ECONOMIC_KEYWORDS = (
    "economic", "economics", "economy", "finance", "financial", "markets",
    "federal-reserve", "fed",
)
CRYPTO_KEYWORDS = (
    "crypto", "cryptocurrency", "bitcoin", "btc", "ethereum", "eth",
    "blockchain", "defi",
)

_PRIORITY = (
    ("sports", SPORTS_KEYWORDS),
    ("politics", POLITICS_KEYWORDS),
    ("economic", ECONOMIC_KEYWORDS),
    ("crypto", CRYPTO_KEYWORDS),
)


def _tag_terms(tags: Iterable) -> list[str]:
    terms = []
    for tag in tags:
        if isinstance(tag, dict):
            for key in ("slug", "label"):
                value = tag.get(key)
                if value:
                    terms.append(str(value).lower())
        elif tag:
            terms.append(str(tag).lower())
    return terms


def infer_category_from_tags(tags: Iterable | None) -> str:
    """Map a market's tag list to one of sports/politics/economic/crypto/other."""
    if not tags:
        return "other"
    terms = _tag_terms(tags)
    for category, keywords in _PRIORITY:
        if any(kw in term for term in terms for kw in keywords):
            return category
    return "other"
