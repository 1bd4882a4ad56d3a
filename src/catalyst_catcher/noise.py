"""Cheap headline filter applied before any analysis-service call."""

from __future__ import annotations

import re
from typing import List

from .models import NewsArticle

# Routine or off-topic headlines that rarely move a watched asset
NOISE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"earnings",
        r"quarterly results",
        r"q[1-4] results",
        r"analyst (upgrade|downgrade)",
        r"price target",
        r"rating (upgrade|downgrade)",
        r"market (open|close)",
        r"index (add|remove)",
        r"opinion:",
        r"editorial:",
        r"what you need to know",
        r"things to watch",
        r"arrested for",
        r"theft",
        r"stolen",
    )
]


def is_likely_noise(headline: str) -> bool:
    return any(p.search(headline or "") for p in NOISE_PATTERNS)


def filter_noise(articles: List[NewsArticle]) -> List[NewsArticle]:
    return [a for a in articles if not is_likely_noise(a.title)]
