"""Match articles to watchlist tickers.

An article is tested against every asset that has a primary ticker, using
three rules in priority order:

1. the asset keyword as a whole word (case-insensitive);
2. the ticker, with and without its ``.NS``/``.BO`` exchange suffix;
3. the exchange-less base of any related ticker.

A match on any rule files the article under the asset's primary ticker.
An article can land in several groups.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional

from .models import NewsArticle, WatchlistAsset

_EXCHANGE_SUFFIX = re.compile(r"\.(NS|BO)$", re.IGNORECASE)


def ticker_base(ticker: str) -> str:
    """``RELIANCE.NS`` -> ``RELIANCE``."""
    return _EXCHANGE_SUFFIX.sub("", (ticker or "").strip())


def alternate_exchange(ticker: str) -> Optional[str]:
    """Swap NSE and BSE listings; None when the ticker has neither suffix."""
    t = (ticker or "").strip()
    upper = t.upper()
    if upper.endswith(".NS"):
        return t[:-3] + ".BO"
    if upper.endswith(".BO"):
        return t[:-3] + ".NS"
    return None


def _word(term: str) -> re.Pattern:
    return re.compile(r"\b" + re.escape(term) + r"\b", re.IGNORECASE)


def _asset_matches(text: str, asset: WatchlistAsset) -> bool:
    if asset.keyword and _word(asset.keyword).search(text):
        return True
    if asset.ticker:
        base = ticker_base(asset.ticker)
        for term in (base, asset.ticker):
            if term and _word(term).search(text):
                return True
    for related in asset.related_tickers or []:
        base = ticker_base(related)
        if base and _word(base).search(text):
            return True
    return False


def match_tickers(article: NewsArticle, assets: Iterable[WatchlistAsset]) -> List[str]:
    text = f"{article.title} {article.source}"
    out: List[str] = []
    for asset in assets:
        if not asset.ticker or not asset.enabled:
            continue
        if asset.ticker not in out and _asset_matches(text, asset):
            out.append(asset.ticker)
    return out


def group_news_by_ticker(
    articles: Iterable[NewsArticle], assets: Iterable[WatchlistAsset]
) -> Dict[str, List[NewsArticle]]:
    """Return ``ticker -> articles`` in first-seen order."""
    assets = list(assets)
    groups: Dict[str, List[NewsArticle]] = {}
    for article in articles:
        for ticker in match_tickers(article, assets):
            groups.setdefault(ticker, []).append(article)
    return groups
