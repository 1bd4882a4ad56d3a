"""Shared fixtures: a temp store, a fixed clock and fake providers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from catalyst_catcher.config import Settings
from catalyst_catcher.llm_schemas import BatchAnalysis, Judgment, Synthesis
from catalyst_catcher.models import NewsArticle, Quote
from catalyst_catcher.signal_dispatcher import SignalDispatcher
from catalyst_catcher.storage import CatalystStore

# Wednesday 11:00 IST, regular session
OPEN_NOW = datetime(2026, 10, 28, 5, 30, tzinfo=timezone.utc)
# Saturday
CLOSED_NOW = datetime(2026, 10, 31, 5, 30, tzinfo=timezone.utc)


def make_article(title: str, link: Optional[str] = None, source: str = "Reuters"):
    slug = title.lower().replace(" ", "-")[:40]
    return NewsArticle(
        title=title,
        link=link or f"https://news.example.com/{slug}",
        pub_date=OPEN_NOW,
        source=source,
    )


class FakeQuotes:
    """Quote provider backed by a dict; records every ticker requested."""

    def __init__(self, quotes: Optional[Dict[str, Quote]] = None):
        self.quotes: Dict[str, Quote] = dict(quotes or {})
        self.calls: List[str] = []

    def set(self, ticker, price, previous_close=None, volume=None, average_volume=None):
        self.quotes[ticker] = Quote(
            ticker=ticker,
            price=price,
            previous_close=previous_close,
            volume=volume,
            average_volume=average_volume,
        )

    def get_quote(self, ticker):
        self.calls.append(ticker)
        return self.quotes.get(ticker)


class FakeAnalysis:
    """Analysis service returning canned responses keyed by ticker/keyword."""

    def __init__(self):
        self.judgments: Dict[str, Judgment] = {}
        self.syntheses: Dict[str, Optional[Synthesis]] = {}
        self.batch_judgments: List[Judgment] = []
        self.keyword_results: Dict[str, BatchAnalysis] = {}
        self.raise_for: set = set()
        self.assess_calls: List[tuple] = []
        self.synthesize_calls: List[str] = []
        self.batch_calls: int = 0

    def assess(self, ticker, articles, context):
        self.assess_calls.append((ticker, list(articles), list(context)))
        if ticker in self.raise_for:
            raise RuntimeError(f"boom {ticker}")
        return self.judgments.get(ticker, Judgment())

    def synthesize(self, ticker, articles, context, pass1):
        self.synthesize_calls.append(ticker)
        return self.syntheses.get(ticker)

    def assess_batch(self, articles, assets, context):
        self.batch_calls += 1
        if self.batch_judgments:
            return self.batch_judgments.pop(0)
        return Judgment()

    def analyze_batch(self, asset, articles):
        if asset.keyword in self.raise_for:
            raise RuntimeError(f"boom {asset.keyword}")
        result = self.keyword_results.get(asset.keyword)
        if result is None:
            return BatchAnalysis.negative("nothing", len(articles))
        return result.model_copy(update={"headlines_analyzed": len(articles)})


class FakeNews:
    """News provider returning canned articles per query."""

    def __init__(self, by_query: Optional[Dict[str, List[NewsArticle]]] = None):
        self.by_query = dict(by_query or {})
        self.queries: List[str] = []

    def fetch(self, query, lookback_hours=2, max_results=None, now=None):
        self.queries.append(query)
        items = list(self.by_query.get(query, []))
        return items[:max_results] if max_results is not None else items


@pytest.fixture
def settings(tmp_path):
    return Settings(
        gemini_api_key="test-key",
        db_path=str(tmp_path / "catalyst.db"),
        opportunities_log_path=str(tmp_path / "logs" / "opportunities.log"),
        data_dir=tmp_path,
        market_holidays=[],
        paper_mode=False,
    )


@pytest.fixture
def store(settings):
    s = CatalystStore(settings.db_path)
    yield s
    s.close()


@pytest.fixture
def quotes():
    return FakeQuotes()


@pytest.fixture
def analysis():
    return FakeAnalysis()


@pytest.fixture
def dispatcher(store, settings, quotes):
    return SignalDispatcher(store, settings.opportunities_log_path, quotes)
