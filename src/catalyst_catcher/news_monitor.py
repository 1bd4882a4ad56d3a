"""Google News RSS ingestion and processed-article deduplication.

Articles are fetched per keyword (or a broad OR-joined query) with a
``when:<N>h`` lookback, parsed with feedparser and normalized into
:class:`NewsArticle`.  Links already in the processed-article ledger are
dropped so every article is analysed at most once.
"""

from __future__ import annotations

import random
import re
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urlparse, urlunparse

import feedparser
import requests
from bs4 import BeautifulSoup

from .logging_utils import get_logger
from .models import NewsArticle, parse_ts

log = get_logger("news_monitor")

GOOGLE_NEWS_RSS_BASE = "https://news.google.com/rss/search"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

_DROP_QUERY_KEYS = {
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "ref",
    "mc_cid",
    "mc_eid",
}


def _sleep_backoff(attempt: int) -> None:
    base = min(2**attempt, 4)
    time.sleep(base + random.uniform(0, 0.25))


def _get(url: str, timeout: float = 10, retries: int = 3) -> Tuple[int, Optional[str]]:
    """GET with retry/backoff.  Returns ``(status, text)``; 599 on transport failure."""
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": (
            "application/rss+xml, application/atom+xml, "
            "application/xml;q=0.9, */*;q=0.8"
        ),
    }
    for attempt in range(0, retries):
        try:
            r = requests.get(url, headers=headers, timeout=timeout, allow_redirects=True)
            if r.status_code >= 500 and attempt < retries - 1:
                _sleep_backoff(attempt)
                continue
            return r.status_code, r.text
        except requests.RequestException as e:
            log.debug(
                "http_get_failed url=%s attempt=%d err=%s",
                url[:80],
                attempt,
                e.__class__.__name__,
            )
            if attempt >= retries - 1:
                return 599, None
            _sleep_backoff(attempt)
    return 599, None


def build_search_url(query: str, lookback_hours: int = 2) -> str:
    q = quote(f"{query} when:{int(lookback_hours)}h")
    return f"{GOOGLE_NEWS_RSS_BASE}?q={q}&hl=en-US&gl=US&ceid=US:en"


def build_broad_query(keywords: Iterable[str]) -> str:
    """OR-join keywords for a single discovery search; multi-word terms quoted."""
    parts = []
    for kw in keywords:
        kw = (kw or "").strip()
        if not kw:
            continue
        parts.append(f'"{kw}"' if " " in kw else kw)
    return " OR ".join(parts)


def canonicalize_link(url: str) -> str:
    """Lowercase the host, drop fragments and tracking query params."""
    if not url:
        return ""
    try:
        p = urlparse(url.strip())
        q = [
            (k, v)
            for (k, v) in parse_qsl(p.query, keep_blank_values=True)
            if k not in _DROP_QUERY_KEYS
        ]
        return urlunparse(
            (p.scheme or "https", p.netloc.lower(), p.path, p.params, urlencode(q), "")
        )
    except ValueError:
        return url.strip()


def split_title_source(raw_title: str) -> Tuple[str, str]:
    """Google News titles read ``Headline - Publisher``; split on the last dash."""
    parts = (raw_title or "").split(" - ")
    if len(parts) > 1:
        source = parts.pop().strip()
        return " - ".join(parts).strip(), source or "Unknown"
    return (raw_title or "").strip(), "Unknown"


def _entry_to_article(entry: Any) -> Optional[NewsArticle]:
    link = canonicalize_link(entry.get("link") or "")
    if not link:
        return None
    title, source = split_title_source(entry.get("title") or "")
    feed_source = entry.get("source") or {}
    if isinstance(feed_source, dict) and feed_source.get("title"):
        source = feed_source["title"]
    return NewsArticle(
        title=title,
        link=link,
        pub_date=parse_ts(entry.get("published") or entry.get("updated")),
        source=source,
        source_priority=3,
    )


def parse_feed(text: str) -> List[NewsArticle]:
    parsed = feedparser.parse(text or "")
    out: List[NewsArticle] = []
    for entry in parsed.entries or []:
        article = _entry_to_article(entry)
        if article is not None:
            out.append(article)
    return out


def fetch_news(
    query: str,
    lookback_hours: int = 2,
    max_results: Optional[int] = None,
    timeout: float = 10,
    now: Optional[datetime] = None,
) -> List[NewsArticle]:
    """Fetch and parse articles for ``query``; never raises, [] on failure.

    Items with a publish time older than the lookback window are dropped
    (Google's ``when:`` filter is approximate).
    """
    if not (query or "").strip():
        return []
    url = build_search_url(query, lookback_hours)
    status, text = _get(url, timeout=timeout)
    if status != 200 or not text:
        log.warning("news_fetch_failed query=%s status=%s", query[:60], status)
        return []
    articles = parse_feed(text)
    if now is not None:
        cutoff = now - timedelta(hours=lookback_hours)
        articles = [a for a in articles if a.pub_date is None or a.pub_date >= cutoff]
    if max_results is not None:
        articles = articles[:max_results]
    log.debug("news_fetched query=%s count=%d", query[:60], len(articles))
    return articles


class GoogleNewsProvider:
    """News provider used by the scanners; swap for a fake in tests."""

    def __init__(self, timeout: float = 10):
        self.timeout = timeout

    def fetch(
        self,
        query: str,
        lookback_hours: int = 2,
        max_results: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[NewsArticle]:
        return fetch_news(
            query,
            lookback_hours=lookback_hours,
            max_results=max_results,
            timeout=self.timeout,
            now=now,
        )


def filter_unprocessed(store, articles: Iterable[NewsArticle]) -> List[NewsArticle]:
    """Drop links already in the ledger and duplicates within the batch."""
    articles = list(articles)
    done = store.processed_links(a.link for a in articles)
    out: List[NewsArticle] = []
    seen: set[str] = set()
    for a in articles:
        if not a.link or a.link in done or a.link in seen:
            continue
        seen.add(a.link)
        out.append(a)
    return out


def fetch_new_articles(
    store,
    provider,
    query: str,
    lookback_hours: int = 2,
    max_results: Optional[int] = 5,
    now: Optional[datetime] = None,
) -> List[NewsArticle]:
    """Fetch ``query`` and return at most ``max_results`` unprocessed articles."""
    fetched = provider.fetch(query, lookback_hours=lookback_hours, now=now)
    fresh = filter_unprocessed(store, fetched)
    if max_results is not None:
        fresh = fresh[:max_results]
    return fresh


def mark_as_processed(
    store,
    article: NewsArticle,
    keyword: Optional[str],
    is_catalyst: bool,
    analysis: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> None:
    store.mark_processed(article, keyword, is_catalyst, analysis, now=now)


def extract_article_text(html_text: str, max_chars: int = 4000) -> str:
    """Readable paragraph text from an article page."""
    if not html_text:
        return ""
    soup = BeautifulSoup(html_text, "html.parser")
    for tag in soup(["script", "style", "nav", "header", "footer", "aside"]):
        tag.decompose()
    paragraphs = [p.get_text(" ", strip=True) for p in soup.find_all("p")]
    text = " ".join(p for p in paragraphs if len(p) > 40)
    if not text:
        text = soup.get_text(" ", strip=True)
    return re.sub(r"\s+", " ", text).strip()[:max_chars]


def fetch_article_content(url: str, timeout: float = 10) -> Optional[Tuple[str, str]]:
    """Return ``(content, content_type)`` for an article or None."""
    status, text = _get(url, timeout=timeout, retries=1)
    if status != 200 or not text:
        return None
    if text.lstrip().startswith("%PDF"):
        # binary PDF bodies are not decoded
        return None
    content = extract_article_text(text)
    return (content, "html") if content else None


def enrich_articles(
    articles: List[NewsArticle], timeout: float = 10
) -> List[NewsArticle]:
    """Attach full text where it can be fetched; failures leave the article as is."""
    for a in articles:
        if a.content:
            continue
        got = fetch_article_content(a.link, timeout=timeout)
        if got:
            a.content, a.content_type = got
    return articles
