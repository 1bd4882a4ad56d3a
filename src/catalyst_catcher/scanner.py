"""Keyword scan: one batch analysis per watchlist keyword.

For every unique enabled keyword the scanner pulls fresh headlines,
drops obvious noise, asks the analysis service for a holistic verdict
and, when the verdict is a confident catalyst, dispatches one signal for
the keyword.  Market data is attached when it can be fetched; otherwise
the signal carries a zeroed confirmation and relies on the verdict alone.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

from .config import Settings, get_settings
from .llm_schemas import BatchAnalysis
from .logging_utils import get_logger
from .market_validator import (
    format_market_summary,
    placeholder_confirmation,
    validate_market,
)
from .models import (
    AnalysisResult,
    CatalystSignal,
    NewsArticle,
    ScanResult,
    utcnow,
)
from .news_monitor import fetch_new_articles, mark_as_processed
from .noise import filter_noise

log = get_logger("scanner")


def pick_key_article(
    articles: Sequence[NewsArticle], key_headline: str
) -> NewsArticle:
    """The article the service singled out, else the first one."""
    needle = (key_headline or "").strip().lower()
    if needle:
        for a in articles:
            title = a.title.lower()
            if needle in title or title in needle:
                return a
    return articles[0]


class CatalystScanner:
    def __init__(
        self,
        store,
        analysis,
        quotes,
        dispatcher,
        news,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.analysis = analysis
        self.quotes = quotes
        self.dispatcher = dispatcher
        self.news = news
        self.settings = settings or get_settings()

    def scan_keyword(
        self,
        keyword: str,
        now: datetime,
        paper_mode: bool,
        result: ScanResult,
    ) -> None:
        assets = self.store.get_assets_for_keyword(keyword)
        if not assets:
            return
        asset = assets[0]

        fetched = fetch_new_articles(
            self.store,
            self.news,
            keyword,
            lookback_hours=self.settings.news_max_age_hours,
            max_results=self.settings.max_results,
            now=now,
        )
        if not fetched:
            log.debug("scan_no_articles keyword=%s", keyword)
            return
        articles = filter_noise(fetched)
        result.articles_processed += len(fetched)

        if articles:
            verdict = self.analysis.analyze_batch(asset, articles)
        else:
            verdict = BatchAnalysis.negative("All headlines filtered as noise")

        for article in fetched:
            mark_as_processed(
                self.store,
                article,
                keyword,
                verdict.is_catalyst,
                verdict.model_dump(),
                now=now,
            )

        log.info(
            "scan_analyzed keyword=%s articles=%d catalyst=%s conf=%d impact=%s",
            keyword,
            len(articles),
            verdict.is_catalyst,
            verdict.confidence,
            verdict.impact_type,
        )
        if not verdict.is_catalyst or verdict.confidence < self.settings.confidence_threshold:
            return
        result.catalysts_found += 1

        confirmation = validate_market(self.quotes, asset, verdict.sentiment, now)
        if confirmation is None:
            log.info("scan_llm_only keyword=%s reason=no_market_data", keyword)
            confirmation = placeholder_confirmation(asset)
        else:
            log.info("scan_market keyword=%s %s", keyword, format_market_summary(confirmation))

        signal = CatalystSignal(
            asset=asset,
            action="BUY_WATCH" if verdict.sentiment == "BULLISH" else "SELL_WATCH",
            news=pick_key_article(articles, verdict.key_headline),
            analysis=AnalysisResult(
                is_catalyst=True,
                sentiment=verdict.sentiment,
                impact_type=verdict.impact_type,
                confidence=verdict.confidence,
                reasoning=verdict.summary or verdict.reasoning,
            ),
            technical=confirmation,
            created_at=now,
        )
        signal.id = self.dispatcher.dispatch(signal, paper_mode=paper_mode)
        result.signals_generated += 1
        result.signals.append(signal)

    def scan(
        self, now: Optional[datetime] = None, paper_mode: Optional[bool] = None
    ) -> ScanResult:
        now = now or utcnow()
        if paper_mode is None:
            paper_mode = self.settings.paper_mode
        result = ScanResult()
        keywords: List[str] = self.store.get_unique_keywords()
        log.info("scan_start keywords=%d paper=%s", len(keywords), paper_mode)
        for keyword in keywords:
            result.keywords_scanned += 1
            try:
                self.scan_keyword(keyword, now, paper_mode, result)
            except Exception as e:
                log.warning(
                    "scan_keyword_failed keyword=%s err=%s", keyword, e.__class__.__name__
                )
                result.errors.append(f"{keyword}: {e.__class__.__name__}: {e}")
        log.info(
            "scan_done keywords=%d articles=%d catalysts=%d signals=%d errors=%d",
            result.keywords_scanned,
            result.articles_processed,
            result.catalysts_found,
            result.signals_generated,
            len(result.errors),
        )
        return result
