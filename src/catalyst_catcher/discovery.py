"""
Discovery engine
================

Turns a batch of articles into potential catalysts (hypotheses).

Per run:

1. expire ``monitoring`` hypotheses older than the 48h safety window;
2. group articles by watchlist ticker (see :mod:`grouping`);
3. per ticker group, pass 1 (``assess``) against the 48h context of open
   hypotheses for that ticker: apply updates, insert at most one new
   hypothesis;
4. consolidate: one ``monitoring`` hypothesis per ticker, newest wins;
5. pass 2 (``synthesize``) when the group has several articles, prior
   hypotheses or several pass-1 candidates; persist the thesis onto the
   surviving hypothesis when the service says it is worth it;
6. capture a base price for the survivor if it has none.

When no article matches any ticker the batch is analysed in fixed-size
chunks without grouping, followed by a global consolidation.  Failures
are isolated per ticker group (or chunk) and reported in the result.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from .analysis import AnalysisService, ExistingCatalyst
from .base_price import capture_base_price
from .config import Settings, get_settings
from .grouping import group_news_by_ticker
from .llm_schemas import CatalystUpdate, Judgment, NewCatalystProposal
from .logging_utils import get_logger
from .market_hours import is_market_open
from .models import (
    NewsArticle,
    PotentialCatalyst,
    SourceCitation,
    WatchCriteria,
    WatchlistAsset,
    utcnow,
)
from .ticker_corrections import correct_tickers

log = get_logger("discovery")

SHORT_ID_RE = re.compile(r"^[a-f0-9]{8}")


@dataclass
class DiscoveryResult:
    new_catalysts: int = 0
    updated: int = 0
    consolidated: int = 0
    synthesized: int = 0
    expired: int = 0
    groups: int = 0
    used_fallback: bool = False
    catalysts: List[PotentialCatalyst] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def build_citations(articles: Sequence[NewsArticle]) -> List[SourceCitation]:
    return [
        SourceCitation(
            index=i,
            title=a.title,
            url=a.link,
            source=a.source or "Unknown",
            pub_date=a.pub_date_text(),
        )
        for i, a in enumerate(articles, start=1)
    ]


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


class DiscoveryEngine:
    def __init__(
        self,
        store,
        analysis: AnalysisService,
        quotes=None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.analysis = analysis
        self.quotes = quotes
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Context and housekeeping
    # ------------------------------------------------------------------

    def expire_stale(self, now: datetime) -> int:
        """Safety sweep, independent of each hypothesis' own timeout."""
        cutoff = now - timedelta(hours=self.settings.safety_expiry_hours)
        n = self.store.expire_catalysts_older_than(cutoff, now)
        if n:
            log.info("discovery_expired_stale count=%d", n)
        return n

    def existing_context(
        self, now: datetime, ticker: Optional[str] = None
    ) -> List[ExistingCatalyst]:
        """Open hypotheses from the lookback window, oldest first."""
        cutoff = now - timedelta(hours=self.settings.context_hours)
        out: List[ExistingCatalyst] = []
        for c in self.store.list_catalysts(status="monitoring", created_after=cutoff):
            if ticker is not None and ticker not in c.affected_symbols:
                continue
            out.append(
                ExistingCatalyst(
                    short_id=c.short_id,
                    full_id=c.id,
                    predicted_impact=c.predicted_impact,
                    affected_symbols=list(c.affected_symbols),
                    age_hours=_round_half_up(c.age_hours(now)),
                )
            )
        return out

    # ------------------------------------------------------------------
    # Pass 1 application
    # ------------------------------------------------------------------

    def _match_existing(
        self, update: CatalystUpdate, context: Sequence[ExistingCatalyst]
    ) -> Optional[ExistingCatalyst]:
        id_str = (update.existing_catalyst_id or "").lower()
        if not SHORT_ID_RE.match(id_str):
            log.warning("update_bad_id id=%s", update.existing_catalyst_id[:40])
            return None
        for c in context:
            if c.short_id == id_str or c.full_id.startswith(id_str):
                return c
        log.warning("update_unknown_id id=%s", id_str)
        return None

    def apply_updates(
        self,
        updates: Iterable[CatalystUpdate],
        context: Sequence[ExistingCatalyst],
        articles: Sequence[NewsArticle],
        now: datetime,
    ) -> List[PotentialCatalyst]:
        changed: List[PotentialCatalyst] = []
        for update in updates:
            match = self._match_existing(update, context)
            if match is None:
                continue
            catalyst = self.store.get_catalyst(match.full_id)
            if catalyst is None or catalyst.status != "monitoring":
                continue
            if update.updated_impact:
                catalyst.predicted_impact = update.updated_impact
            symbols = correct_tickers(update.updated_symbols)
            if symbols:
                catalyst.affected_symbols = symbols
            if update.confidence is not None:
                catalyst.confidence = update.confidence
            if update.sentiment is not None:
                catalyst.sentiment = update.sentiment
            if articles:
                catalyst.source_citations = build_citations(articles)
                catalyst.related_article_ids = [a.link for a in articles]
            self.store.update_catalyst(catalyst, now=now)
            changed.append(catalyst)
            log.info(
                "catalyst_updated id=%s reason=%s", catalyst.short_id, update.reason[:80]
            )
        return changed

    def insert_proposal(
        self,
        proposal: NewCatalystProposal,
        articles: Sequence[NewsArticle],
        now: datetime,
        ticker: Optional[str] = None,
    ) -> Optional[PotentialCatalyst]:
        symbols = correct_tickers(proposal.affected_tickers)
        if not symbols and ticker:
            symbols = [ticker]
        if not symbols or not proposal.impact_summary.strip():
            log.info("proposal_dropped reason=empty ticker=%s", ticker)
            return None
        wc = proposal.watch_criteria
        criteria = WatchCriteria(
            metric=wc.metric,
            direction=wc.direction,
            threshold_percent=wc.threshold_percent,
            timeout_hours=wc.timeout_hours,
        )
        catalyst = PotentialCatalyst(
            predicted_impact=proposal.impact_summary,
            affected_symbols=symbols,
            watch_criteria=criteria,
            related_article_ids=[a.link for a in articles],
            source_citations=build_citations(articles),
            status="monitoring",
            primary_ticker=ticker if ticker in symbols else symbols[0],
            sentiment=proposal.sentiment,
            confidence=proposal.confidence,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=criteria.timeout_hours),
        )
        self.store.insert_catalyst(catalyst, now=now)
        log.info(
            "catalyst_created id=%s symbols=%s metric=%s direction=%s threshold=%.2f",
            catalyst.short_id,
            ",".join(symbols),
            criteria.metric,
            criteria.direction,
            criteria.threshold_percent,
        )
        return catalyst

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    def consolidate_ticker(self, ticker: str) -> Optional[PotentialCatalyst]:
        """Keep the newest ``monitoring`` hypothesis for ``ticker``; delete the rest.

        Returns the survivor (or None when there is none).  Idempotent.
        """
        rows = self.store.catalysts_for_ticker(ticker, status="monitoring")
        if not rows:
            return None
        # newest first; equal timestamps fall back to insertion order
        ranked = sorted(
            enumerate(rows),
            key=lambda pair: (pair[1].created_at or utcnow(), pair[0]),
            reverse=True,
        )
        survivor = ranked[0][1]
        stale = [c.id for _, c in ranked[1:]]
        if stale:
            self.store.delete_catalysts(stale)
            log.info(
                "catalysts_consolidated ticker=%s removed=%d kept=%s",
                ticker,
                len(stale),
                survivor.short_id,
            )
        return survivor

    def consolidate_all(self) -> int:
        """Run :meth:`consolidate_ticker` for every symbol with open hypotheses."""
        before = len(self.store.list_catalysts(status="monitoring"))
        symbols: Dict[str, None] = {}
        for c in self.store.list_catalysts(status="monitoring"):
            for s in c.affected_symbols:
                symbols.setdefault(s, None)
        for s in symbols:
            self.consolidate_ticker(s)
        removed = before - len(self.store.list_catalysts(status="monitoring"))
        if removed:
            log.info("consolidation_complete removed=%d", removed)
        return removed

    # ------------------------------------------------------------------
    # Per ticker group
    # ------------------------------------------------------------------

    @staticmethod
    def needs_synthesis(
        articles: Sequence[NewsArticle],
        context: Sequence[ExistingCatalyst],
        judgment: Judgment,
    ) -> bool:
        candidates = len(judgment.updates) + len(judgment.new_catalysts)
        return len(articles) > 1 or len(context) > 0 or candidates > 1

    def process_ticker_group(
        self,
        ticker: str,
        articles: Sequence[NewsArticle],
        now: datetime,
        result: DiscoveryResult,
    ) -> None:
        context = self.existing_context(now, ticker=ticker)
        judgment = self.analysis.assess(ticker, articles, context)

        touched: List[str] = [ticker]
        updated = self.apply_updates(judgment.updates, context, articles, now)
        result.updated += len(updated)
        for c in updated:
            touched.extend(s for s in c.affected_symbols if s not in touched)

        if judgment.new_catalysts:
            if len(judgment.new_catalysts) > 1:
                log.info(
                    "extra_proposals_dropped ticker=%s dropped=%d",
                    ticker,
                    len(judgment.new_catalysts) - 1,
                )
            created = self.insert_proposal(
                judgment.new_catalysts[0], articles, now, ticker=ticker
            )
            if created is not None:
                result.new_catalysts += 1
                result.catalysts.append(created)
                touched.extend(s for s in created.affected_symbols if s not in touched)

        before = len(self.store.list_catalysts(status="monitoring"))
        for symbol in touched:
            self.consolidate_ticker(symbol)
        result.consolidated += before - len(self.store.list_catalysts(status="monitoring"))

        if self.needs_synthesis(articles, context, judgment):
            try:
                synthesis = self.analysis.synthesize(ticker, articles, context, judgment)
            except Exception as e:
                log.warning(
                    "synthesis_failed ticker=%s err=%s", ticker, e.__class__.__name__
                )
                synthesis = None
            if synthesis is not None and synthesis.should_update:
                survivor = self.consolidate_ticker(ticker)
                if survivor is not None:
                    survivor.primary_ticker = synthesis.primary_ticker or ticker
                    survivor.thesis = synthesis.thesis or survivor.thesis
                    if synthesis.comprehensive_impact:
                        survivor.predicted_impact = synthesis.comprehensive_impact
                    survivor.sentiment = synthesis.sentiment
                    survivor.potential_score = synthesis.potential_score
                    survivor.confidence = synthesis.confidence
                    self.store.update_catalyst(survivor, now=now)
                    result.synthesized += 1
                    log.info(
                        "catalyst_synthesized id=%s ticker=%s score=%.1f conf=%d",
                        survivor.short_id,
                        ticker,
                        synthesis.potential_score,
                        synthesis.confidence,
                    )

        self._capture_base(ticker, now)

    def _capture_base(self, ticker: str, now: datetime) -> None:
        if self.quotes is None:
            return
        survivor = self.consolidate_ticker(ticker)
        if survivor is None:
            return
        market_open = is_market_open(now, self.settings.market_holidays)
        capture_base_price(self.store, self.quotes, survivor, now, market_open)

    # ------------------------------------------------------------------
    # Fallback (no ticker matched)
    # ------------------------------------------------------------------

    def run_fallback(
        self,
        articles: Sequence[NewsArticle],
        assets: Sequence[WatchlistAsset],
        now: datetime,
        result: DiscoveryResult,
    ) -> None:
        result.used_fallback = True
        size = max(1, int(self.settings.fallback_chunk_size))
        for start in range(0, len(articles), size):
            batch = list(articles[start : start + size])
            chunk_no = start // size + 1
            try:
                context = self.existing_context(now)
                judgment = self.analysis.assess_batch(batch, assets, context)
                result.updated += len(
                    self.apply_updates(judgment.updates, context, batch, now)
                )
                for proposal in judgment.new_catalysts:
                    created = self.insert_proposal(proposal, batch, now)
                    if created is not None:
                        result.new_catalysts += 1
                        result.catalysts.append(created)
            except Exception as e:
                msg = f"batch {chunk_no}: {e.__class__.__name__}: {e}"
                log.warning("discovery_batch_failed batch=%d err=%s", chunk_no, e)
                result.errors.append(msg)

        result.consolidated += self.consolidate_all()
        if self.quotes is not None:
            for created in result.catalysts:
                current = self.store.get_catalyst(created.id)
                if current is None or current.status != "monitoring":
                    continue
                market_open = is_market_open(now, self.settings.market_holidays)
                capture_base_price(self.store, self.quotes, current, now, market_open)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        articles: Sequence[NewsArticle],
        assets: Sequence[WatchlistAsset],
        now: Optional[datetime] = None,
    ) -> DiscoveryResult:
        now = now or utcnow()
        result = DiscoveryResult()
        if not articles:
            return result

        result.expired = self.expire_stale(now)

        groups = group_news_by_ticker(articles, assets)
        result.groups = len(groups)
        log.info(
            "discovery_start articles=%d groups=%d",
            len(articles),
            len(groups),
        )

        if not groups:
            log.info("discovery_fallback reason=no_ticker_matches")
            self.run_fallback(articles, assets, now, result)
        else:
            for ticker, ticker_articles in groups.items():
                try:
                    self.process_ticker_group(ticker, ticker_articles, now, result)
                except Exception as e:
                    log.warning(
                        "discovery_ticker_failed ticker=%s err=%s",
                        ticker,
                        e.__class__.__name__,
                    )
                    result.errors.append(f"{ticker}: {e.__class__.__name__}: {e}")

        log.info(
            "discovery_done new=%d updated=%d consolidated=%d synthesized=%d errors=%d",
            result.new_catalysts,
            result.updated,
            result.consolidated,
            result.synthesized,
            len(result.errors),
        )
        return result
