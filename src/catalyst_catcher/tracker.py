"""Catalyst lifecycle tracker.

Polls quotes for every ``monitoring`` hypothesis, appends to its
validation log, and moves it to ``confirmed`` (dispatching a signal) or
``expired``.  While the market is closed only the timeout sweep runs and
no quotes are requested.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .base_price import capture_pending_base_prices
from .config import Settings, get_settings
from .errors import QuoteUnavailable
from .grouping import ticker_base
from .logging_utils import get_logger
from .market_hours import is_market_open
from .market_validator import (
    compute_volume_ratio,
    fetch_quote_with_fallback,
    is_volume_spike,
    price_confirms_sentiment,
)
from .models import (
    AnalysisResult,
    CatalystSignal,
    MarketConfirmation,
    NewsArticle,
    PotentialCatalyst,
    ValidationLogEntry,
    WatchCriteria,
    WatchlistAsset,
    utcnow,
)
from .ticker_corrections import correct_tickers

log = get_logger("tracker")


@dataclass
class TickerSnapshot:
    ticker: str
    price: float
    # base price when the hypothesis has one for this ticker, else previous close
    reference_price: Optional[float]
    change_percent: float
    volume: float
    average_volume: float
    volume_ratio: float


@dataclass
class TrackerResult:
    market_open: bool = False
    checked: int = 0
    confirmed: int = 0
    expired: int = 0
    base_prices_captured: int = 0
    signal_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def evaluate_criteria(criteria: WatchCriteria, snapshot: TickerSnapshot) -> bool:
    """Thresholds are inclusive."""
    threshold = abs(float(criteria.threshold_percent))
    if criteria.metric == "VOLUME":
        return criteria.direction == "UP" and snapshot.volume_ratio >= threshold / 100.0
    if criteria.direction == "UP":
        return snapshot.change_percent >= threshold
    return snapshot.change_percent <= -threshold


def progress_percent(criteria: WatchCriteria, snapshot: TickerSnapshot) -> float:
    """How far ``snapshot`` is toward the threshold, in percent (signed)."""
    threshold = abs(float(criteria.threshold_percent))
    if threshold <= 0:
        return 0.0
    if criteria.metric == "VOLUME":
        return snapshot.volume_ratio / (threshold / 100.0) * 100.0
    progress = snapshot.change_percent / threshold * 100.0
    return -progress if criteria.direction == "DOWN" else progress


class CatalystTracker:
    def __init__(
        self,
        store,
        quotes,
        dispatcher,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.quotes = quotes
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------

    def expire_timed_out(self, now: datetime) -> int:
        """Expire ``monitoring`` hypotheses older than their own timeout."""
        expired = 0
        for catalyst in self.store.list_catalysts(status="monitoring"):
            if self._timed_out(catalyst, now):
                self._expire(catalyst, now)
                expired += 1
        return expired

    @staticmethod
    def _timed_out(catalyst: PotentialCatalyst, now: datetime) -> bool:
        return catalyst.age_hours(now) > float(catalyst.watch_criteria.timeout_hours)

    def _expire(self, catalyst: PotentialCatalyst, now: datetime) -> None:
        catalyst.status = "expired"
        self.store.update_catalyst(catalyst, now=now)
        log.info(
            "catalyst_expired id=%s age_h=%.1f timeout_h=%.1f",
            catalyst.short_id,
            catalyst.age_hours(now),
            catalyst.watch_criteria.timeout_hours,
        )

    def snapshot(self, catalyst: PotentialCatalyst, ticker: str) -> TickerSnapshot:
        """Quote ``ticker`` against the hypothesis reference.  Raises QuoteUnavailable."""
        quote, used = fetch_quote_with_fallback(self.quotes, ticker)
        if quote is None or not used:
            raise QuoteUnavailable(ticker)
        reference = quote.previous_close
        base_ticker = catalyst.base_price_ticker or catalyst.primary_ticker
        if (
            catalyst.base_price
            and base_ticker
            and ticker_base(base_ticker) == ticker_base(ticker)
        ):
            reference = catalyst.base_price
        if reference:
            change = (quote.price - reference) / reference * 100.0
        else:
            change = 0.0
        volume = float(quote.volume or 0.0)
        average = float(quote.average_volume or 0.0) or volume
        return TickerSnapshot(
            ticker=used,
            price=quote.price,
            reference_price=reference,
            change_percent=change,
            volume=volume,
            average_volume=average,
            volume_ratio=compute_volume_ratio(volume, average),
        )

    def build_signal(
        self,
        catalyst: PotentialCatalyst,
        ticker: str,
        snapshot: TickerSnapshot,
        asset: Optional[WatchlistAsset],
        now: datetime,
    ) -> CatalystSignal:
        criteria = catalyst.watch_criteria
        asset = asset or WatchlistAsset.temporary(ticker)
        sentiment = "BULLISH" if criteria.direction == "UP" else "BEARISH"
        link = catalyst.related_article_ids[0] if catalyst.related_article_ids else ""
        return CatalystSignal(
            asset=asset,
            action="BUY_WATCH" if criteria.direction == "UP" else "SELL_WATCH",
            news=NewsArticle(
                title=f"AI Discovery: {catalyst.predicted_impact}",
                link=link,
                pub_date=now,
                source="AI",
            ),
            analysis=AnalysisResult(
                is_catalyst=True,
                sentiment=sentiment,
                impact_type="REGULATORY",
                confidence=8,
                reasoning=(
                    f"AI Validation Confirmed: {criteria.metric} moved "
                    f"{criteria.direction} on {ticker}"
                ),
            ),
            technical=MarketConfirmation(
                ticker=snapshot.ticker,
                current_price=snapshot.price,
                price_change_percent=snapshot.change_percent,
                average_volume=snapshot.average_volume,
                current_volume=snapshot.volume,
                volume_ratio=snapshot.volume_ratio,
                volume_spike=is_volume_spike(snapshot.volume_ratio, now),
                is_trending=snapshot.change_percent > 0,
                price_confirms_sentiment=price_confirms_sentiment(
                    sentiment, snapshot.change_percent
                ),
            ),
            created_at=now,
        )

    # ------------------------------------------------------------------

    def check_catalyst(
        self,
        catalyst: PotentialCatalyst,
        now: datetime,
        paper_mode: bool,
        result: TrackerResult,
    ) -> None:
        if self._timed_out(catalyst, now):
            self._expire(catalyst, now)
            result.expired += 1
            return

        result.checked += 1
        criteria = catalyst.watch_criteria
        catalyst.affected_symbols = correct_tickers(catalyst.affected_symbols)

        confirming: Optional[TickerSnapshot] = None
        confirming_ticker: Optional[str] = None
        best: Optional[TickerSnapshot] = None
        for ticker in catalyst.affected_symbols:
            try:
                snap = self.snapshot(catalyst, ticker)
            except QuoteUnavailable:
                log.warning("tracker_no_quote id=%s ticker=%s", catalyst.short_id, ticker)
                continue
            met = evaluate_criteria(criteria, snap)
            catalyst.validation_log.append(
                ValidationLogEntry(
                    time=now,
                    ticker=snap.ticker,
                    price=snap.price,
                    base_price=snap.reference_price,
                    change=snap.change_percent,
                    met=met,
                )
            )
            if best is None or progress_percent(criteria, snap) > progress_percent(
                criteria, best
            ):
                best = snap
            if met:
                confirming, confirming_ticker = snap, ticker
                break

        if confirming is None or confirming_ticker is None:
            self.store.update_catalyst(catalyst, now=now)
            if best is not None:
                log.info(
                    "catalyst_progress id=%s ticker=%s metric=%s progress=%.0f%%",
                    catalyst.short_id,
                    best.ticker,
                    criteria.metric,
                    progress_percent(criteria, best),
                )
            return

        asset = self.store.find_asset_by_ticker(confirming_ticker)
        if asset is None and confirming.ticker != confirming_ticker:
            asset = self.store.find_asset_by_ticker(confirming.ticker)
        signal = self.build_signal(catalyst, confirming_ticker, confirming, asset, now)
        try:
            signal_id = self.dispatcher.dispatch(signal, paper_mode=paper_mode)
        except Exception:
            # stays monitoring so the next run retries the confirmation
            self.store.update_catalyst(catalyst, now=now)
            raise
        catalyst.status = "confirmed"
        self.store.update_catalyst(catalyst, now=now)
        result.confirmed += 1
        result.signal_ids.append(signal_id)
        log.info(
            "catalyst_confirmed id=%s ticker=%s chg=%.2f vol_ratio=%.2f signal=%s",
            catalyst.short_id,
            confirming.ticker,
            confirming.change_percent,
            confirming.volume_ratio,
            signal_id,
        )

    def run(
        self, now: Optional[datetime] = None, paper_mode: Optional[bool] = None
    ) -> TrackerResult:
        now = now or utcnow()
        if paper_mode is None:
            paper_mode = self.settings.paper_mode
        result = TrackerResult(
            market_open=is_market_open(now, self.settings.market_holidays)
        )

        if not result.market_open:
            result.expired = self.expire_timed_out(now)
            log.info("tracker_market_closed expired=%d", result.expired)
            return result

        result.base_prices_captured = capture_pending_base_prices(
            self.store, self.quotes, now
        )
        for catalyst in self.store.list_catalysts(status="monitoring"):
            try:
                self.check_catalyst(catalyst, now, paper_mode, result)
            except Exception as e:
                log.warning(
                    "tracker_check_failed id=%s err=%s",
                    catalyst.short_id,
                    e.__class__.__name__,
                )
                result.errors.append(f"{catalyst.short_id}: {e.__class__.__name__}: {e}")

        log.info(
            "tracker_done checked=%d confirmed=%d expired=%d errors=%d",
            result.checked,
            result.confirmed,
            result.expired,
            len(result.errors),
        )
        return result
