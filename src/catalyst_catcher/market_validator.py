"""Market quotes and signal confirmation.

Quotes come from yfinance (``Ticker.fast_info`` with a short ``history``
fallback).  Indian tickers are retried on the alternate exchange
(``.NS`` <-> ``.BO``) when the first listing has no price.  Commodities
are validated against global futures/ETF proxies, which are quoted more
reliably than the domestic contracts.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol, Tuple

import yfinance as yf

from .grouping import alternate_exchange
from .logging_utils import get_logger
from .models import MarketConfirmation, Quote, Sentiment, WatchlistAsset

log = get_logger("market_validator")

GLOBAL_VALIDATION_TICKERS: Dict[str, str] = {
    "Copper": "HG=F",
    "Crude Oil": "CL=F",
    "Natural Gas": "NG=F",
    "Gold": "GC=F",
    "Silver": "SI=F",
    "Uranium": "URA",  # Global X Uranium ETF
    "Coffee": "KC=F",
    "Wheat": "ZW=F",
    "Lithium": "LIT",  # Global X Lithium ETF
}

BASE_VOLUME_SPIKE_RATIO = 1.5
# price moves under this are treated as flat for NEUTRAL confirmation
NEUTRAL_BAND_PERCENT = 1.0


class QuoteProvider(Protocol):
    def get_quote(self, ticker: str) -> Optional[Quote]: ...


def _fi_get(fi, attr: str) -> Optional[float]:
    """Return a numeric value from yfinance fast_info via attr or dict key."""
    if fi is None:
        return None
    val = None
    try:
        if isinstance(fi, dict):
            val = fi.get(attr)
        else:
            val = getattr(fi, attr, None)
    except Exception:
        # fast_info computes lazily and raises on missing data
        return None
    try:
        return float(val) if val is not None else None
    except (TypeError, ValueError):
        return None


class YFinanceQuoteProvider:
    """Quote provider backed by yfinance.  Never raises."""

    def __init__(self, retries: int = 1):
        self.retries = retries

    def get_quote(self, ticker: str) -> Optional[Quote]:
        t = yf.Ticker(ticker)
        for attempt in range(self.retries + 1):
            t0 = time.perf_counter()
            try:
                fi = getattr(t, "fast_info", None)
                last = _fi_get(fi, "last_price")
                prev = _fi_get(fi, "previous_close")
                volume = _fi_get(fi, "last_volume")
                avg_volume = _fi_get(fi, "ten_day_average_volume")
                if last is None or prev is None:
                    hist = t.history(period="5d", interval="1d", auto_adjust=False)
                    if not getattr(hist, "empty", True):
                        last = float(hist["Close"].iloc[-1])
                        if len(hist) >= 2:
                            prev = float(hist["Close"].iloc[-2])
                        if volume is None and "Volume" in hist:
                            volume = float(hist["Volume"].iloc[-1])
                        if avg_volume is None and "Volume" in hist:
                            avg_volume = float(hist["Volume"].mean())
                log.debug(
                    "quote ticker=%s last=%s prev=%s t_ms=%.1f",
                    ticker,
                    last,
                    prev,
                    (time.perf_counter() - t0) * 1000.0,
                )
                if last is None or last <= 0:
                    return None
                return Quote(
                    ticker=ticker,
                    price=last,
                    previous_close=prev,
                    volume=volume,
                    average_volume=avg_volume,
                )
            except Exception as e:
                log.info(
                    "quote_failed ticker=%s attempt=%d err=%s",
                    ticker,
                    attempt + 1,
                    e.__class__.__name__,
                )
                if attempt < self.retries:
                    time.sleep(0.4 * (attempt + 1))
        return None


def fetch_quote_with_fallback(
    provider: QuoteProvider, ticker: str
) -> Tuple[Optional[Quote], Optional[str]]:
    """Try ``ticker`` then its alternate exchange listing.

    Returns ``(quote, ticker_used)``; ``(None, None)`` when neither quotes.
    Provider exceptions are logged and treated as "no quote".
    """
    candidates = [ticker]
    alt = alternate_exchange(ticker)
    if alt:
        candidates.append(alt)
    for candidate in candidates:
        try:
            quote = provider.get_quote(candidate)
        except Exception as e:
            log.warning("quote_error ticker=%s err=%s", candidate, e.__class__.__name__)
            quote = None
        if quote is not None and quote.price and quote.price > 0:
            if candidate != ticker:
                log.info("quote_alternate_used ticker=%s alt=%s", ticker, candidate)
            return quote, candidate
    return None, None


def compute_volume_ratio(current: Optional[float], average: Optional[float]) -> float:
    cur = float(current or 0.0)
    avg = float(average or 0.0) or cur
    if avg <= 0:
        return 1.0
    return cur / avg


def volume_spike_threshold(now: datetime) -> float:
    """Intraday volume accumulates; scale the spike bar by elapsed UTC hours."""
    hour = now.astimezone(timezone.utc).hour
    fraction = min(1.0, max(0.1, hour / 16.0))
    return BASE_VOLUME_SPIKE_RATIO * fraction


def is_volume_spike(ratio: float, now: datetime) -> bool:
    return ratio > volume_spike_threshold(now)


def price_confirms_sentiment(sentiment: Sentiment, change_percent: float) -> bool:
    if sentiment == "BULLISH":
        return change_percent > 0
    if sentiment == "BEARISH":
        return change_percent < 0
    return abs(change_percent) < NEUTRAL_BAND_PERCENT


def get_validation_ticker(asset: WatchlistAsset) -> Optional[str]:
    """Which ticker confirms this asset's moves."""
    if asset.global_validation_ticker:
        return asset.global_validation_ticker
    for keyword, ticker in GLOBAL_VALIDATION_TICKERS.items():
        if keyword.lower() == (asset.keyword or "").strip().lower():
            return ticker
    if asset.ticker and asset.asset_type in ("EQUITY", "ETF"):
        return asset.ticker
    return None


def build_confirmation(
    quote: Quote, sentiment: Sentiment, now: datetime, ticker: Optional[str] = None
) -> MarketConfirmation:
    change = quote.change_percent
    current_volume = float(quote.volume or 0.0)
    average_volume = float(quote.average_volume or 0.0) or current_volume
    ratio = compute_volume_ratio(current_volume, average_volume)
    return MarketConfirmation(
        ticker=ticker or quote.ticker,
        current_price=quote.price,
        price_change_percent=change,
        average_volume=average_volume,
        current_volume=current_volume,
        volume_ratio=ratio,
        volume_spike=is_volume_spike(ratio, now),
        is_trending=change > 0,
        price_confirms_sentiment=price_confirms_sentiment(sentiment, change),
    )


def validate_market(
    provider: QuoteProvider,
    asset: WatchlistAsset,
    sentiment: Sentiment,
    now: Optional[datetime] = None,
) -> Optional[MarketConfirmation]:
    """Market confirmation for ``asset`` or None when it cannot be quoted."""
    now = now or datetime.now(timezone.utc)
    ticker = get_validation_ticker(asset)
    if not ticker:
        log.info("validation_skipped keyword=%s reason=no_ticker", asset.keyword)
        return None
    quote, used = fetch_quote_with_fallback(provider, ticker)
    if quote is None:
        log.warning("validation_no_quote keyword=%s ticker=%s", asset.keyword, ticker)
        return None
    confirmation = build_confirmation(quote, sentiment, now, ticker=used)
    log.info(
        "market_validated ticker=%s price=%.2f chg=%.2f vol_ratio=%.2f confirms=%s",
        used,
        confirmation.current_price,
        confirmation.price_change_percent,
        confirmation.volume_ratio,
        confirmation.price_confirms_sentiment,
    )
    return confirmation


def placeholder_confirmation(asset: WatchlistAsset) -> MarketConfirmation:
    """Zeroed confirmation for a signal the market could not be asked about."""
    return MarketConfirmation(
        ticker=asset.global_validation_ticker or asset.ticker or "N/A",
        current_price=0.0,
        price_change_percent=0.0,
        average_volume=0.0,
        current_volume=0.0,
        volume_ratio=0.0,
        volume_spike=False,
        is_trending=False,
        price_confirms_sentiment=False,
    )


def should_act_on_signal(confirmation: Optional[MarketConfirmation]) -> bool:
    """Price agrees with the call on volume or on a >1% move, or volume alone runs >2x."""
    if confirmation is None:
        return False
    if confirmation.price_confirms_sentiment and confirmation.volume_spike:
        return True
    if confirmation.price_confirms_sentiment and abs(confirmation.price_change_percent) > 1:
        return True
    return confirmation.volume_spike and confirmation.volume_ratio > 2


def format_market_summary(confirmation: MarketConfirmation) -> str:
    arrow = "+" if confirmation.price_change_percent >= 0 else ""
    spike = " VOLUME SPIKE" if confirmation.volume_spike else ""
    return (
        f"{confirmation.ticker}: {confirmation.current_price:.2f} "
        f"({arrow}{confirmation.price_change_percent:.2f}%) "
        f"vol {confirmation.volume_ratio:.1f}x{spike}"
    )
