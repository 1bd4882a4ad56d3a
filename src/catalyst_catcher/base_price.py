"""Baseline price capture for potential catalysts.

A hypothesis gets exactly one base price: at discovery when the market is
open and a quote is available (state ``discovery``), otherwise it is
marked ``pending_next_open`` and the first market-open tracker run fills
it in (state ``next_open``).  Percent changes are then measured from this
snapshot instead of the provider's rolling previous close.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .logging_utils import get_logger
from .market_validator import fetch_quote_with_fallback
from .models import PotentialCatalyst
from .ticker_corrections import correct_ticker

log = get_logger("base_price")


def reference_ticker(catalyst: PotentialCatalyst) -> Optional[str]:
    if catalyst.primary_ticker:
        return correct_ticker(catalyst.primary_ticker)
    if catalyst.affected_symbols:
        return correct_ticker(catalyst.affected_symbols[0])
    return None


def _record(
    catalyst: PotentialCatalyst, price: float, ticker: str, now: datetime, state: str
) -> None:
    catalyst.base_price = price
    catalyst.base_price_ticker = ticker
    catalyst.base_price_at = now
    catalyst.base_price_state = state  # type: ignore[assignment]


def capture_base_price(
    store, quotes, catalyst: PotentialCatalyst, now: datetime, market_open: bool
) -> bool:
    """Try to snapshot a base price at discovery.  Returns True when captured.

    No-op when the catalyst already has a base price or a pending state.
    """
    if catalyst.base_price is not None or catalyst.base_price_state is not None:
        return False
    ticker = reference_ticker(catalyst)
    captured = False
    if market_open and ticker:
        quote, used = fetch_quote_with_fallback(quotes, ticker)
        if quote is not None and used:
            _record(catalyst, quote.price, used, now, "discovery")
            captured = True
    if not captured:
        catalyst.base_price_state = "pending_next_open"
    store.update_catalyst(catalyst, now=now)
    log.info(
        "base_price id=%s ticker=%s state=%s price=%s",
        catalyst.short_id,
        ticker,
        catalyst.base_price_state,
        catalyst.base_price,
    )
    return captured


def capture_pending_base_prices(store, quotes, now: datetime) -> int:
    """Fill base prices for hypotheses still without one.  Call only while open.

    Covers ``pending_next_open`` rows and rows whose discovery capture never
    ran (no quote provider, manual injection).
    """
    captured = 0
    for catalyst in store.list_catalysts(status="monitoring"):
        if catalyst.base_price is not None or catalyst.base_price_state not in (
            None,
            "pending_next_open",
        ):
            continue
        ticker = reference_ticker(catalyst)
        if not ticker:
            continue
        quote, used = fetch_quote_with_fallback(quotes, ticker)
        if quote is None or not used:
            log.info("base_price_still_pending id=%s ticker=%s", catalyst.short_id, ticker)
            continue
        _record(catalyst, quote.price, used, now, "next_open")
        store.update_catalyst(catalyst, now=now)
        captured += 1
        log.info(
            "base_price_captured id=%s ticker=%s price=%.2f state=next_open",
            catalyst.short_id,
            used,
            quote.price,
        )
    return captured
