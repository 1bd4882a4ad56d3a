"""Static fixes for ticker symbols the analysis service commonly gets wrong.

Some model outputs use delisted, renamed or truncated NSE symbols.  The
table maps them to the symbol Yahoo Finance actually quotes.
"""

from __future__ import annotations

from typing import Dict, Iterable, List

from .logging_utils import get_logger

log = get_logger("ticker_corrections")

TICKER_CORRECTIONS: Dict[str, str] = {
    "BHARATFORGE.NS": "BHARATFORG.NS",
    # Tata Motors passenger vehicles after the demerger
    "TATAMOTORS.NS": "TMPV.NS",
    "HPCL.NS": "HINDPETRO.NS",
    "VARDHMNRLV.NS": "VTL.NS",
    "REC.NS": "RECLTD.NS",
    "EMS.NS": "EMSLIMITED.NS",
    "MARUTIINT.NS": "MARUTI.NS",
}


def correct_ticker(ticker: str) -> str:
    key = (ticker or "").strip().upper()
    return TICKER_CORRECTIONS.get(key, key)


def correct_tickers(tickers: Iterable[str]) -> List[str]:
    """Apply corrections, keeping order and dropping duplicates/blanks."""
    out: List[str] = []
    for t in tickers:
        fixed = correct_ticker(t)
        if not fixed:
            continue
        if fixed != (t or "").strip().upper():
            log.info("ticker_corrected from=%s to=%s", t, fixed)
        if fixed not in out:
            out.append(fixed)
    return out
