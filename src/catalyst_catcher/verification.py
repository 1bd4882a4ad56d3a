"""
Verification engine
===================

Grades paper-mode signals after the fact.  Each opportunity-log entry is
re-quoted at up to three checkpoints, chosen by the entry's age:

==============  ==================
checkpoint      age (minutes)
==============  ==================
``after1hr``    60 .. 180
``nextSession`` 180 .. 720
``after24hr``   720 .. 2880
==============  ==================

A checkpoint is graded ``GOOD_CALL`` when the move from the logged base
price agrees with the predicted sentiment, ``BAD_CALL`` when it goes the
other way, and ``NEUTRAL`` when the move stays within a 0.5% band.  The
entry's final verdict is re-derived from all checkpoints present.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .logging_utils import get_logger
from .market_validator import QuoteProvider, fetch_quote_with_fallback
from .models import Checkpoint, OpportunityLogEntry, Verdict, utcnow
from .signal_dispatcher import read_opportunities, update_opportunity_checkpoint

log = get_logger("verification")

CHECKPOINT_WINDOWS: Dict[str, Tuple[int, int]] = {
    "after1hr": (60, 180),
    "nextSession": (180, 720),
    "after24hr": (720, 2880),
}

# CLI spelling -> checkpoint name
CHECKPOINT_ALIASES: Dict[str, str] = {
    "1hr": "after1hr",
    "session": "nextSession",
    "24hr": "after24hr",
}

NEUTRAL_BAND_PERCENT = 0.5


def _age_minutes(entry: OpportunityLogEntry, now: datetime) -> float:
    return (now - entry.timestamp).total_seconds() / 60.0


def due_checkpoint(
    entry: OpportunityLogEntry,
    now: datetime,
    forced: Optional[str] = None,
    min_age_minutes: float = 60,
) -> Optional[str]:
    """Name of the checkpoint to fill for ``entry`` now, or None."""
    age = _age_minutes(entry, now)
    if age < min_age_minutes:
        return None
    if forced:
        name = CHECKPOINT_ALIASES.get(forced, forced)
        if name not in CHECKPOINT_WINDOWS:
            raise ValueError(f"unknown checkpoint: {forced}")
        return None if name in entry.checkpoints else name
    for name, (lo, hi) in CHECKPOINT_WINDOWS.items():
        if lo <= age < hi and name not in entry.checkpoints:
            return name
    return None


def grade(predicted_sentiment: str, change_percent: float) -> Verdict:
    if abs(change_percent) < NEUTRAL_BAND_PERCENT:
        return "NEUTRAL"
    predicted_up = predicted_sentiment == "BULLISH"
    return "GOOD_CALL" if predicted_up == (change_percent > 0) else "BAD_CALL"


def _pct(price: float, base: float) -> float:
    return (price - base) / base * 100.0


@dataclass
class VerificationOutcome:
    entry_id: str
    keyword: str
    checkpoint: str
    checkpoint_result: Checkpoint


@dataclass
class VerificationRun:
    examined: int = 0
    verified: int = 0
    skipped: int = 0
    outcomes: List[VerificationOutcome] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def check_entry(
    provider: QuoteProvider,
    entry: OpportunityLogEntry,
    now: datetime,
) -> Optional[Checkpoint]:
    """Quote the entry's tickers and grade the move.  None when unquotable."""
    if entry.base_price is None or entry.base_price <= 0:
        return None
    quote, _ = fetch_quote_with_fallback(provider, entry.global_ticker)
    if quote is None:
        return None
    change = _pct(quote.price, entry.base_price)
    checkpoint = Checkpoint(
        checked_at=now,
        price=quote.price,
        price_change_from_signal=change,
        verdict=grade(entry.sentiment, change),
    )
    if (
        entry.indian_ticker
        and entry.indian_ticker != entry.global_ticker
        and entry.indian_base_price
    ):
        indian, _ = fetch_quote_with_fallback(provider, entry.indian_ticker)
        if indian is not None:
            checkpoint.indian_stock_price = indian.price
            checkpoint.indian_stock_change = _pct(indian.price, entry.indian_base_price)
    return checkpoint


def verify_opportunities(
    provider: QuoteProvider,
    log_path: str | Path,
    now: Optional[datetime] = None,
    checkpoint: Optional[str] = None,
    min_age_minutes: float = 60,
    dry_run: bool = False,
) -> VerificationRun:
    """Fill due checkpoints for every entry in the opportunities log."""
    now = now or utcnow()
    run = VerificationRun()
    for entry in read_opportunities(log_path):
        run.examined += 1
        name = due_checkpoint(entry, now, forced=checkpoint, min_age_minutes=min_age_minutes)
        if name is None:
            continue
        if entry.base_price is None:
            log.info("verify_skipped id=%s reason=no_base_price", entry.id)
            run.skipped += 1
            continue
        result = check_entry(provider, entry, now)
        if result is None:
            log.warning(
                "verify_no_quote id=%s ticker=%s", entry.id, entry.global_ticker
            )
            run.errors.append(f"{entry.id}: no quote for {entry.global_ticker}")
            continue
        run.verified += 1
        run.outcomes.append(VerificationOutcome(entry.id, entry.keyword, name, result))
        log.info(
            "verify_checkpoint id=%s keyword=%s checkpoint=%s chg=%.2f verdict=%s dry_run=%s",
            entry.id,
            entry.keyword,
            name,
            result.price_change_from_signal,
            result.verdict,
            dry_run,
        )
        if not dry_run:
            update_opportunity_checkpoint(log_path, entry.id, name, result)
    return run


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


@dataclass
class KeywordStats:
    total: int = 0
    good: int = 0
    bad: int = 0
    neutral: int = 0

    @property
    def accuracy(self) -> Optional[float]:
        graded = self.good + self.bad
        return self.good / graded * 100.0 if graded else None


@dataclass
class VerificationReport:
    total: int = 0
    verified: int = 0
    pending: int = 0
    good: int = 0
    bad: int = 0
    neutral: int = 0
    by_keyword: Dict[str, KeywordStats] = field(default_factory=dict)

    @property
    def accuracy(self) -> Optional[float]:
        graded = self.good + self.bad
        return self.good / graded * 100.0 if graded else None


def build_report(entries: Sequence[OpportunityLogEntry]) -> VerificationReport:
    report = VerificationReport(total=len(entries))
    for entry in entries:
        stats = report.by_keyword.setdefault(entry.keyword or "?", KeywordStats())
        stats.total += 1
        verdict = entry.final_verdict
        if not entry.checkpoints or verdict in (None, "PENDING"):
            report.pending += 1
            continue
        report.verified += 1
        if verdict == "GOOD_CALL":
            report.good += 1
            stats.good += 1
        elif verdict == "BAD_CALL":
            report.bad += 1
            stats.bad += 1
        else:
            report.neutral += 1
            stats.neutral += 1
    return report


def _fmt_accuracy(value: Optional[float]) -> str:
    return f"{value:.1f}%" if value is not None else "n/a"


def format_report(report: VerificationReport) -> str:
    lines = [
        "PAPER TRADING REPORT",
        "=" * 40,
        f"Total signals:   {report.total}",
        f"Verified:        {report.verified}",
        f"Pending:         {report.pending}",
        f"Good calls:      {report.good}",
        f"Bad calls:       {report.bad}",
        f"Neutral:         {report.neutral}",
        f"Accuracy:        {_fmt_accuracy(report.accuracy)}",
    ]
    if report.by_keyword:
        lines += ["", "By keyword:"]
        for keyword in sorted(report.by_keyword):
            s = report.by_keyword[keyword]
            lines.append(
                f"  {keyword:<20} total={s.total} good={s.good} bad={s.bad} "
                f"neutral={s.neutral} acc={_fmt_accuracy(s.accuracy)}"
            )
    return "\n".join(lines)
