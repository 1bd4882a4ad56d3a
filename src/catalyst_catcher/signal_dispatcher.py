"""Persist or paper-log confirmed catalyst signals.

Live mode writes a ``catalyst_signals`` row (48h expiry, status
``active``).  Paper mode writes nothing to the store: the signal becomes
one JSON line in the opportunities log, which the verification step later
re-reads and rewrites with checkpoint results.
"""

from __future__ import annotations

import json
import random
import string
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from .logging_utils import get_logger
from .market_validator import fetch_quote_with_fallback
from .models import (
    CatalystSignal,
    Checkpoint,
    FinalVerdict,
    OpportunityLogEntry,
    utcnow,
)
from .storage import SIGNAL_EXPIRY_HOURS

log = get_logger("signal_dispatcher")

_ID_ALPHABET = string.digits + string.ascii_lowercase
VERDICT_PRIORITY = ("GOOD_CALL", "BAD_CALL", "NEUTRAL")


def format_signal_for_console(signal: CatalystSignal) -> str:
    conf = max(0, min(int(signal.analysis.confidence or 0), 10))
    t = signal.technical
    rule = "=" * 60
    change = f"{'+' if t.price_change_percent >= 0 else ''}{t.price_change_percent:.2f}%"
    lines = [
        "",
        rule,
        f"{signal.action} SIGNAL: {signal.asset.keyword}",
        rule,
        "",
        f"NEWS: {signal.news.title}",
        f"   Source: {signal.news.source}",
        f"   Link: {signal.news.link}",
        "",
        "ANALYSIS:",
        f"   Impact: {signal.analysis.impact_type}",
        f"   Sentiment: {signal.analysis.sentiment}",
        f"   Confidence: {'*' * conf}{'.' * (10 - conf)} ({signal.analysis.confidence}/10)",
        f"   Reasoning: {signal.analysis.reasoning}",
        "",
        f"MARKET: {t.ticker}",
        f"   Price: {t.current_price:.2f}" if t.current_price else "   Price: N/A",
        f"   Change: {change}",
        f"   Volume: {t.volume_ratio:.2f}x avg{' SPIKE' if t.volume_spike else ''}",
        f"   Confirms Sentiment: {'yes' if t.price_confirms_sentiment else 'no'}",
        "",
        rule,
    ]
    return "\n".join(lines)


def generate_paper_id(now: Optional[datetime] = None) -> str:
    """``<epoch ms>-<6 base36 chars>``"""
    ms = int((now or utcnow()).timestamp() * 1000)
    suffix = "".join(random.choices(_ID_ALPHABET, k=6))
    return f"{ms}-{suffix}"


# ---------------------------------------------------------------------------
# Opportunity log (JSONL)
# ---------------------------------------------------------------------------


def append_opportunity(entry: OpportunityLogEntry, log_path: str | Path) -> None:
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")


def read_opportunities(log_path: str | Path) -> List[OpportunityLogEntry]:
    """All readable entries; malformed lines are skipped."""
    path = Path(log_path)
    if not path.exists():
        return []
    out: List[OpportunityLogEntry] = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                out.append(OpportunityLogEntry.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                log.warning(
                    "opportunity_line_skipped line=%d err=%s", lineno, e.__class__.__name__
                )
    return out


def write_opportunities(
    entries: List[OpportunityLogEntry], log_path: str | Path
) -> None:
    """Replace the whole log with ``entries``."""
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        for entry in entries:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
    tmp.replace(path)


def compute_final_verdict(checkpoints: Dict[str, Checkpoint]) -> FinalVerdict:
    verdicts = {cp.verdict for cp in checkpoints.values()}
    for verdict in VERDICT_PRIORITY:
        if verdict in verdicts:
            return verdict  # type: ignore[return-value]
    return "PENDING"


def update_opportunity_checkpoint(
    log_path: str | Path,
    entry_id: str,
    checkpoint_name: str,
    checkpoint: Checkpoint,
) -> Optional[OpportunityLogEntry]:
    """Write one checkpoint into an entry and rewrite the whole log.

    Lines that cannot be parsed are carried over unchanged.  Returns the
    updated entry, or None when ``entry_id`` is not in the log.
    """
    path = Path(log_path)
    if not path.exists():
        return None
    updated: Optional[OpportunityLogEntry] = None
    lines: List[str] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
            except ValueError:
                lines.append(line)
                continue
            if isinstance(raw, dict) and str(raw.get("id")) == entry_id and updated is None:
                entry = OpportunityLogEntry.from_dict(raw)
                entry.checkpoints[checkpoint_name] = checkpoint
                entry.final_verdict = compute_final_verdict(entry.checkpoints)
                updated = entry
                lines.append(json.dumps(entry.to_dict(), ensure_ascii=False))
            else:
                lines.append(line)
    if updated is None:
        log.warning("opportunity_not_found id=%s", entry_id)
        return None
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")
    tmp.replace(path)
    return updated


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class SignalDispatcher:
    """Routes signals to the store (live) or the opportunities log (paper)."""

    def __init__(self, store, log_path: str | Path, quotes=None):
        self.store = store
        self.log_path = Path(log_path)
        self.quotes = quotes

    def _indian_base_price(self, signal: CatalystSignal) -> Optional[float]:
        ticker = signal.asset.ticker
        if not ticker:
            return None
        if ticker == signal.technical.ticker:
            return signal.technical.current_price
        if self.quotes is None:
            return None
        quote, _ = fetch_quote_with_fallback(self.quotes, ticker)
        return quote.price if quote else None

    def build_opportunity(
        self, signal: CatalystSignal, entry_id: str
    ) -> OpportunityLogEntry:
        return OpportunityLogEntry(
            id=entry_id,
            timestamp=signal.created_at,
            keyword=signal.asset.keyword,
            headline=signal.news.title,
            summary=signal.analysis.reasoning,
            indian_ticker=signal.asset.ticker,
            indian_base_price=self._indian_base_price(signal),
            impact_type=signal.analysis.impact_type,
            confidence=signal.analysis.confidence,
            sentiment=signal.analysis.sentiment,
            global_ticker=signal.technical.ticker,
            base_price=signal.technical.current_price or None,
            price_change_percent=signal.technical.price_change_percent,
            volume_ratio=signal.technical.volume_ratio,
        )

    def dispatch(self, signal: CatalystSignal, paper_mode: bool = False) -> str:
        """Audit-log the signal, then persist (live) or paper-log it.  Returns its id."""
        log.info("%s", format_signal_for_console(signal))
        if paper_mode:
            entry_id = generate_paper_id(signal.created_at)
            append_opportunity(self.build_opportunity(signal, entry_id), self.log_path)
            signal.id = entry_id
            log.info(
                "signal_paper_logged id=%s keyword=%s action=%s path=%s",
                entry_id,
                signal.asset.keyword,
                signal.action,
                self.log_path,
            )
            return entry_id

        signal.status = "active"
        signal.expires_at = signal.created_at + timedelta(hours=SIGNAL_EXPIRY_HOURS)
        signal_id = self.store.insert_signal(signal)
        log.info(
            "signal_saved id=%s keyword=%s ticker=%s action=%s",
            signal_id,
            signal.asset.keyword,
            signal.asset.ticker,
            signal.action,
        )
        return signal_id

    def update_signal_status(
        self, signal_id: str, status: str, notes: Optional[str] = None
    ) -> bool:
        ok = self.store.update_signal_status(signal_id, status, notes)
        log.info("signal_status id=%s status=%s ok=%s", signal_id, status, ok)
        return ok

    def get_active_signals(self) -> List[CatalystSignal]:
        return self.store.list_signals(status="active")

    def summary(self) -> Dict[str, Any]:
        return {
            "active": len(self.get_active_signals()),
            "paper_entries": len(read_opportunities(self.log_path)),
        }
