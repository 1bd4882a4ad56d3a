from datetime import timedelta

import pytest
from conftest import OPEN_NOW

from catalyst_catcher.models import Checkpoint, OpportunityLogEntry
from catalyst_catcher.signal_dispatcher import append_opportunity, read_opportunities
from catalyst_catcher.verification import (
    build_report,
    due_checkpoint,
    format_report,
    grade,
    verify_opportunities,
)


def entry(
    entry_id="e1",
    minutes_ago=90,
    sentiment="BULLISH",
    base_price=100.0,
    global_ticker="HG=F",
    indian_ticker="HINDCOPPER.NS",
    indian_base_price=300.0,
    keyword="Copper",
):
    return OpportunityLogEntry(
        id=entry_id,
        timestamp=OPEN_NOW - timedelta(minutes=minutes_ago),
        keyword=keyword,
        headline="Strike at Escondida",
        impact_type="SUPPLY_SHOCK",
        confidence=8,
        sentiment=sentiment,
        global_ticker=global_ticker,
        base_price=base_price,
        price_change_percent=1.0,
        volume_ratio=2.0,
        indian_ticker=indian_ticker,
        indian_base_price=indian_base_price,
    )


@pytest.mark.parametrize(
    "minutes,expected",
    [
        (59, None),
        (60, "after1hr"),
        (179, "after1hr"),
        (180, "nextSession"),
        (719, "nextSession"),
        (720, "after24hr"),
        (2879, "after24hr"),
        (2880, None),
    ],
)
def test_checkpoint_windows(minutes, expected):
    assert due_checkpoint(entry(minutes_ago=minutes), OPEN_NOW) == expected


def test_filled_checkpoint_is_not_due_again():
    e = entry(minutes_ago=90)
    e.checkpoints["after1hr"] = Checkpoint(OPEN_NOW, 101, 1.0, "GOOD_CALL")
    assert due_checkpoint(e, OPEN_NOW) is None


def test_forced_checkpoint_and_min_age():
    e = entry(minutes_ago=30)
    assert due_checkpoint(e, OPEN_NOW, forced="24hr") is None
    assert due_checkpoint(e, OPEN_NOW, forced="24hr", min_age_minutes=10) == "after24hr"
    assert due_checkpoint(e, OPEN_NOW, forced="session", min_age_minutes=0) == "nextSession"
    with pytest.raises(ValueError):
        due_checkpoint(e, OPEN_NOW, forced="weekly", min_age_minutes=0)


def test_grade():
    assert grade("BULLISH", 0.49) == "NEUTRAL"
    assert grade("BULLISH", -0.49) == "NEUTRAL"
    assert grade("BULLISH", 0.5) == "GOOD_CALL"
    assert grade("BULLISH", -1.0) == "BAD_CALL"
    assert grade("BEARISH", -1.0) == "GOOD_CALL"
    assert grade("BEARISH", 2.0) == "BAD_CALL"


def test_verify_writes_checkpoint_with_indian_leg(tmp_path, quotes):
    log_path = tmp_path / "opps.log"
    append_opportunity(entry(), log_path)
    quotes.set("HG=F", 102.0)
    quotes.set("HINDCOPPER.NS", 309.0)

    run = verify_opportunities(quotes, log_path, now=OPEN_NOW)

    assert run.verified == 1
    saved = read_opportunities(log_path)[0]
    cp = saved.checkpoints["after1hr"]
    assert cp.price == 102.0
    assert cp.price_change_from_signal == pytest.approx(2.0)
    assert cp.verdict == "GOOD_CALL"
    assert cp.indian_stock_price == 309.0
    assert cp.indian_stock_change == pytest.approx(3.0)
    assert saved.final_verdict == "GOOD_CALL"


def test_same_ticker_has_no_indian_leg(tmp_path, quotes):
    log_path = tmp_path / "opps.log"
    append_opportunity(
        entry(global_ticker="VEDL.NS", indian_ticker="VEDL.NS"), log_path
    )
    quotes.set("VEDL.NS", 98.0)

    verify_opportunities(quotes, log_path, now=OPEN_NOW)

    cp = read_opportunities(log_path)[0].checkpoints["after1hr"]
    assert cp.verdict == "BAD_CALL"
    assert cp.indian_stock_price is None
    assert quotes.calls == ["VEDL.NS"]


def test_dry_run_leaves_log_untouched(tmp_path, quotes):
    log_path = tmp_path / "opps.log"
    append_opportunity(entry(), log_path)
    before = log_path.read_text(encoding="utf-8")
    quotes.set("HG=F", 100.1)
    quotes.set("HINDCOPPER.NS", 300.0)

    run = verify_opportunities(quotes, log_path, now=OPEN_NOW, dry_run=True)

    assert run.outcomes[0].checkpoint_result.verdict == "NEUTRAL"
    assert log_path.read_text(encoding="utf-8") == before


def test_entries_without_base_price_are_skipped(tmp_path, quotes):
    log_path = tmp_path / "opps.log"
    append_opportunity(entry(base_price=None), log_path)
    quotes.set("HG=F", 102.0)

    run = verify_opportunities(quotes, log_path, now=OPEN_NOW)

    assert run.skipped == 1
    assert run.verified == 0
    assert quotes.calls == []


def test_report_totals_and_accuracy():
    good = entry("g", keyword="Copper")
    good.checkpoints["after1hr"] = Checkpoint(OPEN_NOW, 1, 2.0, "GOOD_CALL")
    good.final_verdict = "GOOD_CALL"
    bad = entry("b", keyword="Gold")
    bad.checkpoints["after1hr"] = Checkpoint(OPEN_NOW, 1, -2.0, "BAD_CALL")
    bad.final_verdict = "BAD_CALL"
    good2 = entry("g2", keyword="Copper")
    good2.checkpoints["after24hr"] = Checkpoint(OPEN_NOW, 1, 3.0, "GOOD_CALL")
    good2.final_verdict = "GOOD_CALL"
    neutral = entry("n", keyword="Gold")
    neutral.checkpoints["nextSession"] = Checkpoint(OPEN_NOW, 1, 0.1, "NEUTRAL")
    neutral.final_verdict = "NEUTRAL"
    pending = entry("p", keyword="Copper")

    report = build_report([good, bad, good2, neutral, pending])

    assert (report.total, report.verified, report.pending) == (5, 4, 1)
    assert (report.good, report.bad, report.neutral) == (2, 1, 1)
    assert report.accuracy == pytest.approx(200 / 3)
    assert report.by_keyword["Copper"].total == 3
    assert report.by_keyword["Copper"].accuracy == pytest.approx(100.0)
    assert report.by_keyword["Gold"].accuracy == pytest.approx(0.0)
    text = format_report(report)
    assert "Accuracy:        66.7%" in text
    assert "Copper" in text and "Gold" in text


def test_empty_report_has_no_accuracy():
    report = build_report([])
    assert report.accuracy is None
    assert "n/a" in format_report(report)
