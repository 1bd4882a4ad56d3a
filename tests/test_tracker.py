from datetime import timedelta

import pytest
from conftest import CLOSED_NOW, OPEN_NOW

from catalyst_catcher.models import PotentialCatalyst, WatchCriteria, WatchlistAsset
from catalyst_catcher.signal_dispatcher import read_opportunities
from catalyst_catcher.tracker import (
    CatalystTracker,
    TickerSnapshot,
    evaluate_criteria,
    progress_percent,
)


def snap(change=0.0, ratio=1.0):
    return TickerSnapshot(
        ticker="X.NS",
        price=100.0,
        reference_price=100.0,
        change_percent=change,
        volume=ratio * 1000,
        average_volume=1000.0,
        volume_ratio=ratio,
    )


def seed(
    store,
    symbols,
    age_hours=1.0,
    metric="PRICE",
    direction="UP",
    threshold=2.0,
    timeout=24.0,
    base_price=100.0,
    **kw,
):
    created = OPEN_NOW - timedelta(hours=age_hours)
    c = PotentialCatalyst(
        predicted_impact=kw.pop("impact", "Smelter outage"),
        affected_symbols=list(symbols),
        watch_criteria=WatchCriteria(
            metric=metric,
            direction=direction,
            threshold_percent=threshold,
            timeout_hours=timeout,
        ),
        related_article_ids=kw.pop("links", ["https://news.example.com/a"]),
        created_at=created,
        base_price=base_price,
        base_price_ticker=symbols[0] if base_price is not None else None,
        base_price_state="discovery" if base_price is not None else None,
        **kw,
    )
    store.insert_catalyst(c, now=created)
    return c


@pytest.fixture
def tracker(store, quotes, dispatcher, settings):
    return CatalystTracker(store, quotes, dispatcher, settings)


class TestEvaluateCriteria:
    def test_price_up_threshold_is_inclusive(self):
        wc = WatchCriteria(metric="PRICE", direction="UP", threshold_percent=2.0)
        assert evaluate_criteria(wc, snap(change=2.0))
        assert not evaluate_criteria(wc, snap(change=1.99))

    def test_price_down(self):
        wc = WatchCriteria(metric="PRICE", direction="DOWN", threshold_percent=2.0)
        assert evaluate_criteria(wc, snap(change=-2.0))
        assert not evaluate_criteria(wc, snap(change=-1.99))
        assert not evaluate_criteria(wc, snap(change=3.0))

    def test_volume_threshold_is_percent_of_average(self):
        wc = WatchCriteria(metric="VOLUME", direction="UP", threshold_percent=150)
        assert evaluate_criteria(wc, snap(ratio=1.5))
        assert not evaluate_criteria(wc, snap(ratio=1.49))

    def test_progress_flips_sign_for_down(self):
        up = WatchCriteria(metric="PRICE", direction="UP", threshold_percent=2.0)
        down = WatchCriteria(metric="PRICE", direction="DOWN", threshold_percent=2.0)
        assert progress_percent(up, snap(change=1.0)) == pytest.approx(50.0)
        assert progress_percent(down, snap(change=-1.0)) == pytest.approx(50.0)
        assert progress_percent(down, snap(change=1.0)) == pytest.approx(-50.0)


def test_market_closed_only_expires_and_never_quotes(store, quotes, tracker):
    old = seed(store, ["X.NS"], age_hours=25)
    young = seed(store, ["X.NS"], age_hours=23)
    quotes.set("X.NS", 150.0, previous_close=100.0)

    result = tracker.run(CLOSED_NOW)

    assert result.market_open is False
    assert quotes.calls == []
    # ages are measured from CLOSED_NOW, three days after creation
    assert store.get_catalyst(old.id).status == "expired"
    assert store.get_catalyst(young.id).status == "expired"


def test_timeout_round_trip(store, quotes, tracker):
    old = seed(store, ["X.NS"], age_hours=25)
    young = seed(store, ["X.NS"], age_hours=23)
    quotes.set("X.NS", 100.5, previous_close=100.0)

    result = tracker.run(OPEN_NOW)

    assert result.expired == 1
    assert store.get_catalyst(old.id).status == "expired"
    assert store.get_catalyst(young.id).status == "monitoring"
    assert result.checked == 1


def test_closed_market_keeps_young_hypotheses(store, quotes, tracker):
    # Saturday 11:00 IST; created 23h earlier on Friday
    young = seed(store, ["X.NS"], age_hours=0)
    young.created_at = CLOSED_NOW - timedelta(hours=23)
    store.update_catalyst(young, now=CLOSED_NOW)

    tracker.run(CLOSED_NOW)

    assert store.get_catalyst(young.id).status == "monitoring"
    assert quotes.calls == []


def test_confirmation_dispatches_live_signal(store, quotes, tracker):
    store.add_asset(WatchlistAsset(keyword="Copper", ticker="X.NS"))
    c = seed(store, ["X.NS"], impact="Copper supply shock", links=["https://n/1", "https://n/2"])
    quotes.set("X.NS", 102.0, previous_close=101.0, volume=3000, average_volume=1000)

    result = tracker.run(OPEN_NOW, paper_mode=False)

    assert result.confirmed == 1
    stored = store.get_catalyst(c.id)
    assert stored.status == "confirmed"
    assert len(stored.validation_log) == 1
    entry = stored.validation_log[0]
    assert entry.met is True
    assert entry.base_price == 100.0
    assert entry.change == pytest.approx(2.0)

    signals = store.list_signals(status="active")
    assert len(signals) == 1
    sig = signals[0]
    assert sig.id == result.signal_ids[0]
    assert sig.action == "BUY_WATCH"
    assert sig.asset.keyword == "Copper"
    assert sig.news.title == "AI Discovery: Copper supply shock"
    assert sig.news.link == "https://n/1"
    assert sig.news.source == "AI"
    assert sig.analysis.sentiment == "BULLISH"
    assert sig.analysis.impact_type == "REGULATORY"
    assert sig.analysis.confidence == 8
    assert sig.analysis.reasoning == "AI Validation Confirmed: PRICE moved UP on X.NS"
    assert sig.technical.volume_ratio == pytest.approx(3.0)
    assert sig.expires_at == OPEN_NOW + timedelta(hours=48)


def test_below_threshold_stays_monitoring(store, quotes, tracker):
    c = seed(store, ["X.NS"])
    quotes.set("X.NS", 101.99, previous_close=90.0)

    result = tracker.run(OPEN_NOW)

    assert result.confirmed == 0
    stored = store.get_catalyst(c.id)
    assert stored.status == "monitoring"
    assert stored.validation_log[0].met is False
    assert stored.validation_log[0].change == pytest.approx(1.99)
    assert store.list_signals() == []


def test_stops_at_first_confirming_ticker(store, quotes, tracker):
    c = seed(store, ["A.NS", "B.NS", "C.NS"], base_price=None)
    quotes.set("A.NS", 100.5, previous_close=100.0)
    quotes.set("B.NS", 103.0, previous_close=100.0)
    quotes.set("C.NS", 110.0, previous_close=100.0)

    tracker.run(OPEN_NOW)

    stored = store.get_catalyst(c.id)
    assert stored.status == "confirmed"
    assert [(e.ticker, e.met) for e in stored.validation_log] == [
        ("A.NS", False),
        ("B.NS", True),
    ]
    assert "C.NS" not in quotes.calls


def test_quote_failure_for_one_ticker_is_skipped(store, quotes, tracker):
    c = seed(store, ["MISSING.NS", "B.NS"], base_price=None)
    quotes.set("B.NS", 103.0, previous_close=100.0)

    result = tracker.run(OPEN_NOW)

    assert result.errors == []
    assert quotes.calls[:2] == ["MISSING.NS", "MISSING.BO"]
    assert store.get_catalyst(c.id).status == "confirmed"


def test_unlisted_ticker_gets_temporary_asset_in_paper_mode(
    store, quotes, tracker, settings
):
    seed(store, ["ZEN.NS"], direction="DOWN", base_price=200.0)
    quotes.set("ZEN.NS", 196.0, previous_close=199.0)

    result = tracker.run(OPEN_NOW, paper_mode=True)

    assert result.confirmed == 1
    assert store.list_signals() == []
    entries = read_opportunities(settings.opportunities_log_path)
    assert len(entries) == 1
    entry = entries[0]
    assert entry.id == result.signal_ids[0]
    assert entry.keyword == "ZEN"
    assert entry.sentiment == "BEARISH"
    assert entry.global_ticker == "ZEN.NS"
    assert entry.base_price == 196.0
    assert entry.price_change_percent == pytest.approx(-2.0)


def test_temporary_asset_survives_the_live_store(store, quotes, tracker):
    seed(store, ["ZEN.NS"], direction="DOWN", base_price=200.0)
    quotes.set("ZEN.NS", 196.0, previous_close=199.0)

    result = tracker.run(OPEN_NOW, paper_mode=False)

    stored = store.get_signal(result.signal_ids[0])
    assert stored.asset.is_temporary
    assert stored.asset.id == "temp-ZEN.NS"
    assert stored.asset.keyword == "ZEN"
    assert stored.asset.ticker == "ZEN.NS"


def test_pending_base_price_is_captured_at_open(store, quotes, tracker):
    c = seed(store, ["X.NS"], base_price=None)
    c.base_price_state = "pending_next_open"
    store.update_catalyst(c, now=OPEN_NOW)
    quotes.set("X.NS", 150.0, previous_close=100.0)

    result = tracker.run(OPEN_NOW)

    assert result.base_prices_captured == 1
    stored = store.get_catalyst(c.id)
    assert stored.base_price == 150.0
    assert stored.base_price_state == "next_open"
    # measured against the fresh base price, not the previous close
    assert stored.status == "monitoring"
    assert stored.validation_log[0].change == pytest.approx(0.0)


def test_ticker_corrections_applied_before_quoting(store, quotes, tracker):
    c = seed(store, ["TATAMOTORS.NS"], base_price=None)
    quotes.set("TMPV.NS", 100.0, previous_close=100.0)

    tracker.run(OPEN_NOW)

    assert set(quotes.calls) == {"TMPV.NS"}
    assert store.get_catalyst(c.id).affected_symbols == ["TMPV.NS"]


def test_hypothesis_without_base_price_state_is_captured_at_open(store, quotes, tracker):
    """Rows that never went through discovery capture still get one baseline."""
    c = seed(store, ["RELIANCE.NS"], base_price=None)
    assert store.get_catalyst(c.id).base_price_state is None
    quotes.set("RELIANCE.NS", 2900.0, previous_close=2800.0)

    result = tracker.run(OPEN_NOW)

    assert result.base_prices_captured == 1
    stored = store.get_catalyst(c.id)
    assert stored.base_price == 2900.0
    assert stored.base_price_state == "next_open"
    assert stored.validation_log[0].change == pytest.approx(0.0)


def test_failed_dispatch_keeps_hypothesis_monitoring(store, quotes, tracker, monkeypatch):
    c = seed(store, ["X.NS"])
    quotes.set("X.NS", 103.0, previous_close=100.0)

    def unwritable(signal, paper_mode=False):
        raise OSError("disk full")

    monkeypatch.setattr(tracker.dispatcher, "dispatch", unwritable)
    result = tracker.run(OPEN_NOW, paper_mode=True)

    assert result.confirmed == 0
    assert len(result.errors) == 1
    assert "OSError" in result.errors[0]
    stored = store.get_catalyst(c.id)
    assert stored.status == "monitoring"
    assert stored.validation_log[-1].met is True

    monkeypatch.undo()
    retry = tracker.run(OPEN_NOW, paper_mode=True)
    assert retry.confirmed == 1
    assert store.get_catalyst(c.id).status == "confirmed"
