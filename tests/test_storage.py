from datetime import timedelta

import pytest
from conftest import OPEN_NOW, make_article

from catalyst_catcher.models import (
    PotentialCatalyst,
    SourceCitation,
    ValidationLogEntry,
    WatchCriteria,
    WatchlistAsset,
)


def _catalyst(symbols, created_at=OPEN_NOW, **kw):
    return PotentialCatalyst(
        predicted_impact=kw.pop("impact", "Supply disruption"),
        affected_symbols=list(symbols),
        watch_criteria=WatchCriteria(metric="PRICE", direction="UP", threshold_percent=2),
        created_at=created_at,
        **kw,
    )


def test_watchlist_roundtrip_and_keywords(store):
    store.add_asset(WatchlistAsset(keyword="Copper", ticker="HINDCOPPER.NS"))
    store.add_asset(
        WatchlistAsset(keyword="Copper", ticker="VEDL.NS", related_tickers=["HINDZINC.NS"])
    )
    disabled = WatchlistAsset(keyword="Gold", ticker="TITAN.NS", enabled=False)
    store.add_asset(disabled)

    assert store.get_unique_keywords() == ["Copper"]
    assert [a.ticker for a in store.get_assets_for_keyword("Copper")] == [
        "HINDCOPPER.NS",
        "VEDL.NS",
    ]
    found = store.find_asset_by_ticker("VEDL.NS")
    assert found is not None and found.related_tickers == ["HINDZINC.NS"]
    assert store.find_asset_by_ticker("NOPE.NS") is None

    assert store.set_asset_enabled(disabled.id, True)
    assert store.get_unique_keywords() == ["Copper", "Gold"]


def test_mark_processed_is_idempotent(store):
    article = make_article("Smelter fire halts output")
    store.mark_processed(article, "Copper", False, now=OPEN_NOW)
    store.mark_processed(article, "Copper", True, {"confidence": 8}, now=OPEN_NOW)

    assert store.count_processed() == 1
    row = store.get_processed(article.link)
    assert row["is_catalyst"] is True
    assert row["analysis_result"] == {"confidence": 8}
    assert store.is_processed(article.link)
    assert store.processed_links([article.link, "https://other"]) == {article.link}


def test_catalyst_roundtrip(store):
    c = _catalyst(
        ["HINDCOPPER.NS"],
        source_citations=[SourceCitation(1, "t", "https://u", "Reuters", "2026-10-28")],
        related_article_ids=["https://u"],
    )
    c.validation_log.append(
        ValidationLogEntry(time=OPEN_NOW, ticker="HINDCOPPER.NS", price=10, change=1.0, met=False)
    )
    cid = store.insert_catalyst(c, now=OPEN_NOW)

    loaded = store.get_catalyst(cid)
    assert loaded.affected_symbols == ["HINDCOPPER.NS"]
    assert loaded.watch_criteria.threshold_percent == 2
    assert loaded.source_citations[0].url == "https://u"
    assert loaded.validation_log[0].met is False
    assert loaded.created_at == OPEN_NOW
    assert store.find_catalyst_by_prefix(cid[:8]).id == cid


def test_list_catalysts_filters_and_orders(store):
    old = _catalyst(["A.NS"], created_at=OPEN_NOW - timedelta(hours=50))
    new = _catalyst(["A.NS", "B.NS"], created_at=OPEN_NOW - timedelta(hours=1))
    store.insert_catalyst(new)
    store.insert_catalyst(old)

    assert [c.id for c in store.list_catalysts()] == [old.id, new.id]
    recent = store.list_catalysts(created_after=OPEN_NOW - timedelta(hours=48))
    assert [c.id for c in recent] == [new.id]
    assert [c.id for c in store.catalysts_for_ticker("B.NS")] == [new.id]


def test_expire_older_than_only_touches_monitoring(store):
    stale = _catalyst(["A.NS"], created_at=OPEN_NOW - timedelta(hours=49))
    confirmed = _catalyst(["A.NS"], created_at=OPEN_NOW - timedelta(hours=49), status="confirmed")
    fresh = _catalyst(["A.NS"], created_at=OPEN_NOW - timedelta(hours=2))
    for c in (stale, confirmed, fresh):
        store.insert_catalyst(c)

    n = store.expire_catalysts_older_than(OPEN_NOW - timedelta(hours=48), OPEN_NOW)
    assert n == 1
    assert store.get_catalyst(stale.id).status == "expired"
    assert store.get_catalyst(confirmed.id).status == "confirmed"
    assert store.get_catalyst(fresh.id).status == "monitoring"


def test_delete_clears_suggestion_reference(store):
    c = _catalyst(["A.NS"])
    store.insert_catalyst(c)
    sid = store.insert_suggestion("A.NS", "follow the catalyst", catalyst_id=c.id)

    assert store.delete_catalysts([c.id]) == 1
    assert store.get_catalyst(c.id) is None
    suggestion = store.get_suggestion(sid)
    assert suggestion is not None
    assert suggestion["catalyst_id"] is None


def test_status_validation(store):
    c = _catalyst(["A.NS"])
    store.insert_catalyst(c)
    assert store.set_catalyst_status(c.id, "invalidated")
    with pytest.raises(ValueError):
        store.set_catalyst_status(c.id, "bogus")
    with pytest.raises(ValueError):
        store.update_signal_status("x", "bogus")
