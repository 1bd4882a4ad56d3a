"""Discovery engine: pass 1/2, consolidation, fallback and failure isolation."""

from datetime import timedelta

from conftest import CLOSED_NOW, OPEN_NOW, make_article

from catalyst_catcher.discovery import DiscoveryEngine
from catalyst_catcher.errors import AnalysisError
from catalyst_catcher.llm_schemas import Judgment, Synthesis
from catalyst_catcher.models import PotentialCatalyst, WatchCriteria, WatchlistAsset

COPPER = WatchlistAsset(keyword="Copper", ticker="HINDCOPPER.NS", asset_type="EQUITY")
STEEL = WatchlistAsset(keyword="Steel", ticker="TATASTEEL.NS", asset_type="EQUITY")


def proposal(ticker, impact="Smelter outage tightens supply", **extra):
    d = {
        "impactSummary": impact,
        "affectedTickers": [ticker],
        "confidence": 8,
        "sentiment": "BULLISH",
        "watchCriteria": {
            "metric": "PRICE",
            "direction": "UP",
            "thresholdPercent": 2.5,
            "timeoutHours": 24,
        },
        "citedArticles": [1],
    }
    d.update(extra)
    return d


def judgment(**kw):
    return Judgment.model_validate(kw)


def seed(store, ticker, created_at, impact="Earlier thesis"):
    c = PotentialCatalyst(
        predicted_impact=impact,
        affected_symbols=[ticker],
        watch_criteria=WatchCriteria(),
        created_at=created_at,
    )
    store.insert_catalyst(c, now=created_at)
    return c


def monitoring_for(store, ticker):
    return store.catalysts_for_ticker(ticker, status="monitoring")


def test_new_catalyst_is_created_with_citations_and_base_price(
    store, analysis, quotes, settings
):
    quotes.set("HINDCOPPER.NS", 250.0, previous_close=245.0)
    article = make_article("Copper smelter fire in Zambia")
    analysis.judgments["HINDCOPPER.NS"] = judgment(newCatalysts=[proposal("HINDCOPPER.NS")])

    engine = DiscoveryEngine(store, analysis, quotes, settings)
    result = engine.run([article], [COPPER], OPEN_NOW)

    assert result.new_catalysts == 1
    assert result.groups == 1
    rows = monitoring_for(store, "HINDCOPPER.NS")
    assert len(rows) == 1
    c = rows[0]
    assert c.predicted_impact == "Smelter outage tightens supply"
    assert c.related_article_ids == [article.link]
    assert c.source_citations[0].index == 1
    assert c.source_citations[0].title == article.title
    assert c.source_citations[0].source == "Reuters"
    assert c.watch_criteria.threshold_percent == 2.5
    assert c.primary_ticker == "HINDCOPPER.NS"
    assert c.expires_at == OPEN_NOW + timedelta(hours=24)
    assert c.base_price == 250.0
    assert c.base_price_state == "discovery"
    # single article, no context, single candidate: no synthesis
    assert analysis.synthesize_calls == []


def test_only_first_proposal_per_ticker_is_inserted(store, analysis, quotes, settings):
    analysis.judgments["HINDCOPPER.NS"] = judgment(
        newCatalysts=[
            proposal("HINDCOPPER.NS", impact="First"),
            proposal("HINDCOPPER.NS", impact="Second"),
        ]
    )
    engine = DiscoveryEngine(store, analysis, quotes, settings)
    result = engine.run([make_article("Copper strike")], [COPPER], OPEN_NOW)

    assert result.new_catalysts == 1
    rows = monitoring_for(store, "HINDCOPPER.NS")
    assert [c.predicted_impact for c in rows] == ["First"]
    # two pass-1 candidates trigger the synthesis pass
    assert analysis.synthesize_calls == ["HINDCOPPER.NS"]


def test_update_by_short_id_rewrites_existing(store, analysis, quotes, settings):
    existing = seed(store, "HINDCOPPER.NS", OPEN_NOW - timedelta(hours=3))
    analysis.judgments["HINDCOPPER.NS"] = judgment(
        updates=[
            {
                "existingCatalystId": existing.short_id.upper(),
                "updatedImpact": "Outage extended to three weeks",
                "updatedSymbols": ["HINDCOPPER.NS", "VEDL.NS"],
                "confidence": 9,
            }
        ]
    )
    article = make_article("Copper mine outage extended")
    engine = DiscoveryEngine(store, analysis, quotes, settings)
    result = engine.run([article], [COPPER], OPEN_NOW)

    assert result.updated == 1
    assert result.new_catalysts == 0
    updated = store.get_catalyst(existing.id)
    assert updated.predicted_impact == "Outage extended to three weeks"
    assert updated.affected_symbols == ["HINDCOPPER.NS", "VEDL.NS"]
    assert updated.confidence == 9
    assert updated.related_article_ids == [article.link]
    assert updated.updated_at == OPEN_NOW
    # the context sent to pass 1 carried the short id and rounded age
    _, _, context = analysis.assess_calls[0]
    assert context[0].short_id == existing.short_id
    assert context[0].age_hours == 3


def test_unknown_update_id_is_ignored(store, analysis, quotes, settings):
    existing = seed(store, "HINDCOPPER.NS", OPEN_NOW - timedelta(hours=1))
    analysis.judgments["HINDCOPPER.NS"] = judgment(
        updates=[
            {"existingCatalystId": "deadbeef", "updatedImpact": "Should not land"},
            {"existingCatalystId": "not-an-id", "updatedImpact": "Nor this"},
        ]
    )
    engine = DiscoveryEngine(store, analysis, quotes, settings)
    result = engine.run([make_article("Copper update")], [COPPER], OPEN_NOW)

    assert result.updated == 0
    assert result.new_catalysts == 0
    rows = monitoring_for(store, "HINDCOPPER.NS")
    assert [c.id for c in rows] == [existing.id]
    assert rows[0].predicted_impact == "Earlier thesis"


def test_fallback_duplicate_is_consolidated_to_newest(store, analysis, quotes, settings):
    older = seed(store, "HINDCOPPER.NS", OPEN_NOW - timedelta(hours=2))
    suggestion_id = store.insert_suggestion("HINDCOPPER.NS", "watch", catalyst_id=older.id)
    analysis.batch_judgments = [
        judgment(newCatalysts=[proposal("HINDCOPPER.NS", impact="Fresh take")])
    ]
    articles = [make_article("Global shipping rates spike on canal closure")]

    engine = DiscoveryEngine(store, analysis, quotes, settings)
    result = engine.run(articles, [COPPER], OPEN_NOW)

    assert result.used_fallback
    assert analysis.batch_calls == 1
    assert result.consolidated == 1
    rows = monitoring_for(store, "HINDCOPPER.NS")
    assert len(rows) == 1
    assert rows[0].predicted_impact == "Fresh take"
    assert store.get_catalyst(older.id) is None
    assert store.get_suggestion(suggestion_id)["catalyst_id"] is None


def test_fallback_processes_fixed_size_chunks(store, analysis, quotes, settings):
    settings.fallback_chunk_size = 10
    articles = [make_article(f"Unrelated headline {i}") for i in range(23)]
    engine = DiscoveryEngine(store, analysis, quotes, settings)
    engine.run(articles, [COPPER], OPEN_NOW)
    assert analysis.batch_calls == 3


def test_one_monitoring_hypothesis_per_ticker_after_repeated_runs(
    store, analysis, quotes, settings
):
    engine = DiscoveryEngine(store, analysis, quotes, settings)
    for hour in range(3):
        analysis.judgments["HINDCOPPER.NS"] = judgment(
            newCatalysts=[proposal("HINDCOPPER.NS", impact=f"Run {hour}")]
        )
        analysis.judgments["TATASTEEL.NS"] = judgment(
            newCatalysts=[proposal("TATASTEEL.NS", impact=f"Steel {hour}")]
        )
        engine.run(
            [make_article(f"Copper and steel news {hour}")],
            [COPPER, STEEL],
            OPEN_NOW + timedelta(hours=hour),
        )

    for ticker in ("HINDCOPPER.NS", "TATASTEEL.NS"):
        rows = monitoring_for(store, ticker)
        assert len(rows) == 1
    assert monitoring_for(store, "HINDCOPPER.NS")[0].predicted_impact == "Run 2"


def test_synthesis_is_persisted_and_clamped(store, analysis, quotes, settings):
    analysis.judgments["HINDCOPPER.NS"] = judgment(newCatalysts=[proposal("HINDCOPPER.NS")])
    analysis.syntheses["HINDCOPPER.NS"] = Synthesis.model_validate(
        {
            "shouldUpdate": True,
            "keyInsight": "Two outages compound into a real deficit",
            "comprehensiveImpact": "Deficit through Q1",
            "dominantSentiment": "bullish",
            "potentialScore": 15,
            "confidence": 0,
            "primaryTicker": "hindcopper.ns",
        }
    )
    articles = [make_article("Copper outage one"), make_article("Copper outage two")]
    engine = DiscoveryEngine(store, analysis, quotes, settings)
    result = engine.run(articles, [COPPER], OPEN_NOW)

    assert result.synthesized == 1
    c = monitoring_for(store, "HINDCOPPER.NS")[0]
    assert c.thesis == "Two outages compound into a real deficit"
    assert c.predicted_impact == "Deficit through Q1"
    assert c.sentiment == "BULLISH"
    assert c.potential_score == 10.0
    assert c.confidence == 1
    assert c.primary_ticker == "HINDCOPPER.NS"


def test_synthesis_not_persisted_when_service_declines(store, analysis, quotes, settings):
    analysis.judgments["HINDCOPPER.NS"] = judgment(newCatalysts=[proposal("HINDCOPPER.NS")])
    analysis.syntheses["HINDCOPPER.NS"] = Synthesis.model_validate(
        {"shouldUpdate": False, "keyInsight": "nothing new"}
    )
    articles = [make_article("Copper outage one"), make_article("Copper outage two")]
    engine = DiscoveryEngine(store, analysis, quotes, settings)
    result = engine.run(articles, [COPPER], OPEN_NOW)

    assert analysis.synthesize_calls == ["HINDCOPPER.NS"]
    assert result.synthesized == 0
    assert monitoring_for(store, "HINDCOPPER.NS")[0].thesis is None


def test_synthesis_failure_still_captures_base_price(
    store, analysis, quotes, settings, monkeypatch
):
    quotes.set("HINDCOPPER.NS", 250.0, previous_close=245.0)
    analysis.judgments["HINDCOPPER.NS"] = judgment(newCatalysts=[proposal("HINDCOPPER.NS")])

    def timeout(*a, **kw):
        raise AnalysisError("timeout")

    monkeypatch.setattr(analysis, "synthesize", timeout)
    articles = [make_article("Copper outage one"), make_article("Copper outage two")]

    result = DiscoveryEngine(store, analysis, quotes, settings).run(
        articles, [COPPER], OPEN_NOW
    )

    assert result.errors == []
    assert result.new_catalysts == 1
    assert result.synthesized == 0
    c = monitoring_for(store, "HINDCOPPER.NS")[0]
    assert c.base_price == 250.0
    assert c.base_price_state == "discovery"


def test_failure_in_one_ticker_does_not_stop_others(store, analysis, quotes, settings):
    analysis.raise_for.add("HINDCOPPER.NS")
    analysis.judgments["TATASTEEL.NS"] = judgment(newCatalysts=[proposal("TATASTEEL.NS")])
    articles = [make_article("Copper and steel tariffs announced")]

    engine = DiscoveryEngine(store, analysis, quotes, settings)
    result = engine.run(articles, [COPPER, STEEL], OPEN_NOW)

    assert len(result.errors) == 1
    assert result.errors[0].startswith("HINDCOPPER.NS")
    assert len(monitoring_for(store, "TATASTEEL.NS")) == 1


def test_stale_hypotheses_are_expired_before_discovery(store, analysis, quotes, settings):
    stale = seed(store, "HINDCOPPER.NS", OPEN_NOW - timedelta(hours=49))
    engine = DiscoveryEngine(store, analysis, quotes, settings)
    result = engine.run([make_article("Copper quiet day")], [COPPER], OPEN_NOW)

    assert result.expired == 1
    assert store.get_catalyst(stale.id).status == "expired"
    # expired hypotheses are not offered as context
    _, _, context = analysis.assess_calls[0]
    assert context == []


def test_base_price_deferred_when_market_closed(store, analysis, quotes, settings):
    quotes.set("HINDCOPPER.NS", 250.0)
    analysis.judgments["HINDCOPPER.NS"] = judgment(newCatalysts=[proposal("HINDCOPPER.NS")])
    engine = DiscoveryEngine(store, analysis, quotes, settings)
    engine.run([make_article("Copper weekend news")], [COPPER], CLOSED_NOW)

    c = monitoring_for(store, "HINDCOPPER.NS")[0]
    assert c.base_price is None
    assert c.base_price_state == "pending_next_open"
    assert quotes.calls == []


def test_empty_batch_is_a_no_op(store, analysis, quotes, settings):
    engine = DiscoveryEngine(store, analysis, quotes, settings)
    result = engine.run([], [COPPER], OPEN_NOW)
    assert result.new_catalysts == 0
    assert analysis.assess_calls == []
