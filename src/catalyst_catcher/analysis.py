"""
Analysis service
================

Narrow interface over the LLM that judges news:

- ``assess``      pass 1, per-ticker: updates to existing hypotheses and
                  at most one new catalyst proposal
- ``synthesize``  pass 2, per-ticker: one unified thesis
- ``assess_batch`` discovery fallback when no article matched a ticker
- ``analyze_batch`` keyword scan: is this keyword's news flow a catalyst?

:class:`GeminiAnalysisService` is the production implementation
(google-generativeai).  Transport failures raise :class:`AnalysisError`
after retries; malformed responses never raise and parse to the empty or
negative result.  Tests substitute any object with the same methods.
"""

from __future__ import annotations

import json
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import google.generativeai as genai
from pydantic import ValidationError

from .config import Settings, get_settings, require_llm_credentials
from .errors import AnalysisError
from .llm_schemas import BatchAnalysis, Judgment, Synthesis
from .logging_utils import get_logger
from .models import NewsArticle, WatchlistAsset

log = get_logger("analysis")


@dataclass
class ExistingCatalyst:
    """Prompt-side view of an open hypothesis."""

    short_id: str
    full_id: str
    predicted_impact: str
    affected_symbols: List[str]
    age_hours: int


class AnalysisService(Protocol):
    def assess(
        self,
        ticker: str,
        articles: Sequence[NewsArticle],
        context: Sequence[ExistingCatalyst],
    ) -> Judgment: ...

    def synthesize(
        self,
        ticker: str,
        articles: Sequence[NewsArticle],
        context: Sequence[ExistingCatalyst],
        pass1: Judgment,
    ) -> Optional[Synthesis]: ...

    def assess_batch(
        self,
        articles: Sequence[NewsArticle],
        assets: Sequence[WatchlistAsset],
        context: Sequence[ExistingCatalyst],
    ) -> Judgment: ...

    def analyze_batch(
        self, asset: WatchlistAsset, articles: Sequence[NewsArticle]
    ) -> BatchAnalysis: ...


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if present."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        cleaned = "\n".join(lines).strip()
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3].strip()
    return cleaned


def _load_object(text: str) -> Optional[Dict[str, Any]]:
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except (TypeError, ValueError):
        # tolerate prose around a single JSON object
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start < 0 or end <= start:
            return None
        try:
            data = json.loads(cleaned[start : end + 1])
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def parse_judgment(text: str) -> Judgment:
    data = _load_object(text)
    if data is None:
        log.warning("judgment_unparseable sample=%s", (text or "")[:200])
        return Judgment()
    try:
        return Judgment.model_validate(data)
    except (ValidationError, TypeError) as e:
        log.warning("judgment_invalid err=%s", e.__class__.__name__)
        return Judgment()


def parse_synthesis(text: str) -> Optional[Synthesis]:
    data = _load_object(text)
    if data is None:
        log.warning("synthesis_unparseable sample=%s", (text or "")[:200])
        return None
    try:
        return Synthesis.model_validate(data)
    except (ValidationError, TypeError) as e:
        log.warning("synthesis_invalid err=%s", e.__class__.__name__)
        return None


def parse_batch(text: str) -> BatchAnalysis:
    data = _load_object(text)
    if data is None:
        return BatchAnalysis.negative("Failed to parse LLM response")
    try:
        return BatchAnalysis.model_validate(data)
    except (ValidationError, TypeError):
        return BatchAnalysis.negative("Failed to parse LLM response")


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def format_articles(articles: Sequence[NewsArticle], with_content: bool = True) -> str:
    lines = []
    for i, a in enumerate(articles, start=1):
        line = f"[{i}] {a.title} ({a.pub_date_text()}) - {a.source} [URL: {a.link}]"
        if with_content and a.content:
            line += f"\n    {a.content[:1200]}"
        lines.append(line)
    return "\n".join(lines)


def format_context(ticker: str, context: Sequence[ExistingCatalyst]) -> str:
    relevant = [c for c in context if ticker in c.affected_symbols]
    if not relevant:
        return (
            f"## NO EXISTING CATALYSTS FOR {ticker}\n"
            "This is the first analysis for this ticker in the last 48h.\n"
        )
    entries = "\n\n".join(
        f"{i}. [{c.short_id}] Created {c.age_hours}h ago\n"
        f"   Impact: {c.predicted_impact}\n"
        f"   Symbols: {', '.join(c.affected_symbols)}"
        for i, c in enumerate(relevant, start=1)
    )
    return (
        f"## EXISTING CATALYSTS FOR {ticker} (last 48h)\n"
        "If your discovery is about the SAME event as one below, return an UPDATE "
        "with its 8-character id instead of a new catalyst.\n\n" + entries + "\n"
    )


_PASS1_OUTPUT = """OUTPUT FORMAT (JSON):
{
  "updates": [
    {
      "existingCatalystId": "b788fc78",
      "reason": "Why the existing catalyst is being revised",
      "updatedImpact": "Impact description with citations [1]. Detail [2].",
      "updatedSymbols": ["TICKER.NS"],
      "confidence": 8,
      "sentiment": "BULLISH",
      "direction": "UP",
      "citedArticles": [1, 2]
    }
  ],
  "newCatalysts": [
    {
      "impactSummary": "Concise summary with citations [1].",
      "affectedTickers": ["TICKER.NS"],
      "confidence": 8,
      "sentiment": "BULLISH",
      "watchCriteria": {
        "metric": "PRICE",
        "direction": "UP",
        "thresholdPercent": 2,
        "timeoutHours": 24
      },
      "citedArticles": [1]
    }
  ]
}

Return ONLY valid JSON. If nothing is interesting return {"updates": [], "newCatalysts": []}."""


def build_ticker_prompt(
    ticker: str, articles: Sequence[NewsArticle], context: Sequence[ExistingCatalyst]
) -> str:
    return f"""You are an Indian market catalyst analyzer specialising in ticker-specific analysis.

TICKER UNDER ANALYSIS: {ticker}

Analyze ALL news about {ticker} together and decide the overall sentiment
(BULLISH/BEARISH/NEUTRAL), the predicted direction, a confidence (1-10) and
whether this is a NEW catalyst or an UPDATE to an existing one.

Look for supply shocks, demand shocks, regulatory changes (SEBI, RBI,
government policy), corporate events and sector-wide impacts.
Ignore generic market commentary and routine results.

{format_context(ticker, context)}
REEVALUATION RULES:
1. Same event as an existing catalyst: return an UPDATE with its id and a
   reevaluated impact using all information, old and new.
2. Only create a NEW catalyst for a distinct event, impact vector or timeframe.
3. Propose at most ONE new catalyst for {ticker}.
Cite articles inline as [1], [2] using the numbers below.

NEWS ARTICLES FOR {ticker}:
{format_articles(articles)}

{_PASS1_OUTPUT}
"""


def build_synthesis_prompt(
    ticker: str,
    articles: Sequence[NewsArticle],
    context: Sequence[ExistingCatalyst],
    pass1: Judgment,
) -> str:
    relevant = [c for c in context if ticker in c.affected_symbols]
    existing = "\n".join(
        f"{i}. [{c.short_id}] {c.predicted_impact} (Created {c.age_hours}h ago)"
        for i, c in enumerate(relevant, start=1)
    )
    existing_block = f"## EXISTING CATALYSTS FOR {ticker}\n{existing}\n" if existing else ""
    return f"""You are performing a comprehensive synthesis for ticker: {ticker}

PASS 1 RESULTS:
{json.dumps(pass1.model_dump(), indent=2)}

ALL NEWS FOR {ticker}:
{format_articles(articles, with_content=False)}

{existing_block}
Synthesize everything into ONE assessment: a unified narrative, the dominant
sentiment, a potential score from -10 (strongly bearish) to +10 (strongly
bullish), a confidence from 1 to 10 and the single key insight for traders.
Agreement across sources raises confidence; contradictions lower it.
Cite articles inline as [1], [2].

OUTPUT FORMAT (JSON):
{{
  "shouldUpdate": true,
  "primaryTicker": "{ticker}",
  "comprehensiveImpact": "Unified description with citations [1][2].",
  "thesis": "One-line short-term thesis",
  "sentiment": "BULLISH",
  "potentialScore": 6,
  "confidence": 8,
  "reasoning": "Why this synthesis follows from the information",
  "citedArticles": [1, 2]
}}

Set shouldUpdate=true only if the synthesis adds meaningful insight beyond pass 1.
Return ONLY valid JSON.
"""


def build_batch_discovery_prompt(
    articles: Sequence[NewsArticle],
    assets: Sequence[WatchlistAsset],
    context: Sequence[ExistingCatalyst],
) -> str:
    watch = "\n".join(
        f"- {a.keyword}: {a.ticker or ', '.join(a.related_tickers) or 'no ticker'}"
        for a in assets
    )
    existing = "\n".join(
        f"- [{c.short_id}] {c.predicted_impact} | Symbols: {', '.join(c.affected_symbols)}"
        for c in context
    )
    return f"""You are an Indian market catalyst analyzer reviewing a batch of general news.

Identify news likely to move specific NSE/BSE-listed stocks. Use ".NS" tickers.

WATCHLIST CONTEXT:
{watch or "- (empty)"}

EXISTING CATALYSTS (last 48h):
{existing or "- none"}

NEWS ARTICLES:
{format_articles(articles)}

{_PASS1_OUTPUT}
"""


_KEYWORD_SYSTEM = """You are a senior commodities and equity analyst at a macro hedge fund.
You are reviewing the recent news flow for "{keyword}" to decide whether there is a
material trading catalyst. Analyze ALL headlines together: multiple sources on the
same event raise conviction; decide the net impact.

CATALYST TYPES:
SUPPLY_SHOCK: mine closures, strikes, war or weather disruption, plant shutdowns, export bans.
DEMAND_SHOCK: mandated usage, demand-creating technology, major orders, customer failures.
REGULATORY: new industry regulation, government policy, import/export restrictions.
NOISE (never a catalyst): earnings, analyst rating changes, commentary, opinion, price targets, local crime.

Return ONLY valid JSON:
{{
  "isCatalyst": true,
  "sentiment": "BULLISH | BEARISH | NEUTRAL",
  "impactType": "SUPPLY_SHOCK | DEMAND_SHOCK | REGULATORY | NOISE",
  "confidence": 1-10,
  "keyHeadline": "The single most important headline",
  "summary": "2-3 sentence summary of the news landscape",
  "reasoning": "One sentence on why this is or isn't a catalyst"
}}"""


def build_keyword_prompt(asset: WatchlistAsset, articles: Sequence[NewsArticle]) -> str:
    headlines = "\n".join(
        f'{i}. "{a.title}" - {a.source} ({a.pub_date_text()[:10]})'
        for i, a in enumerate(articles, start=1)
    )
    return (
        _KEYWORD_SYSTEM.format(keyword=asset.keyword)
        + "\n\nHEADLINES TO ANALYZE:\n"
        + headlines
    )


# ---------------------------------------------------------------------------
# Gemini implementation
# ---------------------------------------------------------------------------


class GeminiAnalysisService:
    """google-generativeai backed analysis service."""

    def __init__(self, settings: Optional[Settings] = None, model: Any = None):
        self.settings = settings or get_settings()
        self._model = model
        if self._model is None:
            require_llm_credentials(self.settings)
            genai.configure(api_key=self.settings.gemini_api_key)
            self._model = genai.GenerativeModel(
                model_name=self.settings.llm_model,
                generation_config={
                    "temperature": 0.3,
                    "max_output_tokens": 4096,
                    "response_mime_type": "application/json",
                },
            )
        log.info("analysis_service_ready model=%s", self.settings.llm_model)

    def _generate(self, prompt: str) -> str:
        retries = max(0, int(self.settings.llm_max_retries))
        last_err: Optional[Exception] = None
        for attempt in range(retries + 1):
            try:
                response = self._model.generate_content(
                    prompt,
                    request_options={"timeout": self.settings.llm_timeout_secs},
                )
                try:
                    return response.text or ""
                except ValueError as e:
                    # safety block: no text parts in the candidate
                    log.warning("llm_response_blocked reason=%s", str(e)[:100])
                    return ""
            except Exception as e:
                last_err = e
                log.warning(
                    "llm_call_failed attempt=%d err=%s", attempt + 1, e.__class__.__name__
                )
                if attempt < retries:
                    time.sleep(min(2**attempt, 8) + random.uniform(0, 0.25))
        raise AnalysisError(f"analysis service failed: {last_err!r}")

    def assess(
        self,
        ticker: str,
        articles: Sequence[NewsArticle],
        context: Sequence[ExistingCatalyst],
    ) -> Judgment:
        return parse_judgment(self._generate(build_ticker_prompt(ticker, articles, context)))

    def synthesize(
        self,
        ticker: str,
        articles: Sequence[NewsArticle],
        context: Sequence[ExistingCatalyst],
        pass1: Judgment,
    ) -> Optional[Synthesis]:
        prompt = build_synthesis_prompt(ticker, articles, context, pass1)
        return parse_synthesis(self._generate(prompt))

    def assess_batch(
        self,
        articles: Sequence[NewsArticle],
        assets: Sequence[WatchlistAsset],
        context: Sequence[ExistingCatalyst],
    ) -> Judgment:
        prompt = build_batch_discovery_prompt(articles, assets, context)
        return parse_judgment(self._generate(prompt))

    def analyze_batch(
        self, asset: WatchlistAsset, articles: Sequence[NewsArticle]
    ) -> BatchAnalysis:
        if not articles:
            return BatchAnalysis.negative("No news items to analyze")
        result = parse_batch(self._generate(build_keyword_prompt(asset, articles)))
        result.headlines_analyzed = len(articles)
        return result
