"""
LLM Response Schemas
====================

Pydantic models for the structured JSON the analysis service returns.

Every numeric field is clamped rather than rejected (confidence to 1..10,
potential score to -10..+10) and unknown enum values collapse to a safe
default, so a sloppy but well-formed response still yields a usable result.
Both camelCase (as requested in the prompts) and snake_case keys are
accepted.
"""

from __future__ import annotations

import math
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _num(value: Any) -> Optional[float]:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(f) or math.isinf(f) else f


def clamp_confidence(value: Any, default: int = 1) -> int:
    f = _num(value)
    if f is None:
        return default
    return int(round(min(10.0, max(1.0, f))))


def clamp_score(value: Any) -> float:
    f = _num(value)
    if f is None:
        return 0.0
    return min(10.0, max(-10.0, f))


def _upper_choice(value: Any, choices: tuple, default: Optional[str]) -> Optional[str]:
    s = str(value or "").strip().upper()
    return s if s in choices else default


def _symbols(value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return []
    out: List[str] = []
    for v in value:
        s = str(v or "").strip().upper()
        if s and s not in out:
            out.append(s)
    return out


def _citations(value: Any) -> List[int]:
    if not isinstance(value, (list, tuple)):
        return []
    out: List[int] = []
    for v in value:
        f = _num(v)
        if f is not None and f >= 1:
            out.append(int(f))
    return out


class _Lenient(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class WatchCriteriaModel(_Lenient):
    metric: Literal["PRICE", "VOLUME"] = "PRICE"
    direction: Literal["UP", "DOWN"] = "UP"
    threshold_percent: float = Field(
        default=2.0,
        validation_alias=AliasChoices("thresholdPercent", "threshold_percent", "threshold"),
    )
    timeout_hours: float = Field(
        default=24.0, validation_alias=AliasChoices("timeoutHours", "timeout_hours")
    )

    @field_validator("metric", mode="before")
    @classmethod
    def _metric(cls, v: Any) -> str:
        return _upper_choice(v, ("PRICE", "VOLUME"), "PRICE")

    @field_validator("direction", mode="before")
    @classmethod
    def _direction(cls, v: Any) -> str:
        return _upper_choice(v, ("UP", "DOWN"), "UP")

    @field_validator("threshold_percent", mode="before")
    @classmethod
    def _threshold(cls, v: Any) -> float:
        f = _num(v)
        return abs(f) if f else 2.0

    @field_validator("timeout_hours", mode="before")
    @classmethod
    def _timeout(cls, v: Any) -> float:
        f = _num(v)
        return f if f and f > 0 else 24.0


class CatalystUpdate(_Lenient):
    """Pass 1: revision of an existing hypothesis, referenced by short id."""

    existing_catalyst_id: str = Field(
        default="",
        validation_alias=AliasChoices("existingCatalystId", "existing_catalyst_id", "id")
    )
    reason: str = ""
    updated_impact: str = Field(
        default="", validation_alias=AliasChoices("updatedImpact", "updated_impact")
    )
    updated_symbols: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("updatedSymbols", "updated_symbols"),
    )
    confidence: Optional[int] = None
    sentiment: Optional[Literal["BULLISH", "BEARISH", "NEUTRAL"]] = None
    direction: Optional[Literal["UP", "DOWN"]] = None
    cited_articles: List[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("citedArticles", "cited_articles"),
    )

    @field_validator("existing_catalyst_id", mode="before")
    @classmethod
    def _id(cls, v: Any) -> str:
        return str(v or "").strip().lower()

    @field_validator("updated_symbols", mode="before")
    @classmethod
    def _syms(cls, v: Any) -> List[str]:
        return _symbols(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _conf(cls, v: Any) -> Optional[int]:
        return None if v is None else clamp_confidence(v)

    @field_validator("sentiment", mode="before")
    @classmethod
    def _sent(cls, v: Any) -> Optional[str]:
        return _upper_choice(v, ("BULLISH", "BEARISH", "NEUTRAL"), None)

    @field_validator("direction", mode="before")
    @classmethod
    def _dir(cls, v: Any) -> Optional[str]:
        return _upper_choice(v, ("UP", "DOWN"), None)

    @field_validator("cited_articles", mode="before")
    @classmethod
    def _cites(cls, v: Any) -> List[int]:
        return _citations(v)


class NewCatalystProposal(_Lenient):
    impact_summary: str = Field(
        default="", validation_alias=AliasChoices("impactSummary", "impact_summary")
    )
    affected_tickers: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("affectedTickers", "affected_tickers"),
    )
    confidence: int = 5
    sentiment: Literal["BULLISH", "BEARISH", "NEUTRAL"] = "NEUTRAL"
    watch_criteria: WatchCriteriaModel = Field(
        default_factory=WatchCriteriaModel,
        validation_alias=AliasChoices("watchCriteria", "watch_criteria"),
    )
    cited_articles: List[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("citedArticles", "cited_articles"),
    )

    @field_validator("affected_tickers", mode="before")
    @classmethod
    def _syms(cls, v: Any) -> List[str]:
        return _symbols(v)

    @field_validator("cited_articles", mode="before")
    @classmethod
    def _cites(cls, v: Any) -> List[int]:
        return _citations(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _conf(cls, v: Any) -> int:
        return clamp_confidence(v, default=5)

    @field_validator("sentiment", mode="before")
    @classmethod
    def _sent(cls, v: Any) -> str:
        return _upper_choice(v, ("BULLISH", "BEARISH", "NEUTRAL"), "NEUTRAL")

    @field_validator("watch_criteria", mode="before")
    @classmethod
    def _criteria(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else {}


def _dict_items(v: Any) -> List[dict]:
    if not isinstance(v, list):
        return []
    return [item for item in v if isinstance(item, dict)]


class Judgment(_Lenient):
    """Pass 1 response: updates to existing hypotheses and new proposals."""

    updates: List[CatalystUpdate] = Field(default_factory=list)
    new_catalysts: List[NewCatalystProposal] = Field(
        default_factory=list,
        validation_alias=AliasChoices("newCatalysts", "new_catalysts"),
    )

    @field_validator("updates", "new_catalysts", mode="before")
    @classmethod
    def _only_objects(cls, v: Any) -> List[dict]:
        return _dict_items(v)

    @property
    def is_empty(self) -> bool:
        return not self.updates and not self.new_catalysts


class Synthesis(_Lenient):
    """Pass 2 response: one unified thesis for a ticker."""

    should_update: bool = Field(
        default=False, validation_alias=AliasChoices("shouldUpdate", "should_update")
    )
    thesis: str = Field(
        default="",
        validation_alias=AliasChoices("thesis", "keyInsight", "key_insight"),
    )
    comprehensive_impact: str = Field(
        default="",
        validation_alias=AliasChoices("comprehensiveImpact", "comprehensive_impact"),
    )
    sentiment: Literal["BULLISH", "BEARISH", "NEUTRAL"] = Field(
        default="NEUTRAL",
        validation_alias=AliasChoices("sentiment", "dominantSentiment"),
    )
    potential_score: float = Field(
        default=0.0, validation_alias=AliasChoices("potentialScore", "potential_score")
    )
    confidence: int = 1
    primary_ticker: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("primaryTicker", "primary_ticker")
    )
    reasoning: str = ""
    cited_articles: List[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("citedArticles", "cited_articles"),
    )

    @field_validator("should_update", mode="before")
    @classmethod
    def _flag(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in {"true", "yes", "1"}
        return bool(v)

    @field_validator("sentiment", mode="before")
    @classmethod
    def _sent(cls, v: Any) -> str:
        return _upper_choice(v, ("BULLISH", "BEARISH", "NEUTRAL"), "NEUTRAL")

    @field_validator("potential_score", mode="before")
    @classmethod
    def _score(cls, v: Any) -> float:
        return clamp_score(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _conf(cls, v: Any) -> int:
        return clamp_confidence(v)

    @field_validator("primary_ticker", mode="before")
    @classmethod
    def _ticker(cls, v: Any) -> Optional[str]:
        s = str(v or "").strip().upper()
        return s or None

    @field_validator("thesis", "comprehensive_impact", "reasoning", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("cited_articles", mode="before")
    @classmethod
    def _cites(cls, v: Any) -> List[int]:
        return _citations(v)


class BatchAnalysis(_Lenient):
    """Keyword scan response: holistic view of one keyword's headlines."""

    is_catalyst: bool = Field(
        default=False, validation_alias=AliasChoices("isCatalyst", "is_catalyst")
    )
    sentiment: Literal["BULLISH", "BEARISH", "NEUTRAL"] = "NEUTRAL"
    impact_type: Literal["SUPPLY_SHOCK", "DEMAND_SHOCK", "REGULATORY", "NOISE"] = Field(
        default="NOISE", validation_alias=AliasChoices("impactType", "impact_type")
    )
    confidence: int = 1
    key_headline: str = Field(
        default="", validation_alias=AliasChoices("keyHeadline", "key_headline")
    )
    summary: str = ""
    reasoning: str = "No reasoning provided"
    headlines_analyzed: int = 0

    @field_validator("is_catalyst", mode="before")
    @classmethod
    def _flag(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in {"true", "yes", "1"}
        return bool(v)

    @field_validator("sentiment", mode="before")
    @classmethod
    def _sent(cls, v: Any) -> str:
        return _upper_choice(v, ("BULLISH", "BEARISH", "NEUTRAL"), "NEUTRAL")

    @field_validator("impact_type", mode="before")
    @classmethod
    def _impact(cls, v: Any) -> str:
        return _upper_choice(
            v, ("SUPPLY_SHOCK", "DEMAND_SHOCK", "REGULATORY", "NOISE"), "NOISE"
        )

    @field_validator("confidence", mode="before")
    @classmethod
    def _conf(cls, v: Any) -> int:
        return clamp_confidence(v)

    @field_validator("key_headline", "summary", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reason(cls, v: Any) -> str:
        return str(v) if v else "No reasoning provided"

    @classmethod
    def negative(cls, reasoning: str, headlines: int = 0) -> "BatchAnalysis":
        return cls(reasoning=reasoning, headlines_analyzed=headlines)
