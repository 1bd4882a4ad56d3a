from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from dateutil import parser as _dtparse

Sentiment = Literal["BULLISH", "BEARISH", "NEUTRAL"]
# EARNINGS is deliberately absent: routine results are filtered as noise
ImpactType = Literal["SUPPLY_SHOCK", "DEMAND_SHOCK", "REGULATORY", "NOISE"]
AssetType = Literal["COMMODITY", "EQUITY", "ETF", "CURRENCY", "GLOBAL"]
Metric = Literal["PRICE", "VOLUME"]
Direction = Literal["UP", "DOWN"]
Action = Literal["BUY_WATCH", "SELL_WATCH"]
CatalystStatus = Literal["monitoring", "confirmed", "invalidated", "expired"]
SignalStatus = Literal[
    "active", "pending_market_open", "acted", "expired", "dismissed"
]
BasePriceState = Literal["discovery", "pending_next_open", "next_open"]
Verdict = Literal["GOOD_CALL", "BAD_CALL", "NEUTRAL"]
FinalVerdict = Literal["GOOD_CALL", "BAD_CALL", "NEUTRAL", "PENDING"]

SENTIMENTS = ("BULLISH", "BEARISH", "NEUTRAL")
IMPACT_TYPES = ("SUPPLY_SHOCK", "DEMAND_SHOCK", "REGULATORY", "NOISE")
ASSET_TYPES = ("COMMODITY", "EQUITY", "ETF", "CURRENCY", "GLOBAL")
CATALYST_STATUSES = ("monitoring", "confirmed", "invalidated", "expired")
SIGNAL_STATUSES = ("active", "pending_market_open", "acted", "expired", "dismissed")
CHECKPOINT_NAMES = ("after1hr", "nextSession", "after24hr")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse a datetime or ISO/RFC string into an aware UTC datetime.

    Naive values are assumed to be UTC.  Returns None for blanks and
    unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = _dtparse.isoparse(str(value))
        except (ValueError, OverflowError):
            try:
                dt = _dtparse.parse(str(value))
            except (ValueError, OverflowError):
                return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


@dataclass
class NewsArticle:
    """A candidate article at ingestion time; ``link`` is the dedup key."""

    title: str
    link: str
    pub_date: Optional[datetime] = None
    source: str = "Unknown"
    # 0=official, 1=media, 2=social, 3=aggregator
    source_priority: Optional[int] = None
    content: Optional[str] = None
    content_type: Optional[str] = None

    def pub_date_text(self) -> str:
        return to_iso(self.pub_date) or "Unknown Date"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["pub_date"] = to_iso(self.pub_date)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "NewsArticle":
        return cls(
            title=d.get("title") or "",
            link=d.get("link") or "",
            pub_date=parse_ts(d.get("pub_date")),
            source=d.get("source") or "Unknown",
            source_priority=d.get("source_priority"),
            content=d.get("content"),
            content_type=d.get("content_type"),
        )


@dataclass
class WatchlistAsset:
    keyword: str
    ticker: Optional[str] = None
    asset_type: AssetType = "EQUITY"
    related_tickers: List[str] = field(default_factory=list)
    global_validation_ticker: Optional[str] = None
    enabled: bool = True
    notes: Optional[str] = None
    id: Optional[str] = None

    @property
    def is_temporary(self) -> bool:
        return bool(self.id and self.id.startswith("temp-"))

    @classmethod
    def temporary(cls, ticker: str) -> "WatchlistAsset":
        """Synthetic low-trust asset for a ticker missing from the watchlist."""
        base = ticker.split(".")[0]
        return cls(
            id=f"temp-{ticker}",
            keyword=base,
            ticker=ticker,
            asset_type="EQUITY",
            enabled=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WatchlistAsset":
        return cls(
            id=d.get("id"),
            keyword=d.get("keyword") or "",
            ticker=d.get("ticker"),
            asset_type=d.get("asset_type") or "EQUITY",
            related_tickers=list(d.get("related_tickers") or []),
            global_validation_ticker=d.get("global_validation_ticker"),
            enabled=bool(d.get("enabled", True)),
            notes=d.get("notes"),
        )


@dataclass
class WatchCriteria:
    metric: Metric = "PRICE"
    direction: Direction = "UP"
    threshold_percent: float = 2.0
    timeout_hours: float = 24.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "WatchCriteria":
        d = d or {}
        metric = str(d.get("metric") or "PRICE").upper()
        direction = str(d.get("direction") or "UP").upper()
        return cls(
            metric="VOLUME" if metric == "VOLUME" else "PRICE",
            direction="DOWN" if direction == "DOWN" else "UP",
            threshold_percent=float(
                d.get("threshold_percent", d.get("thresholdPercent", 2.0))
            ),
            timeout_hours=float(d.get("timeout_hours", d.get("timeoutHours", 24.0))),
        )


@dataclass
class SourceCitation:
    index: int
    title: str
    url: str
    source: str = "Unknown"
    pub_date: str = "Unknown Date"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SourceCitation":
        return cls(
            index=int(d.get("index", 0)),
            title=d.get("title") or "",
            url=d.get("url") or "",
            source=d.get("source") or "Unknown",
            pub_date=d.get("pub_date") or "Unknown Date",
        )


@dataclass
class ValidationLogEntry:
    time: datetime
    ticker: str
    price: float
    change: float
    met: bool
    base_price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": to_iso(self.time),
            "ticker": self.ticker,
            "price": self.price,
            "base_price": self.base_price,
            "change": self.change,
            "met": self.met,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ValidationLogEntry":
        return cls(
            time=parse_ts(d.get("time")) or utcnow(),
            ticker=d.get("ticker") or "",
            price=float(d.get("price") or 0.0),
            base_price=d.get("base_price"),
            change=float(d.get("change") or 0.0),
            met=bool(d.get("met")),
        )


@dataclass
class PotentialCatalyst:
    """Unconfirmed hypothesis that news will move one or more tickers."""

    predicted_impact: str
    affected_symbols: List[str]
    watch_criteria: WatchCriteria = field(default_factory=WatchCriteria)
    related_article_ids: List[str] = field(default_factory=list)
    source_citations: List[SourceCitation] = field(default_factory=list)
    status: CatalystStatus = "monitoring"
    validation_log: List[ValidationLogEntry] = field(default_factory=list)
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    # synthesis (second discovery pass)
    primary_ticker: Optional[str] = None
    thesis: Optional[str] = None
    sentiment: Optional[Sentiment] = None
    potential_score: Optional[float] = None
    confidence: Optional[int] = None

    # baseline price snapshot
    base_price: Optional[float] = None
    base_price_ticker: Optional[str] = None
    base_price_at: Optional[datetime] = None
    base_price_state: Optional[BasePriceState] = None

    @property
    def short_id(self) -> str:
        return (self.id or "")[:8]

    def age_hours(self, now: datetime) -> float:
        if self.created_at is None:
            return 0.0
        return (now - self.created_at).total_seconds() / 3600.0


@dataclass
class AnalysisResult:
    is_catalyst: bool
    sentiment: Sentiment
    impact_type: ImpactType
    confidence: int
    reasoning: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AnalysisResult":
        return cls(
            is_catalyst=bool(d.get("is_catalyst")),
            sentiment=d.get("sentiment") or "NEUTRAL",
            impact_type=d.get("impact_type") or "NOISE",
            confidence=int(d.get("confidence") or 1),
            reasoning=d.get("reasoning") or "",
        )


@dataclass
class Quote:
    """Raw quote as returned by a market data provider."""

    ticker: str
    price: float
    previous_close: Optional[float] = None
    volume: Optional[float] = None
    average_volume: Optional[float] = None

    @property
    def change_percent(self) -> float:
        """Percent change versus the provider's reference (previous close)."""
        if not self.previous_close:
            return 0.0
        return (self.price - self.previous_close) / self.previous_close * 100.0


@dataclass
class MarketConfirmation:
    ticker: str
    current_price: float
    price_change_percent: float
    average_volume: float
    current_volume: float
    volume_ratio: float
    volume_spike: bool
    is_trending: bool
    price_confirms_sentiment: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MarketConfirmation":
        return cls(
            ticker=d.get("ticker") or "",
            current_price=float(d.get("current_price") or 0.0),
            price_change_percent=float(d.get("price_change_percent") or 0.0),
            average_volume=float(d.get("average_volume") or 0.0),
            current_volume=float(d.get("current_volume") or 0.0),
            volume_ratio=float(d.get("volume_ratio") or 0.0),
            volume_spike=bool(d.get("volume_spike")),
            is_trending=bool(d.get("is_trending")),
            price_confirms_sentiment=bool(d.get("price_confirms_sentiment")),
        )


@dataclass
class CatalystSignal:
    asset: WatchlistAsset
    action: Action
    news: NewsArticle
    analysis: AnalysisResult
    technical: MarketConfirmation
    status: SignalStatus = "active"
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[str] = None
    expires_at: Optional[datetime] = None
    acted_at: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass
class Checkpoint:
    checked_at: datetime
    price: float
    price_change_from_signal: float
    verdict: Verdict
    indian_stock_price: Optional[float] = None
    indian_stock_change: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "checked_at": to_iso(self.checked_at),
            "price": self.price,
            "price_change_from_signal": self.price_change_from_signal,
            "verdict": self.verdict,
        }
        if self.indian_stock_price is not None:
            d["indian_stock_price"] = self.indian_stock_price
            d["indian_stock_change"] = self.indian_stock_change
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Checkpoint":
        return cls(
            checked_at=parse_ts(d.get("checked_at")) or utcnow(),
            price=float(d.get("price") or 0.0),
            price_change_from_signal=float(d.get("price_change_from_signal") or 0.0),
            verdict=d.get("verdict") or "NEUTRAL",
            indian_stock_price=d.get("indian_stock_price"),
            indian_stock_change=d.get("indian_stock_change"),
        )


@dataclass
class OpportunityLogEntry:
    """Creation-time snapshot of a paper-mode signal plus its checkpoints."""

    id: str
    timestamp: datetime
    keyword: str
    headline: str
    impact_type: ImpactType
    confidence: int
    sentiment: Sentiment
    global_ticker: str
    base_price: Optional[float]
    price_change_percent: float
    volume_ratio: float
    summary: Optional[str] = None
    indian_ticker: Optional[str] = None
    indian_base_price: Optional[float] = None
    checkpoints: Dict[str, Checkpoint] = field(default_factory=dict)
    final_verdict: Optional[FinalVerdict] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "keyword": self.keyword,
            "headline": self.headline,
            "summary": self.summary,
            "indian_ticker": self.indian_ticker,
            "indian_base_price": self.indian_base_price,
            "llm_prediction": {
                "impact_type": self.impact_type,
                "confidence": self.confidence,
                "sentiment": self.sentiment,
            },
            "market_state": {
                "global_ticker": self.global_ticker,
                "base_price": self.base_price,
                "price_change_percent": self.price_change_percent,
                "volume_ratio": self.volume_ratio,
            },
        }
        if self.checkpoints:
            d["checkpoints"] = {k: v.to_dict() for k, v in self.checkpoints.items()}
        if self.final_verdict is not None:
            d["final_verdict"] = self.final_verdict
        if self.notes:
            d["notes"] = self.notes
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "OpportunityLogEntry":
        pred = d.get("llm_prediction") or {}
        state = d.get("market_state") or {}
        base_price = state.get("base_price")
        return cls(
            id=str(d["id"]),
            timestamp=parse_ts(d.get("timestamp")) or utcnow(),
            keyword=d.get("keyword") or "",
            headline=d.get("headline") or "",
            summary=d.get("summary"),
            indian_ticker=d.get("indian_ticker"),
            indian_base_price=d.get("indian_base_price"),
            impact_type=pred.get("impact_type") or "NOISE",
            confidence=int(pred.get("confidence") or 0),
            sentiment=pred.get("sentiment") or "NEUTRAL",
            global_ticker=state.get("global_ticker") or "",
            base_price=float(base_price) if base_price is not None else None,
            price_change_percent=float(state.get("price_change_percent") or 0.0),
            volume_ratio=float(state.get("volume_ratio") or 0.0),
            checkpoints={
                k: Checkpoint.from_dict(v)
                for k, v in (d.get("checkpoints") or {}).items()
                if k in CHECKPOINT_NAMES and isinstance(v, dict)
            },
            final_verdict=d.get("final_verdict"),
            notes=d.get("notes"),
        )


@dataclass
class ScanResult:
    keywords_scanned: int = 0
    articles_processed: int = 0
    catalysts_found: int = 0
    signals_generated: int = 0
    signals: List[CatalystSignal] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
