"""
Catalyst Store (SQLite)

Purpose
-------
Operational store for the catalyst pipeline: watchlist assets, the
processed-article dedup ledger, potential catalysts (hypotheses),
dispatched signals and downstream suggestions that may reference a
catalyst.

Design
------
- One SQLite file, WAL mode, idempotent ``CREATE TABLE IF NOT EXISTS``
  migrations run on open.
- JSON columns hold lists and nested records (affected symbols, watch
  criteria, citations, validation log, signal snapshots).
- ``processed_articles.article_url`` is UNIQUE; re-processing a link
  updates the row in place (``ON CONFLICT DO UPDATE``).
- Timestamps are ISO-8601 UTC strings.

Env
---
CATALYST_DB_PATH     (default: "data/catalyst.db")
SQLITE_WAL_MODE      (default: "1")
SQLITE_SYNCHRONOUS   (default: "NORMAL")
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .logging_utils import get_logger
from .models import (
    CATALYST_STATUSES,
    SIGNAL_STATUSES,
    AnalysisResult,
    CatalystSignal,
    MarketConfirmation,
    NewsArticle,
    PotentialCatalyst,
    SourceCitation,
    ValidationLogEntry,
    WatchCriteria,
    WatchlistAsset,
    parse_ts,
    to_iso,
    utcnow,
)

log = get_logger("storage")

SIGNAL_EXPIRY_HOURS = 48


def init_optimized_connection(db_path: str, timeout: int = 30) -> sqlite3.Connection:
    """
    Open a SQLite connection with WAL and cache pragmas applied.

    Parameters
    ----------
    db_path : str
        Path to SQLite database file (``:memory:`` is accepted).
    timeout : int, optional
        Busy timeout in seconds (default: 30)
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    if os.getenv("SQLITE_WAL_MODE", "1") == "1" and db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA wal_autocheckpoint=500")

    synchronous_mode = os.getenv("SQLITE_SYNCHRONOUS", "NORMAL")
    conn.execute(f"PRAGMA synchronous={synchronous_mode}")
    conn.execute("PRAGMA temp_store=MEMORY")
    return conn


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS catalyst_watchlist (
        id TEXT PRIMARY KEY,
        keyword TEXT NOT NULL,
        ticker TEXT,
        asset_type TEXT NOT NULL DEFAULT 'EQUITY',
        related_tickers TEXT,
        global_validation_ticker TEXT,
        notes TEXT,
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_articles (
        id TEXT PRIMARY KEY,
        article_url TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL,
        source TEXT,
        keyword TEXT,
        is_catalyst INTEGER NOT NULL DEFAULT 0,
        analysis_result TEXT,
        processed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalyst_signals (
        id TEXT PRIMARY KEY,
        asset_id TEXT,
        keyword TEXT NOT NULL,
        ticker TEXT,
        action TEXT NOT NULL,
        news TEXT NOT NULL,
        analysis TEXT NOT NULL,
        technical TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        notes TEXT,
        created_at TEXT NOT NULL,
        expires_at TEXT,
        acted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS potential_catalysts (
        id TEXT PRIMARY KEY,
        predicted_impact TEXT NOT NULL,
        affected_symbols TEXT NOT NULL,
        watch_criteria TEXT NOT NULL,
        related_article_ids TEXT,
        source_citations TEXT,
        status TEXT NOT NULL DEFAULT 'monitoring',
        validation_log TEXT,
        primary_ticker TEXT,
        thesis TEXT,
        sentiment TEXT,
        potential_score REAL,
        confidence INTEGER,
        base_price REAL,
        base_price_ticker TEXT,
        base_price_at TEXT,
        base_price_state TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        expires_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalyst_suggestions (
        id TEXT PRIMARY KEY,
        ticker TEXT NOT NULL,
        rationale TEXT,
        catalyst_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_potential_catalysts_status "
    "ON potential_catalysts(status)",
    "CREATE INDEX IF NOT EXISTS idx_catalyst_signals_status "
    "ON catalyst_signals(status)",
    "CREATE INDEX IF NOT EXISTS idx_watchlist_keyword ON catalyst_watchlist(keyword)",
)


def migrate(conn: sqlite3.Connection) -> None:
    """Create tables and indexes if missing. Idempotent."""
    for stmt in _SCHEMA:
        conn.execute(stmt)
    conn.commit()


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        log.warning("json_column_unreadable sample=%s", str(raw)[:80])
        return default


def split_tickers(raw: Optional[str]) -> List[str]:
    """Related tickers are stored comma separated."""
    if not raw:
        return []
    return [t.strip() for t in raw.split(",") if t.strip()]


class CatalystStore:
    """CRUD over the catalyst tables.  Usable as a context manager."""

    def __init__(self, db_path: Optional[str] = None):
        self.path = db_path or os.getenv("CATALYST_DB_PATH", "data/catalyst.db")
        self._lock = threading.Lock()
        self._conn = init_optimized_connection(str(self.path), timeout=30)
        migrate(self._conn)
        log.debug("catalyst_store_opened path=%s", self.path)

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as e:
                log.warning("catalyst_store_close_error err=%s", str(e))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            cur = self._conn.execute(sql, tuple(params))
            self._conn.commit()
            return cur

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    # ------------------------------------------------------------------
    # Watchlist
    # ------------------------------------------------------------------

    def add_asset(self, asset: WatchlistAsset) -> str:
        asset_id = asset.id or str(uuid.uuid4())
        self._execute(
            """
            INSERT INTO catalyst_watchlist (
                id, keyword, ticker, asset_type, related_tickers,
                global_validation_ticker, notes, enabled, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                keyword=excluded.keyword,
                ticker=excluded.ticker,
                asset_type=excluded.asset_type,
                related_tickers=excluded.related_tickers,
                global_validation_ticker=excluded.global_validation_ticker,
                notes=excluded.notes,
                enabled=excluded.enabled
            """,
            (
                asset_id,
                asset.keyword,
                asset.ticker,
                asset.asset_type,
                ",".join(asset.related_tickers) or None,
                asset.global_validation_ticker,
                asset.notes,
                1 if asset.enabled else 0,
                to_iso(utcnow()),
            ),
        )
        asset.id = asset_id
        return asset_id

    @staticmethod
    def _row_to_asset(row: sqlite3.Row) -> WatchlistAsset:
        return WatchlistAsset(
            id=row["id"],
            keyword=row["keyword"],
            ticker=row["ticker"],
            asset_type=row["asset_type"],
            related_tickers=split_tickers(row["related_tickers"]),
            global_validation_ticker=row["global_validation_ticker"],
            notes=row["notes"],
            enabled=bool(row["enabled"]),
        )

    def list_assets(self) -> List[WatchlistAsset]:
        rows = self._query("SELECT * FROM catalyst_watchlist ORDER BY created_at, rowid")
        return [self._row_to_asset(r) for r in rows]

    def get_enabled_assets(self) -> List[WatchlistAsset]:
        rows = self._query(
            "SELECT * FROM catalyst_watchlist WHERE enabled = 1 ORDER BY created_at, rowid"
        )
        return [self._row_to_asset(r) for r in rows]

    def get_unique_keywords(self) -> List[str]:
        seen: Dict[str, None] = {}
        for asset in self.get_enabled_assets():
            seen.setdefault(asset.keyword, None)
        return list(seen)

    def get_assets_for_keyword(self, keyword: str) -> List[WatchlistAsset]:
        rows = self._query(
            "SELECT * FROM catalyst_watchlist WHERE enabled = 1 AND keyword = ? "
            "ORDER BY created_at, rowid",
            (keyword,),
        )
        return [self._row_to_asset(r) for r in rows]

    def find_asset_by_ticker(self, ticker: str) -> Optional[WatchlistAsset]:
        rows = self._query(
            "SELECT * FROM catalyst_watchlist WHERE ticker = ? ORDER BY created_at, rowid "
            "LIMIT 1",
            (ticker,),
        )
        return self._row_to_asset(rows[0]) if rows else None

    def set_asset_enabled(self, asset_id: str, enabled: bool) -> bool:
        cur = self._execute(
            "UPDATE catalyst_watchlist SET enabled = ? WHERE id = ?",
            (1 if enabled else 0, asset_id),
        )
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Processed articles (dedup ledger)
    # ------------------------------------------------------------------

    def mark_processed(
        self,
        article: NewsArticle,
        keyword: Optional[str],
        is_catalyst: bool,
        analysis: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Insert or update the ledger row keyed by the article link."""
        self._execute(
            """
            INSERT INTO processed_articles (
                id, article_url, title, source, keyword, is_catalyst,
                analysis_result, processed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(article_url) DO UPDATE SET
                title=excluded.title,
                source=excluded.source,
                keyword=excluded.keyword,
                is_catalyst=excluded.is_catalyst,
                analysis_result=excluded.analysis_result,
                processed_at=excluded.processed_at
            """,
            (
                str(uuid.uuid4()),
                article.link,
                article.title,
                article.source,
                keyword,
                1 if is_catalyst else 0,
                _dumps(analysis) if analysis is not None else None,
                to_iso(now or utcnow()),
            ),
        )

    def is_processed(self, link: str) -> bool:
        rows = self._query(
            "SELECT 1 FROM processed_articles WHERE article_url = ? LIMIT 1", (link,)
        )
        return bool(rows)

    def processed_links(self, links: Iterable[str]) -> set[str]:
        links = [lk for lk in links if lk]
        if not links:
            return set()
        out: set[str] = set()
        # stay well below SQLite's bound-parameter limit
        for i in range(0, len(links), 500):
            chunk = links[i : i + 500]
            marks = ",".join("?" for _ in chunk)
            rows = self._query(
                f"SELECT article_url FROM processed_articles WHERE article_url IN ({marks})",
                chunk,
            )
            out.update(r["article_url"] for r in rows)
        return out

    def get_processed(self, link: str) -> Optional[Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM processed_articles WHERE article_url = ?", (link,)
        )
        if not rows:
            return None
        row = dict(rows[0])
        row["is_catalyst"] = bool(row["is_catalyst"])
        row["analysis_result"] = _loads(row["analysis_result"], None)
        return row

    def count_processed(self) -> int:
        rows = self._query("SELECT COUNT(*) AS n FROM processed_articles")
        return int(rows[0]["n"])

    # ------------------------------------------------------------------
    # Potential catalysts
    # ------------------------------------------------------------------

    def insert_catalyst(
        self, catalyst: PotentialCatalyst, now: Optional[datetime] = None
    ) -> str:
        now = now or utcnow()
        catalyst.id = catalyst.id or str(uuid.uuid4())
        catalyst.created_at = catalyst.created_at or now
        catalyst.updated_at = catalyst.updated_at or now
        self._execute(
            """
            INSERT INTO potential_catalysts (
                id, predicted_impact, affected_symbols, watch_criteria,
                related_article_ids, source_citations, status, validation_log,
                primary_ticker, thesis, sentiment, potential_score, confidence,
                base_price, base_price_ticker, base_price_at, base_price_state,
                created_at, updated_at, expires_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (catalyst.id,) + self._catalyst_values(catalyst),
        )
        return catalyst.id

    @staticmethod
    def _catalyst_values(c: PotentialCatalyst) -> tuple:
        return (
            c.predicted_impact,
            _dumps(c.affected_symbols),
            _dumps(c.watch_criteria.to_dict()),
            _dumps(c.related_article_ids),
            _dumps([s.to_dict() for s in c.source_citations]),
            c.status,
            _dumps([e.to_dict() for e in c.validation_log]),
            c.primary_ticker,
            c.thesis,
            c.sentiment,
            c.potential_score,
            c.confidence,
            c.base_price,
            c.base_price_ticker,
            to_iso(c.base_price_at),
            c.base_price_state,
            to_iso(c.created_at),
            to_iso(c.updated_at),
            to_iso(c.expires_at),
        )

    def update_catalyst(
        self, catalyst: PotentialCatalyst, now: Optional[datetime] = None
    ) -> None:
        """Persist every mutable field of ``catalyst`` and bump ``updated_at``."""
        if not catalyst.id:
            raise ValueError("catalyst has no id")
        catalyst.updated_at = now or utcnow()
        self._execute(
            """
            UPDATE potential_catalysts SET
                predicted_impact=?, affected_symbols=?, watch_criteria=?,
                related_article_ids=?, source_citations=?, status=?,
                validation_log=?, primary_ticker=?, thesis=?, sentiment=?,
                potential_score=?, confidence=?, base_price=?,
                base_price_ticker=?, base_price_at=?, base_price_state=?,
                created_at=?, updated_at=?, expires_at=?
            WHERE id=?
            """,
            self._catalyst_values(catalyst) + (catalyst.id,),
        )

    def set_catalyst_status(
        self, catalyst_id: str, status: str, now: Optional[datetime] = None
    ) -> bool:
        """External/operator status change (e.g. ``invalidated``)."""
        if status not in CATALYST_STATUSES:
            raise ValueError(f"unknown catalyst status: {status}")
        cur = self._execute(
            "UPDATE potential_catalysts SET status = ?, updated_at = ? WHERE id = ?",
            (status, to_iso(now or utcnow()), catalyst_id),
        )
        return cur.rowcount > 0

    @staticmethod
    def _row_to_catalyst(row: sqlite3.Row) -> PotentialCatalyst:
        return PotentialCatalyst(
            id=row["id"],
            predicted_impact=row["predicted_impact"],
            affected_symbols=list(_loads(row["affected_symbols"], [])),
            watch_criteria=WatchCriteria.from_dict(_loads(row["watch_criteria"], {})),
            related_article_ids=list(_loads(row["related_article_ids"], [])),
            source_citations=[
                SourceCitation.from_dict(d)
                for d in _loads(row["source_citations"], [])
                if isinstance(d, dict)
            ],
            status=row["status"],
            validation_log=[
                ValidationLogEntry.from_dict(d)
                for d in _loads(row["validation_log"], [])
                if isinstance(d, dict)
            ],
            primary_ticker=row["primary_ticker"],
            thesis=row["thesis"],
            sentiment=row["sentiment"],
            potential_score=row["potential_score"],
            confidence=row["confidence"],
            base_price=row["base_price"],
            base_price_ticker=row["base_price_ticker"],
            base_price_at=parse_ts(row["base_price_at"]),
            base_price_state=row["base_price_state"],
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
            expires_at=parse_ts(row["expires_at"]),
        )

    def get_catalyst(self, catalyst_id: str) -> Optional[PotentialCatalyst]:
        rows = self._query(
            "SELECT * FROM potential_catalysts WHERE id = ?", (catalyst_id,)
        )
        return self._row_to_catalyst(rows[0]) if rows else None

    def find_catalyst_by_prefix(self, prefix: str) -> Optional[PotentialCatalyst]:
        prefix = (prefix or "").strip().lower()
        if not prefix:
            return None
        rows = self._query(
            "SELECT * FROM potential_catalysts WHERE id LIKE ? ORDER BY created_at DESC",
            (prefix.replace("%", "").replace("_", "") + "%",),
        )
        return self._row_to_catalyst(rows[0]) if rows else None

    def list_catalysts(
        self,
        status: Optional[str] = None,
        created_after: Optional[datetime] = None,
    ) -> List[PotentialCatalyst]:
        """Catalysts ordered oldest first, optionally filtered."""
        sql = "SELECT * FROM potential_catalysts"
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY rowid"
        rows = self._query(sql, params)
        items = [self._row_to_catalyst(r) for r in rows]
        if created_after is not None:
            items = [c for c in items if c.created_at and c.created_at >= created_after]
        items.sort(key=lambda c: c.created_at or utcnow())
        return items

    def catalysts_for_ticker(
        self, ticker: str, status: str = "monitoring"
    ) -> List[PotentialCatalyst]:
        return [
            c for c in self.list_catalysts(status=status) if ticker in c.affected_symbols
        ]

    def delete_catalysts(self, catalyst_ids: List[str]) -> int:
        """Delete catalysts and clear (not cascade) references to them."""
        if not catalyst_ids:
            return 0
        marks = ",".join("?" for _ in catalyst_ids)
        with self._lock:
            self._conn.execute(
                f"UPDATE catalyst_suggestions SET catalyst_id = NULL "
                f"WHERE catalyst_id IN ({marks})",
                tuple(catalyst_ids),
            )
            cur = self._conn.execute(
                f"DELETE FROM potential_catalysts WHERE id IN ({marks})",
                tuple(catalyst_ids),
            )
            self._conn.commit()
            return cur.rowcount

    def expire_catalysts_older_than(self, cutoff: datetime, now: datetime) -> int:
        """Mark ``monitoring`` catalysts created before ``cutoff`` as expired."""
        stale = [
            c.id
            for c in self.list_catalysts(status="monitoring")
            if c.created_at and c.created_at < cutoff
        ]
        if not stale:
            return 0
        marks = ",".join("?" for _ in stale)
        cur = self._execute(
            f"UPDATE potential_catalysts SET status = 'expired', updated_at = ? "
            f"WHERE id IN ({marks})",
            [to_iso(now)] + stale,
        )
        return cur.rowcount

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def insert_signal(self, signal: CatalystSignal) -> str:
        signal.id = signal.id or str(uuid.uuid4())
        if signal.expires_at is None:
            signal.expires_at = signal.created_at + timedelta(hours=SIGNAL_EXPIRY_HOURS)
        self._execute(
            """
            INSERT INTO catalyst_signals (
                id, asset_id, keyword, ticker, action, news, analysis,
                technical, status, notes, created_at, expires_at, acted_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                signal.id,
                signal.asset.id,
                signal.asset.keyword,
                signal.asset.ticker,
                signal.action,
                _dumps(signal.news.to_dict()),
                _dumps(signal.analysis.to_dict()),
                _dumps(signal.technical.to_dict()),
                signal.status,
                signal.notes,
                to_iso(signal.created_at),
                to_iso(signal.expires_at),
                to_iso(signal.acted_at),
            ),
        )
        return signal.id

    def _row_to_signal(self, row: sqlite3.Row) -> CatalystSignal:
        asset = WatchlistAsset(
            id=row["asset_id"], keyword=row["keyword"], ticker=row["ticker"]
        )
        if asset.id and not asset.is_temporary:
            rows = self._query(
                "SELECT * FROM catalyst_watchlist WHERE id = ?", (asset.id,)
            )
            if rows:
                asset = self._row_to_asset(rows[0])
        return CatalystSignal(
            id=row["id"],
            asset=asset,
            action=row["action"],
            news=NewsArticle.from_dict(_loads(row["news"], {})),
            analysis=AnalysisResult.from_dict(_loads(row["analysis"], {})),
            technical=MarketConfirmation.from_dict(_loads(row["technical"], {})),
            status=row["status"],
            notes=row["notes"],
            created_at=parse_ts(row["created_at"]) or utcnow(),
            expires_at=parse_ts(row["expires_at"]),
            acted_at=parse_ts(row["acted_at"]),
        )

    def get_signal(self, signal_id: str) -> Optional[CatalystSignal]:
        rows = self._query("SELECT * FROM catalyst_signals WHERE id = ?", (signal_id,))
        return self._row_to_signal(rows[0]) if rows else None

    def update_signal_status(
        self,
        signal_id: str,
        status: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        if status not in SIGNAL_STATUSES:
            raise ValueError(f"unknown signal status: {status}")
        acted_at = to_iso(now or utcnow()) if status == "acted" else None
        cur = self._execute(
            """
            UPDATE catalyst_signals SET
                status = ?,
                notes = COALESCE(?, notes),
                acted_at = COALESCE(?, acted_at)
            WHERE id = ?
            """,
            (status, notes, acted_at, signal_id),
        )
        return cur.rowcount > 0

    def list_signals(
        self, status: Optional[str] = None, limit: int = 50
    ) -> List[CatalystSignal]:
        if status:
            rows = self._query(
                "SELECT * FROM catalyst_signals WHERE status = ? "
                "ORDER BY created_at DESC LIMIT ?",
                (status, limit),
            )
        else:
            rows = self._query(
                "SELECT * FROM catalyst_signals ORDER BY created_at DESC LIMIT ?",
                (limit,),
            )
        return [self._row_to_signal(r) for r in rows]

    # ------------------------------------------------------------------
    # Downstream suggestions (hold an optional catalyst reference)
    # ------------------------------------------------------------------

    def insert_suggestion(
        self,
        ticker: str,
        rationale: str = "",
        catalyst_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        suggestion_id = str(uuid.uuid4())
        self._execute(
            "INSERT INTO catalyst_suggestions (id, ticker, rationale, catalyst_id, "
            "created_at) VALUES (?, ?, ?, ?, ?)",
            (suggestion_id, ticker, rationale, catalyst_id, to_iso(now or utcnow())),
        )
        return suggestion_id

    def get_suggestion(self, suggestion_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM catalyst_suggestions WHERE id = ?", (suggestion_id,)
        )
        return dict(rows[0]) if rows else None
