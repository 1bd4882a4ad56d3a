# -*- coding: utf-8 -*-
"""Catalyst Catcher runner: daemon loop and operator CLI."""

from __future__ import annotations

import argparse
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from dotenv import load_dotenv

# Load .env early so settings see it.  DOTENV_FILE picks an alternate file.
if os.getenv("DOTENV_FILE"):
    load_dotenv(os.getenv("DOTENV_FILE"))
else:
    load_dotenv()

from .analysis import GeminiAnalysisService  # noqa: E402
from .config import Settings, get_settings  # noqa: E402
from .discovery import DiscoveryEngine, DiscoveryResult  # noqa: E402
from .errors import ConfigError  # noqa: E402
from .logging_utils import get_logger, setup_logging  # noqa: E402
from .market_hours import get_market_status, market_status_message  # noqa: E402
from .market_validator import YFinanceQuoteProvider  # noqa: E402
from .models import (  # noqa: E402
    ASSET_TYPES,
    PotentialCatalyst,
    ScanResult,
    WatchCriteria,
    WatchlistAsset,
    utcnow,
)
from .news_monitor import (  # noqa: E402
    GoogleNewsProvider,
    build_broad_query,
    enrich_articles,
    fetch_new_articles,
    mark_as_processed,
)
from .noise import filter_noise  # noqa: E402
from .scanner import CatalystScanner  # noqa: E402
from .signal_dispatcher import SignalDispatcher, read_opportunities  # noqa: E402
from .storage import CatalystStore  # noqa: E402
from .tracker import CatalystTracker, TrackerResult  # noqa: E402
from .verification import (  # noqa: E402
    CHECKPOINT_ALIASES,
    build_report,
    format_report,
    verify_opportunities,
)

log = get_logger("runner")

STOP = False


def _sig_handler(signum, frame):
    """Graceful shutdown handler for SIGINT/SIGTERM."""
    global STOP
    name = signal.Signals(signum).name
    print(f"\n[SHUTDOWN] Received {name}, finishing current cycle...", file=sys.stderr)
    log.warning("shutdown_signal_received signal=%s", name)
    STOP = True


@dataclass
class Services:
    """Everything one cycle needs.  Tests build this with fakes."""

    settings: Settings
    store: CatalystStore
    analysis: object
    quotes: object
    news: object
    dispatcher: SignalDispatcher


def build_services(settings: Optional[Settings] = None) -> Services:
    """Wire the production providers.  Raises ConfigError without credentials."""
    settings = settings or get_settings()
    analysis = GeminiAnalysisService(settings)
    store = CatalystStore(settings.db_path)
    quotes = YFinanceQuoteProvider()
    return Services(
        settings=settings,
        store=store,
        analysis=analysis,
        quotes=quotes,
        news=GoogleNewsProvider(timeout=settings.http_timeout_secs),
        dispatcher=SignalDispatcher(store, settings.opportunities_log_path, quotes),
    )


@dataclass
class CycleReport:
    started_at: datetime
    tracker: Optional[TrackerResult] = None
    discovery: Optional[DiscoveryResult] = None
    scan: Optional[ScanResult] = None
    errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        parts = []
        if self.tracker is not None:
            parts.append(
                f"tracker checked={self.tracker.checked} "
                f"confirmed={self.tracker.confirmed} expired={self.tracker.expired}"
            )
        if self.discovery is not None:
            parts.append(
                f"discovery new={self.discovery.new_catalysts} "
                f"updated={self.discovery.updated}"
            )
        if self.scan is not None:
            parts.append(
                f"scan keywords={self.scan.keywords_scanned} "
                f"signals={self.scan.signals_generated}"
            )
        parts.append(f"errors={len(self.errors)}")
        return " | ".join(parts)


def run_discovery_scan(services: Services, now: datetime) -> DiscoveryResult:
    """Broad scan: every enabled keyword in one OR query, then discovery."""
    settings = services.settings
    store = services.store
    assets = store.get_enabled_assets()
    query = build_broad_query(store.get_unique_keywords())
    if not query:
        log.info("discovery_skipped reason=empty_watchlist")
        return DiscoveryResult()

    fetched = fetch_new_articles(
        store,
        services.news,
        query,
        lookback_hours=settings.discovery_lookback_hours,
        max_results=None,
        now=now,
    )
    articles = filter_noise(fetched)
    if settings.fetch_content and articles:
        enrich_articles(articles, timeout=settings.http_timeout_secs)

    engine = DiscoveryEngine(store, services.analysis, services.quotes, settings)
    result = engine.run(articles, assets, now)

    cited = {link for c in result.catalysts for link in c.related_article_ids}
    for article in fetched:
        mark_as_processed(store, article, "discovery", article.link in cited, now=now)
    return result


def run_cycle(
    services: Services,
    now: Optional[datetime] = None,
    paper_mode: Optional[bool] = None,
) -> CycleReport:
    """Tracker, then broad discovery, then the keyword scan.

    Stage failures are logged and reported; the cycle always completes.
    """
    now = now or utcnow()
    if paper_mode is None:
        paper_mode = services.settings.paper_mode
    report = CycleReport(started_at=now)
    log.info(
        "cycle_start paper=%s market=%s",
        paper_mode,
        get_market_status(now, services.settings.market_holidays),
    )

    try:
        tracker = CatalystTracker(
            services.store, services.quotes, services.dispatcher, services.settings
        )
        report.tracker = tracker.run(now, paper_mode=paper_mode)
        report.errors.extend(report.tracker.errors)
    except Exception as e:
        log.error("tracker_failed err=%s", e.__class__.__name__, exc_info=True)
        report.errors.append(f"tracker: {e.__class__.__name__}: {e}")

    try:
        report.discovery = run_discovery_scan(services, now)
        report.errors.extend(report.discovery.errors)
    except Exception as e:
        log.error("discovery_failed err=%s", e.__class__.__name__, exc_info=True)
        report.errors.append(f"discovery: {e.__class__.__name__}: {e}")

    try:
        scanner = CatalystScanner(
            services.store,
            services.analysis,
            services.quotes,
            services.dispatcher,
            services.news,
            services.settings,
        )
        report.scan = scanner.scan(now, paper_mode=paper_mode)
        report.errors.extend(report.scan.errors)
    except Exception as e:
        log.error("scan_failed err=%s", e.__class__.__name__, exc_info=True)
        report.errors.append(f"scan: {e.__class__.__name__}: {e}")

    log.info("cycle_end %s", report.summary())
    return report


# ---------------------------------------------------------------------------
# Operator commands
# ---------------------------------------------------------------------------


def inject_catalyst(
    store: CatalystStore,
    ticker: str,
    metric: str = "PRICE",
    direction: str = "UP",
    threshold: float = 2.0,
    now: Optional[datetime] = None,
) -> PotentialCatalyst:
    """Insert a manual test hypothesis with a 24h timeout."""
    now = now or utcnow()
    criteria = WatchCriteria.from_dict(
        {"metric": metric, "direction": direction, "threshold_percent": threshold}
    )
    criteria.timeout_hours = 24.0
    catalyst = PotentialCatalyst(
        predicted_impact=f"Manual test: {ticker} {criteria.metric} {criteria.direction}",
        affected_symbols=[ticker.strip().upper()],
        watch_criteria=criteria,
        primary_ticker=ticker.strip().upper(),
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(hours=criteria.timeout_hours),
    )
    store.insert_catalyst(catalyst, now=now)
    log.info("catalyst_injected id=%s ticker=%s", catalyst.short_id, ticker)
    return catalyst


def format_status(store: CatalystStore, settings: Settings, now: datetime) -> str:
    lines = [market_status_message(now, settings.market_holidays), ""]
    monitoring = store.list_catalysts(status="monitoring")
    lines.append(f"Monitoring hypotheses: {len(monitoring)}")
    for c in monitoring:
        wc = c.watch_criteria
        base = f"{c.base_price:.2f}" if c.base_price is not None else "-"
        lines.append(
            f"  [{c.short_id}] {','.join(c.affected_symbols):<24} "
            f"{wc.metric} {wc.direction} {wc.threshold_percent:g}% "
            f"age={c.age_hours(now):.1f}h/{wc.timeout_hours:g}h base={base} "
            f"checks={len(c.validation_log)}"
        )
        lines.append(f"      {c.predicted_impact[:100]}")
    return "\n".join(lines)


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="catalyst-catcher")
    ap.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    ap.add_argument("--loop", action="store_true", help="Run continuously")
    ap.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Minutes between cycles when looping (default: settings)",
    )
    ap.add_argument("--paper", action="store_true", help="Log signals to file only")

    ap.add_argument("--verify", action="store_true", help="Grade paper signals")
    ap.add_argument("--checkpoint", choices=sorted(CHECKPOINT_ALIASES), default=None)
    ap.add_argument("--min-age", type=float, default=60, help="Minutes (default 60)")
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument("--report", action="store_true", help="Paper trading report")
    ap.add_argument("--status", action="store_true", help="Market and hypothesis status")

    ap.add_argument("--inject", metavar="TICKER", default=None)
    ap.add_argument("--metric", choices=["PRICE", "VOLUME"], default="PRICE")
    ap.add_argument("--direction", choices=["UP", "DOWN"], default="UP")
    ap.add_argument("--threshold", type=float, default=2.0)

    ap.add_argument("--add-asset", metavar="KEYWORD", default=None)
    ap.add_argument("--ticker", default=None)
    ap.add_argument("--type", dest="asset_type", choices=ASSET_TYPES, default="EQUITY")
    return ap


def _run_loop(services: Services, interval_minutes: float, loop: bool, paper: bool) -> int:
    try:
        signal.signal(signal.SIGINT, _sig_handler)
        signal.signal(signal.SIGTERM, _sig_handler)
    except ValueError:
        # not the main thread
        pass

    while True:
        run_cycle(services, paper_mode=paper)
        if not loop or STOP:
            break
        end = time.time() + interval_minutes * 60
        while time.time() < end:
            if STOP:
                break
            time.sleep(0.2)
        if STOP:
            break
    log.info("runner_stopped")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)
    now = utcnow()

    if args.report:
        print(format_report(build_report(read_opportunities(settings.opportunities_log_path))))
        return 0

    if args.verify:
        run = verify_opportunities(
            YFinanceQuoteProvider(),
            settings.opportunities_log_path,
            now=now,
            checkpoint=args.checkpoint,
            min_age_minutes=args.min_age,
            dry_run=args.dry_run,
        )
        print(
            f"Verified {run.verified} of {run.examined} entries "
            f"(skipped {run.skipped}, errors {len(run.errors)})"
            + (" [dry run]" if args.dry_run else "")
        )
        for o in run.outcomes:
            cp = o.checkpoint_result
            print(
                f"  {o.entry_id} {o.keyword:<16} {o.checkpoint:<12} "
                f"{cp.price_change_from_signal:+.2f}% {cp.verdict}"
            )
        return 0

    if args.status or args.inject or args.add_asset:
        with CatalystStore(settings.db_path) as store:
            if args.add_asset:
                asset_id = store.add_asset(
                    WatchlistAsset(
                        keyword=args.add_asset,
                        ticker=args.ticker,
                        asset_type=args.asset_type,
                    )
                )
                print(f"Added asset {args.add_asset} ({args.ticker or '-'}) id={asset_id}")
            if args.inject:
                c = inject_catalyst(
                    store, args.inject, args.metric, args.direction, args.threshold, now
                )
                print(f"Injected hypothesis {c.short_id} for {args.inject}")
            if args.status:
                print(format_status(store, settings, now))
        return 0

    try:
        services = build_services(settings)
    except ConfigError as e:
        log.error("config_error err=%s", e)
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    interval = args.interval if args.interval is not None else settings.scan_interval_minutes
    paper = args.paper or settings.paper_mode
    log.info("boot_start paper=%s loop=%s interval_min=%s", paper, args.loop, interval)
    try:
        return _run_loop(services, interval, loop=args.loop and not args.once, paper=paper)
    finally:
        services.store.close()


if __name__ == "__main__":
    sys.exit(main())
