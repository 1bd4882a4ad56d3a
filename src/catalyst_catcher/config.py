import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .errors import ConfigError


def _b(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {
        "1",
        "true",
        "yes",
        "y",
        "on",
    }


def _i(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except Exception:
        return default


def _f(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _list(name: str) -> Optional[List[str]]:
    """Comma separated env list. Returns None when unset or blank."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    return [p.strip() for p in raw.split(",") if p.strip()]


@dataclass
class Settings:
    # --- Analysis service (Gemini) ---
    gemini_api_key: str = field(default_factory=lambda: os.getenv("GEMINI_API_KEY", ""))
    llm_model: str = field(
        default_factory=lambda: os.getenv("CATALYST_LLM_MODEL", "gemini-2.0-flash")
    )
    llm_timeout_secs: float = field(
        default_factory=lambda: _f("CATALYST_LLM_TIMEOUT_SECS", 30.0)
    )
    llm_max_retries: int = field(
        default_factory=lambda: _i("CATALYST_LLM_MAX_RETRIES", 2)
    )

    # --- Storage ---
    db_path: str = field(
        default_factory=lambda: os.getenv("CATALYST_DB_PATH", "data/catalyst.db")
    )
    # Paper mode appends signals here (one JSON object per line)
    opportunities_log_path: str = field(
        default_factory=lambda: os.getenv(
            "CATALYST_OPPORTUNITIES_LOG", "data/logs/opportunities.log"
        )
    )

    # --- Scan behaviour ---
    paper_mode: bool = field(default_factory=lambda: _b("CATALYST_PAPER_MODE", False))
    scan_interval_minutes: int = field(
        default_factory=lambda: _i("CATALYST_SCAN_INTERVAL_MIN", 30)
    )
    news_max_age_hours: int = field(
        default_factory=lambda: _i("CATALYST_NEWS_MAX_AGE_HOURS", 2)
    )
    discovery_lookback_hours: int = field(
        default_factory=lambda: _i("CATALYST_DISCOVERY_LOOKBACK_HOURS", 4)
    )
    confidence_threshold: int = field(
        default_factory=lambda: _i("CATALYST_CONFIDENCE_THRESHOLD", 7)
    )
    max_results: int = field(default_factory=lambda: _i("CATALYST_MAX_RESULTS", 5))
    http_timeout_secs: float = field(
        default_factory=lambda: _f("CATALYST_HTTP_TIMEOUT_SECS", 10.0)
    )
    fetch_content: bool = field(
        default_factory=lambda: _b("CATALYST_FETCH_CONTENT", False)
    )

    # --- Hypothesis lifecycle ---
    safety_expiry_hours: float = field(
        default_factory=lambda: _f("CATALYST_SAFETY_EXPIRY_HOURS", 48.0)
    )
    context_hours: float = field(
        default_factory=lambda: _f("CATALYST_CONTEXT_HOURS", 48.0)
    )
    fallback_chunk_size: int = field(
        default_factory=lambda: _i("CATALYST_FALLBACK_CHUNK_SIZE", 10)
    )

    # Optional ISO dates (YYYY-MM-DD) replacing the built-in NSE holiday list
    market_holidays: Optional[List[str]] = field(
        default_factory=lambda: _list("CATALYST_MARKET_HOLIDAYS")
    )

    # --- Logging / paths ---
    data_dir: Path = field(
        default_factory=lambda: Path(os.getenv("DATA_DIR", "data")).resolve()
    )
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_plain: bool = field(default_factory=lambda: _b("LOG_PLAIN", False))


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()


def require_llm_credentials(settings: Settings) -> None:
    """Abort early when the analysis service cannot be used at all."""
    if not (settings.gemini_api_key or "").strip():
        raise ConfigError("GEMINI_API_KEY is not set; analysis service unavailable")
