# src/catalyst_catcher/logging_utils.py
import json
import logging
import logging.handlers
import sys
import time
from typing import Any, Dict

from .config import get_settings

LOG_FILE = "catalyst.jsonl"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 7


def _ts(record: logging.LogRecord) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created))


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": _ts(record),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


class PlainFormatter(logging.Formatter):
    """Single-line console format: ``ts LEVEL name: key=value ...``."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{_ts(record)} {record.levelname:<8} {record.name}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for Catalyst Catcher.

    Every record goes to a rotating JSON log at ``<DATA_DIR>/logs/catalyst.jsonl``
    and to stdout (JSON, or plain lines with ``LOG_PLAIN=1``).
    """
    settings = get_settings()
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel((settings.log_level or level or "INFO").upper())

    try:
        log_dir = settings.data_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / LOG_FILE,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(JsonFormatter())
        root.addHandler(file_handler)
    except OSError as e:
        # unwritable data dir: console logging only
        sys.stderr.write(f"log_file_setup_failed err={e.__class__.__name__}\n")

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(PlainFormatter() if settings.log_plain else JsonFormatter())
    root.addHandler(stream_handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
