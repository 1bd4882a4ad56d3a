"""Exception types shared across the catalyst pipeline."""

from __future__ import annotations


class CatalystError(Exception):
    """Base class for catalyst pipeline errors."""


class ConfigError(CatalystError):
    """Unrecoverable configuration problem (e.g. missing credentials)."""


class AnalysisError(CatalystError):
    """The analysis service could not be reached or kept failing."""


class QuoteUnavailable(CatalystError):
    """No usable quote for a ticker or its alternate listing."""

    def __init__(self, ticker: str) -> None:
        super().__init__(f"no quote for {ticker}")
        self.ticker = ticker
