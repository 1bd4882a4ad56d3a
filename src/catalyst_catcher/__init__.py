"""Catalyst Catcher package.

News-driven catalyst discovery for Indian equities: RSS ingestion and
deduplication, ticker grouping, two-pass LLM hypothesis generation, a
market-validated lifecycle tracker, signal dispatch (live store or paper
calibration log) and later verification of dispatched calls.
"""

__all__: list[str] = []
