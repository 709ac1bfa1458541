"""Utility modules for the Unibox service."""

from unibox.utils.timeutil import ensure_utc, isoformat_utc, parse_timestamp, period_key, utcnow

__all__ = [
    "ensure_utc",
    "isoformat_utc",
    "parse_timestamp",
    "period_key",
    "utcnow",
]
