"""Unibox: unified inbox ingestion, usage metering and real-time fan-out."""

__version__ = "0.1.0"
