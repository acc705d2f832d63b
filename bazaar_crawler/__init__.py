"""Resumable crawl and reconciliation engine for RubinOT trade and highscore pages."""

__version__ = "0.1.0"
