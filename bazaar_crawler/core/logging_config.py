"""Structured logging configuration.

Supports two modes via CRAWLER_LOG_FORMAT:
- "json": one JSON object per line with scan_id, scan_kind and target
- "text" (default): human-readable lines for interactive runs
"""

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from bazaar_crawler.core.context import get_log_context

# Loggers that drown out scan progress at INFO
NOISY_LOGGERS = {
    "playwright": logging.ERROR,
    "asyncio": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


class ScanContextFilter(logging.Filter):
    """Inject scan_id, scan_kind and target into every log record."""

    def filter(self, record):
        for key, value in get_log_context().items():
            setattr(record, key, value)
        return True


class PlaywrightPipeFilter(logging.Filter):
    """Suppress Playwright's 'pipe closed by peer' warnings.

    When a pool's driver is stopped during a restart, Playwright logs
    this message for every pending write.
    """

    def filter(self, record):
        return "pipe closed by peer" not in record.getMessage()


class TextFormatter(logging.Formatter):
    """``[scan_id target]`` prefix, leaving out whichever part is unset."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s %(scan_tag)s%(message)s")

    def format(self, record):
        parts = [p for p in (getattr(record, "scan_id", ""), getattr(record, "target", "")) if p]
        record.scan_tag = f"[{' '.join(parts)}] " if parts else ""
        return super().format(record)


def build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s %(scan_id)s %(scan_kind)s %(target)s",
            rename_fields={
                "levelname": "level",
                "name": "logger",
                "asctime": "timestamp",
            },
        )
    return TextFormatter()


def configure_logging(log_format: str = "text", log_level: str = "INFO"):
    """Configure root logger with the specified format.

    Args:
        log_format: "json" or "text"
        log_level: Python log level name
    """
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ScanContextFilter())
    handler.addFilter(PlaywrightPipeFilter())
    handler.setFormatter(build_formatter(log_format))
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
