"""Small text helpers shared by the page parsers."""

import re

_WS_RE = re.compile(r"\s+")


def clean_text(value: str | None) -> str:
    """Collapse whitespace and strip."""
    if not value:
        return ""
    return _WS_RE.sub(" ", value).strip()


def parse_number(value: str | None) -> int | None:
    """Digits only: '1.234.567 TC' -> 1234567. None when no digits."""
    if not value:
        return None
    digits = re.sub(r"[^0-9]", "", value)
    return int(digits) if digits else None


def parse_signed_number(value: str | None) -> int | None:
    if not value:
        return None
    cleaned = re.sub(r"[^0-9-]", "", value)
    try:
        return int(cleaned)
    except ValueError:
        return None
