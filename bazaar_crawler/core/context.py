"""Scan and target context for log correlation.

A scan run binds a short scan ID and its kind; each fetch binds the label
of the target it is working on. Both live in ContextVars, so a fetch
dispatched inside a concurrent batch only ever sees its own target.
"""

import contextvars
import uuid
from contextlib import contextmanager

scan_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("scan_id", default="")
scan_kind_var: contextvars.ContextVar[str] = contextvars.ContextVar("scan_kind", default="")
target_var: contextvars.ContextVar[str] = contextvars.ContextVar("target", default="")


def new_scan_id(kind: str) -> str:
    return f"{kind}-{uuid.uuid4().hex[:8]}"


@contextmanager
def scan_context(scan_id: str, kind: str = ""):
    """Bind ``scan_id`` and ``kind`` for the duration of a scan run."""
    id_token = scan_id_var.set(scan_id)
    kind_token = scan_kind_var.set(kind)
    try:
        yield scan_id
    finally:
        scan_kind_var.reset(kind_token)
        scan_id_var.reset(id_token)


@contextmanager
def target_context(label: str):
    token = target_var.set(label)
    try:
        yield label
    finally:
        target_var.reset(token)


def get_log_context() -> dict[str, str]:
    return {
        "scan_id": scan_id_var.get(),
        "scan_kind": scan_kind_var.get(),
        "target": target_var.get(),
    }
