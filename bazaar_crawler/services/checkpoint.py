"""Durable, crash-safe scan progress.

One JSON file per scan kind under ``settings.DATA_DIR``. Writes go to a
temporary file which is then renamed over the old one, so a crash mid
write leaves the previous checkpoint intact.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from bazaar_crawler.config import settings

logger = logging.getLogger(__name__)

DIRECTION_ASCENDING = "ascending"
DIRECTION_DESCENDING = "descending"
DIRECTION_QUEUE = "queue"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CheckpointState:
    """Serializable scan progress for checkpoint/resume."""

    kind: str
    direction: str = DIRECTION_ASCENDING
    start_cursor: int | None = None
    end_cursor: int | None = None
    last_cursor: int | None = None  # last fully processed cursor
    saved: int = 0
    skipped: int = 0
    not_found: int = 0
    consecutive_not_found: int = 0
    failed: int = 0
    queue_fingerprint: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def next_cursor(self) -> int | None:
        """Where a resumed scan picks up."""
        if self.last_cursor is None:
            return self.start_cursor
        if self.direction == DIRECTION_DESCENDING:
            return self.last_cursor - 1
        return self.last_cursor + 1

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "direction": self.direction,
            "start_cursor": self.start_cursor,
            "end_cursor": self.end_cursor,
            "last_cursor": self.last_cursor,
            "saved": self.saved,
            "skipped": self.skipped,
            "not_found": self.not_found,
            "consecutive_not_found": self.consecutive_not_found,
            "failed": self.failed,
            "queue_fingerprint": self.queue_fingerprint,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CheckpointState":
        return cls(
            kind=data["kind"],
            direction=data.get("direction", DIRECTION_ASCENDING),
            start_cursor=data.get("start_cursor"),
            end_cursor=data.get("end_cursor"),
            last_cursor=data.get("last_cursor"),
            saved=data.get("saved", 0),
            skipped=data.get("skipped", 0),
            not_found=data.get("not_found", 0),
            consecutive_not_found=data.get("consecutive_not_found", 0),
            failed=data.get("failed", 0),
            queue_fingerprint=data.get("queue_fingerprint"),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else _utcnow(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else _utcnow(),
        )


class CheckpointStore:
    """Single-writer store: one scan instance owns one kind's file."""

    def __init__(self, directory: Path | str | None = None):
        self.directory = Path(directory or settings.DATA_DIR)

    def path_for(self, kind: str) -> Path:
        return self.directory / f"checkpoint-{kind}.json"

    def load(self, kind: str) -> CheckpointState | None:
        path = self.path_for(kind)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return CheckpointState.from_dict(data)
        except (OSError, ValueError, KeyError) as e:
            logger.warning("Ignoring unreadable checkpoint %s: %s", path, e)
            return None

    def save(self, state: CheckpointState) -> None:
        state.updated_at = _utcnow()
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(state.kind)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def delete(self, kind: str) -> bool:
        path = self.path_for(kind)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Removed checkpoint %s", path)
        return True
