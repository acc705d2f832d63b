"""Scan kinds, targets, outcomes, options and run summaries."""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from bazaar_crawler.config import settings


class ScanKind(str, Enum):
    AUCTION_IDS = "auction-ids"
    AUCTION_HISTORY = "auction-history"
    CURRENT_AUCTIONS = "current-auctions"
    HIGHSCORES = "highscores"
    BANS = "bans"
    TRANSFERS = "transfers"

    @property
    def pool_name(self) -> str:
        # Both auction scans reuse one browser profile
        if self in (ScanKind.AUCTION_IDS, ScanKind.AUCTION_HISTORY):
            return "auctions"
        return self.value

    @property
    def is_id_space(self) -> bool:
        return self is ScanKind.AUCTION_IDS


class TargetKind(str, Enum):
    """What a single target fetches. Drives URL building and extraction."""

    AUCTION_DETAIL = "auction-detail"
    CURRENT_DETAIL = "current-detail"
    CURRENT_LIST = "current-list"
    PAST_LIST = "past-list"
    HIGHSCORE_PAGE = "highscore-page"
    BANS_PAGE = "bans-page"
    TRANSFERS_PAGE = "transfers-page"


@dataclass(frozen=True)
class ScrapeTarget:
    """One unit of work. ``cursor`` is the id (id-space) or queue index."""

    kind: TargetKind
    cursor: int
    external_id: str | None = None
    params: tuple[tuple[str, Any], ...] = ()
    group: str | None = None

    def param(self, name: str, default: Any = None) -> Any:
        return dict(self.params).get(name, default)

    @property
    def label(self) -> str:
        """Short form for log lines, e.g. ``current-detail/123`` or ``highscore-page#7``."""
        if self.external_id is not None:
            return f"{self.kind.value}/{self.external_id}"
        return f"{self.kind.value}#{self.cursor}"


class OutcomeStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    BLOCKED = "blocked"


class ErrorKind(str, Enum):
    NETWORK = "network"
    CHALLENGE = "challenge"
    EXTRACTION = "extraction"
    SESSION = "session"


@dataclass
class FetchOutcome:
    """Tagged result of executing one target; exactly one status."""

    target: ScrapeTarget
    status: OutcomeStatus
    record: Any = None
    error_kind: ErrorKind | None = None
    error: str | None = None

    @classmethod
    def found(cls, target: ScrapeTarget, record: Any) -> "FetchOutcome":
        return cls(target=target, status=OutcomeStatus.FOUND, record=record)

    @classmethod
    def not_found(cls, target: ScrapeTarget) -> "FetchOutcome":
        return cls(target=target, status=OutcomeStatus.NOT_FOUND)

    @classmethod
    def failed(cls, target: ScrapeTarget, kind: ErrorKind, error: str = "") -> "FetchOutcome":
        return cls(target=target, status=OutcomeStatus.FAILED, error_kind=kind, error=error)

    @classmethod
    def blocked(cls, target: ScrapeTarget, error: str = "") -> "FetchOutcome":
        return cls(
            target=target,
            status=OutcomeStatus.BLOCKED,
            error_kind=ErrorKind.CHALLENGE,
            error=error,
        )

    @property
    def is_hard_failure(self) -> bool:
        return self.status in (OutcomeStatus.FAILED, OutcomeStatus.BLOCKED)

    @property
    def records(self) -> list:
        """The found record(s) as a list; list pages yield several."""
        if self.record is None:
            return []
        if isinstance(self.record, list):
            return self.record
        return [self.record]


class ScanOptions(BaseModel):
    headless: bool = Field(default_factory=lambda: settings.BROWSER_HEADLESS)
    resume: bool = False
    max_items: int | None = None  # stop after this many new records saved
    max_range: int | None = None  # id-space window size
    start_id: int | None = None
    end_id: int | None = None
    descending: bool = False
    profile: str = Field(default_factory=lambda: settings.DEFAULT_RATE_PROFILE)
    not_found_limit: int = Field(default_factory=lambda: settings.CONSECUTIVE_NOT_FOUND_LIMIT)
    error_threshold: int = Field(default_factory=lambda: settings.ESCALATION_ERROR_THRESHOLD)
    replace_rounds: int = Field(default_factory=lambda: settings.ESCALATION_REPLACE_ROUNDS)
    max_attempts: int = Field(default_factory=lambda: settings.MAX_TARGET_ATTEMPTS)
    pool_size: int | None = None
    max_pages: int | None = None
    with_details: bool = True
    rescrape: bool = False
    dry_run: bool = False


class Termination(str, Enum):
    COMPLETE = "COMPLETE"
    ABORTED = "ABORTED"


class StopCause(str, Enum):
    RANGE_EXHAUSTED = "range_exhausted"
    NOT_FOUND_LIMIT = "not_found_limit"
    MAX_ITEMS = "max_items"
    QUEUE_EXHAUSTED = "queue_exhausted"
    ESCALATION_EXHAUSTED = "escalation_exhausted"
    INTERRUPTED = "interrupted"


class RunSummary(BaseModel):
    kind: ScanKind
    saved: int = 0
    skipped: int = 0
    updated: int = 0  # existing live records refreshed from list rows
    not_found: int = 0
    failed: int = 0
    store_errors: int = 0
    last_cursor: int | None = None
    archived: int | None = None  # None unless reconciliation ran
    reconcile_errors: int = 0
    deactivated: int = 0
    replace_calls: int = 0
    restart_calls: int = 0
    termination: Termination = Termination.COMPLETE
    cause: StopCause | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class IdRange:
    """Inclusive id window for id-space scans. Open ends are filled in
    from the store and settings."""

    start: int | None = None
    end: int | None = None


@dataclass(frozen=True)
class HighscoreQuery:
    worlds: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    professions: tuple[str, ...] = ()
    pages: int | None = None
    captured_date: date | None = None
