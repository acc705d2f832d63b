"""Crawler error taxonomy.

"Not found" is deliberately absent: an absent target is a normal
``FetchOutcome``, not an error.
"""


class CrawlerError(Exception):
    """Base class for all crawler errors."""


class NetworkOrChallengeFailure(CrawlerError):
    """Navigation failed or the page never became readable."""

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


class ChallengeTimeoutError(NetworkOrChallengeFailure):
    """The anti-automation challenge did not clear in time."""

    def __init__(self, url: str, waited_seconds: float):
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Challenge did not clear for {url} after {waited_seconds:.0f}s", url=url
        )


class ExtractionFailure(CrawlerError):
    """Page content was present but could not be parsed."""

    SAMPLE_LENGTH = 500

    def __init__(self, message: str, content: str = ""):
        self.sample = (content or "")[: self.SAMPLE_LENGTH]
        super().__init__(message)


class StoreWriteFailure(CrawlerError):
    """A single record could not be written to the relational store."""

    def __init__(self, external_id: str, cause: Exception):
        self.external_id = external_id
        self.cause = cause
        super().__init__(f"Store write failed for {external_id}: {cause}")


class SessionPoolError(CrawlerError):
    """A session pool could not launch, replace or restart sessions."""

    def __init__(self, pool_name: str, message: str):
        self.pool_name = pool_name
        super().__init__(f"[{pool_name}] {message}")


class ScanAbortedError(CrawlerError):
    """Tier-2 escalation failed; the scan cannot make progress."""

    def __init__(self, cause: str):
        self.cause = cause
        super().__init__(f"Scan aborted: {cause}")
