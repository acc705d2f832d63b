"""Execute one target against a pooled session and classify the outcome."""

import asyncio
import logging
import random

from bazaar_crawler.config import settings
from bazaar_crawler.core.context import target_context
from bazaar_crawler.core.exceptions import (
    ChallengeTimeoutError,
    ExtractionFailure,
    NetworkOrChallengeFailure,
    SessionPoolError,
)
from bazaar_crawler.schemas.scan import ErrorKind, FetchOutcome, ScrapeTarget
from bazaar_crawler.services.challenge import ChallengeGate, looks_challenged
from bazaar_crawler.services.extraction import extract
from bazaar_crawler.services.session_pool import SessionHandle, SessionPoolRegistry
from bazaar_crawler.services.targets import url_for

logger = logging.getLogger(__name__)


class PageFetcher:
    """Acquire -> warm up -> navigate through the gate -> settle -> extract.

    Every failure is caught here and turned into a ``FetchOutcome`` so the
    driver never sees a raw exception from a single target.
    """

    def __init__(
        self,
        pools: SessionPoolRegistry,
        gate: ChallengeGate,
        extractor=extract,
        settle_ms: tuple[int, int] | None = None,
        warmup_url: str | None = None,
        rng: random.Random | None = None,
        sleep=None,
    ):
        self.pools = pools
        self.gate = gate
        self.extractor = extractor
        self.settle_ms = settle_ms or settings.POST_NAVIGATION_SETTLE_MS
        self.warmup_url = (
            warmup_url
            if warmup_url is not None
            else settings.BASE_URL.rstrip("/") + settings.WARMUP_PATH
        )
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep

    async def _settle(self) -> None:
        low, high = self.settle_ms
        if high > low:
            await self._sleep(self._rng.randrange(low, high) / 1000.0)

    async def fetch(
        self, target: ScrapeTarget, pool_name: str, pool_size: int | None = None
    ) -> tuple[FetchOutcome, SessionHandle | None]:
        """Returns the outcome and the handle that served it (None if no
        session could be acquired). The handle is already released."""
        with target_context(target.label):
            return await self._fetch(target, pool_name, pool_size)

    async def _fetch(
        self, target: ScrapeTarget, pool_name: str, pool_size: int | None
    ) -> tuple[FetchOutcome, SessionHandle | None]:
        try:
            handle = await self.pools.acquire(pool_name, pool_size)
        except SessionPoolError as e:
            logger.warning("No session for %s: %s", pool_name, e)
            return FetchOutcome.failed(target, ErrorKind.SESSION, str(e)), None

        url = None
        try:
            url = url_for(target)
            if self.warmup_url:
                await self.gate.warm_up(handle, self.warmup_url)
            await self.gate.navigate(handle, url)
            await self._settle()
            title, content = await self.pools.launcher.read(handle.session)
            if looks_challenged(title, content):
                # Re-challenged while settling
                title, content = await self.gate.wait_for_clearance(handle, url, self.gate.timeout)
            record = self.extractor(content, target, url)
        except asyncio.CancelledError:
            raise
        except ChallengeTimeoutError as e:
            return FetchOutcome.blocked(target, str(e)), handle
        except NetworkOrChallengeFailure as e:
            logger.warning("Fetch failed for %s: %s", url, e)
            return FetchOutcome.failed(target, ErrorKind.NETWORK, str(e)), handle
        except ExtractionFailure as e:
            logger.warning("Extraction failed for %s: %s | sample=%r", url, e, e.sample)
            return FetchOutcome.failed(target, ErrorKind.EXTRACTION, str(e)), handle
        except Exception as e:
            logger.warning(
                "Unexpected error fetching %s: %s", url or target.kind.value, e, exc_info=True
            )
            return FetchOutcome.failed(target, ErrorKind.NETWORK, str(e)), handle
        finally:
            await self.pools.release(handle)

        if record is None:
            return FetchOutcome.not_found(target), handle
        return FetchOutcome.found(target, record), handle
