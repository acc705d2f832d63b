"""Challenge gate: navigate, then wait until the interstitial clears.

The site fronts every page with an anti-automation interstitial. A
session that has cleared it once carries the clearance cookie, so the
gate mostly returns on the first read; when the site re-challenges, the
gate polls until the page turns into real content or the timeout hits.
"""

import asyncio
import logging
import time

from bazaar_crawler.config import settings
from bazaar_crawler.core.exceptions import ChallengeTimeoutError, NetworkOrChallengeFailure
from bazaar_crawler.core.metrics import challenge_encounters_total, challenge_wait_seconds
from bazaar_crawler.services.session_pool import SessionHandle, SessionLauncher

logger = logging.getLogger(__name__)

# Title fragments of the interstitial (English and Portuguese variants)
CHALLENGE_TITLE_MARKERS = ("just a moment", "verificação")
# Markup only present while the challenge script runs
CHALLENGE_CONTENT_MARKERS = ("cf-browser-verification", "challenge-platform")


def looks_challenged(title: str, content: str) -> bool:
    title = (title or "").lower()
    if any(marker in title for marker in CHALLENGE_TITLE_MARKERS):
        return True
    content = content or ""
    return any(marker in content for marker in CHALLENGE_CONTENT_MARKERS)


class ChallengeGate:
    def __init__(
        self,
        launcher: SessionLauncher,
        timeout: float | None = None,
        poll_interval: float | None = None,
        sleep=None,
    ):
        self.launcher = launcher
        self.timeout = settings.CHALLENGE_TIMEOUT_SECONDS if timeout is None else timeout
        self.poll_interval = (
            settings.CHALLENGE_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self._sleep = sleep or asyncio.sleep

    async def navigate(
        self, handle: SessionHandle, url: str, timeout: float | None = None
    ) -> tuple[str, str]:
        """Navigate ``handle`` to ``url`` and return the clean (title, content).

        Raises ``ChallengeTimeoutError`` when the challenge does not clear
        and ``NetworkOrChallengeFailure`` when navigation itself fails.
        """
        timeout = self.timeout if timeout is None else timeout
        try:
            await self.launcher.goto(handle.session, url, settings.NAVIGATION_TIMEOUT_MS)
            title, content = await self.launcher.read(handle.session)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise NetworkOrChallengeFailure(f"Navigation to {url} failed: {e}", url=url) from e

        if not looks_challenged(title, content):
            return title, content

        return await self.wait_for_clearance(handle, url, timeout)

    async def wait_for_clearance(
        self, handle: SessionHandle, url: str, timeout: float
    ) -> tuple[str, str]:
        logger.info("Challenge detected on %s, waiting up to %.0fs", url, timeout)
        started = time.monotonic()
        polls = max(1, int(timeout // self.poll_interval)) if self.poll_interval > 0 else 1

        for _ in range(polls):
            await self._sleep(self.poll_interval)
            try:
                title, content = await self.launcher.read(handle.session)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # The challenge script reloads the page; reads can race it
                logger.debug("Read during challenge wait failed: %s", e)
                continue
            if not looks_challenged(title, content):
                challenge_encounters_total.labels(result="cleared").inc()
                challenge_wait_seconds.observe(time.monotonic() - started)
                logger.info("Challenge cleared on %s", url)
                return title, content

        challenge_encounters_total.labels(result="timeout").inc()
        challenge_wait_seconds.observe(time.monotonic() - started)
        logger.warning("Challenge did not clear on %s after %.0fs", url, timeout)
        raise ChallengeTimeoutError(url, timeout)

    async def warm_up(self, handle: SessionHandle, url: str) -> None:
        """Clear the challenge once per session lifetime."""
        if handle.warmed_up:
            return
        await self.navigate(handle, url)
        handle.warmed_up = True
        logger.debug("Session %s/%d warmed up", handle.pool_name, handle.slot)
