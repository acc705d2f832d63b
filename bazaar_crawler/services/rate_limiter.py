"""Randomised inter-request delays drawn from named profiles."""

import asyncio
import logging
import random

from bazaar_crawler.config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Draws a uniform delay from a profile's ``[low_ms, high_ms)`` band.

    Holds no state between calls beyond the profile table. ``rng`` and
    ``sleep`` are injectable so tests can run without real time passing.
    """

    def __init__(self, profiles: dict | None = None, rng: random.Random | None = None, sleep=None):
        self.profiles = {
            name: (int(low), int(high))
            for name, (low, high) in (profiles or settings.RATE_PROFILES).items()
        }
        for name, (low, high) in self.profiles.items():
            if high <= low:
                raise ValueError(f"Rate profile {name!r} has an empty range [{low}, {high})")
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep

    def delay(self, profile: str) -> float:
        """Return a delay in seconds for ``profile``."""
        try:
            low, high = self.profiles[profile]
        except KeyError:
            raise ValueError(
                f"Unknown rate profile {profile!r}; known: {', '.join(sorted(self.profiles))}"
            ) from None
        return self._rng.randrange(low, high) / 1000.0

    async def wait(self, profile: str) -> float:
        """Sleep for a freshly drawn delay and return it."""
        seconds = self.delay(profile)
        await self._sleep(seconds)
        return seconds

    async def cooldown(self, seconds: float) -> None:
        """Fixed post-failure sleep used by escalation."""
        if seconds > 0:
            logger.info("Cooling down for %.0fs", seconds)
            await self._sleep(seconds)
