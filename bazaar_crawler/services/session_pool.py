"""Named pools of browser sessions.

A ``SessionPoolRegistry`` maps pool names to ``SessionPool`` objects. Each
pool owns a fixed number of sessions (tabs) inside one isolated browser
profile, hands them out one fetch at a time, and can replace a single
session or restart the whole pool.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from bazaar_crawler.config import settings
from bazaar_crawler.core.exceptions import SessionPoolError
from bazaar_crawler.core.metrics import active_sessions

logger = logging.getLogger(__name__)

MAX_POOL_SIZE = 4


class SessionLauncher(Protocol):
    """Creates and drives process-backed, cookie-retaining sessions."""

    async def launch(self, pool_name: str, headless: bool) -> None: ...

    async def new_session(self, pool_name: str) -> Any: ...

    async def close_session(self, pool_name: str, session: Any) -> None: ...

    async def shutdown(self, pool_name: str) -> None: ...

    async def probe(self, session: Any) -> str: ...

    async def goto(self, session: Any, url: str, timeout_ms: int) -> None: ...

    async def read(self, session: Any) -> tuple[str, str]: ...


class SessionHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    REPLACING = "replacing"


@dataclass(eq=False)
class SessionHandle:
    pool_name: str
    slot: int
    session: Any
    health: SessionHealth = SessionHealth.HEALTHY
    generation: int = 0
    in_use: bool = False
    warmed_up: bool = False  # challenge cleared once in this session's lifetime


class SessionPool:
    def __init__(
        self,
        name: str,
        size: int,
        launcher: SessionLauncher,
        headless: bool = False,
        sleep=None,
    ):
        self.name = name
        self.size = max(1, min(size, MAX_POOL_SIZE))
        self.launcher = launcher
        self.headless = headless
        self._sleep = sleep or asyncio.sleep
        self._handles: list[SessionHandle] = []
        self._next_slot = 0
        self._started = False
        self._loop = None
        self._lock: asyncio.Lock | None = None
        self._available: asyncio.Condition | None = None

    def _bind_loop(self) -> None:
        """(Re)create loop-bound primitives for the current event loop."""
        current_loop = asyncio.get_running_loop()
        if self._lock is None or self._loop is not current_loop:
            self._lock = asyncio.Lock()
            self._available = asyncio.Condition()
            self._loop = current_loop

    @property
    def started(self) -> bool:
        return self._started

    @property
    def handles(self) -> list[SessionHandle]:
        return list(self._handles)

    async def start(self) -> None:
        """Launch the pool once, however many tasks ask at the same time."""
        if self._started:
            return
        self._bind_loop()
        async with self._lock:
            if self._started:
                return
            await self._launch_all()

    async def _launch_all(self) -> None:
        try:
            await self.launcher.launch(self.name, self.headless)
            handles = []
            for slot in range(self.size):
                session = await self.launcher.new_session(self.name)
                handles.append(SessionHandle(pool_name=self.name, slot=slot, session=session))
        except SessionPoolError:
            raise
        except Exception as e:
            raise SessionPoolError(self.name, f"launch failed: {e}") from e
        self._handles = handles
        self._next_slot = 0
        self._started = True
        self._update_gauge()
        logger.info("Session pool %s ready with %d session(s)", self.name, self.size)

    def _next_free(self) -> SessionHandle | None:
        """Round-robin over free handles that are not being replaced."""
        count = len(self._handles)
        for offset in range(count):
            handle = self._handles[(self._next_slot + offset) % count]
            if not handle.in_use and handle.health != SessionHealth.REPLACING:
                self._next_slot = (handle.slot + 1) % count
                return handle
        return None

    async def acquire(self) -> SessionHandle:
        await self.start()
        self._bind_loop()
        async with self._available:
            while True:
                handle = self._next_free()
                if handle is not None:
                    handle.in_use = True
                    break
                await self._available.wait()

        if handle.health == SessionHealth.DEGRADED or not await self._probe(handle):
            try:
                await self.replace(handle)
            except SessionPoolError:
                await self.release(handle)
                raise
        return handle

    async def release(self, handle: SessionHandle) -> None:
        handle.in_use = False
        self._bind_loop()
        async with self._available:
            self._available.notify()

    async def _probe(self, handle: SessionHandle) -> bool:
        try:
            await self.launcher.probe(handle.session)
            return True
        except Exception as e:
            logger.warning("Session %s/%d failed health probe: %s", self.name, handle.slot, e)
            handle.health = SessionHealth.DEGRADED
            return False

    async def replace(self, handle: SessionHandle) -> SessionHandle:
        """Swap the handle's session for a fresh one, in place."""
        handle.health = SessionHealth.REPLACING
        try:
            await self.launcher.close_session(self.name, handle.session)
        except Exception as e:
            logger.debug("Closing old session %s/%d failed: %s", self.name, handle.slot, e)
        try:
            handle.session = await self.launcher.new_session(self.name)
        except Exception as e:
            handle.health = SessionHealth.DEGRADED
            self._update_gauge()
            raise SessionPoolError(self.name, f"replace of slot {handle.slot} failed: {e}") from e
        handle.health = SessionHealth.HEALTHY
        handle.generation += 1
        handle.warmed_up = False
        self._update_gauge()
        logger.info(
            "Replaced session %s/%d (generation %d)", self.name, handle.slot, handle.generation
        )
        return handle

    async def restart(self, cooldown: float | None = None) -> None:
        """Tear down every session, cool off, and relaunch the pool."""
        cooldown = settings.RESTART_COOLDOWN_SECONDS if cooldown is None else cooldown
        self._bind_loop()
        async with self._lock:
            for handle in self._handles:
                handle.health = SessionHealth.REPLACING
            await self._teardown()
            if cooldown > 0:
                logger.info("Pool %s cooling down %.0fs before restart", self.name, cooldown)
                await self._sleep(cooldown)
            await self._launch_all()
        async with self._available:
            self._available.notify_all()

    async def _teardown(self) -> None:
        try:
            await self.launcher.shutdown(self.name)
        except Exception as e:
            logger.warning("Shutdown of pool %s raised: %s", self.name, e)
        self._handles = []
        self._started = False
        self._update_gauge()

    async def close(self) -> None:
        if not self._started and not self._handles:
            return
        await self._teardown()
        logger.info("Session pool %s closed", self.name)

    def _update_gauge(self) -> None:
        healthy = sum(1 for h in self._handles if h.health == SessionHealth.HEALTHY)
        active_sessions.labels(pool=self.name).set(healthy)


class SessionPoolRegistry:
    """Pools keyed by name; injected into scans instead of a global cache."""

    def __init__(self, launcher: SessionLauncher, headless: bool | None = None, sleep=None):
        self.launcher = launcher
        self.headless = settings.BROWSER_HEADLESS if headless is None else headless
        self._sleep = sleep
        self._pools: dict[str, SessionPool] = {}

    def pool(self, name: str, size: int | None = None) -> SessionPool:
        pool = self._pools.get(name)
        if pool is None:
            pool = SessionPool(
                name,
                size or 1,
                self.launcher,
                headless=self.headless,
                sleep=self._sleep,
            )
            self._pools[name] = pool
        return pool

    async def acquire(self, name: str, size: int | None = None) -> SessionHandle:
        return await self.pool(name, size).acquire()

    async def release(self, handle: SessionHandle) -> None:
        await self._pools[handle.pool_name].release(handle)

    async def replace(self, handle: SessionHandle) -> SessionHandle:
        return await self._pools[handle.pool_name].replace(handle)

    async def restart(self, name: str, cooldown: float | None = None) -> None:
        await self.pool(name).restart(cooldown)

    async def close_all(self) -> None:
        for pool in list(self._pools.values()):
            try:
                await pool.close()
            except Exception as e:
                logger.warning("Closing pool %s failed: %s", pool.name, e)
        self._pools.clear()
