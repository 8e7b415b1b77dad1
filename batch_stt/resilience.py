from __future__ import annotations

import asyncio
import ipaddress
import socket
from dataclasses import dataclass
from logging import getLogger
from time import monotonic
from typing import Awaitable, Callable, Optional

import aiohttp

from config import (
    CONNECTIVITY_CHECK_INTERVAL_S,
    CONNECTIVITY_TIMEOUT_S,
    CONNECTIVITY_URL,
    SILENCE_CHECK_INTERVAL_MS,
)

logger = getLogger(__name__)


def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel a background task unless it is the one currently running."""
    if task is None or task.done():
        return
    if task is asyncio.current_task():
        return
    task.cancel()


# ---------------------------------------------------------------------------
# Silence watchdog
# ---------------------------------------------------------------------------

class SilenceWatchdog:
    """
    Periodic check that fires ``on_silence`` once when no speech was seen for
    ``timeout_ms``. Re-arm it to watch again.
    """

    def __init__(
            self,
            timeout_ms: int,
            on_silence: Callable[[], Awaitable[None]],
            *,
            interval_ms: int = SILENCE_CHECK_INTERVAL_MS,
            clock: Callable[[], float] = monotonic,
    ) -> None:
        self._timeout_s = timeout_ms / 1000.0
        self._interval_s = interval_ms / 1000.0
        self._on_silence = on_silence
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self.last_speech = clock()

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def touch(self) -> None:
        """Record that speech (or audio) was just observed."""
        self.last_speech = self._clock()

    def arm(self) -> None:
        self.disarm()
        self._task = asyncio.create_task(self._run())

    def disarm(self) -> None:
        cancel_task(self._task)
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            silence_s = self._clock() - self.last_speech
            if silence_s >= self._timeout_s:
                logger.info("[SESSION] Silence timeout reached (%.1f s without speech).", silence_s)
                self._task = None
                await self._on_silence()
                return


# ---------------------------------------------------------------------------
# Restart budget
# ---------------------------------------------------------------------------

@dataclass
class RestartBudget:
    """Counts consecutive restarts against a fixed bound."""
    max_attempts: int
    attempts: int = 0

    @property
    def remaining(self) -> bool:
        return self.attempts < self.max_attempts

    def consume(self) -> bool:
        """Take one attempt; False when the budget is already exhausted."""
        if not self.remaining:
            return False
        self.attempts += 1
        return True

    def reset(self) -> None:
        self.attempts = 0


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------

def platform_online() -> bool:
    """Best-effort OS-level online flag: does this host have a non-loopback address?"""
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None)
    except OSError:
        return False
    for info in infos:
        try:
            address = ipaddress.ip_address(info[4][0].split("%", 1)[0])
        except ValueError:
            continue
        if not address.is_loopback:
            return True
    return False


class ConnectivityProbe:
    """
    Reachability check: a lightweight HTTP HEAD request with a timeout.

    Any HTTP response counts as reachable. When the request fails or times out
    the answer falls back to ``online_flag``. Checks closer together than
    ``check_interval_s`` are not repeated and report reachable.
    """

    def __init__(
            self,
            url: str = CONNECTIVITY_URL,
            *,
            timeout_s: float = CONNECTIVITY_TIMEOUT_S,
            check_interval_s: float = CONNECTIVITY_CHECK_INTERVAL_S,
            online_flag: Callable[[], bool] = platform_online,
            clock: Callable[[], float] = monotonic,
    ) -> None:
        self._url = url
        self._timeout_s = timeout_s
        self._check_interval_s = check_interval_s
        self._online_flag = online_flag
        self._clock = clock
        self._last_check: Optional[float] = None

    async def check(self) -> bool:
        now = self._clock()
        if self._last_check is not None and now - self._last_check < self._check_interval_s:
            return True
        self._last_check = now

        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout_s)) as session:
                async with session.head(self._url, allow_redirects=False) as response:
                    logger.debug("[NET] %s answered HTTP %d", self._url, response.status)
                    return True
        except asyncio.TimeoutError:
            logger.warning("[NET] Network check timed out after %.1f s", self._timeout_s)
        except aiohttp.ClientError as e:
            logger.warning("[NET] Network check failed: %r", e)
        online = self._online_flag()
        logger.info("[NET] Falling back to platform online flag: %s", online)
        return online
