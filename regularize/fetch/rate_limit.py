"""Per-host request pacing shared by every job talking to the portal."""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Hands out request slots per host, at most ``rate_per_second`` per host.

    Each caller reserves the next free slot under a short lock and sleeps
    outside it, so concurrent jobs queue up in reservation order. A host can
    be pushed back (``penalize``) when the portal asks us to slow down.
    """

    def __init__(
        self,
        rate_per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rate_per_second = rate_per_second
        self.min_interval = 1.0 / rate_per_second if rate_per_second > 0 else 0
        self._clock = clock
        self._sleep = sleep
        self._next_slot: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self.waited_seconds = 0.0

    @staticmethod
    def _host(url: str) -> str:
        return urlparse(url).netloc.lower()

    async def acquire(self, url: str) -> None:
        """Wait for this host's next slot."""
        host = self._host(url)
        async with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(host, now))
            self._next_slot[host] = slot + self.min_interval
        wait_time = slot - now
        if wait_time > 0:
            logger.debug(f"Pacing {host}: waiting {wait_time:.2f}s")
            self.waited_seconds += wait_time
            await self._sleep(wait_time)

    def penalize(self, url: str, seconds: float) -> None:
        """Push the host's next slot at least ``seconds`` into the future."""
        host = self._host(url)
        not_before = self._clock() + seconds
        if not_before > self._next_slot.get(host, 0.0):
            self._next_slot[host] = not_before
            logger.warning(f"Portal asked to slow down, pausing {host} for {seconds:.0f}s")
