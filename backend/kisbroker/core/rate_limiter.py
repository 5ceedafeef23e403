import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Optional

from kisbroker.observability.metrics import rate_limiter_wait_seconds

logger = logging.getLogger(__name__)


class RateWindow:
    """
    Sliding-window log for one quota.

    Holds the admission timestamps of the last `period` seconds. At most
    `limit` timestamps can fall inside any window of that length, so the
    ceiling holds for every rolling window, not only aligned ones.
    """

    def __init__(self, limit: int, period: float):
        self.limit = limit
        self.period = period
        self._stamps: deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.period:
            self._stamps.popleft()

    @property
    def count(self) -> int:
        return len(self._stamps)

    def wait_time(self, now: float) -> float:
        """Seconds until this window has headroom for one more call."""
        self._evict(now)
        if len(self._stamps) < self.limit:
            return 0.0
        return self.period - (now - self._stamps[0])

    def reserve(self, now: float) -> None:
        self._stamps.append(now)


class RateLimiter:
    """
    Admits outbound REST calls within per-second and per-minute quotas.

    admit() never rejects; it only delays. The lock is held while waiting
    so callers are admitted in arrival order and a unit is reserved in
    both windows atomically.
    """

    def __init__(
        self,
        per_second: int = 5,
        per_minute: int = 100,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.second_window = RateWindow(per_second, 1.0)
        self.minute_window = RateWindow(per_minute, 60.0)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    async def admit(self) -> float:
        """
        Wait until both windows have headroom, then reserve one unit in each.

        Returns:
            Total seconds spent waiting
        """
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                wait = max(
                    self.second_window.wait_time(now),
                    self.minute_window.wait_time(now),
                )
                if wait <= 0:
                    self.second_window.reserve(now)
                    self.minute_window.reserve(now)
                    break
                if wait > 1.0:
                    logger.warning(f"Per-minute quota reached. Waiting {wait:.2f}s")
                else:
                    logger.debug(f"Per-second quota reached. Waiting {wait:.3f}s")
                await self._sleep(wait)
                waited += wait

        rate_limiter_wait_seconds.observe(waited)
        return waited

    def headroom(self, now: Optional[float] = None) -> tuple[int, int]:
        """Remaining (per-second, per-minute) capacity at `now`."""
        now = self._clock() if now is None else now
        self.second_window.wait_time(now)
        self.minute_window.wait_time(now)
        return (
            self.second_window.limit - self.second_window.count,
            self.minute_window.limit - self.minute_window.count,
        )
