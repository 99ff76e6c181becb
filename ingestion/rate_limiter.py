"""
Minimum-interval rate limiter for requests to the source site
"""

import asyncio
import time
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterStats:
    request_count: int = 0
    total_delay_ms: float = 0.0

    @property
    def average_delay_ms(self) -> float:
        if self.request_count == 0:
            return 0.0
        return self.total_delay_ms / self.request_count


class RateLimiter:
    """
    Enforces a minimum interval between consecutive outbound requests.

    One instance is shared by every fetch of an import run. The first call
    never waits; later calls sleep for whatever is left of the interval since
    the previous call returned. Never raises.
    """

    def __init__(self, min_interval_ms: int = 2000):
        self.min_interval_ms = min_interval_ms
        self._last_request_at: Optional[float] = None
        self._stats = RateLimiterStats()
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        """
        Block until the next request may be issued.

        Returns:
            Milliseconds actually spent waiting
        """
        async with self._lock:
            delay_ms = 0.0
            if self._last_request_at is not None:
                elapsed_ms = (time.monotonic() - self._last_request_at) * 1000
                remaining_ms = self.min_interval_ms - elapsed_ms
                if remaining_ms > 0:
                    await asyncio.sleep(remaining_ms / 1000)
                    delay_ms = remaining_ms

            self._last_request_at = time.monotonic()
            self._stats.request_count += 1
            self._stats.total_delay_ms += delay_ms

            if delay_ms:
                logger.debug(f"Rate limiter delayed request by {delay_ms:.0f}ms")
            return delay_ms

    @property
    def request_count(self) -> int:
        return self._stats.request_count

    @property
    def average_delay_ms(self) -> float:
        return self._stats.average_delay_ms

    def get_stats(self) -> dict:
        return {
            "request_count": self._stats.request_count,
            "average_delay_ms": round(self._stats.average_delay_ms, 1),
            "min_interval_ms": self.min_interval_ms,
        }

    def reset(self):
        self._last_request_at = None
        self._stats = RateLimiterStats()
