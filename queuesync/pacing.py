"""
Fixed-interval pacing for calls against rate-limited APIs.

Neither the catalog nor the destination publishes a hard limit, so both
the enrichment scheduler and the batch reconciler space their per-record
calls by a fixed interval. The clock and sleep are injectable so the
policy can be tested without waiting.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional


class Pacer:
    """
    Guarantees at least ``interval`` seconds between consecutive starts.

    Call ``await pacer.wait()`` immediately before each paced call. The
    first call never waits.
    """

    def __init__(
        self,
        interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._last_start: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        """Sleep until the next slot is open. Returns seconds slept."""
        async with self._lock:
            slept = 0.0
            if self._last_start is not None:
                remaining = self._last_start + self.interval - self._clock()
                # Loop: a sleep may wake early
                while remaining > 0:
                    await self._sleep(remaining)
                    slept += remaining
                    remaining = self._last_start + self.interval - self._clock()
            self._last_start = self._clock()
            return slept

    def reset(self) -> None:
        """Forget the last start, so the next wait() returns immediately."""
        self._last_start = None
