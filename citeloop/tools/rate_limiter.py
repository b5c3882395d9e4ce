from __future__ import annotations

import asyncio
import time


class RateLimiter:
    """Token bucket shared by every call to one provider."""

    def __init__(self, requests_per_second: float, burst: int | None = None):
        self.rate = max(float(requests_per_second), 0.01)
        self.capacity = float(burst if burst is not None else max(int(self.rate), 1))
        self._tokens = self.capacity
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) / self.rate)
