"""
Per-tenant sliding window rate limiter.

QuickBooks allows 500 requests per minute per company. We budget 450 to
leave headroom; QuickBooks' own limiter (HTTP 429) is the backstop.
"""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RateLimiterStats:
    """Process-wide counters for monitoring rate limiter behavior."""
    requests_made: int = 0
    requests_throttled: int = 0
    total_wait_time: float = 0.0


class SlidingWindowRateLimiter:
    """
    Async, multi-tenant sliding window limiter.

    Keeps the timestamps of calls made inside the trailing window for each
    tenant. `acquire()` never rejects: when a tenant is at capacity it sleeps
    until the oldest call leaves the window, then checks again.

    How it works:
    - Drop timestamps older than `window_seconds`
    - If fewer than `max_requests` remain, record now and return
    - Otherwise sleep `window - (now - oldest) + margin` and loop

    Example:
        limiter = SlidingWindowRateLimiter(max_requests=450)

        await limiter.acquire(tenant_id)  # Blocks until a slot is free
        await make_api_request()

    The clock and sleep functions are injectable so tests can drive a
    simulated clock.
    """

    def __init__(
        self,
        max_requests: int = 450,
        window_seconds: float = 60.0,
        margin_seconds: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            max_requests: Calls allowed per tenant inside one window
            window_seconds: Length of the trailing window
            margin_seconds: Extra wait added after the oldest call expires
            clock: Monotonic time source
            sleep: Coroutine used to wait
        """
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.margin_seconds = margin_seconds

        self._clock = clock
        self._sleep = sleep
        self._windows: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()

        self.stats = RateLimiterStats()

    def _prune(self, window: deque[float], now: float) -> None:
        """Drop timestamps that fell out of the window. Must hold lock."""
        while window and now - window[0] >= self.window_seconds:
            window.popleft()

    async def acquire(self, tenant_id: str) -> None:
        """
        Wait for a free slot for `tenant_id` and claim it.
        """
        while True:
            async with self._lock:
                now = self._clock()
                window = self._windows.setdefault(tenant_id, deque())
                self._prune(window, now)

                if len(window) < self.max_requests:
                    window.append(now)
                    self.stats.requests_made += 1
                    return

                wait_time = self.window_seconds - (now - window[0]) + self.margin_seconds

            # Wait outside the lock so other tenants are not blocked
            self.stats.requests_throttled += 1
            self.stats.total_wait_time += wait_time
            logger.info(
                "Rate limit reached, waiting",
                tenant_id=tenant_id,
                limit=self.max_requests,
                wait_seconds=round(wait_time, 3),
            )
            await self._sleep(wait_time)

    def get_stats(self, tenant_id: str) -> dict[str, Any]:
        """
        Current window usage for one tenant, for dashboards.

        Ages are measured on the limiter's own clock: `oldest_call_age` is
        how long ago the oldest call in the window was made, and
        `resets_in` is how long until it leaves the window.
        """
        now = self._clock()
        live = [t for t in self._windows.get(tenant_id, ()) if now - t < self.window_seconds]
        count = len(live)
        oldest_age = now - min(live) if live else None

        return {
            "count": count,
            "limit": self.max_requests,
            "remaining": self.max_requests - count,
            "window_seconds": self.window_seconds,
            "oldest_call_age": round(oldest_age, 3) if oldest_age is not None else None,
            "resets_in": (
                round(self.window_seconds - oldest_age, 3) if oldest_age is not None else 0.0
            ),
            "percent_used": round(count / self.max_requests * 100, 1),
        }

    def get_global_stats(self) -> dict[str, Any]:
        """Process-wide limiter statistics."""
        return {
            "requests_made": self.stats.requests_made,
            "requests_throttled": self.stats.requests_throttled,
            "total_wait_time_seconds": round(self.stats.total_wait_time, 2),
            "tracked_tenants": self.tracked_tenants,
        }

    def reset(self, tenant_id: str) -> None:
        """Forget all recorded calls for one tenant."""
        self._windows.pop(tenant_id, None)
        logger.info("Rate limiter reset", tenant_id=tenant_id)

    def reset_all(self) -> None:
        """Forget all recorded calls for every tenant."""
        self._windows.clear()
        logger.info("Rate limiter reset for all tenants")

    @property
    def tracked_tenants(self) -> int:
        return len(self._windows)
