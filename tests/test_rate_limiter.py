"""
Tests for the per-tenant sliding window rate limiter.

All tests drive a simulated clock; nothing actually sleeps.
"""

import asyncio

import pytest

from qbo_sync.rate_limiter import SlidingWindowRateLimiter


class SimulatedClock:
    """Clock whose sleep advances time instantly."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return SimulatedClock()


def make_limiter(clock, **kwargs) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(clock=clock, sleep=clock.sleep, **kwargs)


class TestAcquire:
    """Tests for acquire()."""

    @pytest.mark.asyncio
    async def test_under_limit_does_not_wait(self, clock):
        limiter = make_limiter(clock, max_requests=3)

        for _ in range(3):
            await limiter.acquire("t1")

        assert clock.sleeps == []
        assert limiter.get_stats("t1")["count"] == 3

    @pytest.mark.asyncio
    async def test_waits_for_oldest_call_to_leave_window(self, clock):
        limiter = make_limiter(clock, max_requests=2, window_seconds=10.0, margin_seconds=0.1)

        await limiter.acquire("t1")
        clock.now = 1.0
        await limiter.acquire("t1")
        clock.now = 2.0
        await limiter.acquire("t1")

        # window - (now - oldest) + margin = 10 - 2 + 0.1
        assert clock.sleeps == [pytest.approx(8.1)]
        assert limiter.stats.requests_throttled == 1

    @pytest.mark.asyncio
    async def test_451st_call_waits_a_full_window(self, clock):
        limiter = make_limiter(clock)

        for _ in range(450):
            await limiter.acquire("t1")
        assert clock.sleeps == []

        await limiter.acquire("t1")

        assert clock.sleeps == [pytest.approx(60.1)]
        assert clock.now >= 60.0

    @pytest.mark.asyncio
    async def test_never_more_than_limit_in_any_window(self, clock):
        limiter = make_limiter(clock, max_requests=5, window_seconds=10.0)
        stamps = []

        for _ in range(23):
            await limiter.acquire("t1")
            stamps.append(clock.now)
            clock.now += 0.5

        for start in stamps:
            in_window = [t for t in stamps if start <= t < start + 10.0]
            assert len(in_window) <= 5

    @pytest.mark.asyncio
    async def test_tenants_are_independent(self, clock):
        limiter = make_limiter(clock, max_requests=2)

        await limiter.acquire("t1")
        await limiter.acquire("t1")
        await limiter.acquire("t2")
        await limiter.acquire("t2")

        assert clock.sleeps == []
        assert limiter.tracked_tenants == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_the_budget(self, clock):
        limiter = make_limiter(clock, max_requests=4, window_seconds=10.0)

        await asyncio.gather(*(limiter.acquire("t1") for _ in range(6)))

        assert limiter.stats.requests_made == 6
        assert len(clock.sleeps) >= 1


class TestStats:
    """Tests for statistics and reset."""

    @pytest.mark.asyncio
    async def test_get_stats(self, clock):
        limiter = make_limiter(clock)
        for _ in range(45):
            await limiter.acquire("t1")
        clock.now = 20.0

        stats = limiter.get_stats("t1")

        assert stats["count"] == 45
        assert stats["limit"] == 450
        assert stats["remaining"] == 405
        assert stats["percent_used"] == 10.0
        assert stats["oldest_call_age"] == 20.0
        assert stats["resets_in"] == 40.0

    def test_stats_for_unknown_tenant(self, clock):
        limiter = make_limiter(clock)
        stats = limiter.get_stats("nobody")
        assert stats["count"] == 0
        assert stats["oldest_call_age"] is None
        assert stats["resets_in"] == 0.0

    @pytest.mark.asyncio
    async def test_calls_expire_from_window(self, clock):
        limiter = make_limiter(clock, window_seconds=60.0)
        await limiter.acquire("t1")

        clock.now = 61.0

        assert limiter.get_stats("t1")["count"] == 0

    @pytest.mark.asyncio
    async def test_reset(self, clock):
        limiter = make_limiter(clock)
        await limiter.acquire("t1")
        await limiter.acquire("t2")

        limiter.reset("t1")
        assert limiter.get_stats("t1")["count"] == 0
        assert limiter.get_stats("t2")["count"] == 1

        limiter.reset_all()
        assert limiter.tracked_tenants == 0

    def test_rejects_invalid_limits(self, clock):
        with pytest.raises(ValueError):
            make_limiter(clock, max_requests=0)
        with pytest.raises(ValueError):
            make_limiter(clock, window_seconds=0)
