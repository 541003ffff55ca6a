"""
Unit tests for the concurrency limiter.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from hermes_shared.errors import LimiterRejection
from hermes_shared.metrics import MetricsCollector
from service_relay.app.ratelimit import ConcurrencyLimiter


class TestConcurrencyLimiter:
    """Test cases for ConcurrencyLimiter."""

    @pytest.fixture
    def metrics(self):
        """Isolated metrics collector."""
        return MetricsCollector("relay-test")

    @pytest.fixture
    def limiter(self, metrics):
        """Limiter with room for two dispatches."""
        return ConcurrencyLimiter(2, metrics=metrics)

    def test_invalid_bound(self):
        """Test that the bound must be positive."""
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)

    def test_acquire_and_release(self, limiter):
        """Test permits are counted while held."""
        first = limiter.acquire()
        second = limiter.acquire()
        assert limiter.in_flight == 2
        assert first.id != second.id

        limiter.release(first)
        limiter.release(second)
        assert limiter.in_flight == 0
        assert first.released

    def test_rejects_when_full(self, limiter, metrics):
        """Test that admission fails fast at the bound."""
        limiter.acquire()
        limiter.acquire()

        with pytest.raises(LimiterRejection) as exc_info:
            limiter.acquire()

        assert exc_info.value.reason == "overloaded"
        assert exc_info.value.status_code == 503
        assert limiter.in_flight == 2
        rejected = metrics.registry.get_sample_value(
            "limiter_rejections_total", {"reason": "overloaded"}
        )
        assert rejected == 1.0

    def test_concurrent_acquire_never_exceeds_bound(self, metrics):
        """Test that acquires racing from many threads admit exactly the bound."""
        limiter = ConcurrencyLimiter(5, metrics=metrics)

        def try_acquire(_):
            try:
                return limiter.acquire()
            except LimiterRejection:
                return None

        with ThreadPoolExecutor(max_workers=16) as pool:
            permits = [p for p in pool.map(try_acquire, range(50)) if p is not None]

        assert len(permits) == 5
        assert limiter.in_flight == 5
        for permit in permits:
            limiter.release(permit)
        assert limiter.in_flight == 0

    def test_release_frees_capacity(self, limiter):
        """Test a released permit makes room for new work."""
        permit = limiter.acquire()
        limiter.acquire()
        limiter.release(permit)
        assert limiter.acquire() is not None

    def test_double_release(self, limiter):
        """Test that releasing twice is an error and does not corrupt the count."""
        permit = limiter.acquire()
        limiter.release(permit)
        with pytest.raises(RuntimeError):
            limiter.release(permit)
        assert limiter.in_flight == 0

    def test_admit_releases_on_exception(self, limiter):
        """Test the context manager releases on every exit path."""
        with pytest.raises(KeyError):
            with limiter.admit():
                assert limiter.in_flight == 1
                raise KeyError("boom")
        assert limiter.in_flight == 0

    def test_closed_limiter_rejects(self, limiter):
        """Test that a closed limiter rejects with the shutdown reason."""
        held = limiter.acquire()
        limiter.close()

        with pytest.raises(LimiterRejection) as exc_info:
            limiter.acquire()

        assert exc_info.value.reason == "shutting_down"
        assert limiter.closed
        limiter.release(held)
        assert limiter.in_flight == 0

    def test_inflight_gauge(self, limiter, metrics):
        """Test the in-flight gauge tracks permits."""
        permit = limiter.acquire()
        assert metrics.registry.get_sample_value("inflight_dispatches") == 1.0
        limiter.release(permit)
        assert metrics.registry.get_sample_value("inflight_dispatches") == 0.0

    @pytest.mark.asyncio
    async def test_wait_idle(self, limiter):
        """Test waiting for in-flight work to finish."""
        permit = limiter.acquire()

        async def release_later():
            await asyncio.sleep(0.05)
            limiter.release(permit)

        task = asyncio.ensure_future(release_later())
        assert await limiter.wait_idle(timeout=1.0, poll_interval=0.01) is True
        await task

    @pytest.mark.asyncio
    async def test_wait_idle_timeout(self, limiter):
        """Test that wait_idle gives up after the timeout."""
        limiter.acquire()
        assert await limiter.wait_idle(timeout=0.05, poll_interval=0.01) is False
