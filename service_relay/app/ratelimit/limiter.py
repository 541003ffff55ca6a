"""
Gateway-wide concurrency limiter.

Bounds the number of dispatches in flight. Admission never waits: once the
bound is reached new work is rejected so latency does not pile up behind a
queue.
"""

import asyncio
import itertools
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from hermes_shared.errors import LimiterRejection
from hermes_shared.logging import get_logger
from hermes_shared.metrics import MetricsCollector


class Permit:
    """Proof of admission. Released exactly once."""

    __slots__ = ("id", "acquired_at", "_released")

    def __init__(self, permit_id: int):
        self.id = permit_id
        self.acquired_at = time.monotonic()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def __repr__(self) -> str:
        return f"Permit(id={self.id}, released={self._released})"


class ConcurrencyLimiter:
    """Counting admission control with non-blocking acquire."""

    def __init__(self, max_concurrent: int, metrics: Optional[MetricsCollector] = None):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._max = max_concurrent
        self._in_flight = 0
        self._closed = False
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.metrics = metrics
        self.logger = get_logger("relay.limiter")

    @property
    def max_concurrent(self) -> int:
        return self._max

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self) -> Permit:
        """Take a permit, or raise LimiterRejection immediately."""
        with self._lock:
            if self._closed:
                reason = "shutting_down"
            elif self._in_flight >= self._max:
                reason = "overloaded"
            else:
                self._in_flight += 1
                permit = Permit(next(self._ids))
                in_flight = self._in_flight
                reason = None

        if reason is not None:
            self.logger.warning(
                "Admission rejected",
                reason=reason,
                in_flight=self._in_flight,
                limit=self._max
            )
            if self.metrics:
                self.metrics.increment_counter("limiter_rejections_total", reason=reason)
            raise LimiterRejection(reason, limit=self._max)

        if self.metrics:
            self.metrics.set_gauge("inflight_dispatches", in_flight)
        return permit

    def release(self, permit: Permit) -> None:
        with self._lock:
            if permit._released:
                raise RuntimeError(f"{permit!r} released twice")
            permit._released = True
            self._in_flight -= 1
            in_flight = self._in_flight

        if self.metrics:
            self.metrics.set_gauge("inflight_dispatches", in_flight)

    @contextmanager
    def admit(self) -> Iterator[Permit]:
        """Acquire for the duration of the block; release on every exit path."""
        permit = self.acquire()
        try:
            yield permit
        finally:
            self.release(permit)

    def close(self) -> None:
        """Stop admitting new work. In-flight permits stay valid."""
        with self._lock:
            self._closed = True
        self.logger.info("Limiter closed to new work", in_flight=self._in_flight)

    async def wait_idle(self, timeout: Optional[float] = None, poll_interval: float = 0.05) -> bool:
        """Wait until nothing is in flight. Returns False if the timeout elapsed first."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._in_flight > 0:
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_interval)
        return True
