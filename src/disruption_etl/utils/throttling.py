"""
Rate limiting for calls to upstream open-data APIs.

One limiter instance is shared by every caller that talks to the same
upstream service. The limiter keeps a single "time of last request"
watermark; reserving the next slot is done under a lock so concurrent
callers can never fire closer together than ``min_delay``.
"""

from __future__ import annotations

import time
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RateLimiterConfig:
    """Pacing and retry settings for a rate limiter."""
    min_delay_s: float = 1.0
    max_retries: int = 3
    backoff_multiplier: float = 2.0

    def __post_init__(self):
        if self.min_delay_s < 0:
            raise ValueError("min_delay_s must be >= 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("backoff_multiplier must be > 0")

    @classmethod
    def from_settings(cls, settings) -> "RateLimiterConfig":
        return cls(
            min_delay_s=settings.rate_limit_min_delay_ms / 1000.0,
            max_retries=settings.rate_limit_max_retries,
            backoff_multiplier=settings.backoff_multiplier,
        )


class RateLimiter(ABC):
    """
    Abstract base for rate limiters.

    Rate limiters control the rate at which requests are made,
    useful for respecting API rate limits.
    """

    @abstractmethod
    def execute(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` once it is safe to make another request."""
        pass

    @abstractmethod
    def execute_queued(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` after every previously queued call has settled."""
        pass


class MinDelayRateLimiter(RateLimiter):
    """
    Fixed minimum spacing between request starts, with exponential
    backoff retry and a single-lane FIFO queue.

    ``clock`` and ``sleep`` default to ``time.monotonic`` / ``time.sleep``
    and can be replaced in tests.
    """

    def __init__(
        self,
        config: Optional[RateLimiterConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or RateLimiterConfig()
        self._clock = clock
        self._sleep = sleep
        self._last_request: Optional[float] = None
        self._lock = threading.Lock()

        # Ticket queue for execute_queued
        self._queue = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0

    @property
    def last_request_time(self) -> Optional[float]:
        with self._lock:
            return self._last_request

    def _reserve_slot(self) -> float:
        """Claim the next request slot and return how long to wait for it."""
        with self._lock:
            now = self._clock()
            if self._last_request is None:
                start = now
            else:
                start = max(now, self._last_request + self.config.min_delay_s)
            self._last_request = start
        return start - now

    def wait(self) -> None:
        """Block until the reserved request slot is reached."""
        delay = self._reserve_slot()
        if delay > 0:
            self._sleep(delay)

    def backoff_delay(self, attempt: int) -> float:
        return self.config.min_delay_s * (self.config.backoff_multiplier ** attempt)

    def execute(self, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            self.wait()
            try:
                return fn()
            except Exception as e:
                if attempt >= self.config.max_retries:
                    logger.error(f"Rate limiter: giving up after {attempt} retries: {e}")
                    raise
                delay = self.backoff_delay(attempt)
                attempt += 1
                logger.warning(
                    f"Rate limiter: retry {attempt}/{self.config.max_retries} "
                    f"after {delay:.2f}s ({e})"
                )
                self._sleep(delay)

    def execute_queued(self, fn: Callable[[], T]) -> T:
        with self._queue:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._queue.wait()

        try:
            return self.execute(fn)
        finally:
            with self._queue:
                self._now_serving += 1
                self._queue.notify_all()


class NoOpRateLimiter(RateLimiter):
    """
    Rate limiter that does nothing (for testing/development).

    Useful when you want to disable rate limiting without changing code.
    """

    def execute(self, fn: Callable[[], T]) -> T:
        return fn()

    def execute_queued(self, fn: Callable[[], T]) -> T:
        return fn()
