"""Process-wide admission token bucket for outbound usage API requests."""

from __future__ import annotations

from collections import deque
import logging
import threading
import time
from typing import Callable

from .errors import ThrottleTimeout

LOGGER = logging.getLogger(__name__)

DEFAULT_ACQUIRE_TIMEOUT_SECONDS = 60.0


class TokenBucket:
    """Continuously refilling token bucket shared by every caller in the process.

    Callers are admitted in arrival order: each `acquire()` joins a waiter queue
    and only the head of the queue may check and decrement the bucket.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate_per_second: float,
        timeout_seconds: float = DEFAULT_ACQUIRE_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if refill_rate_per_second <= 0:
            raise ValueError("refill_rate_per_second must be positive")
        if timeout_seconds < 0:
            raise ValueError("timeout_seconds must be non-negative")
        self._capacity = float(capacity)
        self._rate = float(refill_rate_per_second)
        self._timeout = float(timeout_seconds)
        self._clock = clock
        self._tokens = self._capacity
        self._last_refill_at = clock()
        self._condition = threading.Condition()
        self._waiters: deque[object] = deque()

    @classmethod
    def per_minute(
        cls,
        rate_per_minute: float,
        burst: float,
        timeout_seconds: float = DEFAULT_ACQUIRE_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> TokenBucket:
        """Build a bucket from a per-minute steady rate and a burst capacity."""
        return cls(
            capacity=burst,
            refill_rate_per_second=rate_per_minute / 60.0,
            timeout_seconds=timeout_seconds,
            clock=clock,
        )

    @property
    def capacity(self) -> float:
        return self._capacity

    @property
    def refill_rate_per_second(self) -> float:
        return self._rate

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def available_tokens(self) -> float:
        """Return the current token count after refilling."""
        with self._condition:
            self._refill(self._clock())
            return self._tokens

    def acquire(self, timeout: float | None = None) -> float:
        """Block until one token is consumed and return the seconds spent waiting.

        Raises:
            ThrottleTimeout: If no token became available within the timeout.
        """
        budget = self._timeout if timeout is None else max(timeout, 0.0)
        started = self._clock()
        ticket = object()

        with self._condition:
            self._waiters.append(ticket)
            try:
                now = started
                while True:
                    remaining = budget - (now - started)
                    if self._waiters[0] is ticket:
                        self._refill(now)
                        if self._tokens >= 1:
                            self._tokens -= 1
                            waited = now - started
                            if waited > 0:
                                LOGGER.debug("Rate limiter admitted request after %.3fs.", waited)
                            return waited
                        wait = (1 - self._tokens) / self._rate
                    else:
                        wait = remaining

                    if remaining <= 0:
                        raise ThrottleTimeout(
                            f"Rate limiter could not admit a request within {budget:.2f}s "
                            f"(capacity={self._capacity:g}, rate={self._rate:g}/s)."
                        )
                    _ = self._condition.wait(min(wait, remaining))
                    now = self._clock()
            finally:
                self._waiters.remove(ticket)
                self._condition.notify_all()

    def reset(self) -> None:
        """Refill the bucket to capacity."""
        with self._condition:
            self._tokens = self._capacity
            self._last_refill_at = self._clock()
            self._condition.notify_all()

    def _refill(self, now: float) -> None:
        elapsed = max(now - self._last_refill_at, 0.0)
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
            self._last_refill_at = now
