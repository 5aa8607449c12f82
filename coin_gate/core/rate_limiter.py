"""
Global token bucket gating every outbound provider call.

One instance is shared by all accounts, so a burst from one account can
delay another. Waiters are served in arrival order.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from .errors import RateLimitTimeout

logger = logging.getLogger(__name__)

# Upper bound on a single sleep while queued behind another waiter
POLL_INTERVAL = 0.01

# Absorbs float drift in the refill arithmetic
EPSILON = 1e-9


class TokenBucket:
    """Token bucket refilling continuously at ``refill_rate`` tokens/second.

    Clock and sleep are injectable so tests can simulate time.
    """

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()
        self._waiters: Deque[object] = deque()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
            self._last_refill = now

    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def acquire(self, cost: int = 1, timeout: Optional[float] = None) -> None:
        """Block until ``cost`` tokens are taken.

        Args:
            cost: Tokens to take
            timeout: Seconds to wait before giving up; None waits forever

        Raises:
            ValueError: If cost can never be satisfied
            RateLimitTimeout: If the deadline passes first
        """
        if cost <= 0 or cost > self.capacity:
            raise ValueError(f"cost must be between 1 and {self.capacity}")
        deadline = None if timeout is None else self._clock() + timeout
        ticket = object()
        with self._lock:
            self._waiters.append(ticket)
        try:
            while True:
                with self._lock:
                    self._refill()
                    at_head = self._waiters[0] is ticket
                    if at_head and self._tokens + EPSILON >= cost:
                        self._tokens = max(0.0, self._tokens - cost)
                        return
                    if at_head:
                        wait = (cost - self._tokens) / self.refill_rate
                    else:
                        wait = POLL_INTERVAL

                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        logger.warning(f"Rate limiter wait exceeded {timeout}s")
                        raise RateLimitTimeout(
                            f"No provider capacity within {timeout}s; try again later"
                        )
                    wait = min(wait, remaining)
                self._sleep(wait)
        finally:
            with self._lock:
                self._waiters.remove(ticket)


# Process-wide limiter instance
_default_limiter: Optional[TokenBucket] = None
_default_limiter_guard = threading.Lock()


def get_rate_limiter(capacity: int = 5, refill_rate: float = 1.0) -> TokenBucket:
    """Get the shared rate limiter.

    The first call fixes capacity and rate; later arguments are ignored so
    every call site funnels through the same bucket.
    """
    global _default_limiter
    with _default_limiter_guard:
        if _default_limiter is None:
            _default_limiter = TokenBucket(capacity, refill_rate)
        return _default_limiter


def reset_rate_limiter() -> None:
    """Drop the shared limiter (tests and config reload)."""
    global _default_limiter
    with _default_limiter_guard:
        _default_limiter = None
