"""
Adaptive rate limiter with automatic backoff on errors.

For the Polymarket CLOB API. Default: 10 req/sec with a burst of 5 and
automatic reduction on 429/rate limit errors.
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class AdaptiveRateLimiter:
    """
    Token bucket rate limiter with adaptive backoff.

    Callers await acquire() before every exchange request. The rate drops
    when rate-limit errors are reported and gradually recovers back to the
    max rate when requests succeed.

    State is guarded by a threading lock so report_* may be called from
    worker threads running blocking client calls.
    """

    def __init__(
        self,
        max_rate: float = 10.0,
        min_rate: float = 1.0,
        burst: int = 5,
        backoff_factor: float = 0.5,
        recovery_factor: float = 1.1,
        recovery_interval: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize adaptive rate limiter.

        Args:
            max_rate: Maximum requests per second
            min_rate: Minimum rate to back off to (floor)
            burst: Maximum burst size, i.e. requests allowed back to back
            backoff_factor: Multiply rate by this on error (e.g., 0.5 = halve)
            recovery_factor: Multiply rate by this on recovery (e.g., 1.1 = +10%)
            recovery_interval: Seconds of success before attempting recovery
            clock: Monotonic clock, injectable for tests
        """
        if max_rate <= 0:
            raise ValueError(f"max_rate must be positive, got {max_rate}")
        if burst < 1:
            raise ValueError(f"burst must be at least 1, got {burst}")

        self.max_rate = max_rate
        self.min_rate = min(min_rate, max_rate)
        self.current_rate = max_rate
        self.burst = burst
        self.backoff_factor = backoff_factor
        self.recovery_factor = recovery_factor
        self.recovery_interval = recovery_interval
        self._clock = clock

        self.tokens = float(burst)
        self.last_update = clock()
        self.last_error_time: Optional[float] = None
        self.last_success_time: Optional[float] = None
        self.consecutive_successes = 0
        self.lock = threading.Lock()

    def try_acquire(self) -> bool:
        """Take a token if one is available right now."""
        with self.lock:
            now = self._clock()
            self._maybe_recover(now)

            # Refill tokens based on time elapsed
            elapsed = now - self.last_update
            self.tokens = min(self.burst, self.tokens + elapsed * self.current_rate)
            self.last_update = now

            if self.tokens >= 1:
                self.tokens -= 1
                return True
            return False

    async def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Acquire a token, suspending the caller if necessary.

        Args:
            timeout: Maximum time to wait (None = wait forever)

        Returns:
            True if token acquired, False if timeout
        """
        deadline = self._clock() + timeout if timeout is not None else float("inf")

        while True:
            if self.try_acquire():
                return True

            now = self._clock()
            if now >= deadline:
                logger.warning(f"Rate limiter acquire timed out after {timeout}s")
                return False

            # Wait for next token (avoid busy waiting)
            with self.lock:
                missing = 1.0 - self.tokens
                rate = self.current_rate
            wait_time = missing / rate if rate > 0 else 0.1
            await asyncio.sleep(max(0.0, min(wait_time, 0.1, deadline - now)))

    def report_success(self) -> None:
        """Report a successful request (for rate recovery)."""
        with self.lock:
            self.last_success_time = self._clock()
            self.consecutive_successes += 1

    def report_error(self, is_rate_limit: bool = False) -> None:
        """
        Report an error. If it's a rate limit error, back off immediately.

        Args:
            is_rate_limit: True if this was a 429 or rate limit error
        """
        with self.lock:
            now = self._clock()
            self.last_error_time = now
            self.consecutive_successes = 0

            if is_rate_limit:
                old_rate = self.current_rate
                self.current_rate = max(
                    self.min_rate,
                    self.current_rate * self.backoff_factor
                )
                if self.current_rate != old_rate:
                    logger.warning(
                        f"Rate limit hit! Reducing rate: {old_rate:.1f} -> {self.current_rate:.1f} req/sec"
                    )

    def _maybe_recover(self, now: float) -> None:
        """Try to recover rate if we've had sustained success."""
        if self.current_rate >= self.max_rate:
            return

        if self.last_success_time is None:
            return

        # Only recover after recovery_interval seconds without errors
        time_since_error = now - (self.last_error_time or 0)
        if time_since_error < self.recovery_interval:
            return

        old_rate = self.current_rate
        self.current_rate = min(
            self.max_rate,
            self.current_rate * self.recovery_factor
        )

        if self.current_rate != old_rate:
            logger.info(
                f"Rate recovering: {old_rate:.1f} -> {self.current_rate:.1f} req/sec"
            )

    @property
    def rate(self) -> float:
        return self.current_rate

    def get_status(self) -> dict:
        """Get current limiter status for debugging."""
        with self.lock:
            return {
                "current_rate": self.current_rate,
                "max_rate": self.max_rate,
                "min_rate": self.min_rate,
                "tokens": self.tokens,
                "consecutive_successes": self.consecutive_successes,
            }


def get_clob_rate_limiter(max_rate: float = 10.0, burst: int = 5) -> AdaptiveRateLimiter:
    """
    Get a rate limiter configured for the Polymarket CLOB API.

    Args:
        max_rate: Requests per second budget for this process
        burst: Requests allowed back to back before throttling

    Returns:
        AdaptiveRateLimiter configured for the CLOB
    """
    min_rate = max(0.5, max_rate / 10)

    logger.info(
        f"CLOB rate limiter: {max_rate:.1f} req/sec (min={min_rate:.1f}, burst={burst})"
    )

    return AdaptiveRateLimiter(
        max_rate=max_rate,
        min_rate=min_rate,
        burst=burst,
    )
