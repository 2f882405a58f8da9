"""
Token bucket rate limiting for provider calls and sweep spacing.
"""

import time
from threading import RLock
from typing import Callable

import structlog

logger = structlog.get_logger()


class TokenBucket:
    """
    Token bucket: holds up to ``capacity`` tokens, refilled at ``fill_rate``
    tokens per second.

    ``try_consume`` never waits; ``acquire`` blocks until enough tokens exist.
    """

    def __init__(
        self,
        capacity: float,
        fill_rate: float,
        name: str = "bucket",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            capacity: Maximum burst size.
            fill_rate: Tokens added per second.
            name: Label used in log events.
            clock: Monotonic time source (injectable for tests).
            sleep: Blocking sleep (injectable for tests).
        """
        if capacity <= 0 or fill_rate <= 0:
            raise ValueError("capacity and fill_rate must be positive")
        self.capacity = float(capacity)
        self.fill_rate = float(fill_rate)
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_fill = clock()
        self._lock = RLock()

    @classmethod
    def spacing(cls, seconds: float, name: str = "spacing", **kwargs) -> "TokenBucket":
        """Bucket allowing one event per ``seconds`` with no burst."""
        return cls(capacity=1, fill_rate=1.0 / seconds, name=name, **kwargs)

    def _fill_bucket(self) -> None:
        now = self._clock()
        time_passed = now - self._last_fill
        self._tokens = min(self._tokens + time_passed * self.fill_rate, self.capacity)
        self._last_fill = now

    @property
    def tokens(self) -> float:
        with self._lock:
            self._fill_bucket()
            return self._tokens

    def try_consume(self, amount: float = 1) -> bool:
        """
        Take ``amount`` tokens if available.

        Returns:
            True if tokens were consumed, False otherwise.
        """
        with self._lock:
            self._fill_bucket()
            if self._tokens >= amount:
                self._tokens -= amount
                return True
            return False

    def acquire(self, amount: float = 1) -> float:
        """
        Block until ``amount`` tokens are available, then take them.

        Returns the total time spent waiting.
        """
        if amount > self.capacity:
            raise ValueError(f"cannot acquire {amount} tokens from a bucket of {self.capacity}")

        waited = 0.0
        while True:
            with self._lock:
                self._fill_bucket()
                if self._tokens >= amount:
                    self._tokens -= amount
                    break
                wait = (amount - self._tokens) / self.fill_rate
            logger.debug("rate_limit_wait", bucket=self.name, seconds=round(wait, 3))
            self._sleep(wait)
            waited += wait
        return waited
