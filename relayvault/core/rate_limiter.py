import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Tuple, TypeVar

from relayvault.settings import parse_limit

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Clock drift tolerance so a fake clock advanced by exactly the computed wait
# is treated as "enough".
_EPSILON = 1e-9


class RateLimiter:
    """Rolling-window limiter with a minimum spacing between operations.

    At most ``max_operations`` may start within any ``window_seconds`` span,
    and consecutive starts are at least ``min_interval_seconds`` apart.
    Callers queue in ``acquire`` rather than being rejected.
    """

    def __init__(
        self,
        max_operations: int,
        window_seconds: float,
        min_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_operations < 1:
            raise ValueError("max_operations must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must not be negative")
        self.max_operations = max_operations
        self.window_seconds = window_seconds
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._last_operation: float = float("-inf")
        self._lock = asyncio.Lock()

    @classmethod
    def from_limit(cls, limit: str, min_interval_seconds: float = 0.0, **kwargs) -> "RateLimiter":
        """Build from a ``"count/seconds"`` string such as ``"10/1"``."""
        count, seconds = parse_limit(limit)
        return cls(count, seconds, min_interval_seconds, **kwargs)

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff + _EPSILON:
            self._timestamps.popleft()

    def try_acquire(self) -> Tuple[bool, float]:
        """Take a slot if one is free now.

        Returns:
            (allowed, wait_seconds) where ``wait_seconds`` is how long until a
            slot could be free when not allowed.
        """
        now = self._clock()
        self._prune(now)

        wait = 0.0
        if len(self._timestamps) >= self.max_operations:
            wait = self._timestamps[0] + self.window_seconds - now
        spacing = self._last_operation + self.min_interval_seconds - now
        wait = max(wait, spacing)

        if wait > _EPSILON:
            return False, wait

        self._timestamps.append(now)
        self._last_operation = now
        return True, 0.0

    async def acquire(self) -> None:
        """Wait until an operation may start, then record it."""
        async with self._lock:
            while True:
                allowed, wait = self.try_acquire()
                if allowed:
                    return
                logger.debug(f"Rate limited, waiting {wait:.3f}s")
                await self._sleep(wait)

    @property
    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._timestamps)

    def reset(self) -> None:
        self._timestamps.clear()
        self._last_operation = float("-inf")


def with_rate_limit(operation: Callable[[], Awaitable[T]], limiter: RateLimiter) -> Callable[[], Awaitable[T]]:
    """Wrap ``operation`` so every invocation first acquires ``limiter``."""

    async def limited() -> T:
        await limiter.acquire()
        return await operation()

    return limited
