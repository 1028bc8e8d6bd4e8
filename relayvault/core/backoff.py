"""Retry with banded exponential backoff for relay operations.

Retries are driven by tenacity. The wait strategy is "banded" jitter: the
delay before retry ``n`` is drawn uniformly from ``[high(n-1), high(n)]``
where ``high(n) = min(max_delay, initial_delay * multiplier**(n-1))``. The
first band is ``[initial_delay/2, initial_delay]``. Bands are adjacent, so
successive delays never decrease and never exceed ``max_delay``.
"""
import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from relayvault.errors import ChannelClosedError, PermanentRelayError, TransientRelayError, VaultError
from relayvault.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Relay rejections that will not go away by asking again.
PERMANENT_ERROR_PATTERNS = (
    "invalid signature",
    "invalid event",
    "blocked",
    "banned",
    "forbidden",
    "unauthorized",
    "not found",
    "invalid:",
    "restricted:",
)

# Status codes only count as whole numbers ("HTTP 403", not "after 1401ms").
PERMANENT_STATUS_CODES = re.compile(r"(?<!\d)(?:401|403|404)(?!\d)")


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int
    initial_delay: float
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay <= 0 or self.max_delay < self.initial_delay:
            raise ValueError("Delays must satisfy 0 < initial_delay <= max_delay")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    def ceiling(self, retry_number: int) -> float:
        return min(self.max_delay, self.initial_delay * self.multiplier ** (retry_number - 1))

    def band(self, retry_number: int) -> Tuple[float, float]:
        """Delay range before retry ``retry_number`` (1-based)."""
        high = self.ceiling(retry_number)
        low = self.initial_delay / 2 if retry_number <= 1 else self.ceiling(retry_number - 1)
        return low, high


DEFAULT_BACKOFF = BackoffPolicy(max_attempts=5, initial_delay=1.0, multiplier=2.0, max_delay=30.0)
# Publish fails fast.
PUBLISH_BACKOFF = BackoffPolicy(max_attempts=3, initial_delay=0.5, multiplier=2.0, max_delay=5.0)
# Queries can afford to wait.
QUERY_BACKOFF = BackoffPolicy(max_attempts=5, initial_delay=1.0, multiplier=2.0, max_delay=60.0)


def policies_from_settings(settings: Settings) -> Tuple[BackoffPolicy, BackoffPolicy]:
    """(publish, query) policies from configuration."""
    publish = BackoffPolicy(
        max_attempts=settings.publish_max_attempts,
        initial_delay=settings.publish_initial_delay_ms / 1000,
        max_delay=settings.publish_max_delay_ms / 1000,
    )
    query = BackoffPolicy(
        max_attempts=settings.query_max_attempts,
        initial_delay=settings.query_initial_delay_ms / 1000,
        max_delay=settings.query_max_delay_ms / 1000,
    )
    return publish, query


class wait_banded_jitter(wait_base):
    """tenacity wait strategy implementing the banded jitter above."""

    def __init__(self, policy: BackoffPolicy, rng: Optional[random.Random] = None):
        self.policy = policy
        self.rng = rng or random.Random()

    def __call__(self, retry_state) -> float:
        low, high = self.policy.band(retry_state.attempt_number)
        return self.rng.uniform(low, high)


def is_permanent_error(error: BaseException) -> bool:
    if isinstance(error, PermanentRelayError):
        return True
    message = str(error).lower()
    if PERMANENT_STATUS_CODES.search(message):
        return True
    return any(pattern in message for pattern in PERMANENT_ERROR_PATTERNS)


def is_retryable(error: BaseException) -> bool:
    """Transient failures are retried; cancellation and closure never are."""
    if isinstance(error, (asyncio.CancelledError, ChannelClosedError)):
        return False
    if isinstance(error, VaultError) and not isinstance(error, TransientRelayError):
        return False
    return not is_permanent_error(error)


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy = DEFAULT_BACKOFF,
    operation_name: str = "relay",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Raises:
        PermanentRelayError: the failure matched a permanent pattern (one attempt only).
        TransientRelayError: every attempt failed transiently.
        ChannelClosedError, asyncio.CancelledError: passed through untouched.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_banded_jitter(policy, rng),
        retry=retry_if_exception(is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )
    try:
        return await retrying(operation)
    except VaultError:
        raise
    except Exception as e:
        attempts = retrying.statistics.get("attempt_number", 1)
        if is_permanent_error(e):
            logger.error(f"{operation_name} rejected permanently: {e}")
            raise PermanentRelayError(str(e), operation_name, e) from e
        logger.error(f"{operation_name} failed after {attempts} attempts: {e}")
        raise TransientRelayError(
            f"{operation_name} failed after {attempts} attempts: {e}", operation_name, e
        ) from e
