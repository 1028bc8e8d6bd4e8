"""Rate-limited, retrying wrapper around a relay transport."""
import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Optional, TypeVar, Union

from relayvault.core.backoff import (
    PUBLISH_BACKOFF,
    QUERY_BACKOFF,
    BackoffPolicy,
    policies_from_settings,
    with_backoff,
)
from relayvault.core.rate_limiter import RateLimiter, with_rate_limit
from relayvault.domain.secrets.models import NostrEvent
from relayvault.domain.secrets.ports import (
    EventCallback,
    EventDict,
    RelayFilter,
    RelayTransport,
    SubscribableTransport,
)
from relayvault.errors import ChannelClosedError, VaultError
from relayvault.settings import Settings, parse_limit
from relayvault.settings import settings as default_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def resilient(
    operation: Callable[[], Awaitable[T]],
    limiter: RateLimiter,
    policy: BackoffPolicy,
    operation_name: str = "relay",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> Awaitable[T]:
    """Every attempt takes a rate-limit slot; failed attempts back off."""
    return with_backoff(with_rate_limit(operation, limiter), policy, operation_name, sleep=sleep, rng=rng)


class ResilientChannel:
    """Publishes and queries through a transport with rate limiting and retries.

    ``close()`` wakes any pending backoff or rate-limit sleep, which then
    raises ChannelClosedError instead of retrying.
    """

    def __init__(
        self,
        transport: RelayTransport,
        publish_limiter: Optional[RateLimiter] = None,
        query_limiter: Optional[RateLimiter] = None,
        publish_policy: BackoffPolicy = PUBLISH_BACKOFF,
        query_policy: BackoffPolicy = QUERY_BACKOFF,
        query_timeout: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ):
        self.transport = transport
        min_interval = default_settings.min_interval_ms / 1000
        self.publish_limiter = publish_limiter or RateLimiter(
            *parse_limit(default_settings.publish_rate_limit), min_interval, sleep=self._sleep
        )
        self.query_limiter = query_limiter or RateLimiter(
            *parse_limit(default_settings.query_rate_limit), min_interval, sleep=self._sleep
        )
        self.publish_policy = publish_policy
        self.query_policy = query_policy
        self.query_timeout = default_settings.query_timeout_seconds if query_timeout is None else query_timeout
        self._rng = rng
        self._closed = asyncio.Event()
        self._subscriptions: List[Callable[[], None]] = []

    @classmethod
    def from_settings(cls, transport: RelayTransport, settings: Settings) -> "ResilientChannel":
        publish_policy, query_policy = policies_from_settings(settings)
        channel = cls(
            transport,
            publish_policy=publish_policy,
            query_policy=query_policy,
            query_timeout=settings.query_timeout_seconds,
        )
        min_interval = settings.min_interval_ms / 1000
        channel.publish_limiter = RateLimiter.from_limit(
            settings.publish_rate_limit, min_interval, sleep=channel._sleep
        )
        channel.query_limiter = RateLimiter.from_limit(
            settings.query_rate_limit, min_interval, sleep=channel._sleep
        )
        return channel

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _ensure_open(self) -> None:
        if self._closed.is_set():
            raise ChannelClosedError()

    async def _sleep(self, delay: float) -> None:
        """Sleep that is cut short by ``close()``."""
        self._ensure_open()
        try:
            await asyncio.wait_for(self._closed.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise ChannelClosedError("Channel closed while waiting to retry")

    async def publish(self, event: Union[NostrEvent, EventDict]) -> None:
        self._ensure_open()
        payload = event.to_dict() if isinstance(event, NostrEvent) else dict(event)

        async def attempt() -> None:
            self._ensure_open()
            await self.transport.publish(payload)

        await resilient(attempt, self.publish_limiter, self.publish_policy, "publish", self._sleep, self._rng)
        logger.debug(f"Published event {payload.get('id')}")

    async def query(self, relay_filter: RelayFilter) -> List[EventDict]:
        self._ensure_open()

        async def attempt() -> List[EventDict]:
            self._ensure_open()
            return await asyncio.wait_for(self.transport.query(relay_filter), timeout=self.query_timeout)

        events = await resilient(attempt, self.query_limiter, self.query_policy, "query", self._sleep, self._rng)
        return list(events)

    def subscribe(self, relay_filter: RelayFilter, on_event: EventCallback) -> Callable[[], None]:
        """Live events matching the filter. Returns a function that unsubscribes."""
        self._ensure_open()
        if not isinstance(self.transport, SubscribableTransport):
            raise VaultError("Transport does not support subscriptions", "SUBSCRIBE_UNSUPPORTED")

        cancel = self.transport.subscribe(relay_filter, on_event)
        self._subscriptions.append(cancel)

        def unsubscribe() -> None:
            if cancel in self._subscriptions:
                self._subscriptions.remove(cancel)
                cancel()

        return unsubscribe

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for cancel in self._subscriptions:
            cancel()
        self._subscriptions.clear()
        logger.info("Relay channel closed")


def build_channel(transport: RelayTransport, settings: Optional[Settings] = None) -> ResilientChannel:
    return ResilientChannel.from_settings(transport, settings or default_settings)
