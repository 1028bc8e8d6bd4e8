"""Secrets Domain Ports (Interfaces)."""
from typing import Any, Awaitable, Callable, Dict, List, Protocol, runtime_checkable

EventDict = Dict[str, Any]
RelayFilter = Dict[str, Any]
EventCallback = Callable[[EventDict], Awaitable[None]]


class RelayTransport(Protocol):
    """Connected publish/query primitive supplied by the caller.

    Errors are raised as exceptions; the message of a relay rejection
    (``"blocked: ..."``, ``"invalid: bad signature"``) is used to classify it.
    """

    async def publish(self, event: EventDict) -> None:
        """Publish one event. Raises on rejection or transport failure."""
        ...

    async def query(self, relay_filter: RelayFilter) -> List[EventDict]:
        """Return a finite batch of stored events matching the filter."""
        ...


@runtime_checkable
class SubscribableTransport(Protocol):
    """Transport that can also push live events."""

    def subscribe(self, relay_filter: RelayFilter, on_event: EventCallback) -> Callable[[], None]:
        """Register ``on_event`` for new matching events. Returns a function that cancels the subscription."""
        ...


class RemoteSigner(Protocol):
    """An external agent holding the owner's key (browser extension, remote bunker).

    Every call may suspend for a network round trip or user approval.
    """

    async def get_public_key(self) -> str:
        ...

    async def sign_event(self, event: EventDict) -> EventDict:
        """Sign an event template (``created_at``, ``kind``, ``tags``, ``content``)."""
        ...

    async def nip44_encrypt(self, public_key: str, plaintext: str) -> str:
        ...

    async def nip44_decrypt(self, public_key: str, ciphertext: str) -> str:
        ...
