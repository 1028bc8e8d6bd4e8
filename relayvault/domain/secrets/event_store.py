"""Per-session store of envelopes seen on relays.

One store is created per session and handed to the SecretManager; nothing
here is process-wide. Envelopes are de-duplicated by id, and decryption
outcomes are remembered so a refresh only decrypts what is new.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

from relayvault.errors import VaultError
from .models import NostrEvent, UnwrapResult

logger = logging.getLogger(__name__)


class EventStore:
    def __init__(self):
        self._events: Dict[str, NostrEvent] = {}
        self._unwrapped: Dict[str, UnwrapResult] = {}
        self._undecryptable: Set[str] = set()
        self._closed = False

    def _ensure_open(self) -> None:
        if self._closed:
            raise VaultError("Event store is closed", "STORE_CLOSED")

    def add(self, event: NostrEvent) -> bool:
        """Add an envelope. Returns False if it was already known."""
        self._ensure_open()
        if event.id in self._events:
            return False
        self._events[event.id] = event
        return True

    def add_many(self, events: Iterable[NostrEvent]) -> int:
        return sum(1 for event in events if self.add(event))

    def get(self, event_id: str) -> Optional[NostrEvent]:
        return self._events.get(event_id)

    def events(self) -> List[NostrEvent]:
        """Snapshot of all envelopes, oldest (by envelope timestamp) first."""
        return sorted(self._events.values(), key=lambda e: (e.created_at, e.id))

    def pending(self) -> List[NostrEvent]:
        """Envelopes with no recorded decryption outcome yet."""
        return [
            e for e in self.events()
            if e.id not in self._unwrapped and e.id not in self._undecryptable
        ]

    def record_unwrapped(self, result: UnwrapResult) -> None:
        self._ensure_open()
        self._unwrapped[result.event_id] = result

    def record_undecryptable(self, event_id: str) -> None:
        self._ensure_open()
        self._undecryptable.add(event_id)

    def unwrapped(self) -> List[UnwrapResult]:
        return list(self._unwrapped.values())

    @property
    def undecryptable_count(self) -> int:
        return len(self._undecryptable)

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    def clear(self) -> None:
        self._events.clear()
        self._unwrapped.clear()
        self._undecryptable.clear()

    def close(self) -> None:
        """Drop everything, including decrypted bundles held in memory."""
        self.clear()
        self._closed = True
        logger.debug("Event store closed")

    @property
    def closed(self) -> bool:
        return self._closed
