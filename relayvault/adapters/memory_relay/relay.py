"""In-memory relay implementing the transport protocol.

Used by tests and the smoke script. Behaves like a permissive relay: it
checks ids and signatures, de-duplicates, and serves NIP-01 filters.
"""
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Tuple

from relayvault.domain.secrets.events import verify_event
from relayvault.domain.secrets.models import KIND_DELETION, TAG_EVENT, TAG_RECIPIENT, NostrEvent
from relayvault.domain.secrets.ports import EventCallback, EventDict, RelayFilter
from relayvault.errors import PermanentRelayError

logger = logging.getLogger(__name__)


def matches_filter(event: NostrEvent, relay_filter: RelayFilter) -> bool:
    """NIP-01 filter match, excluding ``limit``."""
    ids = relay_filter.get("ids")
    if ids is not None and not any(event.id.startswith(prefix) for prefix in ids):
        return False
    kinds = relay_filter.get("kinds")
    if kinds is not None and event.kind not in kinds:
        return False
    authors = relay_filter.get("authors")
    if authors is not None and not any(event.pubkey.startswith(prefix) for prefix in authors):
        return False
    since = relay_filter.get("since")
    if since is not None and event.created_at < since:
        return False
    until = relay_filter.get("until")
    if until is not None and event.created_at > until:
        return False

    for key, values in relay_filter.items():
        if not key.startswith("#") or len(key) != 2:
            continue
        name = key[1]
        if not any(len(t) >= 2 and t[0] == name and t[1] in values for t in event.tags):
            return False
    return True


class MemoryRelay:
    def __init__(self, verify_signatures: bool = True, honor_deletions: bool = True):
        self.verify_signatures = verify_signatures
        self.honor_deletions = honor_deletions
        self._events: Dict[str, NostrEvent] = {}
        self._subscribers: Dict[int, Tuple[RelayFilter, EventCallback]] = {}
        self._next_subscription = 0
        self._failures: Deque[BaseException] = deque()
        self.publish_calls = 0
        self.query_calls = 0

    def inject_failures(self, *errors: BaseException) -> None:
        """Queue errors raised by the next publish/query calls, one per call."""
        self._failures.extend(errors)

    def _maybe_fail(self) -> None:
        if self._failures:
            raise self._failures.popleft()

    def _validate(self, event: EventDict) -> NostrEvent:
        try:
            parsed = NostrEvent.model_validate(event)
        except ValueError:
            raise PermanentRelayError("invalid: malformed event") from None
        if self.verify_signatures and not verify_event(parsed):
            raise PermanentRelayError("invalid: bad signature")
        return parsed

    def _apply_deletion(self, deletion: NostrEvent) -> None:
        for tag in deletion.tags:
            if len(tag) < 2 or tag[0] != TAG_EVENT:
                continue
            target = self._events.get(tag[1])
            if target is None:
                continue
            # Gift wraps are signed by throwaway keys; the recipient may delete them.
            if target.pubkey == deletion.pubkey or target.has_tag(TAG_RECIPIENT, deletion.pubkey):
                del self._events[target.id]
                logger.debug(f"Deleted event {target.id} on request {deletion.id}")

    async def publish(self, event: EventDict) -> None:
        self.publish_calls += 1
        self._maybe_fail()
        parsed = self._validate(event)
        if parsed.id in self._events:
            return
        self._events[parsed.id] = parsed
        if self.honor_deletions and parsed.kind == KIND_DELETION:
            self._apply_deletion(parsed)

        for relay_filter, callback in list(self._subscribers.values()):
            if matches_filter(parsed, relay_filter):
                try:
                    await callback(parsed.to_dict())
                except Exception:
                    logger.exception(f"Subscriber failed on event {parsed.id}")

    async def query(self, relay_filter: RelayFilter) -> List[EventDict]:
        self.query_calls += 1
        self._maybe_fail()
        matched = [e for e in self._events.values() if matches_filter(e, relay_filter)]
        matched.sort(key=lambda e: (-e.created_at, e.id))
        limit = relay_filter.get("limit")
        if limit is not None:
            matched = matched[:limit]
        return [e.to_dict() for e in matched]

    def subscribe(self, relay_filter: RelayFilter, on_event: EventCallback) -> Callable[[], None]:
        subscription_id = self._next_subscription
        self._next_subscription += 1
        self._subscribers[subscription_id] = (dict(relay_filter), on_event)

        def cancel() -> None:
            self._subscribers.pop(subscription_id, None)

        return cancel

    def add_raw(self, event: Any) -> None:
        """Store an event without validation (for simulating hostile relays)."""
        parsed = event if isinstance(event, NostrEvent) else NostrEvent.model_construct(**event)
        self._events[parsed.id] = parsed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def __len__(self) -> int:
        return len(self._events)
