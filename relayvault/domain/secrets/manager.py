"""Secret manager facade.

Ties the onion codec, the relay channel, the per-session event store and
the resolver together. Writes wrap and publish one Envelope; reads pull
every Envelope addressed to the owner, decrypt what is new, and resolve.
"""
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Set

from relayvault.errors import DecryptionError
from .address import create_address, extract_environments, extract_projects, require_address
from .bundles import parse_bundle
from .event_store import EventStore
from .events import now_seconds
from .gift_wrap import (
    create_deletion_request,
    create_tombstone,
    get_secrets_filter,
    is_secrets_envelope,
    unwrap_gift_wrap,
    wrap_secrets,
)
from .identity import OwnerIdentity
from .models import TAG_ADDRESS, GiftWrapResult, NostrEvent, SecretBundle, UnwrapResult
from .ports import EventDict
from .resolver import collect_addresses, resolve_address, resolve_environments, resolve_latest, resolve_record

if TYPE_CHECKING:
    from relayvault.core.channel import ResilientChannel

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[str, SecretBundle], Awaitable[None]]


class SecretManager:
    def __init__(self, channel: "ResilientChannel", identity: OwnerIdentity, store: Optional[EventStore] = None):
        self.channel = channel
        self.identity = identity
        self.store = store if store is not None else EventStore()

    async def _owner(self) -> str:
        return await self.identity.get_public_key()

    # Write path

    def _remember(self, result: GiftWrapResult) -> None:
        # Own writes are readable without a round trip through the relay.
        rumor = result.rumor
        self.store.add(result.event)
        self.store.record_unwrapped(UnwrapResult(
            secrets=parse_bundle(rumor.content),
            address=rumor.tag_value(TAG_ADDRESS),
            created_at=rumor.created_at,
            pubkey=rumor.pubkey,
            rumor_id=rumor.id,
            event_id=result.event.id,
        ))

    def _next_timestamp(self, address: str) -> int:
        # Writes from one session to one address get strictly increasing timestamps.
        latest = resolve_record(self.store.unwrapped(), address)
        now = now_seconds()
        if latest is None or latest.created_at < now:
            return now
        return latest.created_at + 1

    async def _publish_wrapped(self, result: GiftWrapResult) -> NostrEvent:
        await self.channel.publish(result.event)
        self._remember(result)
        return result.event

    async def publish_secrets(self, bundle: SecretBundle, address: str) -> NostrEvent:
        """Replace the whole bundle stored at ``address``.

        Raises ValidationError before any signer or relay call if the bundle
        or address is malformed.
        """
        result = await wrap_secrets(bundle, address, self.identity, now=self._next_timestamp(address))
        event = await self._publish_wrapped(result)
        logger.info(f"Published secrets envelope {event.id} for {address}")
        return event

    async def delete_environment(self, address: str) -> NostrEvent:
        """Publish a Tombstone: the address resolves to ``{}`` from now on."""
        result = await create_tombstone(address, self.identity, now=self._next_timestamp(address))
        event = await self._publish_wrapped(result)
        logger.info(f"Published tombstone {event.id} for {address}")
        return event

    async def request_deletion(self, event_ids: List[str], reason: str = "") -> NostrEvent:
        """Ask relays to drop old Envelopes. Advisory; resolution ignores it."""
        event = await create_deletion_request(event_ids, self.identity, reason)
        await self.channel.publish(event)
        return event

    # Read path

    def _ingest(self, raw: EventDict) -> Optional[NostrEvent]:
        try:
            event = NostrEvent.model_validate(raw)
        except ValueError:
            logger.debug(f"Skipping malformed event {raw.get('id') if isinstance(raw, dict) else None}")
            return None
        if not is_secrets_envelope(event):
            return None
        self.store.add(event)
        return event

    async def _decrypt(self, event: NostrEvent, owner: str) -> Optional[UnwrapResult]:
        try:
            result = await unwrap_gift_wrap(event, self.identity)
        except DecryptionError:
            logger.debug(f"Skipping undecryptable envelope {event.id}")
            self.store.record_undecryptable(event.id)
            return None
        if result.pubkey != owner:
            # Anyone can wrap a record to us; only our own writes count.
            logger.debug(f"Skipping envelope {event.id} from foreign author")
            self.store.record_undecryptable(event.id)
            return None
        self.store.record_unwrapped(result)
        return result

    async def refresh(self, since: Optional[int] = None) -> int:
        """Pull Envelopes from relays and decrypt new ones. Returns the number of new records.

        SignerError from a delegated identity propagates; the envelope stays
        pending and is retried on the next refresh.
        """
        owner = await self._owner()
        for raw in await self.channel.query(get_secrets_filter(owner, since)):
            self._ingest(raw)

        added = 0
        for event in self.store.pending():
            if await self._decrypt(event, owner) is not None:
                added += 1
        if added:
            logger.debug(f"Decrypted {added} new records ({self.store.undecryptable_count} skipped so far)")
        return added

    async def fetch_secrets(self, address: str) -> Optional[SecretBundle]:
        """Current bundle at ``address``; ``{}`` after a tombstone, None if never written."""
        require_address(address)
        await self.refresh()
        return resolve_address(self.store.unwrapped(), address, author=await self._owner())

    async def fetch_all_environments(self, project_id: str, environment_slugs: List[str]) -> Dict[str, SecretBundle]:
        for slug in environment_slugs:
            create_address(project_id, slug)
        await self.refresh()
        return resolve_environments(
            self.store.unwrapped(), project_id, environment_slugs, author=await self._owner()
        )

    async def fetch_all_secrets(self) -> Dict[str, SecretBundle]:
        """Every address seen, mapped to its current bundle (``{}`` if tombstoned)."""
        await self.refresh()
        latest = resolve_latest(self.store.unwrapped(), author=await self._owner())
        return {address: dict(record.secrets) for (_, address), record in latest.items()}

    async def list_addresses(self, include_deleted: bool = False) -> Set[str]:
        """Addresses with a live bundle; tombstoned ones only if ``include_deleted``."""
        await self.refresh()
        owner = await self._owner()
        records = self.store.unwrapped()
        addresses = collect_addresses(records, author=owner)
        if include_deleted:
            return addresses
        return {a for a in addresses if not resolve_record(records, a, author=owner).is_tombstone}

    async def list_projects(self) -> List[str]:
        return extract_projects(await self.list_addresses())

    async def list_environments(self, project_id: str) -> List[str]:
        return extract_environments(await self.list_addresses(), project_id)

    # Live updates

    async def subscribe(self, on_update: UpdateCallback) -> Callable[[], None]:
        """Call ``on_update(address, bundle)`` whenever a newer record for an address arrives."""
        owner = await self._owner()

        async def handle(raw: EventDict) -> None:
            if raw.get("id") in self.store:
                return
            event = self._ingest(raw)
            if event is None:
                return
            result = await self._decrypt(event, owner)
            if result is None:
                return
            winner = resolve_record(self.store.unwrapped(), result.address, author=owner)
            if winner is not None and winner.event_id == result.event_id:
                await on_update(result.address, dict(result.secrets))

        return self.channel.subscribe(get_secrets_filter(owner), handle)

    def close(self) -> None:
        self.channel.close()
        self.store.close()
