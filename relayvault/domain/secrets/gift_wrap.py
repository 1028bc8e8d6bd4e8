"""Three-layer onion encryption for secret bundles (NIP-59 gift wrap).

    Rumor     kind 30078, unsigned, tags [["d", address]], content = JSON bundle,
              created_at = real write time (authoritative)
    Seal      kind 13, signed by the owner, content = NIP-44(rumor) to self,
              created_at randomized into the last two days
    Envelope  kind 1059, signed by a single-use ephemeral key,
              content = NIP-44(seal) from the ephemeral key to the owner,
              tags [["p", owner], ["t", "redshift-secrets"]],
              created_at randomized independently

Only the Envelope is ever transmitted. Unwrapping fails closed: every failure
raises DecryptionError without saying which layer failed.
"""
import logging
from typing import Any, Dict, List, Optional, Union

from relayvault.errors import DecryptionError, SignerError, ValidationError
from .address import parse_address, require_address
from .bundles import parse_bundle, validate_bundle
from .events import (
    create_rumor,
    finalize_event,
    generate_private_key,
    get_public_key,
    now_seconds,
    random_past_timestamp,
    verify_event,
)
from .identity import DirectKeyIdentity, OwnerIdentity
from .models import (
    KIND_DELETION,
    KIND_GIFT_WRAP,
    KIND_SEAL,
    KIND_SECRET_BUNDLE,
    SECRETS_TYPE_TAG,
    TAG_ADDRESS,
    TAG_EVENT,
    TAG_RECIPIENT,
    TAG_TYPE,
    GiftWrapResult,
    NostrEvent,
    Rumor,
    SecretBundle,
    UnsignedEvent,
    UnwrapResult,
    compact_json,
)
from .nip44 import encrypt as nip44_encrypt
from .nip44 import get_conversation_key

logger = logging.getLogger(__name__)

EventLike = Union[NostrEvent, Dict[str, Any]]


def _build_rumor(bundle: SecretBundle, address: str, owner: str, now: int) -> Rumor:
    return create_rumor(UnsignedEvent(
        pubkey=owner,
        created_at=now,
        kind=KIND_SECRET_BUNDLE,
        tags=[[TAG_ADDRESS, address]],
        content=compact_json(bundle),
    ))


def _seal_template(encrypted_rumor: str, owner: str, now: int) -> UnsignedEvent:
    return UnsignedEvent(
        pubkey=owner,
        created_at=random_past_timestamp(now),
        kind=KIND_SEAL,
        tags=[],
        content=encrypted_rumor,
    )


def _build_envelope(seal: NostrEvent, owner: str, now: int) -> NostrEvent:
    # Fresh single-use key; never stored, never reused.
    ephemeral_key = generate_private_key()
    encrypted_seal = nip44_encrypt(seal.to_json(), get_conversation_key(ephemeral_key, owner))
    template = UnsignedEvent(
        pubkey=get_public_key(ephemeral_key),
        created_at=random_past_timestamp(now),
        kind=KIND_GIFT_WRAP,
        tags=[[TAG_RECIPIENT, owner], [TAG_TYPE, SECRETS_TYPE_TAG]],
        content=encrypted_seal,
    )
    return finalize_event(template, ephemeral_key)


def _prepare(bundle: Any, address: str) -> SecretBundle:
    validated = validate_bundle(bundle)
    require_address(address)
    return validated


async def wrap_secrets(
    bundle: SecretBundle,
    address: str,
    identity: OwnerIdentity,
    now: Optional[int] = None,
) -> GiftWrapResult:
    """Wrap ``bundle`` so only ``identity`` can read it.

    Layers are built strictly inner to outer. Raises ValidationError before
    touching the identity if the bundle or address is invalid.
    """
    validated = _prepare(bundle, address)
    now = now_seconds() if now is None else now
    owner = await identity.get_public_key()

    rumor = _build_rumor(validated, address, owner, now)
    encrypted_rumor = await identity.encrypt(owner, rumor.to_json())
    seal = await identity.sign_event(_seal_template(encrypted_rumor, owner, now))
    envelope = _build_envelope(seal, owner, now)
    logger.debug(f"Wrapped envelope {envelope.id} ({identity.kind.value})")

    return GiftWrapResult(event=envelope, rumor=rumor)


def wrap_secrets_sync(
    bundle: SecretBundle,
    address: str,
    identity: DirectKeyIdentity,
    now: Optional[int] = None,
) -> GiftWrapResult:
    """Synchronous wrap for local key material."""
    validated = _prepare(bundle, address)
    now = now_seconds() if now is None else now
    owner = identity.public_key

    rumor = _build_rumor(validated, address, owner, now)
    encrypted_rumor = identity.encrypt_sync(owner, rumor.to_json())
    seal = identity.sign_event_sync(_seal_template(encrypted_rumor, owner, now))
    envelope = _build_envelope(seal, owner, now)

    return GiftWrapResult(event=envelope, rumor=rumor)


async def create_tombstone(address: str, identity: OwnerIdentity, now: Optional[int] = None) -> GiftWrapResult:
    """An empty bundle: logically deletes every key at ``address``."""
    return await wrap_secrets({}, address, identity, now=now)


def _coerce_event(event: EventLike) -> NostrEvent:
    if isinstance(event, NostrEvent):
        return event
    return NostrEvent.model_validate(event)


def _open_envelope(envelope: NostrEvent) -> None:
    if envelope.kind != KIND_GIFT_WRAP or not verify_event(envelope):
        raise ValueError("Not a valid envelope")


def _open_seal(seal_json: str) -> NostrEvent:
    seal = NostrEvent.model_validate_json(seal_json)
    if seal.kind != KIND_SEAL or not verify_event(seal):
        raise ValueError("Not a valid seal")
    return seal


def _open_rumor(rumor_json: str, seal: NostrEvent, envelope: NostrEvent) -> UnwrapResult:
    rumor = Rumor.model_validate_json(rumor_json)
    if rumor.pubkey != seal.pubkey:
        raise ValueError("Seal and rumor authors differ")
    if rumor.kind != KIND_SECRET_BUNDLE:
        raise ValueError("Unexpected rumor kind")
    if create_rumor(rumor).id != rumor.id:
        raise ValueError("Rumor id does not match its content")

    address = rumor.tag_value(TAG_ADDRESS)
    if address is None or parse_address(address) is None:
        raise ValueError("Rumor has no valid address")

    return UnwrapResult(
        secrets=parse_bundle(rumor.content),
        address=address,
        created_at=rumor.created_at,
        pubkey=rumor.pubkey,
        rumor_id=rumor.id,
        event_id=envelope.id,
    )


async def unwrap_gift_wrap(event: EventLike, identity: OwnerIdentity) -> UnwrapResult:
    """Decrypt an Envelope down to its bundle.

    Raises DecryptionError for any failure. SignerError (timeouts included) from a
    delegated identity is passed through since it says nothing about the record.
    """
    event_id = event.id if isinstance(event, NostrEvent) else None
    try:
        envelope = _coerce_event(event)
        event_id = envelope.id
        _open_envelope(envelope)
        seal = _open_seal(await identity.decrypt(envelope.pubkey, envelope.content))
        rumor_json = await identity.decrypt(seal.pubkey, seal.content)
        return _open_rumor(rumor_json, seal, envelope)
    except SignerError:
        raise
    except Exception:
        raise DecryptionError(event_id=event_id) from None


def unwrap_gift_wrap_sync(event: EventLike, identity: DirectKeyIdentity) -> UnwrapResult:
    """Synchronous unwrap for local key material."""
    event_id = event.id if isinstance(event, NostrEvent) else None
    try:
        envelope = _coerce_event(event)
        event_id = envelope.id
        _open_envelope(envelope)
        seal = _open_seal(identity.decrypt_sync(envelope.pubkey, envelope.content))
        rumor_json = identity.decrypt_sync(seal.pubkey, seal.content)
        return _open_rumor(rumor_json, seal, envelope)
    except Exception:
        raise DecryptionError(event_id=event_id) from None


async def unwrap_secrets(event: EventLike, identity: OwnerIdentity) -> SecretBundle:
    result = await unwrap_gift_wrap(event, identity)
    return result.secrets


def is_secrets_envelope(event: EventLike) -> bool:
    """True for gift wraps carrying the secrets type tag. Does not decrypt."""
    if isinstance(event, NostrEvent):
        return event.kind == KIND_GIFT_WRAP and event.has_tag(TAG_TYPE, SECRETS_TYPE_TAG)
    tags = event.get("tags") or []
    return event.get("kind") == KIND_GIFT_WRAP and any(
        isinstance(t, list) and len(t) >= 2 and t[0] == TAG_TYPE and t[1] == SECRETS_TYPE_TAG
        for t in tags
    )


def get_secrets_filter(public_key: str, since: Optional[int] = None) -> Dict[str, Any]:
    """Relay filter selecting only this application's envelopes addressed to ``public_key``.

    ``since`` is compared against the randomized Envelope timestamp, so callers
    should subtract the two-day jitter window when polling incrementally.
    """
    relay_filter: Dict[str, Any] = {
        "kinds": [KIND_GIFT_WRAP],
        f"#{TAG_RECIPIENT}": [public_key],
        f"#{TAG_TYPE}": [SECRETS_TYPE_TAG],
    }
    if since is not None:
        relay_filter["since"] = since
    return relay_filter


async def create_deletion_request(
    event_ids: List[str],
    identity: OwnerIdentity,
    reason: str = "",
    now: Optional[int] = None,
) -> NostrEvent:
    """Signed NIP-09 deletion request for previously published envelopes.

    Advisory only: relays may or may not honour it, and resolution never
    depends on it.
    """
    if not event_ids:
        raise ValidationError("At least one event id is required")
    owner = await identity.get_public_key()
    template = UnsignedEvent(
        pubkey=owner,
        created_at=now_seconds() if now is None else now,
        kind=KIND_DELETION,
        tags=[[TAG_EVENT, event_id] for event_id in event_ids],
        content=reason,
    )
    return await identity.sign_event(template)
