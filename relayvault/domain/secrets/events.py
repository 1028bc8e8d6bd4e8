"""Event hashing, signing and verification (NIP-01).

An event id is the SHA-256 of the canonical serialization
``[0, pubkey, created_at, kind, tags, content]`` with no whitespace and
non-ASCII characters left unescaped. Signatures are BIP-340 Schnorr
signatures over the id.
"""
import hashlib
import secrets
import time
from typing import List, Optional

from coincurve import PrivateKey, PublicKeyXOnly

from .models import TWO_DAYS, NostrEvent, Rumor, UnsignedEvent, compact_json


def serialize_event(pubkey: str, created_at: int, kind: int, tags: List[List[str]], content: str) -> bytes:
    return compact_json([0, pubkey, created_at, kind, tags, content]).encode("utf-8")


def compute_event_id(event: UnsignedEvent) -> str:
    digest = hashlib.sha256(
        serialize_event(event.pubkey, event.created_at, event.kind, event.tags, event.content)
    )
    return digest.hexdigest()


def generate_private_key() -> bytes:
    return PrivateKey().secret


def get_public_key(private_key: bytes) -> str:
    """x-only public key (hex) for a 32-byte private key."""
    return PrivateKey(private_key).public_key.format(compressed=True)[1:].hex()


def now_seconds() -> int:
    return int(time.time())


def random_past_timestamp(now: Optional[int] = None, window: int = TWO_DAYS) -> int:
    """Uniform timestamp in ``[now - window, now]``, used to blur Seal and Envelope timing."""
    now = now_seconds() if now is None else now
    return max(0, now - secrets.randbelow(window + 1))


def _template_fields(event: UnsignedEvent) -> dict:
    return {
        "pubkey": event.pubkey,
        "created_at": event.created_at,
        "kind": event.kind,
        "tags": [list(tag) for tag in event.tags],
        "content": event.content,
    }


def create_rumor(template: UnsignedEvent) -> Rumor:
    return Rumor(**_template_fields(template), id=compute_event_id(template))


def finalize_event(template: UnsignedEvent, private_key: bytes) -> NostrEvent:
    """Hash and sign ``template`` with ``private_key``.

    The template's pubkey is replaced with the signer's own.
    """
    signer = PrivateKey(private_key)
    fields = _template_fields(template)
    fields["pubkey"] = signer.public_key.format(compressed=True)[1:].hex()
    unsigned = UnsignedEvent(**fields)
    event_id = compute_event_id(unsigned)
    sig = signer.sign_schnorr(bytes.fromhex(event_id))
    return NostrEvent(**fields, id=event_id, sig=sig.hex())


def verify_event(event: NostrEvent) -> bool:
    """Check that the id matches the content and the signature matches the pubkey."""
    if compute_event_id(event) != event.id:
        return False
    try:
        public_key = PublicKeyXOnly(bytes.fromhex(event.pubkey))
        return bool(public_key.verify(bytes.fromhex(event.sig), bytes.fromhex(event.id)))
    except (ValueError, TypeError):
        return False
