"""Tests for the three-layer gift wrap codec and owner identities."""
import asyncio
import json

import pytest
from unittest.mock import AsyncMock

from relayvault.domain.secrets.events import finalize_event, generate_private_key
from relayvault.domain.secrets.gift_wrap import (
    create_deletion_request,
    create_tombstone,
    get_secrets_filter,
    is_secrets_envelope,
    unwrap_gift_wrap,
    unwrap_gift_wrap_sync,
    unwrap_secrets,
    wrap_secrets,
    wrap_secrets_sync,
)
from relayvault.domain.secrets.identity import DelegatedSignerIdentity, DirectKeyIdentity, IdentityKind
from relayvault.domain.secrets.models import (
    KIND_DELETION,
    KIND_GIFT_WRAP,
    KIND_SEAL,
    TWO_DAYS,
    UnsignedEvent,
)
from relayvault.errors import (
    ConfigError,
    DecryptionError,
    SignerError,
    SignerTimeoutError,
    ValidationError,
    VaultError,
)

NOW = 1_700_000_000


class KeyBackedSigner:
    """RemoteSigner that answers from a local key, like a browser extension would."""

    def __init__(self, identity: DirectKeyIdentity, delay: float = 0.0):
        self.identity = identity
        self.delay = delay
        self.calls = []

    async def _pause(self, name):
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)

    async def get_public_key(self):
        await self._pause("get_public_key")
        return self.identity.public_key

    async def sign_event(self, event):
        await self._pause("sign_event")
        return self.identity.sign_event_sync(UnsignedEvent(**event)).to_dict()

    async def nip44_encrypt(self, public_key, plaintext):
        await self._pause("nip44_encrypt")
        return self.identity.encrypt_sync(public_key, plaintext)

    async def nip44_decrypt(self, public_key, ciphertext):
        await self._pause("nip44_decrypt")
        return self.identity.decrypt_sync(public_key, ciphertext)


@pytest.fixture
def owner():
    return DirectKeyIdentity.generate()


@pytest.mark.asyncio
async def test_round_trip(owner):
    bundle = {"API_KEY": "sk_live_abc", "DEBUG": "false"}
    wrapped = await wrap_secrets(bundle, "myproj|production", owner, now=NOW)

    result = await unwrap_gift_wrap(wrapped.event, owner)
    assert result.secrets == bundle
    assert result.address == "myproj|production"
    assert result.created_at == NOW
    assert result.pubkey == owner.public_key
    assert result.rumor_id == wrapped.rumor.id
    assert result.event_id == wrapped.event.id


@pytest.mark.asyncio
async def test_round_trip_empty_bundle(owner):
    wrapped = await create_tombstone("app|prod", owner, now=NOW)
    result = await unwrap_gift_wrap(wrapped.event, owner)
    assert result.secrets == {}
    assert result.is_tombstone


@pytest.mark.asyncio
async def test_envelope_shape(owner):
    wrapped = await wrap_secrets({"A": "1"}, "app|prod", owner, now=NOW)
    envelope = wrapped.event

    assert envelope.kind == KIND_GIFT_WRAP
    assert envelope.pubkey != owner.public_key
    assert ["p", owner.public_key] in envelope.tags
    assert ["t", "redshift-secrets"] in envelope.tags
    assert NOW - TWO_DAYS <= envelope.created_at <= NOW
    # Nothing readable leaks into the transmitted record
    serialized = envelope.to_json()
    assert "app|prod" not in serialized
    assert '"A"' not in serialized

    seal = json.loads(owner.decrypt_sync(envelope.pubkey, envelope.content))
    assert seal["kind"] == KIND_SEAL
    assert seal["pubkey"] == owner.public_key
    assert seal["tags"] == []
    assert NOW - TWO_DAYS <= seal["created_at"] <= NOW


@pytest.mark.asyncio
async def test_wrapping_is_not_deterministic(owner):
    first = await wrap_secrets({"A": "1"}, "app|prod", owner, now=NOW)
    second = await wrap_secrets({"A": "1"}, "app|prod", owner, now=NOW)
    assert first.event.id != second.event.id
    assert first.event.pubkey != second.event.pubkey
    assert first.event.content != second.event.content


@pytest.mark.asyncio
async def test_wrong_identity_cannot_unwrap(owner):
    wrapped = await wrap_secrets({"A": "1"}, "app|prod", owner)
    with pytest.raises(DecryptionError) as exc_info:
        await unwrap_gift_wrap(wrapped.event, DirectKeyIdentity.generate())
    assert exc_info.value.event_id == wrapped.event.id


@pytest.mark.asyncio
async def test_tampered_envelope_fails(owner):
    wrapped = await wrap_secrets({"A": "1"}, "app|prod", owner)
    tampered = wrapped.event.model_copy(update={"content": wrapped.event.content[:-4] + "AAAA"})
    with pytest.raises(DecryptionError):
        await unwrap_gift_wrap(tampered, owner)


@pytest.mark.asyncio
async def test_rejects_non_envelope(owner):
    note = finalize_event(
        UnsignedEvent(pubkey=owner.public_key, created_at=NOW, kind=1, tags=[], content="hi"),
        generate_private_key(),
    )
    with pytest.raises(DecryptionError):
        await unwrap_gift_wrap(note, owner)
    with pytest.raises(DecryptionError):
        await unwrap_gift_wrap({"kind": 1059, "garbage": True}, owner)


@pytest.mark.asyncio
async def test_invalid_input_rejected_before_signing():
    identity = AsyncMock()
    with pytest.raises(ValidationError):
        await wrap_secrets({"A": 1}, "app|prod", identity)
    with pytest.raises(ValidationError):
        await wrap_secrets({"A": "1"}, "no-separator", identity)
    identity.get_public_key.assert_not_called()
    identity.sign_event.assert_not_called()


def test_sync_round_trip(owner):
    wrapped = wrap_secrets_sync({"K": "v"}, "p|e", owner, now=NOW)
    assert unwrap_gift_wrap_sync(wrapped.event.to_dict(), owner).secrets == {"K": "v"}
    with pytest.raises(DecryptionError) as exc_info:
        unwrap_gift_wrap_sync(wrapped.event, DirectKeyIdentity.generate())
    assert exc_info.value.event_id == wrapped.event.id


@pytest.mark.asyncio
async def test_delegated_signer_round_trip(owner):
    signer = KeyBackedSigner(owner)
    delegated = DelegatedSignerIdentity(signer, timeout=5)
    assert delegated.kind == IdentityKind.DELEGATED

    wrapped = await wrap_secrets({"TOKEN": "t"}, "app|prod", delegated, now=NOW)
    assert "nip44_encrypt" in signer.calls
    assert "sign_event" in signer.calls

    # Readable by the same key whichever way it is held
    assert await unwrap_secrets(wrapped.event, owner) == {"TOKEN": "t"}
    assert await unwrap_secrets(wrapped.event, delegated) == {"TOKEN": "t"}


@pytest.mark.asyncio
async def test_delegated_signer_timeout(owner):
    delegated = DelegatedSignerIdentity(KeyBackedSigner(owner, delay=1.0), timeout=0.01)
    with pytest.raises(SignerTimeoutError) as exc_info:
        await wrap_secrets({"A": "1"}, "app|prod", delegated)
    assert exc_info.value.code == "SIGNER_TIMEOUT"


@pytest.mark.asyncio
async def test_delegated_timeout_is_not_a_decryption_error(owner):
    wrapped = await wrap_secrets({"A": "1"}, "app|prod", owner)
    slow = KeyBackedSigner(owner)
    delegated = DelegatedSignerIdentity(slow, timeout=0.05, public_key=owner.public_key)
    slow.delay = 1.0
    with pytest.raises(SignerTimeoutError):
        await unwrap_gift_wrap(wrapped.event, delegated)


@pytest.mark.asyncio
async def test_delegated_signer_failure_is_not_a_decryption_error(owner):
    wrapped = await wrap_secrets({"A": "1"}, "app|prod", owner)
    signer = KeyBackedSigner(owner)
    signer.nip44_decrypt = AsyncMock(side_effect=ConnectionError("bunker connection reset"))
    delegated = DelegatedSignerIdentity(signer, timeout=5, public_key=owner.public_key)

    with pytest.raises(SignerError) as exc_info:
        await unwrap_gift_wrap(wrapped.event, delegated)
    assert exc_info.value.code == "SIGNER_ERROR"
    assert exc_info.value.operation == "nip44_decrypt"
    assert isinstance(exc_info.value.original_error, ConnectionError)


@pytest.mark.asyncio
async def test_delegated_signer_reporting_undecryptable(owner):
    # A key-backed signer asked about someone else's record raises DecryptionError itself
    wrapped = await wrap_secrets({"A": "1"}, "app|prod", DirectKeyIdentity.generate())
    delegated = DelegatedSignerIdentity(KeyBackedSigner(owner), timeout=5)
    with pytest.raises(DecryptionError) as exc_info:
        await unwrap_gift_wrap(wrapped.event, delegated)
    assert exc_info.value.event_id == wrapped.event.id


@pytest.mark.asyncio
async def test_delegated_signer_must_sign_what_was_asked(owner):
    signer = KeyBackedSigner(owner)

    async def sign_something_else(event):
        event = dict(event, content="swapped")
        return owner.sign_event_sync(UnsignedEvent(**event)).to_dict()

    signer.sign_event = sign_something_else
    with pytest.raises(VaultError) as exc_info:
        await wrap_secrets({"A": "1"}, "app|prod", DelegatedSignerIdentity(signer, timeout=5))
    assert exc_info.value.code == "SIGNER_INVALID"


@pytest.mark.asyncio
async def test_delegated_signer_bad_public_key():
    signer = AsyncMock()
    signer.get_public_key.return_value = "nope"
    with pytest.raises(ConfigError):
        await DelegatedSignerIdentity(signer, timeout=5).get_public_key()


def test_delegated_identity_rejects_bad_configured_key():
    with pytest.raises(ConfigError):
        DelegatedSignerIdentity(AsyncMock(), timeout=5, public_key="npub1notakey")
    with pytest.raises(ConfigError):
        DelegatedSignerIdentity(AsyncMock(), timeout=5, public_key="")


@pytest.mark.asyncio
async def test_delegated_identity_accepts_npub(owner):
    signer = AsyncMock()
    delegated = DelegatedSignerIdentity(signer, timeout=5, public_key=owner.npub)
    assert await delegated.get_public_key() == owner.public_key
    signer.get_public_key.assert_not_called()


def test_direct_identity_rejects_bad_key():
    with pytest.raises(ConfigError):
        DirectKeyIdentity(b"\x00" * 32)
    with pytest.raises(ConfigError):
        DirectKeyIdentity(b"short")


def test_direct_identity_from_string(owner):
    from relayvault.domain.secrets.keys import encode_nsec

    restored = DirectKeyIdentity.from_string(encode_nsec(owner._private_key))
    assert restored.public_key == owner.public_key
    assert restored.npub.startswith("npub1")
    assert "nsec" not in repr(restored)


@pytest.mark.asyncio
async def test_envelope_detection_and_filter(owner):
    wrapped = await wrap_secrets({"A": "1"}, "app|prod", owner)
    assert is_secrets_envelope(wrapped.event)
    assert is_secrets_envelope(wrapped.event.to_dict())
    assert not is_secrets_envelope({"kind": 1059, "tags": [["t", "other"]]})
    assert not is_secrets_envelope({"kind": 1, "tags": [["t", "redshift-secrets"]]})

    assert get_secrets_filter(owner.public_key) == {
        "kinds": [1059],
        "#p": [owner.public_key],
        "#t": ["redshift-secrets"],
    }
    assert get_secrets_filter(owner.public_key, since=5)["since"] == 5


@pytest.mark.asyncio
async def test_deletion_request(owner):
    event = await create_deletion_request(["aa" * 32, "bb" * 32], owner, reason="rotated", now=NOW)
    assert event.kind == KIND_DELETION
    assert event.tags == [["e", "aa" * 32], ["e", "bb" * 32]]
    assert event.content == "rotated"
    assert event.pubkey == owner.public_key

    with pytest.raises(ValidationError):
        await create_deletion_request([], owner)
