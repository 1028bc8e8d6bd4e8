"""Owner identities.

An identity is either local key material (``DirectKeyIdentity``) or a
delegated signer reached over some async channel
(``DelegatedSignerIdentity``). Both expose the same async operations so the
codec never branches on the shape; ``kind`` tells callers which one they hold.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Optional

from relayvault.errors import ConfigError, SignerError, SignerTimeoutError, VaultError
from relayvault.settings import settings
from .events import finalize_event, generate_private_key, get_public_key, verify_event
from .keys import encode_npub, parse_private_key, parse_public_key
from .models import NostrEvent, UnsignedEvent
from .nip44 import Nip44Cipher
from .ports import RemoteSigner

logger = logging.getLogger(__name__)


class IdentityKind(str, Enum):
    DIRECT_KEY = "direct_key"
    DELEGATED = "delegated"


class OwnerIdentity(ABC):
    """Capability to sign as, and encrypt to/decrypt as, the owner."""

    kind: IdentityKind

    @abstractmethod
    async def get_public_key(self) -> str:
        """Owner's x-only public key (hex)."""
        ...

    @abstractmethod
    async def sign_event(self, template: UnsignedEvent) -> NostrEvent:
        ...

    @abstractmethod
    async def encrypt(self, public_key: str, plaintext: str) -> str:
        """NIP-44 encrypt ``plaintext`` from the owner to ``public_key``."""
        ...

    @abstractmethod
    async def decrypt(self, public_key: str, payload: str) -> str:
        """NIP-44 decrypt ``payload`` sent between ``public_key`` and the owner."""
        ...


class DirectKeyIdentity(OwnerIdentity):
    """Identity backed by a raw 32-byte private key held in this process."""

    kind = IdentityKind.DIRECT_KEY

    def __init__(self, private_key: bytes):
        try:
            self.public_key = get_public_key(private_key)
            self._cipher = Nip44Cipher(private_key)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Invalid private key: {e}") from None
        self._private_key = private_key

    @classmethod
    def generate(cls) -> "DirectKeyIdentity":
        return cls(generate_private_key())

    @classmethod
    def from_string(cls, value: str) -> "DirectKeyIdentity":
        """Load from an ``nsec1...`` string or 64 hex characters."""
        return cls(parse_private_key(value))

    @property
    def npub(self) -> str:
        return encode_npub(self.public_key)

    def __repr__(self) -> str:
        return f"DirectKeyIdentity(public_key={self.public_key})"

    # Synchronous primitives; the async methods below never suspend.

    def sign_event_sync(self, template: UnsignedEvent) -> NostrEvent:
        return finalize_event(template, self._private_key)

    def encrypt_sync(self, public_key: str, plaintext: str) -> str:
        return self._cipher.encrypt(public_key, plaintext)

    def decrypt_sync(self, public_key: str, payload: str) -> str:
        return self._cipher.decrypt(public_key, payload)

    async def get_public_key(self) -> str:
        return self.public_key

    async def sign_event(self, template: UnsignedEvent) -> NostrEvent:
        return self.sign_event_sync(template)

    async def encrypt(self, public_key: str, plaintext: str) -> str:
        return self.encrypt_sync(public_key, plaintext)

    async def decrypt(self, public_key: str, payload: str) -> str:
        return self.decrypt_sync(public_key, payload)


class DelegatedSignerIdentity(OwnerIdentity):
    """Identity whose key lives in an external agent.

    Each call to the agent is bounded by ``timeout`` seconds (None disables the
    bound) and raises SignerTimeoutError when it elapses. Any other failure
    of the agent surfaces as SignerError.
    """

    kind = IdentityKind.DELEGATED

    def __init__(self, signer: RemoteSigner, timeout: Optional[float] = None, public_key: Optional[str] = None):
        self.signer = signer
        self.timeout = settings.signer_timeout_seconds if timeout is None else timeout
        self._public_key = None
        if public_key is not None:
            self._public_key = parse_public_key(public_key)
            if self._public_key is None:
                raise ConfigError("Invalid public key for delegated signer")

    def __repr__(self) -> str:
        return f"DelegatedSignerIdentity(public_key={self._public_key})"

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Delegated signer timed out on {operation} after {self.timeout}s")
            raise SignerTimeoutError(operation, self.timeout) from None
        except VaultError:
            # Signers backed by local keys report undecryptable payloads as DecryptionError.
            raise
        except Exception as e:
            logger.warning(f"Delegated signer failed on {operation}: {e.__class__.__name__}")
            raise SignerError(f"Signer failed on {operation}", operation, e) from e

    async def get_public_key(self) -> str:
        if self._public_key is None:
            raw = await self._call("get_public_key", self.signer.get_public_key())
            public_key = parse_public_key(raw) if isinstance(raw, str) else None
            if public_key is None:
                raise ConfigError("Signer returned an invalid public key")
            self._public_key = public_key
        return self._public_key

    async def sign_event(self, template: UnsignedEvent) -> NostrEvent:
        public_key = await self.get_public_key()
        request = {
            "pubkey": public_key,
            "created_at": template.created_at,
            "kind": template.kind,
            "tags": template.tags,
            "content": template.content,
        }
        signed = await self._call("sign_event", self.signer.sign_event(request))
        try:
            event = NostrEvent.model_validate(signed)
        except ValueError:
            raise VaultError("Signer returned a malformed event", "SIGNER_INVALID") from None

        if (
            event.pubkey != public_key
            or event.kind != template.kind
            or event.content != template.content
            or event.tags != template.tags
            or event.created_at != template.created_at
            or not verify_event(event)
        ):
            raise VaultError("Signer returned an event that does not match the request", "SIGNER_INVALID")
        return event

    async def encrypt(self, public_key: str, plaintext: str) -> str:
        return await self._call("nip44_encrypt", self.signer.nip44_encrypt(public_key, plaintext))

    async def decrypt(self, public_key: str, payload: str) -> str:
        return await self._call("nip44_decrypt", self.signer.nip44_decrypt(public_key, payload))
