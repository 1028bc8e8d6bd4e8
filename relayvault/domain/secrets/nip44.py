"""NIP-44 v2 payload encryption.

Both Seal and Envelope content is encrypted with this scheme:

    conversation_key = HKDF-extract(salt="nip44-v2", ikm=ECDH(a, B).x)
    chacha_key, chacha_nonce, hmac_key = HKDF-expand(conversation_key, info=nonce, L=76)
    payload = base64(0x02 || nonce || ChaCha20(pad(plaintext)) || HMAC-SHA256(nonce || ciphertext))

The conversation key is symmetric: ECDH(a, B) == ECDH(b, A).
"""
import base64
import binascii
import os
import struct
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from relayvault.errors import DecryptionError, ValidationError

VERSION = 2
SALT = b"nip44-v2"
MIN_PLAINTEXT_SIZE = 1
MAX_PLAINTEXT_SIZE = 65535


def _load_public_key(public_key_hex: str) -> ec.EllipticCurvePublicKey:
    # x-only keys are lifted to the point with even y
    raw = binascii.unhexlify(public_key_hex)
    if len(raw) != 32:
        raise ValueError(f"Public key must be 32 bytes. Got {len(raw)}")
    return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), b"\x02" + raw)


def _hmac_sha256(key: bytes, data: bytes) -> bytes:
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(data)
    return h.finalize()


def get_conversation_key(private_key: bytes, public_key_hex: str) -> bytes:
    """Derive the 32-byte conversation key between a private key and a peer's x-only public key."""
    secret = ec.derive_private_key(int.from_bytes(private_key, "big"), ec.SECP256K1())
    shared_x = secret.exchange(ec.ECDH(), _load_public_key(public_key_hex))
    return _hmac_sha256(SALT, shared_x)


def _message_keys(conversation_key: bytes, nonce: bytes):
    if len(conversation_key) != 32:
        raise ValueError("Conversation key must be 32 bytes")
    if len(nonce) != 32:
        raise ValueError("Nonce must be 32 bytes")
    keys = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conversation_key)
    return keys[0:32], keys[32:44], keys[44:76]


def calc_padded_len(unpadded_len: int) -> int:
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (unpadded_len - 1).bit_length()
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def _pad(plaintext: str) -> bytes:
    raw = plaintext.encode("utf-8")
    if not MIN_PLAINTEXT_SIZE <= len(raw) <= MAX_PLAINTEXT_SIZE:
        raise ValidationError(
            f"Plaintext must be {MIN_PLAINTEXT_SIZE}..{MAX_PLAINTEXT_SIZE} bytes. Got {len(raw)}"
        )
    return struct.pack(">H", len(raw)) + raw + b"\x00" * (calc_padded_len(len(raw)) - len(raw))


def _unpad(padded: bytes) -> str:
    (unpadded_len,) = struct.unpack(">H", padded[:2])
    raw = padded[2:2 + unpadded_len]
    if (
        unpadded_len == 0
        or len(raw) != unpadded_len
        or len(padded) != 2 + calc_padded_len(unpadded_len)
    ):
        raise ValueError("Invalid padding")
    return raw.decode("utf-8")


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # cryptography takes a 16-byte nonce: 4-byte little-endian counter (0) + 12-byte nonce
    cipher = Cipher(algorithms.ChaCha20(key, b"\x00" * 4 + nonce), mode=None)
    encryptor = cipher.encryptor()
    return encryptor.update(data) + encryptor.finalize()


def encrypt(plaintext: str, conversation_key: bytes, nonce: Optional[bytes] = None) -> str:
    """Encrypt ``plaintext`` to a base64 payload. A fresh random nonce is used unless one is given."""
    nonce = nonce if nonce is not None else os.urandom(32)
    chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, _pad(plaintext))
    mac = _hmac_sha256(hmac_key, nonce + ciphertext)
    return base64.b64encode(bytes([VERSION]) + nonce + ciphertext + mac).decode("ascii")


def _decode_payload(payload: str):
    if not payload or payload[0] == "#":
        raise ValueError("Unknown encryption version")
    if not 132 <= len(payload) <= 87472:
        raise ValueError(f"Invalid payload size: {len(payload)}")
    data = base64.b64decode(payload, validate=True)
    if not 99 <= len(data) <= 65603:
        raise ValueError(f"Invalid data size: {len(data)}")
    if data[0] != VERSION:
        raise ValueError(f"Unknown encryption version {data[0]}")
    return data[1:33], data[33:-32], data[-32:]


def decrypt(payload: str, conversation_key: bytes) -> str:
    """Decrypt a base64 payload. Any failure raises DecryptionError."""
    try:
        nonce, ciphertext, mac = _decode_payload(payload)
        chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)
        h = hmac.HMAC(hmac_key, hashes.SHA256())
        h.update(nonce + ciphertext)
        h.verify(mac)
        return _unpad(_chacha20(chacha_key, chacha_nonce, ciphertext))
    except (ValueError, TypeError, InvalidSignature, binascii.Error, struct.error):
        raise DecryptionError() from None


class Nip44Cipher:
    """NIP-44 cipher bound to a local private key."""

    def __init__(self, private_key: bytes):
        if len(private_key) != 32:
            raise ValueError(f"Private key must be 32 bytes. Got {len(private_key)}")
        self._private_key = private_key

    def conversation_key(self, public_key_hex: str) -> bytes:
        return get_conversation_key(self._private_key, public_key_hex)

    def encrypt(self, public_key_hex: str, plaintext: str) -> str:
        return encrypt(plaintext, self.conversation_key(public_key_hex))

    def decrypt(self, public_key_hex: str, payload: str) -> str:
        try:
            key = self.conversation_key(public_key_hex)
        except (ValueError, TypeError, binascii.Error):
            raise DecryptionError() from None
        return decrypt(payload, key)
