"""Key encodings (NIP-19 bech32 ``nsec`` / ``npub``)."""
import re
from typing import Optional

import bech32

from relayvault.errors import ConfigError

HRP_PRIVATE = "nsec"
HRP_PUBLIC = "npub"
_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def _encode(hrp: str, data: bytes) -> str:
    words = bech32.convertbits(data, 8, 5, True)
    return bech32.bech32_encode(hrp, words)


def _decode(expected_hrp: str, value: str) -> bytes:
    hrp, words = bech32.bech32_decode(value)
    if hrp is None or words is None:
        raise ConfigError(f"Invalid bech32 string for {expected_hrp}")
    if hrp != expected_hrp:
        raise ConfigError(f"Expected {expected_hrp}, got {hrp}")
    data = bech32.convertbits(words, 5, 8, False)
    if data is None or len(data) != 32:
        raise ConfigError(f"Invalid {expected_hrp} payload")
    return bytes(data)


def encode_nsec(private_key: bytes) -> str:
    return _encode(HRP_PRIVATE, private_key)


def decode_nsec(nsec: str) -> bytes:
    return _decode(HRP_PRIVATE, nsec)


def encode_npub(public_key_hex: str) -> str:
    return _encode(HRP_PUBLIC, bytes.fromhex(public_key_hex))


def decode_npub(npub: str) -> str:
    return _decode(HRP_PUBLIC, npub).hex()


def validate_nsec(nsec: str) -> bool:
    try:
        decode_nsec(nsec)
        return True
    except ConfigError:
        return False


def validate_npub(npub: str) -> bool:
    try:
        decode_npub(npub)
        return True
    except ConfigError:
        return False


def parse_private_key(value: str) -> bytes:
    """Accept an ``nsec1...`` string or 64 hex characters."""
    value = value.strip()
    if value.startswith(HRP_PRIVATE + "1"):
        return decode_nsec(value)
    if _HEX_KEY.match(value):
        return bytes.fromhex(value)
    raise ConfigError("Private key must be an nsec or 64 hex characters")


def parse_public_key(value: str) -> Optional[str]:
    """Normalize an ``npub1...`` or hex public key to lowercase hex, or None if invalid."""
    value = value.strip()
    if value.startswith(HRP_PUBLIC + "1"):
        try:
            return decode_npub(value)
        except ConfigError:
            return None
    if _HEX_KEY.match(value):
        return value.lower()
    return None
