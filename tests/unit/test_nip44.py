"""Tests for the NIP-44 v2 payload cipher."""
import base64

import pytest

from relayvault.domain.secrets import nip44
from relayvault.domain.secrets.events import generate_private_key, get_public_key
from relayvault.errors import DecryptionError, ValidationError

SEC1 = bytes.fromhex("00" * 31 + "01")
SEC2 = bytes.fromhex("00" * 31 + "02")
PUB2 = "c6047f9441ed7d6d3045406e95c07cd85c778e4b8cef3ca7abac09b95c709ee5"
CONVERSATION_KEY = "c41c775356fd92eadc63ff5a0dc1da211b268cbea22316767095b2871ea1412d"
NONCE = bytes.fromhex("00" * 31 + "01")
PAYLOAD = (
    "AgAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAABee0G5VSK0/9YypIObAtDKfYEAjD35uVkHyB0F4Dwrc"
    "NaCXlCWZKaArsGrY6M9wnuTMxWfp1RTN9Xga8no+kF5Vsb"
)


def test_conversation_key_vector():
    assert get_public_key(SEC2) == PUB2
    assert nip44.get_conversation_key(SEC1, PUB2).hex() == CONVERSATION_KEY


def test_conversation_key_is_symmetric():
    a, b = generate_private_key(), generate_private_key()
    assert nip44.get_conversation_key(a, get_public_key(b)) == nip44.get_conversation_key(b, get_public_key(a))


def test_encrypt_vector():
    key = bytes.fromhex(CONVERSATION_KEY)
    assert nip44.encrypt("a", key, nonce=NONCE) == PAYLOAD
    assert nip44.decrypt(PAYLOAD, key) == "a"


@pytest.mark.parametrize("length,expected", [
    (1, 32), (32, 32), (33, 64), (37, 64), (64, 64), (65, 96), (100, 128),
    (256, 256), (257, 320), (1000, 1024), (65535, 65536),
])
def test_calc_padded_len(length, expected):
    assert nip44.calc_padded_len(length) == expected


def test_round_trip_unicode():
    key = nip44.get_conversation_key(SEC1, PUB2)
    plaintext = '{"GREETING":"héllo 👋","EMPTY":""}'
    payload = nip44.encrypt(plaintext, key)
    assert nip44.decrypt(payload, key) == plaintext


def test_fresh_nonce_every_call():
    key = nip44.get_conversation_key(SEC1, PUB2)
    assert nip44.encrypt("same", key) != nip44.encrypt("same", key)


def test_empty_plaintext_rejected():
    key = nip44.get_conversation_key(SEC1, PUB2)
    with pytest.raises(ValidationError):
        nip44.encrypt("", key)


def test_wrong_key_fails():
    payload = nip44.encrypt("secret", nip44.get_conversation_key(SEC1, PUB2))
    other = nip44.get_conversation_key(generate_private_key(), PUB2)
    with pytest.raises(DecryptionError):
        nip44.decrypt(payload, other)


def test_tampered_payload_fails():
    key = nip44.get_conversation_key(SEC1, PUB2)
    data = bytearray(base64.b64decode(nip44.encrypt("secret", key)))
    data[40] ^= 0x01
    with pytest.raises(DecryptionError):
        nip44.decrypt(base64.b64encode(bytes(data)).decode(), key)


@pytest.mark.parametrize("payload", ["", "#not-supported", "AgAA", "!" * 200])
def test_malformed_payloads_fail_closed(payload):
    key = nip44.get_conversation_key(SEC1, PUB2)
    with pytest.raises(DecryptionError):
        nip44.decrypt(payload, key)


def test_cipher_binds_local_key():
    alice, bob = generate_private_key(), generate_private_key()
    alice_cipher, bob_cipher = nip44.Nip44Cipher(alice), nip44.Nip44Cipher(bob)
    payload = alice_cipher.encrypt(get_public_key(bob), "hi bob")
    assert bob_cipher.decrypt(get_public_key(alice), payload) == "hi bob"

    with pytest.raises(DecryptionError):
        bob_cipher.decrypt("zz" * 32, payload)
