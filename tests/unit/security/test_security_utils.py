"""Unit tests for request signing and verification."""

import pytest

from ledgerreplica.security.security_utils import (
    CryptoError,
    KeyPair,
    hash_object,
    sign_object,
    verify_object,
)


@pytest.fixture
def key_pair():
    return KeyPair.generate()


def test_sign_and_verify_round_trip(key_pair):
    signed = sign_object({"start": 0, "end": 100, "sender": key_pair.public_key}, key_pair)
    assert signed["sign"]["owner"] == key_pair.public_key
    assert verify_object(signed)
    assert verify_object(signed, expected_owner=key_pair.public_key)


def test_sign_object_does_not_mutate_input(key_pair):
    body = {"page": 1}
    sign_object(body, key_pair)
    assert body == {"page": 1}


def test_tampered_object_fails_verification(key_pair):
    signed = sign_object({"start": 0, "end": 100}, key_pair)
    signed["end"] = 200
    assert not verify_object(signed)


def test_foreign_signer_is_rejected(key_pair):
    signed = sign_object({"cycles": []}, key_pair)
    assert not verify_object(signed, expected_owner=KeyPair.generate().public_key)


def test_unsigned_object_is_rejected():
    assert not verify_object({"start": 0})
    assert not verify_object({"start": 0, "sign": {"owner": "", "sig": ""}})


def test_hash_ignores_sign_field_and_key_order():
    assert hash_object({"a": 1, "b": 2}) == hash_object({"b": 2, "a": 1, "sign": {"owner": "x"}})


def test_key_pair_from_private_key(key_pair):
    restored = KeyPair.from_private_key(key_pair.private_key)
    assert restored.public_key == key_pair.public_key
    # 64-byte secret keys (seed followed by public key) are accepted too
    extended = KeyPair.from_private_key(key_pair.private_key + key_pair.public_key)
    assert extended.public_key == key_pair.public_key


def test_invalid_private_key():
    with pytest.raises(CryptoError):
        KeyPair.from_private_key("not-hex")
