"""
Security Utilities for LedgerReplica.

Ed25519 request signing for the distributor protocol. An object is signed by hashing
its canonical JSON form (without the ``sign`` field) with BLAKE2b-256 and signing the
hex digest; the result is attached as ``sign = {"owner": <public key>, "sig": <signed
message>}``. The same scheme verifies payloads pushed by the distributor's live feed.
"""

import binascii
import copy
import logging
from typing import Any, Optional

from nacl.encoding import HexEncoder, RawEncoder
from nacl.exceptions import BadSignatureError, CryptoError as NaclCryptoError
from nacl.hash import blake2b
from nacl.signing import SigningKey, VerifyKey

from ledgerreplica.core.exceptions import LedgerReplicaError
from ledgerreplica.core.utils import canonical_json

logger = logging.getLogger(__name__)


class CryptoError(LedgerReplicaError):
    """Base exception for cryptographic errors."""
    pass


class KeyPair:
    """
    Represents an Ed25519 key pair for signing and verification.
    """
    def __init__(self, private_key: Optional[SigningKey] = None):
        if private_key:
            self._signing_key = private_key
        else:
            self._signing_key = SigningKey.generate()
        self._verify_key = self._signing_key.verify_key

    @property
    def public_key(self) -> str:
        """Return the public key as a hex string."""
        return self._verify_key.encode(encoder=HexEncoder).decode('utf-8')

    @property
    def private_key(self) -> str:
        """Return the private key seed as a hex string (CAUTION: Sensitive)."""
        return self._signing_key.encode(encoder=HexEncoder).decode('utf-8')

    @classmethod
    def generate(cls) -> 'KeyPair':
        """Generate a new random key pair."""
        return cls()

    @classmethod
    def from_private_key(cls, private_key_hex: str) -> 'KeyPair':
        """
        Load a key pair from a hex-encoded private key.

        Both a 32-byte seed and a 64-byte secret key (seed followed by public key) are accepted.
        """
        try:
            private_key_bytes = HexEncoder.decode(private_key_hex.encode('utf-8'))
            if len(private_key_bytes) == 64:
                private_key_bytes = private_key_bytes[:32]
            return cls(SigningKey(private_key_bytes))
        except (binascii.Error, ValueError, TypeError, NaclCryptoError) as e:
            raise CryptoError(f"Invalid private key format: {str(e)}")

    def sign(self, message: bytes) -> str:
        """
        Sign a message and return the signed message (signature followed by message) as hex.
        """
        try:
            return self._signing_key.sign(message).hex()
        except NaclCryptoError as e:
            raise CryptoError(f"Signing failed: {str(e)}")


def hash_object(obj: dict[str, Any]) -> str:
    """BLAKE2b-256 hex digest of the canonical JSON of ``obj`` without its ``sign`` field."""
    unsigned = {k: v for k, v in obj.items() if k != "sign"}
    return blake2b(canonical_json(unsigned).encode('utf-8'), digest_size=32, encoder=RawEncoder).hex()


def sign_object(obj: dict[str, Any], key_pair: KeyPair) -> dict[str, Any]:
    """
    Return a copy of ``obj`` carrying a ``sign`` field.

    Args:
        obj: JSON object to sign
        key_pair: Signer key pair

    Returns:
        Signed copy of the object
    """
    signed = copy.deepcopy(obj)
    signed.pop("sign", None)
    digest = hash_object(signed)
    signed["sign"] = {"owner": key_pair.public_key, "sig": key_pair.sign(digest.encode('utf-8'))}
    return signed


def verify_object(obj: dict[str, Any], expected_owner: str | None = None) -> bool:
    """
    Verify the ``sign`` field of an object.

    Args:
        obj: Signed JSON object
        expected_owner: When set, the signer's public key must equal it

    Returns:
        True if the signature is valid and covers the object's current content
    """
    sign = obj.get("sign")
    if not isinstance(sign, dict) or not sign.get("owner") or not sign.get("sig"):
        logger.warning("Object carries no usable signature")
        return False
    owner = sign["owner"]
    if expected_owner and owner.lower() != expected_owner.lower():
        logger.warning(f"Unexpected signer {owner[:16]}...")
        return False
    try:
        verify_key = VerifyKey(HexEncoder.decode(owner.encode('utf-8')))
        message = verify_key.verify(binascii.unhexlify(sign["sig"]))
    except (BadSignatureError, ValueError, TypeError, binascii.Error, NaclCryptoError):
        return False
    return message.decode('utf-8', errors='replace') == hash_object(obj)
