from ledgerreplica.security.security_utils import (
    CryptoError,
    KeyPair,
    hash_object,
    sign_object,
    verify_object,
)

__all__ = [
    "CryptoError",
    "KeyPair",
    "hash_object",
    "sign_object",
    "verify_object",
]
