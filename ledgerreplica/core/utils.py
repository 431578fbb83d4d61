"""
Utility functions for LedgerReplica.

This module contains helpers shared across the pipeline: canonical JSON serialisation,
keccak hashing, address conversions between Ethereum and ledger account ids, and hex
conversions used by the block builder.
"""

import json
import time
from typing import Any

from eth_utils import keccak as _keccak, to_bytes

ZERO_ETH_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_HASH = "0x" + "00" * 32
EOA_CODE_HASH = "0xc5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"


def canonical_json(data: Any) -> str:
    """
    Serialise data to a canonical JSON string (sorted keys, no whitespace).

    Args:
        data: JSON-serialisable object

    Returns:
        Deterministic JSON string
    """
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def keccak_hex(data: bytes | str) -> str:
    """Keccak-256 of raw bytes or a 0x hex string, returned as 0x hex."""
    if isinstance(data, str):
        data = to_bytes(hexstr=data)
    return "0x" + _keccak(data).hex()


def eth_address_to_account_id(address: str) -> str:
    """Ledger account id of an Ethereum address (the 20 address bytes padded to 32)."""
    return address[2:].lower() + "0" * 24 if address.startswith("0x") else address.lower() + "0" * 24


def hex_to_int(value: Any, default: int | None = None) -> int | None:
    """Parse an int from a 0x hex string, a decimal string or an int."""
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    try:
        text = str(value)
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    except ValueError:
        return default


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)
