"""
Synthetic block header implementation for LedgerReplica.

The underlying ledger has no blocks. A fixed number of Ethereum-shaped headers is
derived per cycle; only number, timestamp, parent hash and transactions root are
computed, every other header field comes from a constant template. Hashes are the
standard keccak256(rlp(header)) over the 15 pre-London header fields so that a light
client recomputing the hash from the readable header gets the same value.
"""

import logging
from typing import Any

import rlp
from eth_utils import keccak, to_bytes
from trie import HexaryTrie

from ledgerreplica.core.utils import ZERO_HASH

logger = logging.getLogger(__name__)

GENESIS_PARENT_HASH = ZERO_HASH

EMPTY_TRIE_ROOT = "0x56e81f171bcc55a6ff8345e692c0f86e5b48e01b996cadc001622fb5e363b421"

# Placeholder header fields, the ledger does not track these
DEFAULT_HEADER: dict[str, Any] = {
    "difficulty": "0x4ea3f27bc",
    "extraData": "0x476574682f4c5649562f76312e302e302f6c696e75782f676f312e342e32",
    "gasLimit": "0x4a817c800",
    "gasUsed": "0x0",
    "logsBloom": "0x" + "00" * 256,
    "miner": "0xbb7b8287f3f0a933474a79eae42cbca977791171",
    "mixHash": "0x4fffe9ae21f1c9e15207b1f472d5bbdd68c9595d461666602f2be20daf5e7843",
    "nonce": "0x689056015818adbe",
    "receiptsRoot": ZERO_HASH,
    "sha3Uncles": "0x1dcc4de8dec75d7aab85b567b6ccd41ad312451b948a7413f0a142fd40d49347",
    "size": "0x220",
    "stateRoot": ZERO_HASH,
    "totalDifficulty": "0x78ed983323d",
    "uncles": [],
}


def calculate_transactions_root(tx_hashes: list[str]) -> str:
    """
    Compute the transactions root over an ordered list of transaction hashes.

    The trie is keyed by ``rlp(index)``, the position of the transaction in the block,
    with the transaction hash string as the leaf value.

    Args:
        tx_hashes: Transaction hashes in block order

    Returns:
        0x-prefixed hex root; the empty-trie root for an empty list
    """
    trie = HexaryTrie(db={})
    for index, tx_hash in enumerate(tx_hashes):
        trie.set(rlp.encode(index), tx_hash.encode("utf-8"))
    return "0x" + trie.root_hash.hex()


class BlockHeader:
    """
    An Ethereum-shaped header for one synthetic block.

    Args:
        number: Global block number
        timestamp: Block timestamp in seconds
        parent_hash: Hash of block ``number - 1`` (or the genesis parent)
        transactions_root: Root of the ordered transaction trie
    """

    def __init__(self, number: int, timestamp: int, parent_hash: str, transactions_root: str):
        self.number = number
        self.timestamp = timestamp
        self.parent_hash = parent_hash
        self.transactions_root = transactions_root
        self.hash = self.calculate_hash()

    def to_rlp_fields(self) -> list[Any]:
        """Header fields in canonical order for hashing."""
        return [
            to_bytes(hexstr=self.parent_hash),
            to_bytes(hexstr=DEFAULT_HEADER["sha3Uncles"]),
            to_bytes(hexstr=DEFAULT_HEADER["miner"]),
            to_bytes(hexstr=DEFAULT_HEADER["stateRoot"]),
            to_bytes(hexstr=self.transactions_root),
            to_bytes(hexstr=DEFAULT_HEADER["receiptsRoot"]),
            to_bytes(hexstr=DEFAULT_HEADER["logsBloom"]),
            int(DEFAULT_HEADER["difficulty"], 16),
            self.number,
            int(DEFAULT_HEADER["gasLimit"], 16),
            int(DEFAULT_HEADER["gasUsed"], 16),
            self.timestamp,
            to_bytes(hexstr=DEFAULT_HEADER["extraData"]),
            to_bytes(hexstr=DEFAULT_HEADER["mixHash"]),
            to_bytes(hexstr=DEFAULT_HEADER["nonce"]),
        ]

    def calculate_hash(self) -> str:
        """keccak256 of the RLP-encoded header."""
        return "0x" + keccak(rlp.encode(self.to_rlp_fields())).hex()

    def to_readable(self, transactions: list[str]) -> dict[str, Any]:
        """JSON-RPC style block object stored alongside the block row."""
        readable = dict(DEFAULT_HEADER)
        readable.update({
            "hash": self.hash,
            "parentHash": self.parent_hash,
            "number": hex(self.number),
            "timestamp": hex(self.timestamp),
            "transactions": list(transactions),
            "transactionsRoot": self.transactions_root,
        })
        return readable

    def __repr__(self):
        return f"<BlockHeader(number={self.number}, hash='{self.hash[:10]}...')>"
