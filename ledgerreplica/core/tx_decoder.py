"""
EVM decoding for LedgerReplica.

Parses raw signed EVM transactions (legacy, EIP-2930 and EIP-1559 envelopes), classifies
internal staking transactions and extracts token transfers from a receipt's logs.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

import rlp
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError as AbiDecodingError
from eth_account import Account as EthAccount
from eth_keys.exceptions import BadSignature
from eth_utils import ValidationError, big_endian_to_int, keccak, to_bytes
from rlp.exceptions import RLPException

from ledgerreplica.core.exceptions import DecodeError
from ledgerreplica.core.types import (
    InternalTXType,
    OriginalTxData,
    OriginalTxData2,
    ReceiptAccountState,
    TokenTransfer,
    Transaction,
    TransactionType,
)
from ledgerreplica.core.utils import ZERO_ETH_ADDRESS, hex_to_int, keccak_hex

logger = logging.getLogger(__name__)

STAKE_TARGET_ADDRESS = "0x0000000000000000000000000000000000000001"

TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()
TRANSFER_SINGLE_TOPIC = "0x" + keccak(text="TransferSingle(address,address,address,uint256,uint256)").hex()
TRANSFER_BATCH_TOPIC = "0x" + keccak(text="TransferBatch(address,address,address,uint256[],uint256[])").hex()


@dataclass
class DecodedTransaction:
    """Structured view of a raw signed EVM transaction."""
    tx_type: int
    nonce: int
    to: str | None
    value: int
    data: bytes
    hash: str
    sender: str | None = None
    chain_id: int | None = None

    def readable(self) -> dict[str, Any]:
        return {
            "from": self.sender,
            "to": self.to,
            "nonce": hex(self.nonce),
            "value": hex(self.value),
            "data": "0x" + self.data.hex(),
        }


def _address(field: bytes) -> str | None:
    return "0x" + field.hex() if field else None


def decode_raw_transaction(raw: str) -> DecodedTransaction:
    """
    Decode a raw signed EVM transaction.

    Args:
        raw: 0x hex of the serialized transaction

    Returns:
        DecodedTransaction

    Raises:
        DecodeError: if the payload is not a supported transaction envelope
    """
    try:
        payload = to_bytes(hexstr=raw)
    except (ValueError, TypeError) as e:
        raise DecodeError(f"Raw tx is not hex: {e}")
    if not payload:
        raise DecodeError("Empty raw tx")

    try:
        if payload[0] >= 0xc0:
            nonce, _gas_price, _gas, to, value, data, *_sig = rlp.decode(payload)
            tx_type, chain_id = 0, None
        elif payload[0] == 0x01:
            chain_id, nonce, _gas_price, _gas, to, value, data, *_rest = rlp.decode(payload[1:])
            tx_type = 1
        elif payload[0] == 0x02:
            chain_id, nonce, _tip, _fee, _gas, to, value, data, *_rest = rlp.decode(payload[1:])
            tx_type = 2
        else:
            raise DecodeError(f"Unsupported tx envelope type {payload[0]}")
        decoded = DecodedTransaction(
            tx_type=tx_type,
            nonce=big_endian_to_int(nonce),
            to=_address(to),
            value=big_endian_to_int(value),
            data=bytes(data),
            hash=keccak_hex(payload),
            chain_id=big_endian_to_int(chain_id) if chain_id is not None else None,
        )
    except (RLPException, ValueError, TypeError, AttributeError) as e:
        raise DecodeError(f"Unable to RLP-decode raw tx: {e}")

    try:
        decoded.sender = EthAccount.recover_transaction(payload).lower()
    except (RLPException, BadSignature, ValidationError, ValueError, TypeError) as e:
        logger.debug(f"Unable to recover sender of {decoded.hash}: {e}")
    return decoded


def is_staking_tx(tx: DecodedTransaction) -> bool:
    return tx.to is not None and tx.to.lower() == STAKE_TARGET_ADDRESS


def get_stake_tx_blob(tx: DecodedTransaction) -> dict[str, Any] | None:
    """The JSON payload a staking tx carries in its data field."""
    try:
        blob = json.loads(tx.data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Unable to get stake tx blob from {tx.hash}: {e}")
        return None
    return blob if isinstance(blob, dict) else None


def classify_original_tx(original: OriginalTxData) -> OriginalTxData2:
    """
    Derive the lighter, type-indexed record of an original transaction.

    EVM transactions are hashed from their raw bytes and classified as Receipt, Stake or
    Unstake; anything without a raw payload is an internal ledger transaction.

    Raises:
        DecodeError: if an EVM payload cannot be decoded
    """
    tx = (original.original_tx_data or {}).get("tx") or {}
    raw = tx.get("raw") if isinstance(tx, dict) else None
    if not raw:
        return OriginalTxData2(
            tx_id=original.tx_id,
            timestamp=original.timestamp,
            cycle=original.cycle,
            tx_hash="0x" + original.tx_id,
            transaction_type=TransactionType.InternalTxReceipt,
        )

    decoded = decode_raw_transaction(raw)
    transaction_type = TransactionType.Receipt
    if is_staking_tx(decoded):
        blob = get_stake_tx_blob(decoded)
        if blob is not None:
            internal_type = blob.get("internalTXType")
            if internal_type == InternalTXType.Stake:
                transaction_type = TransactionType.StakeReceipt
            elif internal_type == InternalTXType.Unstake:
                transaction_type = TransactionType.UnstakeReceipt
            else:
                logger.warning(f"Unknown staking evm tx type {internal_type} in {original.tx_id}")
    return OriginalTxData2(
        tx_id=original.tx_id,
        timestamp=original.timestamp,
        cycle=original.cycle,
        tx_hash=decoded.hash,
        transaction_type=transaction_type,
    )


def decode_evm_raw_tx_data(original: dict[str, Any], transaction_type: TransactionType | None = None) -> dict[str, Any]:
    """Attach a readableReceipt built from the raw tx to an original-tx wire record."""
    tx = (original.get("originalTxData") or {}).get("tx") or {}
    if not tx.get("raw"):
        return original
    decoded = decode_raw_transaction(tx["raw"])
    readable = decoded.readable()
    if transaction_type in (TransactionType.StakeReceipt, TransactionType.UnstakeReceipt):
        readable["internalTxData"] = get_stake_tx_blob(decoded)
    result = dict(original)
    result["originalTxData"] = {**original["originalTxData"], "readableReceipt": readable}
    return result


# ---------------------------------------------------------------------------
# Token transfers
# ---------------------------------------------------------------------------

def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def _decode_log(log: dict[str, Any]) -> list[dict[str, Any]]:
    topics = [t.lower() for t in log.get("topics") or []]
    if not topics:
        return []
    contract = (log.get("address") or "").lower()
    data = to_bytes(hexstr=log.get("data") or "0x")

    if topics[0] == TRANSFER_TOPIC and len(topics) == 3:
        (value,) = abi_decode(["uint256"], data)
        return [dict(token_type=TransactionType.ERC_20, token_from=_topic_address(topics[1]),
                     token_to=_topic_address(topics[2]), token_value=hex(value), contract_address=contract)]
    if topics[0] == TRANSFER_TOPIC and len(topics) == 4:
        token_id = int(topics[3], 16)
        return [dict(token_type=TransactionType.ERC_721, token_from=_topic_address(topics[1]),
                     token_to=_topic_address(topics[2]), token_value=hex(token_id), token_id=hex(token_id),
                     contract_address=contract)]
    if topics[0] == TRANSFER_SINGLE_TOPIC and len(topics) == 4:
        token_id, value = abi_decode(["uint256", "uint256"], data)
        return [dict(token_type=TransactionType.ERC_1155, token_operator=_topic_address(topics[1]),
                     token_from=_topic_address(topics[2]), token_to=_topic_address(topics[3]),
                     token_value=hex(value), token_id=hex(token_id), contract_address=contract)]
    if topics[0] == TRANSFER_BATCH_TOPIC and len(topics) == 4:
        ids, values = abi_decode(["uint256[]", "uint256[]"], data)
        return [dict(token_type=TransactionType.ERC_1155, token_operator=_topic_address(topics[1]),
                     token_from=_topic_address(topics[2]), token_to=_topic_address(topics[3]),
                     token_value=hex(value), token_id=hex(token_id), contract_address=contract)
                for token_id, value in zip(ids, values)]
    return []


def decode_token_transfers(tx: Transaction, receipt_state: ReceiptAccountState) -> tuple[list[TokenTransfer], list[str]]:
    """
    Extract token transfers from a receipt account's logs and internal value transfers.

    Args:
        tx: The Transaction row built from the receipt account
        receipt_state: The receipt-classified account snapshot

    Returns:
        (transfers, addresses) where addresses are the lower-cased accounts referenced by
        the transaction and its transfers, in first-seen order
    """
    readable = receipt_state.readable_receipt
    fee = receipt_state.data.get("amountSpent") or readable.get("gasUsed") or "0x0"
    decoded: list[dict[str, Any]] = []

    for log in readable.get("logs") or []:
        try:
            decoded.extend(_decode_log(log))
        except (AbiDecodingError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Unable to decode log of {tx.tx_id}: {e}")

    for internal in readable.get("internalTxs") or []:
        value = hex_to_int(internal.get("value"), 0)
        if not value or not internal.get("to"):
            continue
        decoded.append(dict(token_type=TransactionType.EVM_Internal,
                            token_from=(internal.get("from") or "").lower(),
                            token_to=internal["to"].lower(), token_value=hex(value),
                            contract_address=(tx.tx_to or ZERO_ETH_ADDRESS).lower()))

    transfers = [
        TokenTransfer(tx_id=tx.tx_id, tx_hash=tx.tx_hash, cycle=tx.cycle, timestamp=tx.timestamp,
                      log_index=index, transaction_fee=fee, **fields)
        for index, fields in enumerate(decoded)
    ]

    addresses: list[str] = []
    candidates = [tx.tx_from, tx.tx_to]
    for transfer in transfers:
        candidates.extend([transfer.token_from, transfer.token_to])
    for address in candidates:
        if not address:
            continue
        address = address.lower()
        if address not in addresses:
            addresses.append(address)
    return transfers, addresses

