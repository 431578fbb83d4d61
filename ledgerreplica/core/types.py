"""
Record types for the LedgerReplica pipeline.

Wire payloads from the distributor use camelCase keys; every record here is a dataclass
with ``from_dict`` (wire -> record) and ``to_dict`` (record -> wire) so the same shape is
stored, forwarded downstream and compared during reconciliation.

Account snapshots are modelled as a small class hierarchy keyed by account type:
``AccountState.from_dict`` is the single place where the account-type switch lives.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from ledgerreplica.core.exceptions import RecordValidationError


class AccountType(IntEnum):
    """Account types as emitted by the ledger network."""
    Account = 0
    Receipt = 1
    ContractStorage = 2
    ContractCode = 3
    Debug = 4
    NetworkAccount = 5
    NodeAccount = 6
    NodeRewardReceipt = 7
    DevAccount = 8
    NodeAccount2 = 9
    StakeReceipt = 10
    UnstakeReceipt = 11
    InternalTxReceipt = 12


class TransactionType(IntEnum):
    Receipt = 0
    NodeRewardReceipt = 1
    StakeReceipt = 2
    UnstakeReceipt = 3
    EVM_Internal = 4
    ERC_20 = 5
    ERC_721 = 6
    ERC_1155 = 7
    InternalTxReceipt = 8


class ContractType(IntEnum):
    GENERIC = 0
    ERC_20 = 1
    ERC_721 = 2
    ERC_1155 = 3


class InternalTXType(IntEnum):
    """Internal system transaction types carried in the data field of a staking tx."""
    SetGlobalCodeBytes = 0
    InitNetwork = 1
    NodeReward = 2
    ChangeConfig = 3
    ApplyChangeConfig = 4
    SetCertTime = 5
    Stake = 6
    Unstake = 7
    InitRewardTimes = 8
    ClaimReward = 9
    ChangeNetworkParam = 10
    ApplyNetworkParam = 11
    Penalty = 12


class AccountCategory(Enum):
    EVM = "evm"
    NETWORK = "network"
    RECEIPT = "receipt"
    UNKNOWN = "unknown"


_EVM_TYPES = {AccountType.Account, AccountType.ContractStorage, AccountType.ContractCode}
_NETWORK_TYPES = {AccountType.NetworkAccount, AccountType.DevAccount,
                  AccountType.NodeAccount, AccountType.NodeAccount2}
_RECEIPT_TYPES = {
    AccountType.Receipt: TransactionType.Receipt,
    AccountType.NodeRewardReceipt: TransactionType.NodeRewardReceipt,
    AccountType.StakeReceipt: TransactionType.StakeReceipt,
    AccountType.UnstakeReceipt: TransactionType.UnstakeReceipt,
    AccountType.InternalTxReceipt: TransactionType.InternalTxReceipt,
}

# Transaction types that belong to a synthetic block's transaction list
BLOCK_TRANSACTION_TYPES = (TransactionType.Receipt, TransactionType.StakeReceipt,
                           TransactionType.UnstakeReceipt)


def classify_account_type(account_type: Any) -> AccountCategory:
    """Map a raw account type value onto one of the indexer's account categories."""
    try:
        account_type = AccountType(account_type)
    except (ValueError, TypeError):
        return AccountCategory.UNKNOWN
    if account_type in _EVM_TYPES:
        return AccountCategory.EVM
    if account_type in _NETWORK_TYPES:
        return AccountCategory.NETWORK
    if account_type in _RECEIPT_TYPES:
        return AccountCategory.RECEIPT
    return AccountCategory.UNKNOWN


def transaction_type_for(account_type: AccountType) -> TransactionType:
    """Transaction type of a receipt-classified account type."""
    return _RECEIPT_TYPES[AccountType(account_type)]


# ---------------------------------------------------------------------------
# Account snapshots
# ---------------------------------------------------------------------------

@dataclass
class AccountState:
    """An account snapshot as carried in a receipt's before/after states."""
    account_id: str
    data: dict[str, Any]
    hash: str
    timestamp: int
    is_global: bool = False

    category = AccountCategory.UNKNOWN

    @property
    def account_type(self) -> Any:
        return self.data.get("accountType")

    @property
    def eth_address(self) -> str | None:
        return None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "AccountState":
        data = raw.get("data")
        if not isinstance(data, dict) or "accountId" not in raw:
            raise RecordValidationError(f"Malformed account state: {raw.get('accountId')}")
        state_cls = _STATE_CLASSES[classify_account_type(data.get("accountType"))]
        return state_cls(
            account_id=raw["accountId"],
            data=data,
            hash=raw.get("hash", ""),
            timestamp=int(raw.get("timestamp", 0)),
            is_global=bool(raw.get("isGlobal", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "data": self.data,
            "hash": self.hash,
            "timestamp": self.timestamp,
            "isGlobal": self.is_global,
        }


@dataclass
class EVMAccountState(AccountState):
    """Externally owned account, contract storage slot or contract code."""
    category = AccountCategory.EVM

    @property
    def eth_address(self) -> str | None:
        address = self.data.get("ethAddress")
        return address.lower() if address else None

    @property
    def code_hash(self) -> str | None:
        """Hex code hash of an Account-typed snapshot, or None for storage/code entries."""
        account = self.data.get("account")
        if self.account_type != AccountType.Account or not isinstance(account, dict):
            return None
        return normalize_bytes_field(account.get("codeHash"))


@dataclass
class NetworkAccountState(AccountState):
    """Network, dev and node accounts; keyed by their raw id as a stand-in address."""
    category = AccountCategory.NETWORK

    @property
    def eth_address(self) -> str | None:
        return self.account_id


@dataclass
class ReceiptAccountState(AccountState):
    """Receipt-bearing account used to build the Transaction row."""
    category = AccountCategory.RECEIPT

    @property
    def readable_receipt(self) -> dict[str, Any]:
        return self.data.get("readableReceipt") or {}

    @property
    def transaction_type(self) -> TransactionType:
        return transaction_type_for(self.account_type)

    @property
    def tx_hash(self) -> str | None:
        return self.data.get("ethAddress")


@dataclass
class UnknownAccountState(AccountState):
    category = AccountCategory.UNKNOWN


_STATE_CLASSES = {
    AccountCategory.EVM: EVMAccountState,
    AccountCategory.NETWORK: NetworkAccountState,
    AccountCategory.RECEIPT: ReceiptAccountState,
    AccountCategory.UNKNOWN: UnknownAccountState,
}


def normalize_bytes_field(value: Any) -> str | None:
    """
    Normalise a byte field that may arrive as a hex string, a list of ints or a
    JSON-serialised Uint8Array (``{"0": 197, "1": 210, ...}``) into a 0x hex string.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    if isinstance(value, dict):
        if value.get("type") == "Buffer" and "data" in value:
            value = value["data"]
        else:
            value = [value[k] for k in sorted(value, key=lambda k: int(k))]
    if isinstance(value, (list, tuple, bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return None


# ---------------------------------------------------------------------------
# Ledger artifacts
# ---------------------------------------------------------------------------

@dataclass
class Cycle:
    counter: int
    marker: str
    record: dict[str, Any]

    @property
    def start(self) -> int:
        return int(self.record.get("start", 0))

    @property
    def duration(self) -> int:
        return int(self.record.get("duration", 0))

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Cycle":
        """Build a Cycle from a distributor cycle record; invalid records are rejected."""
        if not isinstance(record, dict):
            raise RecordValidationError(f"Invalid Cycle Received: {record!r}")
        marker = record.get("marker")
        counter = record.get("counter")
        if not marker or not isinstance(counter, int) or counter < 0:
            raise RecordValidationError(f"Invalid Cycle Received: counter={counter} marker={marker}")
        return cls(counter=counter, marker=marker, record=record)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Cycle":
        return cls(counter=raw["counter"], marker=raw["cycleMarker"], record=raw["cycleRecord"])

    def to_dict(self) -> dict[str, Any]:
        return {"counter": self.counter, "cycleMarker": self.marker, "cycleRecord": self.record}


@dataclass
class SignedProposal:
    account_ids: list[str]
    before_state_hashes: list[str]
    after_state_hashes: list[str]

    def __post_init__(self):
        if not (len(self.account_ids) == len(self.before_state_hashes) == len(self.after_state_hashes)):
            raise RecordValidationError("Signed proposal arrays must have equal length")

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SignedProposal":
        return cls(
            account_ids=list(raw.get("accountIDs") or []),
            before_state_hashes=list(raw.get("beforeStateHashes") or []),
            after_state_hashes=list(raw.get("afterStateHashes") or []),
        )


@dataclass
class Receipt:
    receipt_id: str
    tx: dict[str, Any]
    cycle: int
    timestamp: int
    before_states: list[AccountState]
    after_states: list[AccountState]
    app_receipt_data: dict[str, Any] | None = None
    signed_receipt: dict[str, Any] | None = None
    global_modification: bool = False

    @property
    def tx_id(self) -> str:
        return self.tx["txId"]

    @property
    def proposal(self) -> SignedProposal | None:
        if not self.signed_receipt or not self.signed_receipt.get("proposal"):
            return None
        return SignedProposal.from_dict(self.signed_receipt["proposal"])

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Receipt":
        tx = raw.get("tx") or {}
        if not tx.get("txId"):
            raise RecordValidationError(f"Receipt without tx.txId: {raw.get('receiptId')}")
        if "cycle" not in raw or "timestamp" not in raw:
            raise RecordValidationError(f"Receipt {tx['txId']} lacks cycle or timestamp")
        return cls(
            receipt_id=raw.get("receiptId") or tx["txId"],
            tx=tx,
            cycle=int(raw["cycle"]),
            timestamp=int(raw["timestamp"]),
            before_states=[AccountState.from_dict(s) for s in raw.get("beforeStates") or []],
            after_states=[AccountState.from_dict(s) for s in raw.get("afterStates") or []],
            app_receipt_data=raw.get("appReceiptData"),
            signed_receipt=raw.get("signedReceipt"),
            global_modification=bool(raw.get("globalModification", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "receiptId": self.receipt_id,
            "tx": self.tx,
            "cycle": self.cycle,
            "timestamp": self.timestamp,
            "beforeStates": [s.to_dict() for s in self.before_states],
            "afterStates": [s.to_dict() for s in self.after_states],
            "appReceiptData": self.app_receipt_data,
            "signedReceipt": self.signed_receipt,
            "globalModification": self.global_modification,
        }


@dataclass
class OriginalTxData:
    tx_id: str
    timestamp: int
    cycle: int
    original_tx_data: dict[str, Any]
    sign: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "OriginalTxData":
        if not raw.get("txId") or "timestamp" not in raw:
            raise RecordValidationError(f"Malformed original tx: {raw.get('txId')}")
        return cls(
            tx_id=raw["txId"],
            timestamp=int(raw["timestamp"]),
            cycle=int(raw.get("cycle", 0)),
            original_tx_data=raw.get("originalTxData") or {},
            sign=raw.get("sign"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "txId": self.tx_id,
            "timestamp": self.timestamp,
            "cycle": self.cycle,
            "originalTxData": self.original_tx_data,
            "sign": self.sign,
        }


@dataclass
class OriginalTxData2:
    tx_id: str
    timestamp: int
    cycle: int
    tx_hash: str
    transaction_type: TransactionType

    def to_dict(self) -> dict[str, Any]:
        return {
            "txId": self.tx_id,
            "timestamp": self.timestamp,
            "cycle": self.cycle,
            "txHash": self.tx_hash,
            "transactionType": int(self.transaction_type),
        }


# ---------------------------------------------------------------------------
# Derived rows
# ---------------------------------------------------------------------------

@dataclass
class Account:
    account_id: str
    eth_address: str | None
    cycle: int
    timestamp: int
    account_type: int
    data: dict[str, Any]
    hash: str
    is_global: bool = False
    contract_info: dict[str, Any] | None = None
    contract_type: int | None = None

    @classmethod
    def from_state(cls, state: AccountState, cycle: int) -> "Account":
        return cls(
            account_id=state.account_id,
            eth_address=state.eth_address,
            cycle=cycle,
            timestamp=state.timestamp,
            account_type=int(state.account_type),
            data=state.data,
            hash=state.hash,
            is_global=state.is_global,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "ethAddress": self.eth_address,
            "cycle": self.cycle,
            "timestamp": self.timestamp,
            "accountType": self.account_type,
            "account": self.data,
            "hash": self.hash,
            "isGlobal": self.is_global,
            "contractInfo": self.contract_info,
            "contractType": self.contract_type,
        }


@dataclass
class AccountEntry:
    account_id: str
    timestamp: int
    data: dict[str, Any]


@dataclass
class Transaction:
    tx_id: str
    tx_hash: str
    cycle: int
    block_number: int | None
    block_hash: str | None
    timestamp: int
    transaction_type: TransactionType
    tx_from: str | None
    tx_to: str | None
    wrapped_account_data: dict[str, Any]
    original_tx_data: dict[str, Any] = field(default_factory=dict)
    nominee: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "txId": self.tx_id,
            "txHash": self.tx_hash,
            "cycle": self.cycle,
            "blockNumber": self.block_number,
            "blockHash": self.block_hash,
            "timestamp": self.timestamp,
            "transactionType": int(self.transaction_type),
            "txFrom": self.tx_from,
            "txTo": self.tx_to,
            "nominee": self.nominee,
            "wrappedEVMAccount": self.wrapped_account_data,
            "originalTxData": self.original_tx_data,
        }


@dataclass
class TokenTransfer:
    tx_id: str
    tx_hash: str
    cycle: int
    timestamp: int
    log_index: int
    token_type: TransactionType
    token_from: str
    token_to: str
    token_value: str
    contract_address: str
    transaction_fee: str = "0x0"
    token_operator: str | None = None
    token_id: str | None = None
    contract_info: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "txId": self.tx_id,
            "txHash": self.tx_hash,
            "cycle": self.cycle,
            "timestamp": self.timestamp,
            "logIndex": self.log_index,
            "tokenType": int(self.token_type),
            "tokenFrom": self.token_from,
            "tokenTo": self.token_to,
            "tokenOperator": self.token_operator,
            "tokenId": self.token_id,
            "tokenValue": self.token_value,
            "contractAddress": self.contract_address,
            "transactionFee": self.transaction_fee,
            "contractInfo": self.contract_info,
        }


@dataclass
class Block:
    number: int
    number_hex: str
    hash: str
    parent_hash: str
    timestamp: int  # milliseconds
    cycle: int
    transactions_root: str
    readable_block: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "numberHex": self.number_hex,
            "hash": self.hash,
            "parentHash": self.parent_hash,
            "timestamp": self.timestamp,
            "cycle": self.cycle,
            "transactionsRoot": self.transactions_root,
            "readableBlock": self.readable_block,
        }


@dataclass
class AccountHistoryState:
    account_id: str
    before_state_hash: str
    after_state_hash: str
    timestamp: int
    block_number: int
    block_hash: str
    receipt_id: str


@dataclass(frozen=True)
class TallyEntry:
    """Per-cycle item count reported by the distributor or computed locally."""
    cycle: int
    count: int
