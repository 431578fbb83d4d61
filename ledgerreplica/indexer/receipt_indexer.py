"""
Receipt Indexer for LedgerReplica.

Fans each raw receipt out into the derived read model:

    dedup guard -> raw receipt -> classify after-states
        -> account upserts (last-writer-wins by timestamp)
        -> transaction row from the receipt-classified account
        -> token transfers and placeholder accounts for referenced addresses
        -> account history rows from the signed proposal

Writes are accumulated in buckets (1000 rows, 100 for raw receipts) and flushed as soon
as a bucket fills, with a final flush when the batch completes.
"""

import dataclasses
import logging
from typing import Any, Iterable

from ledgerreplica.core.contract_info import ContractInfoResolver, NullContractInfoResolver
from ledgerreplica.core.exceptions import RecordValidationError
from ledgerreplica.core.tx_decoder import decode_token_transfers
from ledgerreplica.core.types import (
    Account,
    AccountCategory,
    AccountEntry,
    AccountHistoryState,
    AccountType,
    EVMAccountState,
    Receipt,
    ReceiptAccountState,
    TokenTransfer,
    Transaction,
    TransactionType,
)
from ledgerreplica.core.utils import EOA_CODE_HASH, ZERO_ETH_ADDRESS, eth_address_to_account_id, hex_to_int
from ledgerreplica.indexer.account_history import build_history_rows
from ledgerreplica.indexer.dedup import DedupGuard
from ledgerreplica.storage.base import StorageBackend

logger = logging.getLogger(__name__)

BUCKET_SIZE = 1000
RECEIPT_BUCKET_SIZE = 100
PLACEHOLDER_HASH = "Ox"


def transaction_from_receipt_state(tx_id: str, cycle: int, timestamp: int,
                                   receipt_state: ReceiptAccountState,
                                   original_tx_data: dict[str, Any] | None = None) -> Transaction | None:
    """Build a Transaction row from a receipt-classified account, or None without a tx hash."""
    readable = receipt_state.readable_receipt
    tx_hash = receipt_state.tx_hash
    if not tx_hash:
        logger.warning(f"Transaction {tx_id}: receipt account has no ethAddress")
        return None
    block_hash = readable.get("blockHash")
    if not block_hash:
        logger.error(f"Transaction {tx_id} has no blockHash")
    stake_info = readable.get("stakeInfo") or {}
    return Transaction(
        tx_id=tx_id,
        tx_hash=tx_hash,
        cycle=cycle,
        block_number=hex_to_int(readable.get("blockNumber")),
        block_hash=block_hash,
        timestamp=timestamp,
        transaction_type=receipt_state.transaction_type,
        tx_from=readable.get("from"),
        tx_to=readable.get("to") or readable.get("contractAddress"),
        wrapped_account_data=receipt_state.data,
        original_tx_data=original_tx_data or {},
        nominee=stake_info.get("nominee"),
    )


@dataclasses.dataclass
class ReceiptRows:
    """Rows derived from one receipt, built before any of them is buffered."""
    accounts: list[Account] = dataclasses.field(default_factory=list)
    contract_accounts: list[Account] = dataclasses.field(default_factory=list)
    receipt_state: ReceiptAccountState | None = None
    transaction: Transaction | None = None
    transfers: list[TokenTransfer] = dataclasses.field(default_factory=list)
    addresses: list[str] = dataclasses.field(default_factory=list)
    history: list[AccountHistoryState] = dataclasses.field(default_factory=list)


class WriteBuckets:
    """Per-batch write buffers, keyed by natural key so later rows replace earlier ones."""

    def __init__(self, storage: StorageBackend, account_entries: bool = False):
        self.storage = storage
        self.account_entries = account_entries
        self.receipts: list[Receipt] = []
        self.accounts: dict[str, Account] = {}
        self.transactions: dict[tuple[str, str], Transaction] = {}
        self.token_transfers: dict[tuple[str, int], TokenTransfer] = {}
        self.history: list[AccountHistoryState] = []

    def add_account(self, account: Account) -> None:
        """Buffer an account, keeping the newest snapshot per account id over any placeholder."""
        buffered = self.accounts.get(account.account_id)
        if buffered is None or buffered.timestamp < account.timestamp or buffered.hash == PLACEHOLDER_HASH:
            self.accounts[account.account_id] = account

    def has_eth_address(self, eth_address: str) -> bool:
        return any(a.eth_address == eth_address for a in self.accounts.values())

    def flush_receipts(self, force: bool = False):
        if self.receipts and (force or len(self.receipts) >= RECEIPT_BUCKET_SIZE):
            self.storage.upsert_receipts(self.receipts)
            self.receipts = []

    def flush(self, force: bool = False):
        if self.accounts and (force or len(self.accounts) >= BUCKET_SIZE):
            accounts = list(self.accounts.values())
            self.storage.upsert_accounts(accounts)
            if self.account_entries:
                self.storage.upsert_account_entries([
                    AccountEntry(account_id=a.account_id, timestamp=a.timestamp, data=a.to_dict())
                    for a in accounts
                ])
            self.accounts = {}
        if self.transactions and (force or len(self.transactions) >= BUCKET_SIZE):
            self.storage.upsert_transactions(list(self.transactions.values()))
            self.transactions = {}
        if self.token_transfers and (force or len(self.token_transfers) >= BUCKET_SIZE):
            self.storage.upsert_token_transfers(list(self.token_transfers.values()))
            self.token_transfers = {}
        if self.history and (force or len(self.history) >= BUCKET_SIZE):
            self.storage.upsert_account_history_states(self.history)
            self.history = []

    def flush_all(self):
        self.flush_receipts(force=True)
        self.flush(force=True)


class ReceiptIndexer:
    """
    Idempotently persist receipts and every record derivable from them.

    Args:
        storage: Persistence facade
        dedup: Guard shared by every receipt ingestion path
        config: Settings object (processing switches)
        contract_resolver: Contract metadata lookup for new contract accounts
        publisher: Optional LogPublisher receiving each batch of new receipts
        metrics: Optional SyncMetrics
    """

    def __init__(self, storage: StorageBackend, dedup: DedupGuard, config=None,
                 contract_resolver: ContractInfoResolver | None = None,
                 publisher=None, metrics=None):
        if config is None:
            from ledgerreplica.config.settings import settings
            config = settings
        self.storage = storage
        self.dedup = dedup
        self.config = config
        self.contract_resolver = contract_resolver or NullContractInfoResolver()
        self.publisher = publisher
        self.metrics = metrics

    def _count(self, name: str, value: int = 1):
        if self.metrics:
            self.metrics.increment(name, value)

    def _parse(self, item: Receipt | dict[str, Any]) -> Receipt | None:
        if isinstance(item, Receipt):
            return item
        try:
            return Receipt.from_dict(item)
        except (RecordValidationError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed receipt: {e}")
            self._count("receipts_dropped")
            return None

    async def process_receipts(self, receipts: Iterable[Receipt | dict[str, Any]],
                               save_only_new: bool = False) -> int:
        """
        Persist a batch of receipts and their derived rows.

        A receipt whose derived rows cannot be built is dropped on its own; the rest of
        the batch continues.

        Args:
            receipts: Receipt records or raw distributor receipt objects
            save_only_new: Skip the raw receipt write when the receipt is already stored

        Returns:
            int: Number of receipts that passed the dedup guard and were persisted
        """
        buckets = WriteBuckets(self.storage, account_entries=self.config.ENABLE_ACCOUNT_ENTRIES)
        forwarded: list[dict[str, Any]] = []
        processed = 0

        for item in receipts:
            receipt = self._parse(item)
            if receipt is None:
                continue
            if not self.dedup.check_and_mark(receipt.tx_id, receipt.timestamp):
                self._count("receipt_dedup_hits")
                continue

            rows = None
            if self.config.INDEX_RECEIPT:
                try:
                    rows = self.derive_rows(receipt)
                except (RecordValidationError, KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.warning(f"Dropping receipt {receipt.tx_id}: {e}")
                    self._count("receipts_dropped")
                    continue
            processed += 1

            stored = receipt if self.config.STORE_RECEIPT_BEFORE_STATES \
                else dataclasses.replace(receipt, before_states=[])
            if not save_only_new or self.storage.get_receipt(receipt.receipt_id) is None:
                buckets.receipts.append(stored)
            if self.publisher is not None:
                forwarded.append(receipt.to_dict())
            buckets.flush_receipts()

            if rows is None:
                continue
            await self._buffer_rows(rows, buckets)
            buckets.flush()

        buckets.flush_all()
        self._count("receipts_processed", processed)
        if forwarded:
            await self.publisher.publish_receipts(forwarded)
        logger.debug(f"Processed {processed} receipts")
        return processed

    def derive_rows(self, receipt: Receipt) -> ReceiptRows:
        """
        Build every row a receipt fans out into, without touching the write buffers.

        Raises:
            RecordValidationError, KeyError, TypeError, ValueError, AttributeError:
                if the receipt's states or readable receipt are malformed
        """
        rows = ReceiptRows()
        for state in receipt.after_states:
            if state.category is AccountCategory.UNKNOWN:
                logger.warning(f"Receipt {receipt.tx_id}: unrecognised account type "
                               f"{state.account_type} for {state.account_id}")
                continue
            if state.category is AccountCategory.RECEIPT:
                rows.receipt_state = state
                continue

            account = Account.from_state(state, receipt.cycle)
            if isinstance(state, EVMAccountState) and self.config.DECODE_CONTRACT_INFO:
                code_hash = state.code_hash
                if code_hash is not None and code_hash != EOA_CODE_HASH:
                    rows.contract_accounts.append(account)
                    continue
            rows.accounts.append(account)

        block_number = block_hash = None
        if rows.receipt_state is None:
            logger.debug(f"Receipt {receipt.tx_id} carries no receipt account")
        else:
            rows.transaction = self.build_transaction(receipt, rows.receipt_state)
            if rows.transaction is not None:
                rows.transfers, rows.addresses = self.derive_transfers(rows.transaction, rows.receipt_state)
                block_number, block_hash = rows.transaction.block_number, rows.transaction.block_hash

        if self.config.SAVE_ACCOUNT_HISTORY_STATE:
            rows.history = build_history_rows(receipt, block_number, block_hash)
        return rows

    async def _buffer_rows(self, rows: ReceiptRows, buckets: WriteBuckets):
        for account in rows.contract_accounts:
            await self.store_contract_account(account)
        for account in rows.accounts:
            buckets.add_account(account)
        if rows.transaction is not None:
            self.buffer_transaction(rows.transaction, rows.transfers, rows.addresses, buckets)
        buckets.history.extend(rows.history)

    async def store_contract_account(self, account: Account):
        """Contract accounts resolve their metadata once, when first seen."""
        existing = self.storage.get_account(account.account_id)
        if existing is None:
            contract_info, contract_type = await self.contract_resolver.resolve(account.eth_address)
            account.contract_info = contract_info
            account.contract_type = int(contract_type)
        elif existing.timestamp < account.timestamp:
            account.contract_info = existing.contract_info
            account.contract_type = existing.contract_type
        else:
            return
        self.storage.upsert_accounts([account])

    def build_transaction(self, receipt: Receipt, receipt_state: ReceiptAccountState) -> Transaction | None:
        """Derive the Transaction row of a receipt from its receipt-classified account."""
        return transaction_from_receipt_state(
            tx_id=receipt.tx_id,
            cycle=receipt.cycle,
            timestamp=int(receipt.tx.get("timestamp", receipt.timestamp)),
            receipt_state=receipt_state,
            original_tx_data=receipt.tx.get("originalTxData") or {},
        )

    def derive_transfers(self, tx: Transaction,
                         receipt_state: ReceiptAccountState) -> tuple[list[TokenTransfer], list[str]]:
        if self.config.DECODE_TOKEN_TRANSFER:
            return decode_token_transfers(tx, receipt_state)
        return [], list(dict.fromkeys(a.lower() for a in (tx.tx_from, tx.tx_to) if a))

    def index_transaction(self, tx: Transaction, receipt_state: ReceiptAccountState,
                          buckets: WriteBuckets) -> tuple[int | None, str | None]:
        """
        Buffer a transaction row with its token transfers and placeholder accounts.

        Returns:
            (block_number, block_hash) of the transaction
        """
        transfers, addresses = self.derive_transfers(tx, receipt_state)
        self.buffer_transaction(tx, transfers, addresses, buckets)
        return tx.block_number, tx.block_hash

    def buffer_transaction(self, tx: Transaction, transfers: list[TokenTransfer], addresses: list[str],
                           buckets: WriteBuckets):
        existing = self.storage.get_transaction(tx.tx_id)
        if existing is None or existing.timestamp < tx.timestamp:
            buckets.transactions[(tx.tx_id, tx.tx_hash)] = tx

        for address in addresses:
            self._add_placeholder_account(address, tx, buckets)

        for transfer in transfers:
            if transfer.token_type != TransactionType.EVM_Internal:
                contract = self.storage.get_account(eth_address_to_account_id(transfer.contract_address))
                if contract is not None and contract.contract_info:
                    transfer.contract_info = contract.contract_info
            buckets.token_transfers[(transfer.tx_id, transfer.log_index)] = transfer

    def _add_placeholder_account(self, address: str, tx: Transaction, buckets: WriteBuckets):
        """Create a placeholder for an address that is referenced but not stored yet."""
        if address == ZERO_ETH_ADDRESS or buckets.has_eth_address(address):
            return
        account_id = eth_address_to_account_id(address)
        if account_id in buckets.accounts or self.storage.get_account(account_id) is not None:
            return
        buckets.accounts[account_id] = Account(
            account_id=account_id,
            eth_address=address,
            cycle=tx.cycle,
            timestamp=tx.timestamp,
            account_type=int(AccountType.Account),
            data={"nonce": "0", "balance": "0"},
            hash=PLACEHOLDER_HASH,
            is_global=False,
        )
