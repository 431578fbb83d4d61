"""
Storage backend interface for LedgerReplica.

Every component reads and writes through this facade. Two implementations conform to
it (SQL and in-memory) and one of them is selected once at startup by
``create_storage``; no call site branches on the engine.

All bulk upserts are idempotent on the natural keys of their record kind:

- cycles: counter
- receipts: receipt id
- original txs (and their derived records): tx id
- accounts: account id, applied only when the incoming timestamp is strictly newer
- transactions: (tx id, tx hash)
- token transfers: (tx id, log index)
- blocks: number
- account history states: (account id, timestamp)
"""

from abc import ABC, abstractmethod

from ledgerreplica.core.types import (
    Account,
    AccountEntry,
    AccountHistoryState,
    Block,
    Cycle,
    OriginalTxData,
    OriginalTxData2,
    Receipt,
    TallyEntry,
    TokenTransfer,
    Transaction,
)


class StorageBackend(ABC):
    """Persistence facade over the replica's record kinds."""

    # Cycles
    @abstractmethod
    def upsert_cycles(self, cycles: list[Cycle]) -> None: ...

    @abstractmethod
    def get_cycle_by_marker(self, marker: str) -> Cycle | None: ...

    @abstractmethod
    def get_cycle_by_counter(self, counter: int) -> Cycle | None: ...

    @abstractmethod
    def get_cycles_between(self, start: int, end: int) -> list[Cycle]:
        """Cycles with start <= counter <= end, ascending by counter."""

    @abstractmethod
    def get_latest_cycle(self) -> Cycle | None: ...

    @abstractmethod
    def count_cycles(self) -> int: ...

    # Receipts
    @abstractmethod
    def upsert_receipts(self, receipts: list[Receipt]) -> None: ...

    @abstractmethod
    def get_receipt(self, receipt_id: str) -> Receipt | None: ...

    @abstractmethod
    def get_receipts(self, skip: int = 0, limit: int = 100) -> list[Receipt]:
        """Receipts ordered by (cycle, timestamp) ascending."""

    @abstractmethod
    def count_receipts(self) -> int: ...

    @abstractmethod
    def count_receipts_by_cycles(self, start: int, end: int) -> list[TallyEntry]:
        """Per-cycle receipt counts for cycles in [start, end], ascending."""

    @abstractmethod
    def get_latest_receipt_cycle(self) -> int | None: ...

    # Original transactions
    @abstractmethod
    def upsert_original_txs(self, txs: list[OriginalTxData]) -> None: ...

    @abstractmethod
    def upsert_original_txs2(self, txs: list[OriginalTxData2]) -> None: ...

    @abstractmethod
    def get_original_tx(self, tx_id: str) -> OriginalTxData | None: ...

    @abstractmethod
    def get_original_tx2(self, tx_id: str) -> OriginalTxData2 | None: ...

    @abstractmethod
    def count_original_txs(self) -> int: ...

    @abstractmethod
    def count_original_txs_by_cycles(self, start: int, end: int) -> list[TallyEntry]: ...

    @abstractmethod
    def get_latest_original_tx_cycle(self) -> int | None: ...

    # Accounts
    @abstractmethod
    def upsert_accounts(self, accounts: list[Account]) -> None: ...

    @abstractmethod
    def get_account(self, account_id: str) -> Account | None: ...

    @abstractmethod
    def count_accounts_between_cycles(self, start: int, end: int) -> int: ...

    @abstractmethod
    def upsert_account_entries(self, entries: list[AccountEntry]) -> None: ...

    # Transactions and token transfers
    @abstractmethod
    def upsert_transactions(self, transactions: list[Transaction]) -> None: ...

    @abstractmethod
    def get_transaction(self, tx_id: str) -> Transaction | None: ...

    @abstractmethod
    def get_transactions_by_block(self, block_number: int) -> list[Transaction]:
        """
        Block transactions (Receipt, Stake and Unstake types) of one block number in
        persisted order: timestamp ascending, insertion order breaking ties.
        """

    @abstractmethod
    def count_transactions_between_cycles(self, start: int, end: int) -> int: ...

    @abstractmethod
    def upsert_token_transfers(self, transfers: list[TokenTransfer]) -> None: ...

    @abstractmethod
    def get_token_transfers(self, tx_id: str) -> list[TokenTransfer]: ...

    # Blocks
    @abstractmethod
    def upsert_blocks(self, blocks: list[Block]) -> None: ...

    @abstractmethod
    def get_block_by_number(self, number: int) -> Block | None:
        """Block by number without any freshness filtering."""

    @abstractmethod
    def get_block_by_hash(self, block_hash: str) -> Block | None: ...

    @abstractmethod
    def get_latest_block(self) -> Block | None: ...

    @abstractmethod
    def count_blocks(self) -> int: ...

    # Account history
    @abstractmethod
    def upsert_account_history_states(self, states: list[AccountHistoryState]) -> None: ...

    @abstractmethod
    def get_account_history_state(self, account_id: str,
                                  before_block: int | None = None) -> AccountHistoryState | None:
        """Newest history row of an account, optionally restricted to blockNumber < before_block."""

    @abstractmethod
    def count_account_history_states(self) -> int: ...

    def close(self) -> None:
        """Release backend resources."""
        return None
