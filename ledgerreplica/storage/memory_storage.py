"""
Memory Storage Module for LedgerReplica

In-memory implementation of the storage facade, used by tests and short-lived runs.
Records are kept in dicts keyed by their natural keys and copied on the way in and out
so callers never alias stored state.
"""

import copy
import itertools
import threading
from collections import Counter
from typing import Any

from ledgerreplica.core.types import (
    Account,
    AccountEntry,
    AccountHistoryState,
    BLOCK_TRANSACTION_TYPES,
    Block,
    Cycle,
    OriginalTxData,
    OriginalTxData2,
    Receipt,
    TallyEntry,
    TokenTransfer,
    Transaction,
)
from ledgerreplica.storage.base import StorageBackend


class MemoryStorageBackend(StorageBackend):
    """Simple in-memory storage backend"""

    def __init__(self):
        self._lock = threading.RLock()
        self.cycles: dict[int, Cycle] = {}
        self.receipts: dict[str, Receipt] = {}
        self.original_txs: dict[str, OriginalTxData] = {}
        self.original_txs2: dict[str, OriginalTxData2] = {}
        self.accounts: dict[str, Account] = {}
        self.account_entries: dict[str, AccountEntry] = {}
        # (tx_id, tx_hash) -> (insertion sequence, Transaction)
        self.transactions: dict[tuple[str, str], tuple[int, Transaction]] = {}
        self.token_transfers: dict[tuple[str, int], TokenTransfer] = {}
        self.blocks: dict[int, Block] = {}
        self.history: dict[tuple[str, int], AccountHistoryState] = {}
        self._sequence = itertools.count()

    @staticmethod
    def _copy(value: Any) -> Any:
        return copy.deepcopy(value)

    @staticmethod
    def _tally(records, start: int, end: int) -> list[TallyEntry]:
        counts = Counter(r.cycle for r in records if start <= r.cycle <= end)
        return [TallyEntry(cycle=c, count=counts[c]) for c in sorted(counts)]

    # Cycles
    def upsert_cycles(self, cycles: list[Cycle]) -> None:
        with self._lock:
            for cycle in cycles:
                self.cycles[cycle.counter] = self._copy(cycle)

    def get_cycle_by_marker(self, marker: str) -> Cycle | None:
        with self._lock:
            for cycle in self.cycles.values():
                if cycle.marker == marker:
                    return self._copy(cycle)
        return None

    def get_cycle_by_counter(self, counter: int) -> Cycle | None:
        with self._lock:
            return self._copy(self.cycles.get(counter))

    def get_cycles_between(self, start: int, end: int) -> list[Cycle]:
        with self._lock:
            return [self._copy(self.cycles[c]) for c in sorted(self.cycles) if start <= c <= end]

    def get_latest_cycle(self) -> Cycle | None:
        with self._lock:
            if not self.cycles:
                return None
            return self._copy(self.cycles[max(self.cycles)])

    def count_cycles(self) -> int:
        with self._lock:
            return len(self.cycles)

    # Receipts
    def upsert_receipts(self, receipts: list[Receipt]) -> None:
        with self._lock:
            for receipt in receipts:
                self.receipts[receipt.receipt_id] = self._copy(receipt)

    def get_receipt(self, receipt_id: str) -> Receipt | None:
        with self._lock:
            return self._copy(self.receipts.get(receipt_id))

    def get_receipts(self, skip: int = 0, limit: int = 100) -> list[Receipt]:
        with self._lock:
            ordered = sorted(self.receipts.values(), key=lambda r: (r.cycle, r.timestamp))
            return self._copy(ordered[skip:skip + limit])

    def count_receipts(self) -> int:
        with self._lock:
            return len(self.receipts)

    def count_receipts_by_cycles(self, start: int, end: int) -> list[TallyEntry]:
        with self._lock:
            return self._tally(self.receipts.values(), start, end)

    def get_latest_receipt_cycle(self) -> int | None:
        with self._lock:
            return max((r.cycle for r in self.receipts.values()), default=None)

    # Original transactions
    def upsert_original_txs(self, txs: list[OriginalTxData]) -> None:
        with self._lock:
            for tx in txs:
                self.original_txs[tx.tx_id] = self._copy(tx)

    def upsert_original_txs2(self, txs: list[OriginalTxData2]) -> None:
        with self._lock:
            for tx in txs:
                self.original_txs2[tx.tx_id] = self._copy(tx)

    def get_original_tx(self, tx_id: str) -> OriginalTxData | None:
        with self._lock:
            return self._copy(self.original_txs.get(tx_id))

    def get_original_tx2(self, tx_id: str) -> OriginalTxData2 | None:
        with self._lock:
            return self._copy(self.original_txs2.get(tx_id))

    def count_original_txs(self) -> int:
        with self._lock:
            return len(self.original_txs)

    def count_original_txs_by_cycles(self, start: int, end: int) -> list[TallyEntry]:
        with self._lock:
            return self._tally(self.original_txs.values(), start, end)

    def get_latest_original_tx_cycle(self) -> int | None:
        with self._lock:
            return max((t.cycle for t in self.original_txs.values()), default=None)

    # Accounts
    def upsert_accounts(self, accounts: list[Account]) -> None:
        with self._lock:
            for account in accounts:
                existing = self.accounts.get(account.account_id)
                if existing is None or existing.timestamp < account.timestamp:
                    self.accounts[account.account_id] = self._copy(account)

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            return self._copy(self.accounts.get(account_id))

    def count_accounts_between_cycles(self, start: int, end: int) -> int:
        with self._lock:
            return sum(1 for a in self.accounts.values() if start <= a.cycle <= end)

    def upsert_account_entries(self, entries: list[AccountEntry]) -> None:
        with self._lock:
            for entry in entries:
                existing = self.account_entries.get(entry.account_id)
                if existing is None or existing.timestamp < entry.timestamp:
                    self.account_entries[entry.account_id] = self._copy(entry)

    # Transactions and token transfers
    def upsert_transactions(self, transactions: list[Transaction]) -> None:
        with self._lock:
            for tx in transactions:
                key = (tx.tx_id, tx.tx_hash)
                # An update keeps the original insertion position
                sequence = self.transactions[key][0] if key in self.transactions else next(self._sequence)
                self.transactions[key] = (sequence, self._copy(tx))

    def get_transaction(self, tx_id: str) -> Transaction | None:
        with self._lock:
            matches = [tx for _, tx in self.transactions.values() if tx.tx_id == tx_id]
            if not matches:
                return None
            return self._copy(max(matches, key=lambda t: t.timestamp))

    def get_transactions_by_block(self, block_number: int) -> list[Transaction]:
        with self._lock:
            rows = [
                (tx.timestamp, sequence, tx) for sequence, tx in self.transactions.values()
                if tx.block_number == block_number and tx.transaction_type in BLOCK_TRANSACTION_TYPES
            ]
            rows.sort(key=lambda row: (row[0], row[1]))
            return [self._copy(tx) for _, _, tx in rows]

    def count_transactions_between_cycles(self, start: int, end: int) -> int:
        with self._lock:
            return sum(1 for _, tx in self.transactions.values() if start <= tx.cycle <= end)

    def upsert_token_transfers(self, transfers: list[TokenTransfer]) -> None:
        with self._lock:
            for transfer in transfers:
                self.token_transfers[(transfer.tx_id, transfer.log_index)] = self._copy(transfer)

    def get_token_transfers(self, tx_id: str) -> list[TokenTransfer]:
        with self._lock:
            return [self._copy(t) for (tid, _), t in sorted(self.token_transfers.items())
                    if tid == tx_id]

    # Blocks
    def upsert_blocks(self, blocks: list[Block]) -> None:
        with self._lock:
            for block in blocks:
                self.blocks[block.number] = self._copy(block)

    def get_block_by_number(self, number: int) -> Block | None:
        with self._lock:
            return self._copy(self.blocks.get(number))

    def get_block_by_hash(self, block_hash: str) -> Block | None:
        with self._lock:
            for block in self.blocks.values():
                if block.hash == block_hash:
                    return self._copy(block)
        return None

    def get_latest_block(self) -> Block | None:
        with self._lock:
            if not self.blocks:
                return None
            return self._copy(self.blocks[max(self.blocks)])

    def count_blocks(self) -> int:
        with self._lock:
            return len(self.blocks)

    # Account history
    def upsert_account_history_states(self, states: list[AccountHistoryState]) -> None:
        with self._lock:
            for state in states:
                self.history[(state.account_id, state.timestamp)] = self._copy(state)

    def get_account_history_state(self, account_id: str,
                                  before_block: int | None = None) -> AccountHistoryState | None:
        with self._lock:
            candidates = [
                h for (aid, _), h in self.history.items()
                if aid == account_id and (before_block is None or h.block_number < before_block)
            ]
            if not candidates:
                return None
            return self._copy(max(candidates, key=lambda h: (h.block_number, h.timestamp)))

    def count_account_history_states(self) -> int:
        with self._lock:
            return len(self.history)

    def clear(self):
        """Drop every stored record"""
        with self._lock:
            for store in (self.cycles, self.receipts, self.original_txs, self.original_txs2,
                          self.accounts, self.account_entries, self.transactions,
                          self.token_transfers, self.blocks, self.history):
                store.clear()
