"""
Genesis indexer.

Genesis state is not delivered as receipts: the distributor serves copies of the
accounts created in the first cycles and the receipt accounts of the transactions that
created them. Account copies are stored directly; receipt-typed copies are handed back
so they can be turned into transaction rows.
"""

import json
import logging
from typing import Any, Iterable

from ledgerreplica.core.exceptions import RecordValidationError
from ledgerreplica.core.types import (
    Account,
    AccountCategory,
    AccountState,
    EVMAccountState,
    ReceiptAccountState,
)
from ledgerreplica.core.utils import EOA_CODE_HASH
from ledgerreplica.indexer.receipt_indexer import (
    ReceiptIndexer,
    WriteBuckets,
    transaction_from_receipt_state,
)
from ledgerreplica.storage.base import StorageBackend

logger = logging.getLogger(__name__)


def _parse_copy(raw: dict[str, Any]) -> tuple[AccountState, int]:
    """Account state and cycle of a distributor account copy."""
    data = raw.get("data")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError as e:
            raise RecordValidationError(f"Unparseable account data for {raw.get('accountId')}: {e}") from e
    if not isinstance(data, dict):
        raise RecordValidationError(f"Missing account data for {raw.get('accountId')}")
    account_id = raw.get("accountId") or data.get("ethAddress")
    state = AccountState.from_dict({
        "accountId": account_id,
        "data": data,
        "hash": raw.get("hash", ""),
        "timestamp": raw.get("timestamp", 0),
        "isGlobal": raw.get("isGlobal", False),
    })
    return state, int(raw.get("cycleNumber", raw.get("cycle", 0)))


class GenesisIndexer:
    """Store genesis account copies and genesis transaction receipts."""

    def __init__(self, storage: StorageBackend, receipt_indexer: ReceiptIndexer, config=None, metrics=None):
        if config is None:
            from ledgerreplica.config.settings import settings
            config = settings
        self.storage = storage
        self.receipt_indexer = receipt_indexer
        self.config = config
        self.metrics = metrics

    def _count(self, name: str, value: int = 1):
        if self.metrics:
            self.metrics.increment(name, value)

    async def process_account_data(self, accounts: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Store a page of genesis account copies.

        Args:
            accounts: Distributor account copies ``{accountId, cycleNumber, data, hash, timestamp}``

        Returns:
            list: The receipt-typed copies, to be passed to ``process_transaction_data``
        """
        accounts = list(accounts)
        if not accounts:
            return []
        logger.info(f"Processing {len(accounts)} genesis accounts")
        buckets = WriteBuckets(self.storage, account_entries=self.config.ENABLE_ACCOUNT_ENTRIES)
        transactions = []

        for raw in accounts:
            try:
                state, cycle = _parse_copy(raw)
            except RecordValidationError as e:
                logger.warning(f"Error in parsing account data: {e}")
                self._count("accounts_dropped")
                continue

            if state.category is AccountCategory.RECEIPT:
                transactions.append({**raw, "data": state.data})
                continue
            if state.category is AccountCategory.UNKNOWN:
                logger.warning(f"Skipping genesis account {state.account_id} "
                               f"of unrecognised type {state.account_type}")
                continue

            account = Account.from_state(state, cycle)
            if isinstance(state, EVMAccountState) and self.config.DECODE_CONTRACT_INFO:
                code_hash = state.code_hash
                if code_hash is not None and code_hash != EOA_CODE_HASH:
                    await self.receipt_indexer.store_contract_account(account)
                    continue
            buckets.add_account(account)
            buckets.flush()

        buckets.flush(force=True)
        self._count("genesis_accounts", len(accounts))
        return transactions

    async def process_transaction_data(self, transactions: Iterable[dict[str, Any]]) -> int:
        """
        Store transaction rows built from genesis receipt accounts.

        Items whose data is not a receipt account are ignored.

        Returns:
            int: Number of transaction rows buffered
        """
        transactions = list(transactions)
        if not transactions:
            return 0
        logger.info(f"Processing {len(transactions)} genesis transactions")
        buckets = WriteBuckets(self.storage, account_entries=self.config.ENABLE_ACCOUNT_ENTRIES)
        stored = 0

        for raw in transactions:
            try:
                state, cycle = _parse_copy(raw)
            except RecordValidationError as e:
                logger.warning(f"Error in parsing transaction data: {e}")
                self._count("transactions_dropped")
                continue
            if not isinstance(state, ReceiptAccountState):
                logger.debug(f"Skipping non-receipt genesis transaction {state.account_id}")
                continue

            tx_id = state.data.get("txId") or raw.get("txId")
            if not tx_id:
                logger.warning(f"Genesis transaction {state.account_id} has no txId")
                continue
            try:
                tx = transaction_from_receipt_state(tx_id=tx_id, cycle=cycle,
                                                    timestamp=int(raw.get("timestamp", state.timestamp)),
                                                    receipt_state=state)
                if tx is None:
                    continue
                self.receipt_indexer.index_transaction(tx, state, buckets)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Dropping genesis transaction {tx_id}: {e}")
                self._count("transactions_dropped")
                continue
            stored += 1
            buckets.flush()

        buckets.flush(force=True)
        self._count("genesis_transactions", stored)
        return stored
