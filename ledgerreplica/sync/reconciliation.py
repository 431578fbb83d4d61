"""
Reconciliation Engine for LedgerReplica.

Brings the local replica in line with the distributor:

* catch-up: page through each data kind by item index until the local cursor reaches
  the remote total;
* divergence detection: compare per-cycle tallies of the last few cycles with the
  distributor before resuming;
* gap repair: re-download the cycles whose counts disagree;
* range downloads by cycle;
* genesis bootstrap of accounts and transactions created in the first cycles.

Network round trips are awaited one at a time within a kind. A missing response is
logged by the client and stops (or skips) the current loop; the engine never retries.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from ledgerreplica.core.exceptions import DivergenceError
from ledgerreplica.core.types import TallyEntry
from ledgerreplica.core.utils import canonical_json
from ledgerreplica.indexer.cycle_indexer import CycleIndexer
from ledgerreplica.indexer.genesis_indexer import GenesisIndexer
from ledgerreplica.indexer.original_tx_indexer import OriginalTxIndexer
from ledgerreplica.indexer.receipt_indexer import ReceiptIndexer
from ledgerreplica.storage.base import StorageBackend
from ledgerreplica.sync.distributor_client import DistributorClient

logger = logging.getLogger(__name__)

INDEX_PAGE_SIZE = 100
CYCLE_BUCKET_SIZE = 1000
CYCLE_WINDOW_SIZE = 100
ITEMS_PER_PAGE = 100
GENESIS_PAGE_SIZE = 10000
GENESIS_START_CYCLE = 0
GENESIS_END_CYCLE = 5


class DataKind(str, Enum):
    CYCLE = "cycle"
    RECEIPT = "receipt"
    ORIGINAL_TX = "originalTx"


@dataclass
class ReconciliationResult:
    """Outcome of a lookback comparison; ``matched_cycle`` is the last agreeing cycle."""
    success: bool
    matched_cycle: int


@dataclass
class GenesisResult:
    accounts: int = 0
    transactions: int = 0
    skipped: bool = False


class ReconciliationEngine:
    """
    Catch-up, divergence detection and gap repair against the distributor.

    Args:
        client: Distributor client
        storage: Persistence facade (local tallies and cursors)
        cycle_indexer: Stores cycle pages
        receipt_indexer: Stores receipt pages
        original_tx_indexer: Stores original transaction pages
        genesis_indexer: Stores genesis accounts and transactions
        config: Settings object
        metrics: Optional SyncMetrics
    """

    def __init__(self, client: DistributorClient, storage: StorageBackend,
                 cycle_indexer: CycleIndexer, receipt_indexer: ReceiptIndexer,
                 original_tx_indexer: OriginalTxIndexer, genesis_indexer: GenesisIndexer | None = None,
                 config=None, metrics=None):
        if config is None:
            from ledgerreplica.config.settings import settings
            config = settings
        self.client = client
        self.storage = storage
        self.cycle_indexer = cycle_indexer
        self.receipt_indexer = receipt_indexer
        self.original_tx_indexer = original_tx_indexer
        self.genesis_indexer = genesis_indexer
        self.config = config
        self.metrics = metrics

    def _count(self, name: str, value: int = 1):
        if self.metrics:
            self.metrics.increment(name, value)

    # ------------------------------------------------------------------
    # Catch-up by item index
    # ------------------------------------------------------------------

    async def _fetch_index_page(self, kind: DataKind, start: int, end: int) -> list[dict[str, Any]] | None:
        if kind is DataKind.RECEIPT:
            return await self.client.get_receipts(start=start, end=end)
        if kind is DataKind.ORIGINAL_TX:
            return await self.client.get_original_txs(start=start, end=end)
        return await self.client.get_cycles(start, end)

    async def _ingest_page(self, kind: DataKind, items: list[dict[str, Any]]):
        if kind is DataKind.RECEIPT:
            await self.receipt_indexer.process_receipts(items)
        elif kind is DataKind.ORIGINAL_TX:
            await self.original_tx_indexer.process_original_txs(items)
        else:
            cycles = self.cycle_indexer.validate(items)
            await self.cycle_indexer.bulk_insert_cycles(cycles)

    async def catch_up(self, kind: DataKind, local_cursor: int, remote_total: int) -> int:
        """
        Page one data kind forward from ``local_cursor`` by index ranges of 100.

        Stops when the cursor reaches ``remote_total``, on an empty page, or on an
        invalid response (position is held).

        Returns:
            int: The new cursor
        """
        cursor = local_cursor
        start = local_cursor
        end = start + INDEX_PAGE_SIZE

        while cursor < remote_total:
            logger.info(f"Downloading {kind.value}s from {start} to {end}")
            items = await self._fetch_index_page(kind, start, end)
            if items is None:
                logger.error(f"{kind.value}: invalid download response for {start}-{end}")
                break
            if not items:
                logger.warning(f"{kind.value}: empty page for {start}-{end} at cursor {cursor} of {remote_total}")
                self._count("empty_pages")
                break

            logger.debug(f"Downloaded {len(items)} {kind.value}s")
            await self._ingest_page(kind, items)
            cursor += len(items)
            start = end + 1
            end += INDEX_PAGE_SIZE

        if cursor >= remote_total:
            logger.info(f"Download completed for {kind.value}s ({cursor}/{remote_total})")
        return cursor

    async def download_txs_data_and_cycles(self, total_receipts: int, from_receipt: int,
                                           total_original_txs: int, from_original_tx: int,
                                           total_cycles: int, from_cycle: int) -> tuple[int, int, int]:
        """
        Run the receipt, original-tx and cycle catch-up loops in that order.

        Returns:
            (receipt_cursor, original_tx_cursor, cycle_cursor)
        """
        receipt_cursor = await self.catch_up(DataKind.RECEIPT, from_receipt, total_receipts)
        original_tx_cursor = await self.catch_up(DataKind.ORIGINAL_TX, from_original_tx, total_original_txs)
        cycle_cursor = await self.catch_up(DataKind.CYCLE, from_cycle, total_cycles)
        logger.info("Sync Cycle and Txs data completed")
        return receipt_cursor, original_tx_cursor, cycle_cursor

    # ------------------------------------------------------------------
    # Divergence detection
    # ------------------------------------------------------------------

    def _lookback(self, last_cycle: int) -> tuple[int, int]:
        return max(last_cycle - self.config.COMPARE_CYCLE_WINDOW, 0), last_cycle

    @staticmethod
    def _compare_tallies(kind: DataKind, remote: list[TallyEntry],
                         local: list[TallyEntry]) -> ReconciliationResult:
        matched_cycle = 0
        for index, downloaded in enumerate(remote):
            existing = local[index] if index < len(local) else None
            logger.debug(f"{kind.value} tally: remote {downloaded} local {existing}")
            if existing != downloaded:
                logger.warning(f"{kind.value} tally diverges at cycle {downloaded.cycle}: "
                               f"remote {downloaded.count}, local {existing.count if existing else None}")
                return ReconciliationResult(success=False, matched_cycle=matched_cycle)
            matched_cycle = downloaded.cycle
        return ReconciliationResult(success=True, matched_cycle=matched_cycle)

    async def compare_with_old_receipts_data(self, last_stored_receipt_cycle: int = 0) -> ReconciliationResult:
        """
        Compare the receipt tally of the last N cycles with the distributor's.

        Raises:
            DivergenceError: if the distributor tally cannot be fetched
        """
        start, end = self._lookback(last_stored_receipt_cycle)
        remote = await self.client.get_receipt_tally(start, end)
        if remote is None:
            raise DivergenceError(DataKind.RECEIPT.value, start, end)
        local = self.storage.count_receipts_by_cycles(start, end)
        return self._compare_tallies(DataKind.RECEIPT, remote, local)

    async def compare_with_old_original_txs_data(self, last_stored_original_tx_cycle: int = 0) -> ReconciliationResult:
        """Original-tx counterpart of ``compare_with_old_receipts_data``."""
        start, end = self._lookback(last_stored_original_tx_cycle)
        remote = await self.client.get_original_tx_tally(start, end)
        if remote is None:
            raise DivergenceError(DataKind.ORIGINAL_TX.value, start, end)
        local = self.storage.count_original_txs_by_cycles(start, end)
        return self._compare_tallies(DataKind.ORIGINAL_TX, remote, local)

    async def compare_with_old_cycles_data(self, last_cycle_counter: int) -> ReconciliationResult:
        """
        Compare the records of the N cycles before ``last_cycle_counter`` with the
        distributor's, by canonical JSON.
        """
        window = self.config.COMPARE_CYCLE_WINDOW
        start = max(last_cycle_counter - window, 0)
        end = last_cycle_counter - 1
        remote = await self.client.get_cycles(start, end)
        if remote is None:
            raise DivergenceError(DataKind.CYCLE.value, start, end)

        local = self.storage.get_cycles_between(start, last_cycle_counter)
        remote = sorted(remote, key=lambda record: record.get("counter", -1))
        matched_cycle = 0
        for index, record in enumerate(remote):
            existing = local[index] if index < len(local) else None
            if existing is None or canonical_json(record) != canonical_json(existing.record):
                logger.warning(f"Cycle record {record.get('counter')} differs from the distributor")
                return ReconciliationResult(success=False, matched_cycle=matched_cycle)
            matched_cycle = int(record["counter"])
        return ReconciliationResult(success=True, matched_cycle=matched_cycle)

    # ------------------------------------------------------------------
    # Gap repair
    # ------------------------------------------------------------------

    @staticmethod
    def _unmatched(kind: DataKind, remote: list[TallyEntry], local: list[TallyEntry]) -> list[TallyEntry]:
        existing = {entry.cycle: entry.count for entry in local}
        unmatched = [entry for entry in remote if existing.get(entry.cycle) != entry.count]
        if unmatched:
            logger.info(f"{len(unmatched)} cycles with mismatched {kind.value} counts")
        return unmatched

    async def compare_receipts_count_by_cycles(self, start_cycle: int, end_cycle: int) -> list[TallyEntry] | None:
        """Tally entries whose local receipt count differs or is missing; None if unreachable."""
        remote = await self.client.get_receipt_tally(start_cycle, end_cycle)
        if remote is None:
            logger.error(f"Can't fetch receipts count between cycle {start_cycle} and cycle {end_cycle}")
            return None
        local = self.storage.count_receipts_by_cycles(start_cycle, end_cycle)
        return self._unmatched(DataKind.RECEIPT, remote, local)

    async def compare_original_txs_count_by_cycles(self, start_cycle: int,
                                                   end_cycle: int) -> list[TallyEntry] | None:
        """Tally entries whose local original-tx count differs or is missing; None if unreachable."""
        remote = await self.client.get_original_tx_tally(start_cycle, end_cycle)
        if remote is None:
            logger.error(f"Can't fetch originalTxs count between cycle {start_cycle} and cycle {end_cycle}")
            return None
        local = self.storage.count_original_txs_by_cycles(start_cycle, end_cycle)
        return self._unmatched(DataKind.ORIGINAL_TX, remote, local)

    async def _download_by_cycle(self, kind: DataKind, entries: list[TallyEntry],
                                 fetch: Callable[..., Awaitable[list[dict[str, Any]] | None]],
                                 process: Callable[[list[dict[str, Any]]], Awaitable[int]]) -> dict[int, int]:
        downloaded_by_cycle = {}
        for entry in entries:
            page = 1
            downloaded = 0
            while True:
                items = await fetch(start_cycle=entry.cycle, end_cycle=entry.cycle, page=page)
                if items is None:
                    logger.error(f"Can't fetch {kind.value}s for page {page} of cycle {entry.cycle}")
                    break
                if not items:
                    logger.warning(f"Got 0 {kind.value}s for page {page} of cycle {entry.cycle}; "
                                   f"downloaded {downloaded} of {entry.count}")
                    self._count("discrepancies")
                    break
                downloaded += len(items)
                await process(items)
                page += 1
                if downloaded >= entry.count:
                    logger.info(f"Downloaded {downloaded} {kind.value}s for cycle {entry.cycle}")
                    break
            downloaded_by_cycle[entry.cycle] = downloaded
        return downloaded_by_cycle

    async def download_receipts_by_cycle(self, entries: list[TallyEntry]) -> dict[int, int]:
        """
        Re-download the receipts of each listed cycle, page by page.

        Returns:
            dict: cycle -> number of receipts downloaded
        """
        return await self._download_by_cycle(DataKind.RECEIPT, entries, self.client.get_receipts,
                                             self.receipt_indexer.process_receipts)

    async def download_original_txs_by_cycle(self, entries: list[TallyEntry]) -> dict[int, int]:
        return await self._download_by_cycle(DataKind.ORIGINAL_TX, entries, self.client.get_original_txs,
                                             self.original_tx_indexer.process_original_txs)

    # ------------------------------------------------------------------
    # Range downloads by cycle
    # ------------------------------------------------------------------

    async def download_cycles_between_cycles(self, start_cycle: int, end_cycle: int,
                                             save_only_new: bool = False) -> int:
        """
        Download cycle records ``[start_cycle, end_cycle]`` in buckets of 1000.

        Returns:
            int: Number of cycle records handed to storage
        """
        stored = 0
        start = start_cycle
        end = start_cycle + CYCLE_BUCKET_SIZE
        while start <= end_cycle:
            end = min(end, end_cycle)
            records = await self.client.get_cycles(start, end)
            if records is None:
                logger.error(f"Cycle: invalid download response for {start}-{end}")
            else:
                logger.debug(f"Downloaded {len(records)} cycles")
                cycles = self.cycle_indexer.validate(records)
                if save_only_new:
                    cycles = [c for c in cycles if self.storage.get_cycle_by_counter(c.counter) is None]
                if cycles:
                    await self.cycle_indexer.bulk_insert_cycles(cycles)
                    stored += len(cycles)
            start = end + 1
            end += CYCLE_BUCKET_SIZE
        logger.info(f"Download completed for cycles between counter {start_cycle} and {end_cycle}")
        return stored

    async def _download_between_cycles(self, kind: DataKind, start_cycle: int, end_cycle: int,
                                       count: Callable[[int, int], Awaitable[int | None]],
                                       fetch: Callable[..., Awaitable[list[dict[str, Any]] | None]],
                                       process: Callable[..., Awaitable[int]],
                                       save_only_new: bool) -> int:
        processed = 0
        start = start_cycle
        end = start_cycle + CYCLE_WINDOW_SIZE
        while start <= end_cycle:
            end = min(end, end_cycle)
            logger.info(f"Downloading {kind.value}s from cycle {start} to cycle {end}")
            total = await count(start, end)
            if total is None:
                logger.error(f"{kind.value}: invalid count response for cycles {start}-{end}")
            else:
                for page in range(1, math.ceil(total / ITEMS_PER_PAGE) + 1):
                    items = await fetch(start_cycle=start, end_cycle=end, page=page)
                    if items:
                        processed += await process(items, save_only_new=save_only_new)
            start = end + 1
            end += CYCLE_WINDOW_SIZE
        return processed

    async def download_receipts_between_cycles(self, start_cycle: int, end_cycle: int,
                                               save_only_new: bool = False) -> int:
        """Download every receipt of cycles ``[start_cycle, end_cycle]``; returns receipts processed."""
        return await self._download_between_cycles(
            DataKind.RECEIPT, start_cycle, end_cycle,
            self.client.get_receipt_count, self.client.get_receipts,
            self.receipt_indexer.process_receipts, save_only_new)

    async def download_original_txs_between_cycles(self, start_cycle: int, end_cycle: int,
                                                   save_only_new: bool = False) -> int:
        return await self._download_between_cycles(
            DataKind.ORIGINAL_TX, start_cycle, end_cycle,
            self.client.get_original_tx_count, self.client.get_original_txs,
            self.original_tx_indexer.process_original_txs, save_only_new)

    # ------------------------------------------------------------------
    # Genesis bootstrap
    # ------------------------------------------------------------------

    async def download_and_sync_genesis_accounts(self) -> GenesisResult:
        """
        Download the accounts and transactions of the first cycles.

        Runs only when the local store has no genesis accounts or no genesis transactions.
        """
        if self.genesis_indexer is None:
            raise RuntimeError("Genesis sync requires a GenesisIndexer")

        existing_accounts = self.storage.count_accounts_between_cycles(GENESIS_START_CYCLE, GENESIS_END_CYCLE)
        existing_transactions = self.storage.count_transactions_between_cycles(GENESIS_START_CYCLE,
                                                                               GENESIS_END_CYCLE)
        result = GenesisResult()
        if existing_accounts > 0 and existing_transactions > 0:
            logger.info("Genesis accounts and transactions already synced")
            result.skipped = True
            return result

        if existing_accounts == 0:
            result.accounts, result.transactions = await self._sync_genesis_accounts()
        if existing_transactions == 0:
            result.transactions += await self._sync_genesis_transactions()
        logger.info(f"Sync genesis accounts and transactions completed: "
                    f"{result.accounts} accounts, {result.transactions} transactions")
        return result

    async def _sync_genesis_accounts(self) -> tuple[int, int]:
        total = await self.client.get_account_total(GENESIS_START_CYCLE, GENESIS_END_CYCLE)
        if total is None:
            logger.error("Genesis account: invalid download response")
            return 0, 0
        if total <= 0:
            return 0, 0

        accounts_synced = 0
        receipt_accounts = []
        page = 1
        while True:
            logger.info(f"Downloading genesis accounts page {page}")
            accounts = await self.client.get_accounts(GENESIS_START_CYCLE, GENESIS_END_CYCLE, page)
            if accounts is None:
                logger.error(f"Genesis account: invalid download response for page {page}")
                break
            receipt_accounts.extend(await self.genesis_indexer.process_account_data(accounts))
            accounts_synced += len(accounts)
            if len(accounts) < GENESIS_PAGE_SIZE:
                logger.info("Download completed for genesis accounts")
                break
            page += 1

        transactions = await self.genesis_indexer.process_transaction_data(receipt_accounts)
        return accounts_synced, transactions

    async def _sync_genesis_transactions(self) -> int:
        total = await self.client.get_transaction_total(GENESIS_START_CYCLE, GENESIS_END_CYCLE)
        if total is None:
            logger.error("Genesis transaction: invalid download response")
            return 0
        if total <= 0:
            return 0

        stored = 0
        page = 1
        while True:
            logger.info(f"Downloading genesis transactions page {page}")
            transactions = await self.client.get_transactions(GENESIS_START_CYCLE, GENESIS_END_CYCLE, page)
            if transactions is None:
                logger.error(f"Genesis transaction: invalid download response for page {page}")
                break
            stored += await self.genesis_indexer.process_transaction_data(transactions)
            if len(transactions) < GENESIS_PAGE_SIZE:
                logger.info("Download completed for genesis transactions")
                break
            page += 1
        return stored
