"""
Sync orchestration for LedgerReplica.

``SyncOrchestrator`` wires storage, dedup guards, the cycle event bus, the block builder,
the indexers and the distributor client together, then drives one sync run:

    genesis bootstrap -> per-kind divergence check and gap repair -> per-kind catch-up

A kind whose lookback tally cannot be fetched is halted for the run and reported in the
``SyncReport``; the other kinds continue.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from ledgerreplica.core.contract_info import create_contract_info_resolver
from ledgerreplica.core.exceptions import DivergenceError
from ledgerreplica.indexer.block_builder import BlockBuilder
from ledgerreplica.indexer.cycle_indexer import CycleIndexer
from ledgerreplica.indexer.dedup import DedupGuard
from ledgerreplica.indexer.events import CycleEventBus
from ledgerreplica.indexer.genesis_indexer import GenesisIndexer
from ledgerreplica.indexer.original_tx_indexer import OriginalTxIndexer
from ledgerreplica.indexer.receipt_indexer import ReceiptIndexer
from ledgerreplica.monitoring.sync_metrics import SyncMetrics
from ledgerreplica.network.zmq_transport import FeedSubscriber, LiveFeedHandler, LogPublisher
from ledgerreplica.storage import create_storage
from ledgerreplica.storage.base import StorageBackend
from ledgerreplica.sync.distributor_client import DistributorClient
from ledgerreplica.sync.reconciliation import DataKind, ReconciliationEngine

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """Summary of one sync run."""
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    remote_totals: dict[str, int] = field(default_factory=dict)
    cursors: dict[str, int] = field(default_factory=dict)
    repaired: dict[str, dict[int, int]] = field(default_factory=dict)
    halted: dict[str, str] = field(default_factory=dict)
    genesis: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.halted and not self.errors

    def halt(self, kind: DataKind, error: DivergenceError):
        logger.error(f"Halting {kind.value} sync: {error}")
        self.halted[kind.value] = str(error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "remote_totals": self.remote_totals,
            "cursors": self.cursors,
            "repaired": {kind: dict(counts) for kind, counts in self.repaired.items()},
            "halted": self.halted,
            "genesis": self.genesis,
            "errors": self.errors,
            "metrics": self.metrics,
        }


class SyncOrchestrator:
    """
    Build the ingestion pipeline from configuration and run it.

    Args:
        config: Settings object
        storage: Optional pre-built storage backend
        client: Optional pre-built distributor client
        transport: Optional httpx transport for the distributor client
        metrics: Optional SyncMetrics
    """

    def __init__(self, config=None, storage: StorageBackend | None = None,
                 client: DistributorClient | None = None,
                 transport: httpx.AsyncBaseTransport | None = None,
                 metrics: SyncMetrics | None = None):
        if config is None:
            from ledgerreplica.config.settings import settings
            config = settings
        self.config = config
        self.metrics = metrics or SyncMetrics()
        self.storage = storage or create_storage(config)
        self.client = client or DistributorClient.from_config(config, transport=transport, metrics=self.metrics)

        self.receipt_dedup = DedupGuard("receipts")
        self.original_tx_dedup = DedupGuard("originalTxs")
        self.event_bus = CycleEventBus()
        self.block_builder = BlockBuilder(self.storage, config=config, metrics=self.metrics)
        self.event_bus.subscribe(self.block_builder.on_cycle_committed)

        self.publisher = LogPublisher(config.LOG_PUBLISHER_ADDRESS) if config.ENABLE_LOG_PUBLISHER else None
        self.contract_resolver = create_contract_info_resolver(config)

        self.receipt_indexer = ReceiptIndexer(self.storage, self.receipt_dedup, config=config,
                                              contract_resolver=self.contract_resolver,
                                              publisher=self.publisher, metrics=self.metrics)
        self.original_tx_indexer = OriginalTxIndexer(self.storage, self.original_tx_dedup, config=config,
                                                     publisher=self.publisher, metrics=self.metrics)
        self.cycle_indexer = CycleIndexer(self.storage, self.event_bus,
                                          dedup_guards=(self.receipt_dedup, self.original_tx_dedup),
                                          config=config, publisher=self.publisher, metrics=self.metrics)
        self.genesis_indexer = GenesisIndexer(self.storage, self.receipt_indexer, config=config,
                                              metrics=self.metrics)
        self.engine = ReconciliationEngine(self.client, self.storage, self.cycle_indexer,
                                           self.receipt_indexer, self.original_tx_indexer,
                                           genesis_indexer=self.genesis_indexer,
                                           config=config, metrics=self.metrics)
        self._subscriber: FeedSubscriber | None = None

    async def __aenter__(self) -> "SyncOrchestrator":
        if self.publisher is not None:
            await self.publisher.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._subscriber is not None:
            await self._subscriber.stop()
            self._subscriber = None
        if self.publisher is not None:
            await self.publisher.stop()
        await self.client.close()
        await self.contract_resolver.close()
        self.storage.close()

    async def _reconcile_cycles(self, report: SyncReport):
        latest = self.storage.get_latest_cycle()
        if latest is None:
            return
        result = await self.engine.compare_with_old_cycles_data(latest.counter)
        if not result.success:
            logger.warning(f"Cycles diverge after counter {result.matched_cycle}; re-downloading")
            stored = await self.engine.download_cycles_between_cycles(result.matched_cycle, latest.counter)
            report.repaired[DataKind.CYCLE.value] = {latest.counter: stored}

    async def _reconcile_receipts(self, report: SyncReport):
        last_cycle = self.storage.get_latest_receipt_cycle()
        if last_cycle is None:
            return
        result = await self.engine.compare_with_old_receipts_data(last_cycle)
        if result.success:
            return
        unmatched = await self.engine.compare_receipts_count_by_cycles(result.matched_cycle, last_cycle)
        if unmatched:
            report.repaired[DataKind.RECEIPT.value] = await self.engine.download_receipts_by_cycle(unmatched)

    async def _reconcile_original_txs(self, report: SyncReport):
        last_cycle = self.storage.get_latest_original_tx_cycle()
        if last_cycle is None:
            return
        result = await self.engine.compare_with_old_original_txs_data(last_cycle)
        if result.success:
            return
        unmatched = await self.engine.compare_original_txs_count_by_cycles(result.matched_cycle, last_cycle)
        if unmatched:
            report.repaired[DataKind.ORIGINAL_TX.value] = await self.engine.download_original_txs_by_cycle(unmatched)

    async def run(self, genesis: bool = True) -> SyncReport:
        """
        One full sync run.

        Args:
            genesis: Bootstrap genesis accounts and transactions first

        Returns:
            SyncReport
        """
        report = SyncReport()
        totals = await self.client.get_total_data()
        if totals is None:
            report.errors.append("Unable to fetch totals from distributor")
            report.finished_at = time.time()
            return report
        report.remote_totals = {
            DataKind.CYCLE.value: totals.totalCycles,
            DataKind.RECEIPT.value: totals.totalReceipts,
            DataKind.ORIGINAL_TX.value: totals.totalOriginalTxs,
        }
        logger.info(f"Distributor totals: {report.remote_totals}")

        if genesis:
            with self.metrics.measure("genesis"):
                result = await self.engine.download_and_sync_genesis_accounts()
            report.genesis = {"accounts": result.accounts, "transactions": result.transactions,
                              "skipped": result.skipped}

        # Receipts before cycles so blocks built on cycle commit see their transactions
        plan = [
            (DataKind.RECEIPT, self._reconcile_receipts, self.storage.count_receipts),
            (DataKind.ORIGINAL_TX, self._reconcile_original_txs, self.storage.count_original_txs),
            (DataKind.CYCLE, self._reconcile_cycles, self.storage.count_cycles),
        ]
        for kind, reconcile, local_count in plan:
            try:
                await reconcile(report)
            except DivergenceError as e:
                report.halt(kind, e)
                continue
            with self.metrics.measure(f"catch_up_{kind.value}"):
                report.cursors[kind.value] = await self.engine.catch_up(
                    kind, local_count(), report.remote_totals[kind.value])

        report.finished_at = time.time()
        report.metrics = self.metrics.snapshot()
        logger.info(f"Sync run finished: cursors={report.cursors} halted={list(report.halted)}")
        return report

    async def follow(self, stop_event: asyncio.Event | None = None):
        """
        Consume the distributor's live feed until ``stop_event`` is set.

        Raises:
            ValueError: if LIVE_FEED_ADDRESS is not configured
        """
        if not self.config.LIVE_FEED_ADDRESS:
            raise ValueError("LIVE_FEED_ADDRESS is not configured")
        self._subscriber = FeedSubscriber(self.config.LIVE_FEED_ADDRESS)
        self._subscriber.set_handler(LiveFeedHandler(
            self.cycle_indexer, self.receipt_indexer, self.original_tx_indexer,
            distributor_public_key=self.config.DISTRIBUTOR_PUBLIC_KEY, metrics=self.metrics))
        await self._subscriber.start()
        stop_event = stop_event or asyncio.Event()
        try:
            await stop_event.wait()
        finally:
            await self._subscriber.stop()
            self._subscriber = None
