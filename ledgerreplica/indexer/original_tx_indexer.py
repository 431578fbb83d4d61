"""
Original transaction indexer.

Stores submitted transactions as received and, when enabled, the lighter type-indexed
``OriginalTxData2`` summary derived by the transaction decoder.
"""

import logging
from typing import Any, Iterable

from ledgerreplica.core.exceptions import DecodeError, RecordValidationError
from ledgerreplica.core.tx_decoder import classify_original_tx, decode_evm_raw_tx_data
from ledgerreplica.core.types import OriginalTxData, OriginalTxData2, TransactionType
from ledgerreplica.indexer.dedup import DedupGuard
from ledgerreplica.storage.base import StorageBackend

logger = logging.getLogger(__name__)

BUCKET_SIZE = 1000


class OriginalTxIndexer:
    """Idempotent ingestion of original transactions."""

    def __init__(self, storage: StorageBackend, dedup: DedupGuard, config=None,
                 publisher=None, metrics=None):
        if config is None:
            from ledgerreplica.config.settings import settings
            config = settings
        self.storage = storage
        self.dedup = dedup
        self.config = config
        self.publisher = publisher
        self.metrics = metrics

    def _count(self, name: str, value: int = 1):
        if self.metrics:
            self.metrics.increment(name, value)

    def _parse(self, item: OriginalTxData | dict[str, Any]) -> OriginalTxData | None:
        if isinstance(item, OriginalTxData):
            return item
        try:
            return OriginalTxData.from_dict(item)
        except (RecordValidationError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed original tx: {e}")
            self._count("original_txs_dropped")
            return None

    def readable_record(self, original: OriginalTxData, summary: OriginalTxData2 | None) -> dict[str, Any]:
        """Wire record of an original tx, with a readableReceipt when its EVM payload decodes."""
        record = original.to_dict()
        if summary is None or summary.transaction_type is TransactionType.InternalTxReceipt:
            return record
        return decode_evm_raw_tx_data(record, summary.transaction_type)

    async def process_original_txs(self, original_txs: Iterable[OriginalTxData | dict[str, Any]],
                                   save_only_new: bool = False) -> int:
        """
        Persist a batch of original transactions.

        Returns:
            int: Number of items that passed the dedup guard
        """
        combined: list[OriginalTxData] = []
        combined2: list[OriginalTxData2] = []
        forwarded: list[dict[str, Any]] = []
        processed = 0

        for item in original_txs:
            original = self._parse(item)
            if original is None:
                continue
            if not self.dedup.check_and_mark(original.tx_id, original.timestamp):
                self._count("original_tx_dedup_hits")
                continue
            processed += 1
            if save_only_new and self.storage.get_original_tx(original.tx_id) is not None:
                continue

            combined.append(original)
            if len(combined) >= BUCKET_SIZE:
                self.storage.upsert_original_txs(combined)
                combined = []

            summary = None
            if self.config.INDEX_ORIGINAL_TX_DATA:
                try:
                    summary = classify_original_tx(original)
                except (DecodeError, AttributeError) as e:
                    logger.warning(f"Error in processing original tx data {original.tx_id}: {e}")
                    self._count("original_txs_undecodable")
                else:
                    combined2.append(summary)
                if len(combined2) >= BUCKET_SIZE:
                    self.storage.upsert_original_txs2(combined2)
                    combined2 = []
            if self.publisher is not None:
                forwarded.append(self.readable_record(original, summary))

        if combined:
            self.storage.upsert_original_txs(combined)
        if combined2:
            self.storage.upsert_original_txs2(combined2)
        self._count("original_txs_processed", processed)
        if forwarded:
            await self.publisher.publish_original_txs(forwarded)
        return processed
