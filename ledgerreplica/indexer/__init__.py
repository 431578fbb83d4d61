"""
Indexer module for LedgerReplica.
"""

from ledgerreplica.indexer.account_history import (
    backfill_account_history,
    build_history_rows,
    query_account_history_state,
)
from ledgerreplica.indexer.block_builder import BlockBuilder, BlockQueries, is_block_visible
from ledgerreplica.indexer.cycle_indexer import CycleIndexer, parse_cycle
from ledgerreplica.indexer.dedup import DedupGuard
from ledgerreplica.indexer.events import CycleCommitted, CycleEventBus
from ledgerreplica.indexer.genesis_indexer import GenesisIndexer
from ledgerreplica.indexer.original_tx_indexer import OriginalTxIndexer
from ledgerreplica.indexer.receipt_indexer import ReceiptIndexer

__all__ = [
    'BlockBuilder',
    'BlockQueries',
    'CycleCommitted',
    'CycleEventBus',
    'CycleIndexer',
    'DedupGuard',
    'GenesisIndexer',
    'OriginalTxIndexer',
    'ReceiptIndexer',
    'backfill_account_history',
    'build_history_rows',
    'is_block_visible',
    'parse_cycle',
    'query_account_history_state',
]
