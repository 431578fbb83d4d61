"""
Synthetic block construction and block reads.

``BlockBuilder`` derives a fixed number of blocks per cycle from the cycle's start time
and the transactions already indexed for each block number. It is driven by
``CycleCommitted`` events. ``BlockQueries`` applies the read-side freshness delay so that
blocks of cycles still open to reconciliation are not served.
"""

import logging

from ledgerreplica.core.block import BlockHeader, GENESIS_PARENT_HASH, calculate_transactions_root
from ledgerreplica.core.types import Block
from ledgerreplica.core.utils import now_ms
from ledgerreplica.indexer.events import CycleCommitted
from ledgerreplica.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class BlockBuilder:
    """
    Build and upsert the blocks of a cycle.

    Block ``i`` of cycle ``c`` has number ``INIT_BLOCK_NUMBER + c * blocks_per_cycle + i``
    and timestamp ``start + i * BLOCK_PRODUCTION_RATE`` seconds.
    """

    def __init__(self, storage: StorageBackend, config=None, metrics=None):
        if config is None:
            from ledgerreplica.config.settings import settings
            config = settings
        self.storage = storage
        self.config = config
        self.metrics = metrics

    @property
    def blocks_per_cycle(self) -> int:
        return self.config.CYCLE_DURATION_SECONDS // self.config.BLOCK_PRODUCTION_RATE

    def block_number(self, cycle_counter: int, index: int) -> int:
        return self.config.INIT_BLOCK_NUMBER + cycle_counter * self.blocks_per_cycle + index

    def _parent_hash(self, number: int) -> str | None:
        if number == self.config.INIT_BLOCK_NUMBER:
            return GENESIS_PARENT_HASH
        # Read without the freshness delay; the predecessor was usually just written
        parent = self.storage.get_block_by_number(number - 1)
        return parent.hash if parent is not None else None

    def build_block(self, number: int, timestamp_seconds: int, cycle_counter: int) -> Block | None:
        """
        Assemble a single block from stored data.

        Returns:
            Block, or None when the parent block is not stored yet
        """
        parent_hash = self._parent_hash(number)
        if parent_hash is None:
            logger.warning(f"Skipping block {number}: parent block {number - 1} not found")
            return None

        tx_hashes = [tx.tx_hash for tx in self.storage.get_transactions_by_block(number)]
        transactions_root = calculate_transactions_root(tx_hashes)
        header = BlockHeader(number=number, timestamp=timestamp_seconds,
                             parent_hash=parent_hash, transactions_root=transactions_root)
        return Block(
            number=number,
            number_hex=hex(number),
            hash=header.hash,
            parent_hash=parent_hash,
            timestamp=timestamp_seconds * 1000,
            cycle=cycle_counter,
            transactions_root=transactions_root,
            readable_block=header.to_readable(tx_hashes),
        )

    def build_blocks_for_cycle(self, cycle_counter: int, cycle_start_seconds: int) -> list[Block]:
        """
        Build and persist every block of one cycle.

        Args:
            cycle_counter: Cycle counter
            cycle_start_seconds: Cycle start (unix seconds)

        Returns:
            list[Block]: The blocks that were persisted (skipped blocks are absent)
        """
        rate = self.config.BLOCK_PRODUCTION_RATE
        built = []
        for index in range(self.blocks_per_cycle):
            number = self.block_number(cycle_counter, index)
            block = self.build_block(number, cycle_start_seconds + index * rate, cycle_counter)
            if block is None:
                continue
            # Persist before the next iteration reads it as its parent
            self.storage.upsert_blocks([block])
            built.append(block)
        logger.debug(f"Built {len(built)}/{self.blocks_per_cycle} blocks for cycle {cycle_counter}")
        if self.metrics:
            self.metrics.increment("blocks_built", len(built))
            if len(built) < self.blocks_per_cycle:
                self.metrics.increment("blocks_skipped", self.blocks_per_cycle - len(built))
        return built

    def build_blocks_for_cycles(self, start: int, end: int) -> int:
        """Rebuild the blocks of every stored cycle in ``[start, end]``; returns blocks built."""
        total = 0
        for cycle in self.storage.get_cycles_between(start, end):
            total += len(self.build_blocks_for_cycle(cycle.counter, cycle.start))
        return total

    async def on_cycle_committed(self, event: CycleCommitted):
        """Cycle event handler."""
        if not self.config.BLOCK_INDEXING_ENABLED:
            return
        self.build_blocks_for_cycle(event.counter, event.start)


def is_block_visible(block: Block, now_ms: int, delay_ms: int) -> bool:
    """A block is served once its timestamp is at least ``delay_ms`` in the past."""
    return block.timestamp <= now_ms - delay_ms


class BlockQueries:
    """Block lookups with the read-side freshness delay applied."""

    def __init__(self, storage: StorageBackend, config=None, clock=now_ms):
        if config is None:
            from ledgerreplica.config.settings import settings
            config = settings
        self.storage = storage
        self.config = config
        self.clock = clock

    @property
    def delay_ms(self) -> int:
        return self.config.BLOCK_QUERY_DELAY_SECONDS * 1000

    def _visible(self, block: Block | None) -> Block | None:
        if block is None or not is_block_visible(block, self.clock(), self.delay_ms):
            return None
        return block

    def block_by_number(self, number: int) -> Block | None:
        return self._visible(self.storage.get_block_by_number(number))

    def block_by_hash(self, block_hash: str) -> Block | None:
        return self._visible(self.storage.get_block_by_hash(block_hash))

    def block_by_tag(self, tag: str) -> Block | None:
        """
        Resolve ``earliest`` or ``latest``.

        ``latest`` is the newest block that is already visible, not the newest one stored.
        """
        if tag == "earliest":
            return self.block_by_number(self.config.INIT_BLOCK_NUMBER)
        if tag != "latest":
            raise ValueError(f"Unsupported block tag: {tag}")

        latest = self.storage.get_latest_block()
        if latest is None:
            return None
        if is_block_visible(latest, self.clock(), self.delay_ms):
            return latest
        rate_ms = self.config.BLOCK_PRODUCTION_RATE * 1000
        cutoff = self.clock() - self.delay_ms
        behind = -(-(latest.timestamp - cutoff) // rate_ms)
        return self.block_by_number(latest.number - behind)
