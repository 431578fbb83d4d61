"""
Cycle indexer.

Stores cycle records and announces every newly stored cycle counter on the cycle event
bus. Storing a new cycle also sweeps the dedup guards of entries older than the
retention window.
"""

import logging
from typing import Any, Iterable

from ledgerreplica.core.exceptions import RecordValidationError
from ledgerreplica.core.types import Cycle
from ledgerreplica.core.utils import canonical_json, now_ms
from ledgerreplica.indexer.dedup import DedupGuard
from ledgerreplica.indexer.events import CycleCommitted, CycleEventBus
from ledgerreplica.storage.base import StorageBackend

logger = logging.getLogger(__name__)


def parse_cycle(item: Cycle | dict[str, Any]) -> Cycle:
    """
    Build a Cycle from a bare cycle record or a ``{cycleRecord, cycleMarker}`` wrapper.

    Raises:
        RecordValidationError: if the marker is missing or the counter is invalid
    """
    if isinstance(item, Cycle):
        return item
    if isinstance(item, dict) and "cycleRecord" in item:
        record = dict(item["cycleRecord"] or {})
        record.setdefault("marker", item.get("cycleMarker"))
        return Cycle.from_record(record)
    return Cycle.from_record(item)


class CycleIndexer:
    """Insert-or-update cycles and emit ``CycleCommitted`` for new counters."""

    def __init__(self, storage: StorageBackend, event_bus: CycleEventBus,
                 dedup_guards: Iterable[DedupGuard] = (), config=None,
                 publisher=None, metrics=None):
        if config is None:
            from ledgerreplica.config.settings import settings
            config = settings
        self.storage = storage
        self.event_bus = event_bus
        self.dedup_guards = list(dedup_guards)
        self.config = config
        self.publisher = publisher
        self.metrics = metrics

    def _prune_dedup_guards(self):
        cutoff = now_ms() - self.config.DEDUP_RETENTION_SECONDS * 1000
        for guard in self.dedup_guards:
            guard.prune(cutoff)

    def validate(self, items: Iterable[Cycle | dict[str, Any]]) -> list[Cycle]:
        """Parse cycle items, dropping (and logging) invalid ones."""
        cycles = []
        for item in items:
            try:
                cycles.append(parse_cycle(item))
            except (RecordValidationError, TypeError) as e:
                logger.warning(f"Dropping cycle: {e}")
                if self.metrics:
                    self.metrics.increment("cycles_dropped")
        return cycles

    async def insert_or_update_cycle(self, cycle: Cycle) -> bool:
        """
        Store a single cycle.

        Returns:
            bool: True if the cycle counter is new (a CycleCommitted event was published)
        """
        existing = self.storage.get_cycle_by_marker(cycle.marker)
        if existing is None:
            existing = self.storage.get_cycle_by_counter(cycle.counter)
        if existing is not None:
            if canonical_json(existing.to_dict()) != canonical_json(cycle.to_dict()):
                self.storage.upsert_cycles([cycle])
                logger.info(f"Updated cycle {cycle.counter}")
            return False

        self.storage.upsert_cycles([cycle])
        logger.debug(f"Inserted cycle {cycle.counter}")
        self._prune_dedup_guards()
        await self.event_bus.publish(CycleCommitted(counter=cycle.counter, marker=cycle.marker, start=cycle.start))
        return True

    async def bulk_insert_cycles(self, cycles: list[Cycle]) -> int:
        """
        Upsert a page of cycles at once; events are published only for new counters,
        in ascending counter order.

        Returns:
            int: Number of new cycle counters
        """
        if not cycles:
            return 0
        counters = [c.counter for c in cycles]
        stored = {c.counter for c in self.storage.get_cycles_between(min(counters), max(counters))}
        self.storage.upsert_cycles(cycles)
        logger.info(f"Successfully bulk inserted Cycles {len(cycles)}")

        new_cycles = sorted({c.counter: c for c in cycles if c.counter not in stored}.values(),
                            key=lambda c: c.counter)
        if new_cycles:
            self._prune_dedup_guards()
        for cycle in new_cycles:
            await self.event_bus.publish(CycleCommitted(counter=cycle.counter, marker=cycle.marker, start=cycle.start))
        return len(new_cycles)

    async def process_cycles(self, items: Iterable[Cycle | dict[str, Any]]) -> int:
        """Validate and store cycles one by one, forwarding them downstream."""
        cycles = self.validate(items)
        new_count = 0
        for cycle in sorted(cycles, key=lambda c: c.counter):
            if await self.insert_or_update_cycle(cycle):
                new_count += 1
        if self.publisher is not None and cycles:
            await self.publisher.publish_cycles([c.to_dict() for c in cycles])
        if self.metrics:
            self.metrics.increment("cycles_processed", len(cycles))
        return new_count
