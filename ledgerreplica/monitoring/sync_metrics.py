"""
Sync Metrics for LedgerReplica

Thread-safe counters and timing aggregation for the ingestion pipeline: pages fetched,
items dropped, dedup hits, tally discrepancies, blocks built and per-operation latency.
"""

import time
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class MetricAggregation:
    """Aggregated timing statistics for one operation."""
    count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: float = float('inf')
    max_duration_ms: float = 0.0
    total_items: int = 0

    @property
    def avg_duration_ms(self) -> float:
        """Average duration in milliseconds."""
        return self.total_duration_ms / self.count if self.count > 0 else 0.0

    @property
    def throughput_items_per_sec(self) -> float:
        total_seconds = self.total_duration_ms / 1000
        return self.total_items / total_seconds if total_seconds > 0 else 0.0

    def add_sample(self, duration_ms: float, item_count: int = 0) -> None:
        self.count += 1
        self.total_duration_ms += duration_ms
        self.min_duration_ms = min(self.min_duration_ms, duration_ms)
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        self.total_items += item_count

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "count": self.count,
            "total_duration_ms": round(self.total_duration_ms, 2),
            "avg_duration_ms": round(self.avg_duration_ms, 2),
            "min_duration_ms": round(self.min_duration_ms, 2) if self.count > 0 else 0,
            "max_duration_ms": round(self.max_duration_ms, 2),
            "total_items": self.total_items,
            "throughput_items_per_sec": round(self.throughput_items_per_sec, 2),
        }


class SyncMetrics:
    """
    Counters and timings collected during a sync run.

    Usage:
        metrics = SyncMetrics()

        with metrics.measure("receipt_page", item_count=100):
            # ... operation ...

        metrics.increment("dedup_hits")
    """

    def __init__(self):
        self._counters: dict[str, int] = defaultdict(int)
        self._timings: dict[str, MetricAggregation] = defaultdict(MetricAggregation)
        self._lock = threading.Lock()
        self._started_at = time.time()

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def record(self, operation: str, duration_ms: float, item_count: int = 0) -> None:
        with self._lock:
            self._timings[operation].add_sample(duration_ms, item_count)

    @contextmanager
    def measure(self, operation: str, item_count: int = 0):
        """
        Context manager to measure operation duration.

        Usage:
            with metrics.measure("download_cycles"):
                # ... do work ...
        """
        start_time = time.time()
        try:
            yield
        finally:
            duration_ms = (time.time() - start_time) * 1000
            self.record(operation, duration_ms, item_count)
            if duration_ms > 1000:
                logger.debug(f"Slow operation: {operation} took {duration_ms:.2f}ms")

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()
            self._started_at = time.time()

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of all counters and timing aggregations."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._started_at, 2),
                "counters": dict(self._counters),
                "timings": {name: agg.to_dict() for name, agg in self._timings.items()},
            }
