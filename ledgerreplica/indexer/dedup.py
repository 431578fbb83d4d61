"""
Time-bounded de-duplication guard for redelivered ledger items.

One guard instance exists per data kind (receipts, original transactions); instances are
passed into the indexers explicitly so tests can hand each one a fresh map.
"""

import logging
import threading

logger = logging.getLogger(__name__)


class DedupGuard:
    """
    Thread-safe ``tx_id -> timestamp`` membership map.

    An item is a duplicate when the same ``(tx_id, timestamp)`` pair has been marked
    before. A newer timestamp for a known ``tx_id`` replaces the stored one and is
    processed again.
    """

    def __init__(self, name: str = "dedup"):
        self.name = name
        self._entries: dict[str, int] = {}
        self._lock = threading.Lock()

    def check_and_mark(self, tx_id: str, timestamp: int) -> bool:
        """
        Atomically test and record an item.

        Returns:
            bool: True if the item is new and has been marked, False if it was already seen
        """
        with self._lock:
            if self._entries.get(tx_id) == timestamp:
                return False
            self._entries[tx_id] = timestamp
            return True

    def contains(self, tx_id: str, timestamp: int | None = None) -> bool:
        with self._lock:
            if timestamp is None:
                return tx_id in self._entries
            return self._entries.get(tx_id) == timestamp

    def prune(self, cutoff: int) -> int:
        """Drop entries whose timestamp is older than ``cutoff``; returns how many were removed."""
        with self._lock:
            stale = [tx_id for tx_id, ts in self._entries.items() if ts < cutoff]
            for tx_id in stale:
                del self._entries[tx_id]
        if stale:
            logger.debug(f"{self.name}: pruned {len(stale)} entries older than {cutoff}")
        return len(stale)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
