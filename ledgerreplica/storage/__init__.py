"""
Storage layer for LedgerReplica.

``create_storage`` selects the backend once from configuration; every component then
talks to the returned ``StorageBackend`` without knowing which engine sits behind it.
"""

import logging

from ledgerreplica.storage.base import StorageBackend
from ledgerreplica.storage.memory_storage import MemoryStorageBackend
from ledgerreplica.storage.sql_backend import SqlStorageBackend

logger = logging.getLogger(__name__)


def create_storage(config=None) -> StorageBackend:
    """
    Build the storage backend named by ``config.STORAGE_BACKEND``.

    Args:
        config: Settings object; defaults to the active settings

    Returns:
        StorageBackend: "memory" or "sql" backend
    """
    if config is None:
        from ledgerreplica.config.settings import settings
        config = settings

    backend = config.STORAGE_BACKEND.lower()
    if backend == "memory":
        logger.info("Using in-memory storage backend")
        return MemoryStorageBackend()
    if backend == "sql":
        return SqlStorageBackend(config.DATABASE_URL)
    raise ValueError(f"Unknown storage backend: {config.STORAGE_BACKEND}")


__all__ = [
    "StorageBackend",
    "MemoryStorageBackend",
    "SqlStorageBackend",
    "create_storage",
]
