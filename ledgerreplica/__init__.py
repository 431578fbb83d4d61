"""
LedgerReplica
=============

A replica-building ingestion pipeline for a sharded ledger network. It pulls cycles,
receipts and original transactions from a distributor, reconciles the local replica
against it and derives synthetic Ethereum-style blocks, accounts, transactions,
token transfers and per-account history.
"""

VERSION = (0, 3, 0, "final", 0)

from ledgerreplica.units.version import get_version


__version__ = get_version(VERSION)

__all__ = ["VERSION", "__version__"]
