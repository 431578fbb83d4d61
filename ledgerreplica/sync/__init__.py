"""
Sync module for LedgerReplica: distributor client, reconciliation and orchestration.
"""

from ledgerreplica.sync.distributor_client import DataType, DistributorClient
from ledgerreplica.sync.orchestrator import SyncOrchestrator, SyncReport
from ledgerreplica.sync.reconciliation import (
    DataKind,
    GenesisResult,
    ReconciliationEngine,
    ReconciliationResult,
)

__all__ = [
    'DataKind',
    'DataType',
    'DistributorClient',
    'GenesisResult',
    'ReconciliationEngine',
    'ReconciliationResult',
    'SyncOrchestrator',
    'SyncReport',
]
