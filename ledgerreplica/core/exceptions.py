"""
Exception taxonomy for LedgerReplica.

Transient distributor failures, malformed single items, tally divergence and storage
failures each get their own class so callers can recover locally or halt a data kind.
Dedup hits are not errors and have no exception.
"""


class LedgerReplicaError(Exception):
    """Base exception for replica errors."""
    pass


class DistributorError(LedgerReplicaError):
    """Malformed, absent or failed distributor response."""
    pass


class RecordValidationError(LedgerReplicaError):
    """A single ledger item failed validation and is dropped."""
    pass


class DivergenceError(LedgerReplicaError):
    """No reference tally could be obtained for a lookback window."""

    def __init__(self, kind: str, start_cycle: int, end_cycle: int, message: str = None):
        self.kind = kind
        self.start_cycle = start_cycle
        self.end_cycle = end_cycle
        super().__init__(message or f"Can't fetch {kind} tally from cycle {start_cycle} "
                                    f"to cycle {end_cycle} from distributor")


class StorageError(LedgerReplicaError):
    """Persistence backend failure."""
    pass


class DecodeError(RecordValidationError):
    """Unparseable EVM payload."""
    pass
