"""
Pydantic schemas for distributor responses.

Item lists are kept as raw JSON objects; the indexers parse and validate each item so
that one malformed record does not reject the whole page.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ledgerreplica.core.types import TallyEntry


class DistributorResponse(BaseModel):
    """Base for every distributor response; unknown keys are tolerated."""
    model_config = ConfigDict(extra="allow")


class CycleInfoResponse(DistributorResponse):
    cycleInfo: list[dict[str, Any]] = Field(..., description="Cycle records, oldest first")


class ReceiptsResponse(DistributorResponse):
    receipts: list[dict[str, Any]] = Field(..., description="Receipt objects")


class OriginalTxsResponse(DistributorResponse):
    originalTxs: list[dict[str, Any]] = Field(..., description="Original transaction objects")


class ReceiptTallyItem(BaseModel):
    cycle: int
    receipts: int

    def to_entry(self) -> TallyEntry:
        return TallyEntry(cycle=self.cycle, count=self.receipts)


class OriginalTxTallyItem(BaseModel):
    cycle: int
    originalTxsData: int

    def to_entry(self) -> TallyEntry:
        return TallyEntry(cycle=self.cycle, count=self.originalTxsData)


class ReceiptTallyResponse(DistributorResponse):
    receipts: list[ReceiptTallyItem]


class OriginalTxTallyResponse(DistributorResponse):
    originalTxs: list[OriginalTxTallyItem]


class ReceiptCountResponse(DistributorResponse):
    receipts: int = Field(..., ge=0)


class OriginalTxCountResponse(DistributorResponse):
    originalTxs: int = Field(..., ge=0)


class AccountsResponse(DistributorResponse):
    accounts: list[dict[str, Any]] = Field(default_factory=list)
    totalAccounts: int | None = Field(None, description="Present on count queries")


class TransactionsResponse(DistributorResponse):
    transactions: list[dict[str, Any]] = Field(default_factory=list)
    totalTransactions: int | None = Field(None, description="Present on count queries")


class TotalDataResponse(DistributorResponse):
    """Network-wide totals used to size a catch-up run."""
    totalCycles: int = 0
    totalReceipts: int = 0
    totalOriginalTxs: int = 0
    totalAccounts: int = 0
    totalTransactions: int = 0
