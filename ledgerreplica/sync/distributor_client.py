"""
Distributor client for LedgerReplica.

Every request is an HTTP POST with a JSON body signed by the collector key:

    {start?, end?, page?, type?, startCycle?, endCycle?, sender, sign}

The client never retries. A failed or malformed response is logged and reported as
``None`` so that the calling loop can hold its position.
"""

import logging
from enum import Enum
from typing import Any, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ledgerreplica.core.exceptions import DistributorError
from ledgerreplica.core.types import TallyEntry
from ledgerreplica.security.security_utils import KeyPair, sign_object
from ledgerreplica.sync.schemas import (
    AccountsResponse,
    CycleInfoResponse,
    OriginalTxCountResponse,
    OriginalTxsResponse,
    OriginalTxTallyResponse,
    ReceiptCountResponse,
    ReceiptsResponse,
    ReceiptTallyResponse,
    TotalDataResponse,
    TransactionsResponse,
)

logger = logging.getLogger(__name__)

ResponseT = TypeVar("ResponseT", bound=BaseModel)


class DataType(str, Enum):
    """Distributor endpoints."""
    CYCLE = "cycleinfo"
    RECEIPT = "receipt"
    ORIGINALTX = "originalTx"
    ACCOUNT = "account"
    TRANSACTION = "transaction"
    TOTALDATA = "totalData"


class DistributorClient:
    """
    Signed JSON-over-HTTP client for the distributor.

    Args:
        base_url: Distributor base URL
        key_pair: Collector key pair used to sign requests
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        metrics: Optional SyncMetrics
    """

    def __init__(self, base_url: str, key_pair: KeyPair, timeout: float = 45.0,
                 transport: httpx.AsyncBaseTransport | None = None, metrics=None):
        self.base_url = base_url.rstrip("/")
        self.key_pair = key_pair
        self.metrics = metrics
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @classmethod
    def from_config(cls, config=None, transport: httpx.AsyncBaseTransport | None = None,
                    metrics=None) -> "DistributorClient":
        """Build a client from settings; an ephemeral key is used when no collector key is set."""
        if config is None:
            from ledgerreplica.config.settings import settings
            config = settings
        if config.COLLECTOR_SECRET_KEY:
            key_pair = KeyPair.from_private_key(config.COLLECTOR_SECRET_KEY)
        else:
            logger.warning("COLLECTOR_SECRET_KEY is not set; signing requests with an ephemeral key")
            key_pair = KeyPair.generate()
        return cls(config.DISTRIBUTOR_URL, key_pair, timeout=config.DISTRIBUTOR_TIMEOUT_SECONDS,
                   transport=transport, metrics=metrics)

    async def __aenter__(self) -> "DistributorClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self._client.aclose()

    def _count(self, name: str, value: int = 1):
        if self.metrics:
            self.metrics.increment(name, value)

    def build_request(self, **params: Any) -> dict[str, Any]:
        """Signed request body; parameters that are None are omitted."""
        body = {key: value for key, value in params.items() if value is not None}
        body["sender"] = self.key_pair.public_key
        return sign_object(body, self.key_pair)

    async def _post(self, data_type: DataType, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(f"/{data_type.value}", json=body)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise DistributorError(f"Error while querying /{data_type.value}: {e}") from e
        except ValueError as e:
            raise DistributorError(f"Invalid JSON from /{data_type.value}: {e}") from e
        if not isinstance(payload, dict):
            raise DistributorError(f"Unexpected response from /{data_type.value}: {type(payload).__name__}")
        return payload

    async def query(self, data_type: DataType, **params: Any) -> dict[str, Any] | None:
        """
        Send one signed query.

        Returns:
            The decoded JSON object, or None on any transport or HTTP failure
        """
        body = self.build_request(**params)
        try:
            payload = await self._post(data_type, body)
        except DistributorError as e:
            logger.error(f"{e} (params {params})")
            self._count("fetch_failures")
            return None
        self._count("pages_fetched")
        return payload

    async def _query_as(self, model: Type[ResponseT], data_type: DataType, **params: Any) -> ResponseT | None:
        payload = await self.query(data_type, **params)
        if payload is None:
            return None
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            logger.error(f"Invalid {data_type.value} response for {params}: {e.error_count()} errors")
            self._count("invalid_responses")
            return None

    # Cycles

    async def get_cycles(self, start: int, end: int) -> list[dict[str, Any]] | None:
        response = await self._query_as(CycleInfoResponse, DataType.CYCLE, start=start, end=end)
        return response.cycleInfo if response else None

    # Receipts

    async def get_receipts(self, start: int | None = None, end: int | None = None,
                           start_cycle: int | None = None, end_cycle: int | None = None,
                           page: int | None = None) -> list[dict[str, Any]] | None:
        """Receipts by index range ``[start, end]`` or by cycle range and page."""
        response = await self._query_as(ReceiptsResponse, DataType.RECEIPT, start=start, end=end,
                                        startCycle=start_cycle, endCycle=end_cycle, page=page)
        return response.receipts if response else None

    async def get_receipt_tally(self, start_cycle: int, end_cycle: int) -> list[TallyEntry] | None:
        response = await self._query_as(ReceiptTallyResponse, DataType.RECEIPT,
                                        startCycle=start_cycle, endCycle=end_cycle, type="tally")
        return [item.to_entry() for item in response.receipts] if response else None

    async def get_receipt_count(self, start_cycle: int, end_cycle: int) -> int | None:
        response = await self._query_as(ReceiptCountResponse, DataType.RECEIPT,
                                        startCycle=start_cycle, endCycle=end_cycle, type="count")
        return response.receipts if response else None

    # Original transactions

    async def get_original_txs(self, start: int | None = None, end: int | None = None,
                               start_cycle: int | None = None, end_cycle: int | None = None,
                               page: int | None = None) -> list[dict[str, Any]] | None:
        response = await self._query_as(OriginalTxsResponse, DataType.ORIGINALTX, start=start, end=end,
                                        startCycle=start_cycle, endCycle=end_cycle, page=page)
        return response.originalTxs if response else None

    async def get_original_tx_tally(self, start_cycle: int, end_cycle: int) -> list[TallyEntry] | None:
        response = await self._query_as(OriginalTxTallyResponse, DataType.ORIGINALTX,
                                        startCycle=start_cycle, endCycle=end_cycle, type="tally")
        return [item.to_entry() for item in response.originalTxs] if response else None

    async def get_original_tx_count(self, start_cycle: int, end_cycle: int) -> int | None:
        response = await self._query_as(OriginalTxCountResponse, DataType.ORIGINALTX,
                                        startCycle=start_cycle, endCycle=end_cycle, type="count")
        return response.originalTxs if response else None

    # Genesis accounts and transactions

    async def get_account_total(self, start_cycle: int, end_cycle: int) -> int | None:
        response = await self._query_as(AccountsResponse, DataType.ACCOUNT,
                                        startCycle=start_cycle, endCycle=end_cycle)
        return response.totalAccounts if response else None

    async def get_accounts(self, start_cycle: int, end_cycle: int, page: int) -> list[dict[str, Any]] | None:
        response = await self._query_as(AccountsResponse, DataType.ACCOUNT,
                                        startCycle=start_cycle, endCycle=end_cycle, page=page)
        return response.accounts if response and "accounts" in response.model_fields_set else None

    async def get_transaction_total(self, start_cycle: int, end_cycle: int) -> int | None:
        response = await self._query_as(TransactionsResponse, DataType.TRANSACTION,
                                        startCycle=start_cycle, endCycle=end_cycle)
        return response.totalTransactions if response else None

    async def get_transactions(self, start_cycle: int, end_cycle: int, page: int) -> list[dict[str, Any]] | None:
        response = await self._query_as(TransactionsResponse, DataType.TRANSACTION,
                                        startCycle=start_cycle, endCycle=end_cycle, page=page)
        return response.transactions if response and "transactions" in response.model_fields_set else None

    # Totals

    async def get_total_data(self) -> TotalDataResponse | None:
        return await self._query_as(TotalDataResponse, DataType.TOTALDATA)
