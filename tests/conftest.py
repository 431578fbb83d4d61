"""
Pytest configuration for LedgerReplica project.

Ensures project root is on sys.path so test imports like `import ledgerreplica` resolve
correctly during test collection, and provides shared fixtures: testing settings,
storage backends, dedup guards, indexers, record factories and an in-process fake
distributor served through ``httpx.MockTransport``.
"""

import json
import os
import sys

import httpx
import pytest

# Compute project root (parent of this tests directory)
_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from ledgerreplica.config.settings import TestingSettings
from ledgerreplica.core.utils import eth_address_to_account_id
from ledgerreplica.indexer.block_builder import BlockBuilder
from ledgerreplica.indexer.cycle_indexer import CycleIndexer
from ledgerreplica.indexer.dedup import DedupGuard
from ledgerreplica.indexer.events import CycleEventBus
from ledgerreplica.indexer.genesis_indexer import GenesisIndexer
from ledgerreplica.indexer.original_tx_indexer import OriginalTxIndexer
from ledgerreplica.indexer.receipt_indexer import ReceiptIndexer
from ledgerreplica.monitoring.sync_metrics import SyncMetrics
from ledgerreplica.security.security_utils import KeyPair
from ledgerreplica.storage.memory_storage import MemoryStorageBackend
from ledgerreplica.storage.sql_backend import SqlStorageBackend
from ledgerreplica.sync.distributor_client import DistributorClient
from ledgerreplica.sync.reconciliation import ReconciliationEngine

DISTRIBUTOR_URL = "http://distributor.test"
SENDER = "0x1111111111111111111111111111111111111111"
RECIPIENT = "0x2222222222222222222222222222222222222222"
BASE_TIMESTAMP = 1_700_000_000_000
CYCLE_START = 1_700_000_000


def tx_id_for(n: int) -> str:
    return f"{n:064x}"


def build_cycle_record(counter: int, duration: int = 60) -> dict:
    return {
        "counter": counter,
        "marker": f"marker-{counter:04d}",
        "start": CYCLE_START + counter * duration,
        "duration": duration,
        "previous": f"marker-{counter - 1:04d}" if counter else "0" * 64,
        "active": 10,
    }


def build_receipt(tx_id: str, cycle: int = 1, timestamp: int = BASE_TIMESTAMP, block_number: int = 60,
                  sender: str = SENDER, recipient: str = RECIPIENT, balance: str = "100",
                  logs: list | None = None, global_modification: bool = False) -> dict:
    """A distributor receipt carrying a sender EOA snapshot and its receipt account."""
    tx_hash = "0x" + tx_id
    sender_id = eth_address_to_account_id(sender)
    readable = {
        "transactionHash": tx_hash,
        "blockNumber": hex(block_number),
        "blockHash": f"0x{block_number:064x}",
        "from": sender,
        "to": recipient,
        "logs": logs or [],
        "gasUsed": "0x5208",
        "status": 1,
    }
    sender_state = {
        "accountId": sender_id,
        "hash": f"after-{tx_id[-8:]}",
        "timestamp": timestamp,
        "isGlobal": False,
        "data": {"accountType": 0, "ethAddress": sender, "account": {"nonce": "1", "balance": balance}},
    }
    receipt_state = {
        "accountId": tx_id,
        "hash": f"receipt-{tx_id[-8:]}",
        "timestamp": timestamp,
        "isGlobal": False,
        "data": {"accountType": 1, "ethAddress": tx_hash, "txId": tx_id, "amountSpent": "0x5208",
                 "readableReceipt": readable},
    }
    return {
        "receiptId": tx_id,
        "tx": {"txId": tx_id, "timestamp": timestamp, "originalTxData": {}},
        "cycle": cycle,
        "timestamp": timestamp,
        "beforeStates": [dict(sender_state, hash=f"before-{tx_id[-8:]}")],
        "afterStates": [sender_state, receipt_state],
        "appReceiptData": {"accountId": tx_id, "data": {"readableReceipt": readable}},
        "signedReceipt": {"proposal": {
            "accountIDs": [sender_id],
            "beforeStateHashes": [f"before-{tx_id[-8:]}"],
            "afterStateHashes": [f"after-{tx_id[-8:]}"],
        }},
        "globalModification": global_modification,
    }


def build_original_tx(tx_id: str, cycle: int = 1, timestamp: int = BASE_TIMESTAMP) -> dict:
    return {"txId": tx_id, "timestamp": timestamp, "cycle": cycle, "originalTxData": {"tx": {}}}


class FakeDistributor:
    """
    In-process distributor answering the signed POST protocol from in-memory lists.

    Index ranges are inclusive on both ends; cycle queries are paged 100 items per page
    and genesis account/transaction queries 10000 per page.
    """

    ITEMS_PER_PAGE = 100
    GENESIS_PAGE_SIZE = 10000

    def __init__(self):
        self.cycles: list[dict] = []
        self.receipts: list[dict] = []
        self.original_txs: list[dict] = []
        self.accounts: list[dict] = []
        self.transactions: list[dict] = []
        self.tally_overrides: dict[str, list[dict]] = {}
        self.failing: set[str] = set()
        self.requests: list[tuple[str, dict]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.lstrip("/")
        body = json.loads(request.content) if request.content else {}
        self.requests.append((path, body))
        if path in self.failing:
            return httpx.Response(500, json={"error": "unavailable"})
        routes = {
            "cycleinfo": self._cycles,
            "receipt": lambda b: self._ledger_items(b, self.receipts, "receipts", "receipts"),
            "originalTx": lambda b: self._ledger_items(b, self.original_txs, "originalTxs", "originalTxsData"),
            "account": lambda b: self._genesis_items(b, self.accounts, "accounts", "totalAccounts"),
            "transaction": lambda b: self._genesis_items(b, self.transactions, "transactions",
                                                         "totalTransactions"),
            "totalData": self._totals,
        }
        if path not in routes:
            return httpx.Response(404, json={"error": f"unknown route {path}"})
        return httpx.Response(200, json=routes[path](body))

    def requests_to(self, path: str) -> list[dict]:
        return [body for p, body in self.requests if p == path]

    def _cycles(self, body):
        start, end = body["start"], body["end"]
        return {"cycleInfo": [c for c in self.cycles if start <= c["counter"] <= end]}

    def _ledger_items(self, body, items, key, tally_key):
        if "startCycle" in body:
            in_range = [i for i in items if body["startCycle"] <= i["cycle"] <= body["endCycle"]]
            if body.get("type") == "tally":
                if key in self.tally_overrides:
                    return {key: self.tally_overrides[key]}
                counts: dict[int, int] = {}
                for item in in_range:
                    counts[item["cycle"]] = counts.get(item["cycle"], 0) + 1
                return {key: [{"cycle": c, tally_key: counts[c]} for c in sorted(counts)]}
            if body.get("type") == "count":
                return {key: len(in_range)}
            page = body.get("page", 1)
            offset = (page - 1) * self.ITEMS_PER_PAGE
            return {key: in_range[offset:offset + self.ITEMS_PER_PAGE]}
        return {key: items[body["start"]:body["end"] + 1]}

    def _genesis_items(self, body, items, key, total_key):
        in_range = [i for i in items
                    if body["startCycle"] <= i.get("cycleNumber", 0) <= body["endCycle"]]
        if "page" not in body:
            return {total_key: len(in_range)}
        offset = (body["page"] - 1) * self.GENESIS_PAGE_SIZE
        return {key: in_range[offset:offset + self.GENESIS_PAGE_SIZE]}

    def _totals(self, body):
        return {
            "totalCycles": len(self.cycles),
            "totalReceipts": len(self.receipts),
            "totalOriginalTxs": len(self.original_txs),
            "totalAccounts": len(self.accounts),
            "totalTransactions": len(self.transactions),
        }


@pytest.fixture
def test_settings():
    """Fresh testing settings; attributes may be overridden per test."""
    config = TestingSettings()
    config.DISTRIBUTOR_URL = DISTRIBUTOR_URL
    config.COLLECTOR_SECRET_KEY = KeyPair.generate().private_key
    return config


@pytest.fixture
def memory_storage():
    return MemoryStorageBackend()


@pytest.fixture
def sql_storage():
    storage = SqlStorageBackend("sqlite:///:memory:")
    yield storage
    storage.close()


@pytest.fixture
def metrics():
    return SyncMetrics()


@pytest.fixture
def fake_distributor():
    return FakeDistributor()


@pytest.fixture
def distributor_client(fake_distributor, metrics):
    return DistributorClient(DISTRIBUTOR_URL, KeyPair.generate(),
                             transport=httpx.MockTransport(fake_distributor.handler), metrics=metrics)


@pytest.fixture
def pipeline(memory_storage, test_settings, metrics, distributor_client):
    """Indexers, block builder and reconciliation engine wired over memory storage."""

    class Pipeline:
        pass

    p = Pipeline()
    p.storage = memory_storage
    p.config = test_settings
    p.metrics = metrics
    p.client = distributor_client
    p.receipt_dedup = DedupGuard("receipts")
    p.original_tx_dedup = DedupGuard("originalTxs")
    p.event_bus = CycleEventBus()
    p.block_builder = BlockBuilder(memory_storage, config=test_settings, metrics=metrics)
    p.event_bus.subscribe(p.block_builder.on_cycle_committed)
    p.receipt_indexer = ReceiptIndexer(memory_storage, p.receipt_dedup, config=test_settings, metrics=metrics)
    p.original_tx_indexer = OriginalTxIndexer(memory_storage, p.original_tx_dedup, config=test_settings,
                                              metrics=metrics)
    p.cycle_indexer = CycleIndexer(memory_storage, p.event_bus,
                                   dedup_guards=(p.receipt_dedup, p.original_tx_dedup),
                                   config=test_settings, metrics=metrics)
    p.genesis_indexer = GenesisIndexer(memory_storage, p.receipt_indexer, config=test_settings, metrics=metrics)
    p.engine = ReconciliationEngine(distributor_client, memory_storage, p.cycle_indexer, p.receipt_indexer,
                                    p.original_tx_indexer, genesis_indexer=p.genesis_indexer,
                                    config=test_settings, metrics=metrics)
    return p


@pytest.fixture
def receipt_factory():
    return build_receipt


@pytest.fixture
def original_tx_factory():
    return build_original_tx


@pytest.fixture
def cycle_factory():
    return build_cycle_record


@pytest.fixture
def make_tx_id():
    return tx_id_for
