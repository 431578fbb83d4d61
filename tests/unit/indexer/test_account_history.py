"""Unit tests for account history rows, backfill and point-in-time reads."""

import pytest

from ledgerreplica.core.types import Receipt
from ledgerreplica.core.utils import eth_address_to_account_id
from ledgerreplica.indexer.account_history import (
    backfill_account_history,
    build_history_rows,
    query_account_history_state,
    receipt_block_placement,
)

SENDER_ID = eth_address_to_account_id("0x1111111111111111111111111111111111111111")


def test_history_rows_follow_signed_proposal(receipt_factory, make_tx_id):
    receipt = Receipt.from_dict(receipt_factory(make_tx_id(1), timestamp=1234))
    rows = build_history_rows(receipt, 5, "0xblock")
    assert len(rows) == 1
    row = rows[0]
    assert row.account_id == SENDER_ID
    assert (row.before_state_hash, row.after_state_hash) == (f"before-{make_tx_id(1)[-8:]}",
                                                             f"after-{make_tx_id(1)[-8:]}")
    assert (row.block_number, row.block_hash, row.timestamp) == (5, "0xblock", 1234)


def test_block_zero_is_a_valid_placement(receipt_factory, make_tx_id):
    receipt = Receipt.from_dict(receipt_factory(make_tx_id(1)))
    assert len(build_history_rows(receipt, 0, "0x00")) == 1


@pytest.mark.parametrize("mutate, block_number, block_hash", [
    (lambda r: r.update(globalModification=True), 5, "0xblock"),
    (lambda r: r.update(signedReceipt=None), 5, "0xblock"),
    (lambda r: None, None, "0xblock"),
    (lambda r: None, 5, None),
])
def test_rows_are_not_written_without_placement(receipt_factory, make_tx_id, mutate, block_number, block_hash):
    raw = receipt_factory(make_tx_id(1))
    mutate(raw)
    assert build_history_rows(Receipt.from_dict(raw), block_number, block_hash) == []


def test_block_placement_from_stored_receipt(receipt_factory, make_tx_id):
    receipt = Receipt.from_dict(receipt_factory(make_tx_id(1), block_number=77))
    assert receipt_block_placement(receipt) == (77, f"0x{77:064x}")

    receipt.app_receipt_data = None
    assert receipt_block_placement(receipt) == (77, f"0x{77:064x}")


def test_backfill_rebuilds_rows(memory_storage, receipt_factory, make_tx_id):
    receipts = [Receipt.from_dict(receipt_factory(make_tx_id(n), timestamp=1000 + n)) for n in range(5)]
    memory_storage.upsert_receipts(receipts)
    assert backfill_account_history(memory_storage, page_size=2) == 5
    assert memory_storage.count_account_history_states() == 5


@pytest.mark.asyncio
async def test_account_state_before_block(pipeline, memory_storage, receipt_factory, make_tx_id):
    await pipeline.receipt_indexer.process_receipts([
        receipt_factory(make_tx_id(1), timestamp=1000, block_number=10, balance="100"),
        receipt_factory(make_tx_id(2), timestamp=2000, block_number=20, balance="40"),
    ])

    latest = query_account_history_state(memory_storage, SENDER_ID)
    assert latest.data["account"]["balance"] == "40"
    earlier = query_account_history_state(memory_storage, SENDER_ID, block_number=15)
    assert earlier.data["account"]["balance"] == "100"
    assert query_account_history_state(memory_storage, SENDER_ID, block_number=10) is None
    assert query_account_history_state(memory_storage, "unknown") is None
