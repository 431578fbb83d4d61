"""Unit tests for the reconciliation engine: catch-up, divergence checks and gap repair."""

import pytest

from ledgerreplica.core.exceptions import DivergenceError
from ledgerreplica.core.types import OriginalTxData, Receipt, TallyEntry
from ledgerreplica.sync.reconciliation import DataKind, GenesisResult, ReconciliationResult


def _store_receipts(storage, raws):
    storage.upsert_receipts([Receipt.from_dict(r) for r in raws])


# ---------------------------------------------------------------------------
# Catch-up
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_catch_up_pages_until_remote_total(pipeline, fake_distributor, original_tx_factory, make_tx_id):
    fake_distributor.original_txs = [original_tx_factory(make_tx_id(n), cycle=n // 50) for n in range(250)]

    cursor = await pipeline.engine.catch_up(DataKind.ORIGINAL_TX, 0, 250)

    assert cursor == 250
    assert pipeline.storage.count_original_txs() == 250
    ranges = [(b["start"], b["end"]) for b in fake_distributor.requests_to("originalTx")]
    assert ranges == [(0, 100), (101, 200), (201, 300)]


@pytest.mark.asyncio
async def test_catch_up_resumes_from_local_cursor(pipeline, fake_distributor, original_tx_factory, make_tx_id):
    fake_distributor.original_txs = [original_tx_factory(make_tx_id(n)) for n in range(150)]
    cursor = await pipeline.engine.catch_up(DataKind.ORIGINAL_TX, 120, 150)
    assert cursor == 150
    assert fake_distributor.requests_to("originalTx")[0]["start"] == 120


@pytest.mark.asyncio
async def test_catch_up_stops_on_empty_page(pipeline, fake_distributor, metrics, original_tx_factory, make_tx_id):
    fake_distributor.original_txs = [original_tx_factory(make_tx_id(n)) for n in range(50)]
    cursor = await pipeline.engine.catch_up(DataKind.ORIGINAL_TX, 0, 300)
    assert cursor == 50
    assert metrics.get("empty_pages") == 1
    assert len(fake_distributor.requests_to("originalTx")) == 2


@pytest.mark.asyncio
async def test_catch_up_holds_position_on_failure(pipeline, fake_distributor):
    fake_distributor.failing.add("receipt")
    assert await pipeline.engine.catch_up(DataKind.RECEIPT, 40, 300) == 40
    assert len(fake_distributor.requests_to("receipt")) == 1


@pytest.mark.asyncio
async def test_catch_up_when_already_current(pipeline, fake_distributor):
    assert await pipeline.engine.catch_up(DataKind.CYCLE, 10, 10) == 10
    assert fake_distributor.requests == []


@pytest.mark.asyncio
async def test_cycle_catch_up_builds_blocks(pipeline, fake_distributor, cycle_factory):
    fake_distributor.cycles = [cycle_factory(c) for c in range(3)]
    assert await pipeline.engine.catch_up(DataKind.CYCLE, 0, 3) == 3
    assert pipeline.storage.count_cycles() == 3
    assert pipeline.storage.count_blocks() == 180


@pytest.mark.asyncio
async def test_download_txs_data_and_cycles(pipeline, fake_distributor, receipt_factory, original_tx_factory,
                                            cycle_factory, make_tx_id):
    fake_distributor.receipts = [receipt_factory(make_tx_id(n), cycle=0, timestamp=1000 + n, block_number=n)
                                 for n in range(3)]
    fake_distributor.original_txs = [original_tx_factory(make_tx_id(n), cycle=0) for n in range(2)]
    fake_distributor.cycles = [cycle_factory(0)]

    cursors = await pipeline.engine.download_txs_data_and_cycles(3, 0, 2, 0, 1, 0)
    assert cursors == (3, 2, 1)
    # Receipts are stored before the cycle commit builds its blocks
    block = pipeline.storage.get_block_by_number(1)
    assert block.readable_block["transactions"] == ["0x" + make_tx_id(1)]


# ---------------------------------------------------------------------------
# Divergence detection
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_matching_tallies(pipeline, fake_distributor, receipt_factory, make_tx_id):
    raws = [receipt_factory(make_tx_id(n), cycle=5 + n % 11, timestamp=1000 + n) for n in range(33)]
    fake_distributor.receipts = raws
    _store_receipts(pipeline.storage, raws)

    result = await pipeline.engine.compare_with_old_receipts_data(15)
    assert result == ReconciliationResult(success=True, matched_cycle=15)
    body = fake_distributor.requests_to("receipt")[-1]
    assert (body["startCycle"], body["endCycle"]) == (5, 15)


@pytest.mark.asyncio
async def test_mismatch_reports_last_agreeing_cycle(pipeline, fake_distributor, receipt_factory, make_tx_id):
    raws = [receipt_factory(make_tx_id(n), cycle=5 + n % 11, timestamp=1000 + n) for n in range(33)]
    fake_distributor.receipts = raws
    # One receipt of cycle 13 never arrived locally
    _store_receipts(pipeline.storage, [r for r in raws if r["receiptId"] != make_tx_id(8)])

    result = await pipeline.engine.compare_with_old_receipts_data(15)
    assert result == ReconciliationResult(success=False, matched_cycle=12)


@pytest.mark.asyncio
async def test_empty_remote_tally_matches(pipeline):
    result = await pipeline.engine.compare_with_old_receipts_data(0)
    assert result == ReconciliationResult(success=True, matched_cycle=0)


@pytest.mark.asyncio
async def test_lookback_start_is_clamped(pipeline, fake_distributor):
    await pipeline.engine.compare_with_old_original_txs_data(3)
    body = fake_distributor.requests_to("originalTx")[-1]
    assert (body["startCycle"], body["endCycle"]) == (0, 3)


@pytest.mark.asyncio
async def test_unreachable_tally_raises(pipeline, fake_distributor):
    fake_distributor.failing.update({"receipt", "originalTx", "cycleinfo"})
    with pytest.raises(DivergenceError) as excinfo:
        await pipeline.engine.compare_with_old_receipts_data(20)
    assert (excinfo.value.kind, excinfo.value.start_cycle, excinfo.value.end_cycle) == ("receipt", 10, 20)
    with pytest.raises(DivergenceError):
        await pipeline.engine.compare_with_old_original_txs_data(20)
    with pytest.raises(DivergenceError):
        await pipeline.engine.compare_with_old_cycles_data(20)


@pytest.mark.asyncio
async def test_original_tx_mismatch(pipeline, fake_distributor, original_tx_factory, make_tx_id):
    fake_distributor.original_txs = [original_tx_factory(make_tx_id(n), cycle=n % 4) for n in range(8)]
    pipeline.storage.upsert_original_txs([OriginalTxData.from_dict(t) for t in fake_distributor.original_txs[:6]])
    result = await pipeline.engine.compare_with_old_original_txs_data(3)
    assert result == ReconciliationResult(success=False, matched_cycle=1)


@pytest.mark.asyncio
async def test_cycle_records_compared_canonically(pipeline, fake_distributor, cycle_factory):
    records = [cycle_factory(c) for c in range(11)]
    fake_distributor.cycles = records
    await pipeline.cycle_indexer.process_cycles(records)

    assert await pipeline.engine.compare_with_old_cycles_data(10) == ReconciliationResult(True, 9)
    body = fake_distributor.requests_to("cycleinfo")[-1]
    assert (body["start"], body["end"]) == (0, 9)

    fake_distributor.cycles[6] = dict(records[6], active=42)
    assert await pipeline.engine.compare_with_old_cycles_data(10) == ReconciliationResult(False, 5)


# ---------------------------------------------------------------------------
# Gap repair
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_count_comparison_lists_unmatched_cycles(pipeline, fake_distributor, receipt_factory, make_tx_id):
    raws = [receipt_factory(make_tx_id(n), cycle=n % 3, timestamp=1000 + n) for n in range(9)]
    fake_distributor.receipts = raws
    _store_receipts(pipeline.storage, [r for r in raws if r["cycle"] != 1][:5])

    unmatched = await pipeline.engine.compare_receipts_count_by_cycles(0, 2)
    assert unmatched == [TallyEntry(1, 3), TallyEntry(2, 3)]


@pytest.mark.asyncio
async def test_count_comparison_unreachable(pipeline, fake_distributor):
    fake_distributor.failing.update({"receipt", "originalTx"})
    assert await pipeline.engine.compare_receipts_count_by_cycles(0, 2) is None
    assert await pipeline.engine.compare_original_txs_count_by_cycles(0, 2) is None


@pytest.mark.asyncio
async def test_gap_repair_stops_on_empty_page(pipeline, fake_distributor, metrics, original_tx_factory,
                                              make_tx_id):
    # The tally promises 250 items but the distributor only serves 200
    fake_distributor.original_txs = [original_tx_factory(make_tx_id(n), cycle=7) for n in range(200)]

    downloaded = await pipeline.engine.download_original_txs_by_cycle([TallyEntry(7, 250)])

    assert downloaded == {7: 200}
    assert metrics.get("discrepancies") == 1
    assert [b["page"] for b in fake_distributor.requests_to("originalTx")] == [1, 2, 3]
    assert pipeline.storage.count_original_txs_by_cycles(7, 7) == [TallyEntry(7, 200)]


@pytest.mark.asyncio
async def test_gap_repair_stops_at_expected_count(pipeline, fake_distributor, receipt_factory, make_tx_id):
    fake_distributor.receipts = [receipt_factory(make_tx_id(n), cycle=2, timestamp=1000 + n) for n in range(120)]

    downloaded = await pipeline.engine.download_receipts_by_cycle([TallyEntry(2, 120)])

    assert downloaded == {2: 120}
    assert len(fake_distributor.requests_to("receipt")) == 2
    assert pipeline.storage.count_receipts() == 120


@pytest.mark.asyncio
async def test_gap_repair_on_failed_page(pipeline, fake_distributor):
    fake_distributor.failing.add("receipt")
    assert await pipeline.engine.download_receipts_by_cycle([TallyEntry(1, 10), TallyEntry(2, 5)]) == {1: 0, 2: 0}


# ---------------------------------------------------------------------------
# Range downloads
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_download_cycles_between_cycles(pipeline, fake_distributor, cycle_factory):
    fake_distributor.cycles = [cycle_factory(c) for c in range(12)]
    assert await pipeline.engine.download_cycles_between_cycles(2, 10) == 9
    assert [c.counter for c in pipeline.storage.get_cycles_between(0, 20)] == list(range(2, 11))

    assert await pipeline.engine.download_cycles_between_cycles(0, 11, save_only_new=True) == 3


@pytest.mark.asyncio
async def test_download_receipts_between_cycles(pipeline, fake_distributor, receipt_factory, make_tx_id):
    fake_distributor.receipts = [receipt_factory(make_tx_id(n), cycle=1 + n % 3, timestamp=1000 + n)
                                 for n in range(150)]
    assert await pipeline.engine.download_receipts_between_cycles(1, 3) == 150
    assert pipeline.storage.count_receipts() == 150
    pages = [b["page"] for b in fake_distributor.requests_to("receipt") if "page" in b]
    assert pages == [1, 2]


@pytest.mark.asyncio
async def test_download_original_txs_between_cycles(pipeline, fake_distributor, original_tx_factory, make_tx_id):
    fake_distributor.original_txs = [original_tx_factory(make_tx_id(n), cycle=n) for n in range(5)]
    assert await pipeline.engine.download_original_txs_between_cycles(0, 2) == 3


# ---------------------------------------------------------------------------
# Genesis bootstrap
# ---------------------------------------------------------------------------

def _genesis_accounts(make_tx_id):
    sender = "0x1111111111111111111111111111111111111111"
    recipient = "0x2222222222222222222222222222222222222222"
    accounts = [
        {"accountId": address[2:] + "0" * 24, "cycleNumber": 0, "hash": "h", "timestamp": 1000,
         "data": {"accountType": 0, "ethAddress": address, "account": {"nonce": "0", "balance": "1"}}}
        for address in (sender, recipient)
    ]
    accounts.append({
        "accountId": make_tx_id(1), "cycleNumber": 1, "hash": "r", "timestamp": 1200,
        "data": {"accountType": 1, "ethAddress": "0x" + make_tx_id(1), "txId": make_tx_id(1),
                 "readableReceipt": {"blockNumber": "0x3c", "blockHash": "0xbeef", "from": sender,
                                     "to": recipient}},
    })
    return accounts


@pytest.mark.asyncio
async def test_genesis_sync(pipeline, fake_distributor, make_tx_id):
    fake_distributor.accounts = _genesis_accounts(make_tx_id)

    result = await pipeline.engine.download_and_sync_genesis_accounts()

    assert result == GenesisResult(accounts=3, transactions=1, skipped=False)
    assert pipeline.storage.count_accounts_between_cycles(0, 5) == 2
    assert pipeline.storage.get_transaction(make_tx_id(1)).block_number == 60

    again = await pipeline.engine.download_and_sync_genesis_accounts()
    assert again.skipped


@pytest.mark.asyncio
async def test_genesis_without_remote_accounts(pipeline, fake_distributor):
    result = await pipeline.engine.download_and_sync_genesis_accounts()
    assert result == GenesisResult(accounts=0, transactions=0, skipped=False)
    assert fake_distributor.requests_to("transaction")


@pytest.mark.asyncio
async def test_genesis_unreachable(pipeline, fake_distributor):
    fake_distributor.failing.update({"account", "transaction"})
    result = await pipeline.engine.download_and_sync_genesis_accounts()
    assert result == GenesisResult()


@pytest.mark.asyncio
async def test_genesis_requires_indexer(pipeline):
    pipeline.engine.genesis_indexer = None
    with pytest.raises(RuntimeError):
        await pipeline.engine.download_and_sync_genesis_accounts()
