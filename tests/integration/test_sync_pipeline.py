"""
Integration tests for a full sync run.

The orchestrator is built from testing settings with in-memory storage and talks to an
in-process fake distributor through ``httpx.MockTransport``.
"""

import httpx
import pytest

from ledgerreplica.core.utils import eth_address_to_account_id
from ledgerreplica.sync.orchestrator import SyncOrchestrator

ACCOUNT = "0x3333333333333333333333333333333333333333"


@pytest.fixture
def seeded_distributor(fake_distributor, cycle_factory, receipt_factory, original_tx_factory, make_tx_id):
    fake_distributor.cycles = [cycle_factory(c) for c in range(3)]
    fake_distributor.receipts = [
        receipt_factory(make_tx_id(n), cycle=1, timestamp=1_700_000_060_000 + n, block_number=60 + n)
        for n in range(3)
    ]
    fake_distributor.original_txs = [original_tx_factory(make_tx_id(n), cycle=1) for n in range(3)]
    return fake_distributor


def _orchestrator(config, distributor):
    return SyncOrchestrator(config=config, transport=httpx.MockTransport(distributor.handler))


@pytest.mark.asyncio
async def test_full_sync_builds_replica(test_settings, seeded_distributor, make_tx_id):
    async with _orchestrator(test_settings, seeded_distributor) as orchestrator:
        report = await orchestrator.run()
        storage = orchestrator.storage

        assert report.success
        assert report.remote_totals == {"cycle": 3, "receipt": 3, "originalTx": 3}
        assert report.cursors == {"receipt": 3, "originalTx": 3, "cycle": 3}
        assert report.genesis == {"accounts": 0, "transactions": 0, "skipped": False}
        assert storage.count_cycles() == 3
        assert storage.count_receipts() == 3
        assert storage.count_original_txs() == 3
        assert storage.count_blocks() == 180

        block = storage.get_block_by_number(61)
        assert block.readable_block["transactions"] == ["0x" + make_tx_id(1)]
        assert block.parent_hash == storage.get_block_by_number(60).hash
        assert report.metrics["counters"]["blocks_built"] == 180


@pytest.mark.asyncio
async def test_second_run_is_a_no_op(test_settings, seeded_distributor):
    async with _orchestrator(test_settings, seeded_distributor) as orchestrator:
        await orchestrator.run()
        blocks = orchestrator.storage.count_blocks()

        report = await orchestrator.run(genesis=False)

        assert report.success
        assert report.repaired == {}
        assert report.cursors == {"receipt": 3, "originalTx": 3, "cycle": 3}
        assert orchestrator.storage.count_blocks() == blocks


@pytest.mark.asyncio
async def test_missing_receipts_are_repaired(test_settings, seeded_distributor, receipt_factory, make_tx_id):
    async with _orchestrator(test_settings, seeded_distributor) as orchestrator:
        await orchestrator.run(genesis=False)

        # Two receipts of cycle 1 show up late on the distributor
        seeded_distributor.receipts.extend(
            receipt_factory(make_tx_id(n), cycle=1, timestamp=1_700_000_070_000 + n, block_number=70 + n)
            for n in range(10, 12)
        )
        report = await orchestrator.run(genesis=False)

        assert report.success
        assert report.repaired == {"receipt": {1: 5}}
        assert orchestrator.storage.count_receipts() == 5
        assert orchestrator.storage.get_transaction(make_tx_id(11)).block_number == 71


@pytest.mark.asyncio
async def test_unreachable_tally_halts_only_that_kind(test_settings, seeded_distributor):
    async with _orchestrator(test_settings, seeded_distributor) as orchestrator:
        await orchestrator.run(genesis=False)
        seeded_distributor.failing.add("receipt")

        report = await orchestrator.run(genesis=False)

        assert not report.success
        assert set(report.halted) == {"receipt"}
        assert "receipt" not in report.cursors
        assert report.cursors["cycle"] == 3
        assert report.to_dict()["success"] is False


@pytest.mark.asyncio
async def test_missing_totals_abort_the_run(test_settings, seeded_distributor):
    seeded_distributor.failing.add("totalData")
    async with _orchestrator(test_settings, seeded_distributor) as orchestrator:
        report = await orchestrator.run()
        assert not report.success
        assert report.errors
        assert orchestrator.storage.count_cycles() == 0


@pytest.mark.asyncio
async def test_genesis_runs_before_catch_up(test_settings, seeded_distributor, make_tx_id):
    seeded_distributor.accounts = [{
        "accountId": eth_address_to_account_id(ACCOUNT),
        "cycleNumber": 0, "hash": "h", "timestamp": 500,
        "data": {"accountType": 0, "ethAddress": ACCOUNT,
                 "account": {"nonce": "0", "balance": "1"}},
    }]
    async with _orchestrator(test_settings, seeded_distributor) as orchestrator:
        report = await orchestrator.run()
        assert report.genesis == {"accounts": 1, "transactions": 0, "skipped": False}
        assert orchestrator.storage.count_accounts_between_cycles(0, 0) == 1


@pytest.mark.asyncio
async def test_follow_requires_feed_address(test_settings, seeded_distributor):
    test_settings.LIVE_FEED_ADDRESS = ""
    async with _orchestrator(test_settings, seeded_distributor) as orchestrator:
        with pytest.raises(ValueError):
            await orchestrator.follow()
