"""Unit tests for the live feed handler and the ZeroMQ publisher/subscriber pair."""

import asyncio

import pytest
import zmq.asyncio

from ledgerreplica.network.zmq_transport import (
    TOPIC_RECEIPT,
    FeedSubscriber,
    LiveFeedHandler,
    LogPublisher,
)
from ledgerreplica.security.security_utils import KeyPair, sign_object


@pytest.fixture
def distributor_key():
    return KeyPair.generate()


@pytest.fixture
def handler(pipeline, distributor_key, metrics):
    return LiveFeedHandler(pipeline.cycle_indexer, pipeline.receipt_indexer, pipeline.original_tx_indexer,
                           distributor_public_key=distributor_key.public_key, metrics=metrics)


@pytest.mark.asyncio
async def test_signed_message_is_ingested(handler, pipeline, distributor_key, metrics, receipt_factory,
                                          original_tx_factory, cycle_factory, make_tx_id):
    message = sign_object({
        "receipts": [receipt_factory(make_tx_id(1), cycle=0, block_number=2)],
        "originalTxs": [original_tx_factory(make_tx_id(1), cycle=0)],
        "cycles": [cycle_factory(0)],
    }, distributor_key)

    await handler(message, TOPIC_RECEIPT)

    assert pipeline.storage.count_receipts() == 1
    assert pipeline.storage.count_original_txs() == 1
    assert pipeline.storage.count_cycles() == 1
    assert pipeline.storage.get_block_by_number(2).readable_block["transactions"] == ["0x" + make_tx_id(1)]
    assert metrics.get("feed_messages") == 1


@pytest.mark.asyncio
async def test_unsigned_or_foreign_messages_are_dropped(handler, pipeline, metrics, cycle_factory):
    await handler({"cycles": [cycle_factory(0)]}, TOPIC_RECEIPT)
    await handler(sign_object({"cycles": [cycle_factory(0)]}, KeyPair.generate()), TOPIC_RECEIPT)
    assert pipeline.storage.count_cycles() == 0
    assert metrics.get("feed_rejected") == 2


@pytest.mark.asyncio
async def test_publisher_without_socket_does_not_send():
    publisher = LogPublisher("inproc://ledgerreplica-unbound")
    assert not publisher.is_running
    assert not await publisher.publish_receipts([{"receiptId": "r"}])
    assert not await publisher.publish_cycles([])


@pytest.mark.asyncio
async def test_publisher_reaches_subscriber():
    ctx = zmq.asyncio.Context()
    address = "inproc://ledgerreplica-feed"
    publisher = LogPublisher(address, ctx=ctx)
    subscriber = FeedSubscriber(address, ctx=ctx)
    received = []
    subscriber.set_handler(lambda message, topic: received.append((topic, message)))

    await publisher.start()
    await subscriber.start()
    try:
        # PUB drops messages until the subscription has propagated
        for _ in range(100):
            await publisher.publish_receipts([{"receiptId": "r1"}])
            await asyncio.sleep(0.05)
            if received:
                break
    finally:
        await subscriber.stop()
        await publisher.stop()
        ctx.term()

    assert received
    topic, message = received[0]
    assert topic == TOPIC_RECEIPT
    assert message == {"receipts": [{"receiptId": "r1"}]}
