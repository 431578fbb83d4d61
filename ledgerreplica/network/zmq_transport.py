"""
ZeroMQ Transport Layer for LedgerReplica.

This module implements the replica's message transport using ZeroMQ (pyzmq):
- `LogPublisher`: PUB socket that forwards freshly ingested cycles, receipts and
  original transactions to downstream log subscribers (fire-and-forget).
- `FeedSubscriber`: SUB socket receiving the distributor's live data feed.
- `LiveFeedHandler`: verifies signed feed messages and routes them to the indexers.

Messages are multipart frames ``[topic, json payload]``.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Callable

import zmq
import zmq.asyncio

from ledgerreplica.core.exceptions import LedgerReplicaError
from ledgerreplica.security.security_utils import verify_object

logger = logging.getLogger(__name__)

TOPIC_CYCLE = "/data/cycle"
TOPIC_RECEIPT = "/data/receipt"
TOPIC_ORIGINAL_TX = "/data/originalTx"
DEFAULT_TOPICS = (TOPIC_CYCLE, TOPIC_RECEIPT, TOPIC_ORIGINAL_TX)


class NetworkError(LedgerReplicaError):
    """Base exception for network errors."""
    pass


class LogPublisher:
    """
    Downstream fan-out of ingested data over a ZeroMQ PUB socket.

    Delivery is best-effort: there are no acknowledgements or replay, and a failed send
    is logged without interrupting ingestion.

    Attributes:
        address (str): Bind address (e.g., "tcp://127.0.0.1:4444").
    """

    def __init__(self, address: str, ctx: zmq.asyncio.Context | None = None):
        self.address = address
        self.ctx = ctx or zmq.asyncio.Context.instance()
        self.socket: zmq.asyncio.Socket | None = None
        self.sent_count = 0

    @property
    def is_running(self) -> bool:
        return self.socket is not None

    async def start(self):
        """Bind the PUB socket."""
        try:
            self.socket = self.ctx.socket(zmq.PUB)
            self.socket.setsockopt(zmq.LINGER, 0)
            self.socket.bind(self.address)
            logger.info(f"Log publisher bound on {self.address}")
        except zmq.ZMQError as e:
            self.socket = None
            raise NetworkError(f"Failed to bind log publisher on {self.address}: {e}")

    async def stop(self):
        if self.socket is not None:
            self.socket.close()
            self.socket = None
            logger.info("Log publisher stopped")

    async def publish(self, topic: str, payload: Any) -> bool:
        """Publish one message; returns False when it could not be sent."""
        if self.socket is None:
            return False
        try:
            await self.socket.send_multipart([topic.encode('utf-8'),
                                              json.dumps(payload, default=str).encode('utf-8')])
            self.sent_count += 1
            return True
        except zmq.ZMQError as e:
            logger.error(f"Failed to publish on {topic}: {e}")
            return False

    async def publish_cycles(self, cycles: list[dict[str, Any]]) -> bool:
        if not cycles:
            return False
        return await self.publish(TOPIC_CYCLE, {"cycles": cycles})

    async def publish_receipts(self, receipts: list[dict[str, Any]]) -> bool:
        if not receipts:
            return False
        return await self.publish(TOPIC_RECEIPT, {"receipts": receipts})

    async def publish_original_txs(self, original_txs: list[dict[str, Any]]) -> bool:
        if not original_txs:
            return False
        return await self.publish(TOPIC_ORIGINAL_TX, {"originalTxs": original_txs})


class FeedSubscriber:
    """
    ZeroMQ SUB client for the distributor's live data feed.
    """

    def __init__(self, address: str, topics: tuple[str, ...] = DEFAULT_TOPICS,
                 ctx: zmq.asyncio.Context | None = None):
        self.address = address
        self.topics = topics
        self.ctx = ctx or zmq.asyncio.Context.instance()
        self.socket: zmq.asyncio.Socket | None = None
        self._stop_event = asyncio.Event()
        self._message_handler: Callable[[dict[str, Any], str], Any] | None = None
        self._task: asyncio.Task | None = None

    def set_handler(self, handler: Callable[[dict[str, Any], str], Any]):
        """Set the callback function for processing received messages."""
        self._message_handler = handler

    async def start(self):
        """Connect and start the receiver loop."""
        try:
            self.socket = self.ctx.socket(zmq.SUB)
            self.socket.setsockopt(zmq.LINGER, 0)
            for topic in self.topics:
                self.socket.setsockopt(zmq.SUBSCRIBE, topic.encode('utf-8'))
            self.socket.connect(self.address)
            logger.info(f"Subscribed to live feed {self.address} topics={list(self.topics)}")
        except zmq.ZMQError as e:
            raise NetworkError(f"Failed to connect to live feed {self.address}: {e}")
        self._stop_event.clear()
        self._task = asyncio.create_task(self._receiver_loop())

    async def stop(self):
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.socket is not None:
            self.socket.close()
            self.socket = None
        logger.info("Live feed subscriber stopped")

    async def _dispatch(self, message: dict[str, Any], topic: str):
        if not self._message_handler:
            return
        # Process message (could be async or sync)
        result = self._message_handler(message, topic)
        if inspect.isawaitable(result):
            await result

    async def _receiver_loop(self):
        """Loop to receive messages from the SUB socket."""
        while not self._stop_event.is_set():
            try:
                parts = await self.socket.recv_multipart()
                if len(parts) < 2:
                    continue
                topic = parts[0].decode('utf-8')
                try:
                    message = json.loads(parts[-1].decode('utf-8'))
                except json.JSONDecodeError:
                    logger.warning(f"Received invalid JSON on {topic}")
                    continue
                await self._dispatch(message, topic)
            except zmq.ZMQError as e:
                if not self._stop_event.is_set():
                    logger.error(f"ZMQ Receive error: {e}")
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error in feed receiver loop: {e}")
                await asyncio.sleep(1)


class LiveFeedHandler:
    """
    Route live feed messages to the indexers.

    Every message must be signed by the distributor; unsigned or foreign messages are
    dropped. A message may carry any of ``cycles``, ``receipts`` and ``originalTxs``.
    """

    def __init__(self, cycle_indexer, receipt_indexer, original_tx_indexer,
                 distributor_public_key: str | None = None, metrics=None):
        self.cycle_indexer = cycle_indexer
        self.receipt_indexer = receipt_indexer
        self.original_tx_indexer = original_tx_indexer
        self.distributor_public_key = distributor_public_key or None
        self.metrics = metrics

    async def __call__(self, message: dict[str, Any], topic: str):
        if not verify_object(message, expected_owner=self.distributor_public_key):
            logger.warning(f"Dropping live feed message on {topic}: invalid signature")
            if self.metrics:
                self.metrics.increment("feed_rejected")
            return

        # Receipts before cycles so a new cycle's blocks see its transactions
        if message.get("receipts"):
            await self.receipt_indexer.process_receipts(message["receipts"])
        if message.get("originalTxs"):
            await self.original_tx_indexer.process_original_txs(message["originalTxs"])
        if message.get("cycles"):
            await self.cycle_indexer.process_cycles(message["cycles"])
        if self.metrics:
            self.metrics.increment("feed_messages")
