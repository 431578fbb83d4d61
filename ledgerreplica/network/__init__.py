from ledgerreplica.network.zmq_transport import (
    FeedSubscriber,
    LiveFeedHandler,
    LogPublisher,
    NetworkError,
    TOPIC_CYCLE,
    TOPIC_ORIGINAL_TX,
    TOPIC_RECEIPT,
)

__all__ = [
    "FeedSubscriber",
    "LiveFeedHandler",
    "LogPublisher",
    "NetworkError",
    "TOPIC_CYCLE",
    "TOPIC_ORIGINAL_TX",
    "TOPIC_RECEIPT",
]
