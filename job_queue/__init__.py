"""
Message Broker - Decouples producers from the scheduler and bulk workers.

- The scheduler PUBLISHES due tasks to a direct exchange and future ones
  through the x-delayed-message exchange
- The bulk dispatcher SENDS job envelopes straight to its queue
- Workers CONSUME with at-least-once delivery and explicit outcomes
- Supports Redis Streams (production) and in-memory queues (dev)
"""
from job_queue.broker import (
    BrokerMessage,
    ExchangeType,
    HandlerOutcome,
    InMemoryBroker,
    MessageBroker,
    RedisBroker,
    create_broker,
    get_broker,
    reset_broker,
    topic_matches,
)

__all__ = [
    "BrokerMessage", "ExchangeType", "HandlerOutcome",
    "MessageBroker", "RedisBroker", "InMemoryBroker",
    "create_broker", "get_broker", "reset_broker", "topic_matches",
]
