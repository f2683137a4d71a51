"""
Message Broker - Resilient publish/consume with Redis Streams and in-memory backends.

The broker keeps exchange topology client-side and maps it onto plain
per-queue backends:

  exchange "" (default)      - routes by queue name
  direct / topic / fanout    - routed through the bindings held here
  x-delayed-message          - held in a delay store until ``x-delay`` ms
                               elapse, then routed with its x-delayed-type

Resilience:
  - connect() retries forever with exponential backoff (5s → 60s cap)
  - a health probe runs every 30s; a failed probe or any connection error
    tears the channel down and schedules a reconnect
  - the queue → handler registry survives disconnects; every consumer is
    restarted on reconnect and unacknowledged messages are redelivered

Delivery is at-least-once. Handlers return a HandlerOutcome (None = ACK);
a raised exception requeues the message.

Message fields on the wire (one Redis Stream entry / one in-memory item):
  {
      "message_id":   unique message identifier,
      "exchange":     exchange the message was published to,
      "routing_key":  routing key (queue name for the default exchange),
      "body":         JSON payload,
      "headers":      JSON object,
      "published_at": ISO timestamp,
      "redelivered":  "1" once the message has been handed out before,
  }
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import socket
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from config.settings import BrokerConfig
from models.errors import BrokerConnectionError, TransientInfraError
from models.schemas import utcnow

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Topology & Message Model
# ──────────────────────────────────────────────────────────────

class ExchangeType(str, Enum):
    DIRECT = "direct"
    TOPIC = "topic"
    FANOUT = "fanout"
    DELAYED = "x-delayed-message"


class HandlerOutcome(str, Enum):
    ACK = "ack"
    REQUEUE = "requeue"         # negative-ack, message goes back on the queue
    REJECT = "reject"           # negative-ack, dead-lettered or dropped


@dataclass
class ExchangeSpec:
    name: str
    type: ExchangeType
    arguments: dict[str, Any] = field(default_factory=dict)

    @property
    def routing_type(self) -> ExchangeType:
        if self.type == ExchangeType.DELAYED:
            return ExchangeType(self.arguments.get("x-delayed-type", "direct"))
        return self.type


@dataclass
class QueueSpec:
    name: str
    durable: bool = True
    dead_letter_exchange: Optional[str] = None


@dataclass
class Binding:
    queue: str
    exchange: str
    pattern: str


@dataclass
class BrokerMessage:
    """A decoded delivery handed to consumer handlers."""
    body: Any
    headers: dict[str, Any] = field(default_factory=dict)
    exchange: str = ""
    routing_key: str = ""
    message_id: str = ""
    published_at: str = ""
    redelivered: bool = False

    def __post_init__(self):
        if not self.message_id:
            self.message_id = f"msg_{uuid.uuid4().hex[:12]}"
        if not self.published_at:
            self.published_at = utcnow().isoformat()

    def encode(self) -> dict[str, str]:
        return {
            "message_id": self.message_id,
            "exchange": self.exchange,
            "routing_key": self.routing_key,
            "body": json.dumps(self.body, default=str),
            "headers": json.dumps(self.headers, default=str),
            "published_at": self.published_at,
            "redelivered": "1" if self.redelivered else "0",
        }

    @classmethod
    def decode(cls, fields: dict[str, str]) -> BrokerMessage:
        """Raises ValueError for entries that are not valid messages."""
        if "body" not in fields:
            raise ValueError("message has no body")
        return cls(
            body=json.loads(fields["body"]),
            headers=json.loads(fields.get("headers") or "{}"),
            exchange=fields.get("exchange", ""),
            routing_key=fields.get("routing_key", ""),
            message_id=fields.get("message_id", ""),
            published_at=fields.get("published_at", ""),
            redelivered=fields.get("redelivered") == "1",
        )


MessageHandler = Callable[[BrokerMessage], Awaitable[Optional[HandlerOutcome]]]


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic match: ``*`` is exactly one word, ``#`` is zero or more."""
    def match(p: list[str], k: list[str]) -> bool:
        if not p:
            return not k
        head = p[0]
        if head == "#":
            return any(match(p[1:], k[i:]) for i in range(len(k) + 1))
        if not k:
            return False
        if head == "*" or head == k[0]:
            return match(p[1:], k[1:])
        return False

    return match(pattern.split("."), routing_key.split("."))


# ──────────────────────────────────────────────────────────────
#  Abstract Broker (resilience + topology)
# ──────────────────────────────────────────────────────────────

class MessageBroker(ABC):
    """
    Backend-independent broker client.

    Subclasses only implement the storage primitives (``_open``, ``_push``,
    ``_fetch``...). Topology, the consumer registry, reconnect backoff and
    health probing all live here so both backends behave identically.

    Usage:
        broker = create_broker(settings.broker)
        await broker.connect()
        await broker.assert_queue("bulk_notifications")
        await broker.consume("bulk_notifications", handler)
        ok = await broker.send_to_queue("bulk_notifications", {"id": ...})
    """

    def __init__(self, config: BrokerConfig = None):
        self.config = config or BrokerConfig()
        self._connected = False
        self._closing = False
        self._exchanges: dict[str, ExchangeSpec] = {}
        self._queues: dict[str, QueueSpec] = {}
        self._bindings: list[Binding] = []
        self._consumers: dict[str, MessageHandler] = {}
        self._consumer_tasks: dict[str, asyncio.Task] = {}
        self._health_task: Optional[asyncio.Task] = None
        self._promoter_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_delay = self.config.reconnect_initial_delay
        self._reconnect_attempts = 0

    # ── Backend primitives ───────────────────────────────────

    @abstractmethod
    async def _open(self):
        """Open the backend connection. Raise on failure."""
        ...

    @abstractmethod
    async def _close_backend(self):
        ...

    @abstractmethod
    async def _ping(self):
        """Raise if the backend is unreachable."""
        ...

    @abstractmethod
    async def _declare_queue(self, name: str):
        ...

    @abstractmethod
    async def _delete_queue(self, name: str):
        ...

    @abstractmethod
    async def _purge_queue(self, name: str) -> int:
        ...

    @abstractmethod
    async def _push(self, queue: str, fields: dict[str, str]):
        ...

    @abstractmethod
    async def _schedule_delayed(self, fields: dict[str, str], due_at: float):
        """Hold a message until the epoch time ``due_at``."""
        ...

    @abstractmethod
    async def _pop_due_delayed(self, now: float) -> list[dict[str, str]]:
        """Claim and return every delayed message whose time has come."""
        ...

    @abstractmethod
    async def _fetch(self, queue: str) -> list[tuple[str, dict[str, str]]]:
        """Wait briefly for the next delivery; returns (delivery_tag, fields) pairs."""
        ...

    @abstractmethod
    async def _ack(self, queue: str, tag: str):
        ...

    @abstractmethod
    async def _requeue(self, queue: str, tag: str, fields: dict[str, str]):
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        ...

    async def _prepare_consumer(self, queue: str):
        """Hook run before a consumer (re)starts; backends recover unacked work here."""
        pass

    # ── Connection lifecycle ─────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self):
        """Connect, retrying with exponential backoff until it succeeds or close() is called."""
        if self._connected:
            return
        self._closing = False
        while not self._closing:
            if await self._try_connect():
                return
            await asyncio.sleep(self._next_delay())

    async def _try_connect(self) -> bool:
        self._reconnect_attempts += 1
        try:
            await self._open()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("broker_connect_failed",
                           backend=type(self).__name__,
                           attempt=self._reconnect_attempts,
                           retry_in=self._reconnect_delay,
                           error=str(e))
            return False

        self._connected = True
        self._reconnect_delay = self.config.reconnect_initial_delay
        self._reconnect_attempts = 0
        logger.info("broker_connected", backend=type(self).__name__)

        for spec in list(self._queues.values()):
            try:
                await self._declare_queue(spec.name)
            except Exception as e:
                logger.error("queue_redeclare_failed", queue=spec.name, error=str(e))

        self._health_task = asyncio.create_task(self._health_loop())
        self._promoter_task = asyncio.create_task(self._promote_loop())
        for queue in list(self._consumers):
            self._start_consumer(queue)
            logger.info("consumer_restored", queue=queue)
        return True

    def _next_delay(self) -> float:
        delay = self._reconnect_delay
        self._reconnect_delay = min(delay * 2, self.config.reconnect_max_delay)
        return delay

    async def _handle_connection_lost(self, reason: str):
        """Tear down the channel and schedule a reconnect. Idempotent."""
        if not self._connected or self._closing:
            return
        self._connected = False
        logger.warning("broker_connection_lost", reason=reason)

        await self._cancel_background(keep_registry=True)
        try:
            await self._close_backend()
        except Exception as e:
            logger.debug("broker_close_after_loss_failed", error=str(e))

        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self):
        while not self._closing and not self._connected:
            delay = self._next_delay()
            logger.info("broker_reconnect_scheduled", delay=delay)
            await asyncio.sleep(delay)
            if self._closing:
                return
            if await self._try_connect():
                return

    async def _cancel_background(self, keep_registry: bool):
        current = asyncio.current_task()
        tasks = [self._health_task, self._promoter_task, *self._consumer_tasks.values()]
        self._health_task = None
        self._promoter_task = None
        self._consumer_tasks = {}
        if not keep_registry:
            self._consumers.clear()
        for task in tasks:
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("broker_task_error", error=str(e))

    async def close(self):
        """Gracefully shut down. Consumers are forgotten; no reconnect happens."""
        self._closing = True
        if self._reconnect_task and not self._reconnect_task.done():
            if self._reconnect_task is not asyncio.current_task():
                self._reconnect_task.cancel()
                try:
                    await self._reconnect_task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        await self._cancel_background(keep_registry=False)
        if self._connected:
            self._connected = False
            try:
                await self._close_backend()
            except Exception as e:
                logger.warning("broker_close_error", error=str(e))
        logger.info("broker_closed")

    async def _health_loop(self):
        while self._connected:
            await asyncio.sleep(self.config.health_check_interval)
            try:
                await self._ping()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("broker_health_check_failed", error=str(e))
                await self._handle_connection_lost("health_check_failed")
                return

    def health(self) -> dict[str, Any]:
        return {
            "backend": type(self).__name__,
            "connected": self._connected,
            "queues": sorted(self._queues),
            "exchanges": sorted(self._exchanges),
            "consumers": sorted(self._consumers),
            "reconnect_delay": self._reconnect_delay,
            "reconnect_attempts": self._reconnect_attempts,
        }

    # ── Topology ─────────────────────────────────────────────

    async def assert_queue(
        self,
        name: str,
        durable: bool = True,
        dead_letter_exchange: Optional[str] = None,
    ) -> bool:
        """Declare a queue. Remembered and re-declared after every reconnect."""
        self._queues[name] = QueueSpec(name=name, durable=durable,
                                       dead_letter_exchange=dead_letter_exchange)
        if not self._connected:
            return False
        try:
            await self._declare_queue(name)
        except TransientInfraError as e:
            await self._handle_connection_lost(str(e))
            return False
        logger.debug("queue_asserted", queue=name)
        return True

    async def assert_exchange(
        self,
        name: str,
        exchange_type: ExchangeType | str = ExchangeType.DIRECT,
        arguments: dict[str, Any] = None,
    ):
        spec = ExchangeSpec(name=name, type=ExchangeType(exchange_type), arguments=dict(arguments or {}))
        if spec.type == ExchangeType.DELAYED:
            spec.arguments.setdefault("x-delayed-type", "direct")
        self._exchanges[name] = spec
        logger.debug("exchange_asserted", exchange=name, type=spec.type.value)

    async def bind_queue(self, queue: str, exchange: str, pattern: str = ""):
        if exchange not in self._exchanges:
            raise ValueError(f"Unknown exchange: {exchange}")
        binding = Binding(queue=queue, exchange=exchange, pattern=pattern)
        if binding not in self._bindings:
            self._bindings.append(binding)
        logger.debug("queue_bound", queue=queue, exchange=exchange, pattern=pattern)

    async def delete_exchange(self, name: str):
        self._exchanges.pop(name, None)
        self._bindings = [b for b in self._bindings if b.exchange != name]

    async def delete_queue(self, name: str) -> bool:
        self._queues.pop(name, None)
        self._bindings = [b for b in self._bindings if b.queue != name]
        await self.cancel_consumer(name)
        if not self._connected:
            return False
        try:
            await self._delete_queue(name)
        except TransientInfraError as e:
            await self._handle_connection_lost(str(e))
            return False
        return True

    async def purge_queue(self, name: str) -> int:
        if not self._connected:
            return 0
        try:
            purged = await self._purge_queue(name)
        except TransientInfraError as e:
            await self._handle_connection_lost(str(e))
            return 0
        logger.info("queue_purged", queue=name, count=purged)
        return purged

    async def check_queue(self, name: str) -> Optional[int]:
        """Message count for a declared queue, or None if it is unknown or unreachable."""
        if not self._connected or name not in self._queues:
            return None
        try:
            return await self.queue_length(name)
        except TransientInfraError as e:
            await self._handle_connection_lost(str(e))
            return None

    def _resolve_targets(self, exchange: str, routing_key: str) -> list[str]:
        if exchange == "":
            return [routing_key] if routing_key in self._queues else []
        spec = self._exchanges.get(exchange)
        if spec is None:
            return []
        kind = spec.routing_type
        targets = []
        for b in self._bindings:
            if b.exchange != exchange or b.queue not in self._queues:
                continue
            if kind == ExchangeType.FANOUT:
                hit = True
            elif kind == ExchangeType.TOPIC:
                hit = topic_matches(b.pattern, routing_key)
            else:
                hit = b.pattern == routing_key
            if hit and b.queue not in targets:
                targets.append(b.queue)
        return targets

    async def _route(self, fields: dict[str, str]) -> int:
        targets = self._resolve_targets(fields.get("exchange", ""), fields.get("routing_key", ""))
        for queue in targets:
            await self._push(queue, fields)
        return len(targets)

    # ── Publishing ───────────────────────────────────────────

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: Any,
        headers: dict[str, Any] = None,
        message_id: str = "",
    ) -> bool:
        """
        Publish a message. Never raises: False means delivery is not
        guaranteed (disconnected, unroutable or a backend error).
        """
        if not self._connected:
            logger.warning("publish_while_disconnected", exchange=exchange,
                           routing_key=routing_key)
            return False

        headers = dict(headers or {})
        message = BrokerMessage(body=payload, headers=headers, exchange=exchange,
                                routing_key=routing_key, message_id=message_id)
        try:
            fields = message.encode()
        except (TypeError, ValueError) as e:
            logger.error("publish_encode_failed", exchange=exchange, error=str(e))
            return False

        spec = self._exchanges.get(exchange)
        try:
            delay_ms = int(headers.get("x-delay") or 0)
        except (TypeError, ValueError):
            delay_ms = 0

        try:
            if spec is not None and spec.type == ExchangeType.DELAYED and delay_ms > 0:
                if not self._resolve_targets(exchange, routing_key):
                    logger.warning("message_unroutable", exchange=exchange,
                                   routing_key=routing_key)
                    return False
                await self._schedule_delayed(fields, time.time() + delay_ms / 1000.0)
                logger.debug("message_delayed", exchange=exchange,
                             message_id=message.message_id, delay_ms=delay_ms)
                return True

            routed = await self._route(fields)
        except TransientInfraError as e:
            logger.error("publish_failed", exchange=exchange, error=str(e))
            await self._handle_connection_lost(str(e))
            return False
        except Exception as e:
            logger.error("publish_failed", exchange=exchange, error=str(e))
            return False

        if not routed:
            logger.warning("message_unroutable", exchange=exchange, routing_key=routing_key)
            return False
        logger.debug("message_published", exchange=exchange, routing_key=routing_key,
                     message_id=message.message_id)
        return True

    async def send_to_queue(
        self,
        queue: str,
        payload: Any,
        headers: dict[str, Any] = None,
        message_id: str = "",
    ) -> bool:
        """Publish straight to a queue via the default exchange, declaring it if needed."""
        if queue not in self._queues:
            if not await self.assert_queue(queue):
                return False
        return await self.publish("", queue, payload, headers=headers, message_id=message_id)

    async def promote_delayed(self) -> int:
        """Route every delayed message whose delay has elapsed."""
        due = await self._pop_due_delayed(time.time())
        promoted = 0
        for fields in due:
            if await self._route(fields):
                promoted += 1
            else:
                logger.warning("delayed_message_unroutable",
                               exchange=fields.get("exchange"),
                               routing_key=fields.get("routing_key"),
                               message_id=fields.get("message_id"))
        if promoted:
            logger.debug("delayed_messages_promoted", count=promoted)
        return promoted

    async def _promote_loop(self):
        while self._connected:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                raise
            except TransientInfraError as e:
                await self._handle_connection_lost(str(e))
                return
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self.config.delayed_poll_interval)

    # ── Consuming ────────────────────────────────────────────

    async def consume(self, queue: str, handler: MessageHandler):
        """
        Register ``handler`` for ``queue``. The registration survives
        reconnects: the consumer is restarted each time the broker comes back.
        """
        if queue not in self._queues:
            await self.assert_queue(queue)
        self._consumers[queue] = handler
        if self._connected:
            self._start_consumer(queue)
        logger.info("consumer_registered", queue=queue, connected=self._connected)

    async def cancel_consumer(self, queue: str):
        self._consumers.pop(queue, None)
        task = self._consumer_tasks.pop(queue, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _start_consumer(self, queue: str):
        existing = self._consumer_tasks.get(queue)
        if existing and not existing.done():
            return
        self._consumer_tasks[queue] = asyncio.create_task(self._consume_loop(queue))

    def _owns_consumer(self, queue: str) -> bool:
        # A loop orphaned by a reconnect must not keep reading beside its replacement.
        return (queue in self._consumers
                and self._consumer_tasks.get(queue) is asyncio.current_task())

    async def _consume_loop(self, queue: str):
        try:
            await self._prepare_consumer(queue)
        except TransientInfraError as e:
            await self._handle_connection_lost(str(e))
            return
        logger.info("consumer_started", queue=queue)

        while self._connected and self._owns_consumer(queue):
            try:
                deliveries = await self._fetch(queue)
            except asyncio.CancelledError:
                raise
            except TransientInfraError as e:
                await self._handle_connection_lost(str(e))
                return
            except Exception as e:
                logger.error("consumer_error", queue=queue, error=str(e))
                await asyncio.sleep(1)
                continue

            for tag, fields in deliveries:
                try:
                    await self._deliver(queue, tag, fields)
                except TransientInfraError as e:
                    await self._handle_connection_lost(str(e))
                    return

    async def _deliver(self, queue: str, tag: str, fields: dict[str, str]):
        try:
            message = BrokerMessage.decode(fields)
        except ValueError as e:
            logger.error("message_undecodable", queue=queue, error=str(e))
            await self._dead_letter(queue, fields)
            await self._ack(queue, tag)
            return

        handler = self._consumers.get(queue)
        if handler is None:
            await self._requeue(queue, tag, fields)
            return

        try:
            outcome = await handler(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("message_handler_error", queue=queue,
                         message_id=message.message_id, error=str(e))
            outcome = HandlerOutcome.REQUEUE

        if outcome is None or outcome == HandlerOutcome.ACK:
            await self._ack(queue, tag)
        elif outcome == HandlerOutcome.REQUEUE:
            fields = {**fields, "redelivered": "1"}
            await self._requeue(queue, tag, fields)
            logger.info("message_requeued", queue=queue, message_id=message.message_id)
        else:
            await self._dead_letter(queue, fields)
            await self._ack(queue, tag)
            logger.warning("message_rejected", queue=queue, message_id=message.message_id)

    async def _dead_letter(self, queue: str, fields: dict[str, str]):
        spec = self._queues.get(queue)
        if spec is None or not spec.dead_letter_exchange:
            return
        dead = {**fields, "exchange": spec.dead_letter_exchange,
                "routing_key": fields.get("routing_key") or queue}
        if not await self._route(dead):
            logger.warning("dead_letter_unroutable", queue=queue,
                           exchange=spec.dead_letter_exchange)


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisBroker(MessageBroker):
    """
    Production broker backed by Redis Streams + a Sorted Set.

    - Every queue is a stream read through one consumer group
    - Unacknowledged entries stay in the group's pending list and are
      re-read first whenever a consumer (re)starts
    - Delayed messages live in a sorted set scored by due time; ZREM
      decides which promoter owns a due entry
    """

    def __init__(self, config: BrokerConfig = None):
        super().__init__(config)
        self._redis: Optional[aioredis.Redis] = None
        # A restarted worker keeps its name and so re-reads its own pending entries.
        self._consumer_name = self.config.consumer_name or socket.gethostname()
        self._backlog: set[str] = set()

    def _key(self, queue: str) -> str:
        return f"{self.config.key_prefix}:queue:{queue}"

    @property
    def _delayed_key(self) -> str:
        return f"{self.config.key_prefix}:delayed"

    async def _call(self, coro):
        try:
            return await coro
        except ResponseError:
            raise
        except RedisError as e:
            raise BrokerConnectionError(str(e)) from e

    async def _open(self):
        self._redis = aioredis.from_url(
            self.config.redis_url,
            decode_responses=True,
            max_connections=20,
        )
        try:
            await self._call(self._redis.ping())
        except BrokerConnectionError:
            await self._redis.aclose()
            self._redis = None
            raise
        logger.info("redis_broker_connected", url=self.config.redis_url)

    async def _close_backend(self):
        if self._redis is not None:
            redis, self._redis = self._redis, None
            await redis.aclose()

    async def _ping(self):
        if self._redis is None:
            raise BrokerConnectionError("not connected")
        await self._call(self._redis.ping())

    async def _declare_queue(self, name: str):
        try:
            await self._call(self._redis.xgroup_create(
                self._key(name), self.config.consumer_group, id="0", mkstream=True,
            ))
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _delete_queue(self, name: str):
        await self._call(self._redis.delete(self._key(name)))

    async def _purge_queue(self, name: str) -> int:
        key = self._key(name)
        count = await self._call(self._redis.xlen(key))
        await self._call(self._redis.xtrim(key, maxlen=0, approximate=False))
        return count

    async def _push(self, queue: str, fields: dict[str, str]):
        await self._call(self._redis.xadd(self._key(queue), fields))

    async def _schedule_delayed(self, fields: dict[str, str], due_at: float):
        member = json.dumps({"id": uuid.uuid4().hex, "fields": fields})
        await self._call(self._redis.zadd(self._delayed_key, {member: due_at}))

    async def _pop_due_delayed(self, now: float) -> list[dict[str, str]]:
        members = await self._call(self._redis.zrangebyscore(
            self._delayed_key, "-inf", now, start=0, num=100,
        ))
        claimed = []
        for member in members:
            # Another worker may have promoted the same entry already.
            if await self._call(self._redis.zrem(self._delayed_key, member)) == 1:
                claimed.append(json.loads(member)["fields"])
        return claimed

    async def _prepare_consumer(self, queue: str):
        await self._claim_idle(queue)
        self._backlog.add(queue)

    async def _claim_idle(self, queue: str) -> int:
        """Take over entries another consumer left pending for too long."""
        key = self._key(queue)
        start, claimed = "0-0", 0
        while True:
            try:
                response = await self._call(self._redis.xautoclaim(
                    key, self.config.consumer_group, self._consumer_name,
                    min_idle_time=self.config.pending_claim_idle_ms,
                    start_id=start, count=100,
                ))
            except ResponseError as e:
                # XAUTOCLAIM needs Redis 6.2+; older servers keep the own-backlog path.
                logger.warning("redis_pending_claim_unsupported", queue=queue, error=str(e))
                return claimed
            start, entries = response[0], response[1]
            claimed += len(entries)
            if start in ("0-0", b"0-0"):
                break
        if claimed:
            logger.info("redis_pending_claimed", queue=queue, count=claimed,
                        consumer=self._consumer_name)
        return claimed

    async def _fetch(self, queue: str) -> list[tuple[str, dict[str, str]]]:
        key = self._key(queue)
        if queue in self._backlog:
            response = await self._call(self._redis.xreadgroup(
                groupname=self.config.consumer_group,
                consumername=self._consumer_name,
                streams={key: "0"},
                count=1,
            ))
            entries = response[0][1] if response else []
            if entries:
                entry_id, fields = entries[0]
                if not fields:
                    # Entry was trimmed while pending.
                    await self._call(self._redis.xack(key, self.config.consumer_group, entry_id))
                    return []
                return [(entry_id, {**fields, "redelivered": "1"})]
            self._backlog.discard(queue)

        response = await self._call(self._redis.xreadgroup(
            groupname=self.config.consumer_group,
            consumername=self._consumer_name,
            streams={key: ">"},
            count=1,
            block=self.config.poll_block_ms,
        ))
        if not response:
            return []
        return [(entry_id, fields) for entry_id, fields in response[0][1]]

    async def _ack(self, queue: str, tag: str):
        key = self._key(queue)
        pipe = self._redis.pipeline()
        pipe.xack(key, self.config.consumer_group, tag)
        pipe.xdel(key, tag)
        await self._call(pipe.execute())

    async def _requeue(self, queue: str, tag: str, fields: dict[str, str]):
        await self._push(queue, fields)
        await self._ack(queue, tag)

    async def queue_length(self, queue: str) -> int:
        return await self._call(self._redis.xlen(self._key(queue)))


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryBroker(MessageBroker):
    """
    Development/test broker backed by asyncio primitives.
    Single-process only. ``available`` and ``simulate_disconnect()`` let
    tests exercise the reconnect path.
    """

    def __init__(self, config: BrokerConfig = None):
        super().__init__(config)
        self.available = True
        self._data: dict[str, deque[dict[str, str]]] = {}
        self._unacked: dict[str, dict[str, dict[str, str]]] = {}
        self._signals: dict[str, asyncio.Event] = {}
        self._delayed: list[tuple[float, int, dict[str, str]]] = []
        self._seq = itertools.count()

    def _signal(self, queue: str) -> asyncio.Event:
        if queue not in self._signals:
            self._signals[queue] = asyncio.Event()
        return self._signals[queue]

    def _require(self):
        if not self.available:
            raise BrokerConnectionError("in-memory broker unavailable")

    async def simulate_disconnect(self, reason: str = "simulated_disconnect"):
        await self._handle_connection_lost(reason)

    async def _open(self):
        self._require()
        logger.info("inmemory_broker_connected")

    async def _close_backend(self):
        # Unacked deliveries return to the head of their queue, like a closed AMQP channel.
        for queue, pending in self._unacked.items():
            q = self._data.setdefault(queue, deque())
            for fields in reversed(list(pending.values())):
                q.appendleft({**fields, "redelivered": "1"})
            pending.clear()
            if q:
                self._signal(queue).set()

    async def _ping(self):
        self._require()

    async def _declare_queue(self, name: str):
        self._require()
        self._data.setdefault(name, deque())
        self._unacked.setdefault(name, {})

    async def _delete_queue(self, name: str):
        self._data.pop(name, None)
        self._unacked.pop(name, None)

    async def _purge_queue(self, name: str) -> int:
        q = self._data.get(name)
        if not q:
            return 0
        count = len(q)
        q.clear()
        return count

    async def _push(self, queue: str, fields: dict[str, str]):
        self._require()
        self._data.setdefault(queue, deque()).append(dict(fields))
        self._signal(queue).set()

    async def _schedule_delayed(self, fields: dict[str, str], due_at: float):
        self._require()
        heapq.heappush(self._delayed, (due_at, next(self._seq), dict(fields)))

    async def _pop_due_delayed(self, now: float) -> list[dict[str, str]]:
        self._require()
        due = []
        while self._delayed and self._delayed[0][0] <= now:
            due.append(heapq.heappop(self._delayed)[2])
        return due

    async def _fetch(self, queue: str) -> list[tuple[str, dict[str, str]]]:
        q = self._data.setdefault(queue, deque())
        if not q:
            signal = self._signal(queue)
            signal.clear()
            try:
                await asyncio.wait_for(signal.wait(), timeout=self.config.poll_block_ms / 1000.0)
            except asyncio.TimeoutError:
                return []
        self._require()
        if not q:
            return []
        tag = uuid.uuid4().hex
        fields = q.popleft()
        self._unacked.setdefault(queue, {})[tag] = fields
        return [(tag, fields)]

    async def _ack(self, queue: str, tag: str):
        self._require()
        self._unacked.get(queue, {}).pop(tag, None)

    async def _requeue(self, queue: str, tag: str, fields: dict[str, str]):
        self._require()
        self._unacked.get(queue, {}).pop(tag, None)
        self._data.setdefault(queue, deque()).append(fields)
        self._signal(queue).set()

    async def queue_length(self, queue: str) -> int:
        return len(self._data.get(queue, ()))

    def delayed_count(self) -> int:
        return len(self._delayed)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageBroker] = None


def create_broker(config: BrokerConfig = None) -> MessageBroker:
    """Factory: create the appropriate broker backend."""
    global _instance
    if _instance:
        return _instance

    config = config or BrokerConfig()
    if config.backend == "redis":
        _instance = RedisBroker(config)
    else:
        _instance = InMemoryBroker(config)
    logger.info("broker_created", backend=config.backend)
    return _instance


def get_broker() -> MessageBroker:
    """Return the singleton broker instance."""
    global _instance
    if _instance is None:
        _instance = create_broker()
    return _instance


def reset_broker():
    """Forget the singleton (tests, reconfiguration)."""
    global _instance
    _instance = None
