"""Broker topology, queue backends and the event publisher.

Each integration gets a topic exchange with an inbound and an outbound
queue, each backed by its own dead-letter queue. Queues are priority
ordered; a delivery stays unacknowledged until the consumer acks, nacks
or dead-letters it.
"""

import asyncio
import heapq
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from redis.asyncio import Redis

from .config import Settings
from .models import Direction, EventType

logger = logging.getLogger(__name__)

MAX_PRIORITY = 10
MAIN_QUEUE_TTL_SECONDS = 24 * 60 * 60
DLQ_TTL_SECONDS = 7 * 24 * 60 * 60

RETRY_HEADER = 'x-retry-count'
DEATH_REASON_HEADER = 'x-death-reason'
DEATH_QUEUE_HEADER = 'x-first-death-queue'


class Priority:
    """Message priorities: bookings > availability > rates."""

    WEBHOOK_BOOKING = 10
    FULL_SYNC = 10
    NEW_RESERVATION = 8
    RESERVATION_CHANGE = 7
    DEFAULT = 5
    AVAILABILITY = 5
    RATE = 3


def priority_for(event_type: EventType, full_sync: bool = False) -> int:
    """Default priority for an event type."""
    if event_type == EventType.BOOKING_SYNC:
        return Priority.FULL_SYNC if full_sync else Priority.DEFAULT
    if event_type in (EventType.BOOKING_CREATED, EventType.BOOKING_UPDATED, EventType.BOOKING_CANCELLED):
        return Priority.WEBHOOK_BOOKING
    if event_type == EventType.RESERVATION_CREATE:
        return Priority.NEW_RESERVATION
    if event_type in (EventType.RESERVATION_UPDATE, EventType.RESERVATION_CANCEL):
        return Priority.RESERVATION_CHANGE
    if event_type == EventType.AVAILABILITY_UPDATE:
        return Priority.AVAILABILITY
    if event_type == EventType.RATE_UPDATE:
        return Priority.RATE
    return Priority.DEFAULT


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic matching: '*' is exactly one word, '#' is zero or more."""
    pattern_words = pattern.split('.')
    key_words = routing_key.split('.')

    def match(pi: int, ki: int) -> bool:
        if pi == len(pattern_words):
            return ki == len(key_words)
        word = pattern_words[pi]
        if word == '#':
            return any(match(pi + 1, k) for k in range(ki, len(key_words) + 1))
        if ki == len(key_words):
            return False
        if word == '*' or word == key_words[ki]:
            return match(pi + 1, ki + 1)
        return False

    return match(0, 0)


@dataclass(frozen=True)
class Topology:
    """Exchange, queues and bindings for one integration."""

    integration: str

    @property
    def exchange(self) -> str:
        return f"{self.integration}.events"

    @property
    def dead_letter_exchange(self) -> str:
        return f"{self.exchange}.dlx"

    @property
    def inbound_queue(self) -> str:
        return f"{self.integration}.inbound"

    @property
    def outbound_queue(self) -> str:
        return f"{self.integration}.outbound"

    def queue(self, direction: Direction) -> str:
        return self.inbound_queue if direction == Direction.INBOUND else self.outbound_queue

    @staticmethod
    def dlq_for(queue: str) -> str:
        return f"{queue}.dlq"

    @property
    def queues(self) -> List[str]:
        return [self.inbound_queue, self.outbound_queue]

    def bindings(self) -> List[Tuple[str, str]]:
        """(pattern, queue) pairs bound on the exchange."""
        return [
            (f"{self.integration}.booking.#", self.inbound_queue),
            (f"pms.{self.integration}.#", self.outbound_queue),
        ]

    def routing_key(self, event_type: EventType) -> str:
        event_type = EventType(event_type)
        if event_type.direction == Direction.INBOUND:
            return f"{self.integration}.{event_type.value}"
        return f"pms.{self.integration}.{event_type.value}"

    def route(self, routing_key: str) -> List[str]:
        return [queue for pattern, queue in self.bindings() if topic_matches(pattern, routing_key)]


@dataclass
class Delivery:
    """A message as handed to a consumer."""

    message_id: str
    routing_key: str
    body: Dict[str, Any]
    queue: str
    priority: int = Priority.DEFAULT
    headers: Dict[str, Any] = field(default_factory=dict)
    delivery_id: str = field(default_factory=lambda: uuid4().hex)
    enqueued_at: float = field(default_factory=time.time)
    redelivered: bool = False

    @property
    def retry_count(self) -> int:
        return int(self.headers.get(RETRY_HEADER, 0))

    def score(self) -> float:
        """Sort key: higher priority first, then FIFO."""
        priority = max(0, min(MAX_PRIORITY, self.priority))
        return (MAX_PRIORITY - priority) * 1e13 + int(self.enqueued_at * 1000)

    def to_json(self) -> str:
        return json.dumps({
            'message_id': self.message_id,
            'routing_key': self.routing_key,
            'body': self.body,
            'queue': self.queue,
            'priority': self.priority,
            'headers': self.headers,
            'delivery_id': self.delivery_id,
            'enqueued_at': self.enqueued_at,
            'redelivered': self.redelivered,
        }, default=str)

    @classmethod
    def from_json(cls, raw: str) -> 'Delivery':
        data = json.loads(raw)
        return cls(**data)


class BrokerError(Exception):
    """Broker-level failure (unroutable message, connection loss)."""
    pass


class Broker(ABC):
    """Queue backend with AMQP-like delivery semantics."""

    def __init__(self):
        self.logger = logger.getChild(type(self).__name__)
        self._topologies: Dict[str, Topology] = {}

    async def declare_topology(self, topology: Topology) -> None:
        """Register an integration's exchange, queues and bindings."""
        self._topologies[topology.integration] = topology
        await self._declare(topology)
        self.logger.info(f"Declared topology for {topology.integration}")

    async def _declare(self, topology: Topology) -> None:
        return None

    async def publish(
        self,
        topology: Topology,
        routing_key: str,
        body: Dict[str, Any],
        message_id: str,
        priority: int = Priority.DEFAULT,
        headers: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        """Publish to the integration's exchange.

        Returns:
            Queues the message was routed to

        Raises:
            BrokerError: If no binding matches the routing key
        """
        if topology.integration not in self._topologies:
            await self.declare_topology(topology)

        queues = topology.route(routing_key)
        if not queues:
            raise BrokerError(f"Unroutable message {message_id} on {topology.exchange}: {routing_key}")

        for queue in queues:
            delivery = Delivery(
                message_id=message_id,
                routing_key=routing_key,
                body=body,
                queue=queue,
                priority=max(0, min(MAX_PRIORITY, int(priority))),
                headers=dict(headers or {}),
            )
            await self._enqueue(queue, delivery)
        return queues

    async def consume(self, queue: str, timeout: float = 5.0) -> Optional[Delivery]:
        """Take the next delivery, dead-lettering any that outlived the queue TTL.

        Returns:
            Delivery, or None if nothing arrived within the timeout
        """
        deadline = time.monotonic() + timeout
        while True:
            remaining = max(0.0, deadline - time.monotonic())
            delivery = await self._pop(queue, remaining)
            if delivery is None:
                return None
            if time.time() - delivery.enqueued_at > MAIN_QUEUE_TTL_SECONDS:
                await self.dead_letter(delivery, reason='expired')
                continue
            return delivery

    async def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        """Negative-ack. Without requeue the message is dead-lettered."""
        if not requeue:
            await self.dead_letter(delivery, reason='rejected')
            return
        requeued = Delivery(
            message_id=delivery.message_id,
            routing_key=delivery.routing_key,
            body=delivery.body,
            queue=delivery.queue,
            priority=delivery.priority,
            headers={**delivery.headers, RETRY_HEADER: delivery.retry_count + 1},
            enqueued_at=delivery.enqueued_at,
            redelivered=True,
        )
        await self._requeue(delivery, requeued)

    async def dead_letter(self, delivery: Delivery, reason: str) -> None:
        dead = Delivery(
            message_id=delivery.message_id,
            routing_key=delivery.routing_key,
            body=delivery.body,
            queue=Topology.dlq_for(delivery.queue),
            priority=delivery.priority,
            headers={
                **delivery.headers,
                DEATH_REASON_HEADER: reason,
                DEATH_QUEUE_HEADER: delivery.queue,
            },
            enqueued_at=time.time(),
        )
        await self._move_to_dlq(delivery, dead)
        self.logger.warning(f"Dead-lettered {delivery.message_id} from {delivery.queue}: {reason}")

    @abstractmethod
    async def _enqueue(self, queue: str, delivery: Delivery) -> None:
        pass

    @abstractmethod
    async def _pop(self, queue: str, timeout: float) -> Optional[Delivery]:
        pass

    @abstractmethod
    async def _requeue(self, original: Delivery, requeued: Delivery) -> None:
        pass

    @abstractmethod
    async def _move_to_dlq(self, original: Delivery, dead: Delivery) -> None:
        pass

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        pass

    @abstractmethod
    async def recover(self, queue: str) -> int:
        """Return unacked deliveries of a queue to it (consumer restart)."""
        pass

    @abstractmethod
    async def queue_depth(self, queue: str) -> int:
        pass

    @abstractmethod
    async def list_dead_letters(self, queue: str, limit: int = 100) -> List[Delivery]:
        """Dead letters for a main queue, oldest first."""
        pass

    @abstractmethod
    async def remove_dead_letters(self, queue: str, message_id: str) -> int:
        """Drop the dead letters of one message (after replay)."""
        pass

    @abstractmethod
    async def purge(self, queue: str) -> int:
        pass

    async def close(self) -> None:
        return None


_POP_SCRIPT = """
local items = redis.call('ZPOPMIN', KEYS[1], 1)
if #items == 0 then
    return false
end
local delivery = cjson.decode(items[1])
redis.call('HSET', KEYS[2], delivery['delivery_id'], items[1])
return items[1]
"""


class RedisBroker(Broker):
    """Broker on Redis sorted sets.

    Layout per queue: ``{ns}:queue:{name}`` (zset by priority score),
    ``{ns}:unacked:{name}`` (hash delivery_id -> message) and
    ``{ns}:dlq:{name}`` (zset by dead-letter time).
    """

    def __init__(self, url: str, namespace: str = 'channel-sync', poll_interval: float = 0.2):
        super().__init__()
        self.redis = Redis.from_url(url, decode_responses=True)
        self.namespace = namespace
        self.poll_interval = poll_interval
        self._pop_script = self.redis.register_script(_POP_SCRIPT)

    def _queue_key(self, queue: str) -> str:
        return f"{self.namespace}:queue:{queue}"

    def _unacked_key(self, queue: str) -> str:
        return f"{self.namespace}:unacked:{queue}"

    def _dlq_key(self, queue: str) -> str:
        return f"{self.namespace}:dlq:{queue}"

    async def _declare(self, topology: Topology) -> None:
        bindings_key = f"{self.namespace}:bindings:{topology.exchange}"
        await self.redis.hset(bindings_key, mapping=dict(topology.bindings()))
        await self.redis.hset(
            f"{self.namespace}:exchanges",
            mapping={topology.exchange: 'topic', topology.dead_letter_exchange: 'topic'}
        )

    async def _enqueue(self, queue: str, delivery: Delivery) -> None:
        await self.redis.zadd(self._queue_key(queue), {delivery.to_json(): delivery.score()})

    async def _pop(self, queue: str, timeout: float) -> Optional[Delivery]:
        deadline = time.monotonic() + timeout
        while True:
            raw = await self._pop_script(keys=[self._queue_key(queue), self._unacked_key(queue)])
            if raw:
                return Delivery.from_json(raw)
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(min(self.poll_interval, max(0.0, deadline - time.monotonic())))

    async def ack(self, delivery: Delivery) -> None:
        await self.redis.hdel(self._unacked_key(delivery.queue), delivery.delivery_id)

    async def _requeue(self, original: Delivery, requeued: Delivery) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self._unacked_key(original.queue), original.delivery_id)
            pipe.zadd(self._queue_key(requeued.queue), {requeued.to_json(): requeued.score()})
            await pipe.execute()

    async def _move_to_dlq(self, original: Delivery, dead: Delivery) -> None:
        dlq_key = self._dlq_key(original.queue)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self._unacked_key(original.queue), original.delivery_id)
            pipe.zadd(dlq_key, {dead.to_json(): dead.enqueued_at})
            pipe.zremrangebyscore(dlq_key, '-inf', time.time() - DLQ_TTL_SECONDS)
            await pipe.execute()

    async def recover(self, queue: str) -> int:
        unacked = await self.redis.hgetall(self._unacked_key(queue))
        if not unacked:
            return 0
        async with self.redis.pipeline(transaction=True) as pipe:
            for delivery_id, raw in unacked.items():
                delivery = Delivery.from_json(raw)
                delivery.redelivered = True
                pipe.zadd(self._queue_key(queue), {delivery.to_json(): delivery.score()})
                pipe.hdel(self._unacked_key(queue), delivery_id)
            await pipe.execute()
        self.logger.info(f"Recovered {len(unacked)} unacked deliveries on {queue}")
        return len(unacked)

    async def queue_depth(self, queue: str) -> int:
        return await self.redis.zcard(self._queue_key(queue))

    async def list_dead_letters(self, queue: str, limit: int = 100) -> List[Delivery]:
        dlq_key = self._dlq_key(queue)
        await self.redis.zremrangebyscore(dlq_key, '-inf', time.time() - DLQ_TTL_SECONDS)
        raw_items = await self.redis.zrange(dlq_key, 0, limit - 1)
        return [Delivery.from_json(raw) for raw in raw_items]

    async def remove_dead_letters(self, queue: str, message_id: str) -> int:
        dlq_key = self._dlq_key(queue)
        members = [
            raw for raw in await self.redis.zrange(dlq_key, 0, -1)
            if Delivery.from_json(raw).message_id == message_id
        ]
        if not members:
            return 0
        return await self.redis.zrem(dlq_key, *members)

    async def purge(self, queue: str) -> int:
        depth = await self.queue_depth(queue)
        await self.redis.delete(self._queue_key(queue))
        return depth

    async def close(self) -> None:
        await self.redis.aclose()


class MemoryBroker(Broker):
    """Single-process broker with the same delivery semantics as RedisBroker."""

    def __init__(self):
        super().__init__()
        self._queues: Dict[str, List[Tuple[float, int, Delivery]]] = {}
        self._unacked: Dict[str, Dict[str, Delivery]] = {}
        self._dead: Dict[str, List[Delivery]] = {}
        self._signals: Dict[str, asyncio.Event] = {}
        self._counter = itertools.count()

    def _signal(self, queue: str) -> asyncio.Event:
        if queue not in self._signals:
            self._signals[queue] = asyncio.Event()
        return self._signals[queue]

    async def _enqueue(self, queue: str, delivery: Delivery) -> None:
        heapq.heappush(self._queues.setdefault(queue, []), (delivery.score(), next(self._counter), delivery))
        self._signal(queue).set()

    async def _pop(self, queue: str, timeout: float) -> Optional[Delivery]:
        deadline = time.monotonic() + timeout
        while True:
            heap = self._queues.get(queue)
            if heap:
                _, _, delivery = heapq.heappop(heap)
                self._unacked.setdefault(queue, {})[delivery.delivery_id] = delivery
                return delivery
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            signal = self._signal(queue)
            signal.clear()
            try:
                await asyncio.wait_for(signal.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return None

    async def ack(self, delivery: Delivery) -> None:
        self._unacked.get(delivery.queue, {}).pop(delivery.delivery_id, None)

    async def _requeue(self, original: Delivery, requeued: Delivery) -> None:
        self._unacked.get(original.queue, {}).pop(original.delivery_id, None)
        await self._enqueue(requeued.queue, requeued)

    async def _move_to_dlq(self, original: Delivery, dead: Delivery) -> None:
        self._unacked.get(original.queue, {}).pop(original.delivery_id, None)
        cutoff = time.time() - DLQ_TTL_SECONDS
        letters = [d for d in self._dead.get(original.queue, []) if d.enqueued_at >= cutoff]
        letters.append(dead)
        self._dead[original.queue] = letters

    async def recover(self, queue: str) -> int:
        pending = self._unacked.pop(queue, {})
        for delivery in pending.values():
            delivery.redelivered = True
            await self._enqueue(queue, delivery)
        return len(pending)

    async def queue_depth(self, queue: str) -> int:
        return len(self._queues.get(queue, []))

    def unacked_count(self, queue: str) -> int:
        return len(self._unacked.get(queue, {}))

    async def list_dead_letters(self, queue: str, limit: int = 100) -> List[Delivery]:
        return list(self._dead.get(queue, []))[:limit]

    async def remove_dead_letters(self, queue: str, message_id: str) -> int:
        letters = self._dead.get(queue, [])
        kept = [d for d in letters if d.message_id != message_id]
        self._dead[queue] = kept
        return len(letters) - len(kept)

    async def purge(self, queue: str) -> int:
        depth = len(self._queues.get(queue, []))
        self._queues[queue] = []
        return depth


def create_broker(settings: Settings) -> Broker:
    """Build the broker selected by settings.broker_url."""
    if settings.uses_memory_broker:
        return MemoryBroker()
    return RedisBroker(settings.broker_url, namespace=settings.broker_namespace)


class EventPublisher:
    """Publishes ledger rows and clears their outbox marker."""

    def __init__(self, broker: Broker, ledger):
        self.broker = broker
        self.ledger = ledger
        self.logger = logger.getChild('publisher')

    @staticmethod
    def message_body(event) -> Dict[str, Any]:
        return {
            'event_id': str(event.id),
            'event_type': event.event_type,
            'entity_type': event.entity_type,
            'idempotency_key': event.idempotency_key,
            'payload': event.payload,
        }

    async def publish_event(self, event) -> None:
        """Publish one ledger row with message id = event id.

        Raises:
            BrokerError: If the broker rejects the message
        """
        topology = Topology(event.channel)
        routing_key = topology.routing_key(EventType(event.event_type))
        await self.broker.publish(
            topology,
            routing_key,
            self.message_body(event),
            message_id=str(event.id),
            priority=event.priority,
        )
        self.ledger.mark_published(event.id)
        self.logger.debug(f"Published {event.event_type} {event.id} to {routing_key}")

    async def try_publish(self, event) -> bool:
        """Publish, leaving the row pending for the sweeper on failure."""
        try:
            await self.publish_event(event)
            return True
        except Exception as e:
            self.logger.error(f"Publish of {event.id} failed, left pending for sweep: {e}")
            return False
