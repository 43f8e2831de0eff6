"""Tests for topology routing, priorities and dead-lettering."""

import pytest

from channel_sync.broker import (
    DEATH_QUEUE_HEADER, DEATH_REASON_HEADER, BrokerError, MemoryBroker, Priority, Topology,
    priority_for, topic_matches
)
from channel_sync.models import Direction, EventType


def test_topic_matching():
    assert topic_matches('siteminder.booking.#', 'siteminder.booking.created')
    assert topic_matches('siteminder.booking.#', 'siteminder.booking')
    assert topic_matches('pms.*.reservation.update', 'pms.siteminder.reservation.update')
    assert not topic_matches('pms.*.reservation.update', 'pms.a.b.reservation.update')
    assert not topic_matches('siteminder.booking.#', 'pms.siteminder.reservation.create')


class TestTopology:

    def test_names(self):
        topology = Topology('siteminder')
        assert topology.exchange == 'siteminder.events'
        assert topology.inbound_queue == 'siteminder.inbound'
        assert topology.outbound_queue == 'siteminder.outbound'
        assert Topology.dlq_for(topology.inbound_queue) == 'siteminder.inbound.dlq'

    @pytest.mark.parametrize('event_type', [t for t in EventType])
    def test_every_event_type_routes_to_its_direction(self, event_type):
        topology = Topology('siteminder')
        queues = topology.route(topology.routing_key(event_type))
        assert queues == [topology.queue(event_type.direction)]

    def test_integrations_are_isolated(self):
        assert Topology('cloudbeds').route(Topology('siteminder').routing_key(EventType.BOOKING_CREATED)) == []


def test_priority_order():
    assert priority_for(EventType.BOOKING_CREATED) == Priority.WEBHOOK_BOOKING
    assert priority_for(EventType.BOOKING_SYNC, full_sync=True) == 10
    assert (priority_for(EventType.RESERVATION_CREATE)
            > priority_for(EventType.RESERVATION_UPDATE)
            > priority_for(EventType.AVAILABILITY_UPDATE)
            > priority_for(EventType.RATE_UPDATE))


async def publish(broker, topology, event_type, message_id, priority):
    return await broker.publish(
        topology, topology.routing_key(event_type), {'event_id': message_id}, message_id, priority=priority
    )


@pytest.mark.asyncio
async def test_higher_priority_consumed_first():
    broker = MemoryBroker()
    topology = Topology('siteminder')
    await publish(broker, topology, EventType.RATE_UPDATE, 'rate', Priority.RATE)
    await publish(broker, topology, EventType.AVAILABILITY_UPDATE, 'availability', Priority.AVAILABILITY)
    await publish(broker, topology, EventType.RESERVATION_CREATE, 'reservation', Priority.NEW_RESERVATION)

    order = []
    for _ in range(3):
        delivery = await broker.consume(topology.outbound_queue, timeout=0.1)
        order.append(delivery.message_id)
        await broker.ack(delivery)
    assert order == ['reservation', 'availability', 'rate']


@pytest.mark.asyncio
async def test_unacked_delivery_is_recovered():
    broker = MemoryBroker()
    topology = Topology('siteminder')
    await publish(broker, topology, EventType.BOOKING_CREATED, 'm1', 10)

    delivery = await broker.consume(topology.inbound_queue, timeout=0.1)
    assert await broker.queue_depth(topology.inbound_queue) == 0
    assert broker.unacked_count(topology.inbound_queue) == 1

    assert await broker.recover(topology.inbound_queue) == 1
    again = await broker.consume(topology.inbound_queue, timeout=0.1)
    assert again.message_id == delivery.message_id
    assert again.redelivered is True


@pytest.mark.asyncio
async def test_nack_requeues_with_retry_header():
    broker = MemoryBroker()
    topology = Topology('siteminder')
    await publish(broker, topology, EventType.BOOKING_CREATED, 'm1', 10)

    delivery = await broker.consume(topology.inbound_queue, timeout=0.1)
    await broker.nack(delivery, requeue=True)
    again = await broker.consume(topology.inbound_queue, timeout=0.1)
    assert again.retry_count == 1
    assert broker.unacked_count(topology.inbound_queue) == 1


@pytest.mark.asyncio
async def test_dead_letter_keeps_reason_and_origin():
    broker = MemoryBroker()
    topology = Topology('siteminder')
    await publish(broker, topology, EventType.RESERVATION_UPDATE, 'm1', 7)

    delivery = await broker.consume(topology.outbound_queue, timeout=0.1)
    await broker.dead_letter(delivery, reason='max_attempts')

    letters = await broker.list_dead_letters(topology.outbound_queue)
    assert [d.message_id for d in letters] == ['m1']
    assert letters[0].headers[DEATH_REASON_HEADER] == 'max_attempts'
    assert letters[0].headers[DEATH_QUEUE_HEADER] == topology.outbound_queue
    assert broker.unacked_count(topology.outbound_queue) == 0

    assert await broker.remove_dead_letters(topology.outbound_queue, 'm1') == 1
    assert await broker.list_dead_letters(topology.outbound_queue) == []


@pytest.mark.asyncio
async def test_consume_times_out_on_empty_queue():
    broker = MemoryBroker()
    assert await broker.consume('siteminder.inbound', timeout=0.05) is None


@pytest.mark.asyncio
async def test_unroutable_message_raises():
    broker = MemoryBroker()
    with pytest.raises(BrokerError):
        await broker.publish(Topology('siteminder'), 'unknown.key', {}, 'm1')


@pytest.mark.asyncio
async def test_publisher_clears_outbox_marker(env):
    event, _ = env.ledger.record_event(
        direction=Direction.INBOUND,
        source='siteminder',
        event_type=EventType.BOOKING_CREATED,
        entity_type='booking',
        idempotency_key='evt-1',
        payload={'booking_id': 'BK-1'},
    )
    assert await env.publisher.try_publish(event) is True
    assert env.ledger.get(event.id).publish_pending is False

    delivery = await env.broker.consume('siteminder.inbound', timeout=0.1)
    assert delivery.message_id == str(event.id)
    assert delivery.body['event_type'] == 'booking.created'
