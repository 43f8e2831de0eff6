"""Tests for outbound hooks and the outbox sweeper."""

from datetime import date

import pytest

from channel_sync.config import OutboxConfig
from channel_sync.database import ReservationDB
from channel_sync.hooks import OutboundSyncHooks, OutboxSweeper
from channel_sync.models import Direction, EntityType, EventStatus, EventType, MappingType


def make_hooks(env, **context_overrides):
    context = env.context.model_copy(update=context_overrides) if context_overrides else env.context
    return OutboundSyncHooks(context, env.db, env.ledger, env.publisher)


def outbound_rows(env, status=EventStatus.RECEIVED):
    events, _ = env.ledger.list_failed(channel='siteminder', direction=Direction.OUTBOUND, status=status)
    return events


class TestReservationHooks:

    @pytest.mark.asyncio
    async def test_push_disabled_records_nothing(self, env):
        room_type_id = env.add_room_type()
        reservation_id = env.add_reservation(room_type_id, date(2026, 3, 1), date(2026, 3, 4))
        hooks = make_hooks(env, push_sync_enabled=False)

        assert await hooks.on_reservation_created(env.reservation(reservation_id)) is None
        assert outbound_rows(env) == []
        assert await env.broker.queue_depth('siteminder.outbound') == 0

    @pytest.mark.asyncio
    async def test_integration_disabled_records_nothing(self, env):
        room_type_id = env.add_room_type()
        reservation_id = env.add_reservation(room_type_id, date(2026, 3, 1), date(2026, 3, 4))
        hooks = make_hooks(env, sync_enabled=False)

        assert await hooks.on_reservation_updated(env.reservation(reservation_id)) is None
        assert outbound_rows(env) == []

    @pytest.mark.asyncio
    async def test_channel_reservation_is_not_echoed(self, env):
        room_type_id = env.add_room_type()
        reservation_id = env.add_reservation(
            room_type_id, date(2026, 3, 1), date(2026, 3, 4), source='siteminder'
        )
        assert await make_hooks(env).on_reservation_updated(env.reservation(reservation_id)) is None
        assert outbound_rows(env) == []

    @pytest.mark.asyncio
    async def test_created_reservation_is_published(self, env):
        room_type_id = env.add_room_type()
        reservation_id = env.add_reservation(room_type_id, date(2026, 3, 1), date(2026, 3, 4))

        event = await make_hooks(env).on_reservation_created(env.reservation(reservation_id))

        row = env.ledger.get(event.id)
        assert row.event_type == EventType.RESERVATION_CREATE.value
        assert row.idempotency_key.startswith(f"pms-reservation-{reservation_id}-create-")
        assert row.payload == {'reservation_id': reservation_id}
        assert row.priority == 8
        assert row.publish_pending is False
        assert await env.broker.queue_depth('siteminder.outbound') == 1

    @pytest.mark.asyncio
    async def test_cancel_uses_cancel_event(self, env):
        room_type_id = env.add_room_type()
        reservation_id = env.add_reservation(room_type_id, date(2026, 3, 1), date(2026, 3, 4))
        event = await make_hooks(env).on_reservation_cancelled(env.reservation(reservation_id))
        assert event.event_type == EventType.RESERVATION_CANCEL.value
        assert event.priority == 7


class TestStagedEvents:

    @pytest.mark.asyncio
    async def test_staged_row_commits_with_the_pms_write(self, env):
        room_type_id = env.add_room_type()
        hooks = make_hooks(env)

        with env.db.get_session() as session:
            reservation = ReservationDB(
                room_type_id=room_type_id,
                check_in=date(2026, 4, 1),
                check_out=date(2026, 4, 2),
                source='Direct',
                status='Confirmed',
                total_amount=150,
            )
            session.add(reservation)
            session.flush()
            event = await hooks.on_reservation_created(reservation, session=session)

            assert env.ledger.get(event.id) is None
            assert await env.broker.queue_depth('siteminder.outbound') == 0
            session.commit()

        assert await hooks.publish_staged() == 1
        assert env.ledger.get(event.id).publish_pending is False
        assert await env.broker.queue_depth('siteminder.outbound') == 1
        assert await hooks.publish_staged() == 0

    @pytest.mark.asyncio
    async def test_rolled_back_write_leaves_no_row(self, env):
        room_type_id = env.add_room_type()
        hooks = make_hooks(env)

        with env.db.get_session() as session:
            reservation = ReservationDB(
                room_type_id=room_type_id,
                check_in=date(2026, 4, 1),
                check_out=date(2026, 4, 2),
                source='Direct',
            )
            session.add(reservation)
            session.flush()
            event = await hooks.on_reservation_created(reservation, session=session)
            session.rollback()

        assert env.ledger.get(event.id) is None

    @pytest.mark.asyncio
    async def test_duplicate_key_in_one_session_keeps_the_pms_write(self, env, monkeypatch):
        monkeypatch.setattr('channel_sync.hooks.outbound_idempotency_key', lambda *args, **kwargs: 'pms-fixed-key')
        find_by_key = env.ledger._find_by_key
        misses = [True, True]

        def stale_find(session, key):
            if misses:
                misses.pop()
                return None
            return find_by_key(session, key)

        monkeypatch.setattr(env.ledger, '_find_by_key', stale_find)
        room_type_id = env.add_room_type()
        hooks = make_hooks(env)

        with env.db.get_session() as session:
            reservation = ReservationDB(
                room_type_id=room_type_id,
                check_in=date(2026, 4, 1),
                check_out=date(2026, 4, 2),
                source='Direct',
            )
            session.add(reservation)
            session.flush()
            first = await hooks.on_reservation_created(reservation, session=session)
            reservation.total_amount = 99.0
            second = await hooks.on_reservation_updated(reservation, session=session)
            session.commit()

        assert second.id == first.id
        assert env.reservation(reservation.id).total_amount == 99.0
        assert await hooks.publish_staged() == 1

    @pytest.mark.asyncio
    async def test_staged_inventory_without_mapping_is_failed(self, env):
        room_type_id = env.add_room_type()
        hooks = make_hooks(env)

        with env.db.get_session() as session:
            event = await hooks.on_rates_changed(room_type_id, date(2026, 4, 1), date(2026, 4, 30), session=session)
            session.commit()

        assert await hooks.publish_staged() == 0
        row = env.ledger.get(event.id)
        assert row.status == EventStatus.FAILED.value
        assert row.publish_pending is False


class TestInventoryHooks:

    @pytest.mark.asyncio
    async def test_missing_room_type_mapping_records_failed_row(self, env):
        room_type_id = env.add_room_type()

        event = await make_hooks(env).on_availability_changed(room_type_id, date(2026, 4, 1), date(2026, 4, 30))

        row = env.ledger.get(event.id)
        assert row.status == EventStatus.FAILED.value
        assert "map it and replay" in row.last_error
        assert await env.broker.queue_depth('siteminder.outbound') == 0

    @pytest.mark.asyncio
    async def test_mapped_availability_is_published(self, env):
        room_type_id = env.add_room_type()
        env.map(MappingType.ROOM_TYPE, room_type_id, "CM-DBL")

        event = await make_hooks(env).on_availability_changed(room_type_id, date(2026, 4, 1), date(2026, 4, 30))

        assert event.payload == {'room_type_id': room_type_id, 'date_from': '2026-04-01', 'date_to': '2026-04-30'}
        assert event.priority == 5
        assert await env.broker.queue_depth('siteminder.outbound') == 1

    @pytest.mark.asyncio
    async def test_rates_respect_flag(self, env):
        room_type_id = env.add_room_type()
        env.map(MappingType.ROOM_TYPE, room_type_id, "CM-DBL")
        assert await make_hooks(env, sync_rates=False).on_rates_changed(
            room_type_id, date(2026, 4, 1), date(2026, 4, 30)
        ) is None

    @pytest.mark.asyncio
    async def test_room_type_update_queues_availability_and_rates(self, env):
        room_type_id = env.add_room_type()
        env.map(MappingType.ROOM_TYPE, room_type_id, "CM-DBL")

        events = await make_hooks(env).on_room_type_updated(room_type_id)

        assert [e.event_type for e in events] == [EventType.AVAILABILITY_UPDATE.value, EventType.RATE_UPDATE.value]
        assert events[0].payload['date_to'] > events[0].payload['date_from']


class TestOutboxSweeper:

    def record_pending(self, env, key):
        event, _ = env.ledger.record_event(
            direction=Direction.OUTBOUND,
            source='pms',
            event_type=EventType.RATE_UPDATE,
            entity_type=EntityType.RATE,
            idempotency_key=key,
            payload={'room_type_id': 'x', 'date_from': '2026-04-01', 'date_to': '2026-04-02'},
            channel='siteminder',
            priority=3,
        )
        return event

    @pytest.mark.asyncio
    async def test_sweep_publishes_pending_rows(self, env):
        first = self.record_pending(env, 'k1')
        second = self.record_pending(env, 'k2')
        sweeper = OutboxSweeper(env.ledger, env.publisher, env.settings.outbox)

        assert await sweeper.sweep() == 2
        assert sweeper.last_published == 2
        assert sweeper.last_sweep is not None
        assert env.ledger.get(first.id).publish_pending is False
        assert env.ledger.get(second.id).publish_pending is False
        assert await env.broker.queue_depth('siteminder.outbound') == 2

        assert await sweeper.sweep() == 0

    @pytest.mark.asyncio
    async def test_young_rows_are_left_to_the_request_path(self, env):
        self.record_pending(env, 'k1')
        sweeper = OutboxSweeper(env.ledger, env.publisher, OutboxConfig(min_age_seconds=3600))
        assert await sweeper.sweep() == 0
        assert await env.broker.queue_depth('siteminder.outbound') == 0
