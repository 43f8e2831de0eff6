"""Tests for reconciliation and conflict resolution."""

from datetime import date, datetime, timedelta

import pytest
import pytz

from channel_sync.conflicts import ConflictActionError, ConflictDetector, values_equal
from channel_sync.database import SyncConflictDB
from channel_sync.models import ConflictResolution, ConflictStatus, Direction, EventType, MappingType
from channel_sync.workers import ProcessOutcome, create_worker

from conftest import make_booking


def make_detector(env):
    return ConflictDetector(
        env.settings, env.db, ledger=env.ledger, publisher=env.publisher, client_factory=env.client_factory
    )


def seed_pair(env, booking_id="BK-1", **booking_overrides):
    """A channel-originated reservation, its mapping and the channel's copy."""
    room_type_id = env.add_room_type()
    env.map(MappingType.ROOM_TYPE, room_type_id, "CM-DBL")
    reservation_id = env.add_reservation(
        room_type_id, date(2026, 1, 10), date(2026, 1, 12), source='siteminder', total_amount=240.0
    )
    env.map(MappingType.RESERVATION, reservation_id, booking_id)
    env.client.bookings[booking_id] = make_booking(booking_id, **booking_overrides)
    return reservation_id


async def reconcile(env):
    return await make_detector(env).reconcile(env.context, date(2026, 1, 1), date(2026, 1, 31))


def get_conflict(env, conflict_id):
    with env.db.get_session() as session:
        return session.get(SyncConflictDB, conflict_id)


class TestValuesEqual:

    @pytest.mark.parametrize('a,b', [
        (None, None),
        (date(2026, 1, 10), "2026-01-10"),
        (datetime(2026, 1, 10, 15, 30), date(2026, 1, 10)),
        (240, "240.001"),
        (" Confirmed", "confirmed "),
        ([1, "a"], [1.0, "A"]),
        ({'x': "A"}, {'x': "a"}),
    ])
    def test_equal(self, a, b):
        assert values_equal(a, b)

    @pytest.mark.parametrize('a,b', [
        (None, ""),
        (0, None),
        (date(2026, 1, 10), date(2026, 1, 11)),
        (240, 240.5),
        (True, 1.5),
        ([1], [1, 2]),
        ({'x': 1}, {'y': 1}),
    ])
    def test_not_equal(self, a, b):
        assert not values_equal(a, b)


class TestReconcile:

    @pytest.mark.asyncio
    async def test_date_mismatch_records_conflict_without_overwriting(self, env):
        reservation_id = seed_pair(env, arrival=date(2026, 1, 11))

        report = await reconcile(env)

        assert report.checked == 1
        assert report.conflicts == 1
        conflict = get_conflict(env, report.conflict_ids[0])
        assert conflict.status == ConflictStatus.OPEN.value
        assert conflict.reservation_id == reservation_id
        assert conflict.external_booking_id == "BK-1"
        assert [f['field'] for f in conflict.fields] == ['check_in']
        assert "2026-01-10" in conflict.description and "2026-01-11" in conflict.description
        assert env.reservation(reservation_id).check_in == date(2026, 1, 10)

    @pytest.mark.asyncio
    async def test_rerun_refreshes_the_open_conflict(self, env):
        seed_pair(env, arrival=date(2026, 1, 11))
        first = await reconcile(env)
        env.client.bookings["BK-1"] = make_booking("BK-1", arrival=date(2026, 1, 11), total_amount=260.0)
        second = await reconcile(env)

        assert second.conflict_ids == first.conflict_ids
        conflict = get_conflict(env, second.conflict_ids[0])
        assert [f['field'] for f in conflict.fields] == ['check_in', 'total_amount']
        assert len(make_detector(env).list_open_conflicts(env.context.config_id)) == 1

    @pytest.mark.asyncio
    async def test_matching_pair_is_clean(self, env):
        seed_pair(env)
        report = await reconcile(env)
        assert report.checked == 1
        assert report.conflicts == 0

    @pytest.mark.asyncio
    async def test_one_sided_bookings_are_counted(self, env):
        seed_pair(env)
        env.client.bookings["BK-2"] = make_booking("BK-2")
        room_type_id = env.add_room_type(name="Single")
        env.add_reservation(room_type_id, date(2026, 1, 20), date(2026, 1, 21), source='siteminder')
        env.add_reservation(room_type_id, date(2026, 1, 20), date(2026, 1, 21), source='Direct')

        report = await reconcile(env)

        assert report.only_in_channel == 1
        assert report.only_in_pms == 1
        assert [args[1:] for args in env.client.calls_named('get_bookings')] == [
            (date(2026, 1, 1), date(2026, 1, 31))
        ]


class TestResolve:

    @pytest.mark.asyncio
    async def test_channel_wins_applies_channel_values(self, env):
        reservation_id = seed_pair(env, arrival=date(2026, 1, 11))
        conflict_id = (await reconcile(env)).conflict_ids[0]

        resolved = await make_detector(env).resolve_conflict(conflict_id, ConflictResolution.CHANNEL_WINS)

        assert resolved.status == ConflictStatus.RESOLVED.value
        assert resolved.resolution == 'channel_wins'
        assert resolved.resolved_at is not None
        assert env.reservation(reservation_id).check_in == date(2026, 1, 11)

    @pytest.mark.asyncio
    async def test_pms_wins_pushes_reservation_back(self, env):
        reservation_id = seed_pair(env, arrival=date(2026, 1, 11))
        conflict_id = (await reconcile(env)).conflict_ids[0]

        resolved = await make_detector(env).resolve_conflict(conflict_id, 'pms_wins')

        assert resolved.resolution == 'pms_wins'
        assert env.reservation(reservation_id).check_in == date(2026, 1, 10)

        worker = create_worker(
            Direction.OUTBOUND, env.context, env.settings, env.broker, env.ledger, env.db,
            client_factory=env.client_factory
        )
        delivery = await env.broker.consume(worker.queue, timeout=0.1)
        assert delivery.body['event_type'] == EventType.RESERVATION_UPDATE.value
        assert await worker.process(delivery) == ProcessOutcome.DONE

        booking_id, pushed = env.client.calls_named('update_booking')[0]
        assert booking_id == "BK-1"
        assert pushed.arrival == date(2026, 1, 10)

    @pytest.mark.asyncio
    async def test_newest_wins_prefers_later_channel_edit(self, env):
        modified = datetime.now(pytz.UTC) + timedelta(hours=1)
        reservation_id = seed_pair(env, arrival=date(2026, 1, 11), modified_at=modified)
        conflict_id = (await reconcile(env)).conflict_ids[0]

        resolved = await make_detector(env).resolve_conflict(conflict_id, ConflictResolution.NEWEST_WINS)

        assert resolved.resolution == 'newest_wins:channel_wins'
        assert env.reservation(reservation_id).check_in == date(2026, 1, 11)

    @pytest.mark.asyncio
    async def test_newest_wins_without_channel_timestamp_keeps_pms(self, env):
        seed_pair(env, arrival=date(2026, 1, 11))
        conflict_id = (await reconcile(env)).conflict_ids[0]

        resolved = await make_detector(env).resolve_conflict(conflict_id, ConflictResolution.NEWEST_WINS)

        assert resolved.resolution == 'newest_wins:pms_wins'

    @pytest.mark.asyncio
    async def test_manual_strategy_cannot_resolve(self, env):
        seed_pair(env, arrival=date(2026, 1, 11))
        conflict_id = (await reconcile(env)).conflict_ids[0]

        with pytest.raises(ConflictActionError):
            await make_detector(env).resolve_conflict(conflict_id)
        assert get_conflict(env, conflict_id).status == ConflictStatus.OPEN.value

    @pytest.mark.asyncio
    async def test_ignore_closes_without_changes(self, env):
        reservation_id = seed_pair(env, arrival=date(2026, 1, 11))
        conflict_id = (await reconcile(env)).conflict_ids[0]
        detector = make_detector(env)

        ignored = detector.ignore_conflict(conflict_id)

        assert ignored.status == ConflictStatus.IGNORED.value
        assert env.reservation(reservation_id).check_in == date(2026, 1, 10)
        assert detector.list_open_conflicts() == []
        with pytest.raises(ConflictActionError):
            detector.ignore_conflict(conflict_id)
