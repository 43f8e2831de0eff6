"""Shared fixtures: isolated settings, a SQLite PMS database and a fake channel."""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional
from uuid import UUID

import pytest
from pydantic_settings import SettingsConfigDict

from channel_sync.broker import EventPublisher, MemoryBroker
from channel_sync.config import Settings
from channel_sync.context import ConfigResolver
from channel_sync.crypto import CredentialCipher, generate_key
from channel_sync.database import DatabaseManager, ReservationDB, RoomTypeDB
from channel_sync.ledger import EventLedger
from channel_sync.mapping import MappingRepository
from channel_sync.models import ChannelBooking, ChannelContext, MappingType
from channel_sync.services.base import BaseChannelClient, TransientChannelError

PROPERTY_ID = "00000000-0000-0000-0000-0000000000aa"
CHANNEL = "siteminder"
WEBHOOK_SECRET = "whsec-test"


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        broker_url='memory://',
        property_id=PROPERTY_ID,
        encryption_key=generate_key(),
        worker={'max_retries': 3, 'retry_delay_ms': 0, 'consume_timeout_seconds': 1},
        outbox={'min_age_seconds': 0},
        scheduler={'interval_ms': 1000, 'max_backoff_ms': 8000, 'lock_timeout_ms': 60000},
    )
    values.update(overrides)
    return TestSettings(**values)


class FakeChannelClient(BaseChannelClient):
    """In-memory channel manager that records every call."""

    def __init__(self, context: ChannelContext, settings: Settings, bookings: Optional[List[ChannelBooking]] = None):
        super().__init__(context, settings)
        self.bookings: Dict[str, ChannelBooking] = {b.id: b for b in bookings or []}
        self.calls: List[tuple] = []
        self.fail_times = 0
        self.failure: Exception = TransientChannelError("channel unavailable")
        self._next_id = 1000

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.failure

    def calls_named(self, name: str) -> List[tuple]:
        return [args for call, args in self.calls if call == name]

    async def get_bookings(self, modified_since=None, arrival_from=None, arrival_to=None):
        self._call('get_bookings', modified_since, arrival_from, arrival_to)
        bookings = list(self.bookings.values())
        if arrival_from is not None:
            bookings = [b for b in bookings if b.arrival >= arrival_from]
        if arrival_to is not None:
            bookings = [b for b in bookings if b.arrival <= arrival_to]
        return bookings

    async def get_booking(self, booking_id):
        self._call('get_booking', booking_id)
        return self.bookings[booking_id]

    async def create_booking(self, booking):
        self._call('create_booking', booking)
        self._next_id += 1
        booking_id = f"CM-{self._next_id}"
        self.bookings[booking_id] = booking.model_copy(update={'id': booking_id})
        return booking_id

    async def update_booking(self, booking_id, booking):
        self._call('update_booking', booking_id, booking)
        self.bookings[booking_id] = booking.model_copy(update={'id': booking_id})

    async def cancel_booking(self, booking_id):
        self._call('cancel_booking', booking_id)

    async def update_availability(self, room_type_id, days):
        self._call('update_availability', room_type_id, days)

    async def update_rates(self, room_type_id, days):
        self._call('update_rates', room_type_id, days)

    async def ping(self):
        self._call('ping')
        return {'status': 'ok'}


@dataclass
class SyncEnv:
    settings: Settings
    db: DatabaseManager
    broker: MemoryBroker
    ledger: EventLedger
    publisher: EventPublisher
    resolver: ConfigResolver
    context: ChannelContext
    client: FakeChannelClient
    mappings: MappingRepository = field(default_factory=MappingRepository)

    def client_factory(self, context, settings):
        return self.client

    def add_room_type(self, name: str = "Double", base_price: float = 120.0, total_units: int = 5) -> str:
        with self.db.get_session() as session:
            room_type = RoomTypeDB(name=name, base_price=base_price, total_units=total_units)
            session.add(room_type)
            session.commit()
            return str(room_type.id)

    def map(self, mapping_type: MappingType, internal_id: Any, external_id: str) -> None:
        with self.db.get_session() as session:
            self.mappings.create_mapping(session, self.context.config_id, mapping_type, internal_id, external_id)
            session.commit()

    def add_reservation(
        self,
        room_type_id: str,
        check_in: date,
        check_out: date,
        source: str = 'Direct',
        status: str = 'Confirmed',
        total_amount: float = 300.0
    ) -> str:
        with self.db.get_session() as session:
            reservation = ReservationDB(
                room_type_id=UUID(room_type_id),
                check_in=check_in,
                check_out=check_out,
                source=source,
                status=status,
                total_amount=total_amount,
            )
            session.add(reservation)
            session.commit()
            return str(reservation.id)

    def reservation(self, reservation_id: Any) -> Optional[ReservationDB]:
        with self.db.get_session() as session:
            return self.db.get_reservation(session, reservation_id)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def env(settings):
    db = DatabaseManager(settings)
    db.init_db()
    broker = MemoryBroker()
    ledger = EventLedger(db, max_attempts=settings.worker.max_retries)
    publisher = EventPublisher(broker, ledger)
    resolver = ConfigResolver(db, CredentialCipher(settings.encryption_key))
    context = resolver.register(
        PROPERTY_ID,
        CHANNEL,
        api_key='cm-api-key',
        webhook_secret=WEBHOOK_SECRET,
        base_url='https://cm.example.test/api',
    )
    client = FakeChannelClient(context, settings)
    return SyncEnv(
        settings=settings,
        db=db,
        broker=broker,
        ledger=ledger,
        publisher=publisher,
        resolver=resolver,
        context=context,
        client=client,
    )


def make_booking(booking_id: str = "BK-1", **overrides) -> ChannelBooking:
    values = dict(
        id=booking_id,
        room_type_ids=["CM-DBL"],
        arrival=date(2026, 1, 10),
        departure=date(2026, 1, 12),
        status="confirmed",
        total_amount=240.0,
        currency="EUR",
        num_guests=2,
        guest={'first_name': 'Ana', 'last_name': 'Silva', 'email': 'ana.silva@example.com', 'phone': '+351 912 345 678'},
    )
    values.update(overrides)
    return ChannelBooking(**values)
