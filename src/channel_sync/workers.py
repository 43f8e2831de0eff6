"""Queue consumers for inbound and outbound sync events.

Each worker owns one queue of one integration and handles one message at
a time. The ledger row, not the broker delivery count, decides whether a
message still needs work.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, FrozenSet, Optional

from .broker import Broker, Delivery, Topology
from .config import Settings
from .database import ChannelEventDB, DatabaseManager, as_utc
from .ledger import EventLedger
from .mappers import compute_availability, compute_rates, reservation_to_booking
from .mapping import MappingRepository
from .models import (
    INBOUND_EVENT_TYPES, OUTBOUND_EVENT_TYPES, BookingCancelledEvent, BookingChangedEvent,
    BookingSyncEvent, ChannelContext, Direction, EventStatus, EventType, InventorySyncEvent,
    MappingType, ReservationSyncEvent, SyncAction, SyncEvent, parse_event
)
from .pull_sync import PullSyncError, PullSyncService
from .services import BaseChannelClient, create_client
from .services.base import ChannelValidationError, MappingNotFoundError, UncertainWriteError, is_retryable

logger = logging.getLogger(__name__)

Handler = Callable[[SyncEvent, ChannelEventDB], Awaitable[None]]
ClientFactory = Callable[[ChannelContext, Settings], BaseChannelClient]


class ProcessOutcome:
    """What a worker did with one delivery."""

    DONE = 'done'
    ALREADY_DONE = 'already_done'
    REQUEUED = 'requeued'
    DEAD_LETTERED = 'dead_lettered'


class BaseConsumer(ABC):
    """Consumes one integration queue and dispatches to typed handlers."""

    direction: Direction
    event_types: FrozenSet[EventType] = frozenset()

    def __init__(
        self,
        context: ChannelContext,
        settings: Settings,
        broker: Broker,
        ledger: EventLedger,
        db_manager: DatabaseManager,
        client_factory: ClientFactory = create_client
    ):
        """Initialize consumer.

        Args:
            context: Resolved channel configuration
            settings: Application settings
            broker: Queue backend
            ledger: Event ledger
            db_manager: Database manager
            client_factory: Builds the channel client on first use

        Raises:
            TypeError: If an owned event type has no handler
        """
        self.context = context
        self.settings = settings
        self.broker = broker
        self.ledger = ledger
        self.db_manager = db_manager
        self.client_factory = client_factory
        self.mappings = MappingRepository()
        self.topology = Topology(context.integration)
        self.queue = self.topology.queue(self.direction)
        self.logger = logger.getChild(f"{context.integration}.{self.direction.value}")

        self.handlers: Dict[EventType, Handler] = self._build_handlers()
        missing = self.event_types - set(self.handlers)
        foreign = set(self.handlers) - self.event_types
        if missing or foreign:
            raise TypeError(
                f"{type(self).__name__} handlers do not match its event types "
                f"(missing: {sorted(t.value for t in missing)}, foreign: {sorted(t.value for t in foreign)})"
            )

        self._client: Optional[BaseChannelClient] = None
        self._running = False
        self.processed = 0

    @abstractmethod
    def _build_handlers(self) -> Dict[EventType, Handler]:
        """One handler per owned event type."""
        pass

    @property
    def client(self) -> BaseChannelClient:
        if self._client is None:
            self._client = self.client_factory(self.context, self.settings)
        return self._client

    async def start(self) -> None:
        """Declare the topology and take back deliveries a crashed consumer left unacked."""
        await self.broker.declare_topology(self.topology)
        recovered = await self.broker.recover(self.queue)
        if recovered:
            self.logger.info(f"Recovered {recovered} unacknowledged messages on {self.queue}")

    async def run(self, max_messages: Optional[int] = None) -> None:
        """Consume until stop() is called.

        The in-flight message always finishes before the loop exits.

        Args:
            max_messages: Stop after this many deliveries (used by tests and one-shot runs)
        """
        await self.start()
        self._running = True
        self.logger.info(f"Consuming {self.queue}")
        timeout = self.settings.worker.consume_timeout_seconds
        try:
            while self._running:
                delivery = await self.broker.consume(self.queue, timeout=timeout)
                if delivery is None:
                    continue
                await self.process(delivery)
                if max_messages is not None and self.processed >= max_messages:
                    break
        finally:
            self._running = False
            await self.close()
            self.logger.info(f"Stopped consuming {self.queue} after {self.processed} messages")

    def stop(self) -> None:
        self._running = False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    def _find_event(self, delivery: Delivery) -> Optional[ChannelEventDB]:
        event_id = delivery.body.get('event_id') or delivery.message_id
        try:
            return self.ledger.get(event_id)
        except ValueError:
            return None

    async def process(self, delivery: Delivery) -> str:
        """Process one delivery and settle it with the broker.

        Returns:
            One of the ProcessOutcome values
        """
        self.processed += 1
        event = self._find_event(delivery)
        if event is None:
            self.logger.error(f"Message {delivery.message_id} has no ledger row")
            await self.broker.dead_letter(delivery, reason='unparseable')
            return ProcessOutcome.DEAD_LETTERED

        if event.status == EventStatus.DONE.value:
            self.logger.info(f"Event {event.id} already done; acknowledging duplicate delivery")
            await self.broker.ack(delivery)
            return ProcessOutcome.ALREADY_DONE

        if self.ledger.is_dlq_eligible(event):
            self.ledger.mark_failed(event.id, event.last_error or f"Exhausted {event.max_attempts} attempts")
            await self.broker.dead_letter(delivery, reason='max_attempts')
            return ProcessOutcome.DEAD_LETTERED

        try:
            typed_event = parse_event(event.event_type, event.payload or {})
            handler = self.handlers[typed_event.event_type]
        except (ValueError, KeyError) as e:
            self.ledger.mark_failed(event.id, f"Unparseable {event.event_type} payload: {e}")
            await self.broker.dead_letter(delivery, reason='unparseable')
            return ProcessOutcome.DEAD_LETTERED

        self.ledger.mark_processing(event.id)
        attempts = self.ledger.increment_attempts(event.id)

        try:
            await handler(typed_event, event)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            self.ledger.mark_failed(event.id, error)

            if is_retryable(e) and attempts < event.max_attempts:
                self.logger.warning(
                    f"Event {event.id} attempt {attempts}/{event.max_attempts} failed, requeueing: {error}"
                )
                delay = self.settings.worker.retry_delay_ms / 1000
                if delay:
                    await asyncio.sleep(delay)
                await self.broker.nack(delivery, requeue=True)
                return ProcessOutcome.REQUEUED

            reason = 'max_attempts' if is_retryable(e) else 'non_retryable'
            self.logger.error(f"Event {event.id} dead-lettered ({reason}) after {attempts} attempts: {error}")
            await self.broker.dead_letter(delivery, reason=reason)
            return ProcessOutcome.DEAD_LETTERED

        self.ledger.mark_done(event.id)
        await self.broker.ack(delivery)
        return ProcessOutcome.DONE


class OutboundWorker(BaseConsumer):
    """Pushes PMS changes to the channel manager."""

    direction = Direction.OUTBOUND
    event_types = OUTBOUND_EVENT_TYPES

    def _build_handlers(self) -> Dict[EventType, Handler]:
        return {
            EventType.RESERVATION_CREATE: self._push_reservation,
            EventType.RESERVATION_UPDATE: self._push_reservation,
            EventType.RESERVATION_CANCEL: self._cancel_reservation,
            EventType.AVAILABILITY_UPDATE: self._push_availability,
            EventType.RATE_UPDATE: self._push_rates,
        }

    async def _push_reservation(self, event: ReservationSyncEvent, row: ChannelEventDB) -> None:
        if not self.context.push_sync_enabled:
            self.logger.info(f"Push sync disabled; skipping reservation {event.reservation_id}")
            return

        with self.db_manager.get_session() as session:
            reservation = self.db_manager.get_reservation(session, event.reservation_id)
            if reservation is None:
                raise ChannelValidationError(f"Reservation {event.reservation_id} does not exist or is not live")
            if reservation.source == self.context.channel and not event.force:
                self.logger.info(f"Reservation {reservation.id} came from {self.context.channel}; not pushing back")
                return

            room_type_mapping = self.mappings.require_room_type_mapping(
                session, self.context, reservation.room_type_id
            )
            mapping = self.mappings.get_active(
                session, self.context.config_id, MappingType.RESERVATION, internal_id=reservation.id
            )
            booking = reservation_to_booking(
                reservation,
                room_type_mapping.external_id,
                booking_id=mapping.external_id if mapping else None
            )

            if mapping is not None:
                await self.client.update_booking(mapping.external_id, booking)
                self.mappings.touch(mapping)
                session.commit()
                self.logger.info(f"Updated {self.context.channel} booking {mapping.external_id}")
                return

            external_id = await self.client.create_booking(booking)
            try:
                self.mappings.create_mapping(
                    session, self.context.config_id, MappingType.RESERVATION,
                    reservation.id, external_id, sync_direction='push'
                )
                session.commit()
            except Exception as e:
                session.rollback()
                # The remote booking exists; a retry would create a second one
                raise UncertainWriteError(
                    f"Created {self.context.channel} booking {external_id} for {reservation.id} "
                    f"but could not record its mapping: {e}"
                ) from e
            self.logger.info(f"Created {self.context.channel} booking {external_id} for {reservation.id}")

    async def _cancel_reservation(self, event: ReservationSyncEvent, row: ChannelEventDB) -> None:
        with self.db_manager.get_session() as session:
            mapping = self.mappings.get_active(
                session, self.context.config_id, MappingType.RESERVATION, internal_id=event.reservation_id
            )
            if mapping is None:
                self.logger.warning(
                    f"Reservation {event.reservation_id} has no {self.context.channel} booking; nothing to cancel"
                )
                return

            await self.client.cancel_booking(mapping.external_id)
            self.mappings.touch(mapping)
            session.commit()
            self.logger.info(f"Cancelled {self.context.channel} booking {mapping.external_id}")

    async def _push_availability(self, event: InventorySyncEvent, row: ChannelEventDB) -> None:
        if not self.context.sync_availability:
            self.logger.info("Availability sync disabled; skipping")
            return

        with self.db_manager.get_session() as session:
            room_type = self.db_manager.get_room_type(session, event.room_type_id)
            if room_type is None:
                raise ChannelValidationError(f"Room type {event.room_type_id} does not exist or is not live")
            mapping = self.mappings.require_room_type_mapping(session, self.context, room_type.id)
            days = compute_availability(session, room_type, event.date_from, event.date_to)

        await self.client.update_availability(mapping.external_id, days)
        self.logger.info(
            f"Pushed {len(days)} days of availability for {room_type.name} to {self.context.channel}"
        )

    async def _push_rates(self, event: InventorySyncEvent, row: ChannelEventDB) -> None:
        if not self.context.sync_rates:
            self.logger.info("Rate sync disabled; skipping")
            return

        with self.db_manager.get_session() as session:
            room_type = self.db_manager.get_room_type(session, event.room_type_id)
            if room_type is None:
                raise ChannelValidationError(f"Room type {event.room_type_id} does not exist or is not live")
            mapping = self.mappings.require_room_type_mapping(session, self.context, room_type.id)
            days = compute_rates(room_type, event.date_from, event.date_to)

        await self.client.update_rates(mapping.external_id, days)
        self.logger.info(f"Pushed {len(days)} days of rates for {room_type.name} to {self.context.channel}")


class InboundWorker(BaseConsumer):
    """Applies channel bookings to the PMS."""

    direction = Direction.INBOUND
    event_types = INBOUND_EVENT_TYPES

    def _build_handlers(self) -> Dict[EventType, Handler]:
        return {
            EventType.BOOKING_SYNC: self._pull_bookings,
            EventType.BOOKING_CREATED: self._upsert_booking,
            EventType.BOOKING_UPDATED: self._upsert_booking,
            EventType.BOOKING_CANCELLED: self._cancel_booking,
        }

    def _service(self, with_client: bool = False) -> PullSyncService:
        return PullSyncService(
            self.context,
            self.settings,
            self.db_manager,
            client=self.client if with_client else None,
            mappings=self.mappings,
        )

    def _pull_disabled(self) -> bool:
        if not self.context.pull_sync_enabled:
            self.logger.info(f"Pull sync disabled for {self.context.channel}; skipping")
            return True
        return False

    async def _pull_bookings(self, event: BookingSyncEvent, row: ChannelEventDB) -> None:
        if self._pull_disabled():
            return

        modified_since = event.modified_since
        if modified_since is None and not event.full_sync:
            with self.db_manager.get_session() as session:
                config = self.db_manager.get_channel_config(
                    session, self.context.property_id, self.context.channel
                )
                if config is not None:
                    modified_since = as_utc(config.last_successful_sync)

        report = await self._service(with_client=True).sync_bookings(modified_since, full_sync=event.full_sync)

        with self.db_manager.get_session() as session:
            if report.made_progress:
                self.db_manager.record_sync_outcome(
                    session, self.context.config_id, success=True, synced_at=report.started_at
                )
            else:
                message = f"All {report.failed} bookings failed: {'; '.join(report.errors[:3])}"
                self.db_manager.record_sync_outcome(
                    session, self.context.config_id, success=False, error_message=message
                )
                raise PullSyncError(message)

    async def _upsert_booking(self, event: BookingChangedEvent, row: ChannelEventDB) -> None:
        if self._pull_disabled():
            return

        with self.db_manager.get_session() as session:
            result = self._service().sync_booking(session, event.booking)
            if result.action == SyncAction.SKIPPED and result.error:
                session.rollback()
                raise MappingNotFoundError(f"{result.error}; map it and replay the event")
            session.commit()
        self.logger.info(f"Booking {event.booking.id}: {result.action.value}")

    async def _cancel_booking(self, event: BookingCancelledEvent, row: ChannelEventDB) -> None:
        if self._pull_disabled():
            return

        with self.db_manager.get_session() as session:
            result = self._service().cancel_booking(session, event.booking_id)
            session.commit()
        self.logger.info(f"Booking {event.booking_id} cancellation: {result.action.value}")


def create_worker(
    direction: Direction,
    context: ChannelContext,
    settings: Settings,
    broker: Broker,
    ledger: EventLedger,
    db_manager: DatabaseManager,
    client_factory: ClientFactory = create_client
) -> BaseConsumer:
    """Build the worker for one side of an integration."""
    worker_class = InboundWorker if Direction(direction) == Direction.INBOUND else OutboundWorker
    return worker_class(context, settings, broker, ledger, db_manager, client_factory=client_factory)
