"""Outbound sync hooks fired after PMS mutations, and the outbox sweeper."""

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from .broker import EventPublisher, Priority
from .config import OutboxConfig
from .database import ChannelEventDB, DatabaseManager, ReservationDB, utcnow
from .ledger import EventLedger, inbound_idempotency_key, outbound_idempotency_key
from .mapping import MappingRepository
from .models import ChannelContext, Direction, EntityType, EventStatus, EventType, MappingType

logger = logging.getLogger(__name__)

PMS_SOURCE = 'pms'
ROOM_TYPE_WINDOW_DAYS = 365


class OutboundSyncHooks:
    """Queues channel updates for PMS changes.

    Hooks never raise: sync is a side effect of the PMS write and must not
    block or roll it back. When a session is passed, the ledger row is
    written in the caller's transaction and published by publish_staged()
    after the caller commits (or later by the outbox sweeper).
    """

    def __init__(
        self,
        context: ChannelContext,
        db_manager: DatabaseManager,
        ledger: EventLedger,
        publisher: EventPublisher,
        mappings: Optional[MappingRepository] = None
    ):
        self.context = context
        self.db_manager = db_manager
        self.ledger = ledger
        self.publisher = publisher
        self.mappings = mappings or MappingRepository()
        self.logger = logger.getChild(context.integration)
        self._staged: List[ChannelEventDB] = []

    # -- reservations -----------------------------------------------------

    async def on_reservation_created(
        self, reservation: ReservationDB, session: Optional[Session] = None
    ) -> Optional[ChannelEventDB]:
        return await self._reservation_changed(
            reservation, 'create', EventType.RESERVATION_CREATE, Priority.NEW_RESERVATION, session
        )

    async def on_reservation_updated(
        self, reservation: ReservationDB, session: Optional[Session] = None
    ) -> Optional[ChannelEventDB]:
        return await self._reservation_changed(
            reservation, 'update', EventType.RESERVATION_UPDATE, Priority.RESERVATION_CHANGE, session
        )

    async def on_reservation_cancelled(
        self, reservation: ReservationDB, session: Optional[Session] = None
    ) -> Optional[ChannelEventDB]:
        return await self._reservation_changed(
            reservation, 'cancel', EventType.RESERVATION_CANCEL, Priority.RESERVATION_CHANGE, session
        )

    async def _reservation_changed(
        self,
        reservation: ReservationDB,
        action: str,
        event_type: EventType,
        priority: int,
        session: Optional[Session]
    ) -> Optional[ChannelEventDB]:
        if not self._enabled('push_sync_enabled'):
            return None
        if reservation.source == self.context.channel:
            self.logger.debug(
                f"Reservation {reservation.id} originated from {self.context.channel}; not syncing back"
            )
            return None

        return await self._emit(
            event_type=event_type,
            entity_type=EntityType.RESERVATION,
            entity_id=reservation.id,
            action=action,
            payload={'reservation_id': str(reservation.id)},
            priority=priority,
            session=session,
        )

    # -- inventory --------------------------------------------------------

    async def on_availability_changed(
        self,
        room_type_id: Union[str, UUID],
        date_from: date,
        date_to: date,
        session: Optional[Session] = None
    ) -> Optional[ChannelEventDB]:
        if not self._enabled('sync_availability'):
            return None
        return await self._inventory_changed(
            EventType.AVAILABILITY_UPDATE, EntityType.AVAILABILITY, Priority.AVAILABILITY,
            room_type_id, date_from, date_to, session
        )

    async def on_rates_changed(
        self,
        room_type_id: Union[str, UUID],
        date_from: date,
        date_to: date,
        session: Optional[Session] = None
    ) -> Optional[ChannelEventDB]:
        if not self._enabled('sync_rates'):
            return None
        return await self._inventory_changed(
            EventType.RATE_UPDATE, EntityType.RATE, Priority.RATE,
            room_type_id, date_from, date_to, session
        )

    async def on_room_type_updated(
        self, room_type_id: Union[str, UUID], session: Optional[Session] = None
    ) -> List[ChannelEventDB]:
        """Refresh a year of availability and rates after a room-type change."""
        date_from = utcnow().date()
        date_to = date_from + timedelta(days=ROOM_TYPE_WINDOW_DAYS - 1)
        events = [
            await self.on_availability_changed(room_type_id, date_from, date_to, session=session),
            await self.on_rates_changed(room_type_id, date_from, date_to, session=session),
        ]
        return [e for e in events if e is not None]

    async def _inventory_changed(
        self,
        event_type: EventType,
        entity_type: EntityType,
        priority: int,
        room_type_id: Union[str, UUID],
        date_from: date,
        date_to: date,
        session: Optional[Session]
    ) -> Optional[ChannelEventDB]:
        event = await self._emit(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=room_type_id,
            action=f"{date_from.isoformat()}_{date_to.isoformat()}",
            payload={
                'room_type_id': str(room_type_id),
                'date_from': date_from.isoformat(),
                'date_to': date_to.isoformat(),
            },
            priority=priority,
            session=session,
            check_room_type=room_type_id,
        )
        return event

    # -- inbound trigger --------------------------------------------------

    async def trigger_full_sync(self) -> Optional[ChannelEventDB]:
        """Queue a full pull of channel bookings."""
        if not self._enabled('pull_sync_enabled'):
            return None
        try:
            event, created = self.ledger.record_event(
                direction=Direction.INBOUND,
                source=PMS_SOURCE,
                event_type=EventType.BOOKING_SYNC,
                entity_type=EntityType.BOOKING,
                idempotency_key=inbound_idempotency_key(
                    source=self.context.integration,
                    event_type=EventType.BOOKING_SYNC.value,
                    external_id=f"full-{self.context.config_id}",
                ),
                payload={'full_sync': True},
                priority=Priority.FULL_SYNC,
                channel=self.context.integration,
                property_id=self.context.property_id,
            )
        except Exception:
            self.logger.exception("Could not record full sync request")
            return None

        if created:
            await self.publisher.try_publish(event)
        return event

    # -- plumbing ---------------------------------------------------------

    def _enabled(self, feature: str) -> bool:
        if not self.context.sync_enabled:
            self.logger.debug(f"Sync disabled for {self.context.channel}")
            return False
        if not getattr(self.context, feature):
            self.logger.debug(f"{feature} is off for {self.context.channel}")
            return False
        return True

    def _room_type_mapping_error(self, session: Session, room_type_id: Union[str, UUID]) -> Optional[str]:
        mapping = self.mappings.get_active(
            session, self.context.config_id, MappingType.ROOM_TYPE, internal_id=room_type_id
        )
        if mapping is None:
            return (
                f"PMS room type {room_type_id} has no active {self.context.channel} mapping; "
                f"map it and replay the event"
            )
        return None

    async def _emit(
        self,
        event_type: EventType,
        entity_type: EntityType,
        entity_id: Any,
        action: str,
        payload: Dict[str, Any],
        priority: int,
        session: Optional[Session],
        check_room_type: Optional[Union[str, UUID]] = None
    ) -> Optional[ChannelEventDB]:
        event = None
        try:
            key = outbound_idempotency_key(entity_type.value, str(entity_id), action)
            record = dict(
                direction=Direction.OUTBOUND,
                source=PMS_SOURCE,
                event_type=event_type,
                entity_type=entity_type,
                idempotency_key=key,
                payload=payload,
                internal_id=str(entity_id),
                priority=priority,
                channel=self.context.integration,
                property_id=self.context.property_id,
            )

            if session is not None:
                with session.begin_nested():
                    event, created = self.ledger.record_event(session=session, **record)
                    mapping_error = self._room_type_mapping_error(session, check_room_type) if check_room_type else None
                    if created and mapping_error:
                        self._fail_staged(event, mapping_error)
                if created and not mapping_error:
                    self._staged.append(event)
                return event

            event, created = self.ledger.record_event(**record)
            if not created:
                return event

            if check_room_type:
                with self.db_manager.get_session() as own:
                    mapping_error = self._room_type_mapping_error(own, check_room_type)
                if mapping_error:
                    self.logger.warning(mapping_error)
                    return self.ledger.mark_failed(event.id, mapping_error)

            await self.publisher.try_publish(event)
            return event

        except Exception as e:
            self.logger.exception(f"Outbound {event_type.value} hook failed for {entity_id}")
            if event is not None and session is None:
                try:
                    self.ledger.mark_failed(event.id, f"Hook error: {e}")
                except Exception:
                    self.logger.exception(f"Could not record hook error on event {event.id}")
            if session is not None:
                # The savepoint rolled the staged row back
                return None
            return event

    def _fail_staged(self, event: ChannelEventDB, error: str) -> None:
        self.logger.warning(error)
        event.status = EventStatus.FAILED.value
        event.last_error = error
        event.publish_pending = False
        event.processed_at = utcnow()

    async def publish_staged(self) -> int:
        """Publish rows staged in caller transactions. Call after commit.

        Returns:
            Number of rows published
        """
        staged, self._staged = self._staged, []
        published = 0
        for event in staged:
            if await self.publisher.try_publish(event):
                published += 1
        return published


class OutboxSweeper:
    """Publishes ledger rows whose publish never happened."""

    def __init__(self, ledger: EventLedger, publisher: EventPublisher, config: OutboxConfig):
        self.ledger = ledger
        self.publisher = publisher
        self.config = config
        self.running = True
        self.trigger = asyncio.Event()
        self.last_sweep: Optional[datetime] = None
        self.last_published = 0
        self.logger = logger.getChild('outbox')

    async def sweep(self) -> int:
        """Publish one batch of pending rows.

        Returns:
            Number of rows published
        """
        pending = self.ledger.pending_publish(
            limit=self.config.batch_size, min_age_seconds=self.config.min_age_seconds
        )
        published = 0
        for event in pending:
            if await self.publisher.try_publish(event):
                published += 1

        self.last_sweep = utcnow()
        self.last_published = published
        if published:
            self.logger.info(f"Outbox sweep published {published}/{len(pending)} pending events")
        return published

    async def run(self) -> None:
        while self.running:
            try:
                await asyncio.wait_for(self.trigger.wait(), timeout=self.config.sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass
            finally:
                self.trigger.clear()

            if not self.running:
                break
            try:
                await self.sweep()
            except Exception:
                self.logger.exception("Outbox sweep failed")

    def signal(self) -> None:
        if not self.trigger.is_set():
            self.trigger.set()

    def stop(self) -> None:
        self.running = False
        self.signal()
