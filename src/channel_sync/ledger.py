"""Event ledger: persistent record of every sync attempt and the idempotency boundary."""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import ChannelEventDB, DatabaseManager, utcnow
from .models import Direction, EventStatus, EntityType, EventType

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

# Allowed status moves. Re-applying the current status only refreshes metadata.
_TRANSITIONS = {
    EventStatus.RECEIVED: {EventStatus.PROCESSING, EventStatus.FAILED},
    EventStatus.PROCESSING: {EventStatus.DONE, EventStatus.FAILED},
    EventStatus.FAILED: {EventStatus.PROCESSING},
    EventStatus.DONE: set(),
}


class LedgerError(Exception):
    """Invalid ledger operation (unknown event, illegal status transition)."""
    pass


def _timestamp(value: Optional[Union[int, str, datetime]] = None) -> str:
    if value is None:
        return str(int(time.time() * 1000))
    if isinstance(value, datetime):
        return str(int(value.timestamp() * 1000))
    return str(value)


def inbound_idempotency_key(
    source: str,
    event_type: str,
    external_id: Optional[str] = None,
    channel_event_id: Optional[str] = None,
    timestamp: Optional[Union[int, str, datetime]] = None,
) -> str:
    """Key for an inbound event.

    The channel-supplied event id is stable across redeliveries and wins
    when present.
    """
    if channel_event_id:
        return str(channel_event_id)
    return f"{source}-{external_id}-{event_type}-{_timestamp(timestamp)}"


def outbound_idempotency_key(
    entity_type: str,
    entity_id: str,
    action: str,
    timestamp: Optional[Union[int, str, datetime]] = None,
) -> str:
    """Key for an outbound event: pms-{entityType}-{entityId}-{action}-{timestamp}."""
    return f"pms-{entity_type}-{entity_id}-{action}-{_timestamp(timestamp)}"


class EventLedger:
    """Reads and writes channel_events rows."""

    def __init__(self, db_manager: DatabaseManager, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        """Initialize the ledger.

        Args:
            db_manager: Database manager
            max_attempts: Default retry budget for new events
        """
        self.db_manager = db_manager
        self.max_attempts = max_attempts
        self.logger = logger.getChild('ledger')

    def record_event(
        self,
        direction: Direction,
        source: str,
        event_type: Union[EventType, str],
        entity_type: Union[EntityType, str],
        idempotency_key: str,
        payload: Dict[str, Any],
        external_id: Optional[str] = None,
        internal_id: Optional[str] = None,
        priority: int = 5,
        channel: Optional[str] = None,
        property_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> Tuple[ChannelEventDB, bool]:
        """Record an event, or return the row already holding its key.

        When ``session`` is given the row is staged in the caller's
        transaction (outbox) and becomes visible when the caller commits.

        Args:
            channel: Integration carrying the event; defaults to source

        Returns:
            Tuple of (event, created)
        """
        event_type = EventType(event_type).value
        entity_type = entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)

        def build() -> ChannelEventDB:
            return ChannelEventDB(
                property_id=property_id,
                direction=Direction(direction).value,
                source=source,
                channel=(channel or source).lower(),
                event_type=event_type,
                entity_type=entity_type,
                entity_external_id=external_id,
                entity_internal_id=str(internal_id) if internal_id is not None else None,
                idempotency_key=idempotency_key,
                payload=payload,
                priority=priority,
                status=EventStatus.RECEIVED.value,
                attempts=0,
                max_attempts=max_attempts or self.max_attempts,
                publish_pending=True,
            )

        if session is not None:
            existing = self._find_by_key(session, idempotency_key)
            if existing is not None:
                return existing, False
            event = build()
            try:
                # SAVEPOINT so a lost race leaves the caller's transaction usable
                with session.begin_nested():
                    session.add(event)
            except IntegrityError:
                existing = self._find_by_key(session, idempotency_key)
                if existing is None:
                    raise
                return existing, False
            return event, True

        with self.db_manager.get_session() as own:
            existing = self._find_by_key(own, idempotency_key)
            if existing is not None:
                self.logger.debug(f"Duplicate event {idempotency_key} -> {existing.id}")
                return existing, False

            event = build()
            own.add(event)
            try:
                own.commit()
            except IntegrityError:
                # Lost an insert race on the unique key
                own.rollback()
                existing = self._find_by_key(own, idempotency_key)
                if existing is None:
                    raise
                return existing, False

            self.logger.debug(f"Recorded {direction} {event_type} event {event.id}")
            return event, True

    def _find_by_key(self, session: Session, idempotency_key: str) -> Optional[ChannelEventDB]:
        return session.query(ChannelEventDB).filter(
            ChannelEventDB.idempotency_key == idempotency_key
        ).first()

    def get(self, event_id: Union[UUID, str]) -> Optional[ChannelEventDB]:
        with self.db_manager.get_session() as session:
            return session.get(ChannelEventDB, UUID(str(event_id)))

    def get_by_key(self, idempotency_key: str) -> Optional[ChannelEventDB]:
        with self.db_manager.get_session() as session:
            return self._find_by_key(session, idempotency_key)

    def _transition(
        self,
        event_id: Union[UUID, str],
        status: EventStatus,
        error: Optional[str] = None,
    ) -> ChannelEventDB:
        with self.db_manager.get_session() as session:
            event = session.get(ChannelEventDB, UUID(str(event_id)))
            if event is None:
                raise LedgerError(f"Unknown event {event_id}")

            current = EventStatus(event.status)
            if status != current and status not in _TRANSITIONS[current]:
                raise LedgerError(f"Event {event_id}: {current.value} -> {status.value} not allowed")
            if (status == EventStatus.PROCESSING and current == EventStatus.FAILED
                    and event.attempts >= event.max_attempts):
                raise LedgerError(f"Event {event_id} exhausted {event.max_attempts} attempts")

            now = utcnow()
            event.status = status.value
            event.updated_at = now
            if status == EventStatus.DONE:
                event.processed_at = now
                event.last_error = None
            elif status == EventStatus.FAILED:
                event.processed_at = now
                event.last_error = error
            session.commit()
            return event

    def mark_processing(self, event_id: Union[UUID, str]) -> ChannelEventDB:
        return self._transition(event_id, EventStatus.PROCESSING)

    def mark_done(self, event_id: Union[UUID, str]) -> ChannelEventDB:
        return self._transition(event_id, EventStatus.DONE)

    def mark_failed(self, event_id: Union[UUID, str], error: str) -> ChannelEventDB:
        self.logger.warning(f"Event {event_id} failed: {error}")
        return self._transition(event_id, EventStatus.FAILED, error=error)

    def increment_attempts(self, event_id: Union[UUID, str]) -> int:
        """Atomically count one more logical attempt.

        The counter never passes max_attempts.

        Returns:
            Attempts after the increment
        """
        event_uuid = UUID(str(event_id))
        with self.db_manager.get_session() as session:
            session.execute(
                update(ChannelEventDB)
                .where(
                    ChannelEventDB.id == event_uuid,
                    ChannelEventDB.attempts < ChannelEventDB.max_attempts
                )
                .values(attempts=ChannelEventDB.attempts + 1, updated_at=utcnow())
            )
            session.commit()
            event = session.get(ChannelEventDB, event_uuid)
            if event is None:
                raise LedgerError(f"Unknown event {event_id}")
            session.refresh(event)
            return event.attempts

    @staticmethod
    def is_dlq_eligible(event: ChannelEventDB) -> bool:
        return event.attempts >= event.max_attempts

    def list_failed(
        self,
        direction: Optional[Direction] = None,
        entity_type: Optional[str] = None,
        status: EventStatus = EventStatus.FAILED,
        source: Optional[str] = None,
        channel: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ChannelEventDB], int]:
        """List events for operator triage.

        Returns:
            Tuple of (page of events, total matching)
        """
        with self.db_manager.get_session() as session:
            query = session.query(ChannelEventDB).filter(
                ChannelEventDB.status == EventStatus(status).value
            )
            if direction:
                query = query.filter(ChannelEventDB.direction == Direction(direction).value)
            if entity_type:
                query = query.filter(ChannelEventDB.entity_type == entity_type)
            if source:
                query = query.filter(ChannelEventDB.source == source)
            if channel:
                query = query.filter(ChannelEventDB.channel == channel.lower())

            total = query.count()
            rows = query.order_by(ChannelEventDB.updated_at.desc()).offset(offset).limit(limit).all()
            return rows, total

    def reset_for_retry(self, event_id: Union[UUID, str]) -> ChannelEventDB:
        """Operator replay: back to received with a fresh retry budget."""
        with self.db_manager.get_session() as session:
            event = session.get(ChannelEventDB, UUID(str(event_id)))
            if event is None:
                raise LedgerError(f"Unknown event {event_id}")
            if event.status != EventStatus.FAILED.value:
                raise LedgerError(f"Only failed events can be replayed (event is {event.status})")

            event.status = EventStatus.RECEIVED.value
            event.attempts = 0
            event.last_error = None
            event.processed_at = None
            event.publish_pending = True
            event.updated_at = utcnow()
            session.commit()
            self.logger.info(f"Event {event_id} reset for retry")
            return event

    def pending_publish(self, limit: int = 100, min_age_seconds: int = 0) -> List[ChannelEventDB]:
        """Outbox rows not yet handed to the broker, highest priority first."""
        cutoff = utcnow() - timedelta(seconds=min_age_seconds)
        with self.db_manager.get_session() as session:
            return session.query(ChannelEventDB).filter(
                ChannelEventDB.publish_pending == True,
                ChannelEventDB.status == EventStatus.RECEIVED.value,
                ChannelEventDB.created_at <= cutoff
            ).order_by(
                ChannelEventDB.priority.desc(),
                ChannelEventDB.created_at
            ).limit(limit).all()

    def mark_published(self, event_id: Union[UUID, str]) -> None:
        with self.db_manager.get_session() as session:
            session.execute(
                update(ChannelEventDB)
                .where(ChannelEventDB.id == UUID(str(event_id)))
                .values(publish_pending=False, published_at=utcnow(), updated_at=utcnow())
            )
            session.commit()
