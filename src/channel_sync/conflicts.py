"""Detection and operator resolution of PMS vs channel divergence."""

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from .broker import EventPublisher, Priority
from .config import Settings
from .database import (
    ChannelConfigDB, DatabaseManager, ReservationDB, SyncConflictDB, as_utc, live, utcnow
)
from .ledger import EventLedger, outbound_idempotency_key
from .mappers import map_channel_status
from .mapping import MappingRepository
from .models import (
    ChannelBooking, ChannelContext, ConflictResolution, ConflictStatus, Direction, EntityType,
    EventType, FieldDiscrepancy, MappingType, ReconciliationReport
)
from .services import BaseChannelClient, create_client

logger = logging.getLogger(__name__)

FIELD_MISMATCH = 'field_mismatch'

FIELD_LABELS = {
    'check_in': 'Check-in',
    'check_out': 'Check-out',
    'status': 'Status',
    'total_amount': 'Total amount',
}


class ConflictActionError(Exception):
    """Operator action that cannot be applied to a conflict."""
    pass


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return round(float(value), 2)
    except (TypeError, ValueError):
        return None


def values_equal(a: Any, b: Any) -> bool:
    """Loose equality for comparing PMS and channel values.

    Dates compare as dates, strings trimmed and case-insensitive, numbers
    rounded to cents, lists and dicts element by element. None equals
    only None.
    """
    if a is None or b is None:
        return a is None and b is None

    if isinstance(a, bool) or isinstance(b, bool):
        return a == b

    if isinstance(a, (date, datetime)) or isinstance(b, (date, datetime)):
        left, right = _as_date(a), _as_date(b)
        return left is not None and left == right

    if isinstance(a, (int, float)) or isinstance(b, (int, float)):
        left, right = _as_number(a), _as_number(b)
        return left is not None and left == right

    if isinstance(a, str) and isinstance(b, str):
        return a.strip().lower() == b.strip().lower()

    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))

    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)

    return a == b


def reservation_snapshot(reservation: ReservationDB) -> Dict[str, Any]:
    updated_at = as_utc(reservation.updated_at)
    return {
        'id': str(reservation.id),
        'check_in': reservation.check_in.isoformat(),
        'check_out': reservation.check_out.isoformat(),
        'status': reservation.status,
        'total_amount': reservation.total_amount,
        'currency': reservation.currency,
        'updated_at': updated_at.isoformat() if updated_at else None,
    }


class ConflictDetector:
    """Compares channel bookings with channel-originated reservations.

    Mismatches become SyncConflict rows for an operator. Nothing is
    overwritten unless the operator resolves a conflict.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        ledger: Optional[EventLedger] = None,
        publisher: Optional[EventPublisher] = None,
        client_factory: Callable[[ChannelContext, Settings], BaseChannelClient] = create_client,
        mappings: Optional[MappingRepository] = None
    ):
        """Initialize conflict detector.

        Args:
            settings: Application settings
            db_manager: Database manager
            ledger: Event ledger, needed to push PMS values to the channel
            publisher: Publisher for events recorded by resolutions
            client_factory: Builds the channel client for reconciliation
            mappings: Mapping repository
        """
        self.settings = settings
        self.db_manager = db_manager
        self.ledger = ledger
        self.publisher = publisher
        self.client_factory = client_factory
        self.mappings = mappings or MappingRepository()
        self.default_strategy = settings.conflict_resolution
        self.logger = logger.getChild('conflicts')

    # -- detection --------------------------------------------------------

    def compare(
        self,
        reservation: ReservationDB,
        booking: ChannelBooking,
        channel: str = 'channel'
    ) -> List[FieldDiscrepancy]:
        """Fields that differ between a reservation and its booking."""
        pairs = [
            ('check_in', reservation.check_in, booking.arrival),
            ('check_out', reservation.check_out, booking.departure),
            ('status', reservation.status, map_channel_status(booking.status)),
            ('total_amount', reservation.total_amount, booking.total_amount),
        ]

        discrepancies = []
        for field, pms_value, channel_value in pairs:
            if values_equal(pms_value, channel_value):
                continue
            discrepancies.append(FieldDiscrepancy(
                field=field,
                pms_value=self._plain(pms_value),
                channel_value=self._plain(channel_value),
                description=f"{FIELD_LABELS[field]} differs: PMS {pms_value}, {channel} {channel_value}",
            ))
        return discrepancies

    @staticmethod
    def _plain(value: Any) -> Any:
        if isinstance(value, (date, datetime)):
            return value.isoformat()
        return value

    async def _fetch(self, context: ChannelContext, date_from: date, date_to: date) -> List[ChannelBooking]:
        client = self.client_factory(context, self.settings)
        try:
            return await client.get_bookings(arrival_from=date_from, arrival_to=date_to)
        finally:
            await client.close()

    async def reconcile(self, context: ChannelContext, date_from: date, date_to: date) -> ReconciliationReport:
        """Compare channel bookings and PMS reservations arriving in a window.

        Args:
            context: Resolved channel configuration
            date_from: First arrival date
            date_to: Last arrival date

        Returns:
            Counts of checked pairs, conflicts and one-sided bookings
        """
        bookings = {b.id: b for b in await self._fetch(context, date_from, date_to)}
        report = ReconciliationReport()
        matched = set()

        with self.db_manager.get_session() as session:
            reservations = live(session.query(ReservationDB), ReservationDB).filter(
                ReservationDB.source == context.channel,
                ReservationDB.check_in >= date_from,
                ReservationDB.check_in <= date_to
            ).all()

            for reservation in reservations:
                mapping = self.mappings.get_active(
                    session, context.config_id, MappingType.RESERVATION, internal_id=reservation.id
                )
                booking = bookings.get(mapping.external_id) if mapping is not None else None
                if booking is None:
                    report.only_in_pms += 1
                    continue

                matched.add(booking.id)
                report.checked += 1
                discrepancies = self.compare(reservation, booking, context.channel)
                if discrepancies:
                    conflict = self._record(session, context, reservation, booking, discrepancies)
                    report.conflicts += 1
                    report.conflict_ids.append(conflict.id)

            for booking_id in bookings:
                if booking_id in matched:
                    continue
                if self.mappings.get_active(
                    session, context.config_id, MappingType.RESERVATION, external_id=booking_id
                ) is None:
                    report.only_in_channel += 1

            session.commit()

        self.logger.info(
            f"Reconciled {context.channel} {date_from}..{date_to}: {report.checked} checked, "
            f"{report.conflicts} conflicts, {report.only_in_pms} only in PMS, "
            f"{report.only_in_channel} only in {context.channel}"
        )
        return report

    def _record(
        self,
        session: Session,
        context: ChannelContext,
        reservation: ReservationDB,
        booking: ChannelBooking,
        discrepancies: List[FieldDiscrepancy]
    ) -> SyncConflictDB:
        """Open a conflict, or refresh the one already open for this reservation."""
        conflict = session.query(SyncConflictDB).filter(
            SyncConflictDB.config_id == context.config_id,
            SyncConflictDB.reservation_id == str(reservation.id),
            SyncConflictDB.status == ConflictStatus.OPEN.value
        ).first()
        if conflict is None:
            conflict = SyncConflictDB(
                config_id=context.config_id,
                reservation_id=str(reservation.id),
                external_booking_id=booking.id,
                conflict_type=FIELD_MISMATCH,
                status=ConflictStatus.OPEN.value,
            )
            session.add(conflict)
            self.logger.warning(
                f"Conflict on reservation {reservation.id} / booking {booking.id}: "
                f"{', '.join(d.field for d in discrepancies)}"
            )

        conflict.external_booking_id = booking.id
        conflict.description = "; ".join(d.description for d in discrepancies)
        conflict.fields = [d.model_dump(mode='json') for d in discrepancies]
        conflict.pms_data = reservation_snapshot(reservation)
        conflict.channel_data = booking.model_dump(mode='json')
        session.flush()
        return conflict

    # -- operator actions -------------------------------------------------

    def list_open_conflicts(self, config_id: Optional[UUID] = None) -> List[SyncConflictDB]:
        with self.db_manager.get_session() as session:
            return self.db_manager.get_open_conflicts(session, config_id)

    def _open_conflict(self, session: Session, conflict_id: Union[str, UUID]) -> SyncConflictDB:
        conflict = session.get(SyncConflictDB, UUID(str(conflict_id)))
        if conflict is None:
            raise ConflictActionError(f"Conflict {conflict_id} not found")
        if conflict.status != ConflictStatus.OPEN.value:
            raise ConflictActionError(f"Conflict {conflict_id} is already {conflict.status}")
        return conflict

    def ignore_conflict(self, conflict_id: Union[str, UUID]) -> SyncConflictDB:
        """Close a conflict without touching either side."""
        with self.db_manager.get_session() as session:
            conflict = self._open_conflict(session, conflict_id)
            conflict.status = ConflictStatus.IGNORED.value
            conflict.resolution = 'ignored'
            conflict.resolved_at = utcnow()
            session.commit()
            self.logger.info(f"Ignored conflict {conflict.id}")
            return conflict

    async def resolve_conflict(
        self,
        conflict_id: Union[str, UUID],
        strategy: Optional[Union[ConflictResolution, str]] = None
    ) -> SyncConflictDB:
        """Apply one side's values and close the conflict.

        Args:
            conflict_id: Conflict to resolve
            strategy: pms_wins, channel_wins or newest_wins; defaults to
                the configured strategy

        Returns:
            The resolved conflict

        Raises:
            ConflictActionError: If the conflict is not open, the strategy
                is manual, or the reservation no longer exists
        """
        strategy = ConflictResolution(strategy or self.default_strategy)
        if strategy == ConflictResolution.MANUAL:
            raise ConflictActionError("Manual strategy records conflicts only; choose a side to resolve")

        staged = None
        with self.db_manager.get_session() as session:
            conflict = self._open_conflict(session, conflict_id)
            reservation = self.db_manager.get_reservation(session, conflict.reservation_id)
            if reservation is None:
                raise ConflictActionError(
                    f"Reservation {conflict.reservation_id} for conflict {conflict.id} is no longer live"
                )
            booking = ChannelBooking(**conflict.channel_data)

            winner = strategy
            if strategy == ConflictResolution.NEWEST_WINS:
                winner = self._newest(reservation, booking)

            if winner == ConflictResolution.CHANNEL_WINS:
                self._apply_channel_values(reservation, booking, conflict.fields or [])
            else:
                staged = self._queue_pms_push(session, conflict, reservation)

            conflict.status = ConflictStatus.RESOLVED.value
            conflict.resolution = (
                f"{strategy.value}:{winner.value}" if strategy == ConflictResolution.NEWEST_WINS else strategy.value
            )
            conflict.resolved_at = utcnow()
            session.commit()
            self.logger.info(f"Resolved conflict {conflict.id} with {conflict.resolution}")

        if staged is not None and self.publisher is not None:
            await self.publisher.try_publish(staged)
        return conflict

    @staticmethod
    def _newest(reservation: ReservationDB, booking: ChannelBooking) -> ConflictResolution:
        # Without a channel timestamp the PMS edit is the only one we can date
        pms_updated = as_utc(reservation.updated_at)
        if booking.modified_at is not None and (pms_updated is None or booking.modified_at > pms_updated):
            return ConflictResolution.CHANNEL_WINS
        return ConflictResolution.PMS_WINS

    def _apply_channel_values(
        self,
        reservation: ReservationDB,
        booking: ChannelBooking,
        fields: List[Dict[str, Any]]
    ) -> None:
        values = {
            'check_in': booking.arrival,
            'check_out': booking.departure,
            'status': map_channel_status(booking.status),
            'total_amount': float(booking.total_amount or 0),
        }
        for item in fields:
            name = item.get('field')
            if name in values:
                setattr(reservation, name, values[name])
        reservation.updated_at = utcnow()
        self.logger.info(f"Applied channel values for {[f.get('field') for f in fields]} to {reservation.id}")

    def _queue_pms_push(self, session: Session, conflict: SyncConflictDB, reservation: ReservationDB):
        if self.ledger is None:
            raise ConflictActionError("Pushing PMS values needs an event ledger")

        config = session.get(ChannelConfigDB, conflict.config_id)
        if config is None:
            raise ConflictActionError(f"Channel config {conflict.config_id} no longer exists")

        event, _ = self.ledger.record_event(
            direction=Direction.OUTBOUND,
            source='pms',
            event_type=EventType.RESERVATION_UPDATE,
            entity_type=EntityType.RESERVATION,
            idempotency_key=outbound_idempotency_key(
                EntityType.RESERVATION.value, str(reservation.id), f"resolve-{conflict.id}"
            ),
            payload={'reservation_id': str(reservation.id), 'force': True},
            internal_id=str(reservation.id),
            priority=Priority.RESERVATION_CHANGE,
            channel=config.channel,
            property_id=config.property_id,
            session=session,
        )
        return event
