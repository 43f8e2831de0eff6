"""Pulling channel bookings into the PMS."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from .config import Settings
from .database import DatabaseManager, ReservationDB, ReservationGuestDB, utcnow
from .guests import GuestMatcher
from .mappers import booking_to_reservation_fields, parse_external_reference, validate_booking
from .mapping import MappingRepository
from .models import (
    BookingSyncResult, ChannelBooking, ChannelContext, MappingType, PullSyncReport,
    ReservationStatus, SyncAction
)
from .services.base import BaseChannelClient, ChannelServiceError

logger = logging.getLogger(__name__)


class PullSyncError(ChannelServiceError):
    """A pull returned bookings but none of them could be applied."""

    retryable = True


class PullSyncService:
    """Applies channel bookings to PMS reservations for one channel context."""

    def __init__(
        self,
        context: ChannelContext,
        settings: Settings,
        db_manager: DatabaseManager,
        client: Optional[BaseChannelClient] = None,
        mappings: Optional[MappingRepository] = None,
        guest_matcher: Optional[GuestMatcher] = None
    ):
        """Initialize pull sync service.

        Args:
            context: Resolved channel configuration
            settings: Application settings
            db_manager: Database manager
            client: Channel client, needed only for fetching bookings
            mappings: Mapping repository
            guest_matcher: Guest matcher
        """
        self.context = context
        self.settings = settings
        self.db_manager = db_manager
        self.client = client
        self.mappings = mappings or MappingRepository()
        self.guest_matcher = guest_matcher or GuestMatcher(settings.matching.min_match_score)
        self.logger = logger.getChild(context.integration)

    def _link_primary_guest(self, session: Session, reservation: ReservationDB, guest_id) -> None:
        for link in reservation.guests:
            if link.is_primary and link.guest_id != guest_id:
                link.is_primary = False
            elif link.guest_id == guest_id:
                link.is_primary = True
                return
        session.add(ReservationGuestDB(reservation_id=reservation.id, guest_id=guest_id, is_primary=True))

    def _adopt_pushed_reservation(self, session: Session, booking: ChannelBooking) -> Optional[ReservationDB]:
        """A booking we pushed earlier whose mapping was lost."""
        reservation_id = parse_external_reference(booking.external_reference)
        if reservation_id is None:
            return None
        reservation = self.db_manager.get_reservation(session, reservation_id)
        if reservation is None:
            return None
        if self.mappings.get_active(session, self.context.config_id, MappingType.RESERVATION,
                                    internal_id=reservation.id) is not None:
            return None
        return reservation

    def sync_booking(self, session: Session, booking: ChannelBooking) -> BookingSyncResult:
        """Create or update the PMS reservation for one booking.

        Changes are flushed but not committed.

        Raises:
            ChannelValidationError: If the booking is malformed
        """
        validate_booking(booking)

        room_type_mapping = self.mappings.find_room_type_for_booking(session, self.context, booking)
        if room_type_mapping is None:
            message = (
                f"No room type mapping for {self.context.channel} room type "
                f"{booking.room_type_ids[0]} (booking {booking.id})"
            )
            self.logger.warning(message)
            return BookingSyncResult(booking_id=booking.id, action=SyncAction.SKIPPED, error=message)

        guest, _ = self.guest_matcher.find_or_create_guest(session, booking.guest)
        fields = booking_to_reservation_fields(booking, self.context, room_type_mapping.internal_id)

        mapping = self.mappings.get_active(
            session, self.context.config_id, MappingType.RESERVATION, external_id=booking.id
        )

        if mapping is not None:
            reservation = self.db_manager.get_reservation(session, mapping.internal_id)
            if reservation is None:
                self.logger.info(f"Reservation {mapping.internal_id} for booking {booking.id} is no longer live")
                return BookingSyncResult(
                    booking_id=booking.id, action=SyncAction.SKIPPED, reservation_id=mapping.internal_id
                )
            self._apply(reservation, fields)
            self._link_primary_guest(session, reservation, guest.id)
            self.mappings.touch(mapping)
            session.flush()
            return BookingSyncResult(
                booking_id=booking.id, action=SyncAction.UPDATED, reservation_id=str(reservation.id)
            )

        reservation = self._adopt_pushed_reservation(session, booking)
        if reservation is not None:
            self._apply(reservation, fields)
            self._link_primary_guest(session, reservation, guest.id)
            self.mappings.create_mapping(
                session, self.context.config_id, MappingType.RESERVATION,
                reservation.id, booking.id, sync_direction='pull'
            )
            return BookingSyncResult(
                booking_id=booking.id, action=SyncAction.UPDATED, reservation_id=str(reservation.id)
            )

        # Channel bookings keep the channel as source so hooks never push them back
        fields['source'] = self.context.channel
        reservation = ReservationDB(**fields)
        session.add(reservation)
        session.flush()
        session.add(ReservationGuestDB(reservation_id=reservation.id, guest_id=guest.id, is_primary=True))
        self.mappings.create_mapping(
            session, self.context.config_id, MappingType.RESERVATION,
            reservation.id, booking.id, sync_direction='pull'
        )
        self.logger.info(f"Created reservation {reservation.id} from booking {booking.id}")
        return BookingSyncResult(
            booking_id=booking.id, action=SyncAction.CREATED, reservation_id=str(reservation.id)
        )

    @staticmethod
    def _apply(reservation: ReservationDB, fields: dict) -> None:
        # A channel update never rewrites where the reservation came from
        for name, value in fields.items():
            if name == 'source':
                continue
            setattr(reservation, name, value)
        reservation.updated_at = utcnow()

    def cancel_booking(self, session: Session, booking_id: str) -> BookingSyncResult:
        """Cancel the reservation mapped to a channel booking."""
        mapping = self.mappings.get_active(
            session, self.context.config_id, MappingType.RESERVATION, external_id=booking_id
        )
        if mapping is None:
            self.logger.info(f"Cancelled booking {booking_id} has no reservation mapping; nothing to cancel")
            return BookingSyncResult(booking_id=booking_id, action=SyncAction.SKIPPED)

        reservation = self.db_manager.get_reservation(session, mapping.internal_id)
        if reservation is None:
            return BookingSyncResult(booking_id=booking_id, action=SyncAction.SKIPPED, reservation_id=mapping.internal_id)

        reservation.status = ReservationStatus.CANCELLED.value
        reservation.updated_at = utcnow()
        self.mappings.touch(mapping)
        session.flush()
        self.logger.info(f"Cancelled reservation {reservation.id} (booking {booking_id})")
        return BookingSyncResult(booking_id=booking_id, action=SyncAction.UPDATED, reservation_id=str(reservation.id))

    async def fetch_bookings(self, modified_since: Optional[datetime] = None) -> List[ChannelBooking]:
        """Incremental fetch, or a full window when there is no previous sync."""
        if self.client is None:
            raise ChannelServiceError("No channel client available for pulling bookings")
        if modified_since is None:
            arrival_from = utcnow().date() - timedelta(days=self.settings.scheduler.initial_lookback_days)
            self.logger.info(f"Full pull of {self.context.channel} bookings arriving from {arrival_from}")
            return await self.client.get_bookings(arrival_from=arrival_from)
        self.logger.debug(f"Incremental pull of {self.context.channel} bookings modified since {modified_since}")
        return await self.client.get_bookings(modified_since=modified_since)

    async def sync_bookings(self, modified_since: Optional[datetime] = None, full_sync: bool = False) -> PullSyncReport:
        """Pull and apply bookings, one transaction per booking.

        Args:
            modified_since: Lower bound for incremental pulls
            full_sync: Ignore modified_since and pull the whole window

        Returns:
            Report with per-booking results
        """
        since = None if full_sync else modified_since
        report = PullSyncReport(full_sync=since is None)
        bookings = await self.fetch_bookings(since)

        for booking in bookings:
            with self.db_manager.get_session() as session:
                try:
                    result = self.sync_booking(session, booking)
                    session.commit()
                except Exception as e:
                    session.rollback()
                    self.logger.error(f"Failed to sync booking {booking.id}: {e}")
                    result = BookingSyncResult(booking_id=booking.id, action=SyncAction.FAILED, error=str(e))
                    report.errors.append(f"{booking.id}: {e}")
            report.results.append(result)

        report.completed_at = utcnow()
        self.logger.info(
            f"Pulled {report.processed} bookings: {report.created} created, {report.updated} updated, "
            f"{report.skipped} skipped, {report.failed} failed"
        )
        return report
