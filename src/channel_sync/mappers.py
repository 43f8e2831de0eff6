"""Conversion between channel bookings and PMS reservations."""

from datetime import date, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from .database import GuestDB, ReservationDB, RoomTypeDB, live
from .models import (
    AvailabilityDay, ChannelBooking, ChannelContext, GuestInfo, RateDay, ReservationStatus
)
from .services.base import ChannelValidationError

# Prefix of the external reference we send with pushed bookings
EXTERNAL_REFERENCE_PREFIX = "PMS-"

CHANNEL_TO_PMS_STATUS = {
    'confirmed': ReservationStatus.CONFIRMED,
    'new': ReservationStatus.CONFIRMED,
    'request': ReservationStatus.CONFIRMED,
    'inquiry': ReservationStatus.CONFIRMED,
    'checkedin': ReservationStatus.CHECKED_IN,
    'checkedout': ReservationStatus.CHECKED_OUT,
    'cancelled': ReservationStatus.CANCELLED,
    # Numeric status codes used by some channel managers
    '1': ReservationStatus.CONFIRMED,
    '2': ReservationStatus.CHECKED_OUT,
    '3': ReservationStatus.CANCELLED,
    '4': ReservationStatus.CANCELLED,
}

PMS_TO_CHANNEL_STATUS = {
    ReservationStatus.CONFIRMED.value: 'confirmed',
    ReservationStatus.CHECKED_IN.value: 'checkedin',
    ReservationStatus.CHECKED_OUT.value: 'checkedout',
    ReservationStatus.CANCELLED.value: 'cancelled',
}

# Reservations in these states do not hold inventory
NON_BLOCKING_STATUSES = (ReservationStatus.CANCELLED.value, ReservationStatus.NO_SHOW.value)


def map_channel_status(status: Optional[str]) -> str:
    """Channel booking status to PMS reservation status (default Confirmed)."""
    key = str(status or '').strip().lower().replace('-', '').replace('_', '')
    return CHANNEL_TO_PMS_STATUS.get(key, ReservationStatus.CONFIRMED).value


def map_pms_status(status: Optional[str]) -> str:
    """PMS reservation status to channel booking status (default confirmed)."""
    return PMS_TO_CHANNEL_STATUS.get(status or '', 'confirmed')


def map_channel_source(source: Optional[str], channel: str) -> str:
    """Direct bookings stay Direct, everything else is attributed to the channel."""
    if source and source.strip().lower() == 'direct':
        return 'Direct'
    return channel


def map_pms_source(source: Optional[str]) -> str:
    if source == 'Direct':
        return 'direct'
    return 'channel'


def external_reference(reservation_id: Any) -> str:
    return f"{EXTERNAL_REFERENCE_PREFIX}{reservation_id}"


def parse_external_reference(reference: Optional[str]) -> Optional[UUID]:
    """PMS reservation id carried back by the channel, if it is one of ours."""
    if not reference or not reference.startswith(EXTERNAL_REFERENCE_PREFIX):
        return None
    try:
        return UUID(reference[len(EXTERNAL_REFERENCE_PREFIX):])
    except ValueError:
        return None


def validate_booking(booking: ChannelBooking) -> None:
    """Reject bookings that cannot become a reservation.

    Raises:
        ChannelValidationError: Listing every problem found
    """
    problems = []
    if not booking.id:
        problems.append("missing booking id")
    if booking.arrival is None or booking.departure is None:
        problems.append("missing arrival or departure date")
    elif booking.departure <= booking.arrival:
        problems.append(f"departure {booking.departure} is not after arrival {booking.arrival}")
    if not booking.room_type_ids:
        problems.append("no room type")

    if problems:
        raise ChannelValidationError(f"Invalid booking {booking.id or '?'}: {'; '.join(problems)}")


def booking_to_reservation_fields(
    booking: ChannelBooking,
    context: ChannelContext,
    room_type_id: Any
) -> Dict[str, Any]:
    """Column values for a PMS reservation built from a channel booking."""
    return {
        'room_type_id': UUID(str(room_type_id)),
        'check_in': booking.arrival,
        'check_out': booking.departure,
        'status': map_channel_status(booking.status),
        'total_amount': float(booking.total_amount or 0),
        'currency': booking.currency,
        'num_guests': booking.num_guests,
        'source': map_channel_source(booking.source, context.channel),
        'notes': booking.notes,
    }


def guest_to_info(guest: Optional[GuestDB]) -> GuestInfo:
    if guest is None:
        return GuestInfo()
    parts = (guest.name or '').strip().split()
    return GuestInfo(
        first_name=parts[0] if parts else '',
        last_name=' '.join(parts[1:]),
        email=guest.email,
        phone=guest.phone,
    )


def reservation_to_booking(
    reservation: ReservationDB,
    external_room_type_id: str,
    booking_id: Optional[str] = None
) -> ChannelBooking:
    """Channel booking for pushing a PMS reservation.

    Args:
        reservation: PMS reservation
        external_room_type_id: Mapped channel room type
        booking_id: Existing channel booking ID for updates

    Returns:
        Booking in the shared model
    """
    return ChannelBooking(
        id=booking_id or external_reference(reservation.id),
        room_type_ids=[external_room_type_id],
        arrival=reservation.check_in,
        departure=reservation.check_out,
        status=map_pms_status(reservation.status),
        total_amount=reservation.total_amount or 0,
        currency=reservation.currency,
        num_guests=reservation.num_guests or 1,
        guest=guest_to_info(reservation.primary_guest),
        notes=reservation.notes,
        source=map_pms_source(reservation.source),
        external_reference=external_reference(reservation.id),
    )


def nights(date_from: date, date_to: date) -> List[date]:
    """Every date from date_from to date_to inclusive."""
    return [date_from + timedelta(days=i) for i in range((date_to - date_from).days + 1)]


def compute_availability(
    session: Session,
    room_type: RoomTypeDB,
    date_from: date,
    date_to: date
) -> List[AvailabilityDay]:
    """Units left per night: total units minus overlapping live reservations."""
    reservations = live(session.query(ReservationDB), ReservationDB).filter(
        ReservationDB.room_type_id == room_type.id,
        ReservationDB.check_in <= date_to,
        ReservationDB.check_out > date_from,
        ReservationDB.status.notin_(NON_BLOCKING_STATUSES)
    ).all()

    days = []
    for night in nights(date_from, date_to):
        booked = sum(1 for r in reservations if r.check_in <= night < r.check_out)
        days.append(AvailabilityDay(day=night, available=max(0, (room_type.total_units or 0) - booked)))
    return days


def compute_rates(room_type: RoomTypeDB, date_from: date, date_to: date) -> List[RateDay]:
    """Base price of the room type for every night of the window."""
    return [RateDay(day=night, price=room_type.base_price or 0) for night in nights(date_from, date_to)]
