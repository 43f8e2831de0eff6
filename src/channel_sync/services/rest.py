"""Generic JSON/REST channel-manager client."""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from ..config import Settings
from ..models import AvailabilityDay, ChannelBooking, ChannelContext, RateDay
from .base import (
    BaseChannelClient, AuthenticationError, BookingNotFoundError, ChannelServiceError,
    ChannelTimeoutError, ChannelValidationError, RateLimitError, TransientChannelError, UncertainWriteError
)

_retry_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(TransientChannelError),
    reraise=True,
)


def booking_to_json(booking: ChannelBooking) -> Dict[str, Any]:
    """Serialize a booking to the wire format."""
    return {
        'roomTypeIds': booking.room_type_ids,
        'arrival': booking.arrival.isoformat(),
        'departure': booking.departure.isoformat(),
        'status': booking.status,
        'price': booking.total_amount,
        'currency': booking.currency,
        'numberOfGuests': booking.num_guests,
        'guest': {
            'firstName': booking.guest.first_name,
            'lastName': booking.guest.last_name,
            'email': booking.guest.email,
            'phone': booking.guest.phone,
        },
        'notes': booking.notes,
        'source': booking.source,
        'externalId': booking.external_reference,
    }


def booking_from_json(data: Dict[str, Any]) -> ChannelBooking:
    """Parse a booking from the wire format."""
    guest = data.get('guest') or {}
    if not isinstance(guest, dict):
        raise ValueError("guest must be an object")
    room_types = data.get('roomTypeIds')
    if room_types is None and data.get('roomTypeId') is not None:
        room_types = [data['roomTypeId']]
    return ChannelBooking(
        id=data.get('id'),
        room_type_ids=room_types or [],
        arrival=data.get('arrival') or data.get('arrivalDate'),
        departure=data.get('departure') or data.get('departureDate'),
        status=data.get('status'),
        total_amount=data.get('price') or 0,
        currency=data.get('currency'),
        num_guests=data.get('numberOfGuests') or 1,
        guest={
            'first_name': guest.get('firstName'),
            'last_name': guest.get('lastName'),
            'email': guest.get('email'),
            'phone': guest.get('phone'),
        },
        notes=data.get('notes'),
        source=data.get('source'),
        external_reference=data.get('externalId'),
        modified_at=data.get('modified'),
    )


class RestChannelClient(BaseChannelClient):
    """Channel client speaking a JSON API authenticated with an API key header."""

    def __init__(self, context: ChannelContext, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(context, settings)
        if not context.base_url:
            raise ChannelValidationError(f"No base URL configured for {context.channel}")
        if not context.api_key:
            raise AuthenticationError(f"No API key configured for {context.channel}")

        headers = {'X-Api-Key': context.api_key, 'Accept': 'application/json'}
        if context.external_hotel_id:
            headers['X-Hotel-Id'] = context.external_hotel_id

        self._http_client = httpx.AsyncClient(
            base_url=context.base_url.rstrip('/'),
            headers=headers,
            timeout=settings.request_timeout_seconds,
            limits=httpx.Limits(max_connections=settings.max_concurrent_requests),
            transport=transport,
        )

    async def close(self) -> None:
        await self._http_client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._rate_limited_request(
                self._http_client.request(method, path, **kwargs)
            )
        except httpx.TimeoutException as e:
            raise ChannelTimeoutError(f"{method} {path} timed out: {e}")
        except httpx.TransportError as e:
            raise TransientChannelError(f"{method} {path} failed: {e}")

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(f"{self.context.channel} rejected credentials ({status})")
        if status == 404:
            raise BookingNotFoundError(f"{method} {path}: not found")
        if status == 429:
            retry_after = response.headers.get('Retry-After')
            raise RateLimitError(
                f"{self.context.channel} rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if status in (400, 409, 422):
            raise ChannelValidationError(f"{method} {path} rejected ({status}): {response.text[:500]}")
        if status >= 500:
            raise TransientChannelError(f"{method} {path} returned {status}")
        if status >= 300:
            raise ChannelServiceError(f"{method} {path} returned unexpected status {status}")

        if not response.content:
            return None
        return response.json()

    @_retry_transient
    async def get_bookings(
        self,
        modified_since: Optional[datetime] = None,
        arrival_from: Optional[date] = None,
        arrival_to: Optional[date] = None,
    ) -> List[ChannelBooking]:
        params: Dict[str, str] = {}
        if modified_since:
            params['modifiedFrom'] = modified_since.isoformat()
        if arrival_from:
            params['arrivalFrom'] = arrival_from.isoformat()
        if arrival_to:
            params['arrivalTo'] = arrival_to.isoformat()

        data = await self._request('GET', '/bookings', params=params) or []
        if isinstance(data, dict):
            data = data.get('data') or data.get('bookings') or []

        bookings = []
        for item in data:
            try:
                bookings.append(booking_from_json(item))
            except ValueError as e:
                self.logger.warning(f"Skipping malformed booking {item.get('id')}: {e}")
        return bookings

    @_retry_transient
    async def get_booking(self, booking_id: str) -> ChannelBooking:
        data = await self._request('GET', f'/bookings/{booking_id}')
        return booking_from_json(data)

    async def create_booking(self, booking: ChannelBooking) -> str:
        # POST is not idempotent, so no transport-level retry
        try:
            data = await self._request('POST', '/bookings', json=booking_to_json(booking))
        except ChannelTimeoutError as e:
            raise UncertainWriteError(
                f"Creating booking {booking.external_reference} timed out; check the channel before replaying: {e}"
            )
        if not data or data.get('id') is None:
            raise ChannelServiceError("Channel did not return a booking id")
        return str(data['id'])

    @_retry_transient
    async def update_booking(self, booking_id: str, booking: ChannelBooking) -> None:
        await self._request('PUT', f'/bookings/{booking_id}', json=booking_to_json(booking))

    @_retry_transient
    async def cancel_booking(self, booking_id: str) -> None:
        await self._request('POST', f'/bookings/{booking_id}/cancel')

    @_retry_transient
    async def update_availability(self, room_type_id: str, days: List[AvailabilityDay]) -> None:
        await self._request('PUT', '/inventory/availability', json={
            'roomTypeId': room_type_id,
            'days': [{'date': d.day.isoformat(), 'numAvail': d.available} for d in days],
        })

    @_retry_transient
    async def update_rates(self, room_type_id: str, days: List[RateDay]) -> None:
        await self._request('PUT', '/inventory/rates', json={
            'roomTypeId': room_type_id,
            'days': [{'date': d.day.isoformat(), 'price': d.price} for d in days],
        })

    async def ping(self) -> Dict[str, Any]:
        return await self._request('GET', '/status') or {}
