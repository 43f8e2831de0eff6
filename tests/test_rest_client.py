"""Tests for the REST channel client against a mocked transport."""

import json
from datetime import date

import httpx
import pytest

from channel_sync.models import AvailabilityDay
from channel_sync.services import create_client
from channel_sync.services.base import (
    AuthenticationError, BookingNotFoundError, ChannelValidationError, SyncDisabledError, TransientChannelError,
    UncertainWriteError
)
from channel_sync.services.rest import RestChannelClient, booking_from_json

from conftest import make_booking

BOOKING_JSON = {
    'id': 'CM-1',
    'roomTypeId': 'CM-DBL',
    'arrivalDate': '2026-01-10',
    'departureDate': '2026-01-12',
    'status': 'Confirmed',
    'price': 240,
    'numberOfGuests': 2,
    'guest': {'firstName': 'Ana', 'lastName': 'Silva', 'email': 'ana.silva@example.com'},
    'externalId': 'PMS-abc',
    'modified': '2026-01-01T10:00:00Z',
}


class Recorder:
    """Mock channel API that records requests."""

    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.body is None:
            return httpx.Response(self.status)
        return httpx.Response(self.status, json=self.body)


def make_client(env, handler):
    return RestChannelClient(env.context, env.settings, transport=httpx.MockTransport(handler))


def test_booking_from_json():
    booking = booking_from_json(BOOKING_JSON)
    assert booking.room_type_ids == ['CM-DBL']
    assert booking.arrival == date(2026, 1, 10)
    assert booking.status == 'confirmed'
    assert booking.guest.full_name == 'Ana Silva'
    assert booking.external_reference == 'PMS-abc'
    assert booking.modified_at.tzinfo is not None


class TestRestChannelClient:

    @pytest.mark.asyncio
    async def test_get_bookings_sends_filters_and_api_key(self, env):
        recorder = Recorder(body={'data': [BOOKING_JSON, {'id': None}]})
        client = make_client(env, recorder)
        try:
            bookings = await client.get_bookings(arrival_from=date(2026, 1, 1), arrival_to=date(2026, 1, 31))
        finally:
            await client.close()

        assert [b.id for b in bookings] == ['CM-1']
        request = recorder.requests[0]
        assert request.url.path == '/api/bookings'
        assert request.url.params['arrivalFrom'] == '2026-01-01'
        assert request.url.params['arrivalTo'] == '2026-01-31'
        assert request.headers['X-Api-Key'] == 'cm-api-key'

    @pytest.mark.asyncio
    async def test_create_booking_returns_channel_id(self, env):
        recorder = Recorder(status=201, body={'id': 987})
        client = make_client(env, recorder)
        try:
            booking_id = await client.create_booking(make_booking())
        finally:
            await client.close()

        assert booking_id == '987'
        sent = json.loads(recorder.requests[0].content)
        assert sent['roomTypeIds'] == ['CM-DBL']
        assert sent['arrival'] == '2026-01-10'
        assert sent['guest']['lastName'] == 'Silva'

    @pytest.mark.asyncio
    async def test_availability_payload(self, env):
        recorder = Recorder(status=204)
        client = make_client(env, recorder)
        try:
            await client.update_availability('CM-DBL', [AvailabilityDay(day=date(2026, 1, 10), available=3)])
        finally:
            await client.close()

        sent = json.loads(recorder.requests[0].content)
        assert sent == {'roomTypeId': 'CM-DBL', 'days': [{'date': '2026-01-10', 'numAvail': 3}]}

    @pytest.mark.asyncio
    @pytest.mark.parametrize('status,error', [
        (401, AuthenticationError),
        (404, BookingNotFoundError),
        (422, ChannelValidationError),
    ])
    async def test_error_statuses(self, env, status, error):
        recorder = Recorder(status=status, body={'error': 'nope'})
        client = make_client(env, recorder)
        try:
            with pytest.raises(error):
                await client.get_booking('CM-1')
        finally:
            await client.close()
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_create_timeout_is_not_retried(self, env):
        requests = []

        def timeout(request):
            requests.append(request)
            raise httpx.ReadTimeout("read timed out", request=request)

        client = make_client(env, timeout)
        try:
            with pytest.raises(UncertainWriteError):
                await client.create_booking(make_booking())
        finally:
            await client.close()
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_create_server_error_is_sent_once(self, env):
        recorder = Recorder(status=503)
        client = make_client(env, recorder)
        try:
            with pytest.raises(TransientChannelError):
                await client.create_booking(make_booking())
        finally:
            await client.close()
        assert len(recorder.requests) == 1


def test_create_client_requires_enabled_sync(env):
    with pytest.raises(SyncDisabledError):
        create_client(env.context.model_copy(update={'sync_enabled': False}), env.settings)
