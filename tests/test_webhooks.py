"""Tests for webhook verification, deduplication and failed-event routes."""

import json
from datetime import date

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from channel_sync.models import Direction, EntityType, EventStatus, EventType, MappingType
from channel_sync.webhooks import (
    ACCEPTED_MESSAGE, DUPLICATE_MESSAGE, WebhookError, WebhookIngest, compute_signature,
    router, signature_header, verify_signature
)
from channel_sync.workers import ProcessOutcome, create_worker

from conftest import PROPERTY_ID, WEBHOOK_SECRET


def webhook_body(event="created", event_id="E1", booking_id="B123", **booking):
    data = {
        'id': booking_id,
        'roomTypeId': 'CM-DBL',
        'arrival': '2026-01-10',
        'departure': '2026-01-12',
        'status': 'confirmed',
        'price': 240,
        'currency': 'EUR',
        'numberOfGuests': 2,
        'guest': {'firstName': 'Ana', 'lastName': 'Silva', 'email': 'ana.silva@example.com'},
    }
    data.update(booking)
    body = {'event': event, 'booking': data}
    if event_id:
        body['eventId'] = event_id
    return json.dumps(body).encode()


def signed(raw_body, secret=WEBHOOK_SECRET):
    return compute_signature(raw_body, secret)


@pytest.fixture
def ingest(env):
    return WebhookIngest(PROPERTY_ID, env.resolver, env.ledger, env.publisher)


@pytest.fixture
def client(ingest):
    app = FastAPI()
    app.include_router(router)
    app.state.ingest = ingest
    return TestClient(app)


class TestSignature:

    def test_valid_signature(self):
        body = b'{"event": "created"}'
        assert verify_signature(body, signed(body), WEBHOOK_SECRET)
        assert verify_signature(body, signed(body).upper(), WEBHOOK_SECRET)

    def test_rejects_tampered_body(self):
        assert not verify_signature(b'{"event": "cancelled"}', signed(b'{"event": "created"}'), WEBHOOK_SECRET)

    def test_rejects_missing_signature_or_secret(self):
        body = b'{}'
        assert not verify_signature(body, None, WEBHOOK_SECRET)
        assert not verify_signature(body, signed(body), None)

    def test_header_name(self):
        assert signature_header('siteminder') == 'X-Siteminder-Signature'


class TestWebhookIngest:

    @pytest.mark.asyncio
    async def test_duplicate_event_id_creates_one_reservation(self, env, ingest):
        room_type_id = env.add_room_type()
        env.map(MappingType.ROOM_TYPE, room_type_id, "CM-DBL")
        body = webhook_body()

        first = await ingest.handle('siteminder', body, signed(body))
        second = await ingest.handle('siteminder', body, signed(body))

        assert first['message'] == ACCEPTED_MESSAGE
        assert second['message'] == DUPLICATE_MESSAGE
        assert second['event_id'] == first['event_id']
        assert await env.broker.queue_depth('siteminder.inbound') == 1

        worker = create_worker(
            Direction.INBOUND, env.context, env.settings, env.broker, env.ledger, env.db,
            client_factory=env.client_factory
        )
        delivery = await env.broker.consume(worker.queue, timeout=0.1)
        assert await worker.process(delivery) == ProcessOutcome.DONE

        with env.db.get_session() as session:
            mappings = env.mappings.list_mappings(session, env.context.config_id, MappingType.RESERVATION)
            assert [m.external_id for m in mappings] == ['B123']
            reservation = env.db.get_reservation(session, mappings[0].internal_id)
            assert reservation.check_in == date(2026, 1, 10)

        event = env.ledger.get(first['event_id'])
        assert event.idempotency_key == 'E1'
        assert event.status == EventStatus.DONE.value
        assert event.priority == 10

    @pytest.mark.asyncio
    async def test_key_without_event_id(self, env, ingest):
        body = webhook_body(event_id=None)
        data = json.loads(body)
        data['timestamp'] = 1700000000000
        body = json.dumps(data).encode()

        result = await ingest.handle('siteminder', body, signed(body))

        event = env.ledger.get(result['event_id'])
        assert event.idempotency_key == 'siteminder-B123-created-1700000000000'

    @pytest.mark.asyncio
    async def test_invalid_signature_records_nothing(self, env, ingest):
        body = webhook_body()
        with pytest.raises(WebhookError) as exc_info:
            await ingest.handle('siteminder', body, signed(body, 'wrong-secret'))
        assert exc_info.value.status_code == 401
        assert env.ledger.get_by_key('E1') is None

    @pytest.mark.asyncio
    async def test_cancellation_payload(self, env, ingest):
        body = webhook_body(event='cancelled', event_id='E9')
        result = await ingest.handle('siteminder', body, signed(body))
        event = env.ledger.get(result['event_id'])
        assert event.event_type == EventType.BOOKING_CANCELLED.value
        assert event.payload == {'booking_id': 'B123', 'channel_event_id': 'E9'}

    @pytest.mark.asyncio
    async def test_unknown_channel(self, ingest):
        with pytest.raises(WebhookError) as exc_info:
            await ingest.handle('cloudbeds', b'{}', 'sig')
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_retry_resets_failed_event(self, env, ingest):
        event, _ = env.ledger.record_event(
            direction=Direction.INBOUND,
            source='siteminder',
            event_type=EventType.BOOKING_CANCELLED,
            entity_type=EntityType.BOOKING,
            idempotency_key='E5',
            payload={'booking_id': 'B5'},
        )
        env.ledger.mark_failed(event.id, "boom")

        result = await ingest.retry('siteminder', str(event.id))

        assert result['message'] == "Event queued for retry"
        row = env.ledger.get(event.id)
        assert row.status == EventStatus.RECEIVED.value
        assert row.publish_pending is False
        assert await env.broker.queue_depth('siteminder.inbound') == 1

    @pytest.mark.asyncio
    async def test_retry_rejects_event_that_is_not_failed(self, env, ingest):
        event, _ = env.ledger.record_event(
            direction=Direction.INBOUND,
            source='siteminder',
            event_type=EventType.BOOKING_CANCELLED,
            entity_type=EntityType.BOOKING,
            idempotency_key='E6',
            payload={'booking_id': 'B6'},
        )
        with pytest.raises(WebhookError) as exc_info:
            await ingest.retry('siteminder', str(event.id))
        assert exc_info.value.status_code == 409


class TestWebhookRoutes:

    def post(self, client, body, signature):
        headers = {'Content-Type': 'application/json'}
        if signature:
            headers[signature_header('siteminder')] = signature
        return client.post('/integrations/siteminder/webhooks', content=body, headers=headers)

    def test_accepts_signed_webhook(self, client):
        body = webhook_body()
        response = self.post(client, body, signed(body))
        assert response.status_code == 200
        assert response.json()['message'] == ACCEPTED_MESSAGE

    def test_duplicate_returns_200(self, client):
        body = webhook_body()
        first = self.post(client, body, signed(body))
        second = self.post(client, body, signed(body))
        assert second.status_code == 200
        assert second.json() == {'status': 'ok', 'message': DUPLICATE_MESSAGE, 'event_id': first.json()['event_id']}

    def test_missing_signature_is_401(self, client):
        assert self.post(client, webhook_body(), None).status_code == 401

    def test_bad_signature_is_401(self, client):
        assert self.post(client, webhook_body(), 'deadbeef').status_code == 401

    def test_non_ascii_signature_is_401(self, client):
        assert self.post(client, webhook_body(), 'é'.encode('utf-8')).status_code == 401

    def test_guest_that_is_not_an_object_is_400(self, client):
        body = webhook_body(guest="Ana Silva")
        response = self.post(client, body, signed(body))
        assert response.status_code == 400
        assert "guest" in response.json()['detail']

    def test_deleted_booking_is_accepted_as_cancellation(self, env, client):
        body = webhook_body(event='booking.deleted', event_id='E11')
        response = self.post(client, body, signed(body))
        assert response.status_code == 200
        event = env.ledger.get(response.json()['event_id'])
        assert event.event_type == EventType.BOOKING_CANCELLED.value
        assert event.payload == {'booking_id': 'B123', 'channel_event_id': 'E11'}

    @pytest.mark.parametrize('body', [
        b'not json',
        b'[]',
        json.dumps({'booking': {'id': 'B1'}}).encode(),
        json.dumps({'event': 'created', 'booking': {}}).encode(),
        json.dumps({'event': 'exploded', 'booking': {'id': 'B1'}}).encode(),
    ])
    def test_malformed_body_is_400(self, client, body):
        assert self.post(client, body, signed(body)).status_code == 400

    def test_list_and_retry_failed(self, env, client):
        event, _ = env.ledger.record_event(
            direction=Direction.INBOUND,
            source='siteminder',
            event_type=EventType.BOOKING_CANCELLED,
            entity_type=EntityType.BOOKING,
            idempotency_key='E7',
            payload={'booking_id': 'B7'},
        )
        env.ledger.mark_failed(event.id, "boom")

        listing = client.get('/integrations/siteminder/events/failed').json()
        assert listing['total'] == 1
        assert listing['events'][0]['id'] == str(event.id)
        assert listing['events'][0]['last_error'] == "boom"

        response = client.post(f'/integrations/siteminder/events/{event.id}/retry')
        assert response.status_code == 200
        assert client.get('/integrations/siteminder/events/failed').json()['total'] == 0

    def test_retry_unknown_event_is_404(self, client):
        response = client.post('/integrations/siteminder/events/00000000-0000-0000-0000-000000000001/retry')
        assert response.status_code == 404
