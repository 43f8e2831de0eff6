"""Webhook ingest and operator routes for failed events."""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .broker import EventPublisher, Priority, Topology
from .context import ChannelNotConfiguredError, ConfigResolver
from .database import ChannelEventDB
from .ledger import EventLedger, LedgerError, inbound_idempotency_key
from .models import ChannelContext, Direction, EntityType, EventStatus, EventType
from .services.rest import booking_from_json

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["Channel Integrations"])

# Webhook event names as sent by channel managers
WEBHOOK_EVENTS = {
    'created': EventType.BOOKING_CREATED,
    'new': EventType.BOOKING_CREATED,
    'booking.created': EventType.BOOKING_CREATED,
    'modified': EventType.BOOKING_UPDATED,
    'updated': EventType.BOOKING_UPDATED,
    'booking.modified': EventType.BOOKING_UPDATED,
    'booking.updated': EventType.BOOKING_UPDATED,
    'cancelled': EventType.BOOKING_CANCELLED,
    'canceled': EventType.BOOKING_CANCELLED,
    'booking.cancelled': EventType.BOOKING_CANCELLED,
    'deleted': EventType.BOOKING_CANCELLED,
    'booking.deleted': EventType.BOOKING_CANCELLED,
}

ACCEPTED_MESSAGE = "Webhook received and queued for processing"
DUPLICATE_MESSAGE = "Event already processed"


class WebhookError(Exception):
    """Webhook rejected with an HTTP status."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def signature_header(channel: str) -> str:
    return f"X-{channel.capitalize()}-Signature"


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time check of a hex HMAC-SHA256 over the raw body."""
    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    # Headers may carry non-ASCII bytes, which compare_digest only accepts as bytes
    return hmac.compare_digest(expected.encode('ascii'), signature.strip().lower().encode('utf-8', 'replace'))


def serialize_event(event: ChannelEventDB) -> Dict[str, Any]:
    return {
        'id': str(event.id),
        'direction': event.direction,
        'source': event.source,
        'event_type': event.event_type,
        'entity_type': event.entity_type,
        'entity_external_id': event.entity_external_id,
        'entity_internal_id': event.entity_internal_id,
        'idempotency_key': event.idempotency_key,
        'status': event.status,
        'attempts': event.attempts,
        'max_attempts': event.max_attempts,
        'last_error': event.last_error,
        'publish_pending': event.publish_pending,
        'created_at': event.created_at.isoformat() if event.created_at else None,
        'updated_at': event.updated_at.isoformat() if event.updated_at else None,
    }


class WebhookIngest:
    """Verifies, deduplicates, records and publishes channel webhooks."""

    def __init__(
        self,
        property_id: str,
        resolver: ConfigResolver,
        ledger: EventLedger,
        publisher: EventPublisher
    ):
        self.property_id = property_id
        self.resolver = resolver
        self.ledger = ledger
        self.publisher = publisher
        self.logger = logger.getChild('ingest')

    def _context(self, channel: str) -> ChannelContext:
        try:
            context = self.resolver.resolve(self.property_id, channel)
        except ChannelNotConfiguredError:
            raise WebhookError(404, f"Unknown channel: {channel}")
        if not context.sync_enabled:
            raise WebhookError(404, f"Integration {channel} is disabled")
        return context

    @staticmethod
    def _parse(raw_body: bytes) -> Tuple[EventType, Dict[str, Any], Dict[str, Any]]:
        """Validate the body and build the event payload.

        Returns:
            Tuple of (event type, parsed body, event payload)
        """
        try:
            data = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise WebhookError(400, "Body is not valid JSON")
        if not isinstance(data, dict):
            raise WebhookError(400, "Body must be a JSON object")

        event_name = data.get('event')
        booking_data = data.get('booking')
        if not event_name:
            raise WebhookError(400, "Missing required field: event")
        if not isinstance(booking_data, dict) or booking_data.get('id') in (None, ''):
            raise WebhookError(400, "Missing required field: booking.id")

        event_type = WEBHOOK_EVENTS.get(str(event_name).strip().lower())
        if event_type is None:
            raise WebhookError(400, f"Unsupported event: {event_name}")

        if event_type == EventType.BOOKING_CANCELLED:
            payload = {'booking_id': str(booking_data['id'])}
        else:
            try:
                booking = booking_from_json(booking_data)
            except ValueError as e:
                raise WebhookError(400, f"Malformed booking: {e}")
            payload = {'booking': booking.model_dump(mode='json')}

        if data.get('eventId'):
            payload['channel_event_id'] = str(data['eventId'])
        return event_type, data, payload

    async def handle(self, channel: str, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Process one webhook delivery.

        Returns:
            Response body for a 200

        Raises:
            WebhookError: For 401, 400 and 404 responses
        """
        channel = channel.lower()
        context = self._context(channel)

        if not verify_signature(raw_body, signature, context.webhook_secret):
            self.logger.warning(f"Rejected {channel} webhook with missing or invalid signature")
            raise WebhookError(401, "Invalid signature")

        event_type, data, payload = self._parse(raw_body)
        booking_id = str(data['booking']['id'])
        key = inbound_idempotency_key(
            source=channel,
            event_type=str(data['event']),
            external_id=booking_id,
            channel_event_id=data.get('eventId'),
            timestamp=data.get('timestamp'),
        )

        existing = self.ledger.get_by_key(key)
        if existing is not None:
            self.logger.info(f"Duplicate {channel} webhook {key} (event {existing.id})")
            return {'status': 'ok', 'message': DUPLICATE_MESSAGE, 'event_id': str(existing.id)}

        event, created = self.ledger.record_event(
            direction=Direction.INBOUND,
            source=channel,
            event_type=event_type,
            entity_type=EntityType.BOOKING,
            idempotency_key=key,
            payload=payload,
            external_id=booking_id,
            priority=Priority.WEBHOOK_BOOKING,
            channel=channel,
            property_id=context.property_id,
        )
        if not created:
            return {'status': 'ok', 'message': DUPLICATE_MESSAGE, 'event_id': str(event.id)}

        # A failed publish leaves the row pending for the outbox sweeper
        await self.publisher.try_publish(event)
        self.logger.info(f"Accepted {channel} {event_type.value} for booking {booking_id} as {event.id}")
        return {'status': 'ok', 'message': ACCEPTED_MESSAGE, 'event_id': str(event.id)}

    def list_failed(
        self,
        channel: str,
        direction: Optional[Direction] = None,
        entity_type: Optional[str] = None,
        status: EventStatus = EventStatus.FAILED,
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        events, total = self.ledger.list_failed(
            direction=direction, entity_type=entity_type, status=status,
            channel=channel.lower(), limit=limit, offset=offset
        )
        return {'total': total, 'limit': limit, 'offset': offset, 'events': [serialize_event(e) for e in events]}

    async def retry(self, channel: str, event_id: str) -> Dict[str, Any]:
        """Reset a failed event and publish it again.

        Raises:
            WebhookError: 404 for unknown events, 409 for events that are not failed
        """
        try:
            event = self.ledger.get(event_id)
        except ValueError:
            event = None
        if event is None or event.channel != channel.lower():
            raise WebhookError(404, f"Event {event_id} not found")

        try:
            event = self.ledger.reset_for_retry(event.id)
        except LedgerError as e:
            raise WebhookError(409, str(e))

        queue = Topology(event.channel).queue(Direction(event.direction))
        await self.publisher.broker.remove_dead_letters(queue, str(event.id))
        published = await self.publisher.try_publish(event)
        return {
            'status': 'ok',
            'message': "Event queued for retry" if published else "Event reset; publish pending",
            'event_id': str(event.id),
        }


def _ingest(request: Request) -> WebhookIngest:
    return request.app.state.ingest


@router.post("/{channel}/webhooks")
async def receive_webhook(channel: str, request: Request):
    """Receive a booking webhook from a channel manager."""
    raw_body = await request.body()
    signature = request.headers.get(signature_header(channel))
    try:
        body = await _ingest(request).handle(channel, raw_body, signature)
    except WebhookError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)
    except Exception:
        logger.exception(f"Unexpected error handling {channel} webhook")
        return JSONResponse(status_code=500, content={'status': 'error', 'message': 'Internal server error'})
    return JSONResponse(status_code=200, content=body)


@router.get("/{channel}/events/failed")
async def list_failed_events(
    channel: str,
    request: Request,
    direction: Optional[Direction] = Query(None),
    entity_type: Optional[str] = Query(None),
    status: EventStatus = Query(EventStatus.FAILED),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0)
):
    """List failed events for triage."""
    return _ingest(request).list_failed(channel, direction, entity_type, status, limit, offset)


@router.post("/{channel}/events/{event_id}/retry")
async def retry_event(channel: str, event_id: UUID, request: Request):
    """Replay a failed event with a fresh retry budget."""
    try:
        return await _ingest(request).retry(channel, str(event_id))
    except WebhookError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)
