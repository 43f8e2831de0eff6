"""Data models for channel-manager synchronization."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, List, Type, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, validator
import pytz


class Direction(str, Enum):
    """Direction of a ledger event relative to the PMS."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class EventStatus(str, Enum):
    """Ledger processing status."""

    RECEIVED = "received"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class EntityType(str, Enum):
    """Entity an event refers to."""

    BOOKING = "booking"
    RESERVATION = "reservation"
    AVAILABILITY = "availability"
    RATE = "rate"


class MappingType(str, Enum):
    """Kinds of PMS to channel identifier links."""

    ROOM = "room"
    ROOM_TYPE = "room_type"
    RESERVATION = "reservation"


class SyncRunStatus(str, Enum):
    """Status of a scheduler run (sync_state row)."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ConflictStatus(str, Enum):
    """Operator workflow status for a recorded conflict."""

    OPEN = "open"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class ConflictResolution(str, Enum):
    """Conflict resolution strategies."""

    MANUAL = "manual"  # Record only, operator decides
    PMS_WINS = "pms_wins"  # Push PMS values to the channel
    CHANNEL_WINS = "channel_wins"  # Apply channel values to the PMS
    NEWEST_WINS = "newest_wins"  # Most recently modified side wins


class LifecycleState(str, Enum):
    """Row lifecycle shared by PMS tables and channel configs."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class SyncAction(str, Enum):
    """Outcome of syncing one booking into the PMS."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class ReservationStatus(str, Enum):
    """PMS reservation statuses."""

    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    CHECKED_IN = "Checked-in"
    CHECKED_OUT = "Checked-out"
    CANCELLED = "Cancelled"
    NO_SHOW = "No-show"


class EventType(str, Enum):
    """Closed set of sync events carried on the broker."""

    # Inbound (channel -> PMS)
    BOOKING_SYNC = "booking.sync"
    BOOKING_CREATED = "booking.created"
    BOOKING_UPDATED = "booking.updated"
    BOOKING_CANCELLED = "booking.cancelled"

    # Outbound (PMS -> channel)
    RESERVATION_CREATE = "reservation.create"
    RESERVATION_UPDATE = "reservation.update"
    RESERVATION_CANCEL = "reservation.cancel"
    AVAILABILITY_UPDATE = "availability.update"
    RATE_UPDATE = "rate.update"

    @property
    def direction(self) -> Direction:
        if self.value.startswith('booking.'):
            return Direction.INBOUND
        return Direction.OUTBOUND


INBOUND_EVENT_TYPES = frozenset(t for t in EventType if t.direction == Direction.INBOUND)
OUTBOUND_EVENT_TYPES = frozenset(t for t in EventType if t.direction == Direction.OUTBOUND)


class GuestInfo(BaseModel):
    """Guest details as supplied by a channel manager."""

    first_name: str = Field("", description="Given name")
    last_name: str = Field("", description="Family name")
    email: Optional[str] = Field(None)
    phone: Optional[str] = Field(None)
    notes: Optional[str] = Field(None)

    @validator('first_name', 'last_name', pre=True)
    def none_to_empty(cls, v):
        return (v or "").strip()

    @validator('email', 'phone', pre=True)
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    @property
    def has_contact(self) -> bool:
        return bool(self.email or self.phone)


class ChannelBooking(BaseModel):
    """Standardized booking model shared by every channel client."""

    id: str = Field(..., description="Booking ID in the channel manager")
    room_type_ids: List[str] = Field(default_factory=list, description="Channel room type IDs in booking order")
    arrival: date = Field(..., description="Check-in date")
    departure: date = Field(..., description="Check-out date")
    status: str = Field("confirmed", description="Channel booking status")
    total_amount: float = Field(0.0, ge=0)
    currency: Optional[str] = Field(None)
    num_guests: int = Field(1, ge=1)
    guest: GuestInfo = Field(default_factory=GuestInfo)
    notes: Optional[str] = Field(None)
    source: Optional[str] = Field(None, description="Origin reported by the channel (direct, OTA name, ...)")
    external_reference: Optional[str] = Field(None, description="PMS reservation ID if the channel knows it")
    modified_at: Optional[datetime] = Field(None)

    @validator('id', pre=True)
    def coerce_id(cls, v):
        if v is None or str(v).strip() == "":
            raise ValueError("booking id is required")
        return str(v).strip()

    @validator('room_type_ids', pre=True)
    def coerce_room_type_ids(cls, v):
        if v is None:
            return []
        if not isinstance(v, (list, tuple)):
            v = [v]
        return [str(item) for item in v]

    @validator('status', pre=True)
    def normalize_status(cls, v):
        if v is None:
            return "confirmed"
        return str(v).strip().lower()

    @validator('modified_at', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @property
    def nights(self) -> int:
        return (self.departure - self.arrival).days


class AvailabilityDay(BaseModel):
    """Units available for one night."""

    day: date
    available: int = Field(..., ge=0)


class RateDay(BaseModel):
    """Nightly price for one date."""

    day: date
    price: float = Field(..., ge=0)


# ---------------------------------------------------------------------------
# Event variants. One payload model per EventType; workers dispatch on these.
# ---------------------------------------------------------------------------


class SyncEvent(BaseModel):
    """Base class for typed event payloads."""

    event_type: EventType

    def routing_suffix(self) -> str:
        return self.event_type.value


class BookingSyncEvent(SyncEvent):
    """Pull bookings from the channel (full or incremental)."""

    event_type: EventType = EventType.BOOKING_SYNC
    full_sync: bool = False
    modified_since: Optional[datetime] = None


class BookingChangedEvent(SyncEvent):
    """A single booking pushed to us by the channel."""

    event_type: EventType = EventType.BOOKING_CREATED
    booking: ChannelBooking
    channel_event_id: Optional[str] = None


class BookingCancelledEvent(SyncEvent):
    event_type: EventType = EventType.BOOKING_CANCELLED
    booking_id: str
    channel_event_id: Optional[str] = None


class ReservationSyncEvent(SyncEvent):
    """PMS reservation create/update/cancel to push."""

    event_type: EventType = EventType.RESERVATION_UPDATE
    reservation_id: str
    # Push even a channel-originated reservation (operator resolved a conflict for the PMS)
    force: bool = False


class InventorySyncEvent(SyncEvent):
    """Availability or rate window for one room type."""

    event_type: EventType = EventType.AVAILABILITY_UPDATE
    room_type_id: str
    date_from: date
    date_to: date

    @validator('date_to')
    def window_not_reversed(cls, v, values):
        if 'date_from' in values and v < values['date_from']:
            raise ValueError("date_to must not be before date_from")
        return v


EVENT_PAYLOADS: Dict[EventType, Type[SyncEvent]] = {
    EventType.BOOKING_SYNC: BookingSyncEvent,
    EventType.BOOKING_CREATED: BookingChangedEvent,
    EventType.BOOKING_UPDATED: BookingChangedEvent,
    EventType.BOOKING_CANCELLED: BookingCancelledEvent,
    EventType.RESERVATION_CREATE: ReservationSyncEvent,
    EventType.RESERVATION_UPDATE: ReservationSyncEvent,
    EventType.RESERVATION_CANCEL: ReservationSyncEvent,
    EventType.AVAILABILITY_UPDATE: InventorySyncEvent,
    EventType.RATE_UPDATE: InventorySyncEvent,
}


def parse_event(event_type: Union[str, EventType], payload: Dict[str, Any]) -> SyncEvent:
    """Build the typed payload for an event type.

    Raises:
        ValueError: If the event type is unknown or the payload is malformed
    """
    event_type = EventType(event_type)
    model = EVENT_PAYLOADS[event_type]
    return model(**{**payload, 'event_type': event_type})


class ChannelContext(BaseModel):
    """Per-property channel configuration, resolved once and injected.

    Credentials are held decrypted in memory only.
    """

    config_id: UUID
    property_id: str
    channel: str
    base_url: Optional[str] = None
    external_hotel_id: Optional[str] = None
    api_key: Optional[str] = Field(None, repr=False)
    webhook_secret: Optional[str] = Field(None, repr=False)
    sync_enabled: bool = True
    push_sync_enabled: bool = True
    pull_sync_enabled: bool = True
    sync_availability: bool = True
    sync_rates: bool = True
    last_successful_sync: Optional[datetime] = None

    class Config:
        frozen = True

    @property
    def integration(self) -> str:
        return self.channel.lower()

    @property
    def sync_type(self) -> str:
        return f"{self.integration}_pull_{self.config_id}"


class BookingSyncResult(BaseModel):
    """Result of syncing one channel booking into the PMS."""

    booking_id: str
    action: SyncAction
    reservation_id: Optional[str] = None
    error: Optional[str] = None


class PullSyncReport(BaseModel):
    """Counters for one pull run."""

    sync_id: UUID = Field(default_factory=uuid4)
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = Field(None)
    full_sync: bool = False
    results: List[BookingSyncResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    def _count(self, action: SyncAction) -> int:
        return sum(1 for r in self.results if r.action == action)

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def created(self) -> int:
        return self._count(SyncAction.CREATED)

    @property
    def updated(self) -> int:
        return self._count(SyncAction.UPDATED)

    @property
    def skipped(self) -> int:
        return self._count(SyncAction.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(SyncAction.FAILED)

    @property
    def made_progress(self) -> bool:
        """Whether last_successful_sync may advance after this run."""
        return self.failed == 0 or (self.created + self.updated) > 0

    @property
    def success_rate(self) -> float:
        """Share of bookings that did not fail."""
        if not self.results:
            return 1.0
        return (len(self.results) - self.failed) / len(self.results)


class FieldDiscrepancy(BaseModel):
    """One field that differs between PMS and channel."""

    field: str
    pms_value: Any = None
    channel_value: Any = None
    description: str


class ReconciliationReport(BaseModel):
    """Summary of a PMS vs channel comparison."""

    checked: int = 0
    conflicts: int = 0
    only_in_pms: int = 0
    only_in_channel: int = 0
    conflict_ids: List[UUID] = Field(default_factory=list)
