"""Database models and operations for sync state management."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    create_engine, event, Column, String, DateTime, Date, Boolean, Text, Integer, Float,
    ForeignKey, Index, UniqueConstraint, JSON, text
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship, Query
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import (
    EventStatus, LifecycleState, SyncRunStatus, ConflictStatus, ReservationStatus
)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return str(value)
        else:
            if not isinstance(value, UUID):
                return "%.32x" % UUID(str(value)).int
            else:
                return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if not isinstance(value, UUID):
                return UUID(str(value))
            return value


def live(query: Query, model) -> Query:
    """Restrict a query to rows whose lifecycle state is active."""
    return query.filter(model.state == LifecycleState.ACTIVE.value)


def archive(row, state: LifecycleState = LifecycleState.ARCHIVED) -> None:
    """Move a row out of the active lifecycle state. Rows are never deleted."""
    row.state = state.value
    row.updated_at = utcnow()


# ---------------------------------------------------------------------------
# PMS tables (owned by the PMS, read and written by sync)
# ---------------------------------------------------------------------------


class RoomTypeDB(Base):
    """Sellable room category."""

    __tablename__ = 'room_types'

    id = Column(GUID(), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    base_price = Column(Float, nullable=False, default=0.0)
    total_units = Column(Integer, nullable=False, default=1)
    max_occupancy = Column(Integer, nullable=False, default=2)
    state = Column(String(20), nullable=False, default=LifecycleState.ACTIVE.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    rooms = relationship("RoomDB", back_populates="room_type")

    __table_args__ = (
        Index('idx_room_type_state', 'state'),
    )


class RoomDB(Base):
    """Physical room."""

    __tablename__ = 'rooms'

    id = Column(GUID(), primary_key=True, default=uuid4)
    room_number = Column(String(20), nullable=False)
    room_type_id = Column(GUID(), ForeignKey('room_types.id'), nullable=False, index=True)
    state = Column(String(20), nullable=False, default=LifecycleState.ACTIVE.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    room_type = relationship("RoomTypeDB", back_populates="rooms")


class GuestDB(Base):
    """Guest profile."""

    __tablename__ = 'guests'

    id = Column(GUID(), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(50), nullable=True, index=True)
    notes = Column(Text, nullable=True)
    state = Column(String(20), nullable=False, default=LifecycleState.ACTIVE.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_guest_state', 'state'),
    )


class ReservationDB(Base):
    """Reservation as held by the PMS."""

    __tablename__ = 'reservations'

    id = Column(GUID(), primary_key=True, default=uuid4)
    room_type_id = Column(GUID(), ForeignKey('room_types.id'), nullable=False, index=True)
    room_id = Column(GUID(), ForeignKey('rooms.id'), nullable=True)
    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default=ReservationStatus.CONFIRMED.value)
    total_amount = Column(Float, nullable=False, default=0.0)
    currency = Column(String(3), nullable=True)
    num_guests = Column(Integer, nullable=False, default=1)
    source = Column(String(50), nullable=False, default='Direct')  # Direct, Phone, or a channel name
    notes = Column(Text, nullable=True)
    state = Column(String(20), nullable=False, default=LifecycleState.ACTIVE.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    guests = relationship("ReservationGuestDB", back_populates="reservation")

    __table_args__ = (
        Index('idx_reservation_dates', 'check_in', 'check_out'),
        Index('idx_reservation_source', 'source'),
        Index('idx_reservation_state', 'state'),
    )

    @property
    def primary_guest(self) -> Optional[GuestDB]:
        for link in self.guests:
            if link.is_primary:
                return link.guest
        return None


class ReservationGuestDB(Base):
    """Link between a reservation and its guests."""

    __tablename__ = 'reservation_guests'

    id = Column(GUID(), primary_key=True, default=uuid4)
    reservation_id = Column(GUID(), ForeignKey('reservations.id'), nullable=False, index=True)
    guest_id = Column(GUID(), ForeignKey('guests.id'), nullable=False, index=True)
    is_primary = Column(Boolean, nullable=False, default=False)

    reservation = relationship("ReservationDB", back_populates="guests")
    guest = relationship("GuestDB")

    __table_args__ = (
        UniqueConstraint('reservation_id', 'guest_id', name='uq_reservation_guest'),
    )


# ---------------------------------------------------------------------------
# Sync tables
# ---------------------------------------------------------------------------


class ChannelConfigDB(Base):
    """Per-property channel-manager configuration."""

    __tablename__ = 'channel_configs'

    id = Column(GUID(), primary_key=True, default=uuid4)
    property_id = Column(String(64), nullable=False)
    channel = Column(String(50), nullable=False)
    base_url = Column(String(500), nullable=True)
    external_hotel_id = Column(String(100), nullable=True)
    api_key_encrypted = Column(Text, nullable=True)
    webhook_secret_encrypted = Column(Text, nullable=True)

    # Master switch and per-feature switches
    sync_enabled = Column(Boolean, nullable=False, default=True)
    push_sync_enabled = Column(Boolean, nullable=False, default=True)
    pull_sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_availability = Column(Boolean, nullable=False, default=True)
    sync_rates = Column(Boolean, nullable=False, default=True)

    # Status tracking
    last_successful_sync = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)

    state = Column(String(20), nullable=False, default=LifecycleState.ACTIVE.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        # One live config per property and channel
        Index(
            'uq_channel_config_property',
            'property_id', 'channel',
            unique=True,
            sqlite_where=text("state = 'active'"),
            postgresql_where=text("state = 'active'"),
        ),
    )


class ChannelEventDB(Base):
    """Ledger of every sync attempt, inbound or outbound."""

    __tablename__ = 'channel_events'

    id = Column(GUID(), primary_key=True, default=uuid4)
    property_id = Column(String(64), nullable=True)
    direction = Column(String(10), nullable=False)  # 'inbound', 'outbound'
    source = Column(String(50), nullable=False)  # channel name or 'pms'
    channel = Column(String(50), nullable=False)  # integration whose queues carry the event
    event_type = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_external_id = Column(String(255), nullable=True)
    entity_internal_id = Column(String(64), nullable=True)
    idempotency_key = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=5)

    status = Column(String(20), nullable=False, default=EventStatus.RECEIVED.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)

    # Outbox
    publish_pending = Column(Boolean, nullable=False, default=True)
    published_at = Column(DateTime, nullable=True)

    received_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('idempotency_key', name='uq_channel_event_idempotency_key'),
        Index('idx_channel_event_status', 'status'),
        Index('idx_channel_event_external', 'entity_external_id'),
        Index('idx_channel_event_internal', 'entity_internal_id'),
        Index('idx_channel_event_direction_status', 'direction', 'status'),
        Index(
            'idx_channel_event_dlq',
            'status', 'attempts',
            sqlite_where=text("status = 'failed'"),
            postgresql_where=text("status = 'failed'"),
        ),
        Index(
            'idx_channel_event_outbox',
            'created_at',
            sqlite_where=text("publish_pending = 1"),
            postgresql_where=text("publish_pending"),
        ),
    )


class SyncStateDB(Base):
    """One scheduler run. A running row doubles as the lock for its sync_type."""

    __tablename__ = 'sync_state'

    id = Column(GUID(), primary_key=True, default=uuid4)
    sync_type = Column(String(150), nullable=False)
    status = Column(String(20), nullable=False, default=SyncRunStatus.RUNNING.value)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    last_successful_sync = Column(DateTime, nullable=True)

    items_processed = Column(Integer, nullable=False, default=0)
    items_created = Column(Integer, nullable=False, default=0)
    items_updated = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=True)

    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index(
            'uq_sync_state_running',
            'sync_type',
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
        Index('idx_sync_state_type_started', 'sync_type', 'started_at'),
        Index('idx_sync_state_status', 'status'),
    )


class EntityMappingDB(Base):
    """Link between a PMS entity and its channel identifier."""

    __tablename__ = 'entity_mappings'

    id = Column(GUID(), primary_key=True, default=uuid4)
    config_id = Column(GUID(), ForeignKey('channel_configs.id'), nullable=False)
    mapping_type = Column(String(20), nullable=False)  # 'room', 'room_type', 'reservation'
    internal_id = Column(String(64), nullable=False)
    external_id = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    sync_direction = Column(String(10), nullable=True)  # 'push', 'pull', 'manual'
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            'uq_entity_mapping_internal_active',
            'config_id', 'mapping_type', 'internal_id',
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index(
            'uq_entity_mapping_external_active',
            'config_id', 'mapping_type', 'external_id',
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index('idx_entity_mapping_lookup', 'config_id', 'mapping_type', 'is_active'),
    )


class SyncConflictDB(Base):
    """Divergence between a PMS reservation and its channel booking."""

    __tablename__ = 'sync_conflicts'

    id = Column(GUID(), primary_key=True, default=uuid4)
    config_id = Column(GUID(), ForeignKey('channel_configs.id'), nullable=False)
    reservation_id = Column(String(64), nullable=True)
    external_booking_id = Column(String(255), nullable=True)

    conflict_type = Column(String(50), nullable=False)  # 'field_mismatch'
    description = Column(Text, nullable=False)
    fields = Column(JSON, nullable=False, default=list)
    pms_data = Column(JSON, nullable=True)
    channel_data = Column(JSON, nullable=True)

    status = Column(String(20), nullable=False, default=ConflictStatus.OPEN.value)
    resolution = Column(String(50), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_sync_conflict_status', 'status', 'created_at'),
        Index('idx_sync_conflict_reservation', 'reservation_id'),
        Index('idx_sync_conflict_booking', 'external_booking_id'),
    )


def _emit_sqlite_begin(engine) -> None:
    """Let SQLAlchemy emit BEGIN on SQLite so SAVEPOINTs nest inside the transaction."""

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


class DatabaseManager:
    """Database manager for sync operations."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        if self.engine.dialect.name == 'sqlite':
            _emit_sqlite_begin(self.engine)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def get_channel_config(
        self,
        session: Session,
        property_id: str,
        channel: str
    ) -> Optional[ChannelConfigDB]:
        """Get the live config for a property and channel.

        Args:
            session: Database session
            property_id: Property ID
            channel: Channel name

        Returns:
            Channel config or None if not configured
        """
        return live(session.query(ChannelConfigDB), ChannelConfigDB).filter(
            ChannelConfigDB.property_id == property_id,
            ChannelConfigDB.channel == channel.lower()
        ).first()

    def get_channel_configs(
        self,
        session: Session,
        property_id: Optional[str] = None
    ) -> List[ChannelConfigDB]:
        """Get all live channel configs, optionally for one property."""
        query = live(session.query(ChannelConfigDB), ChannelConfigDB)
        if property_id:
            query = query.filter(ChannelConfigDB.property_id == property_id)
        return query.order_by(ChannelConfigDB.created_at).all()

    def create_channel_config(
        self,
        session: Session,
        property_id: str,
        channel: str,
        api_key_encrypted: Optional[str] = None,
        webhook_secret_encrypted: Optional[str] = None,
        base_url: Optional[str] = None,
        external_hotel_id: Optional[str] = None,
        **flags: bool
    ) -> ChannelConfigDB:
        """Create a channel config.

        Args:
            session: Database session
            property_id: Property ID
            channel: Channel name (stored lower-case)
            api_key_encrypted: Encrypted API key
            webhook_secret_encrypted: Encrypted webhook secret
            base_url: Channel API base URL
            external_hotel_id: Hotel ID inside the channel manager
            **flags: sync_enabled, push_sync_enabled, pull_sync_enabled,
                sync_availability, sync_rates

        Returns:
            Created config
        """
        config = ChannelConfigDB(
            property_id=property_id,
            channel=channel.lower(),
            api_key_encrypted=api_key_encrypted,
            webhook_secret_encrypted=webhook_secret_encrypted,
            base_url=base_url,
            external_hotel_id=external_hotel_id,
            **flags
        )
        session.add(config)
        session.commit()
        return config

    def record_sync_outcome(
        self,
        session: Session,
        config_id: UUID,
        success: bool,
        synced_at: Optional[datetime] = None,
        error_message: Optional[str] = None
    ) -> Optional[ChannelConfigDB]:
        """Update last_successful_sync and the failure streak on a config."""
        config = session.get(ChannelConfigDB, config_id)
        if config is None:
            return None

        if success:
            config.last_successful_sync = synced_at or utcnow()
            config.consecutive_failures = 0
            config.last_sync_error = None
        else:
            config.consecutive_failures = (config.consecutive_failures or 0) + 1
            config.last_sync_error = error_message
        config.updated_at = utcnow()

        session.commit()
        return config

    def get_reservation(self, session: Session, reservation_id) -> Optional[ReservationDB]:
        """Get a live reservation by ID."""
        return live(session.query(ReservationDB), ReservationDB).filter(
            ReservationDB.id == reservation_id
        ).first()

    def get_room_type(self, session: Session, room_type_id) -> Optional[RoomTypeDB]:
        """Get a live room type by ID."""
        return live(session.query(RoomTypeDB), RoomTypeDB).filter(
            RoomTypeDB.id == room_type_id
        ).first()

    def get_recent_sync_states(
        self,
        session: Session,
        sync_type: Optional[str] = None,
        limit: int = 10
    ) -> List[SyncStateDB]:
        """Get recent scheduler runs.

        Args:
            session: Database session
            sync_type: Restrict to one sync type
            limit: Number of rows to return

        Returns:
            List of sync_state rows, newest first
        """
        query = session.query(SyncStateDB)
        if sync_type:
            query = query.filter(SyncStateDB.sync_type == sync_type)
        return query.order_by(SyncStateDB.started_at.desc()).limit(limit).all()

    def get_open_conflicts(
        self,
        session: Session,
        config_id: Optional[UUID] = None
    ) -> List[SyncConflictDB]:
        """Get conflicts awaiting an operator.

        Args:
            session: Database session
            config_id: Restrict to one channel config

        Returns:
            List of open conflicts
        """
        query = session.query(SyncConflictDB).filter(
            SyncConflictDB.status == ConflictStatus.OPEN.value
        )
        if config_id:
            query = query.filter(SyncConflictDB.config_id == config_id)
        return query.order_by(SyncConflictDB.created_at.desc()).all()

    def cleanup_sync_history(self, session: Session, older_than_days: int) -> int:
        """Delete finished sync_state rows older than the retention window.

        Returns:
            Number of rows removed
        """
        cutoff = utcnow() - timedelta(days=older_than_days)
        removed = session.query(SyncStateDB).filter(
            SyncStateDB.started_at < cutoff,
            SyncStateDB.status != SyncRunStatus.RUNNING.value
        ).delete(synchronize_session=False)
        session.commit()
        return removed

    def get_sync_statistics(self, session: Session, days: int = 30) -> Dict[str, Any]:
        """Get synchronization statistics for the past N days."""
        cutoff_date = utcnow() - timedelta(days=days)

        runs = session.query(SyncStateDB).filter(
            SyncStateDB.started_at >= cutoff_date
        ).all()

        events = session.query(ChannelEventDB).filter(
            ChannelEventDB.created_at >= cutoff_date
        ).all()

        return {
            'period_days': days,
            'total_runs': len(runs),
            'completed_runs': len([r for r in runs if r.status == SyncRunStatus.COMPLETED.value]),
            'failed_runs': len([r for r in runs if r.status == SyncRunStatus.FAILED.value]),
            'total_events': len(events),
            'done_events': len([e for e in events if e.status == EventStatus.DONE.value]),
            'failed_events': len([e for e in events if e.status == EventStatus.FAILED.value]),
            'pending_publish': len([e for e in events if e.publish_pending]),
        }

    def validate_database_integrity(self, session: Session) -> Dict[str, Any]:
        """Validate database integrity and return health report."""
        issues = []

        running = session.query(SyncStateDB).filter(
            SyncStateDB.status == SyncRunStatus.RUNNING.value
        ).count()
        if running > len(self.get_channel_configs(session)):
            issues.append(f"{running} running sync locks for fewer channel configs")

        # Reservation mappings whose PMS reservation is no longer live
        reservation_mappings = session.query(EntityMappingDB).filter(
            EntityMappingDB.mapping_type == 'reservation',
            EntityMappingDB.is_active == True
        ).all()
        orphaned = sum(
            1 for m in reservation_mappings
            if self.get_reservation(session, m.internal_id) is None
        )
        if orphaned > 0:
            issues.append(f"{orphaned} active reservation mappings point at non-live reservations")

        stuck = session.query(ChannelEventDB).filter(
            ChannelEventDB.status == EventStatus.PROCESSING.value,
            ChannelEventDB.updated_at < utcnow() - timedelta(hours=1)
        ).count()
        if stuck > 0:
            issues.append(f"{stuck} events stuck in processing for over an hour")

        return {
            'healthy': len(issues) == 0,
            'issues': issues,
            'total_events': session.query(ChannelEventDB).count(),
            'active_mappings': session.query(EntityMappingDB).filter(
                EntityMappingDB.is_active == True
            ).count(),
            'open_conflicts': session.query(SyncConflictDB).filter(
                SyncConflictDB.status == ConflictStatus.OPEN.value
            ).count(),
        }
