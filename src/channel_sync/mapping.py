"""Persisted links between PMS entities and channel identifiers."""

import logging
from typing import List, Optional, Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import EntityMappingDB, utcnow
from .models import ChannelBooking, ChannelContext, MappingType
from .services.base import MappingNotFoundError

logger = logging.getLogger(__name__)


class MappingConflictError(Exception):
    """A second active mapping for the same internal or external id."""
    pass


class MappingRepository:
    """Room, room-type and reservation mappings scoped to one channel config."""

    def __init__(self):
        self.logger = logger.getChild('mappings')

    def get_active(
        self,
        session: Session,
        config_id: UUID,
        mapping_type: MappingType,
        internal_id: Optional[Union[str, UUID]] = None,
        external_id: Optional[str] = None
    ) -> Optional[EntityMappingDB]:
        """Get the active mapping by internal or external id.

        Args:
            session: Database session
            config_id: Channel config scope
            mapping_type: Kind of mapping
            internal_id: PMS id
            external_id: Channel id

        Returns:
            Mapping or None if not found
        """
        if internal_id is None and external_id is None:
            raise ValueError("internal_id or external_id is required")

        query = session.query(EntityMappingDB).filter(
            EntityMappingDB.config_id == config_id,
            EntityMappingDB.mapping_type == MappingType(mapping_type).value,
            EntityMappingDB.is_active == True
        )
        if internal_id is not None:
            query = query.filter(EntityMappingDB.internal_id == str(internal_id))
        if external_id is not None:
            query = query.filter(EntityMappingDB.external_id == str(external_id))
        return query.first()

    def require_room_type_mapping(
        self,
        session: Session,
        context: ChannelContext,
        room_type_id: Union[str, UUID]
    ) -> EntityMappingDB:
        """Room-type mapping for an outbound operation.

        Raises:
            MappingNotFoundError: With a message naming what to remap
        """
        mapping = self.get_active(session, context.config_id, MappingType.ROOM_TYPE, internal_id=room_type_id)
        if mapping is None:
            raise MappingNotFoundError(
                f"PMS room type {room_type_id} has no active {context.channel} mapping; "
                f"map it and replay the event"
            )
        return mapping

    def find_room_type_for_booking(
        self,
        session: Session,
        context: ChannelContext,
        booking: ChannelBooking
    ) -> Optional[EntityMappingDB]:
        """First booked channel room type that has an active mapping."""
        for external_room_type in booking.room_type_ids:
            mapping = self.get_active(
                session, context.config_id, MappingType.ROOM_TYPE, external_id=external_room_type
            )
            if mapping is not None:
                return mapping
        return None

    def create_mapping(
        self,
        session: Session,
        config_id: UUID,
        mapping_type: MappingType,
        internal_id: Union[str, UUID],
        external_id: str,
        sync_direction: str = 'manual'
    ) -> EntityMappingDB:
        """Create an active mapping.

        The partial unique indexes reject concurrent duplicates that slip
        past the lookup.

        Raises:
            MappingConflictError: If either side already has an active mapping
        """
        mapping_type = MappingType(mapping_type)
        internal_id = str(internal_id)
        external_id = str(external_id)

        by_internal = self.get_active(session, config_id, mapping_type, internal_id=internal_id)
        if by_internal is not None:
            raise MappingConflictError(
                f"{mapping_type.value} {internal_id} is already mapped to {by_internal.external_id}"
            )
        by_external = self.get_active(session, config_id, mapping_type, external_id=external_id)
        if by_external is not None:
            raise MappingConflictError(
                f"External {mapping_type.value} {external_id} is already mapped to {by_external.internal_id}"
            )

        mapping = EntityMappingDB(
            config_id=config_id,
            mapping_type=mapping_type.value,
            internal_id=internal_id,
            external_id=external_id,
            is_active=True,
            sync_direction=sync_direction,
            last_synced_at=utcnow(),
        )
        session.add(mapping)
        try:
            session.flush()
        except IntegrityError as e:
            session.rollback()
            raise MappingConflictError(
                f"Concurrent {mapping_type.value} mapping for {internal_id} / {external_id}"
            ) from e

        self.logger.info(f"Mapped {mapping_type.value} {internal_id} -> {external_id} ({sync_direction})")
        return mapping

    def deactivate(self, session: Session, mapping: EntityMappingDB) -> EntityMappingDB:
        """Break a link. Mappings are never deleted."""
        mapping.is_active = False
        mapping.updated_at = utcnow()
        session.flush()
        self.logger.info(f"Deactivated {mapping.mapping_type} mapping {mapping.internal_id} -> {mapping.external_id}")
        return mapping

    def remap(
        self,
        session: Session,
        config_id: UUID,
        mapping_type: MappingType,
        internal_id: Union[str, UUID],
        external_id: str
    ) -> EntityMappingDB:
        """Point an internal id at a new external id, keeping the old link as history."""
        current = self.get_active(session, config_id, mapping_type, internal_id=internal_id)
        if current is not None:
            if current.external_id == str(external_id):
                return current
            self.deactivate(session, current)
        return self.create_mapping(session, config_id, mapping_type, internal_id, external_id)

    def touch(self, mapping: EntityMappingDB) -> None:
        mapping.last_synced_at = utcnow()
        mapping.updated_at = mapping.last_synced_at

    def list_mappings(
        self,
        session: Session,
        config_id: UUID,
        mapping_type: Optional[MappingType] = None,
        include_inactive: bool = False
    ) -> List[EntityMappingDB]:
        query = session.query(EntityMappingDB).filter(EntityMappingDB.config_id == config_id)
        if mapping_type is not None:
            query = query.filter(EntityMappingDB.mapping_type == MappingType(mapping_type).value)
        if not include_inactive:
            query = query.filter(EntityMappingDB.is_active == True)
        return query.order_by(EntityMappingDB.mapping_type, EntityMappingDB.created_at).all()
