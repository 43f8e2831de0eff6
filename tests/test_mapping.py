"""Tests for entity mappings."""

import pytest
from sqlalchemy.exc import IntegrityError

from channel_sync.database import EntityMappingDB
from channel_sync.mapping import MappingConflictError, MappingRepository
from channel_sync.models import MappingType
from channel_sync.services.base import MappingNotFoundError

from conftest import make_booking


@pytest.fixture
def repo():
    return MappingRepository()


class TestCreateMapping:

    def test_lookup_both_ways(self, env, repo):
        with env.db.get_session() as session:
            repo.create_mapping(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-1', 'CM-DBL')
            session.commit()

            by_internal = repo.get_active(session, env.context.config_id, MappingType.ROOM_TYPE, internal_id='rt-1')
            by_external = repo.get_active(session, env.context.config_id, MappingType.ROOM_TYPE, external_id='CM-DBL')
            assert by_internal.id == by_external.id
            assert by_internal.sync_direction == 'manual'

    def test_internal_id_maps_once(self, env, repo):
        with env.db.get_session() as session:
            repo.create_mapping(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-1', 'CM-DBL')
            with pytest.raises(MappingConflictError):
                repo.create_mapping(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-1', 'CM-SGL')

    def test_external_id_maps_once(self, env, repo):
        with env.db.get_session() as session:
            repo.create_mapping(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-1', 'CM-DBL')
            with pytest.raises(MappingConflictError):
                repo.create_mapping(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-2', 'CM-DBL')

    def test_types_are_independent(self, env, repo):
        with env.db.get_session() as session:
            repo.create_mapping(session, env.context.config_id, MappingType.ROOM_TYPE, 'x', 'CM-1')
            repo.create_mapping(session, env.context.config_id, MappingType.ROOM, 'x', 'CM-1')
            session.commit()
            assert len(repo.list_mappings(session, env.context.config_id)) == 2

    def test_unique_index_rejects_second_active_row(self, env):
        with env.db.get_session() as session:
            for external_id in ('CM-1', 'CM-2'):
                session.add(EntityMappingDB(
                    config_id=env.context.config_id,
                    mapping_type=MappingType.RESERVATION.value,
                    internal_id='res-1',
                    external_id=external_id,
                    is_active=True,
                ))
            with pytest.raises(IntegrityError):
                session.flush()


class TestDeactivateAndRemap:

    def test_deactivated_mapping_frees_both_sides(self, env, repo):
        with env.db.get_session() as session:
            mapping = repo.create_mapping(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-1', 'CM-DBL')
            repo.deactivate(session, mapping)
            assert repo.get_active(session, env.context.config_id, MappingType.ROOM_TYPE, internal_id='rt-1') is None

            repo.create_mapping(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-1', 'CM-SGL')
            session.commit()

            history = repo.list_mappings(
                session, env.context.config_id, MappingType.ROOM_TYPE, include_inactive=True
            )
            assert sorted((m.external_id, m.is_active) for m in history) == [('CM-DBL', False), ('CM-SGL', True)]

    def test_remap_keeps_history(self, env, repo):
        with env.db.get_session() as session:
            repo.create_mapping(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-1', 'CM-DBL')
            current = repo.remap(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-1', 'CM-TWN')
            session.commit()

            assert current.external_id == 'CM-TWN'
            assert len(repo.list_mappings(session, env.context.config_id, include_inactive=True)) == 2

    def test_remap_to_same_target_is_noop(self, env, repo):
        with env.db.get_session() as session:
            first = repo.create_mapping(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-1', 'CM-DBL')
            again = repo.remap(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-1', 'CM-DBL')
            assert again.id == first.id


class TestRoomTypeLookups:

    def test_require_names_the_missing_room_type(self, env, repo):
        with env.db.get_session() as session:
            with pytest.raises(MappingNotFoundError, match="rt-9"):
                repo.require_room_type_mapping(session, env.context, 'rt-9')

    def test_booking_uses_first_mapped_room_type(self, env, repo):
        with env.db.get_session() as session:
            repo.create_mapping(session, env.context.config_id, MappingType.ROOM_TYPE, 'rt-2', 'CM-TWN')
            booking = make_booking(room_type_ids=['CM-UNKNOWN', 'CM-TWN'])
            assert repo.find_room_type_for_booking(session, env.context, booking).internal_id == 'rt-2'
            assert repo.find_room_type_for_booking(session, env.context, make_booking()) is None

    def test_lookup_requires_an_id(self, env, repo):
        with env.db.get_session() as session:
            with pytest.raises(ValueError):
                repo.get_active(session, env.context.config_id, MappingType.ROOM)
