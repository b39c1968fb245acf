"""Tests for the identity map store."""

import uuid
from datetime import timedelta

import pytest

from storesync.sync.errors import DuplicateMappingError, MappingNotFoundError, StaleVersionError
from storesync.sync.identity_map import IdentityMap
from storesync.sync.models import (
    ConflictStrategy,
    EntityKind,
    IdentityMapping,
    SyncDirection,
    SyncState,
)
from storesync.utils.datetime import now_utc


@pytest.fixture
def identity_map(database):
    return IdentityMap(database)


def make_mapping(remote_id="R1", **kwargs):
    return IdentityMapping(local_id=kwargs.pop("local_id", uuid.uuid4()), remote_object_id=remote_id, **kwargs)


class TestIdentityMap:
    """Test mapping persistence and invariants."""

    def test_upsert_and_lookup_round_trip(self, identity_map):
        mapping = make_mapping(
            entity_kind=EntityKind.CUSTOMER,
            remote_sub_object_id="V1",
            direction=SyncDirection.TO_REMOTE,
            conflict_strategy=ConflictStrategy.MANUAL,
            remote_version=7,
        )
        identity_map.upsert(mapping)

        stored = identity_map.lookup(mapping.local_id)
        assert stored.remote_object_id == "R1"
        assert stored.remote_sub_object_id == "V1"
        assert stored.entity_kind is EntityKind.CUSTOMER
        assert stored.direction is SyncDirection.TO_REMOTE
        assert stored.conflict_strategy is ConflictStrategy.MANUAL
        assert stored.remote_version == 7
        assert stored.version == 1
        assert stored.sync_state is SyncState.PENDING

    def test_lookup_missing_returns_none(self, identity_map):
        assert identity_map.lookup(uuid.uuid4()) is None
        assert identity_map.lookup_by_remote("nope") is None

    def test_second_active_mapping_for_remote_object_is_rejected(self, identity_map):
        first = identity_map.upsert(make_mapping("R1"))

        with pytest.raises(DuplicateMappingError) as exc_info:
            identity_map.upsert(make_mapping("R1"))

        assert exc_info.value.existing_local_id == str(first.local_id)
        assert len(identity_map.all()) == 1

    def test_disabled_mapping_frees_the_remote_object(self, identity_map):
        old = identity_map.upsert(make_mapping("R1"))
        identity_map.disable(old.local_id, "entity deleted")

        replacement = identity_map.upsert(make_mapping("R1", sync_state=SyncState.SYNCED))

        found = identity_map.lookup_by_remote("R1")
        assert found.local_id == replacement.local_id
        assert found.is_active

    def test_lookup_by_remote_falls_back_to_disabled(self, identity_map):
        mapping = identity_map.upsert(make_mapping("R9"))
        identity_map.disable(mapping.local_id)

        found = identity_map.lookup_by_remote("R9")
        assert found.local_id == mapping.local_id
        assert found.sync_state is SyncState.DISABLED

    def test_version_never_moves_backwards(self, identity_map):
        mapping = identity_map.upsert(make_mapping())
        mapping.record_successful_write(remote_version=2)
        mapping.record_successful_write(remote_version=3)
        identity_map.upsert(mapping)
        assert identity_map.lookup(mapping.local_id).version == 3

        stale = identity_map.lookup(mapping.local_id)
        stale.version = 2
        with pytest.raises(StaleVersionError):
            identity_map.upsert(stale)
        assert identity_map.lookup(mapping.local_id).version == 3

    def test_record_successful_write_advances_mapping(self):
        mapping = make_mapping(sync_state=SyncState.FAILED, last_error="boom")
        before = mapping.last_synced_at - timedelta(seconds=1)

        mapping.record_successful_write(remote_version=4)

        assert mapping.version == 2
        assert mapping.remote_version == 4
        assert mapping.sync_state is SyncState.SYNCED
        assert mapping.last_error is None
        assert mapping.last_synced_at > before

    def test_mark_state(self, identity_map):
        mapping = identity_map.upsert(make_mapping())

        updated = identity_map.mark_state(mapping.local_id, SyncState.CONFLICT, "both sides changed")

        assert updated.sync_state is SyncState.CONFLICT
        assert updated.last_error == "both sides changed"
        assert identity_map.lookup(mapping.local_id).sync_state is SyncState.CONFLICT

    def test_mark_state_unknown_mapping(self, identity_map):
        with pytest.raises(MappingNotFoundError):
            identity_map.mark_state(uuid.uuid4(), SyncState.SYNCED)

    def test_list_and_count_by_state(self, identity_map):
        identity_map.upsert(make_mapping("R1", sync_state=SyncState.SYNCED))
        identity_map.upsert(make_mapping("R2", sync_state=SyncState.SYNCED))
        identity_map.upsert(make_mapping("R3", sync_state=SyncState.CONFLICT))

        counts = identity_map.count_by_state()

        assert counts[SyncState.SYNCED] == 2
        assert counts[SyncState.CONFLICT] == 1
        assert counts[SyncState.DISABLED] == 0
        assert [m.remote_object_id for m in identity_map.list_by_state(SyncState.CONFLICT)] == ["R3"]

    def test_all_filters_by_entity_kind(self, identity_map):
        identity_map.upsert(make_mapping("C1", entity_kind=EntityKind.CUSTOMER))
        identity_map.upsert(make_mapping("I1", entity_kind=EntityKind.INVENTORY_ITEM))

        customers = identity_map.all(EntityKind.CUSTOMER)

        assert [m.remote_object_id for m in customers] == ["C1"]
        assert len(identity_map.all()) == 2

    def test_timestamps_survive_storage(self, identity_map):
        synced_at = now_utc() - timedelta(hours=2)
        mapping = identity_map.upsert(make_mapping(last_synced_at=synced_at))

        assert identity_map.lookup(mapping.local_id).last_synced_at == synced_at
